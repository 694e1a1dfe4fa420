"""Typed records for the structured payload recovered from model output."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "ActionType",
    "CodeBlock",
    "GeneratedPlan",
    "PayloadModel",
    "PlanDetails",
    "PlanPhase",
    "PlannedFile",
    "TaskDefinition",
    "is_rejected_package_name",
    "normalize_path",
]

_REJECTED_PACKAGE_NAMES = {"", "undefined", "null", "none"}


def is_rejected_package_name(name: str) -> bool:
    """True for empty names and the ``undefined``/``null`` stand-ins models emit."""
    return name.strip().lower() in _REJECTED_PACKAGE_NAMES


def normalize_path(value: str | None) -> str:
    """Normalise separators and strip leading ``./`` or ``/`` from a project path."""
    if not value:
        return ""
    path = str(value).strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return "\n".join(_as_text(item) for item in value)
    return str(value)


def _as_optional_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes", "on"}:
            return True
        if lowered in {"false", "0", "no", "off"}:
            return False
        return None
    if isinstance(value, (int, float)):
        return bool(value)
    return None


class PlanPhase(str, Enum):
    """Phase declared by a payload."""

    PLANNING = "planning"
    EXECUTION = "execution"


class ActionType(str, Enum):
    """Kind of change a plan proposes."""

    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    ADD = "ADD"
    REPLACE = "REPLACE"


class PayloadModel(BaseModel):
    """Base model that tolerates unknown keys and camelCase aliases."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PlannedFile(PayloadModel):
    """A file the plan intends to create or modify."""

    path: str = ""
    reason: str = ""
    purpose: str = ""
    changes: str = ""
    file_exists: Optional[bool] = Field(default=None, alias="fileExists")

    @field_validator("path", mode="before")
    @classmethod
    def _clean_path(cls, value: Any) -> str:
        return _as_text(value).strip()

    @field_validator("reason", "purpose", "changes", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("file_exists", mode="before")
    @classmethod
    def _tri_state(cls, value: Any) -> Optional[bool]:
        return _as_optional_bool(value)

    @property
    def normalized_path(self) -> str:
        return normalize_path(self.path)


class CodeBlock(PayloadModel):
    """Full file content destined for ``file_path``."""

    file_path: str = Field(
        default="",
        validation_alias=AliasChoices("filePath", "file_path", "path"),
        serialization_alias="filePath",
    )
    language: str = ""
    content: str = ""

    @field_validator("file_path", "language", "content", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @property
    def normalized_path(self) -> str:
        return normalize_path(self.file_path)


class TaskDefinition(PayloadModel):
    """A task exactly as the model described it."""

    id: Optional[str] = None
    type: str = ""
    description: str = ""
    target: Optional[str] = None
    content: Optional[str] = None
    command: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)

    @field_validator("id", "target", "content", "command", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return _as_text(value)

    @field_validator("type", mode="before")
    @classmethod
    def _kind(cls, value: Any) -> str:
        return _as_text(value).strip().lower()

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dependencies(cls, value: Any) -> List[str]:
        return [str(item).strip() for item in _as_list(value) if str(item).strip()]


class PlanDetails(PayloadModel):
    """The ``plan`` section of a payload."""

    action_type: Optional[str] = Field(default=None, alias="actionType")
    packages: List[str] = Field(default_factory=list)
    files_to_modify: List[PlannedFile] = Field(default_factory=list, alias="filesToModify")
    files_to_create: List[PlannedFile] = Field(default_factory=list, alias="filesToCreate")
    execution_order: List[str] = Field(default_factory=list, alias="executionOrder")
    architecture: str = ""
    sub_tasks: List[Any] = Field(default_factory=list, alias="subTasks")

    @field_validator("action_type", mode="before")
    @classmethod
    def _action(cls, value: Any) -> Optional[str]:
        text = _as_text(value).strip().upper()
        return text or None

    @field_validator("packages", mode="before")
    @classmethod
    def _packages(cls, value: Any) -> List[str]:
        if isinstance(value, dict):
            value = list(value.keys())
        seen: list[str] = []
        for item in _as_list(value):
            name = _as_text(item).strip()
            if is_rejected_package_name(name) or name in seen:
                continue
            seen.append(name)
        return seen

    @field_validator("files_to_modify", "files_to_create", mode="before")
    @classmethod
    def _files(cls, value: Any) -> List[Any]:
        return [{"path": item} if isinstance(item, str) else item for item in _as_list(value)]

    @field_validator("execution_order", mode="before")
    @classmethod
    def _order(cls, value: Any) -> List[str]:
        return [_as_text(item) for item in _as_list(value) if _as_text(item).strip()]

    @field_validator("architecture", mode="before")
    @classmethod
    def _architecture(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("sub_tasks", mode="before")
    @classmethod
    def _sub_tasks(cls, value: Any) -> List[Any]:
        return _as_list(value)

    def planned_files(self) -> List[PlannedFile]:
        return [*self.files_to_create, *self.files_to_modify]


class GeneratedPlan(PayloadModel):
    """Structured payload recovered from a model response.

    Every field is optional because model output routinely omits sections;
    presence is checked through the helper properties rather than by poking
    at raw dictionaries.
    """

    phase: Optional[PlanPhase] = None
    analysis: str = ""
    is_clear: Optional[bool] = Field(default=None, alias="isClear")
    questions: List[str] = Field(default_factory=list)
    plan: Optional[PlanDetails] = None
    ready_to_execute: Optional[bool] = Field(default=None, alias="readyToExecute")
    tasks: List[TaskDefinition] = Field(default_factory=list)
    code_blocks: List[CodeBlock] = Field(default_factory=list, alias="codeBlocks")

    @field_validator("phase", mode="before")
    @classmethod
    def _phase(cls, value: Any) -> Optional[str]:
        text = _as_text(value).strip().lower()
        if text in {PlanPhase.PLANNING.value, PlanPhase.EXECUTION.value}:
            return text
        return None

    @field_validator("analysis", mode="before")
    @classmethod
    def _analysis(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("is_clear", "ready_to_execute", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> Optional[bool]:
        return _as_optional_bool(value)

    @field_validator("questions", mode="before")
    @classmethod
    def _questions(cls, value: Any) -> List[str]:
        return [_as_text(item).strip() for item in _as_list(value) if _as_text(item).strip()]

    @field_validator("plan", mode="before")
    @classmethod
    def _plan(cls, value: Any) -> Any:
        if value is None or isinstance(value, (dict, PlanDetails)):
            return value
        return None

    @field_validator("tasks", "code_blocks", mode="before")
    @classmethod
    def _records(cls, value: Any) -> List[Any]:
        return [item for item in _as_list(value) if isinstance(item, (dict, BaseModel))]

    @property
    def has_plan(self) -> bool:
        return self.plan is not None

    @property
    def packages(self) -> List[str]:
        return list(self.plan.packages) if self.plan else []

    def create_paths(self) -> List[str]:
        if self.plan is None:
            return []
        return [item.normalized_path for item in self.plan.files_to_create if item.normalized_path]

    def modify_paths(self) -> List[str]:
        if self.plan is None:
            return []
        return [item.normalized_path for item in self.plan.files_to_modify if item.normalized_path]

    def planned_paths(self) -> List[str]:
        paths: list[str] = []
        for path in [*self.create_paths(), *self.modify_paths()]:
            if path not in paths:
                paths.append(path)
        return paths

    def undeclared_action(self) -> str:
        """Action for a path outside both file lists: CREATE and ADD plans create, the rest modify."""
        action = self.plan.action_type if self.plan is not None else None
        return "create" if action in {"CREATE", "ADD"} else "modify"

    def code_block_paths(self) -> List[str]:
        return [block.normalized_path for block in self.code_blocks if block.normalized_path]

    def code_block_for(self, path: str) -> Optional[CodeBlock]:
        """Return the first code block whose path matches ``path``."""
        target = normalize_path(path)
        for block in self.code_blocks:
            if block.normalized_path == target:
                return block
        return None

    def to_payload(self) -> Dict[str, Any]:
        """Render the plan back into the camelCase wire shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
