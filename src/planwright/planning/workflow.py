"""Compile a recovered plan into a staged, dependency-ordered task graph."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from ..schema import GeneratedPlan, TaskDefinition

__all__ = [
    "ClarificationRequest",
    "FailureContext",
    "TaskKind",
    "TaskResult",
    "TaskStatus",
    "WorkflowContext",
    "WorkflowStage",
    "WorkflowTask",
    "analyze_request",
    "compile_workflow",
    "resolve_execution_order",
]

LOGGER = logging.getLogger(__name__)


class WorkflowStage(str, Enum):
    """Fixed pipeline phases, declared in execution order."""

    ANALYSIS = "analysis"
    DESIGN = "design"
    RESOURCE_GATHERING = "resource_gathering"
    EXECUTION_PLAN = "execution_plan"
    EXECUTION = "execution"
    VALIDATION = "validation"
    COMPLETION = "completion"

    @property
    def rank(self) -> int:
        return list(WorkflowStage).index(self)


class TaskKind(str, Enum):
    """Kinds of task the executor knows how to run."""

    INSTALL = "install"
    CREATE = "create"
    MODIFY = "modify"
    COMMAND = "command"
    INFO = "info"
    FIND_FILES = "find_files"
    ANALYZE_SOURCE = "analyze_source"
    MODIFY_SOURCE = "modify_source"
    COMPARE = "compare"
    VERIFY = "verify"
    APPLY = "apply"


class TaskStatus(str, Enum):
    """Lifecycle of a workflow task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


DEFAULT_STAGES: Dict[TaskKind, WorkflowStage] = {
    TaskKind.INFO: WorkflowStage.ANALYSIS,
    TaskKind.FIND_FILES: WorkflowStage.RESOURCE_GATHERING,
    TaskKind.ANALYZE_SOURCE: WorkflowStage.RESOURCE_GATHERING,
    TaskKind.INSTALL: WorkflowStage.EXECUTION,
    TaskKind.CREATE: WorkflowStage.EXECUTION,
    TaskKind.MODIFY: WorkflowStage.EXECUTION,
    TaskKind.COMMAND: WorkflowStage.EXECUTION,
    TaskKind.MODIFY_SOURCE: WorkflowStage.EXECUTION,
    TaskKind.COMPARE: WorkflowStage.VALIDATION,
    TaskKind.VERIFY: WorkflowStage.VALIDATION,
    TaskKind.APPLY: WorkflowStage.COMPLETION,
}

_KIND_ALIASES: Dict[str, TaskKind] = {
    "add": TaskKind.INSTALL,
    "dependency": TaskKind.INSTALL,
    "file": TaskKind.CREATE,
    "write": TaskKind.CREATE,
    "edit": TaskKind.MODIFY,
    "update": TaskKind.MODIFY,
    "shell": TaskKind.COMMAND,
    "run": TaskKind.COMMAND,
    "note": TaskKind.INFO,
}

_REQUEST_INTENTS: Sequence[tuple[TaskKind, re.Pattern[str]]] = (
    (TaskKind.INSTALL, re.compile(r"\b(install|dependenc(?:y|ies)|package|npm|yarn|pnpm)\b", re.I)),
    (TaskKind.FIND_FILES, re.compile(r"\b(find|search|locate|look for)\b", re.I)),
    (TaskKind.ANALYZE_SOURCE, re.compile(r"\b(analy[sz]e|review|inspect|understand)\b", re.I)),
    (
        TaskKind.MODIFY_SOURCE,
        re.compile(r"\b(modify|change|fix|add|create|implement|update|refactor|build|make)\b", re.I),
    ),
    (TaskKind.COMPARE, re.compile(r"\b(compare|diff)\b", re.I)),
    (TaskKind.VERIFY, re.compile(r"\b(test|verify|check|validate)\b", re.I)),
)


@dataclass(slots=True)
class FailureContext:
    """What went wrong during a write, fed back to the generative collaborator."""

    operation: str
    error_message: str
    error_type: str = "unknown"
    suggestions: List[str] = field(default_factory=list)
    attempted_content_excerpt: str = ""


@dataclass(slots=True)
class ClarificationRequest:
    """A follow-up instruction raised instead of guessing.

    ``kind`` is ``conflict`` (create over an existing file), ``missing``
    (modify of an absent file), ``failure`` (collaborator error),
    ``question`` (the model itself asked something) or ``validation`` (the
    plan failed its consistency checks before anything ran).
    """

    target_path: str
    prompt_text: str
    original_request: str = ""
    kind: str = "question"
    file_exists: Optional[bool] = None
    preview: str = ""
    alternatives: List[str] = field(default_factory=list)
    failure_context: Optional[FailureContext] = None

    def summary(self) -> str:
        label = self.target_path or "request"
        return f"Clarification needed ({self.kind}) for {label}"


@dataclass(slots=True)
class TaskResult:
    """Outcome of one task; failures are data, never exceptions."""

    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    clarifications: List[ClarificationRequest] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowTask:
    """One executable unit inside a workflow."""

    id: str
    kind: TaskKind
    description: str
    stage: WorkflowStage
    target: Optional[str] = None
    content: Optional[str] = None
    command: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[TaskResult] = None


@dataclass(slots=True)
class WorkflowContext:
    """Tasks and results for a single approved plan.

    Only the executor mutates a context; a new one is compiled whenever the
    plan is replaced.
    """

    tasks: List[WorkflowTask]
    request: str = ""
    project_root: Path = field(default_factory=Path.cwd)
    plan: Optional[GeneratedPlan] = None
    raw_response: str = ""
    context_files: List[str] = field(default_factory=list)
    results: Dict[str, TaskResult] = field(default_factory=dict)
    clarifications: List[ClarificationRequest] = field(default_factory=list)

    def task(self, task_id: str) -> Optional[WorkflowTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def status_of(self, task_id: str) -> Optional[TaskStatus]:
        task = self.task(task_id)
        return task.status if task is not None else None

    def results_for(self, kind: TaskKind) -> List[TaskResult]:
        return [
            self.results[task.id]
            for task in self.tasks
            if task.kind == kind and task.id in self.results
        ]


def _task_kind(raw: str) -> TaskKind:
    value = (raw or "").strip().lower().replace("-", "_")
    try:
        return TaskKind(value)
    except ValueError:
        kind = _KIND_ALIASES.get(value)
        if kind is None:
            LOGGER.warning("Unknown task type %r treated as info", raw)
            return TaskKind.INFO
        return kind


def analyze_request(text: str) -> List[TaskKind]:
    """Estimate which task kinds a free-form request implies."""
    kinds = [kind for kind, pattern in _REQUEST_INTENTS if pattern.search(text or "")]
    if TaskKind.MODIFY_SOURCE in kinds:
        for prerequisite in (TaskKind.FIND_FILES, TaskKind.ANALYZE_SOURCE):
            if prerequisite not in kinds:
                kinds.append(prerequisite)
    if not kinds:
        kinds = [TaskKind.ANALYZE_SOURCE]
    order = list(TaskKind)
    return sorted(kinds, key=order.index)


def _resolve_dependency(reference: str, tasks: List[WorkflowTask], definitions: List[TaskDefinition]) -> Optional[str]:
    for task in tasks:
        if task.id == reference:
            return task.id
    for task, definition in zip(tasks, definitions):
        if definition.description and definition.description.strip() == reference.strip():
            return task.id
    if reference.isdigit():
        candidate = f"task-{reference}"
        if any(task.id == candidate for task in tasks):
            return candidate
    return None


def _unique_id(base: str, taken: Set[str]) -> str:
    candidate = base
    suffix = 1
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def _from_definitions(definitions: List[TaskDefinition]) -> List[WorkflowTask]:
    tasks: list[WorkflowTask] = []
    used: set[str] = set()
    explicit = {(definition.id or "").strip() for definition in definitions} - {""}
    for index, definition in enumerate(definitions):
        task_id = (definition.id or "").strip()
        if not task_id or task_id in used:
            task_id = _unique_id(task_id or f"task-{index}", used | explicit)
        used.add(task_id)
        kind = _task_kind(definition.type)
        tasks.append(
            WorkflowTask(
                id=task_id,
                kind=kind,
                description=definition.description or kind.value,
                stage=DEFAULT_STAGES[kind],
                target=definition.target,
                content=definition.content,
                command=definition.command,
            )
        )

    for index, (task, definition) in enumerate(zip(tasks, definitions)):
        if definition.dependencies:
            for reference in definition.dependencies:
                resolved = _resolve_dependency(reference, tasks, definitions)
                if resolved is None or resolved == task.id:
                    LOGGER.warning("Task %s has an unresolvable dependency %r", task.id, reference)
                    continue
                if resolved not in task.dependencies:
                    task.dependencies.append(resolved)
        elif index > 0:
            task.dependencies.append(tasks[index - 1].id)
    return tasks


def _synthesized(kinds: Iterable[TaskKind], plan: Optional[GeneratedPlan]) -> List[WorkflowTask]:
    """Build the default discovery-to-apply pipeline for plans without explicit tasks."""
    tasks: list[WorkflowTask] = []
    ids: Dict[TaskKind, str] = {}
    order_text = "; ".join(plan.plan.execution_order) if plan and plan.plan else ""

    def add(kind: TaskKind, description: str, depends_on: Sequence[TaskKind] = ()) -> None:
        task_id = f"task-{len(tasks)}"
        ids[kind] = task_id
        tasks.append(
            WorkflowTask(
                id=task_id,
                kind=kind,
                description=description,
                stage=DEFAULT_STAGES[kind],
                dependencies=[ids[dep] for dep in depends_on if dep in ids],
            )
        )

    wanted = set(kinds)
    if TaskKind.INSTALL in wanted:
        add(TaskKind.INSTALL, "Install required packages")
    if TaskKind.FIND_FILES in wanted:
        add(TaskKind.FIND_FILES, "Locate the files the plan touches")
    if TaskKind.ANALYZE_SOURCE in wanted:
        add(TaskKind.ANALYZE_SOURCE, "Read the located source files", (TaskKind.FIND_FILES,))
    if TaskKind.MODIFY_SOURCE in wanted:
        add(
            TaskKind.MODIFY_SOURCE,
            order_text or "Write planned file contents",
            (TaskKind.ANALYZE_SOURCE,),
        )
    if TaskKind.COMPARE in wanted:
        add(TaskKind.COMPARE, "Compare the written files with the plan", (TaskKind.MODIFY_SOURCE,))
    if TaskKind.VERIFY in wanted:
        add(TaskKind.VERIFY, "Verify the changes", (TaskKind.MODIFY_SOURCE,))
    if TaskKind.APPLY in wanted:
        add(TaskKind.APPLY, "Apply the verified changes", (TaskKind.VERIFY,))
    return tasks


def _plan_kinds(plan: GeneratedPlan) -> List[TaskKind]:
    kinds: list[TaskKind] = []
    if plan.packages:
        kinds.append(TaskKind.INSTALL)
    kinds.extend([TaskKind.FIND_FILES, TaskKind.ANALYZE_SOURCE])
    if plan.planned_paths() or plan.code_blocks:
        kinds.extend([TaskKind.MODIFY_SOURCE, TaskKind.COMPARE])
    kinds.extend([TaskKind.VERIFY, TaskKind.APPLY])
    return kinds


def resolve_execution_order(tasks: Sequence[WorkflowTask]) -> List[WorkflowTask]:
    """Order tasks by stage, then pull dependencies ahead of their dependents.

    A dependency cycle is broken at the point it is detected and logged.
    """
    by_id = {task.id: task for task in tasks}
    ranked = sorted(enumerate(tasks), key=lambda item: (item[1].stage.rank, item[0]))
    ordered: list[WorkflowTask] = []
    done: set[str] = set()
    visiting: set[str] = set()

    def visit(task: WorkflowTask) -> None:
        if task.id in done:
            return
        if task.id in visiting:
            LOGGER.warning("Dependency cycle detected at task %s; breaking it", task.id)
            return
        visiting.add(task.id)
        for dependency in task.dependencies:
            upstream = by_id.get(dependency)
            if upstream is not None:
                visit(upstream)
        visiting.discard(task.id)
        done.add(task.id)
        ordered.append(task)

    for _, task in ranked:
        visit(task)
    return ordered


def compile_workflow(
    plan: Optional[GeneratedPlan],
    *,
    request: str = "",
    raw_response: str = "",
    project_root: Path | str | None = None,
    context_files: Sequence[str] = (),
) -> WorkflowContext:
    """Turn ``plan`` into a :class:`WorkflowContext` ready for the runner.

    Explicit ``tasks`` map one-to-one onto workflow tasks, each depending on
    its predecessor unless the plan names dependencies. Plans without tasks get
    the synthesized discovery, write and verify pipeline; with no plan at all
    the request text decides which steps are needed.
    """
    if plan is not None and plan.tasks:
        tasks = _from_definitions(plan.tasks)
    elif plan is not None and (plan.plan is not None or plan.code_blocks):
        tasks = _synthesized(_plan_kinds(plan), plan)
    else:
        tasks = _synthesized(analyze_request(request), plan)

    root = Path(project_root) if project_root is not None else Path.cwd()
    return WorkflowContext(
        tasks=tasks,
        request=request,
        project_root=root,
        plan=plan,
        raw_response=raw_response,
        context_files=list(context_files),
    )
