"""Semantic checks that decide whether a recovered plan is safe to execute."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..schema import GeneratedPlan, PlanPhase, is_rejected_package_name, normalize_path
from .inference import HeuristicInference, InferenceEngine

__all__ = [
    "PLACEHOLDER_PATTERNS",
    "ValidationReport",
    "build_clarification_prompt",
    "contains_placeholder",
    "is_unclear_path",
    "validate_plan",
]

PLACEHOLDER_PATTERNS = (
    re.compile(r"//\s*TODO"),
    re.compile(r"//\s*\.\.\."),
    re.compile(r"/\*\s*\.\.\.\s*\*/"),
    re.compile(r"\.\.\.\s*implementation\s*\.\.\.", re.IGNORECASE),
)

_UNSTRUCTURED_LIMIT = 100
_MAX_MODIFY_FILES = 5
_INSTALL_MENTION = re.compile(r"\binstall", re.IGNORECASE)

ExistsOracle = Callable[[str], bool]


@dataclass(slots=True)
class ValidationReport:
    """Hard issues block execution; questions ask the model to clarify."""

    issues: List[str] = field(default_factory=list)
    questions: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues and not self.questions

    @property
    def needs_clarification(self) -> bool:
        return bool(self.questions)

    def add_issue(self, message: str) -> None:
        if message not in self.issues:
            self.issues.append(message)

    def add_question(self, message: str) -> None:
        if message not in self.questions:
            self.questions.append(message)


def contains_placeholder(content: str) -> bool:
    """Return True when ``content`` still carries elided or TODO code."""
    return any(pattern.search(content or "") for pattern in PLACEHOLDER_PATTERNS)


def is_unclear_path(path: Optional[str]) -> bool:
    """Empty, wildcard and implausibly short paths cannot be executed safely."""
    candidate = normalize_path(path)
    return not candidate or "*" in candidate or "?" in candidate or len(candidate) < 3


def _install_implied(plan: GeneratedPlan) -> bool:
    if any(task.type == "install" for task in plan.tasks):
        return True
    texts = [plan.analysis]
    if plan.plan is not None:
        texts.extend(plan.plan.execution_order)
    return any(_INSTALL_MENTION.search(text or "") for text in texts)


def _task_targets(plan: GeneratedPlan) -> List[str]:
    targets: list[str] = []
    for task in plan.tasks:
        if task.type not in {"create", "modify"} or is_unclear_path(task.target):
            continue
        if not (task.content or "").strip():
            path = normalize_path(task.target)
            if path not in targets:
                targets.append(path)
    return targets


def validate_plan(
    plan: Optional[GeneratedPlan],
    raw_text: Optional[str] = None,
    *,
    exists: Optional[ExistsOracle] = None,
    min_block_length: int = 10,
    inference: Optional[InferenceEngine] = None,
) -> ValidationReport:
    """Check ``plan`` for schema and semantic consistency.

    ``exists`` is an optional file-existence oracle; when supplied, create
    targets that already exist and modify targets that do not are turned into
    clarification questions instead of being discovered at write time.
    """
    report = ValidationReport()
    engine = inference or HeuristicInference()

    if plan is None:
        text = raw_text or ""
        if len(text) > _UNSTRUCTURED_LIMIT and "```" not in text:
            report.add_issue("Response is unstructured text without a fenced JSON block.")
        else:
            report.add_issue("No structured payload with phase, plan or tasks was found.")
        return report

    for question in plan.questions:
        report.add_question(question)

    if plan.is_clear is False and not plan.questions:
        report.add_issue("isClear is false but no questions were provided.")

    if plan.phase == PlanPhase.PLANNING and plan.plan is None:
        report.add_issue("Planning phase response is missing the plan section.")

    if plan.phase == PlanPhase.EXECUTION and not plan.tasks:
        report.add_issue("Execution phase response is missing tasks.")

    details = plan.plan
    if details is not None:
        if plan.is_clear is not False and not details.execution_order:
            report.add_issue("Plan is missing executionOrder.")

        if len(details.files_to_modify) > _MAX_MODIFY_FILES:
            report.add_question(
                f"The plan modifies {len(details.files_to_modify)} files. Should all of them really change?"
            )

        for planned in details.planned_files():
            if is_unclear_path(planned.path):
                report.add_question(f"Which exact file is meant by '{planned.path}'? Give a concrete path.")

        for planned in details.files_to_create:
            if planned.file_exists is True:
                report.add_question(
                    f"'{planned.normalized_path}' is marked as existing but listed for creation. Should it be modified instead?"
                )

    if _install_implied(plan) and not plan.packages:
        task_packages = [
            name
            for task in plan.tasks
            if task.type == "install"
            for name in [
                *engine.packages_from_command(task.command or ""),
                *([task.target] if task.target and len(task.target.strip()) >= 2 else []),
            ]
            if not is_rejected_package_name(name)
        ]
        if not task_packages:
            report.add_question("An installation is implied. Which exact packages should be installed?")

    _check_tasks(plan, report, engine)

    if plan.is_clear is not False:
        _check_coverage(plan, report, min_block_length)

    if exists is not None:
        for path in plan.create_paths():
            if not is_unclear_path(path) and exists(path):
                report.add_question(
                    f"'{path}' already exists. Use a different path, switch to MODIFY, or back it up first?"
                )
        for path in plan.modify_paths():
            if not is_unclear_path(path) and not exists(path):
                report.add_question(f"'{path}' does not exist. Should it be created instead?")

    return report


def _check_tasks(plan: GeneratedPlan, report: ValidationReport, engine: InferenceEngine) -> None:
    modify_tasks = [task for task in plan.tasks if task.type == "modify"]
    if len(modify_tasks) > _MAX_MODIFY_FILES:
        report.add_question(
            f"There are {len(modify_tasks)} modify tasks. Should all of those files really change?"
        )

    for index, task in enumerate(plan.tasks):
        label = task.id or f"task {index + 1}"
        if task.type in {"create", "modify"} and is_unclear_path(task.target):
            verb = "created" if task.type == "create" else "modified"
            report.add_question(f"{label}: which exact file should be {verb}? '{task.target or ''}' is unclear.")

        if task.type == "command" and not (task.command or "").strip():
            report.add_issue(f"{label}: command task has no command.")

        if task.command and task.description:
            named = engine.build_tools_in(task.description)
            invoked = engine.command_tool(task.command)
            if named and invoked and invoked not in named:
                report.add_issue(
                    f"{label}: description names {', '.join(sorted(named))} but the command invokes {invoked}."
                )


def _check_coverage(plan: GeneratedPlan, report: ValidationReport, min_block_length: int) -> None:
    needed: list[str] = []
    for path in [*plan.planned_paths(), *_task_targets(plan)]:
        if path and not is_unclear_path(path) and path not in needed:
            needed.append(path)

    if needed and not plan.code_blocks:
        report.add_issue(f"No codeBlocks provided for planned files: {', '.join(needed)}")
    else:
        block_paths = plan.code_block_paths()
        missing = [path for path in needed if path not in block_paths]
        if missing:
            report.add_issue(f"Missing code blocks: {', '.join(missing)}")
        duplicates = sorted({path for path in block_paths if block_paths.count(path) > 1})
        if duplicates:
            report.add_issue(f"Duplicate code blocks: {', '.join(duplicates)}")
        if needed:
            declared = set(needed) | {
                normalize_path(task.target)
                for task in plan.tasks
                if task.type in {"create", "modify"} and task.target
            }
            unplanned = [path for path in dict.fromkeys(block_paths) if path not in declared]
            if unplanned:
                report.add_issue(f"Code blocks for files outside the plan: {', '.join(unplanned)}")

    for block in plan.code_blocks:
        label = block.normalized_path or "<unnamed>"
        if not block.normalized_path:
            report.add_issue("A code block has no filePath.")
        if len(block.content.strip()) < min_block_length:
            report.add_issue(f"Code block for {label} is empty or too short.")
        elif contains_placeholder(block.content):
            report.add_issue(f"Code block for {label} contains placeholder code.")


def build_clarification_prompt(
    original_request: str,
    report: ValidationReport,
    previous_response: Optional[str] = None,
) -> str:
    """Ask the model to resend a corrected payload that resolves ``report``."""
    lines = [
        "Your previous response could not be executed as-is.",
        "",
        f"Original request: {original_request}",
    ]
    if report.issues:
        lines.append("")
        lines.append("Problems found:")
        lines.extend(f"- {issue}" for issue in report.issues)
    if report.questions:
        lines.append("")
        lines.append("Open questions (answer them yourself from the project context):")
        lines.extend(f"{index}. {question}" for index, question in enumerate(report.questions, 1))
    if previous_response:
        excerpt = previous_response.strip()[:500]
        lines.extend(["", "Previous response excerpt:", excerpt])
    lines.extend(
        [
            "",
            "Reply with one ```json block containing the complete corrected payload.",
            "Every file in filesToCreate and filesToModify needs exactly one matching codeBlock with full content.",
        ]
    )
    return "\n".join(lines)
