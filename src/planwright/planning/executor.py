"""Run compiled workflow tasks against file, command and package collaborators."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import ExecutionSettings
from ..errors import ClarificationRequired, GenerationError
from ..schema import CodeBlock, GeneratedPlan, is_rejected_package_name, normalize_path
from ..tools.commands import CommandCollaborator
from ..tools.diagnostics import FileVerifier
from ..tools.files import FileCollaborator
from .inference import HeuristicInference, InferenceEngine, merge_package_dependencies
from .workflow import (
    ClarificationRequest,
    FailureContext,
    TaskKind,
    TaskResult,
    TaskStatus,
    WorkflowContext,
    WorkflowTask,
    resolve_execution_order,
)

__all__ = [
    "TaskExecutor",
    "WorkflowRunner",
    "WorkflowSummary",
    "alternative_path",
]

LOGGER = logging.getLogger(__name__)

_INSTALL_VERBS = {"npm": "npm install", "yarn": "yarn add", "pnpm": "pnpm add"}
_PREVIEW_LENGTH = 100
_EXCERPT_LENGTH = 200


def alternative_path(path: str) -> str:
    """Suggest a sibling path that does not collide with ``path``."""
    pure = PurePosixPath(normalize_path(path))
    if pure.stem in {"page", "layout", "index"} and pure.parent.name:
        return str(pure.parent.parent / f"{pure.parent.name}-new" / pure.name)
    return str(pure.with_name(f"{pure.stem}-new{pure.suffix}"))


@dataclass(slots=True)
class _FileWrite:
    path: str
    content: str
    declared: Optional[str]
    source: str


class TaskExecutor:
    """Executes exactly one :class:`WorkflowTask` and never raises past :meth:`execute`."""

    def __init__(
        self,
        files: FileCollaborator,
        commands: CommandCollaborator,
        *,
        settings: Optional[ExecutionSettings] = None,
        inference: Optional[InferenceEngine] = None,
        verifier: Optional[FileVerifier] = None,
        file_cache: Optional[Dict[str, str]] = None,
    ) -> None:
        self._files = files
        self._commands = commands
        self._settings = settings or ExecutionSettings()
        self._inference = inference or HeuristicInference()
        self._verifier = verifier
        self._cache = file_cache if file_cache is not None else {}
        self._handlers: Dict[TaskKind, Callable[[WorkflowTask, WorkflowContext], TaskResult]] = {
            TaskKind.INSTALL: self._install,
            TaskKind.FIND_FILES: self._find_files,
            TaskKind.ANALYZE_SOURCE: self._analyze_source,
            TaskKind.MODIFY_SOURCE: self._modify_source,
            TaskKind.CREATE: self._write_task,
            TaskKind.MODIFY: self._write_task,
            TaskKind.COMMAND: self._command,
        }

    def execute(self, task: WorkflowTask, context: WorkflowContext) -> TaskResult:
        """Run ``task``; every failure is captured in the returned :class:`TaskResult`."""
        handler = self._handlers.get(task.kind)
        if handler is None:
            return TaskResult(success=True, message=f"{task.kind.value}: {task.description}")
        try:
            return handler(task, context)
        except ClarificationRequired as clarification:
            return TaskResult(
                success=False,
                message=str(clarification),
                data={"targetPath": clarification.request.target_path},
                clarifications=[clarification.request],
            )
        except GenerationError:
            raise
        except Exception as error:  # noqa: BLE001 - task failures are reported, not raised
            LOGGER.warning("Task %s (%s) failed: %s", task.id, task.kind.value, error)
            return TaskResult(
                success=False,
                message=f"{task.kind.value} failed: {error}",
                data={"errorType": type(error).__name__},
            )

    # install -----------------------------------------------------------------

    def resolve_packages(self, task: WorkflowTask, context: WorkflowContext) -> List[str]:
        """Resolve the package list, most explicit source first."""
        plan = context.plan
        sources: list[Callable[[], List[str]]] = [
            lambda: plan.packages if plan is not None else [],
            lambda: self._subtask_packages(plan),
            lambda: self._own_packages(task),
            lambda: self._inference.packages_from_text(context.raw_response),
        ]
        for source in sources:
            packages = [name for name in _dedupe(source()) if not is_rejected_package_name(name)]
            if packages:
                return packages
        return []

    def _subtask_packages(self, plan: Optional[GeneratedPlan]) -> List[str]:
        if plan is None:
            return []
        packages: list[str] = []
        for definition in plan.tasks:
            if definition.type != "install":
                continue
            if definition.target:
                packages.extend(definition.target.replace(",", " ").split())
            if definition.command:
                packages.extend(self._inference.packages_from_command(definition.command))
        return packages

    def _own_packages(self, task: WorkflowTask) -> List[str]:
        packages: list[str] = []
        if task.target:
            packages.extend(task.target.replace(",", " ").split())
        if not packages and task.command:
            packages.extend(self._inference.packages_from_command(task.command))
        return packages

    def _install(self, task: WorkflowTask, context: WorkflowContext) -> TaskResult:
        packages = self.resolve_packages(task, context)
        if not packages:
            return TaskResult(
                success=False,
                message=(
                    "No packages to install. The plan must list them in plan.packages, "
                    'for example "packages": ["react", "zod"].'
                ),
            )
        verb = _INSTALL_VERBS.get(self._settings.package_manager, _INSTALL_VERBS["npm"])
        command = f"{verb} {' '.join(packages)}"
        outcome = self._commands.run(command, context.project_root)
        data = {
            "packages": packages,
            "command": command,
            "exitCode": outcome.exit_code,
            "stdout": outcome.stdout,
            "stderr": outcome.stderr,
        }
        if outcome.ok:
            return TaskResult(success=True, message=f"Installed {len(packages)} package(s): {', '.join(packages)}", data=data)
        detail = (outcome.stderr or outcome.stdout).strip()[:_EXCERPT_LENGTH]
        message = f"Install of {', '.join(packages)} failed (exit {outcome.exit_code}): {detail}"
        return TaskResult(
            success=False,
            message=message,
            data=data,
            clarifications=[_command_failure("install", command, outcome.exit_code, detail, message, context)],
        )

    # discovery ---------------------------------------------------------------

    def _find_files(self, task: WorkflowTask, context: WorkflowContext) -> TaskResult:
        root = context.project_root
        plan = context.plan
        found: list[str] = []
        source = "plan"
        if plan is not None:
            found = [path for path in plan.planned_paths() if self._files.exists(path, root)]
        if not found:
            source = "code blocks"
            candidates = list(plan.code_block_paths()) if plan is not None else []
            candidates.extend(
                block.normalized_path for block in self._inference.parse_code_blocks(context.raw_response)
            )
            found = [path for path in _dedupe(candidates) if self._files.exists(path, root)]
        if not found:
            source = "context"
            found = [normalize_path(path) for path in context.context_files]
        found = found[: self._settings.find_files_limit]
        files = [{"path": path, "name": PurePosixPath(path).name} for path in found]
        return TaskResult(
            success=True,
            message=f"Found {len(files)} file(s) from {source}" if files else "No existing files matched",
            data={"files": files},
        )

    def _analyze_source(self, task: WorkflowTask, context: WorkflowContext) -> TaskResult:
        paths: list[str] = []
        for result in context.results_for(TaskKind.FIND_FILES):
            paths.extend(entry["path"] for entry in result.data.get("files", []))
        if not paths:
            paths = [normalize_path(path) for path in context.context_files]
        analyzed: list[Dict[str, str]] = []
        for path in _dedupe(paths)[: self._settings.analyze_files_limit]:
            content = self._read(path, context.project_root)
            if content is None:
                LOGGER.debug("Skipping unreadable source %s", path)
                continue
            analyzed.append({"path": path, "content": content})
        return TaskResult(
            success=True,
            message=f"Analyzed {len(analyzed)} file(s)",
            data={"analyzedFiles": analyzed},
        )

    def _read(self, path: str, root: Path) -> Optional[str]:
        key = str((Path(root) / path).as_posix())
        if key in self._cache:
            return self._cache[key]
        content = self._files.read_file(path, root)
        if content is not None:
            self._cache[key] = content
        return content

    # writes ------------------------------------------------------------------

    def _modify_source(self, task: WorkflowTask, context: WorkflowContext) -> TaskResult:
        writes = self._planned_writes(context)
        if not writes:
            return TaskResult(success=False, message="No file content could be resolved for this plan.")
        return self._write_batch(writes, context)

    def _write_task(self, task: WorkflowTask, context: WorkflowContext) -> TaskResult:
        path = normalize_path(task.target)
        if not path:
            return TaskResult(success=False, message=f"{task.kind.value} task has no target path.")
        content = task.content
        source = "task"
        block = context.plan.code_block_for(path) if context.plan is not None else None
        if not _usable(content, self._settings.min_code_block_length) and block is not None:
            content, source = block.content, "codeBlocks"
        if not _usable(content, self._settings.min_code_block_length):
            content, source = self._fallback_content(path, context), "template"
        if content is None:
            return TaskResult(success=False, message=f"No content available for {path}.")
        return self._write_batch([_FileWrite(path, content, task.kind.value, source)], context)

    def _planned_writes(self, context: WorkflowContext) -> List[_FileWrite]:
        """Pick content per target: code blocks, then blocks in free text, then templates."""
        plan = context.plan
        minimum = self._settings.min_code_block_length
        structured: Dict[str, CodeBlock] = {}
        if plan is not None:
            for block in plan.code_blocks:
                if block.normalized_path and block.normalized_path not in structured:
                    structured[block.normalized_path] = block
        textual: Dict[str, CodeBlock] = {}
        if not structured:
            for block in self._inference.parse_code_blocks(context.raw_response, self._analyzed_paths(context)):
                textual.setdefault(block.normalized_path, block)

        create_paths = set(plan.create_paths()) if plan is not None else set()
        modify_paths = set(plan.modify_paths()) if plan is not None else set()
        undeclared = plan.undeclared_action() if plan is not None else None
        targets = _dedupe([*(plan.planned_paths() if plan is not None else []), *structured, *textual])

        writes: list[_FileWrite] = []
        for path in targets:
            declared = "create" if path in create_paths else "modify" if path in modify_paths else undeclared
            content: Optional[str] = None
            source = "template"
            if path in structured and _usable(structured[path].content, minimum):
                content, source = structured[path].content, "codeBlocks"
            elif path in textual and _usable(textual[path].content, minimum):
                content, source = textual[path].content, "text"
            if content is None:
                content = self._fallback_content(path, context)
            if content is None:
                LOGGER.warning("No content could be resolved for %s", path)
                continue
            writes.append(_FileWrite(path, content, declared, source))
        return writes

    def _analyzed_paths(self, context: WorkflowContext) -> List[str]:
        paths: list[str] = []
        for result in context.results_for(TaskKind.ANALYZE_SOURCE):
            paths.extend(entry["path"] for entry in result.data.get("analyzedFiles", []))
        return paths or list(context.context_files)

    def _fallback_content(self, path: str, context: WorkflowContext) -> Optional[str]:
        plan = context.plan
        if PurePosixPath(path).name == "package.json" and plan is not None and plan.packages:
            existing = self._read(path, context.project_root)
            return merge_package_dependencies(existing, plan.packages)
        return self._inference.default_template(path)

    def _write_batch(self, writes: Sequence[_FileWrite], context: WorkflowContext) -> TaskResult:
        """Write each file independently; success means at least one write landed."""
        written: list[str] = []
        failed: list[Dict[str, Any]] = []
        clarifications: list[ClarificationRequest] = []
        diagnostics: list[Dict[str, Any]] = []
        for item in writes:
            try:
                self._write_one(item, context)
            except ClarificationRequired as clarification:
                request = clarification.request
                clarifications.append(request)
                failed.append({"path": item.path, "reason": request.kind, "message": request.prompt_text})
                continue
            written.append(item.path)
            if self._verifier is not None and self._settings.verify_written_files:
                outcome = self._verifier.check_and_fix(item.path, context.project_root, request=context.request)
                diagnostics.append(
                    {
                        "path": item.path,
                        "ok": outcome.report.ok,
                        "skipped": outcome.report.skipped,
                        "fixAttempts": outcome.attempts,
                    }
                )

        total = len(writes)
        message = f"Wrote {len(written)}/{total} file(s)"
        if written:
            message += f": {', '.join(written)}"
        if failed:
            message += f"; not written: {', '.join(entry['path'] for entry in failed)}"
        data: Dict[str, Any] = {"written": written, "failed": failed, "total": total}
        if diagnostics:
            data["diagnostics"] = diagnostics
        return TaskResult(success=bool(written), message=message, data=data, clarifications=clarifications)

    def _write_one(self, item: _FileWrite, context: WorkflowContext) -> None:
        root = context.project_root
        exists = self._files.exists(item.path, root)
        if item.declared == "create" and exists:
            current = self._read(item.path, root) or ""
            alternative = alternative_path(item.path)
            LOGGER.warning("Refusing to create %s: file already exists", item.path)
            raise ClarificationRequired(
                ClarificationRequest(
                    target_path=item.path,
                    kind="conflict",
                    file_exists=True,
                    preview=current[:_PREVIEW_LENGTH],
                    original_request=context.request,
                    alternatives=[
                        f"Create the file at a different path such as {alternative}",
                        f"Switch the action for {item.path} to MODIFY",
                        f"Back up {item.path} before replacing it",
                    ],
                    prompt_text=(
                        f"{item.path} already exists, so it was not created. "
                        f"Current content starts with: {current[:_PREVIEW_LENGTH]!r}. "
                        f"Choose a different path (for example {alternative}), switch to MODIFY, "
                        "or back the file up first, then resend the plan."
                    ),
                )
            )
        if item.declared == "modify" and not exists:
            LOGGER.warning("Refusing to modify %s: file does not exist", item.path)
            raise ClarificationRequired(
                ClarificationRequest(
                    target_path=item.path,
                    kind="missing",
                    file_exists=False,
                    original_request=context.request,
                    alternatives=[
                        f"Switch the action for {item.path} to CREATE",
                        "Check the path against the project's existing files",
                    ],
                    prompt_text=(
                        f"{item.path} does not exist, so it was not modified. "
                        "Switch the action to CREATE or correct the path, then resend the plan."
                    ),
                )
            )

        outcome = self._files.write_file(item.path, root, item.content)
        if outcome.ok:
            self._cache[str((Path(root) / item.path).as_posix())] = item.content.replace("\r\n", "\n")
            LOGGER.info("Wrote %s (%s)", item.path, item.source)
            return
        error_type = outcome.error_type.value if outcome.error_type is not None else "unknown"
        failure = FailureContext(
            operation="create" if not exists else "modify",
            error_message=outcome.message,
            error_type=error_type,
            suggestions=list(outcome.suggestions),
            attempted_content_excerpt=item.content[:_EXCERPT_LENGTH],
        )
        raise ClarificationRequired(
            ClarificationRequest(
                target_path=item.path,
                kind="failure",
                file_exists=exists,
                original_request=context.request,
                alternatives=list(outcome.suggestions),
                failure_context=failure,
                prompt_text=f"Writing {item.path} failed ({error_type}): {outcome.message}",
            )
        )

    # commands ----------------------------------------------------------------

    def _command(self, task: WorkflowTask, context: WorkflowContext) -> TaskResult:
        command = (task.command or "").strip()
        if not command:
            return TaskResult(success=False, message="Command task has no command.")
        outcome = self._commands.run(command, context.project_root)
        data = {
            "command": command,
            "exitCode": outcome.exit_code,
            "stdout": outcome.stdout,
            "stderr": outcome.stderr,
        }
        if outcome.ok:
            return TaskResult(success=True, message=f"Ran {command}", data=data)
        detail = (outcome.stderr or outcome.stdout).strip()[:_EXCERPT_LENGTH]
        message = f"{command} exited with {outcome.exit_code}: {detail}"
        return TaskResult(
            success=False,
            message=message,
            data=data,
            clarifications=[_command_failure("command", command, outcome.exit_code, detail, message, context)],
        )


def _command_failure(
    operation: str,
    command: str,
    exit_code: int,
    detail: str,
    message: str,
    context: WorkflowContext,
) -> ClarificationRequest:
    return ClarificationRequest(
        target_path=command,
        kind="failure",
        original_request=context.request,
        prompt_text=message,
        failure_context=FailureContext(
            operation=operation,
            error_message=detail or f"exit code {exit_code}",
            error_type=f"exit {exit_code}",
            suggestions=[f"Check why `{command}` failed and send a corrected plan."],
        ),
    )


def _usable(content: Optional[str], minimum: int) -> bool:
    return content is not None and len(content.strip()) >= minimum


def _dedupe(items: Sequence[str]) -> List[str]:
    seen: list[str] = []
    for item in items:
        value = item.strip() if isinstance(item, str) else item
        if value and value not in seen:
            seen.append(value)
    return seen


@dataclass(slots=True)
class WorkflowSummary:
    """What happened to each task in a workflow run."""

    context: WorkflowContext
    order: List[WorkflowTask] = field(default_factory=list)
    cancelled: bool = False

    def with_status(self, status: TaskStatus) -> List[WorkflowTask]:
        return [task for task in self.order if task.status == status]

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and all(task.status == TaskStatus.COMPLETED for task in self.order)

    @property
    def clarifications(self) -> List[ClarificationRequest]:
        return list(self.context.clarifications)


class WorkflowRunner:
    """Runs a workflow's tasks one at a time, in stage and dependency order."""

    def __init__(
        self,
        executor: TaskExecutor,
        *,
        delay_ms: int = 500,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_status: Optional[Callable[[WorkflowTask], None]] = None,
    ) -> None:
        self._executor = executor
        self._delay = max(delay_ms, 0) / 1000.0
        self._cancel = cancel_event
        self._sleep = sleep
        self._on_status = on_status

    def _notify(self, task: WorkflowTask) -> None:
        if self._on_status is not None:
            self._on_status(task)

    def run(self, context: WorkflowContext) -> WorkflowSummary:
        order = resolve_execution_order(context.tasks)
        summary = WorkflowSummary(context=context, order=order)
        ran_any = False
        for task in order:
            if self._cancel is not None and self._cancel.is_set():
                LOGGER.info("Workflow cancelled before task %s", task.id)
                summary.cancelled = True
                break
            unmet = [dep for dep in task.dependencies if context.status_of(dep) != TaskStatus.COMPLETED]
            if unmet:
                task.status = TaskStatus.SKIPPED
                task.result = TaskResult(
                    success=False,
                    message=f"Skipped: dependencies not completed ({', '.join(unmet)})",
                )
                context.results[task.id] = task.result
                LOGGER.info("Skipping task %s; unmet dependencies %s", task.id, unmet)
                self._notify(task)
                continue

            if ran_any and self._delay:
                self._sleep(self._delay)
            task.status = TaskStatus.RUNNING
            self._notify(task)
            LOGGER.info("Running task %s (%s): %s", task.id, task.kind.value, task.description)
            result = self._executor.execute(task, context)
            ran_any = True
            task.result = result
            task.status = TaskStatus.COMPLETED if result.success else TaskStatus.FAILED
            context.results[task.id] = result
            context.clarifications.extend(result.clarifications)
            self._notify(task)
        return summary
