"""End-to-end pipeline: prompt, extract, validate, clarify, execute and record."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import ExecutionSettings
from .errors import GenerationError
from .memory.records import PlanningRecordStore
from .models.client import GenerativeClient
from .planning.clarification import ClarificationLoop, ClarificationOutcome, ExecutionFeedback
from .planning.executor import TaskExecutor, WorkflowRunner, WorkflowSummary
from .planning.extraction import extract
from .planning.inference import HeuristicInference, InferenceEngine
from .planning.validation import ValidationReport, build_clarification_prompt, validate_plan
from .planning.workflow import ClarificationRequest, FailureContext, TaskStatus, WorkflowTask, compile_workflow
from .prompts import build_user_prompt, detect_project_type
from .schema import GeneratedPlan
from .sessions import Session
from .tools.commands import CommandCollaborator
from .tools.diagnostics import FileVerifier
from .tools.files import FileCollaborator
from .utils.slug import slugify

__all__ = [
    "AskResult",
    "CONTEXT_FILE_CANDIDATES",
    "Pipeline",
    "PipelineResult",
    "RunLogWriter",
]

LOGGER = logging.getLogger(__name__)

CONTEXT_FILE_CANDIDATES = (
    "package.json",
    "tsconfig.json",
    "next.config.js",
    "next.config.ts",
    "pyproject.toml",
    "requirements.txt",
)


def _json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if is_dataclass(value) and not isinstance(value, type):
        return _json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        try:
            return _json_safe(value.model_dump(mode="json", by_alias=True))
        except TypeError:
            pass
    if isinstance(value, Mapping):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


class RunLogWriter:
    """Persists one JSON document per generation call for later diagnosis.

    Failures to write are swallowed after a warning; logging never stops a run.
    """

    def __init__(self, logs_root: Path | str) -> None:
        self._root = Path(logs_root)

    @property
    def root(self) -> Path:
        return self._root

    def write(
        self,
        kind: str,
        *,
        request: str,
        prompt: str,
        history_length: int,
        response: Optional[str],
        extracted: bool,
        error: Optional[BaseException] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Path]:
        now = datetime.now(timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": now.isoformat(),
            "kind": kind,
            "request": request,
            "prompt": prompt,
            "historyLength": history_length,
            "response": response,
            "extracted": extracted,
        }
        if error is not None:
            entry["error"] = str(error)
        if extra:
            entry["extra"] = _json_safe(dict(extra))

        parts = [
            "run",
            slugify(kind, fallback="call"),
            slugify(request, max_length=40),
            now.strftime("%Y%m%dT%H%M%S%fZ"),
        ]
        path = self._root / ("__".join(parts) + ".json")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
        except OSError as exc:
            LOGGER.warning("Could not write run log %s: %s", path, exc)
            return None
        return path


@dataclass(slots=True)
class AskResult:
    """One generate, extract and validate pass."""

    request: str
    prompt: str
    response: str
    plan: Optional[GeneratedPlan]
    report: ValidationReport
    extraction_reason: str = ""


@dataclass(slots=True)
class PipelineResult:
    ask: AskResult
    outcome: ClarificationOutcome
    summaries: List[WorkflowSummary] = field(default_factory=list)
    record_path: Optional[Path] = None

    @property
    def resolved(self) -> bool:
        return self.outcome.resolved

    @property
    def written(self) -> List[str]:
        paths: list[str] = []
        for summary in self.summaries:
            for result in summary.context.results.values():
                for path in result.data.get("written", []) or []:
                    if path not in paths:
                        paths.append(path)
        return paths


def _unreported_failures(summary: WorkflowSummary, request: str) -> List[ClarificationRequest]:
    """Turn failed tasks that raised no clarification of their own into failure requests."""
    requests: list[ClarificationRequest] = []
    for task in summary.with_status(TaskStatus.FAILED):
        if task.result is None or task.result.clarifications:
            continue
        requests.append(
            ClarificationRequest(
                target_path=task.target or task.command or "",
                kind="failure",
                original_request=request,
                prompt_text=task.result.message,
                failure_context=FailureContext(
                    operation=task.kind.value,
                    error_message=task.result.message,
                    error_type=str(task.result.data.get("errorType") or "task_failed"),
                ),
            )
        )
    return requests


class Pipeline:
    """Wires the generative, file and command collaborators into one workflow.

    The pipeline owns no global state: the session carries conversation
    history and the file cache, and every collaborator is injected.
    """

    def __init__(
        self,
        client: GenerativeClient,
        files: FileCollaborator,
        commands: CommandCollaborator,
        *,
        session: Session,
        settings: Optional[ExecutionSettings] = None,
        record_store: Optional[PlanningRecordStore] = None,
        log_writer: Optional[RunLogWriter] = None,
        inference: Optional[InferenceEngine] = None,
        options: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        on_status: Optional[Callable[[WorkflowTask], None]] = None,
        validate_before_execute: bool = True,
    ) -> None:
        self._client = client
        self._files = files
        self._commands = commands
        self._session = session
        self._settings = settings or ExecutionSettings()
        self._records = record_store
        self._log_writer = log_writer
        self._inference = inference or HeuristicInference()
        self._options = dict(options or {})
        self._cancel = cancel_event or threading.Event()
        self._validate_before_execute = validate_before_execute

        verifier = None
        if self._settings.verify_written_files:
            verifier = FileVerifier(
                commands,
                files,
                client=client,
                max_attempts=self._settings.max_fix_attempts,
            )
        self._executor = TaskExecutor(
            files,
            commands,
            settings=self._settings,
            inference=self._inference,
            verifier=verifier,
            file_cache=session.file_cache,
        )
        runner_kwargs: Dict[str, Any] = {"delay_ms": self._settings.task_delay_ms, "cancel_event": self._cancel}
        if sleep is not None:
            runner_kwargs["sleep"] = sleep
        if on_status is not None:
            runner_kwargs["on_status"] = on_status
        self._runner = WorkflowRunner(self._executor, **runner_kwargs)

    @property
    def session(self) -> Session:
        return self._session

    @property
    def project_root(self) -> Path:
        return self._session.project_root

    def cancel(self) -> None:
        """Stop at the next safe boundary (between tasks or rounds)."""
        self._cancel.set()

    def context_files(self) -> List[Dict[str, str]]:
        """Read well-known project files that ground the model's plan."""
        found: list[Dict[str, str]] = []
        for name in CONTEXT_FILE_CANDIDATES:
            if not self._files.exists(name, self.project_root):
                continue
            content = self._files.read_file(name, self.project_root)
            if content is None:
                continue
            found.append({"path": name, "name": name, "content": content})
        return found

    def _exists(self, path: str) -> bool:
        return self._files.exists(path, self.project_root)

    def ask(self, request: str) -> AskResult:
        """Generate a response for ``request``, then extract and validate it."""
        context = self.context_files()
        package_json = next((item["content"] for item in context if item["name"] == "package.json"), None)
        prompt = build_user_prompt(
            request,
            context_files=context,
            project_type=detect_project_type(package_json),
            history=self._session.history,
        )
        history = list(self._session.history)
        try:
            response = self._client.generate(prompt, history, self._options)
        except GenerationError as error:
            self._log("ask", request, prompt, len(history), None, False, error=error)
            raise
        self._session.record_exchange(prompt, response)
        extraction = extract(response)
        self._log("ask", request, prompt, len(history), response, extraction.plan is not None)
        report = validate_plan(
            extraction.plan,
            response,
            exists=self._exists,
            min_block_length=self._settings.min_code_block_length,
            inference=self._inference,
        )
        return AskResult(
            request=request,
            prompt=prompt,
            response=response,
            plan=extraction.plan,
            report=report,
            extraction_reason=extraction.reason or "",
        )

    def execute(
        self,
        plan: Optional[GeneratedPlan],
        request: str,
        raw_response: str = "",
    ) -> WorkflowSummary:
        """Compile ``plan`` into a workflow and run it task by task."""
        context = compile_workflow(
            plan,
            request=request,
            raw_response=raw_response,
            project_root=self.project_root,
            context_files=[item["path"] for item in self.context_files()],
        )
        summary = self._runner.run(context)
        LOGGER.info(
            "Workflow finished: %d completed, %d failed, %d skipped",
            len(summary.with_status(TaskStatus.COMPLETED)),
            len(summary.with_status(TaskStatus.FAILED)),
            len(summary.with_status(TaskStatus.SKIPPED)),
        )
        return summary

    def run(self, request: str) -> PipelineResult:
        """Ask, resolve clarifications, execute and record the accepted plan."""
        asked = self.ask(request)
        summaries: list[WorkflowSummary] = []

        def execute(plan: GeneratedPlan, response: str) -> ExecutionFeedback:
            if self._validate_before_execute:
                report = validate_plan(
                    plan,
                    response,
                    min_block_length=self._settings.min_code_block_length,
                    inference=self._inference,
                )
                if not report.is_valid:
                    LOGGER.info("Plan failed validation; asking for a corrected payload")
                    return ExecutionFeedback(
                        clarifications=[
                            ClarificationRequest(
                                target_path="",
                                kind="validation",
                                original_request=request,
                                prompt_text=build_clarification_prompt(request, report),
                            )
                        ]
                    )
            summary = self.execute(plan, request, response)
            summaries.append(summary)
            written = [
                path
                for result in summary.context.results.values()
                for path in result.data.get("written", []) or []
            ]
            clarifications = [*summary.clarifications, *_unreported_failures(summary, request)]
            return ExecutionFeedback(clarifications=clarifications, written=written)

        loop = ClarificationLoop(
            self._client,
            max_depth=self._settings.max_clarification_depth,
            options=self._options,
            cancel_event=self._cancel,
        )
        outcome = loop.run(request, asked.response, self._session.history, execute=execute)
        for step in outcome.steps:
            self._log(
                "clarification",
                request,
                step.prompt,
                step.depth,
                step.response,
                extract(step.response).plan is not None,
                extra={"depth": step.depth, "reason": step.reason},
            )
        self._session.history[:] = outcome.history

        record_path = None
        if self._records is not None and outcome.resolved and outcome.plan is not None:
            try:
                record_path = self._records.save(request, outcome.plan.to_payload())
            except OSError as error:
                LOGGER.warning("Could not save planning record: %s", error)
        if not outcome.resolved:
            LOGGER.warning("%s", outcome.message)
        return PipelineResult(ask=asked, outcome=outcome, summaries=summaries, record_path=record_path)

    def _log(
        self,
        kind: str,
        request: str,
        prompt: str,
        history_length: int,
        response: Optional[str],
        extracted: bool,
        *,
        error: Optional[BaseException] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self._log_writer is None:
            return
        self._log_writer.write(
            kind,
            request=request,
            prompt=prompt,
            history_length=history_length,
            response=response,
            extracted=extracted,
            error=error,
            extra=extra,
        )
