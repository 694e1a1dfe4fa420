"""CLI commands for extracting, validating and executing model-generated plans."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    ExecutionSettings,
    FeedbackSettings,
    load_config,
    resolve_project_root,
)
from .errors import ConfigError, GenerationError, RecordNotFoundError
from .feedback import IterationManager, format_evaluation, save_report
from .memory.records import PlanningRecordStore
from .models import ChatCompletionsClient, GenerativeClient, ScriptedClient
from .orchestrator import Pipeline, PipelineResult, RunLogWriter
from .planning.executor import TaskExecutor, WorkflowRunner, WorkflowSummary
from .planning.extraction import extract
from .planning.validation import ValidationReport, validate_plan
from .planning.workflow import compile_workflow
from .prompts import SYSTEM_PROMPT
from .schema import GeneratedPlan
from .sessions import SessionRegistry
from .tools.commands import ShellCommandRunner
from .tools.diagnostics import FileVerifier
from .tools.files import LocalFileCollaborator

APP_HELP = "planwright CLI: turn model responses into validated, executed plans."

app = typer.Typer(help=APP_HELP)
plans_app = typer.Typer(help="Manage saved planning records.")
app.add_typer(plans_app, name="plans")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging before any command runs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config: str) -> Tuple[Path, Dict[str, Any]]:
    config_path = Path(config)
    try:
        return config_path, load_config(config_path)
    except ConfigError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1)


def _project_root(config_data: Dict[str, Any], config_path: Path, project: Optional[Path]) -> Path:
    if project is not None:
        return project.resolve()
    return resolve_project_root(config_data, config_path)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as error:
        typer.echo(f"Cannot read {path}: {error}")
        raise typer.Exit(code=1)


def _load_responses(path: Path) -> List[str]:
    """Load canned responses: a JSON list of strings, or the whole file as one response."""
    text = _read_text(path)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return [text]
    if isinstance(data, list) and data and all(isinstance(item, str) for item in data):
        return list(data)
    return [text]


def _build_client(config_data: Dict[str, Any], responses: Optional[Path]) -> GenerativeClient:
    """Select the scripted replay client or the chat-completions client."""
    if responses is not None:
        typer.echo(f"Using scripted responses from {responses}.")
        return ScriptedClient(_load_responses(responses), repeat_last=True)

    models_cfg = config_data.get("models") or {}
    client_kwargs: Dict[str, Any] = {"system_prompt": SYSTEM_PROMPT}
    model_name = models_cfg.get("default")
    if isinstance(model_name, str) and model_name.strip():
        client_kwargs["model"] = model_name.strip()
    base_url = models_cfg.get("base_url")
    if isinstance(base_url, str) and base_url.strip():
        client_kwargs["base_url"] = base_url.strip()
    timeout = models_cfg.get("timeout")
    if isinstance(timeout, (int, float)) and not isinstance(timeout, bool) and timeout > 0:
        client_kwargs["timeout"] = float(timeout)
    temperature = models_cfg.get("temperature")
    if isinstance(temperature, (int, float)) and not isinstance(temperature, bool):
        client_kwargs["temperature"] = float(temperature)
    max_tokens = models_cfg.get("max_tokens")
    if isinstance(max_tokens, int) and not isinstance(max_tokens, bool) and max_tokens > 0:
        client_kwargs["max_tokens"] = max_tokens
    api_key = models_cfg.get("api_key")
    if isinstance(api_key, str) and api_key.strip():
        client_kwargs["api_key"] = api_key.strip()

    try:
        return ChatCompletionsClient(**client_kwargs)
    except ValueError as error:
        if "api key" in str(error).lower():
            typer.echo(
                "No API key given. Set PLANWRIGHT_API_KEY, XAI_API_KEY or OPENAI_API_KEY, "
                "or pass --responses FILE to replay canned responses."
            )
        else:
            typer.echo(f"Failed to initialise the model client: {error}")
        raise typer.Exit(code=1)


def _plan_from_text(text: str) -> Optional[GeneratedPlan]:
    """Accept saved planning records as well as raw model responses."""
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        document = None
    if isinstance(document, dict) and isinstance(document.get("planning"), dict):
        return extract(json.dumps(document["planning"])).plan
    return extract(text).plan


def _render_report(report: ValidationReport) -> None:
    for issue in report.issues:
        typer.echo(f"! {issue}")
    for index, question in enumerate(report.questions, 1):
        typer.echo(f"? {index}. {question}")


def _render_summary(summary: WorkflowSummary) -> None:
    if not summary.order:
        typer.echo("No tasks to execute.")
        return
    for task in summary.order:
        message = task.result.message if task.result is not None else ""
        typer.echo(f"- [{task.status.value}] {task.id} ({task.kind.value}): {message}")
    if summary.cancelled:
        typer.echo("Execution was cancelled.")
    for request in summary.clarifications:
        typer.echo(f"  ? {request.prompt_text}")
        for alternative in request.alternatives:
            typer.echo(f"      - {alternative}")


def _render_pipeline(result: PipelineResult) -> None:
    outcome = result.outcome
    for summary in result.summaries:
        _render_summary(summary)
    typer.echo(f"Clarification rounds: {outcome.depth}")
    if result.written:
        typer.echo(f"Written: {', '.join(result.written)}")
    if result.record_path is not None:
        typer.echo(f"Saved planning record {result.record_path.name}")
    typer.echo(outcome.message)
    for question in outcome.open_questions:
        typer.echo(f"? {question}")


@app.command("extract")
def extract_command(
    file: Path = typer.Argument(..., help="File holding a raw model response."),
) -> None:
    """Print the normalized payload recovered from a model response."""
    result = extract(_read_text(file))
    if result.plan is None:
        typer.echo(f"No structured payload found: {result.reason or 'unknown reason'}")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result.plan.to_payload(), indent=2, ensure_ascii=False))


@app.command()
def validate(
    file: Path = typer.Argument(..., help="File holding a raw model response or planning record."),
    project: Optional[Path] = typer.Option(
        None, "--project", "-p", help="Project root used to check file existence."
    ),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planwright configuration file.",
    ),
) -> None:
    """Check a response for schema and semantic consistency."""
    _, config_data = _load(config)
    settings = ExecutionSettings.from_config(config_data)
    text = _read_text(file)
    plan = _plan_from_text(text)
    files = LocalFileCollaborator()
    root = project.resolve() if project is not None else None

    def exists(path: str) -> bool:
        return root is not None and files.exists(path, root)

    report = validate_plan(
        plan,
        text,
        exists=exists if root is not None else None,
        min_block_length=settings.min_code_block_length,
    )
    if report.is_valid:
        typer.echo("Plan is valid.")
        return
    _render_report(report)
    raise typer.Exit(code=1)


@app.command()
def run(
    file: Path = typer.Argument(..., help="File holding a raw model response or planning record."),
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Project root to execute against."),
    request: str = typer.Option("", "--request", "-r", help="Original user request, for follow-up prompts."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planwright configuration file.",
    ),
) -> None:
    """Execute a saved plan against a project without calling the model."""
    config_path, config_data = _load(config)
    settings = ExecutionSettings.from_config(config_data)
    root = _project_root(config_data, config_path, project)
    text = _read_text(file)
    plan = _plan_from_text(text)
    if plan is None:
        typer.echo("No structured payload found; nothing to execute.")
        raise typer.Exit(code=1)

    files = LocalFileCollaborator()
    commands = ShellCommandRunner(settings.allowed_commands)
    verifier = FileVerifier(commands, files, max_attempts=settings.max_fix_attempts)
    executor = TaskExecutor(files, commands, settings=settings, verifier=verifier)
    runner = WorkflowRunner(executor, delay_ms=settings.task_delay_ms)
    context = compile_workflow(plan, request=request, raw_response=text, project_root=root)
    summary = runner.run(context)
    _render_summary(summary)
    if not summary.succeeded:
        raise typer.Exit(code=1)


def _pipeline(
    config_data: Dict[str, Any],
    config_path: Path,
    project: Optional[Path],
    responses: Optional[Path],
) -> Pipeline:
    settings = ExecutionSettings.from_config(config_data)
    root = _project_root(config_data, config_path, project)
    paths_cfg = config_data.get("paths") or {}
    session = SessionRegistry().create(root)
    return Pipeline(
        _build_client(config_data, responses),
        LocalFileCollaborator(),
        ShellCommandRunner(settings.allowed_commands),
        session=session,
        settings=settings,
        record_store=PlanningRecordStore(root, str(paths_cfg.get("planning") or "planning")),
        log_writer=RunLogWriter(root / str(paths_cfg.get("logs") or ".planwright/logs")),
    )


@app.command()
def ask(
    request: str = typer.Argument(..., help="What you want done in the project."),
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Project root to work in."),
    execute: bool = typer.Option(
        True, "--execute/--no-execute", help="Run the accepted plan after clarification."
    ),
    responses: Optional[Path] = typer.Option(
        None, "--responses", help="Replay canned responses from a file instead of calling the model."
    ),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planwright configuration file.",
    ),
) -> None:
    """Ask the model for a plan, resolve its questions and execute it."""
    config_path, config_data = _load(config)
    pipeline = _pipeline(config_data, config_path, project, responses)
    try:
        if not execute:
            asked = pipeline.ask(request)
            if asked.plan is None:
                typer.echo(asked.response)
                raise typer.Exit(code=1)
            typer.echo(json.dumps(asked.plan.to_payload(), indent=2, ensure_ascii=False))
            _render_report(asked.report)
            return
        result = pipeline.run(request)
    except GenerationError as error:
        typer.echo(f"Model request failed: {error}")
        raise typer.Exit(code=1)
    _render_pipeline(result)
    if not result.resolved:
        raise typer.Exit(code=1)


@app.command()
def iterate(
    request: str = typer.Argument(..., help="Request to refine until the response is usable."),
    report: Optional[Path] = typer.Option(None, "--report", help="Write a Markdown report to this path."),
    responses: Optional[Path] = typer.Option(
        None, "--responses", help="Replay canned responses from a file instead of calling the model."
    ),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planwright configuration file.",
    ),
) -> None:
    """Run the score-and-enhance feedback loop for a request."""
    _, config_data = _load(config)
    manager = IterationManager(
        _build_client(config_data, responses),
        settings=FeedbackSettings.from_config(config_data),
    )
    try:
        result = manager.iterate(request)
    except GenerationError as error:
        typer.echo(f"Model request failed: {error}")
        raise typer.Exit(code=1)

    typer.echo(format_evaluation(result.final_evaluation))
    typer.echo(f"Iterations: {result.iterations} ({'success' if result.success else 'failed'})")
    if report is not None:
        saved = save_report(result, report)
        typer.echo(f"Report written to {saved}")
    if not result.success:
        raise typer.Exit(code=1)


def _record_store(config: str, project: Optional[Path]) -> PlanningRecordStore:
    config_path, config_data = _load(config)
    paths_cfg = config_data.get("paths") or {}
    root = _project_root(config_data, config_path, project)
    return PlanningRecordStore(root, str(paths_cfg.get("planning") or "planning"))


@plans_app.command("list")
def plans_list(
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Project root."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planwright configuration file.",
    ),
) -> None:
    """List saved planning records, newest first."""
    records = _record_store(config, project).list()
    if not records:
        typer.echo("No planning records.")
        return
    for record in records:
        typer.echo(
            f"{record.filename}  {record.created_at or '-'}  "
            f"create={record.files_to_create} modify={record.files_to_modify}  {record.user_request}"
        )


@plans_app.command("show")
def plans_show(
    name: str = typer.Argument(..., help="Record file name."),
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Project root."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planwright configuration file.",
    ),
) -> None:
    """Print a saved planning record."""
    try:
        record = _record_store(config, project).read(name)
    except RecordNotFoundError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1)
    typer.echo(
        json.dumps({"metadata": record.metadata, "planning": record.planning}, indent=2, ensure_ascii=False)
    )


@plans_app.command("delete")
def plans_delete(
    name: str = typer.Argument(..., help="Record file name."),
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Project root."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planwright configuration file.",
    ),
) -> None:
    """Delete a saved planning record."""
    try:
        _record_store(config, project).delete(name)
    except RecordNotFoundError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1)
    typer.echo(f"Deleted {name}")


if __name__ == "__main__":
    app()
