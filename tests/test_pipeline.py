from __future__ import annotations

import json
from pathlib import Path

import pytest

from planwright.config import ExecutionSettings
from planwright.errors import GenerationError
from planwright.memory.records import PlanningRecordStore
from planwright.models.client import ScriptedClient
from planwright.orchestrator import Pipeline, RunLogWriter
from planwright.planning.clarification import OutcomeStatus
from planwright.sessions import SessionRegistry
from planwright.tools.commands import ShellCommandRunner
from planwright.tools.files import LocalFileCollaborator

from conftest import TinyProject

HELLO_PAGE = (
    "export default function HelloPage() {\n"
    "  return <main><h1>Hello</h1></main>;\n"
    "}\n"
)


def _response(payload: dict) -> str:
    return "Here is the plan:\n```json\n" + json.dumps(payload) + "\n```"


def _hello_plan(path: str = "app/hello/page.tsx", *, create: bool = True) -> str:
    files_key = "filesToCreate" if create else "filesToModify"
    return _response(
        {
            "phase": "planning",
            "analysis": "Add a hello route using the app router.",
            "isClear": True,
            "plan": {files_key: [path], "executionOrder": [f"Write {path}"]},
            "codeBlocks": [{"filePath": path, "language": "tsx", "content": HELLO_PAGE}],
        }
    )


def _pipeline(project: TinyProject, client: ScriptedClient) -> Pipeline:
    session = SessionRegistry().create(project.root)
    return Pipeline(
        client,
        LocalFileCollaborator(),
        ShellCommandRunner(["echo"]),
        session=session,
        settings=ExecutionSettings(task_delay_ms=0),
        record_store=PlanningRecordStore(project.root),
        log_writer=RunLogWriter(project.root / ".planwright" / "logs"),
        sleep=lambda seconds: None,
    )


def test_run_writes_planned_file_and_saves_record(tiny_project: TinyProject) -> None:
    client = ScriptedClient([_hello_plan()])
    pipeline = _pipeline(tiny_project, client)

    result = pipeline.run("Add a hello page")

    assert result.resolved
    assert result.written == ["app/hello/page.tsx"]
    assert (tiny_project.root / "app" / "hello" / "page.tsx").read_text(encoding="utf-8") == HELLO_PAGE
    assert result.record_path is not None and result.record_path.exists()
    record = json.loads(result.record_path.read_text(encoding="utf-8"))
    assert record["metadata"]["userRequest"] == "Add a hello page"
    assert record["planning"]["codeBlocks"][0]["filePath"] == "app/hello/page.tsx"
    logs = sorted((tiny_project.root / ".planwright" / "logs").glob("run__ask__*.json"))
    assert len(logs) == 1


def test_prompt_carries_context_files_and_project_type(tiny_project: TinyProject) -> None:
    client = ScriptedClient([_hello_plan()])

    asked = _pipeline(tiny_project, client).ask("Add a hello page")

    prompt = client.calls[0].prompt
    assert "package.json" in prompt
    assert "**Project type:** Next.js" in prompt
    assert asked.plan is not None
    assert asked.report.is_valid


def test_conflict_is_resolved_through_follow_up(tiny_project: TinyProject) -> None:
    client = ScriptedClient([_hello_plan("app/page.tsx"), _hello_plan("app/page.tsx", create=False)])
    original = (tiny_project.root / "app" / "page.tsx").read_text(encoding="utf-8")
    pipeline = _pipeline(tiny_project, client)

    result = pipeline.run("Replace the home page")

    assert result.resolved
    assert result.outcome.depth == 1
    assert "app/page.tsx already exists" in client.calls[1].prompt
    assert original != HELLO_PAGE
    assert (tiny_project.root / "app" / "page.tsx").read_text(encoding="utf-8") == HELLO_PAGE
    assert len(result.summaries) == 2


def test_invalid_plan_is_sent_back_before_execution(tiny_project: TinyProject) -> None:
    uncovered = _response(
        {
            "phase": "planning",
            "isClear": True,
            "plan": {"filesToCreate": ["lib/a.ts"], "executionOrder": ["Write lib/a.ts"]},
        }
    )
    client = ScriptedClient([uncovered, _hello_plan()])

    result = _pipeline(tiny_project, client).run("Add a hello page")

    assert result.resolved
    assert "No codeBlocks provided for planned files: lib/a.ts" in client.calls[1].prompt
    assert not (tiny_project.root / "lib" / "a.ts").exists()
    assert len(result.summaries) == 1


def test_model_that_keeps_asking_needs_manual_input(tiny_project: TinyProject) -> None:
    asking = _response({"phase": "planning", "isClear": False, "questions": ["Which page?"]})
    client = ScriptedClient([asking], repeat_last=True)

    result = _pipeline(tiny_project, client).run("Add a page")

    assert result.outcome.status == OutcomeStatus.MANUAL_INTERVENTION
    assert result.outcome.depth == 5
    assert len(client.calls) == 6
    assert result.record_path is None
    assert result.summaries == []


def test_history_accumulates_across_requests(tiny_project: TinyProject) -> None:
    client = ScriptedClient([_hello_plan(), _hello_plan("app/other/page.tsx")])
    pipeline = _pipeline(tiny_project, client)

    pipeline.run("Add a hello page")
    pipeline.run("Add another page")

    assert len(client.calls[1].history) == 2
    assert len(pipeline.session.history) == 4


def test_unreachable_model_aborts_the_run(tiny_project: TinyProject) -> None:
    pipeline = _pipeline(tiny_project, ScriptedClient([]))

    with pytest.raises(GenerationError):
        pipeline.run("Add a hello page")

    logs = list((tiny_project.root / ".planwright" / "logs").glob("*.json"))
    assert len(logs) == 1
    assert "error" in json.loads(logs[0].read_text(encoding="utf-8"))


def test_run_log_writer_survives_unwritable_root(tmp_path: Path) -> None:
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory", encoding="utf-8")

    path = RunLogWriter(blocker).write(
        "ask", request="x", prompt="p", history_length=0, response=None, extracted=False
    )

    assert path is None


def _command_plan(command: str) -> str:
    return _response(
        {
            "phase": "execution",
            "analysis": "Build the project.",
            "tasks": [{"type": "command", "command": command, "description": "Build"}],
        }
    )


def test_failed_command_is_sent_back_instead_of_resolving(tiny_project: TinyProject) -> None:
    client = ScriptedClient([_command_plan("npm run build")], repeat_last=True)

    result = _pipeline(tiny_project, client).run("Build the project")

    assert result.outcome.status == OutcomeStatus.MANUAL_INTERVENTION
    assert result.record_path is None
    follow_up = client.calls[1].prompt
    assert "Operation: command" in follow_up
    assert "Target: npm run build" in follow_up
    assert result.outcome.pending[0].kind == "failure"


def test_failed_command_recovers_with_corrected_plan(tiny_project: TinyProject) -> None:
    client = ScriptedClient([_command_plan("npm run build"), _command_plan("echo built")])

    result = _pipeline(tiny_project, client).run("Build the project")

    assert result.resolved
    assert result.outcome.depth == 1
    assert result.record_path is not None


def test_failed_task_without_its_own_request_is_still_reported(tiny_project: TinyProject) -> None:
    broken_install = _response(
        {
            "phase": "execution",
            "tasks": [{"type": "install", "target": "undefined", "description": "Install deps"}],
        }
    )
    client = ScriptedClient([broken_install], repeat_last=True)
    session = SessionRegistry().create(tiny_project.root)
    pipeline = Pipeline(
        client,
        LocalFileCollaborator(),
        ShellCommandRunner(["echo"]),
        session=session,
        settings=ExecutionSettings(task_delay_ms=0, max_clarification_depth=1),
        sleep=lambda seconds: None,
        validate_before_execute=False,
    )

    result = pipeline.run("Install the dependencies")

    assert not result.resolved
    [request] = result.outcome.pending
    assert request.kind == "failure"
    assert request.failure_context is not None
    assert request.failure_context.operation == "install"
    assert "plan.packages" in request.failure_context.error_message
