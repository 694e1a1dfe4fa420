from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from unittest.mock import MagicMock

from planwright.config import ExecutionSettings
from planwright.planning.executor import TaskExecutor, WorkflowRunner, alternative_path
from planwright.planning.workflow import (
    TaskKind,
    TaskStatus,
    WorkflowContext,
    WorkflowStage,
    WorkflowTask,
    compile_workflow,
)
from planwright.schema import GeneratedPlan
from planwright.tools.commands import CommandOutcome
from planwright.tools.files import FileErrorType, LocalFileCollaborator, WriteOutcome

HELLO_PAGE = "export const Hello = () => <h1>Hi</h1>;\n"


class MemoryFiles:
    """In-memory file collaborator that can be told to fail specific writes."""

    def __init__(self, files: Optional[Dict[str, str]] = None, failing: Iterable[str] = ()) -> None:
        self.files = dict(files or {})
        self.failing = set(failing)
        self.writes: List[str] = []

    def read_file(self, path: str, root: Path) -> Optional[str]:
        return self.files.get(path)

    def exists(self, path: str, root: Path) -> bool:
        return path in self.files

    def write_file(self, path: str, root: Path, content: str) -> WriteOutcome:
        self.writes.append(path)
        if path in self.failing:
            return WriteOutcome(
                ok=False,
                path=path,
                error_type=FileErrorType.PERMISSION,
                message=f"Permission denied: {path}",
                suggestions=["Check the file and directory permissions."],
            )
        self.files[path] = content
        return WriteOutcome(ok=True, path=path)


def _commands(exit_code: int = 0) -> MagicMock:
    commands = MagicMock()
    commands.run.side_effect = lambda command, cwd: CommandOutcome(
        command=command, exit_code=exit_code, stdout="", stderr="boom" if exit_code else ""
    )
    return commands


def _task(context: WorkflowContext, kind: TaskKind) -> WorkflowTask:
    return next(task for task in context.tasks if task.kind == kind)


def test_scenario_creates_new_page_and_reports_path(tmp_path: Path) -> None:
    plan = GeneratedPlan.model_validate(
        {
            "phase": "planning",
            "isClear": True,
            "plan": {"filesToCreate": ["app/hello/page.tsx"], "executionOrder": ["Create page"]},
            "codeBlocks": [{"filePath": "app/hello/page.tsx", "language": "tsx", "content": HELLO_PAGE}],
        }
    )
    executor = TaskExecutor(LocalFileCollaborator(), _commands())
    runner = WorkflowRunner(executor, delay_ms=0)
    context = compile_workflow(plan, request="Add a hello page", project_root=tmp_path)

    summary = runner.run(context)

    result = _task(context, TaskKind.MODIFY_SOURCE).result
    assert result is not None
    assert result.success
    assert "app/hello/page.tsx" in result.message
    assert result.data["written"] == ["app/hello/page.tsx"]
    assert (tmp_path / "app" / "hello" / "page.tsx").read_text(encoding="utf-8") == HELLO_PAGE
    assert summary.succeeded


def test_create_over_existing_file_asks_instead_of_writing(tmp_path: Path) -> None:
    files = MagicMock()
    files.exists.return_value = True
    files.read_file.return_value = '{"name": "existing"}\n'
    plan = GeneratedPlan.model_validate(
        {
            "phase": "planning",
            "plan": {"filesToCreate": ["package.json"], "executionOrder": ["Create package.json"]},
            "codeBlocks": [{"filePath": "package.json", "content": '{"name": "fresh", "private": true}\n'}],
        }
    )
    executor = TaskExecutor(files, _commands())
    context = compile_workflow(plan, project_root=tmp_path)

    result = executor.execute(_task(context, TaskKind.MODIFY_SOURCE), context)

    files.write_file.assert_not_called()
    assert not result.success
    assert len(result.clarifications) == 1
    clarification = result.clarifications[0]
    assert clarification.kind == "conflict"
    assert clarification.target_path == "package.json"
    assert clarification.file_exists is True
    assert clarification.preview.startswith('{"name": "existing"}')
    assert any("MODIFY" in alternative for alternative in clarification.alternatives)


def test_modify_of_missing_file_raises_missing_clarification(tmp_path: Path) -> None:
    files = MemoryFiles()
    task = WorkflowTask(
        id="edit",
        kind=TaskKind.MODIFY,
        description="Edit the layout",
        stage=WorkflowStage.EXECUTION,
        target="app/layout.tsx",
        content="export default function Layout() { return null; }\n",
    )
    context = WorkflowContext(tasks=[task], project_root=tmp_path)

    result = TaskExecutor(files, _commands()).execute(task, context)

    assert not result.success
    assert result.clarifications[0].kind == "missing"
    assert result.clarifications[0].file_exists is False
    assert files.writes == []


def test_partial_write_failure_still_succeeds_and_lists_failures(tmp_path: Path) -> None:
    files = MemoryFiles(failing={"b.ts"})
    plan = GeneratedPlan.model_validate(
        {
            "phase": "planning",
            "plan": {"filesToCreate": ["a.ts", "b.ts"], "executionOrder": ["Write both"]},
            "codeBlocks": [
                {"filePath": "a.ts", "content": "export const a = 1;\n"},
                {"filePath": "b.ts", "content": "export const b = 2;\n"},
            ],
        }
    )
    context = compile_workflow(plan, project_root=tmp_path)

    result = TaskExecutor(files, _commands()).execute(_task(context, TaskKind.MODIFY_SOURCE), context)

    assert result.success
    assert result.message == "Wrote 1/2 file(s): a.ts; not written: b.ts"
    assert result.data["written"] == ["a.ts"]
    assert result.data["total"] == 2
    assert [entry["path"] for entry in result.data["failed"]] == ["b.ts"]
    failure = result.clarifications[0]
    assert failure.kind == "failure"
    assert failure.failure_context is not None
    assert failure.failure_context.error_type == "permission"
    assert failure.failure_context.suggestions == ["Check the file and directory permissions."]


def test_all_writes_failing_is_a_failure(tmp_path: Path) -> None:
    files = MemoryFiles(failing={"a.ts"})
    plan = GeneratedPlan.model_validate(
        {
            "phase": "planning",
            "plan": {"filesToCreate": ["a.ts"]},
            "codeBlocks": [{"filePath": "a.ts", "content": "export const a = 1;\n"}],
        }
    )
    context = compile_workflow(plan, project_root=tmp_path)

    result = TaskExecutor(files, _commands()).execute(_task(context, TaskKind.MODIFY_SOURCE), context)

    assert not result.success
    assert result.data["written"] == []


def test_install_prefers_plan_packages_and_drops_undefined(tmp_path: Path) -> None:
    commands = _commands()
    plan = GeneratedPlan.model_validate(
        {
            "phase": "execution",
            "plan": {"packages": ["undefined", "zod", "zod"]},
            "tasks": [{"type": "install", "target": "react", "description": "Install deps"}],
        }
    )
    context = compile_workflow(plan, raw_response="npm install lodash", project_root=tmp_path)

    result = TaskExecutor(MemoryFiles(), commands).execute(context.tasks[0], context)

    assert result.success
    assert result.data["packages"] == ["zod"]
    commands.run.assert_called_once_with("npm install zod", tmp_path)


def test_install_falls_back_to_task_then_text(tmp_path: Path) -> None:
    commands = _commands()
    settings = ExecutionSettings(package_manager="pnpm")
    executor = TaskExecutor(MemoryFiles(), commands, settings=settings)
    own = WorkflowTask(
        id="install",
        kind=TaskKind.INSTALL,
        description="Install",
        stage=WorkflowStage.EXECUTION,
        target="react, react-dom",
    )
    context = WorkflowContext(tasks=[own], project_root=tmp_path)
    assert executor.resolve_packages(own, context) == ["react", "react-dom"]

    bare = WorkflowTask(id="install", kind=TaskKind.INSTALL, description="Install", stage=WorkflowStage.EXECUTION)
    texty = WorkflowContext(tasks=[bare], raw_response="Run: yarn add axios lodash\n", project_root=tmp_path)
    result = executor.execute(bare, texty)

    assert result.data["packages"] == ["axios", "lodash"]
    commands.run.assert_called_once_with("pnpm add axios lodash", tmp_path)


def test_install_without_any_packages_fails_with_guidance(tmp_path: Path) -> None:
    commands = _commands()
    task = WorkflowTask(id="install", kind=TaskKind.INSTALL, description="Install", stage=WorkflowStage.EXECUTION)
    context = WorkflowContext(tasks=[task], project_root=tmp_path)

    result = TaskExecutor(MemoryFiles(), commands).execute(task, context)

    assert not result.success
    assert "plan.packages" in result.message
    commands.run.assert_not_called()


def test_failed_command_is_captured_as_data(tmp_path: Path) -> None:
    task = WorkflowTask(
        id="build",
        kind=TaskKind.COMMAND,
        description="Build",
        stage=WorkflowStage.EXECUTION,
        command="npm run build",
    )
    context = WorkflowContext(tasks=[task], project_root=tmp_path)

    result = TaskExecutor(MemoryFiles(), _commands(exit_code=2)).execute(task, context)

    assert not result.success
    assert result.data["exitCode"] == 2
    assert "boom" in result.message


def test_package_json_without_block_merges_dependencies(tmp_path: Path) -> None:
    existing = json.dumps({"name": "demo", "dependencies": {"react": "18.3.0"}})
    files = MemoryFiles({"package.json": existing})
    plan = GeneratedPlan.model_validate(
        {
            "phase": "planning",
            "plan": {"packages": ["zod@3.22.0", "clsx"], "filesToModify": ["package.json"]},
        }
    )
    context = compile_workflow(plan, project_root=tmp_path)

    result = TaskExecutor(files, _commands()).execute(_task(context, TaskKind.MODIFY_SOURCE), context)

    assert result.success
    merged = json.loads(files.files["package.json"])
    assert merged["dependencies"] == {"react": "18.3.0", "zod": "3.22.0", "clsx": "latest"}


def test_write_updates_shared_file_cache(tmp_path: Path) -> None:
    cache: Dict[str, str] = {}
    task = WorkflowTask(
        id="create",
        kind=TaskKind.CREATE,
        description="Create util",
        stage=WorkflowStage.EXECUTION,
        target="lib/util.ts",
        content="export const one = 1;\r\n",
    )
    context = WorkflowContext(tasks=[task], project_root=tmp_path)

    result = TaskExecutor(MemoryFiles(), _commands(), file_cache=cache).execute(task, context)

    assert result.success
    assert cache[(tmp_path / "lib/util.ts").as_posix()] == "export const one = 1;\n"


def test_alternative_path_keeps_route_file_names() -> None:
    assert alternative_path("app/hello/page.tsx") == "app/hello-new/page.tsx"
    assert alternative_path("src/a.ts") == "src/a-new.ts"


def test_install_task_target_undefined_is_never_installed(tmp_path: Path) -> None:
    commands = _commands()
    plan = GeneratedPlan.model_validate(
        {
            "phase": "execution",
            "tasks": [{"type": "install", "target": "undefined", "description": "Install deps"}],
        }
    )
    context = compile_workflow(plan, project_root=tmp_path)

    result = TaskExecutor(MemoryFiles(), commands).execute(context.tasks[0], context)

    assert not result.success
    assert "plan.packages" in result.message
    commands.run.assert_not_called()


def test_failed_command_asks_for_a_fix_with_exit_code(tmp_path: Path) -> None:
    task = WorkflowTask(
        id="build",
        kind=TaskKind.COMMAND,
        description="Build",
        stage=WorkflowStage.EXECUTION,
        command="npm run build",
    )
    context = WorkflowContext(tasks=[task], request="Build it", project_root=tmp_path)

    result = TaskExecutor(MemoryFiles(), _commands(exit_code=1)).execute(task, context)

    assert not result.success
    [request] = result.clarifications
    assert request.kind == "failure"
    assert request.target_path == "npm run build"
    assert request.original_request == "Build it"
    assert request.failure_context is not None
    assert request.failure_context.operation == "command"
    assert request.failure_context.error_type == "exit 1"
    assert request.failure_context.error_message == "boom"


def test_failed_install_asks_for_a_fix(tmp_path: Path) -> None:
    plan = GeneratedPlan.model_validate({"phase": "planning", "plan": {"packages": ["zod"]}})
    context = compile_workflow(plan, project_root=tmp_path)

    result = TaskExecutor(MemoryFiles(), _commands(exit_code=1)).execute(_task(context, TaskKind.INSTALL), context)

    assert not result.success
    assert result.clarifications[0].failure_context.operation == "install"
    assert result.clarifications[0].target_path == "npm install zod"


def test_block_outside_file_lists_follows_create_action(tmp_path: Path) -> None:
    files = MemoryFiles({"package.json": '{"name": "demo"}\n'})
    plan = GeneratedPlan.model_validate(
        {
            "phase": "planning",
            "plan": {"actionType": "CREATE", "filesToCreate": ["src/a.ts"]},
            "codeBlocks": [
                {"filePath": "src/a.ts", "content": "export const a = 1;\n"},
                {"filePath": "package.json", "content": '{"name": "replaced"}\n'},
            ],
        }
    )
    context = compile_workflow(plan, project_root=tmp_path)

    result = TaskExecutor(files, _commands()).execute(_task(context, TaskKind.MODIFY_SOURCE), context)

    assert result.data["written"] == ["src/a.ts"]
    assert result.data["failed"][0]["path"] == "package.json"
    assert result.data["failed"][0]["reason"] == "conflict"
    assert files.files["package.json"] == '{"name": "demo"}\n'


def test_block_outside_file_lists_defaults_to_modify(tmp_path: Path) -> None:
    files = MemoryFiles({"src/a.ts": "export const a = 0;\n"})
    plan = GeneratedPlan.model_validate(
        {
            "phase": "planning",
            "plan": {"filesToModify": ["src/a.ts"]},
            "codeBlocks": [
                {"filePath": "src/a.ts", "content": "export const a = 1;\n"},
                {"filePath": "src/ghost.ts", "content": "export const ghost = 1;\n"},
            ],
        }
    )
    context = compile_workflow(plan, project_root=tmp_path)

    result = TaskExecutor(files, _commands()).execute(_task(context, TaskKind.MODIFY_SOURCE), context)

    assert result.data["written"] == ["src/a.ts"]
    assert result.data["failed"][0] == {
        "path": "src/ghost.ts",
        "reason": "missing",
        "message": result.clarifications[0].prompt_text,
    }
    assert "src/ghost.ts" not in files.files


def test_find_files_caps_every_source(tmp_path: Path) -> None:
    files = MemoryFiles({name: "export {};\n" for name in ("a.ts", "b.ts", "c.ts")})
    plan = GeneratedPlan.model_validate({"phase": "planning", "plan": {"filesToModify": ["a.ts", "b.ts", "c.ts"]}})
    context = compile_workflow(plan, project_root=tmp_path)
    settings = ExecutionSettings(find_files_limit=2, analyze_files_limit=10)

    result = TaskExecutor(files, _commands(), settings=settings).execute(_task(context, TaskKind.FIND_FILES), context)

    assert [entry["path"] for entry in result.data["files"]] == ["a.ts", "b.ts"]
