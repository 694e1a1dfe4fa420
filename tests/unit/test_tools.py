from __future__ import annotations

import errno
from pathlib import Path
from typing import List
from unittest.mock import MagicMock

from planwright.models.client import ScriptedClient
from planwright.tools.commands import CommandOutcome, ShellCommandRunner, base_commands
from planwright.tools.diagnostics import FileVerifier, language_for
from planwright.tools.files import FileErrorType, LocalFileCollaborator, classify_os_error


def test_local_files_write_creates_parents_and_normalises_newlines(tmp_path: Path) -> None:
    files = LocalFileCollaborator()

    outcome = files.write_file("./src/lib/util.ts", tmp_path, "line one\r\nline two\r\n")

    assert outcome.ok
    assert outcome.path == "src/lib/util.ts"
    assert (tmp_path / "src" / "lib" / "util.ts").read_bytes() == b"line one\nline two\n"
    assert files.exists("src/lib/util.ts", tmp_path)
    assert files.read_file("src/lib/util.ts", tmp_path) == "line one\nline two\n"


def test_local_files_refuse_paths_outside_root(tmp_path: Path) -> None:
    root = tmp_path / "project"
    root.mkdir()

    outcome = LocalFileCollaborator().write_file("../escape.txt", root, "nope")

    assert not outcome.ok
    assert outcome.error_type == FileErrorType.OUTSIDE_ROOT
    assert outcome.suggestions
    assert not (tmp_path / "escape.txt").exists()


def test_local_files_classify_directory_target(tmp_path: Path) -> None:
    (tmp_path / "app").mkdir()

    outcome = LocalFileCollaborator().write_file("app", tmp_path, "content")

    assert not outcome.ok
    assert outcome.error_type == FileErrorType.IS_DIRECTORY


def test_missing_file_reads_as_none(tmp_path: Path) -> None:
    files = LocalFileCollaborator()

    assert files.read_file("absent.ts", tmp_path) is None
    assert not files.exists("absent.ts", tmp_path)


def test_classify_os_error_uses_errno() -> None:
    assert classify_os_error(PermissionError(errno.EACCES, "denied")) == FileErrorType.PERMISSION
    assert classify_os_error(OSError(errno.ENOSPC, "full")) == FileErrorType.NO_SPACE
    assert classify_os_error(OSError(errno.EIO, "io")) == FileErrorType.UNKNOWN


def test_base_commands_splits_chains_and_skips_env_assignments() -> None:
    assert base_commands("NODE_ENV=test npm run build && /usr/bin/ls -la | grep src; echo done") == [
        "npm",
        "ls",
        "grep",
        "echo",
    ]


def test_runner_rejects_commands_outside_allowlist(tmp_path: Path) -> None:
    runner = ShellCommandRunner(["echo"])

    outcome = runner.run("echo hi && rm -rf build", tmp_path)

    assert outcome.exit_code == 126
    assert outcome.stderr == "Command not allowed: rm"


def test_runner_runs_allowed_command(tmp_path: Path) -> None:
    outcome = ShellCommandRunner(["echo"]).run("echo planwright", tmp_path)

    assert outcome.ok
    assert outcome.stdout.strip() == "planwright"


def test_runner_reports_missing_executable(tmp_path: Path) -> None:
    outcome = ShellCommandRunner(["definitely-not-a-real-tool"]).run("definitely-not-a-real-tool --version", tmp_path)

    assert outcome.exit_code == 127


def test_language_detection_by_extension() -> None:
    assert language_for("src/main.py") == "python"
    assert language_for("app/page.tsx") == "typescript"
    assert language_for("README") is None


def test_verifier_skips_languages_without_checks(tmp_path: Path) -> None:
    commands = MagicMock()

    report = FileVerifier(commands, LocalFileCollaborator()).check("styles/site.css", tmp_path)

    assert report.ok
    assert report.skipped
    commands.run.assert_not_called()


def test_verifier_treats_unavailable_tool_as_skipped(tmp_path: Path) -> None:
    commands = MagicMock()
    commands.run.return_value = CommandOutcome(command="javac", exit_code=127, stderr="Executable not available: javac")

    report = FileVerifier(commands, LocalFileCollaborator()).check("src/Main.java", tmp_path)

    assert report.ok
    assert report.skipped


def test_verifier_fix_loop_rewrites_file_until_clean(tmp_path: Path) -> None:
    files = LocalFileCollaborator()
    files.write_file("main.py", tmp_path, "def broken(:\n    pass\n")
    results: List[CommandOutcome] = [
        CommandOutcome(
            command="python",
            exit_code=1,
            stderr='  File "main.py", line 1\n    def broken(:\nSyntaxError: invalid syntax\n',
        ),
        CommandOutcome(command="python", exit_code=0),
    ]
    commands = MagicMock()
    commands.run.side_effect = lambda command, cwd: results.pop(0)
    client = ScriptedClient(['```json\n{"fixedContent": "def fixed():\\n    pass\\n"}\n```'])

    outcome = FileVerifier(commands, files, client=client, max_attempts=3).check_and_fix("main.py", tmp_path)

    assert outcome.fixed
    assert outcome.attempts == 1
    assert (tmp_path / "main.py").read_text(encoding="utf-8") == "def fixed():\n    pass\n"
    assert "SyntaxError: invalid syntax" in client.calls[0].prompt
    assert "line 1" in client.calls[0].prompt


def test_verifier_gives_up_after_max_attempts(tmp_path: Path) -> None:
    files = LocalFileCollaborator()
    files.write_file("main.py", tmp_path, "def broken(:\n")
    commands = MagicMock()
    commands.run.return_value = CommandOutcome(command="python", exit_code=1, stderr="SyntaxError: invalid syntax")
    client = ScriptedClient(["no code here"], repeat_last=True)

    outcome = FileVerifier(commands, files, client=client, max_attempts=2).check_and_fix("main.py", tmp_path)

    assert not outcome.fixed
    assert outcome.attempts == 2
    assert not outcome.report.ok
