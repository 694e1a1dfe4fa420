from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from planwright.cli import app

from conftest import TinyProject

runner = CliRunner()

PAGE = "export default function HelloPage() {\n  return <h1>Hello</h1>;\n}\n"

PLAN = {
    "phase": "planning",
    "analysis": "The project uses the app router, so the greeting becomes a new route segment under app/hello.",
    "isClear": True,
    "plan": {
        "architecture": "One server component rendered by the app router.",
        "filesToCreate": [{"path": "app/hello/page.tsx", "reason": "New route"}],
        "executionOrder": ["Create app/hello/page.tsx"],
    },
    "codeBlocks": [{"filePath": "app/hello/page.tsx", "language": "tsx", "content": PAGE}],
}


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def _response_text() -> str:
    return "Sure.\n```json\n" + json.dumps(PLAN) + "\n```\n"


def test_extract_prints_normalized_payload(tmp_path: Path) -> None:
    source = _write(tmp_path / "response.txt", "Here you go: ```json {'phase': 'planning', 'plan': {},} ```")

    result = runner.invoke(app, ["extract", str(source)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["phase"] == "planning"


def test_extract_without_payload_exits_non_zero(tmp_path: Path) -> None:
    source = _write(tmp_path / "response.txt", "I cannot help with that.")

    result = runner.invoke(app, ["extract", str(source)])

    assert result.exit_code == 1
    assert "No structured payload found" in result.output


def test_validate_accepts_complete_plan(tiny_project: TinyProject, tmp_path: Path) -> None:
    source = _write(tmp_path / "response.txt", _response_text())

    result = runner.invoke(
        app,
        ["validate", str(source), "--project", str(tiny_project.root), "-c", str(tiny_project.config_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Plan is valid." in result.output


def test_validate_reports_conflicts_against_project(tiny_project: TinyProject, tmp_path: Path) -> None:
    conflicting = dict(PLAN, plan=dict(PLAN["plan"], filesToCreate=["app/page.tsx"]))
    conflicting["codeBlocks"] = [{"filePath": "app/page.tsx", "content": PAGE}]
    source = _write(tmp_path / "response.txt", json.dumps(conflicting))

    result = runner.invoke(
        app,
        ["validate", str(source), "--project", str(tiny_project.root), "-c", str(tiny_project.config_path)],
    )

    assert result.exit_code == 1
    assert "? 1. 'app/page.tsx' already exists" in result.output


def test_run_executes_saved_plan(tiny_project: TinyProject, tmp_path: Path) -> None:
    source = _write(tmp_path / "response.txt", _response_text())

    result = runner.invoke(app, ["run", str(source), "-c", str(tiny_project.config_path)])

    assert result.exit_code == 0, result.output
    assert "[completed]" in result.output
    assert (tiny_project.root / "app" / "hello" / "page.tsx").read_text(encoding="utf-8") == PAGE


def test_ask_with_scripted_responses_then_manage_records(tiny_project: TinyProject, tmp_path: Path) -> None:
    responses = _write(tmp_path / "responses.json", json.dumps([_response_text()]))
    config = str(tiny_project.config_path)

    asked = runner.invoke(app, ["ask", "Add a hello page", "--responses", str(responses), "-c", config])

    assert asked.exit_code == 0, asked.output
    assert "Written: app/hello/page.tsx" in asked.output
    assert "Resolved." in asked.output

    listed = runner.invoke(app, ["plans", "list", "-c", config])
    assert listed.exit_code == 0
    assert "Add a hello page" in listed.output
    name = listed.output.split()[0]

    shown = runner.invoke(app, ["plans", "show", name, "-c", config])
    assert shown.exit_code == 0
    assert json.loads(shown.output)["metadata"]["userRequest"] == "Add a hello page"

    deleted = runner.invoke(app, ["plans", "delete", name, "-c", config])
    assert deleted.exit_code == 0
    assert f"Deleted {name}" in deleted.output

    missing = runner.invoke(app, ["plans", "show", name, "-c", config])
    assert missing.exit_code == 1
    assert "Planning record not found" in missing.output


def test_plans_list_reports_empty_store(tiny_project: TinyProject) -> None:
    result = runner.invoke(app, ["plans", "list", "-c", str(tiny_project.config_path)])

    assert result.exit_code == 0
    assert "No planning records." in result.output


def test_iterate_writes_report(tiny_project: TinyProject, tmp_path: Path) -> None:
    responses = _write(tmp_path / "responses.txt", _response_text())
    report = tmp_path / "out" / "report.md"

    result = runner.invoke(
        app,
        [
            "iterate",
            "Add a hello page",
            "--responses",
            str(responses),
            "--report",
            str(report),
            "-c",
            str(tiny_project.config_path),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Iterations: 1 (success)" in result.output
    assert report.read_text(encoding="utf-8").startswith("# Feedback iteration report")


def test_invalid_config_exits_with_message(tmp_path: Path) -> None:
    config = _write(tmp_path / "planwright.yaml", "execution: [unclosed\n")
    source = _write(tmp_path / "response.txt", _response_text())

    result = runner.invoke(app, ["validate", str(source), "-c", str(config)])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output
