from __future__ import annotations

import json
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@dataclass(slots=True)
class TinyProject:
    """Fixture payload representing the synthetic Next.js project under test."""

    root: Path
    config_path: Path

    def write(self, relative: str, content: str) -> Path:
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target


@pytest.fixture()
def tiny_project(tmp_path: Path) -> TinyProject:
    """Create a tiny Next.js-style project with a planwright config for CLI smoke tests."""

    project_root = tmp_path / "tiny-project"
    project_root.mkdir()

    (project_root / "package.json").write_text(
        json.dumps(
            {
                "name": "tiny-project",
                "dependencies": {"next": "14.2.0", "react": "18.3.0"},
            },
            indent=2,
        )
        + "\n",
        encoding="utf-8",
    )
    (project_root / "app").mkdir()
    (project_root / "app" / "page.tsx").write_text(
        textwrap.dedent(
            """
            export default function Home() {
              return <main>Home</main>;
            }
            """
        ).lstrip(),
        encoding="utf-8",
    )

    config_path = project_root / "planwright.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            project:
              root: .
            execution:
              task_delay_ms: 0
              allowed_commands: [echo, ls]
            paths:
              planning: planning
              logs: .planwright/logs
            """
        ).lstrip(),
        encoding="utf-8",
    )

    return TinyProject(root=project_root, config_path=config_path)
