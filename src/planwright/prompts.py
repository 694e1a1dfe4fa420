"""Prompt templates shared by the pipeline and the feedback loop."""

from __future__ import annotations

import json
import re
from typing import Mapping, Optional, Sequence

from .models.client import Message
from .planning.extraction import extract_plan

PAYLOAD_EXAMPLE = {
    "phase": "planning",
    "analysis": "What the user wants and how the project is laid out",
    "isClear": True,
    "questions": [],
    "plan": {
        "actionType": "CREATE",
        "packages": [],
        "filesToCreate": [
            {"path": "app/hello/page.tsx", "reason": "New page", "purpose": "Render a greeting", "fileExists": False}
        ],
        "filesToModify": [],
        "executionOrder": ["Create app/hello/page.tsx"],
        "architecture": "Next.js App Router page component",
    },
    "codeBlocks": [
        {"filePath": "app/hello/page.tsx", "language": "tsx", "content": "export default function Page() { ... }"}
    ],
}

SYSTEM_PROMPT = "\n".join(
    [
        "You are a code assistant that plans and carries out development tasks in an existing project.",
        "",
        "## Analyse first",
        "- Read the context files (package.json first) to learn the framework, dependencies and layout.",
        "- Classify the request as SIMPLE, MODERATE or COMPLEX; break complex work into sub-tasks.",
        "- Choose one action type: CREATE, MODIFY, DELETE, ADD or REPLACE.",
        "- Record whether every planned file exists in fileExists. Creating an existing file or",
        "  modifying a missing one must set isClear to false with a question explaining the conflict.",
        "- Ask questions only when the context cannot answer them; never ask about paths the project layout settles.",
        "",
        "## Respond with structured JSON",
        "Reply with exactly one ```json code block using double-quoted keys and strings, no comments",
        "and no trailing commas. Planning responses look like:",
        "```json",
        json.dumps(PAYLOAD_EXAMPLE, indent=2),
        "```",
        "",
        'Execution responses set "phase" to "execution" and list tasks, each with type',
        "(install, create, modify, command), description, and target, content or command as needed.",
        "",
        "## Code blocks",
        "- Provide complete file content in codeBlocks for every file in filesToCreate and filesToModify.",
        "- Never use placeholders such as // TODO, // ..., /* ... */ or ...implementation....",
        "- List every package to install in plan.packages.",
    ]
)

_WHITESPACE = re.compile(r"\s+")
_PROJECT_MARKERS = (
    ("next", "Next.js"),
    ("react", "React"),
    ("vue", "Vue"),
    ("svelte", "Svelte"),
    ("express", "Express"),
)


def normalize_request(request: Optional[str]) -> str:
    """Collapse whitespace in a raw user request."""
    return _WHITESPACE.sub(" ", request or "").strip()


def detect_project_type(package_json: Optional[str]) -> Optional[str]:
    """Guess the framework from a package.json document."""
    if not package_json:
        return None
    try:
        data = json.loads(package_json)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    names: set[str] = set()
    for key in ("dependencies", "devDependencies"):
        section = data.get(key)
        if isinstance(section, dict):
            names.update(section)
    for marker, label in _PROJECT_MARKERS:
        if marker in names:
            return label
    return "Node.js"


def render_context_files(context_files: Sequence[Mapping[str, str]]) -> str:
    """Format context files as a bullet list, with package.json analysis guidance."""
    if not context_files:
        return ""
    lines = [f"**Context files ({len(context_files)}):**"]
    for item in context_files:
        path = item.get("path", "")
        name = item.get("name") or path.rsplit("/", 1)[-1]
        reason = item.get("reason")
        lines.append(f"- {name} ({path})" + (f" - {reason}" if reason else ""))
        content = item.get("content")
        if content:
            lines.extend([f"```{name}", content.rstrip("\n"), "```"])
    if any((item.get("name") or item.get("path", "")).endswith("package.json") for item in context_files):
        lines.extend(
            [
                "",
                "**package.json is provided.** Use it to decide the project structure and exact packages.",
                'If the request is clear from it, set "isClear" to true and give the plan.',
            ]
        )
    return "\n".join(lines)


def build_user_prompt(
    request: str,
    *,
    context_files: Sequence[Mapping[str, str]] = (),
    project_type: Optional[str] = None,
    history: Sequence[Message] = (),
) -> str:
    """Combine the request with context files, project type and earlier questions."""
    normalized = normalize_request(request)
    sections = [normalized]
    previous_questions = _previous_questions(history)
    if previous_questions:
        sections = [
            "**Previous questions:**\n"
            + "\n".join(f"{index}. {question}" for index, question in enumerate(previous_questions, 1)),
            f"**User answer:**\n{normalized}",
            "Revise the plan with this answer or continue to the execution phase.",
        ]
    rendered = render_context_files(context_files)
    if rendered:
        sections.append(rendered)
    if project_type:
        sections.append(f"**Project type:** {project_type}")
    return "\n\n".join(sections)


def _previous_questions(history: Sequence[Message]) -> list[str]:
    for message in reversed(list(history)[-4:]):
        if message.get("role") != "assistant":
            continue
        plan = extract_plan(message.get("content", ""))
        if plan is not None and plan.questions:
            return list(plan.questions)
    return []


__all__ = [
    "PAYLOAD_EXAMPLE",
    "SYSTEM_PROMPT",
    "build_user_prompt",
    "detect_project_type",
    "normalize_request",
    "render_context_files",
]
