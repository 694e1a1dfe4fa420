"""Best-effort guesses drawn from free text when a payload leaves gaps.

Everything here is heuristic. The executor and validator only depend on the
:class:`InferenceEngine` protocol so the guessing can be swapped or tightened
without touching the rest of the pipeline.
"""

from __future__ import annotations

import json
import re
from pathlib import PurePosixPath
from typing import Iterable, List, Optional, Protocol, Sequence

from ..schema import CodeBlock, normalize_path
from .extraction import extract_payload, fenced_blocks

__all__ = [
    "BUILD_TOOL_KEYWORDS",
    "HeuristicInference",
    "InferenceEngine",
    "merge_package_dependencies",
]

BUILD_TOOL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "npm": (r"\bnpm\b", r"\bnpx\b"),
    "yarn": (r"\byarn\b",),
    "pnpm": (r"\bpnpm\b",),
    "gradle": (r"\bgradle\b", r"\bgradlew\b"),
    "maven": (r"\bmaven\b", r"\bmvn\b", r"\bmvnw\b"),
    "pip": (r"\bpip3?\b",),
    "poetry": (r"\bpoetry\b",),
    "cargo": (r"\bcargo\b",),
    "go": (r"\bgolang\b", r"\bgo (?:build|run|test|mod|get|install)\b"),
}

_COMMAND_TOOLS: dict[str, str] = {
    "npm": "npm",
    "npx": "npm",
    "yarn": "yarn",
    "pnpm": "pnpm",
    "gradle": "gradle",
    "gradlew": "gradle",
    "mvn": "maven",
    "mvnw": "maven",
    "pip": "pip",
    "pip3": "pip",
    "poetry": "poetry",
    "cargo": "cargo",
    "go": "go",
}

_INSTALL_TEXT_PATTERNS = (
    re.compile(r"npm (?:install|i|add) (.+?)(?:\n|$)"),
    re.compile(r"yarn add (.+?)(?:\n|$)"),
    re.compile(r"pnpm (?:add|install) (.+?)(?:\n|$)"),
)
_INSTALL_COMMAND = re.compile(r"(?:npm|yarn|pnpm)\s+(?:install|add|i)\s+(.+)")
_PACKAGE_NAME = re.compile(r"^(?:@[a-z0-9][\w.-]*/)?[a-z0-9][\w.-]*(?:@[\w.^~<>=*-]+)?$", re.IGNORECASE)
_PATH_IN_TEXT = re.compile(
    r"(?:^|[\s`'\"(])((?:[\w.-]+/)*[\w-][\w.-]*\.(?:tsx|ts|jsx|js|mjs|cjs|css|scss|json|html|md|py|java|go|rs|c|cpp|h|hpp))\b"
)
_FIRST_LINE_PATH = re.compile(
    r"^\s*(?://|#|/\*|<!--)?\s*((?:[\w.-]+/)*[\w-][\w.-]*\.[A-Za-z0-9]+)\s*(?:\*/|-->)?\s*$"
)
_COMPONENT_NAME = re.compile(r"export\s+default\s+function\s+([A-Z]\w*)|(?:const|function)\s+([A-Z]\w*)")
_EXTENSIONS = {
    "typescript": "ts",
    "ts": "ts",
    "tsx": "tsx",
    "javascript": "js",
    "js": "js",
    "jsx": "jsx",
    "css": "css",
    "json": "json",
    "python": "py",
    "py": "py",
    "html": "html",
}


class InferenceEngine(Protocol):
    """Capability the pipeline uses whenever it must guess from free text."""

    def packages_from_text(self, text: str) -> List[str]: ...

    def packages_from_command(self, command: str) -> List[str]: ...

    def parse_code_blocks(self, text: str, context_files: Sequence[str] = ()) -> List[CodeBlock]: ...

    def file_paths_in(self, text: str) -> List[str]: ...

    def default_template(self, path: str) -> Optional[str]: ...

    def build_tools_in(self, text: str) -> set[str]: ...

    def command_tool(self, command: str) -> Optional[str]: ...


def _split_packages(raw: str) -> List[str]:
    names: list[str] = []
    for token in re.split(r"[\s,]+", raw.strip()):
        token = token.strip("`'\";")
        if not token or token.startswith("-") or token in {"&&", "||"}:
            continue
        if token.lower() == "undefined" or not _PACKAGE_NAME.match(token):
            continue
        if token not in names:
            names.append(token)
    return names


def _title_from_segment(segment: str) -> str:
    words = [part for part in re.split(r"[-_\s]+", segment) if part]
    return "".join(word[:1].upper() + word[1:] for word in words) or "Page"


class HeuristicInference:
    """Default :class:`InferenceEngine` built from regular expressions and conventions."""

    def packages_from_text(self, text: str) -> List[str]:
        """Scan prose for ``npm install`` style lines and return the package names."""
        packages: list[str] = []
        for pattern in _INSTALL_TEXT_PATTERNS:
            for match in pattern.finditer(text or ""):
                for name in _split_packages(match.group(1)):
                    if name not in packages:
                        packages.append(name)
        return packages

    def packages_from_command(self, command: str) -> List[str]:
        match = _INSTALL_COMMAND.search(command or "")
        if not match:
            return []
        return _split_packages(match.group(1).split("&&")[0])

    def parse_code_blocks(self, text: str, context_files: Sequence[str] = ()) -> List[CodeBlock]:
        """Turn fenced blocks in free text into code blocks with a best-guess path.

        A path comes from a ``lang:path`` fence header, else a path on the first
        line, else the next unused entry of ``context_files``, else a guess from
        the content. Blocks shorter than ten characters and blocks that are
        themselves the structured payload are skipped.
        """
        blocks: list[CodeBlock] = []
        unnamed = 0
        spare_targets = [normalize_path(path) for path in context_files if normalize_path(path)]
        for fenced in fenced_blocks(text or ""):
            body = fenced.body.strip("\n")
            if len(body.strip()) < 10:
                continue
            if fenced.language == "json" and extract_payload(body) is not None:
                continue
            path = fenced.path
            content = body
            commented = False
            if not path:
                lines = body.lstrip().splitlines()
                first_line = lines[0] if lines else ""
                match = _FIRST_LINE_PATH.match(first_line)
                commented = first_line.lstrip().startswith(("//", "/*", "<!--", "#"))
                if match and (commented or "/" in match.group(1)):
                    path = match.group(1)
                    content = "\n".join(lines[1:]).strip("\n")
            if not path and spare_targets and len(content.strip()) > 20 and not commented:
                path = spare_targets.pop(0)
            if not path:
                unnamed += 1
                path = self.guess_path(content, fenced.language, unnamed)
            blocks.append(
                CodeBlock(
                    filePath=normalize_path(path),
                    language=fenced.language,
                    content=content if content.endswith("\n") else content + "\n",
                )
            )
        return blocks

    def guess_path(self, content: str, language: str, ordinal: int = 1) -> str:
        """Guess a target path for a code block that never named one."""
        if "import React" in content or '"use client"' in content or "'use client'" in content:
            match = _COMPONENT_NAME.search(content)
            name = next((group for group in (match.groups() if match else ()) if group), None)
            return f"components/{name or f'NewComponent{ordinal}'}.tsx"
        if '"dependencies"' in content or '"devDependencies"' in content:
            return "package.json"
        if '"compilerOptions"' in content:
            return "tsconfig.json"
        extension = _EXTENSIONS.get(language.lower(), language.lower() or "txt")
        if extension == "ts" and ordinal == 1:
            return "src/index.ts"
        return f"components/NewFile{ordinal}.{extension}"

    def file_paths_in(self, text: str) -> List[str]:
        paths: list[str] = []
        for match in _PATH_IN_TEXT.finditer(text or ""):
            candidate = normalize_path(match.group(1))
            if candidate and candidate not in paths:
                paths.append(candidate)
        return paths

    def default_template(self, path: str) -> Optional[str]:
        """Return placeholder content chosen by extension and directory convention."""
        normalized = normalize_path(path)
        pure = PurePosixPath(normalized)
        suffix = pure.suffix.lower().lstrip(".")
        stem = pure.stem
        if suffix in {"tsx", "jsx"}:
            in_app_dir = normalized.startswith("app/") or "/app/" in normalized
            if in_app_dir:
                segment = pure.parent.name if stem in {"page", "layout"} and pure.parent.name else stem
                if segment == "app":
                    segment = "home"
                title = _title_from_segment(segment)
                return (
                    f"export default function {title}Page() {{\n"
                    "  return (\n"
                    "    <main>\n"
                    "      <h1>Hello World</h1>\n"
                    f"      <p>Welcome to the {segment} page!</p>\n"
                    "    </main>\n"
                    "  );\n"
                    "}\n"
                )
            title = _title_from_segment(stem)
            return (
                '"use client";\n\n'
                f"export default function {title}() {{\n"
                f"  return <div>{title}</div>;\n"
                "}\n"
            )
        if suffix in {"ts", "js", "mjs", "cjs"}:
            return f"// {pure.name}\n\nexport {{}};\n"
        if suffix in {"css", "scss"}:
            return f"/* {pure.name} */\n"
        if suffix == "json":
            return "{}\n"
        return None

    def build_tools_in(self, text: str) -> set[str]:
        lowered = (text or "").lower()
        return {
            tool
            for tool, patterns in BUILD_TOOL_KEYWORDS.items()
            if any(re.search(pattern, lowered) for pattern in patterns)
        }

    def command_tool(self, command: str) -> Optional[str]:
        """Return the build tool a shell command invokes, if it is a known one."""
        tokens = (command or "").strip().split()
        if not tokens:
            return None
        head = PurePosixPath(tokens[0]).name.lower()
        if head == "sudo" and len(tokens) > 1:
            head = PurePosixPath(tokens[1]).name.lower()
        return _COMMAND_TOOLS.get(head)


def merge_package_dependencies(existing: Optional[str], packages: Iterable[str]) -> str:
    """Add ``packages`` to a ``package.json`` document's dependencies."""
    try:
        document = json.loads(existing) if existing else {}
    except json.JSONDecodeError:
        document = {}
    if not isinstance(document, dict):
        document = {}
    dependencies = document.get("dependencies")
    if not isinstance(dependencies, dict):
        dependencies = {}
    for spec in packages:
        name, version = spec, "latest"
        at = spec.rfind("@")
        if at > 0:
            name, version = spec[:at], spec[at + 1 :] or "latest"
        dependencies.setdefault(name, version)
    document["dependencies"] = dependencies
    return json.dumps(document, indent=2) + "\n"
