"""Post-write syntax checks with a bounded model-assisted fix loop."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

from ..errors import GenerationError
from ..models.client import GenerativeClient
from ..planning.extraction import fenced_blocks, repair_json
from .commands import CommandCollaborator
from .files import FileCollaborator

__all__ = [
    "CHECKS",
    "Diagnostic",
    "DiagnosticReport",
    "FileVerifier",
    "FixOutcome",
    "LanguageCheck",
    "language_for",
]

LOGGER = logging.getLogger(__name__)

_LANGUAGES: Dict[str, str] = {
    ".py": "python",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".css": "css",
    ".json": "json",
}

_PYTHON_LOCATION = re.compile(r'File "(?P<file>[^"]+)", line (?P<line>\d+)')
_JAVA_LINE = re.compile(r"^(?P<file>[^:\n]+):(?P<line>\d+): (?P<severity>error|warning): (?P<message>.+)$", re.M)
_COLUMN_LINE = re.compile(r"^(?P<file>[^:\n]+):(?P<line>\d+):(?P<column>\d+): (?:(?P<severity>error|warning): )?(?P<message>.+)$", re.M)
_RUST_LINE = re.compile(r"^(?P<severity>error|warning)(?:\[\w+\])?: (?P<message>.+)\n\s*--> (?P<file>[^:\n]+):(?P<line>\d+)", re.M)
_GENERIC_LINE = re.compile(r":(\d+):")


@dataclass(slots=True)
class Diagnostic:
    """A single compiler or interpreter complaint."""

    file: str
    line: Optional[int]
    message: str
    severity: str = "error"


def _parse_python(output: str, path: str) -> List[Diagnostic]:
    location = _PYTHON_LOCATION.search(output)
    message_lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    message = message_lines[-1] if message_lines else "Syntax error"
    if location:
        return [Diagnostic(file=location.group("file"), line=int(location.group("line")), message=message)]
    return []


def _parse_java(output: str, path: str) -> List[Diagnostic]:
    return [
        Diagnostic(
            file=match.group("file"),
            line=int(match.group("line")),
            message=match.group("message").strip(),
            severity=match.group("severity"),
        )
        for match in _JAVA_LINE.finditer(output)
    ]


def _parse_columns(output: str, path: str) -> List[Diagnostic]:
    return [
        Diagnostic(
            file=match.group("file"),
            line=int(match.group("line")),
            message=match.group("message").strip(),
            severity=match.group("severity") or "error",
        )
        for match in _COLUMN_LINE.finditer(output)
    ]


def _parse_rust(output: str, path: str) -> List[Diagnostic]:
    return [
        Diagnostic(
            file=match.group("file"),
            line=int(match.group("line")),
            message=match.group("message").strip(),
            severity=match.group("severity"),
        )
        for match in _RUST_LINE.finditer(output)
    ]


def _parse_generic(output: str, path: str) -> List[Diagnostic]:
    diagnostics: list[Diagnostic] = []
    for raw_line in output.splitlines():
        match = _GENERIC_LINE.search(raw_line)
        if match:
            diagnostics.append(Diagnostic(file=path, line=int(match.group(1)), message=raw_line.strip()))
    return diagnostics


@dataclass(slots=True)
class LanguageCheck:
    """Command template plus output parser for one language."""

    language: str
    command: str
    parser: Callable[[str, str], List[Diagnostic]]

    def command_for(self, path: str) -> str:
        return self.command.format(path=path)

    def parse(self, output: str, path: str) -> List[Diagnostic]:
        diagnostics = self.parser(output, path)
        if not diagnostics and output.strip():
            diagnostics = _parse_generic(output, path)
        if not diagnostics and output.strip():
            diagnostics = [Diagnostic(file=path, line=None, message=output.strip().splitlines()[-1])]
        return diagnostics


CHECKS: Dict[str, LanguageCheck] = {
    "python": LanguageCheck("python", 'python -m py_compile "{path}"', _parse_python),
    "java": LanguageCheck("java", 'javac "{path}"', _parse_java),
    "go": LanguageCheck("go", 'go vet "{path}"', _parse_columns),
    "rust": LanguageCheck("rust", "cargo check", _parse_rust),
    "c": LanguageCheck("c", 'gcc -fsyntax-only "{path}"', _parse_columns),
    "cpp": LanguageCheck("cpp", 'g++ -fsyntax-only "{path}"', _parse_columns),
}


def language_for(path: str) -> Optional[str]:
    """Detect a language from the file extension."""
    return _LANGUAGES.get(PurePosixPath(path).suffix.lower())


@dataclass(slots=True)
class DiagnosticReport:
    """Result of checking one written file."""

    path: str
    language: Optional[str]
    ok: bool
    skipped: bool = False
    command: str = ""
    diagnostics: List[Diagnostic] = field(default_factory=list)
    output: str = ""


@dataclass(slots=True)
class FixOutcome:
    """Final report after up to ``max_attempts`` fix rounds."""

    report: DiagnosticReport
    attempts: int = 0
    fixed: bool = False


class FileVerifier:
    """Runs language checks on written files and asks the model to repair failures."""

    def __init__(
        self,
        commands: CommandCollaborator,
        files: FileCollaborator,
        *,
        client: Optional[GenerativeClient] = None,
        max_attempts: int = 3,
    ) -> None:
        self._commands = commands
        self._files = files
        self._client = client
        self._max_attempts = max_attempts

    def check(self, path: str, root: Path) -> DiagnosticReport:
        language = language_for(path)
        check = CHECKS.get(language or "")
        if check is None:
            return DiagnosticReport(path=path, language=language, ok=True, skipped=True)
        command = check.command_for(path)
        outcome = self._commands.run(command, root)
        if outcome.exit_code in (126, 127):
            # Tool missing or not allowed: nothing to judge the file by.
            return DiagnosticReport(
                path=path, language=language, ok=True, skipped=True, command=command, output=outcome.stderr
            )
        output = "\n".join(part for part in (outcome.stdout, outcome.stderr) if part)
        diagnostics = [] if outcome.ok else check.parse(output, path)
        return DiagnosticReport(
            path=path,
            language=language,
            ok=outcome.ok,
            command=command,
            diagnostics=diagnostics,
            output=output,
        )

    def check_and_fix(self, path: str, root: Path, *, request: str = "") -> FixOutcome:
        """Check ``path`` and, while it fails, request fixed content from the model."""
        report = self.check(path, root)
        attempts = 0
        while not report.ok and self._client is not None and attempts < self._max_attempts:
            attempts += 1
            content = self._files.read_file(path, root)
            if content is None:
                break
            prompt = _fix_prompt(path, content, report, request)
            try:
                response = self._client.generate(prompt)
            except GenerationError as error:
                LOGGER.warning("Fix request for %s failed: %s", path, error)
                break
            fixed = _fixed_content(response)
            if not fixed or fixed == content:
                LOGGER.info("Fix attempt %d for %s returned no usable content", attempts, path)
                continue
            outcome = self._files.write_file(path, root, fixed)
            if not outcome.ok:
                LOGGER.warning("Could not write fixed content for %s: %s", path, outcome.message)
                break
            report = self.check(path, root)
        return FixOutcome(report=report, attempts=attempts, fixed=attempts > 0 and report.ok)


def _fix_prompt(path: str, content: str, report: DiagnosticReport, request: str) -> str:
    errors = "\n".join(
        f"- line {item.line}: {item.message}" if item.line is not None else f"- {item.message}"
        for item in report.diagnostics
    ) or report.output
    lines = [
        f"The file {path} fails `{report.command}`.",
        "",
        "Errors:",
        errors,
        "",
        "Current content:",
        f"```{report.language or ''}",
        content,
        "```",
    ]
    if request:
        lines.extend(["", f"Original request: {request}"])
    lines.extend(
        [
            "",
            'Reply with JSON {"fixedContent": "<complete corrected file>"} or a single code block.',
        ]
    )
    return "\n".join(lines)


def _fixed_content(response: str) -> Optional[str]:
    blocks = fenced_blocks(response or "")
    for block in blocks:
        if block.language == "json" or block.body.lstrip().startswith("{"):
            try:
                data = json.loads(repair_json(block.body.strip()))
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict) and isinstance(data.get("fixedContent"), str):
                return data["fixedContent"]
    stripped = (response or "").strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(repair_json(stripped))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("fixedContent"), str):
            return data["fixedContent"]
    for block in blocks:
        if block.language != "json" and block.body.strip():
            return block.body.strip("\n") + "\n"
    return None
