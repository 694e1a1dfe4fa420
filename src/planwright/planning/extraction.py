"""Recover a structured plan payload from noisy model output.

Model responses mix prose, several drafts of the same JSON block, single
quoted strings, comments and trailing commas, and streams are sometimes cut
off before the final brace. The helpers here isolate the most plausible
candidate, repair it, and only then hand it to :func:`json.loads`. Nothing in
this module raises on bad input: callers get ``None`` (or an
:class:`ExtractionResult` carrying the reason) instead.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional

from pydantic import ValidationError

from ..schema import GeneratedPlan

__all__ = [
    "ExtractionResult",
    "FencedBlock",
    "ScanResult",
    "extract",
    "extract_payload",
    "extract_plan",
    "fenced_blocks",
    "normalise_text",
    "repair_json",
    "scan_balanced",
]

LOGGER = logging.getLogger(__name__)

_PAYLOAD_KEYS = ("phase", "plan", "tasks")
_FENCE = "```"
_FENCE_INFO = re.compile(r"[\w.+#-]*(?::[^\s`]+)?")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_$][A-Za-z0-9_$]*)(\s*):")
_TRANSLATION = str.maketrans(
    {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0xFF07: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
)


@dataclass(slots=True)
class FencedBlock:
    """A Markdown fenced block; ``closed`` is False when the stream ended inside it."""

    info: str
    body: str
    closed: bool = True

    @property
    def language(self) -> str:
        return self.info.split(":", 1)[0].lower()

    @property
    def path(self) -> Optional[str]:
        if ":" not in self.info:
            return None
        candidate = self.info.split(":", 1)[1].strip()
        return candidate or None


@dataclass(slots=True)
class ScanResult:
    """Outcome of a bracket-balancing scan starting at an opening brace."""

    start: int
    end: Optional[int] = None
    last_close: Optional[int] = None
    open_at_last_close: tuple[str, ...] = ()
    open_at_eof: tuple[str, ...] = ()
    in_string_at_eof: Optional[str] = None

    @property
    def balanced(self) -> bool:
        return self.end is not None


@dataclass(slots=True)
class ExtractionResult:
    """Extraction outcome; ``plan`` is None when no payload could be recovered."""

    plan: Optional[GeneratedPlan] = None
    payload: Optional[dict[str, Any]] = None
    source: str = ""
    attempts: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.plan is not None


def normalise_text(text: str) -> str:
    """Replace typographic quotes and invisible spaces emitted by models."""
    if not text:
        return ""
    return text.translate(_TRANSLATION)


def fenced_blocks(text: str) -> List[FencedBlock]:
    """Return every fenced block in order, including a trailing unclosed one."""
    blocks: list[FencedBlock] = []
    position = 0
    while True:
        start = text.find(_FENCE, position)
        if start == -1:
            break
        info_match = _FENCE_INFO.match(text, start + len(_FENCE))
        info = info_match.group(0) if info_match else ""
        body_start = start + len(_FENCE) + len(info)
        end = text.find(_FENCE, body_start)
        if end == -1:
            blocks.append(FencedBlock(info=info, body=text[body_start:], closed=False))
            break
        blocks.append(FencedBlock(info=info, body=text[body_start:end]))
        position = end + len(_FENCE)
    return blocks


def scan_balanced(text: str, start: int) -> ScanResult:
    """Scan from ``start`` until object and array depth both return to zero.

    Single and double quotes both delimit string literals and backslashes
    escape the following character. The scan also records the deepest point
    it could safely cut at, which lets truncated payloads be closed later.
    """
    result = ScanResult(start=start)
    braces = 0
    brackets = 0
    openers: list[str] = []
    quote: Optional[str] = None
    escaped = False

    index = start - 1
    length = len(text)
    while index + 1 < length:
        index += 1
        char = text[index]
        if quote is not None:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char == "/" and text[index + 1 : index + 2] in ("/", "*"):
            if text[index + 1] == "/":
                end = text.find("\n", index)
                index = length if end == -1 else end
            else:
                end = text.find("*/", index + 2)
                index = length if end == -1 else end + 1
            continue
        if char in ("'", '"'):
            quote = char
        elif char == "{":
            braces += 1
            openers.append(char)
        elif char == "[":
            brackets += 1
            openers.append(char)
        elif char in "}]":
            if char == "}":
                braces -= 1
            else:
                brackets -= 1
            if openers and openers[-1] == ("{" if char == "}" else "["):
                openers.pop()
            result.last_close = index
            result.open_at_last_close = tuple(openers)
            if braces == 0 and brackets == 0:
                result.end = index
                return result
            if braces < 0 or brackets < 0:
                return result

    result.open_at_eof = tuple(openers)
    result.in_string_at_eof = quote
    return result


def _closers(openers: tuple[str, ...]) -> str:
    return "".join("}" if opener == "{" else "]" for opener in reversed(openers))


def _first_opening(text: str) -> int:
    brace = text.find("{")
    if brace != -1:
        return brace
    return text.find("[")


def _candidate(region: str) -> Optional[str]:
    """Cut the balanced payload out of ``region``, closing it when truncated."""
    start = _first_opening(region)
    if start == -1:
        return None
    scan = scan_balanced(region, start)
    if scan.balanced:
        return region[start : scan.end + 1]
    if scan.last_close is not None and scan.open_at_last_close:
        # Balanced-so-far: keep everything up to the last closer, then close the rest.
        prefix = region[start : scan.last_close + 1]
        return prefix + _closers(scan.open_at_last_close)
    tail = region[start:].rstrip()
    if scan.in_string_at_eof:
        tail += scan.in_string_at_eof
    tail = tail.rstrip().rstrip(",")
    return tail + _closers(scan.open_at_eof)


def _segments(text: str) -> Iterator[tuple[str, str]]:
    """Split ``text`` into ``code``, ``string`` and ``comment`` segments."""
    buffer: list[str] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char in ("'", '"'):
            if buffer:
                yield "code", "".join(buffer)
                buffer = []
            end = index + 1
            while end < length:
                if text[end] == "\\":
                    end += 2
                    continue
                if text[end] == char:
                    break
                end += 1
            yield "string", text[index : end + 1]
            index = end + 1
            continue
        if char == "/" and index + 1 < length and text[index + 1] in "/*":
            if buffer:
                yield "code", "".join(buffer)
                buffer = []
            if text[index + 1] == "/":
                end = text.find("\n", index)
                end = length if end == -1 else end
            else:
                end = text.find("*/", index + 2)
                end = length if end == -1 else end + 2
            yield "comment", text[index:end]
            index = end
            continue
        buffer.append(char)
        index += 1
    if buffer:
        yield "code", "".join(buffer)


def _double_quoted(literal: str) -> str:
    if not literal.startswith("'"):
        return literal
    inner = literal[1:-1] if len(literal) > 1 and literal.endswith("'") else literal[1:]
    inner = inner.replace("\\'", "'")
    inner = re.sub(r'(?<!\\)"', '\\"', inner)
    return f'"{inner}"'


def repair_json(candidate: str) -> str:
    """Repair the usual model-isms so a strict JSON parser accepts ``candidate``.

    Comments are dropped, trailing commas removed, bare keys quoted and single
    quoted literals rewritten with double quotes. String contents are never
    touched by the structural rewrites.
    """
    without_comments = "".join(chunk for kind, chunk in _segments(candidate) if kind != "comment")
    pieces: list[str] = []
    for kind, chunk in _segments(without_comments):
        if kind == "string":
            pieces.append(_double_quoted(chunk))
        else:
            pieces.append(chunk)
    joined = "".join(pieces)

    repaired: list[str] = []
    for kind, chunk in _segments(joined):
        if kind == "code":
            chunk = _BARE_KEY.sub(r'\1"\2"\3:', chunk)
        repaired.append(chunk)
    result = "".join(repaired)

    # Trailing commas can straddle segments once comments are gone, so rerun on code only.
    final: list[str] = []
    for kind, chunk in _segments(result):
        final.append(_TRAILING_COMMA.sub(r"\1", chunk) if kind == "code" else chunk)
    return "".join(final).strip()


def _coerce_python_literal(candidate: str) -> Any | None:
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, TypeError, ValueError, MemoryError, RecursionError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _parse(candidate: str) -> Any | None:
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, RecursionError):
        return _coerce_python_literal(candidate)


def _is_payload(value: Any) -> bool:
    return isinstance(value, dict) and any(key in value for key in _PAYLOAD_KEYS)


def _preferred_block(blocks: List[FencedBlock]) -> Optional[FencedBlock]:
    json_blocks = [block for block in blocks if block.language == "json"]
    if json_blocks:
        return json_blocks[-1]
    if blocks:
        return blocks[-1]
    return None


def _attempts(text: str) -> Iterator[tuple[str, str]]:
    blocks = fenced_blocks(text)
    preferred = _preferred_block(blocks)
    if preferred is not None:
        candidate = _candidate(preferred.body)
        if candidate is not None:
            yield "fenced", repair_json(candidate)
            yield "fenced-raw", candidate

    candidate = _candidate(text)
    if candidate is not None:
        yield "inline", repair_json(candidate)
        yield "inline-raw", candidate

    for block in reversed(blocks):
        if block is preferred:
            continue
        candidate = _candidate(block.body)
        if candidate is not None:
            yield "block", repair_json(candidate)


def extract(text: str | None) -> ExtractionResult:
    """Run every extraction strategy in priority order and report the outcome."""
    if not text or not text.strip():
        return ExtractionResult(reason="empty response")

    normalised = normalise_text(text)
    result = ExtractionResult()
    seen: set[str] = set()
    for source, candidate in _attempts(normalised):
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        result.attempts.append(source)
        parsed = _parse(candidate)
        if parsed is None:
            LOGGER.debug("Extraction candidate from %s did not parse", source)
            continue
        if not _is_payload(parsed):
            LOGGER.debug("Extraction candidate from %s lacks phase/plan/tasks", source)
            continue
        try:
            plan = GeneratedPlan.model_validate(parsed)
        except ValidationError as error:
            LOGGER.debug("Extraction candidate from %s failed validation: %s", source, error)
            continue
        result.plan = plan
        result.payload = parsed
        result.source = source
        return result

    result.reason = (
        "no structured payload found" if not result.attempts else "no candidate carried phase, plan or tasks"
    )
    return result


def extract_payload(text: str | None) -> Optional[dict[str, Any]]:
    """Return the raw payload mapping, or None when nothing usable was found."""
    return extract(text).payload


def extract_plan(text: str | None) -> Optional[GeneratedPlan]:
    """Return the recovered :class:`GeneratedPlan`, or None for plain text."""
    return extract(text).plan
