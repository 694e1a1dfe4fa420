"""Bounded self-correction loop that answers the model's questions for it.

When a response asks questions, or the executor stops on a conflict or a
failed write, the loop turns that into a directive, appends it to the
conversation and asks again. Depth is counted explicitly so a model that keeps
asking stops at ``max_depth`` with a manual-intervention outcome.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..models.client import GenerativeClient, Message
from ..schema import GeneratedPlan
from .extraction import extract_plan, fenced_blocks
from .workflow import ClarificationRequest, FailureContext

__all__ = [
    "ClarificationLoop",
    "ClarificationOutcome",
    "ClarificationRequest",
    "ClarificationStep",
    "ExecutionFeedback",
    "FailureContext",
    "OutcomeStatus",
    "build_auto_answer",
    "build_failure_prompt",
    "build_follow_up",
    "extract_questions",
    "needs_clarification",
]

LOGGER = logging.getLogger(__name__)

_INTERROGATIVE = (
    re.compile(r"\?\s*$", re.M),
    re.compile(
        r"\b(could you|can you|would you (?:like|prefer)|do you want|should i|which (?:one|option)|"
        r"please (?:clarify|confirm|specify|let me know))\b",
        re.I,
    ),
)
_SENTENCE = re.compile(r"[^.!?\n]*\?")


@dataclass(slots=True)
class ExecutionFeedback:
    """What an execution pass hands back to the loop."""

    clarifications: List[ClarificationRequest] = field(default_factory=list)
    written: List[str] = field(default_factory=list)


Executor = Callable[[GeneratedPlan, str], ExecutionFeedback]


class OutcomeStatus(str, Enum):
    """Why the clarification loop stopped."""

    RESOLVED = "resolved"
    MANUAL_INTERVENTION = "manual_intervention"
    NO_PAYLOAD = "no_payload"
    CANCELLED = "cancelled"


def _prose(text: str) -> str:
    """Return ``text`` with fenced blocks removed so code never reads as a question."""
    prose = text or ""
    for block in fenced_blocks(prose):
        prose = prose.replace(block.body, " ")
    return prose.replace("```", " ")


def needs_clarification(text: str, plan: Optional[GeneratedPlan] = None) -> bool:
    """Return True when the response leaves questions open."""
    if plan is not None:
        if plan.questions:
            return True
        if plan.is_clear is False:
            return True
        return False
    prose = _prose(text)
    return any(pattern.search(prose) for pattern in _INTERROGATIVE)


def extract_questions(text: str, plan: Optional[GeneratedPlan] = None) -> List[str]:
    """Collect structured questions plus question sentences from the prose."""
    questions: list[str] = []
    if plan is not None:
        questions.extend(plan.questions)
    for match in _SENTENCE.finditer(_prose(text)):
        sentence = match.group(0).strip(" -*\t")
        if len(sentence) > 5 and sentence not in questions:
            questions.append(sentence)
    return questions


def build_auto_answer(questions: Sequence[str], original_request: str, context: str = "") -> str:
    """Tell the model to answer its own questions from context and carry on."""
    lines = [f"Original request: {original_request}", ""]
    if questions:
        lines.append("You asked:")
        lines.extend(f"{index}. {question}" for index, question in enumerate(questions, 1))
        lines.append("")
    if context:
        lines.extend(["Project context:", context, ""])
    lines.extend(
        [
            "Answer these questions yourself using the project context and everything gathered so far.",
            "Pick the most reasonable option for each, state the assumption in analysis, and do not ask further questions.",
            "Set isClear to true and reply with the complete plan as one ```json block, including codeBlocks for every file.",
        ]
    )
    return "\n".join(lines)


def build_failure_prompt(request: ClarificationRequest) -> str:
    """Describe a failed file write, install or command so the model can propose a fix."""
    failure = request.failure_context or FailureContext(operation="write", error_message=request.prompt_text)
    lines = [
        "An operation failed while executing your plan.",
        f"Operation: {failure.operation}",
        f"Target: {request.target_path or '-'}",
        f"Error type: {failure.error_type}",
        f"Error: {failure.error_message}",
    ]
    if failure.suggestions:
        lines.append("Suggestions:")
        lines.extend(f"- {suggestion}" for suggestion in failure.suggestions)
    if failure.attempted_content_excerpt:
        lines.extend(["Attempted content (excerpt):", failure.attempted_content_excerpt])
    if request.original_request:
        lines.append(f"Original request: {request.original_request}")
    lines.append(
        "Analyze the cause and propose a new path or operation. Respond in the planning JSON format."
    )
    return "\n".join(lines)


def _conflict_prompt(request: ClarificationRequest) -> str:
    lines = [request.prompt_text]
    if request.alternatives:
        lines.append("Options:")
        lines.extend(f"- {alternative}" for alternative in request.alternatives)
    return "\n".join(lines)


def build_follow_up(
    requests: Sequence[ClarificationRequest],
    original_request: str,
    written: Sequence[str] = (),
) -> str:
    """Merge executor clarification requests into one directive."""
    sections = [f"Original request: {original_request}", ""]
    for request in requests:
        if request.kind == "failure":
            sections.append(build_failure_prompt(request))
        else:
            sections.append(_conflict_prompt(request))
        sections.append("")
    if written:
        sections.append(f"Already written, do not recreate: {', '.join(written)}")
    sections.append(
        "Decide each point yourself without asking, then resend only the remaining work as one ```json plan."
    )
    return "\n".join(sections)


@dataclass(slots=True)
class ClarificationStep:
    """One round trip made by the loop."""

    depth: int
    reason: str
    prompt: str
    response: str


@dataclass(slots=True)
class ClarificationOutcome:
    """Where the loop stopped and why."""

    status: OutcomeStatus
    response: str
    plan: Optional[GeneratedPlan]
    depth: int
    history: List[Message] = field(default_factory=list)
    steps: List[ClarificationStep] = field(default_factory=list)
    pending: List[ClarificationRequest] = field(default_factory=list)
    open_questions: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.status == OutcomeStatus.RESOLVED

    @property
    def message(self) -> str:
        if self.status == OutcomeStatus.MANUAL_INTERVENTION:
            return f"Manual intervention needed: still unresolved after {self.depth} clarification round(s)."
        if self.status == OutcomeStatus.NO_PAYLOAD:
            return "The response contained no structured plan."
        if self.status == OutcomeStatus.CANCELLED:
            return "Clarification was cancelled."
        return "Resolved."


class ClarificationLoop:
    """Drive generate, extract and execute until nothing is left to clarify."""

    def __init__(
        self,
        client: GenerativeClient,
        *,
        max_depth: int = 5,
        options: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._client = client
        self._max_depth = max_depth
        self._options: Dict[str, Any] = dict(options or {})
        self._cancel = cancel_event

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def run(
        self,
        request: str,
        response: str,
        history: Sequence[Message] = (),
        *,
        execute: Optional[Executor] = None,
    ) -> ClarificationOutcome:
        """Resolve ``response`` for ``request``, executing plans through ``execute``.

        ``execute`` reports the clarification requests the executor raised and
        the files it wrote; no requests means the plan ran without follow-up.
        """
        conversation: list[Message] = list(history)
        steps: list[ClarificationStep] = []
        written: list[str] = []
        depth = 0

        while True:
            plan = extract_plan(response)
            pending: list[ClarificationRequest] = []
            questions: list[str] = []
            if needs_clarification(response, plan):
                questions = extract_questions(response, plan)
                directive = build_auto_answer(questions, request)
                reason = "questions"
            elif plan is None:
                return ClarificationOutcome(
                    status=OutcomeStatus.NO_PAYLOAD,
                    response=response,
                    plan=None,
                    depth=depth,
                    history=conversation,
                    steps=steps,
                )
            else:
                if execute is not None:
                    feedback = execute(plan, response)
                    pending = list(feedback.clarifications)
                    written.extend(path for path in feedback.written if path not in written)
                if not pending:
                    return ClarificationOutcome(
                        status=OutcomeStatus.RESOLVED,
                        response=response,
                        plan=plan,
                        depth=depth,
                        history=conversation,
                        steps=steps,
                    )
                directive = build_follow_up(pending, request, written)
                reason = "execution"

            if depth >= self._max_depth:
                LOGGER.warning("Clarification depth %d reached; manual intervention needed", depth)
                return ClarificationOutcome(
                    status=OutcomeStatus.MANUAL_INTERVENTION,
                    response=response,
                    plan=plan,
                    depth=depth,
                    history=conversation,
                    steps=steps,
                    pending=pending,
                    open_questions=questions,
                )
            if self._cancel is not None and self._cancel.is_set():
                return ClarificationOutcome(
                    status=OutcomeStatus.CANCELLED,
                    response=response,
                    plan=plan,
                    depth=depth,
                    history=conversation,
                    steps=steps,
                    pending=pending,
                    open_questions=questions,
                )

            depth += 1
            LOGGER.info("Clarification round %d (%s)", depth, reason)
            reply = self._client.generate(directive, conversation, self._options)
            conversation.append({"role": "user", "content": directive})
            conversation.append({"role": "assistant", "content": reply})
            steps.append(ClarificationStep(depth=depth, reason=reason, prompt=directive, response=reply))
            response = reply
