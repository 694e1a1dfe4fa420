"""Outer feedback loop: generate, score, enhance the prompt and try again."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

from ..config import FeedbackSettings
from ..errors import GenerationError
from ..models.client import GenerativeClient, Message
from .enhancer import EnhancementContext, PromptEnhancer
from .evaluator import EvaluationResult, FeedbackEvaluator, format_evaluation

__all__ = [
    "IterationManager",
    "IterationRecord",
    "IterationResult",
    "render_report",
    "save_report",
]

LOGGER = logging.getLogger(__name__)

_PROMPT_EXCERPT = 500
_RESPONSE_EXCERPT = 1000


@dataclass(slots=True)
class IterationRecord:
    iteration: int
    prompt: str
    response: str
    evaluation: EvaluationResult


@dataclass(slots=True)
class IterationResult:
    """Final state of the loop plus every attempt made on the way."""

    success: bool
    final_response: str
    final_evaluation: EvaluationResult
    iterations: int
    history: List[IterationRecord] = field(default_factory=list)
    stop_reason: str = ""


class IterationManager:
    """Resubmit a request with enhanced prompts until the answer is usable.

    Stops when a response is usable and scores at least ``min_score``, when
    ``max_iterations`` is reached, or early once the score stays under
    ``abort_floor`` from iteration ``abort_after_iteration`` onwards. A failing
    first call propagates; later collaborator failures end the loop with the
    history gathered so far.
    """

    def __init__(
        self,
        client: GenerativeClient,
        *,
        evaluator: Optional[FeedbackEvaluator] = None,
        enhancer: Optional[PromptEnhancer] = None,
        settings: Optional[FeedbackSettings] = None,
        options: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._client = client
        self._settings = settings or FeedbackSettings()
        self._evaluator = evaluator or FeedbackEvaluator()
        self._enhancer = enhancer or PromptEnhancer(low_quality_floor=self._settings.low_quality_floor)
        self._options = dict(options or {})
        self._cancel = cancel_event

    def _accepted(self, evaluation: EvaluationResult) -> bool:
        return evaluation.is_usable and evaluation.score >= self._settings.min_score

    def iterate(self, request: str) -> IterationResult:
        settings = self._settings
        initial_prompt = self._enhancer.build_initial_prompt(request)
        LOGGER.info("Iteration 1: sending initial prompt")
        response = self._client.generate(initial_prompt, (), self._options)
        evaluation = self._evaluator.evaluate(response)
        history = [IterationRecord(iteration=1, prompt=initial_prompt, response=response, evaluation=evaluation)]
        LOGGER.debug("%s", format_evaluation(evaluation))
        LOGGER.info("Iteration 1 scored %d/100", evaluation.score)

        if self._accepted(evaluation):
            return IterationResult(True, response, evaluation, 1, history, stop_reason="usable")

        stop_reason = "max_iterations"
        for iteration in range(2, settings.max_iterations + 1):
            if self._cancel is not None and self._cancel.is_set():
                stop_reason = "cancelled"
                break
            context = EnhancementContext(
                original_prompt=request,
                evaluation=evaluation,
                iteration=iteration,
                previous_response=response,
            )
            if evaluation.score < settings.low_quality_floor:
                prompt = self._enhancer.enhance_aggressively(context)
            else:
                prompt = self._enhancer.enhance(context)
            conversation: list[Message] = [
                {"role": "user", "content": initial_prompt},
                {"role": "assistant", "content": response},
            ]
            try:
                response = self._client.generate(prompt, conversation, self._options)
            except GenerationError as error:
                LOGGER.warning("Iteration %d failed to reach the model: %s", iteration, error)
                stop_reason = "collaborator_failure"
                break

            evaluation = self._evaluator.evaluate(response)
            history.append(
                IterationRecord(iteration=iteration, prompt=prompt, response=response, evaluation=evaluation)
            )
            LOGGER.debug("%s", format_evaluation(evaluation))
            LOGGER.info("Iteration %d scored %d/100", iteration, evaluation.score)

            if self._accepted(evaluation):
                return IterationResult(True, response, evaluation, iteration, history, stop_reason="usable")

            if iteration >= settings.abort_after_iteration and evaluation.score < settings.abort_floor:
                LOGGER.warning(
                    "Score still below %d at iteration %d; stopping early",
                    settings.abort_floor,
                    iteration,
                )
                stop_reason = "low_score"
                break

        LOGGER.info("No usable response; final score %d/100", evaluation.score)
        return IterationResult(False, response, evaluation, len(history), history, stop_reason=stop_reason)


def render_report(result: IterationResult) -> str:
    """Render the iteration history as a Markdown report."""
    final = result.final_evaluation
    lines = [
        "# Feedback iteration report",
        "",
        "## Summary",
        "",
        f"- **Success**: {'yes' if result.success else 'no'}",
        f"- **Iterations**: {result.iterations}",
        f"- **Final score**: {final.score}/100",
        f"- **Usable**: {'yes' if final.is_usable else 'no'}",
    ]
    if result.stop_reason:
        lines.append(f"- **Stopped because**: {result.stop_reason}")
    lines.extend(["", "## Final evaluation", "", format_evaluation(final), "## History", ""])

    for record in result.history:
        lines.extend([f"### Iteration {record.iteration}", "", f"**Score**: {record.evaluation.score}/100", ""])
        if record.evaluation.strengths:
            lines.append("**Strengths**:")
            lines.extend(f"- {item}" for item in record.evaluation.strengths)
            lines.append("")
        if record.evaluation.issues:
            lines.append("**Issues**:")
            lines.extend(f"- {item}" for item in record.evaluation.issues)
            lines.append("")
        lines.extend(
            [
                f"**Prompt (first {_PROMPT_EXCERPT} characters)**:",
                "```",
                record.prompt[:_PROMPT_EXCERPT],
                "```",
                "",
                f"**Response (first {_RESPONSE_EXCERPT} characters)**:",
                "```",
                record.response[:_RESPONSE_EXCERPT],
                "```",
                "",
                "---",
                "",
            ]
        )

    lines.extend(["## Final response", "", "```", result.final_response, "```", ""])
    return "\n".join(lines)


def save_report(result: IterationResult, path: Path | str) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_report(result), encoding="utf-8")
    return target
