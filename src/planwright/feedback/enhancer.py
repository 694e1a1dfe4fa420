"""Turn an evaluation into a sharper follow-up prompt."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .evaluator import (
    MISSING_ARCHITECTURE,
    MISSING_CODE_BLOCKS,
    MISSING_EXECUTION_ORDER,
    MISSING_FILES,
    MISSING_JSON,
    MISSING_PHASE,
    MISSING_TASKS,
    EvaluationResult,
)

__all__ = ["EnhancementContext", "PromptEnhancer"]

_MISSING_INSTRUCTIONS: Dict[str, str] = {
    MISSING_JSON: "Wrap the whole response in a ```json ... ``` code block.",
    MISSING_PHASE: 'Include a "phase" field set to "planning" or "execution".',
    MISSING_ARCHITECTURE: "Describe the project architecture in plan.architecture (at least 20 characters).",
    MISSING_FILES: "List the files to create or modify in plan.filesToCreate or plan.filesToModify.",
    MISSING_EXECUTION_ORDER: "Spell out the steps in plan.executionOrder.",
    MISSING_CODE_BLOCKS: "Put the complete code for every file in the codeBlocks array, with no placeholders.",
    MISSING_TASKS: "List the tasks to run in the tasks array; every task needs a type and a description.",
}

_INITIAL_INSTRUCTIONS = (
    "Respond with a single ```json ... ``` code block.",
    "Include every required field: phase, analysis, isClear and plan.",
    "Put complete code in codeBlocks; placeholders are not allowed.",
    "Give a detailed implementation for each file.",
)


@dataclass(slots=True)
class EnhancementContext:
    """Inputs for one prompt enhancement."""

    original_prompt: str
    evaluation: EvaluationResult
    iteration: int
    previous_response: Optional[str] = None


class PromptEnhancer:
    def __init__(self, *, low_quality_floor: int = 50) -> None:
        self._low_quality_floor = low_quality_floor

    def build_initial_prompt(self, request: str) -> str:
        lines = [request, "", "Important instructions:"]
        lines.extend(f"{index}. {item}" for index, item in enumerate(_INITIAL_INSTRUCTIONS, 1))
        return "\n".join(lines)

    def enhance(self, context: EnhancementContext) -> str:
        """List what the previous answer lacked and restate the request."""
        evaluation = context.evaluation
        lines = [f"## Iteration {context.iteration}", ""]

        if context.previous_response is not None:
            lines.extend(
                [
                    "### Previous response evaluation",
                    f"Score: {evaluation.score}/100",
                    f"Usable: {'yes' if evaluation.is_usable else 'no'}",
                    "",
                ]
            )
            if evaluation.issues:
                lines.append("**Issues found:**")
                lines.extend(f"{index}. {issue}" for index, issue in enumerate(evaluation.issues, 1))
                lines.append("")
            if evaluation.missing_elements:
                lines.append("**Missing elements:**")
                lines.extend(
                    f"{index}. {element}" for index, element in enumerate(evaluation.missing_elements, 1)
                )
                lines.append("")

        lines.extend(
            [
                "### Requested improvements",
                "",
                "Rewrite the response so that the problems above are fixed.",
                "",
            ]
        )

        if evaluation.missing_elements:
            lines.append("**Must include:**")
            for element in evaluation.missing_elements:
                lines.append(f"- {_MISSING_INSTRUCTIONS.get(element, f'Include {element}.')}")
            lines.append("")

        if evaluation.suggestions:
            lines.append("**Suggestions:**")
            lines.extend(
                f"{index}. {suggestion}" for index, suggestion in enumerate(evaluation.suggestions, 1)
            )
            lines.append("")

        if evaluation.has_placeholders:
            lines.extend(
                [
                    "**Important: remove placeholders**",
                    "Do not use any of these in code blocks:",
                    "- // TODO",
                    "- // ...",
                    "- /* ... */",
                    "- ...implementation...",
                    "",
                    "Write complete, runnable code instead.",
                    "",
                ]
            )

        if evaluation.has_short_blocks:
            lines.extend(
                [
                    "**Important: write complete code**",
                    "Every code block must hold at least 50 characters of complete code.",
                    "Do not send empty files or stubs.",
                    "",
                ]
            )

        lines.extend(
            [
                "---",
                "",
                "### Original request",
                context.original_prompt,
                "",
                "---",
                "",
                "Apply every improvement above and give a complete, usable answer to the original request.",
                "Follow all rules of the system prompt and respond in JSON.",
            ]
        )
        return "\n".join(lines)

    def enhance_aggressively(self, context: EnhancementContext) -> str:
        """Like :meth:`enhance`, with an urgent rules block for very low scores."""
        enhanced = self.enhance(context)
        score = context.evaluation.score
        if score >= self._low_quality_floor:
            return enhanced
        urgent = [
            "",
            "",
            "**Urgent: serious problems found**",
            f"The current response quality is very low ({score}/100).",
            "You must follow these rules:",
            "",
            "1. **JSON format**: wrap the entire response in a ```json ... ``` block.",
            "2. **Structure**: include every required field (phase, analysis, plan, codeBlocks).",
            "3. **Complete code**: every code block must be complete, runnable code.",
            "4. **No placeholders**: never use // TODO, ... or similar placeholders.",
            "5. **Detail**: analysis needs at least 50 characters and architecture at least 20.",
            "",
            "Re-read the system prompt carefully and follow every rule.",
        ]
        return enhanced + "\n".join(urgent)
