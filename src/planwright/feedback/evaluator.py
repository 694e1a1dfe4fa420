"""Score model responses by how usable their structured payload is."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from ..planning.extraction import extract_plan
from ..planning.validation import contains_placeholder
from ..schema import PlanPhase

__all__ = [
    "EvaluationResult",
    "FeedbackEvaluator",
    "MISSING_ARCHITECTURE",
    "MISSING_CODE_BLOCKS",
    "MISSING_EXECUTION_ORDER",
    "MISSING_FILES",
    "MISSING_JSON",
    "MISSING_PHASE",
    "MISSING_PLAN",
    "MISSING_TASKS",
    "format_evaluation",
]

MISSING_JSON = "JSON response format"
MISSING_PHASE = "phase field"
MISSING_PLAN = "plan"
MISSING_ARCHITECTURE = "plan.architecture"
MISSING_FILES = "plan.filesToCreate or plan.filesToModify"
MISSING_EXECUTION_ORDER = "plan.executionOrder"
MISSING_CODE_BLOCKS = "codeBlocks"
MISSING_TASKS = "tasks"

SHORT_BLOCK_LENGTH = 50
PLANNING_THRESHOLD = 60
DEFAULT_THRESHOLD = 70
MAX_ISSUES = 3


@dataclass(slots=True)
class EvaluationResult:
    """Score and findings for one response."""

    score: int = 0
    is_usable: bool = False
    issues: List[str] = field(default_factory=list)
    missing_elements: List[str] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def has_placeholders(self) -> bool:
        return any("placeholder" in issue for issue in self.issues)

    @property
    def has_short_blocks(self) -> bool:
        return any("empty or too short" in issue for issue in self.issues)


class FeedbackEvaluator:
    """Weighted presence scoring of the canonical payload fields."""

    def evaluate(self, response: str) -> EvaluationResult:
        result = EvaluationResult()
        plan = extract_plan(response)
        if plan is None:
            result.issues.append("Could not find a structured JSON response")
            result.missing_elements.append(MISSING_JSON)
            result.suggestions.append("Wrap the response in a ```json ... ``` code block")
            return result

        score = 20

        if plan.phase is not None:
            score += 10
            result.strengths.append(f"Phase is stated: {plan.phase.value}")
        else:
            result.issues.append("Phase is not stated")
            result.missing_elements.append(MISSING_PHASE)

        if len(plan.analysis) > 50:
            score += 10
            result.strengths.append("Includes a detailed analysis")
        else:
            result.issues.append("Analysis is missing or too brief")
            result.suggestions.append("Add a detailed analysis of the request")

        if plan.phase == PlanPhase.PLANNING:
            details = plan.plan
            if details is not None:
                score += 20
                result.strengths.append("Includes a plan")
                if len(details.architecture) > 20:
                    score += 10
                    result.strengths.append("Includes an architecture description")
                else:
                    result.issues.append("Architecture description is insufficient")
                    result.missing_elements.append(MISSING_ARCHITECTURE)
                total_files = len(details.files_to_create) + len(details.files_to_modify)
                if total_files:
                    score += 10
                    result.strengths.append(f"Plans {total_files} file(s)")
                else:
                    result.issues.append("No files to create or modify are listed")
                    result.missing_elements.append(MISSING_FILES)
                if details.execution_order:
                    score += 10
                    result.strengths.append("Execution order is stated")
                else:
                    result.issues.append("Execution order is not stated")
                    result.missing_elements.append(MISSING_EXECUTION_ORDER)
            else:
                result.issues.append("Planning phase response has no plan")
                result.missing_elements.append(MISSING_PLAN)
                result.suggestions.append(
                    "Include a plan object with architecture, filesToCreate and executionOrder"
                )

        if plan.code_blocks:
            score += 20
            result.strengths.append(f"Includes {len(plan.code_blocks)} code block(s)")
            short = [block for block in plan.code_blocks if len(block.content.strip()) < SHORT_BLOCK_LENGTH]
            if short:
                result.issues.append(f"{len(short)} code block(s) are empty or too short")
                result.suggestions.append("Put complete code in every code block")
                score -= 10
            placeholders = [block for block in plan.code_blocks if contains_placeholder(block.content)]
            if placeholders:
                result.issues.append(f"{len(placeholders)} code block(s) contain placeholders")
                result.suggestions.append("Replace placeholders with the real implementation")
                score -= 5
        elif plan.phase == PlanPhase.PLANNING and plan.planned_paths():
            result.issues.append("Files are planned but no code blocks were provided")
            result.missing_elements.append(MISSING_CODE_BLOCKS)
            result.suggestions.append("Provide the code for each planned file even in the planning phase")

        if plan.phase == PlanPhase.EXECUTION:
            if plan.tasks:
                score += 10
                result.strengths.append(f"Defines {len(plan.tasks)} task(s)")
                incomplete = [task for task in plan.tasks if not task.type or not task.description.strip()]
                if incomplete:
                    result.issues.append(f"{len(incomplete)} task(s) are incomplete")
                    result.suggestions.append("Give every task a type and a description")
                    score -= 5
            else:
                result.issues.append("Execution phase response has no tasks")
                result.missing_elements.append(MISSING_TASKS)
                result.suggestions.append("List the tasks to run in the tasks array")

        if plan.questions:
            result.strengths.append(f"Asks {len(plan.questions)} question(s)")
            result.suggestions.append("Answering the questions would give a better result")

        result.score = max(0, min(100, score))
        threshold = PLANNING_THRESHOLD if plan.phase == PlanPhase.PLANNING else DEFAULT_THRESHOLD
        result.is_usable = result.score >= threshold and len(result.issues) <= MAX_ISSUES
        if not result.is_usable and result.score >= threshold:
            result.suggestions.append("Resolving the main issues should make the response usable")
        return result


def format_evaluation(result: EvaluationResult) -> str:
    """Render an evaluation as plain text for terminals and reports."""
    lines = [
        "=== Evaluation ===",
        f"Score: {result.score}/100",
        f"Usable: {'yes' if result.is_usable else 'no'}",
        "",
    ]
    sections = (
        ("Strengths:", "  + ", result.strengths),
        ("Issues:", "  - ", result.issues),
        ("Missing elements:", "  * ", result.missing_elements),
        ("Suggestions:", "  > ", result.suggestions),
    )
    for title, marker, items in sections:
        if not items:
            continue
        lines.append(title)
        lines.extend(f"{marker}{item}" for item in items)
        lines.append("")
    return "\n".join(lines)
