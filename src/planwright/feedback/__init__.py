"""Response scoring and the iterative prompt-improvement loop."""

from .enhancer import EnhancementContext, PromptEnhancer
from .evaluator import EvaluationResult, FeedbackEvaluator, format_evaluation
from .iteration import IterationManager, IterationRecord, IterationResult, render_report, save_report

__all__ = [
    "EnhancementContext",
    "EvaluationResult",
    "FeedbackEvaluator",
    "IterationManager",
    "IterationRecord",
    "IterationResult",
    "PromptEnhancer",
    "format_evaluation",
    "render_report",
    "save_report",
]
