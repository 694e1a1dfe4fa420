"""
Plan extraction, validation, workflow compilation and execution.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "ClarificationLoop": "clarification",
    "ClarificationOutcome": "clarification",
    "ExecutionFeedback": "clarification",
    "ExtractionResult": "extraction",
    "extract": "extraction",
    "extract_payload": "extraction",
    "extract_plan": "extraction",
    "repair_json": "extraction",
    "HeuristicInference": "inference",
    "InferenceEngine": "inference",
    "ValidationReport": "validation",
    "validate_plan": "validation",
    "TaskExecutor": "executor",
    "WorkflowRunner": "executor",
    "WorkflowSummary": "executor",
    "WorkflowContext": "workflow",
    "WorkflowTask": "workflow",
    "compile_workflow": "workflow",
    "resolve_execution_order": "workflow",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers so tools can depend on extraction alone."""
    if name in _EXPORTS:
        module = import_module(f"planwright.planning.{_EXPORTS[name]}")
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
