"""Exception hierarchy shared across the planwright pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .planning.workflow import ClarificationRequest

__all__ = [
    "ClarificationRequired",
    "ConfigError",
    "GenerationError",
    "GenerationTimeoutError",
    "GenerationTransportError",
    "PlanwrightError",
    "RecordNotFoundError",
]


class PlanwrightError(RuntimeError):
    """Base error raised by planwright components."""


class GenerationError(PlanwrightError):
    """Raised when the generative collaborator cannot produce a response."""


class GenerationTransportError(GenerationError):
    """Raised when the underlying transport fails to return a response."""


class GenerationTimeoutError(GenerationTransportError):
    """Raised when the generative collaborator does not answer in time."""


class ConfigError(PlanwrightError):
    """Raised when the configuration file cannot be parsed."""


class RecordNotFoundError(PlanwrightError):
    """Raised when a planning record does not exist in the store."""


class ClarificationRequired(PlanwrightError):
    """Signals that a task stopped to ask for clarification instead of guessing."""

    def __init__(self, request: "ClarificationRequest") -> None:
        super().__init__(request.summary())
        self.request = request
