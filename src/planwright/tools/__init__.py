"""File, command and diagnostics collaborators used by the task executor."""

from .commands import CommandCollaborator, CommandOutcome, ShellCommandRunner, base_commands
from .diagnostics import CHECKS, DiagnosticReport, FileVerifier, FixOutcome, language_for
from .files import FileCollaborator, FileErrorType, LocalFileCollaborator, WriteOutcome, classify_os_error

__all__ = [
    "CHECKS",
    "CommandCollaborator",
    "CommandOutcome",
    "DiagnosticReport",
    "FileCollaborator",
    "FileErrorType",
    "FileVerifier",
    "FixOutcome",
    "LocalFileCollaborator",
    "ShellCommandRunner",
    "WriteOutcome",
    "base_commands",
    "classify_os_error",
    "language_for",
]
