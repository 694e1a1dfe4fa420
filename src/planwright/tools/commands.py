"""Shell command execution restricted to an allowlist of base commands."""

from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence

from ..config import DEFAULT_ALLOWED_COMMANDS

__all__ = [
    "CommandCollaborator",
    "CommandOutcome",
    "ShellCommandRunner",
    "base_commands",
]

LOGGER = logging.getLogger(__name__)

_CHAIN_SPLIT = re.compile(r"&&|\|\||;|\|")
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


@dataclass(slots=True)
class CommandOutcome:
    """Exit status and captured output of one command."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandCollaborator(Protocol):
    """Runs a command line inside ``cwd``."""

    def run(self, command: str, cwd: Path) -> CommandOutcome: ...


def base_commands(command: str) -> List[str]:
    """Return the executable named by each segment of a chained command line."""
    names: list[str] = []
    for segment in _CHAIN_SPLIT.split(command):
        try:
            tokens = shlex.split(segment)
        except ValueError:
            tokens = segment.split()
        tokens = [token for token in tokens if not _ENV_ASSIGNMENT.match(token)]
        if tokens:
            names.append(Path(tokens[0]).name)
    return names


class ShellCommandRunner:
    """Default :class:`CommandCollaborator` backed by :mod:`subprocess`."""

    def __init__(
        self,
        allowed_commands: Optional[Iterable[str]] = None,
        *,
        timeout: float = 600.0,
    ) -> None:
        self._allowed = set(allowed_commands or DEFAULT_ALLOWED_COMMANDS)
        self._timeout = timeout

    @property
    def allowed_commands(self) -> Sequence[str]:
        return sorted(self._allowed)

    def run(self, command: str, cwd: Path) -> CommandOutcome:
        names = base_commands(command)
        if not names:
            return CommandOutcome(command=command, exit_code=2, stderr="Empty command.")
        rejected = [name for name in names if name not in self._allowed]
        if rejected:
            LOGGER.warning("Rejected command outside the allowlist: %s", command)
            return CommandOutcome(
                command=command,
                exit_code=126,
                stderr=f"Command not allowed: {', '.join(rejected)}",
            )
        if shutil.which(names[0]) is None:
            return CommandOutcome(
                command=command,
                exit_code=127,
                stderr=f"Executable not available: {names[0]}",
            )

        LOGGER.info("Running command in %s: %s", cwd, command)
        try:
            process = subprocess.run(  # noqa: S602 - base commands checked against the allowlist
                command,
                cwd=cwd,
                shell=True,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as error:
            return CommandOutcome(
                command=command,
                exit_code=124,
                stdout=_text(error.stdout),
                stderr=f"Command timed out after {self._timeout:.0f}s",
            )
        except OSError as error:
            return CommandOutcome(command=command, exit_code=1, stderr=str(error))
        return CommandOutcome(
            command=command,
            exit_code=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
        )


def _text(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return value if isinstance(value, str) else ""
