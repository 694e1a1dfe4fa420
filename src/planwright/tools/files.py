"""Project-scoped file access used by the task executor."""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from ..schema import normalize_path

__all__ = [
    "FileCollaborator",
    "FileErrorType",
    "LocalFileCollaborator",
    "WriteOutcome",
    "classify_os_error",
]

LOGGER = logging.getLogger(__name__)


class FileErrorType(str, Enum):
    """Classification attached to a failed write."""

    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    IS_DIRECTORY = "is_directory"
    NO_SPACE = "no_space"
    TOO_MANY_FILES = "too_many_files"
    BUSY = "busy"
    OUTSIDE_ROOT = "outside_root"
    UNKNOWN = "unknown"


_SUGGESTIONS: Dict[FileErrorType, List[str]] = {
    FileErrorType.PERMISSION: [
        "Check the file and directory permissions.",
        "Choose a path inside a writable directory.",
    ],
    FileErrorType.NOT_FOUND: [
        "Check that the parent directory path is spelled correctly.",
        "Create the missing directory first.",
    ],
    FileErrorType.IS_DIRECTORY: [
        "The target is a directory; add a file name to the path.",
    ],
    FileErrorType.NO_SPACE: [
        "Free up disk space and retry.",
    ],
    FileErrorType.TOO_MANY_FILES: [
        "Close other programs holding files open and retry.",
    ],
    FileErrorType.BUSY: [
        "The file is locked by another process; retry once it is released.",
    ],
    FileErrorType.OUTSIDE_ROOT: [
        "Use a path relative to the project root.",
        "Remove '..' segments that leave the project.",
    ],
    FileErrorType.UNKNOWN: [
        "Retry the write or choose a different path.",
    ],
}

_ERRNO_TYPES = {
    errno.EACCES: FileErrorType.PERMISSION,
    errno.EPERM: FileErrorType.PERMISSION,
    errno.EROFS: FileErrorType.PERMISSION,
    errno.ENOENT: FileErrorType.NOT_FOUND,
    errno.ENOTDIR: FileErrorType.NOT_FOUND,
    errno.EISDIR: FileErrorType.IS_DIRECTORY,
    errno.ENOSPC: FileErrorType.NO_SPACE,
    errno.EMFILE: FileErrorType.TOO_MANY_FILES,
    errno.ENFILE: FileErrorType.TOO_MANY_FILES,
    errno.EBUSY: FileErrorType.BUSY,
}


@dataclass(slots=True)
class WriteOutcome:
    """Result of a write; failures carry a type, message and suggestions."""

    ok: bool
    path: str
    error_type: Optional[FileErrorType] = None
    message: str = ""
    suggestions: List[str] = field(default_factory=list)


class FileCollaborator(Protocol):
    """File operations the executor needs, always relative to a project root."""

    def read_file(self, path: str, root: Path) -> Optional[str]: ...

    def write_file(self, path: str, root: Path, content: str) -> WriteOutcome: ...

    def exists(self, path: str, root: Path) -> bool: ...


def classify_os_error(error: OSError) -> FileErrorType:
    """Map an ``OSError`` onto a :class:`FileErrorType`."""
    if isinstance(error, PermissionError):
        return FileErrorType.PERMISSION
    if isinstance(error, IsADirectoryError):
        return FileErrorType.IS_DIRECTORY
    if isinstance(error, FileNotFoundError):
        return FileErrorType.NOT_FOUND
    return _ERRNO_TYPES.get(error.errno or 0, FileErrorType.UNKNOWN)


class LocalFileCollaborator:
    """Reads and writes files beneath a project root on the local disk."""

    def _resolve(self, path: str, root: Path) -> Optional[Path]:
        relative = normalize_path(path)
        if not relative:
            return None
        base = Path(root).resolve()
        candidate = (base / relative).resolve()
        if candidate != base and base not in candidate.parents:
            return None
        return candidate

    def read_file(self, path: str, root: Path) -> Optional[str]:
        target = self._resolve(path, root)
        if target is None or not target.is_file():
            return None
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.debug("Skipping unreadable file %s: %s", path, error)
            return None

    def exists(self, path: str, root: Path) -> bool:
        target = self._resolve(path, root)
        return target is not None and target.exists()

    def write_file(self, path: str, root: Path, content: str) -> WriteOutcome:
        """Write ``content`` with LF newlines, creating parent directories."""
        relative = normalize_path(path)
        target = self._resolve(path, root)
        if target is None:
            kind = FileErrorType.OUTSIDE_ROOT
            return WriteOutcome(
                ok=False,
                path=relative,
                error_type=kind,
                message=f"Refusing to write outside the project root: {path}",
                suggestions=list(_SUGGESTIONS[kind]),
            )
        normalised = content.replace("\r\n", "\n")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(normalised, encoding="utf-8")
        except OSError as error:
            kind = classify_os_error(error)
            LOGGER.warning("Failed to write %s: %s", relative, error)
            return WriteOutcome(
                ok=False,
                path=relative,
                error_type=kind,
                message=f"Failed to write {relative}: {error.strerror or error}",
                suggestions=list(_SUGGESTIONS[kind]),
            )
        return WriteOutcome(ok=True, path=relative, message=f"Wrote {relative}")
