"""Project-scoped JSON records of accepted planning payloads."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..errors import RecordNotFoundError

__all__ = ["PlanningRecord", "PlanningRecordStore", "RecordSummary"]

LOGGER = logging.getLogger(__name__)

_PREFIX = "planning-"
_SUFFIX = ".json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_iso(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _sort_key(created_at: Optional[str]) -> float:
    if not created_at:
        return 0.0
    try:
        return datetime.fromisoformat(created_at.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


@dataclass(slots=True)
class RecordSummary:
    """Listing view of a stored record."""

    filename: str
    path: str
    created_at: Optional[str]
    user_request: str
    is_clear: bool
    ready_to_execute: bool
    packages: List[str] = field(default_factory=list)
    files_to_create: int = 0
    files_to_modify: int = 0


@dataclass(slots=True)
class PlanningRecord:
    filename: str
    metadata: Dict[str, Any]
    planning: Dict[str, Any]


class PlanningRecordStore:
    """Stores ``planning-<timestamp>.json`` files under ``<project>/<directory>``.

    Records carry ``metadata`` (createdAt, userRequest, projectPath) and the
    ``planning`` payload. Writes are plain file writes with no durability
    guarantees; unreadable files are skipped when listing.
    """

    def __init__(
        self,
        project_root: Path | str,
        directory: str = "planning",
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._project_root = Path(project_root)
        self._directory_name = directory
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._project_root / self._directory_name

    def _path_for(self, name: str) -> Path:
        # Only the base name is honoured so records cannot address files outside the directory.
        filename = name.replace("\\", "/").rsplit("/", 1)[-1]
        if not filename.endswith(_SUFFIX):
            filename = f"{filename}{_SUFFIX}"
        return self.directory / filename

    def save(self, user_request: str, planning: Mapping[str, Any]) -> Path:
        """Write a new record and return its path."""
        now = self._clock()
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")
        path = self.directory / f"{_PREFIX}{stamp}{_SUFFIX}"
        counter = 1
        while path.exists():
            path = self.directory / f"{_PREFIX}{stamp}-{counter}{_SUFFIX}"
            counter += 1
        document = {
            "metadata": {
                "createdAt": _as_iso(now),
                "userRequest": user_request or "",
                "projectPath": self._project_root.as_posix(),
            },
            "planning": dict(planning),
        }
        with path.open("w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, ensure_ascii=False)
        LOGGER.info("Saved planning record %s", path.name)
        return path

    def list(self) -> List[RecordSummary]:
        """Return summaries of every readable record, newest first."""
        if not self.directory.is_dir():
            return []
        summaries: list[RecordSummary] = []
        for path in self.directory.glob(f"{_PREFIX}*{_SUFFIX}"):
            try:
                with path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except (OSError, json.JSONDecodeError) as error:
                LOGGER.warning("Skipping unreadable planning record %s: %s", path.name, error)
                continue
            if not isinstance(data, dict):
                LOGGER.warning("Skipping malformed planning record %s", path.name)
                continue
            summaries.append(self._summary(path, data))
        summaries.sort(key=lambda item: (_sort_key(item.created_at), item.filename), reverse=True)
        return summaries

    def _summary(self, path: Path, data: Mapping[str, Any]) -> RecordSummary:
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        planning = data.get("planning") if isinstance(data.get("planning"), dict) else {}
        plan = planning.get("plan") if isinstance(planning.get("plan"), dict) else {}
        packages = plan.get("packages")
        create = plan.get("filesToCreate")
        modify = plan.get("filesToModify")
        return RecordSummary(
            filename=path.name,
            path=f"{self._directory_name}/{path.name}",
            created_at=metadata.get("createdAt") or None,
            user_request=str(metadata.get("userRequest") or ""),
            is_clear=bool(planning.get("isClear")),
            ready_to_execute=bool(planning.get("readyToExecute")),
            packages=[str(item) for item in packages] if isinstance(packages, list) else [],
            files_to_create=len(create) if isinstance(create, list) else 0,
            files_to_modify=len(modify) if isinstance(modify, list) else 0,
        )

    def read(self, name: str) -> PlanningRecord:
        path = self._path_for(name)
        if not path.is_file():
            raise RecordNotFoundError(f"Planning record not found: {name}")
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as error:
            raise RecordNotFoundError(f"Planning record {name} is not valid JSON: {error}") from error
        if not isinstance(data, dict):
            raise RecordNotFoundError(f"Planning record {name} is malformed.")
        metadata = data.get("metadata")
        planning = data.get("planning")
        return PlanningRecord(
            filename=path.name,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            planning=dict(planning) if isinstance(planning, dict) else {},
        )

    def delete(self, name: str) -> None:
        path = self._path_for(name)
        if not path.is_file():
            raise RecordNotFoundError(f"Planning record not found: {name}")
        path.unlink()
        LOGGER.info("Deleted planning record %s", path.name)
