"""Explicit per-conversation state: history and the source-file cache."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .models.client import Message

__all__ = ["Session", "SessionRegistry"]


@dataclass(slots=True)
class Session:
    """Conversation history and cached file contents for one project."""

    id: str
    project_root: Path
    history: List[Message] = field(default_factory=list)
    file_cache: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_exchange(self, prompt: str, response: str) -> None:
        self.history.append({"role": "user", "content": prompt})
        self.history.append({"role": "assistant", "content": response})


class SessionRegistry:
    """Owns every live session; callers pass sessions around explicitly."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def create(self, project_root: Path | str, *, session_id: Optional[str] = None) -> Session:
        key = session_id or uuid.uuid4().hex
        if key in self._sessions:
            raise ValueError(f"Session {key} already exists.")
        session = Session(id=key, project_root=Path(project_root))
        self._sessions[key] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def destroy(self, session_id: str) -> bool:
        """Drop the session and its cache; returns False when it was unknown."""
        return self._sessions.pop(session_id, None) is not None

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
