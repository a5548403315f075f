"""In-memory registry of active stream sessions."""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

from .models import Session


def session_key(item_id: int) -> str:
    return f"video_{item_id}"


def multistream_key(item_id: int) -> str:
    return f"multistream_{item_id}"


class SessionRegistry:
    """Single source of truth for which items are currently streaming."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.key] = session

    def get(self, key: str) -> Optional[Session]:
        return self._sessions.get(key)

    def owns(self, key: str, process: Any) -> bool:
        session = self._sessions.get(key)
        return session is not None and session.process is process

    def remove(self, key: str, process: Any = None) -> Optional[Session]:
        """Drop ``key``; with ``process`` given, only if that process still owns it."""
        if process is not None and not self.owns(key, process):
            return None
        return self._sessions.pop(key, None)

    def clear(self) -> List[Session]:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        return sessions

    def keys(self) -> List[str]:
        return list(self._sessions.keys())

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))
