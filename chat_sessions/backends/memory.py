"""In-process storage backend for tests and throwaway sessions."""

import logging
import threading
from typing import Iterator

from ..errors import NotFoundError
from ..models import Session
from . import register_backend
from .base import StorageBackend

logger = logging.getLogger(__name__)


@register_backend
class MemoryBackend(StorageBackend):
    """Keeps deep copies of sessions in a dict; nothing survives the process."""

    name = "memory"
    display_name = "In-memory"

    def __init__(self, config=None):
        super().__init__(config)
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def save_session(self, session: Session) -> None:
        session.touch()
        with self._lock:
            self._sessions[session.id] = session.copy()
        logger.debug(f"Saved session {session.id} in memory")

    def save_sessions(self, sessions: list[Session]) -> None:
        for session in sessions:
            session.touch()
        with self._lock:
            for session in sessions:
                self._sessions[session.id] = session.copy()

    def load_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("Session", session_id)
            return session.copy()

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise NotFoundError("Session", session_id)

    def iter_sessions(self) -> Iterator[Session]:
        with self._lock:
            snapshot = [s.copy() for s in self._sessions.values()]
        yield from snapshot

    def close(self) -> None:
        with self._lock:
            self._sessions.clear()
