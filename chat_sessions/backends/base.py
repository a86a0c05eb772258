"""Base class for storage backends."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterator, TextIO

from ..branching import build_branch_tree
from ..errors import SessionStoreError
from ..export import write_session
from ..merge import merge_sessions
from ..models import (
    BranchTree,
    ExportFormat,
    MergeOptions,
    MergeResult,
    SearchResult,
    Session,
    SessionInfo,
)
from ..search import search_sessions
from ..utils import generate_session_id

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """Abstract base class for session storage.

    Each backend (filesystem, SQLite, memory) implements persistence of whole
    session aggregates. Branch queries, merging and export are built on top
    of load/save and shared by all backends; search defaults to a linear
    scan that backends with an index may replace.
    """

    # Backend identity
    name: str = ""  # registry key: "filesystem", "sqlite", ...
    display_name: str = ""  # human-readable: "JSON files", "SQLite"

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = dict(config or {})

    def new_session(self, name: str = "") -> Session:
        """Create a fresh, unsaved session with a unique ID."""
        now = datetime.now()
        session_id = generate_session_id(now)
        session = Session(id=session_id, name=name, created=now, updated=now)
        session.conversation.created = now
        session.conversation.updated = now
        logger.debug(f"Created session {session_id}")
        return session

    @abstractmethod
    def save_session(self, session: Session) -> None:
        """Create or replace the stored session; refreshes ``session.updated``."""
        ...

    def save_sessions(self, sessions: list[Session]) -> None:
        """Save several sessions in order.

        Backends with transactions override this to save them atomically.
        """
        for session in sessions:
            self.save_session(session)

    @abstractmethod
    def load_session(self, session_id: str) -> Session:
        """Load a session; NotFoundError if absent, CorruptionError if unreadable."""
        ...

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        """Delete a session; NotFoundError if absent."""
        ...

    @abstractmethod
    def iter_sessions(self) -> Iterator[Session]:
        """Yield every readable stored session, skipping corrupt records."""
        ...

    def list_sessions(self) -> list[SessionInfo]:
        """Summaries of all sessions, most recently updated first."""
        infos = [s.to_info() for s in self.iter_sessions()]
        infos.sort(key=lambda info: info.updated, reverse=True)
        return infos

    def session_exists(self, session_id: str) -> bool:
        try:
            self.load_session(session_id)
        except SessionStoreError:
            return False
        return True

    def has_search_index(self) -> bool:
        """Whether search_sessions can use an index instead of a linear scan."""
        return False

    def search_sessions(self, query: str) -> list[SearchResult]:
        """Case-insensitive search over prompts, messages, names and tags."""
        if not query:
            return []
        sessions = sorted(self.iter_sessions(), key=lambda s: s.updated, reverse=True)
        return search_sessions(sessions, query)

    def export_session(self, session_id: str, fmt: "str | ExportFormat", sink: TextIO) -> None:
        fmt = ExportFormat.parse(fmt)
        session = self.load_session(session_id)
        write_session(session, fmt, sink)
        logger.info(f"Exported session {session_id} as {fmt.value}")

    def get_children(self, session_id: str) -> list[SessionInfo]:
        """Direct branches of a session in creation order; missing ones skipped."""
        parent = self.load_session(session_id)
        children = []
        for child_id in parent.child_ids:
            try:
                children.append(self.load_session(child_id).to_info())
            except SessionStoreError as exc:
                logger.warning(f"Skipping child {child_id} of {session_id}: {exc.message}")
        return children

    def get_branch_tree(self, session_id: str) -> BranchTree:
        return build_branch_tree(self.load_session, session_id)

    def merge_sessions(
        self, target_id: str, source_id: str, options: MergeOptions | None = None
    ) -> MergeResult:
        return merge_sessions(self, target_id, source_id, options)

    def close(self) -> None:
        """Release resources held by the backend."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
