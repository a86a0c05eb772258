"""StorageManager facade and the shared active-session context."""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, TextIO

from .backends import StorageBackend, create_backend
from .branching import build_branch_tree, create_branch, find_root, repair_branch_links
from .config import StorageConfig
from .models import (
    BranchTree,
    ExportFormat,
    MergeOptions,
    MergeResult,
    SearchResult,
    Session,
    SessionInfo,
)
from .utils import generate_session_id

logger = logging.getLogger(__name__)


class SessionContext:
    """Holds the active session, guarded by a lock.

    Writers mutate inside ``modify()``; background readers take
    ``snapshot()``, a deep copy made under the same lock.
    """

    def __init__(self, session: Optional[Session] = None):
        self._lock = threading.RLock()
        self._session = session

    @property
    def session(self) -> Optional[Session]:
        """The live session object (not a copy)."""
        with self._lock:
            return self._session

    def set(self, session: Optional[Session]) -> None:
        with self._lock:
            self._session = session

    def clear(self) -> None:
        self.set(None)

    @contextmanager
    def modify(self) -> Iterator[Optional[Session]]:
        with self._lock:
            yield self._session

    def snapshot(self) -> Optional[Session]:
        with self._lock:
            return self._session.copy() if self._session is not None else None


class StorageManager:
    """Session lifecycle on top of one storage backend."""

    def __init__(self, config: Optional[StorageConfig] = None, backend: Optional[StorageBackend] = None):
        if backend is None:
            config = config or StorageConfig.from_env()
            backend = create_backend(config.backend, config.backend_options())
        self.config = config or StorageConfig(backend=backend.name)
        self.backend = backend
        self.context = SessionContext()

    @property
    def backend_name(self) -> str:
        return self.backend.name

    @property
    def current_session(self) -> Optional[Session]:
        return self.context.session

    # Lifecycle

    def new_session(self, name: str = "", activate: bool = False) -> Session:
        session = self.backend.new_session(name)
        if activate:
            self.context.set(session)
        return session

    def save_session(self, session: Session) -> None:
        # save_session touches the session, which may be the active one
        with self.context.modify():
            self.backend.save_session(session)

    def save_current(self) -> Optional[Session]:
        """Persist the active session, if any."""
        with self.context.modify() as session:
            if session is not None:
                self.backend.save_session(session)
            return session

    def load_session(self, session_id: str) -> Session:
        return self.backend.load_session(session_id)

    def list_sessions(self) -> list[SessionInfo]:
        return self.backend.list_sessions()

    def delete_session(self, session_id: str) -> None:
        self.backend.delete_session(session_id)
        with self.context.modify() as session:
            if session is not None and session.id == session_id:
                self.context.clear()

    def search_sessions(self, query: str) -> list[SearchResult]:
        return self.backend.search_sessions(query)

    def export_session(self, session_id: str, fmt: "str | ExportFormat", sink: TextIO) -> None:
        self.backend.export_session(session_id, fmt, sink)

    # Branching

    def create_branch(self, parent: Session, name: str, at_index: Optional[int] = None) -> Session:
        """Fork ``parent`` and persist the branch, then the updated parent."""
        if at_index is None:
            at_index = len(parent.messages)
        with self.context.modify() as active:
            branch = create_branch(parent, generate_session_id(), name, at_index)
            if active is not None and active is not parent and active.id == parent.id:
                active.add_child(branch.id)
            self.backend.save_sessions([branch, parent])
        logger.info(f"Created branch {branch.id} ('{name}') of {parent.id} at message {at_index}")
        return branch

    def switch_session(self, session_id: str) -> Session:
        """Load a session and make it the active one."""
        session = self.backend.load_session(session_id)
        self.context.set(session)
        logger.info(f"Switched to session {session_id}")
        return session

    def get_children(self, session_id: str) -> list[SessionInfo]:
        return self.backend.get_children(session_id)

    def get_branch_tree(self, session_id: str) -> BranchTree:
        return self.backend.get_branch_tree(session_id)

    def get_full_tree(self, session_id: str) -> BranchTree:
        """Branch tree of the root that ``session_id`` descends from."""
        root = find_root(self.backend.load_session, session_id)
        return build_branch_tree(self.backend.load_session, root.id)

    def merge_sessions(
        self, target_id: str, source_id: str, options: Optional[MergeOptions] = None
    ) -> MergeResult:
        with self.context.modify() as active:
            result = self.backend.merge_sessions(target_id, source_id, options)
            if active is not None and active.id == target_id:
                if result.new_branch_id:
                    # storage copy of the target only gained the child link
                    active.add_child(result.new_branch_id)
                else:
                    self.context.set(self.backend.load_session(target_id))
        return result

    def repair_branch_links(self) -> list[tuple[str, str]]:
        return repair_branch_links(self.backend)

    def close(self) -> None:
        self.backend.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
