"""JSON-file-per-session storage backend."""

import json
import logging
from pathlib import Path
from typing import Any, Iterator

from ..errors import CorruptionError, NotFoundError, StorageIOError, ValidationError
from ..models import Session
from ..utils import write_atomic
from . import register_backend
from .base import StorageBackend

logger = logging.getLogger(__name__)

SESSION_SUFFIX = ".json"


def parse_session_document(text: str, target: str) -> Session:
    """Decode a stored session document; CorruptionError on any structural problem."""
    try:
        return Session.from_dict(json.loads(text))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
        raise CorruptionError(target, str(exc)) from exc
    except ValidationError as exc:
        raise CorruptionError(target, exc.message) from exc


@register_backend
class FilesystemBackend(StorageBackend):
    """Stores each session as ``<base_dir>/<id>.json``."""

    name = "filesystem"
    display_name = "JSON files"

    def __init__(self, config: dict[str, Any] | None = None):
        super().__init__(config)
        base_dir = self.config.get("base_dir")
        if not base_dir:
            raise ValidationError("filesystem backend requires 'base_dir'", field="base_dir")
        self.base_dir = Path(base_dir).expanduser()
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIOError("create session directory", str(self.base_dir), str(exc)) from exc

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise ValidationError(f"Invalid session ID: '{session_id}'", field="id")
        return self.base_dir / f"{session_id}{SESSION_SUFFIX}"

    def save_session(self, session: Session) -> None:
        path = self._path(session.id)
        session.touch()
        try:
            write_atomic(path, json.dumps(session.to_dict(), indent=2, ensure_ascii=False))
        except OSError as exc:
            logger.error(f"Failed to save session {session.id}: {exc}")
            raise StorageIOError("save session", session.id, str(exc)) from exc
        logger.info(f"Saved session {session.id}")

    def load_session(self, session_id: str) -> Session:
        path = self._path(session_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError("Session", session_id) from None
        except OSError as exc:
            raise StorageIOError("read session", session_id, str(exc)) from exc
        return parse_session_document(text, session_id)

    def delete_session(self, session_id: str) -> None:
        path = self._path(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError("Session", session_id) from None
        except OSError as exc:
            raise StorageIOError("delete session", session_id, str(exc)) from exc
        logger.info(f"Deleted session {session_id}")

    def discover_session_files(self) -> list[Path]:
        return sorted(self.base_dir.glob(f"*{SESSION_SUFFIX}"))

    def iter_sessions(self) -> Iterator[Session]:
        for path in self.discover_session_files():
            try:
                yield parse_session_document(path.read_text(encoding="utf-8"), path.stem)
            except CorruptionError as exc:
                logger.warning(f"Skipping corrupt session file {path.name}: {exc.details}")
            except OSError as exc:
                logger.warning(f"Skipping unreadable session file {path.name}: {exc}")
