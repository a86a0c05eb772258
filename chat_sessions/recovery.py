"""Crash recovery: periodic snapshots of the active session.

A background thread writes the active session to a recovery file every
``save_interval`` seconds, keeping ``backup_count`` rotated copies
(``recovery.json.1`` is the newest backup). On the next start the snapshot
can be checked and restored into primary storage.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from . import __version__
from .config import AutoRecoveryConfig
from .errors import CorruptionError, NotFoundError, SessionStoreError, StorageIOError, ValidationError
from .manager import StorageManager
from .models import RecoveryState, Session
from .utils import write_atomic

logger = logging.getLogger(__name__)


class AutoRecoveryManager:
    def __init__(self, config: Optional[AutoRecoveryConfig], storage_manager: StorageManager):
        self.config = config or AutoRecoveryConfig()
        self.storage_manager = storage_manager
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_save: Optional[datetime] = None

        try:
            self.config.recovery_directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIOError(
                "create recovery directory", str(self.config.recovery_directory), str(exc)
            ) from exc

    @property
    def recovery_path(self) -> Path:
        return self.config.recovery_path

    @property
    def last_save_time(self) -> Optional[datetime]:
        return self._last_save

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def backup_path(self, index: int) -> Path:
        return self.recovery_path.with_name(f"{self.recovery_path.name}.{index}")

    def list_backups(self) -> list[Path]:
        """Existing backup files, newest first."""
        return [
            self.backup_path(i)
            for i in range(1, max(self.config.backup_count, 0) + 1)
            if self.backup_path(i).exists()
        ]

    # Background loop

    def start(self) -> None:
        if not self.config.enabled:
            logger.debug("Auto-recovery is disabled")
            return
        if self.is_running:
            return
        self.config.validate()

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="auto-recovery", daemon=True
        )
        self._thread.start()
        logger.info(f"Auto-recovery started (interval {self.config.save_interval}s)")

    def _run(self) -> None:
        while not self._stop_event.wait(self.config.save_interval):
            try:
                self.save_recovery_state()
            except (SessionStoreError, OSError) as exc:
                logger.warning(f"Failed to save recovery state: {exc}")

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join()
        self._thread = None
        logger.debug("Auto-recovery stopped")

    # Snapshots

    def _rotate_backups(self) -> None:
        count = self.config.backup_count
        if count <= 0:
            return

        for i in range(count - 1, 0, -1):
            old_path = self.backup_path(i)
            if old_path.exists():
                try:
                    os.replace(old_path, self.backup_path(i + 1))
                except OSError as exc:
                    logger.warning(f"Failed to rotate backup {old_path.name}: {exc}")

        if self.recovery_path.exists():
            try:
                os.replace(self.recovery_path, self.backup_path(1))
            except OSError as exc:
                logger.warning(f"Failed to create recovery backup: {exc}")

    def save_recovery_state(self) -> Optional[RecoveryState]:
        """Snapshot the active session; returns None when there is none."""
        session = self.storage_manager.context.snapshot()
        if session is None:
            logger.debug("No active session to save for recovery")
            return None

        state = RecoveryState(
            session_id=session.id,
            session_name=session.name,
            conversation_data=session,
            timestamp=datetime.now(),
            storage_backend=self.storage_manager.backend_name,
            app_version=__version__,
        )

        with self._lock:
            self._rotate_backups()
            try:
                write_atomic(self.recovery_path, json.dumps(state.to_dict(), indent=2, ensure_ascii=False))
            except OSError as exc:
                raise StorageIOError("write recovery file", str(self.recovery_path), str(exc)) from exc
            self._last_save = state.timestamp

        logger.debug(f"Recovery state saved for session {session.id}")
        return state

    def force_recovery_save(self) -> Optional[RecoveryState]:
        return self.save_recovery_state()

    def check_recovery(self) -> Optional[RecoveryState]:
        """The saved state if present and fresh enough, else None."""
        try:
            text = self.recovery_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageIOError("read recovery file", str(self.recovery_path), str(exc)) from exc

        try:
            state = RecoveryState.from_dict(json.loads(text))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            raise CorruptionError(str(self.recovery_path), str(exc)) from exc
        except ValidationError as exc:
            raise CorruptionError(str(self.recovery_path), exc.message) from exc

        age = (datetime.now() - state.timestamp).total_seconds()
        if age > self.config.max_recovery_age:
            logger.debug(f"Recovery state too old ({age:.0f}s)")
            return None
        return state

    def recover_session(self, state: Optional[RecoveryState]) -> Session:
        """Prefer the stored copy of the session; restore the snapshot only when storage has none.

        A missing or unreadable stored copy is replaced; other storage errors propagate.
        """
        if state is None or state.conversation_data is None:
            raise ValidationError("Invalid recovery state: no session data", field="conversation_data")

        if state.storage_backend != self.storage_manager.backend_name:
            logger.warning(
                f"Storage backend mismatch in recovery: saved with {state.storage_backend}, "
                f"current is {self.storage_manager.backend_name}"
            )

        try:
            session = self.storage_manager.load_session(state.session_id)
        except (NotFoundError, CorruptionError) as exc:
            logger.debug(f"Session {state.session_id} not loadable from storage: {exc.message}")
        else:
            logger.info(f"Session {state.session_id} found in storage")
            return session

        logger.info(f"Recovering session {state.session_id} from snapshot")
        session = state.conversation_data.copy()
        self.storage_manager.save_session(session)
        return session

    def clear_recovery_state(self) -> None:
        try:
            self.recovery_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageIOError("remove recovery file", str(self.recovery_path), str(exc)) from exc
        logger.debug("Recovery state cleared")
