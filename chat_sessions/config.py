"""Storage and auto-recovery configuration."""

import getpass
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ValidationError

DATA_DIR_ENV = "CHAT_SESSIONS_HOME"
BACKEND_ENV = "CHAT_SESSIONS_BACKEND"

DEFAULT_BACKEND = "filesystem"


def get_data_dir() -> Path:
    """Root directory for sessions, the SQLite database and recovery files."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "chat-sessions"


def default_user_id() -> str:
    try:
        return getpass.getuser() or "default"
    except (KeyError, OSError):
        return "default"


@dataclass
class StorageConfig:
    """Which backend to use and the options it is constructed with."""

    backend: str = DEFAULT_BACKEND
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(backend=os.environ.get(BACKEND_ENV, DEFAULT_BACKEND))

    def backend_options(self) -> dict[str, Any]:
        """Options with per-backend defaults filled in."""
        options = dict(self.options)
        data_dir = get_data_dir()
        if self.backend == "filesystem":
            options.setdefault("base_dir", str(data_dir / "sessions"))
        elif self.backend == "sqlite":
            if "path" not in options and "db_path" not in options:
                options["path"] = str(data_dir / "sessions.db")
            options.setdefault("user_id", default_user_id())
        return options


@dataclass
class AutoRecoveryConfig:
    enabled: bool = True
    save_interval: float = 30.0  # seconds
    recovery_file: str = "recovery.json"
    max_recovery_age: float = 24 * 60 * 60  # seconds
    backup_count: int = 3
    recovery_directory: Path = field(default_factory=lambda: get_data_dir() / "recovery")

    def __post_init__(self):
        self.recovery_directory = Path(self.recovery_directory).expanduser()

    @property
    def recovery_path(self) -> Path:
        return self.recovery_directory / self.recovery_file

    def validate(self) -> None:
        if self.save_interval <= 0:
            raise ValidationError("save_interval must be positive", field="save_interval")
        if self.max_recovery_age <= 0:
            raise ValidationError("max_recovery_age must be positive", field="max_recovery_age")
        if not self.recovery_file or Path(self.recovery_file).name != self.recovery_file:
            raise ValidationError(
                f"recovery_file must be a plain file name: '{self.recovery_file}'",
                field="recovery_file",
            )
