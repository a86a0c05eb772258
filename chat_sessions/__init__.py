"""Persistent chat sessions with branching, merging, search and crash recovery."""

__version__ = "0.3.0"

from .backends import (  # noqa: E402
    StorageBackend,
    create_backend,
    get_available_backends,
    is_backend_available,
    register_backend,
)
from .config import AutoRecoveryConfig, StorageConfig  # noqa: E402
from .errors import (  # noqa: E402
    CorruptionError,
    NotFoundError,
    SessionStoreError,
    StorageIOError,
    UnavailableError,
    ValidationError,
)
from .manager import SessionContext, StorageManager  # noqa: E402
from .models import (  # noqa: E402
    Attachment,
    BranchTree,
    Conversation,
    MergeOptions,
    MergeResult,
    MergeType,
    Message,
    RecoveryState,
    SearchMatch,
    SearchResult,
    Session,
    SessionInfo,
)
from .recovery import AutoRecoveryManager  # noqa: E402

__all__ = [
    "__version__",
    "StorageBackend",
    "create_backend",
    "get_available_backends",
    "is_backend_available",
    "register_backend",
    "StorageConfig",
    "AutoRecoveryConfig",
    "SessionStoreError",
    "NotFoundError",
    "ValidationError",
    "StorageIOError",
    "CorruptionError",
    "UnavailableError",
    "StorageManager",
    "SessionContext",
    "AutoRecoveryManager",
    "Session",
    "Conversation",
    "Message",
    "Attachment",
    "SessionInfo",
    "SearchResult",
    "SearchMatch",
    "BranchTree",
    "RecoveryState",
    "MergeOptions",
    "MergeResult",
    "MergeType",
]
