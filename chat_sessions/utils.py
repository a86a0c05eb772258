"""ID generation and atomic file writes."""

import os
import secrets
import tempfile
from datetime import datetime
from pathlib import Path


def generate_session_id(now: datetime | None = None) -> str:
    """Timestamp-prefixed session ID, e.g. ``20240315-142501-123456-9f3c2a1b``.

    The microsecond field plus 32 random bits make collisions between IDs
    generated in the same second practically impossible, while keeping IDs
    roughly sortable by creation time.
    """
    now = now or datetime.now()
    return f"{now.strftime('%Y%m%d-%H%M%S-%f')}-{secrets.token_hex(4)}"


def write_atomic(path: Path, text: str) -> None:
    """Write text to a temp file next to ``path`` and rename it into place.

    Readers see either the old document or the new one, never a partial write.
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
