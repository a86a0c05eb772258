"""SQLite storage backend with optional FTS5 message search."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from ..config import default_user_id, get_data_dir
from ..errors import CorruptionError, NotFoundError, StorageIOError, ValidationError
from ..models import (
    MATCH_MESSAGE,
    Attachment,
    Conversation,
    Message,
    SearchMatch,
    SearchResult,
    Session,
    SessionInfo,
)
from ..search import (
    extract_snippet,
    match_metadata,
    match_system_prompt,
    message_label,
    snippet_window,
)
from . import register_backend
from .base import StorageBackend

logger = logging.getLogger(__name__)

# Trigram tokens need at least this many characters to match anything.
# Non-ASCII queries always take the full scan, which folds case like str.lower().
MIN_FTS_QUERY_LENGTH = 3

# Highlight markers; control characters never appear in normal chat text
MARK_OPEN = "\x01"
MARK_CLOSE = "\x02"

PARSE_ERRORS = (json.JSONDecodeError, KeyError, TypeError, ValueError, ValidationError)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _contains_folded(text: str | None, query: str | None) -> int:
    """SQL function 'contains_folded': Unicode case-insensitive substring test."""
    if text is None or not query:
        return 0
    return int(query.lower() in text.lower())


def _fts_phrase(query: str) -> str:
    return f'"{query.replace(chr(34), chr(34) * 2)}"'


def _unmark(marked: str) -> tuple[str, int, int]:
    """Strip highlight markers; return (text, first_start, first_end)."""
    start = marked.find(MARK_OPEN)
    close = marked.find(MARK_CLOSE, start)
    plain = marked.replace(MARK_OPEN, "").replace(MARK_CLOSE, "")
    if start == -1 or close == -1:
        return plain, 0, 0
    return plain, start, close - 1


@register_backend
class SQLiteBackend(StorageBackend):
    """Sessions and messages in two tables, partitioned by user.

    Each save replaces the session row and all of its message rows in a
    single transaction. Connections are opened per operation, so one backend
    instance can be shared between threads.
    """

    name = "sqlite"
    display_name = "SQLite"

    def __init__(self, config: dict[str, Any] | None = None):
        super().__init__(config)
        path = self.config.get("path") or self.config.get("db_path")
        self.db_path = Path(path).expanduser() if path else get_data_dir() / "sessions.db"
        self.user_id = self.config.get("user_id") or default_user_id()
        self.fts_enabled = bool(self.config.get("fts", True))
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIOError("create database directory", str(self.db_path.parent), str(exc)) from exc
        self._ensure_schema()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        except sqlite3.Error as exc:
            raise StorageIOError("open database", str(self.db_path), str(exc)) from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.create_function("contains_folded", 2, _contains_folded, deterministic=True)
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self):
        try:
            with self._get_connection() as conn:
                conn.executescript(self._get_schema_sql())
                if self.fts_enabled:
                    self._create_fts(conn)
        except sqlite3.Error as exc:
            raise StorageIOError("initialize database", str(self.db_path), str(exc)) from exc

    def _create_fts(self, conn: sqlite3.Connection):
        existed = self._fts_exists(conn)
        try:
            conn.executescript(self._get_fts_sql())
            conn.executescript(self._get_triggers_sql())
        except sqlite3.OperationalError as exc:
            # Older SQLite builds lack FTS5 or the trigram tokenizer
            logger.warning(f"Full-text search unavailable, using full scan: {exc}")
            return
        if not existed:
            conn.execute("INSERT INTO messages_fts(messages_fts) VALUES ('rebuild')")
            conn.commit()
            logger.debug(f"Built full-text index in {self.db_path}")

    def _get_schema_sql(self) -> str:
        return """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                name TEXT,
                created TEXT NOT NULL,
                updated TEXT NOT NULL,
                metadata TEXT,
                conversation TEXT,
                config TEXT,
                tags TEXT,
                parent_id TEXT,
                branch_name TEXT,
                branch_point INTEGER DEFAULT 0,
                child_ids TEXT,
                PRIMARY KEY (user_id, id)
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(user_id, updated DESC);
            CREATE INDEX IF NOT EXISTS idx_sessions_parent_id ON sessions(user_id, parent_id);

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT,
                attachments TEXT,
                metadata TEXT,
                timestamp TEXT,
                sequence INTEGER NOT NULL,
                FOREIGN KEY (user_id, session_id)
                    REFERENCES sessions(user_id, id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(user_id, session_id, sequence);
        """

    def _get_fts_sql(self) -> str:
        return """
            CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
                content,
                content='messages',
                content_rowid='id',
                tokenize='trigram'
            );
        """

    def _get_triggers_sql(self) -> str:
        return """
            CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
                INSERT INTO messages_fts(rowid, content)
                VALUES (NEW.id, NEW.content);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, content)
                VALUES ('delete', OLD.id, OLD.content);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, content)
                VALUES ('delete', OLD.id, OLD.content);
                INSERT INTO messages_fts(rowid, content)
                VALUES (NEW.id, NEW.content);
            END;
        """

    def _fts_exists(self, conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'messages_fts'"
        ).fetchone()
        return row is not None

    def has_search_index(self) -> bool:
        with self._get_connection() as conn:
            return self._fts_exists(conn)

    # Writes

    def _write_session(self, conn: sqlite3.Connection, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO sessions (
                id, user_id, name, created, updated, metadata, conversation,
                config, tags, parent_id, branch_name, branch_point, child_ids
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, id) DO UPDATE SET
                name = excluded.name,
                created = excluded.created,
                updated = excluded.updated,
                metadata = excluded.metadata,
                conversation = excluded.conversation,
                config = excluded.config,
                tags = excluded.tags,
                parent_id = excluded.parent_id,
                branch_name = excluded.branch_name,
                branch_point = excluded.branch_point,
                child_ids = excluded.child_ids
            """,
            (
                session.id,
                self.user_id,
                session.name,
                session.created.isoformat(),
                session.updated.isoformat(),
                _dumps(session.metadata),
                _dumps(session.conversation.settings_dict()),
                _dumps(session.config),
                _dumps(session.tags),
                session.parent_id or None,
                session.branch_name or None,
                session.branch_point,
                _dumps(session.child_ids),
            ),
        )
        conn.execute(
            "DELETE FROM messages WHERE user_id = ? AND session_id = ?",
            (self.user_id, session.id),
        )
        conn.executemany(
            """
            INSERT INTO messages (
                session_id, user_id, message_id, role, content,
                attachments, metadata, timestamp, sequence
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    session.id,
                    self.user_id,
                    m.id,
                    m.role,
                    m.content,
                    _dumps([a.to_dict() for a in m.attachments]),
                    _dumps(m.metadata),
                    m.timestamp.isoformat(),
                    seq,
                )
                for seq, m in enumerate(session.messages)
            ],
        )

    def save_session(self, session: Session) -> None:
        self.save_sessions([session])

    def save_sessions(self, sessions: list[Session]) -> None:
        """Save all sessions in one transaction; nothing is written on failure."""
        for session in sessions:
            session.touch()
        ids = ", ".join(s.id for s in sessions)
        try:
            with self._get_connection() as conn:
                with conn:
                    for session in sessions:
                        self._write_session(conn, session)
        except sqlite3.Error as exc:
            logger.error(f"Failed to save session(s) {ids}: {exc}")
            raise StorageIOError("save session", ids, str(exc)) from exc
        logger.info(f"Saved session(s) {ids}")

    def delete_session(self, session_id: str) -> None:
        try:
            with self._get_connection() as conn:
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM sessions WHERE user_id = ? AND id = ?",
                        (self.user_id, session_id),
                    )
        except sqlite3.Error as exc:
            raise StorageIOError("delete session", session_id, str(exc)) from exc
        if cursor.rowcount == 0:
            raise NotFoundError("Session", session_id)
        logger.info(f"Deleted session {session_id}")

    # Reads

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["message_id"],
            role=row["role"],
            content=row["content"] or "",
            timestamp=datetime.fromisoformat(row["timestamp"]) if row["timestamp"] else datetime.now(),
            attachments=[Attachment.from_dict(a) for a in json.loads(row["attachments"] or "[]")],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def _row_to_session(self, row: sqlite3.Row, messages: list[Message]) -> Session:
        settings = json.loads(row["conversation"] or "{}")
        settings.setdefault("id", row["id"])
        conversation = Conversation.from_dict(settings)
        conversation.messages = messages
        return Session(
            id=row["id"],
            name=row["name"] or "",
            conversation=conversation,
            config=json.loads(row["config"] or "{}"),
            created=datetime.fromisoformat(row["created"]),
            updated=datetime.fromisoformat(row["updated"]),
            tags=list(dict.fromkeys(json.loads(row["tags"] or "[]"))),
            metadata=json.loads(row["metadata"] or "{}"),
            parent_id=row["parent_id"] or "",
            child_ids=json.loads(row["child_ids"] or "[]"),
            branch_name=row["branch_name"] or "",
            branch_point=row["branch_point"] or 0,
        )

    def _row_to_info(self, row: sqlite3.Row) -> SessionInfo:
        settings = json.loads(row["conversation"] or "{}")
        return SessionInfo(
            id=row["id"],
            name=row["name"] or "",
            created=datetime.fromisoformat(row["created"]),
            updated=datetime.fromisoformat(row["updated"]),
            message_count=row["message_count"],
            tags=json.loads(row["tags"] or "[]"),
            model=settings.get("model", ""),
            provider=settings.get("provider", ""),
            parent_id=row["parent_id"] or "",
            branch_name=row["branch_name"] or "",
            child_count=len(json.loads(row["child_ids"] or "[]")),
        )

    def _load(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Session:
        message_rows = conn.execute(
            """
            SELECT * FROM messages
            WHERE user_id = ? AND session_id = ?
            ORDER BY sequence
            """,
            (self.user_id, row["id"]),
        ).fetchall()
        try:
            return self._row_to_session(row, [self._row_to_message(r) for r in message_rows])
        except PARSE_ERRORS as exc:
            reason = exc.message if isinstance(exc, ValidationError) else str(exc)
            raise CorruptionError(row["id"], reason) from exc

    def load_session(self, session_id: str) -> Session:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM sessions WHERE user_id = ? AND id = ?",
                    (self.user_id, session_id),
                ).fetchone()
                if row is None:
                    raise NotFoundError("Session", session_id)
                return self._load(conn, row)
        except sqlite3.Error as exc:
            raise StorageIOError("load session", session_id, str(exc)) from exc

    def iter_sessions(self) -> Iterator[Session]:
        sessions = []
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM sessions WHERE user_id = ? ORDER BY updated DESC",
                    (self.user_id,),
                ).fetchall()
                for row in rows:
                    try:
                        sessions.append(self._load(conn, row))
                    except CorruptionError as exc:
                        logger.warning(f"Skipping corrupt session row {row['id']}: {exc.details}")
        except sqlite3.Error as exc:
            raise StorageIOError("read sessions", str(self.db_path), str(exc)) from exc
        yield from sessions

    def _info_rows(self, conn: sqlite3.Connection) -> list[sqlite3.Row]:
        return conn.execute(
            """
            SELECT s.*, (
                SELECT COUNT(*) FROM messages m
                WHERE m.user_id = s.user_id AND m.session_id = s.id
            ) AS message_count
            FROM sessions s
            WHERE s.user_id = ?
            ORDER BY s.updated DESC
            """,
            (self.user_id,),
        ).fetchall()

    def list_sessions(self) -> list[SessionInfo]:
        try:
            with self._get_connection() as conn:
                rows = self._info_rows(conn)
        except sqlite3.Error as exc:
            raise StorageIOError("list sessions", str(self.db_path), str(exc)) from exc

        infos = []
        for row in rows:
            try:
                infos.append(self._row_to_info(row))
            except PARSE_ERRORS as exc:
                logger.warning(f"Skipping corrupt session row {row['id']}: {exc}")
        infos.sort(key=lambda info: info.updated, reverse=True)
        logger.debug(f"Listed {len(infos)} sessions for user {self.user_id}")
        return infos

    # Search

    def _search_messages_fts(self, conn: sqlite3.Connection, query: str) -> list[tuple[str, int, str, str, float]]:
        """Returns (session_id, sequence, role, snippet, bm25_score), best first."""
        rows = conn.execute(
            """
            SELECT m.session_id, m.sequence, m.role,
                   highlight(messages_fts, 0, ?, ?) AS marked,
                   bm25(messages_fts) AS score
            FROM messages_fts
            JOIN messages m ON m.id = messages_fts.rowid
            WHERE messages_fts MATCH ? AND m.user_id = ?
            ORDER BY score
            """,
            (MARK_OPEN, MARK_CLOSE, _fts_phrase(query), self.user_id),
        ).fetchall()
        hits = []
        for row in rows:
            plain, start, end = _unmark(row["marked"] or "")
            hits.append((row["session_id"], row["sequence"], row["role"], snippet_window(plain, start, end), row["score"]))
        return hits

    def _search_messages_scan(self, conn: sqlite3.Connection, query: str) -> list[tuple[str, int, str, str, float]]:
        rows = conn.execute(
            """
            SELECT m.session_id, m.sequence, m.role, m.content
            FROM messages m
            JOIN sessions s ON s.user_id = m.user_id AND s.id = m.session_id
            WHERE m.user_id = ? AND contains_folded(m.content, ?)
            ORDER BY s.updated DESC, m.sequence
            """,
            (self.user_id, query),
        ).fetchall()
        return [
            (row["session_id"], row["sequence"], row["role"], extract_snippet(row["content"], query), 0.0)
            for row in rows
        ]

    def search_sessions(self, query: str) -> list[SearchResult]:
        """Message search via FTS5 when indexed, else a full scan; metadata always by substring.

        With the index, sessions are ordered by their best bm25 score, with
        metadata-only matches after them; otherwise by recency.
        """
        if not query:
            return []

        try:
            with self._get_connection() as conn:
                use_fts = (
                    len(query) >= MIN_FTS_QUERY_LENGTH
                    and query.isascii()
                    and self._fts_exists(conn)
                )
                if use_fts:
                    hits = self._search_messages_fts(conn, query)
                else:
                    hits = self._search_messages_scan(conn, query)
                rows = self._info_rows(conn)
        except sqlite3.Error as exc:
            raise StorageIOError("search sessions", query, str(exc)) from exc

        by_session: dict[str, list[tuple[int, str, str]]] = {}
        best: dict[str, float] = {}
        for session_id, sequence, role, snippet, score in hits:
            by_session.setdefault(session_id, []).append((sequence, role, snippet))
            best[session_id] = min(score, best.get(session_id, score))

        results = []
        for row in rows:
            try:
                info = self._row_to_info(row)
                prompt = json.loads(row["conversation"] or "{}").get("system_prompt", "")
            except PARSE_ERRORS as exc:
                logger.warning(f"Skipping corrupt session row {row['id']} in search: {exc}")
                continue

            result = SearchResult(session=info)
            prompt_match = match_system_prompt(prompt, query)
            if prompt_match:
                result.add_match(prompt_match)
            for sequence, role, snippet in sorted(by_session.get(info.id, [])):
                result.add_match(SearchMatch(
                    type=MATCH_MESSAGE,
                    role=role,
                    content=snippet,
                    context=message_label(sequence, role),
                    position=sequence,
                ))
            for match in match_metadata(info.name, info.tags, query):
                result.add_match(match)
            if result.has_matches():
                results.append(result)

        if use_fts:
            results.sort(key=lambda r: best.get(r.session_id, float("inf")))
        logger.debug(f"{'FTS' if use_fts else 'Scan'} search for '{query}' matched {len(results)} sessions")
        return results

    def stats(self) -> dict[str, int]:
        """Row counts for this user."""
        with self._get_connection() as conn:
            sessions = conn.execute(
                "SELECT COUNT(*) FROM sessions WHERE user_id = ?", (self.user_id,)
            ).fetchone()[0]
            messages = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE user_id = ?", (self.user_id,)
            ).fetchone()[0]
        return {"sessions": sessions, "messages": messages}
