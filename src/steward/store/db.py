"""
SQLite history store for Steward.

Local implementation of the history/artifact boundary. Everything lives in a
single SQLite database file.

Design Principles:
    - Overwrite-style threads: each push replaces the session's snapshot
    - Addressable artifacts: every oversized tool output gets its own row
    - Integrity: artifact contents carry a SHA-256 hash
    - Self-contained: single .db file

Tables:
    - thread_snapshots: Latest thread snapshot per session
    - artifacts: Tool outputs too large for the thread
"""

import asyncio
import hashlib
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter

from steward.errors import StorageReadError, StorageWriteError
from steward.schema import ArtifactRef, Message, generate_id, utcnow

# Schema version for migrations
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- One row per session, replaced on every push
CREATE TABLE IF NOT EXISTS thread_snapshots (
    session_id TEXT PRIMARY KEY,
    updated_at TEXT NOT NULL,
    message_count INTEGER NOT NULL,
    messages_json TEXT NOT NULL,
    snapshot_hash TEXT NOT NULL,
    push_count INTEGER NOT NULL DEFAULT 1
);

-- Oversized tool outputs
CREATE TABLE IF NOT EXISTS artifacts (
    artifact_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    call_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    media_type TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    sha256 TEXT NOT NULL,
    content BLOB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_artifacts_session_id ON artifacts(session_id);
CREATE INDEX IF NOT EXISTS idx_thread_snapshots_updated_at ON thread_snapshots(updated_at);
"""

_MESSAGES = TypeAdapter(list[Message])


def compute_hash(data: str | bytes) -> str:
    """Compute SHA256 hash of text or bytes."""
    content = data.encode("utf-8") if isinstance(data, str) else data
    return hashlib.sha256(content).hexdigest()


class SQLiteHistoryStore:
    """
    SQLite-backed history and artifact store.

    The synchronous methods are the storage API; push_thread() and
    put_artifact() are the async boundary methods the engine calls, run in a
    worker thread.

    Usage:
        with SQLiteHistoryStore(".steward/history.db") as store:
            messages = store.load_thread(session_id)
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Open (and if needed create) the database.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        except (sqlite3.Error, OSError) as e:
            raise StorageWriteError(operation="connect", underlying_error=str(e)) from e

    def _init_schema(self) -> None:
        try:
            with self._transaction() as conn:
                conn.executescript(CREATE_TABLES_SQL)
                row = conn.execute(
                    "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
                ).fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, utcnow().isoformat()),
                    )
        except sqlite3.Error as e:
            raise StorageWriteError(operation="init_schema", underlying_error=str(e)) from e

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        if self._conn is None:
            raise StorageWriteError(operation="transaction", underlying_error="database is closed")
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "SQLiteHistoryStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Threads
    # =========================================================================

    def save_thread(self, session_id: str, messages: list[Message]) -> None:
        """Replace the stored thread snapshot of a session."""
        payload = _MESSAGES.dump_json(messages).decode("utf-8")
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO thread_snapshots (
                        session_id, updated_at, message_count, messages_json, snapshot_hash
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(session_id) DO UPDATE SET
                        updated_at = excluded.updated_at,
                        message_count = excluded.message_count,
                        messages_json = excluded.messages_json,
                        snapshot_hash = excluded.snapshot_hash,
                        push_count = thread_snapshots.push_count + 1
                    """,
                    (session_id, utcnow().isoformat(), len(messages), payload, compute_hash(payload)),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(operation="save_thread", underlying_error=str(e)) from e

    def load_thread(self, session_id: str) -> list[Message] | None:
        """
        Load the stored thread of a session.

        Returns:
            The messages, or None if nothing was pushed for the session
        """
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT messages_json FROM thread_snapshots WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(operation="load_thread", underlying_error=str(e)) from e
        if row is None:
            return None
        return _MESSAGES.validate_json(row["messages_json"])

    def list_sessions(self, limit: int = 50) -> list[dict[str, Any]]:
        """Stored sessions, most recently updated first."""
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT session_id, updated_at, message_count, push_count
                    FROM thread_snapshots
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (limit,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(operation="list_sessions", underlying_error=str(e)) from e
        return [dict(row) for row in rows]

    # =========================================================================
    # Artifacts
    # =========================================================================

    def save_artifact(
        self,
        session_id: str,
        call_id: str,
        content: bytes,
        media_type: str = "text/plain",
    ) -> ArtifactRef:
        """Store one tool output and return its reference."""
        ref = ArtifactRef(
            artifact_id=generate_id("art"),
            size_bytes=len(content),
            sha256=compute_hash(content),
            media_type=media_type,
        )
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO artifacts (
                        artifact_id, session_id, call_id, created_at,
                        media_type, size_bytes, sha256, content
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        ref.artifact_id,
                        session_id,
                        call_id,
                        utcnow().isoformat(),
                        ref.media_type,
                        ref.size_bytes,
                        ref.sha256,
                        content,
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(operation="save_artifact", underlying_error=str(e)) from e
        return ref

    def get_artifact(self, artifact_id: str) -> bytes | None:
        """
        Read an artifact's content.

        Raises:
            StorageReadError: If the stored content no longer matches its hash
        """
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT content, sha256 FROM artifacts WHERE artifact_id = ?",
                    (artifact_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(operation="get_artifact", underlying_error=str(e)) from e
        if row is None:
            return None
        content = bytes(row["content"])
        if compute_hash(content) != row["sha256"]:
            raise StorageReadError(
                operation="get_artifact",
                underlying_error=f"hash mismatch for artifact {artifact_id}",
            )
        return content

    def list_artifacts(self, session_id: str) -> list[ArtifactRef]:
        """References to every artifact stored for a session, oldest first."""
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT artifact_id, size_bytes, sha256, media_type
                    FROM artifacts
                    WHERE session_id = ?
                    ORDER BY created_at
                    """,
                    (session_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(operation="list_artifacts", underlying_error=str(e)) from e
        return [ArtifactRef(**dict(row)) for row in rows]

    # =========================================================================
    # History boundary
    # =========================================================================

    async def push_thread(self, session_id: str, messages: list[Message]) -> None:
        await asyncio.to_thread(self.save_thread, session_id, messages)

    async def put_artifact(
        self,
        session_id: str,
        call_id: str,
        content: bytes,
        media_type: str = "text/plain",
    ) -> ArtifactRef:
        return await asyncio.to_thread(self.save_artifact, session_id, call_id, content, media_type)
