"""
Unit tests for SQLite storage and the history boundary.

Tests cover:
- Database initialization
- Thread snapshots (save, overwrite, load, list)
- Artifacts (save, read, integrity check, list)
- Async boundary methods
- Hash computation
- Best-effort history uploader (retries, drain)
"""

import asyncio
import sqlite3
from pathlib import Path

import pytest

from steward.boundaries import HistoryUploader, InMemoryHistoryStore
from steward.errors import StorageReadError, StorageWriteError
from steward.schema import Message, Role
from steward.store import SQLiteHistoryStore, compute_hash


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def store(temp_dir: Path) -> SQLiteHistoryStore:
    db = SQLiteHistoryStore(temp_dir / "history" / "steward.db")
    yield db
    db.close()


@pytest.fixture
def messages() -> list[Message]:
    return [
        Message(role=Role.USER, content="list files", task_id="task_1"),
        Message(role=Role.ASSISTANT, content="Here they are", task_id="task_1", step_id="step_1"),
    ]


# =============================================================================
# Initialization
# =============================================================================


class TestInitialization:
    def test_creates_database(self, temp_dir: Path) -> None:
        path = temp_dir / "nested" / "h.db"
        with SQLiteHistoryStore(path):
            pass
        assert path.exists()

    def test_reopen_keeps_schema_version(self, temp_dir: Path) -> None:
        path = temp_dir / "h.db"
        SQLiteHistoryStore(path).close()
        SQLiteHistoryStore(path).close()
        conn = sqlite3.connect(str(path))
        try:
            assert conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 1
        finally:
            conn.close()

    def test_closed_store_rejects_writes(self, store: SQLiteHistoryStore, messages: list[Message]) -> None:
        store.close()
        with pytest.raises(StorageWriteError):
            store.save_thread("sess_1", messages)


# =============================================================================
# Threads
# =============================================================================


class TestThreads:
    """Thread snapshot operations."""

    def test_save_and_load(self, store: SQLiteHistoryStore, messages: list[Message]) -> None:
        store.save_thread("sess_1", messages)
        loaded = store.load_thread("sess_1")
        assert loaded == messages

    def test_load_missing(self, store: SQLiteHistoryStore) -> None:
        assert store.load_thread("nope") is None

    def test_overwrite_counts_pushes(self, store: SQLiteHistoryStore, messages: list[Message]) -> None:
        """Each push replaces the snapshot."""
        store.save_thread("sess_1", messages[:1])
        store.save_thread("sess_1", messages)

        assert len(store.load_thread("sess_1")) == 2
        sessions = store.list_sessions()
        assert len(sessions) == 1
        assert sessions[0]["push_count"] == 2
        assert sessions[0]["message_count"] == 2

    def test_async_push(self, store: SQLiteHistoryStore, messages: list[Message]) -> None:
        asyncio.run(store.push_thread("sess_2", messages))
        assert store.load_thread("sess_2") == messages


# =============================================================================
# Artifacts
# =============================================================================


class TestArtifacts:
    """Artifact operations."""

    def test_save_and_get(self, store: SQLiteHistoryStore) -> None:
        content = b"x" * 50_000
        ref = store.save_artifact("sess_1", "call_1", content)
        assert ref.size_bytes == 50_000
        assert ref.sha256 == compute_hash(content)
        assert store.get_artifact(ref.artifact_id) == content

    def test_get_missing(self, store: SQLiteHistoryStore) -> None:
        assert store.get_artifact("art_missing") is None

    def test_tampered_content_detected(self, store: SQLiteHistoryStore) -> None:
        ref = store.save_artifact("sess_1", "call_1", b"original")
        conn = sqlite3.connect(str(store.db_path))
        try:
            conn.execute("UPDATE artifacts SET content = ? WHERE artifact_id = ?", (b"tampered", ref.artifact_id))
            conn.commit()
        finally:
            conn.close()
        with pytest.raises(StorageReadError):
            store.get_artifact(ref.artifact_id)

    def test_list_and_async_put(self, store: SQLiteHistoryStore) -> None:
        first = store.save_artifact("sess_1", "call_1", b"one")
        second = asyncio.run(store.put_artifact("sess_1", "call_2", b"two", media_type="application/json"))
        store.save_artifact("sess_other", "call_3", b"three")

        refs = store.list_artifacts("sess_1")
        assert {r.artifact_id for r in refs} == {first.artifact_id, second.artifact_id}
        assert second.media_type == "application/json"


class TestComputeHash:
    def test_str_and_bytes_agree(self) -> None:
        assert compute_hash("abc") == compute_hash(b"abc")
        assert len(compute_hash("abc")) == 64


# =============================================================================
# Uploader
# =============================================================================


class FlakyHistoryStore(InMemoryHistoryStore):
    """Fails the first `failures` pushes."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def push_thread(self, session_id: str, messages: list[Message]) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StorageWriteError(operation="push_thread", underlying_error="disk full")
        await super().push_thread(session_id, messages)


async def no_sleep(delay: float) -> None:
    return None


class TestHistoryUploader:
    """Best-effort background uploads."""

    def test_retries_then_succeeds(self, messages: list[Message]) -> None:
        store = FlakyHistoryStore(failures=2)
        uploader = HistoryUploader(store, retries=3, sleep=no_sleep)
        assert asyncio.run(uploader.push("sess_1", messages)) is True
        assert store.attempts == 3
        assert store.threads["sess_1"] == messages

    def test_gives_up_without_raising(self, messages: list[Message]) -> None:
        store = FlakyHistoryStore(failures=10)
        uploader = HistoryUploader(store, retries=2, sleep=no_sleep)
        assert asyncio.run(uploader.push("sess_1", messages)) is False
        assert store.attempts == 3

    def test_submit_and_drain(self, messages: list[Message]) -> None:
        store = InMemoryHistoryStore()
        uploader = HistoryUploader(store, sleep=no_sleep)

        async def scenario() -> int:
            uploader.submit("sess_1", messages)
            uploader.submit("sess_1", messages)
            await uploader.drain()
            return uploader.in_flight

        assert asyncio.run(scenario()) == 0
        assert store.push_count == 2
