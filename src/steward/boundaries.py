"""
External collaborator boundaries for Steward.

The engine talks to three collaborators it does not implement itself:

    SessionBackend  - issues handshakes and refreshed policy snapshots on resume
    ToolExecutor    - runs tool calls and lists the tools it offers
    HistoryStore    - receives thread snapshots and large tool outputs

Each is a typing.Protocol so any object with the right methods plugs in.
This module also ships the simple local implementations the CLI uses, and
the best-effort uploader that pushes history without blocking the loop.
"""

import asyncio
import hashlib
import logging
import random
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from steward.errors import BackendUnreachableError, InvalidPolicyError, StorageWriteError
from steward.schema import (
    ArtifactRef,
    HandshakeResult,
    Message,
    ToolCall,
    ToolDefinition,
    ToolResult,
    generate_id,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class SessionBackend(Protocol):
    """Session-registration collaborator."""

    async def resume(self, session_id: str, step_cursor: int) -> HandshakeResult:
        """Re-validate a session and return a refreshed handshake (policy + flags)."""
        ...


@runtime_checkable
class ToolExecutor(Protocol):
    """
    Tool-execution collaborator.

    execute() may be a plain function or a coroutine function; the
    dispatcher awaits the result when it is awaitable.
    """

    def list_tools(self) -> list[ToolDefinition]:
        """Tool definitions currently available."""
        ...

    def execute(self, call: ToolCall, capability: str) -> ToolResult | Awaitable[ToolResult]:
        """Run one authorized tool call."""
        ...


@runtime_checkable
class HistoryStore(Protocol):
    """History/artifact storage collaborator."""

    async def push_thread(self, session_id: str, messages: list[Message]) -> None:
        """Replace the stored thread of a session with this snapshot."""
        ...

    async def put_artifact(
        self,
        session_id: str,
        call_id: str,
        content: bytes,
        media_type: str = "text/plain",
    ) -> ArtifactRef:
        """Store one tool output and return its reference."""
        ...


# =============================================================================
# Local implementations
# =============================================================================


class FileSessionBackend:
    """
    Session backend backed by a handshake YAML file.

    Resuming re-reads the file, so an operator refreshes the policy by
    replacing the file and resuming.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def handshake(self) -> HandshakeResult:
        """Read the handshake file."""
        try:
            with self.path.open() as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise BackendUnreachableError(operation="handshake", underlying_error=str(e)) from e
        try:
            return HandshakeResult.model_validate(data)
        except ValidationError as e:
            raise InvalidPolicyError(reason=str(e)) from e

    async def resume(self, session_id: str, step_cursor: int) -> HandshakeResult:
        logger.debug("Re-reading handshake %s for %s at step %d", self.path, session_id, step_cursor)
        return await asyncio.to_thread(self.handshake)


class InMemoryHistoryStore:
    """History store that keeps everything in process memory."""

    def __init__(self) -> None:
        self.threads: dict[str, list[Message]] = {}
        self.artifacts: dict[str, bytes] = {}
        self.push_count = 0

    async def push_thread(self, session_id: str, messages: list[Message]) -> None:
        self.threads[session_id] = [m.model_copy() for m in messages]
        self.push_count += 1

    async def put_artifact(
        self,
        session_id: str,
        call_id: str,
        content: bytes,
        media_type: str = "text/plain",
    ) -> ArtifactRef:
        ref = ArtifactRef(
            artifact_id=generate_id("art"),
            size_bytes=len(content),
            sha256=hashlib.sha256(content).hexdigest(),
            media_type=media_type,
        )
        self.artifacts[ref.artifact_id] = content
        return ref


# =============================================================================
# Best-effort history upload
# =============================================================================


class HistoryUploader:
    """
    Pushes thread snapshots in the background with retry and backoff.

    Failures are logged and never reach the step loop. drain() waits for
    everything submitted so far (used on shutdown).
    """

    def __init__(
        self,
        store: HistoryStore,
        retries: int = 3,
        base_delay_seconds: float = 0.5,
        max_delay_seconds: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.store = store
        self.retries = retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep or asyncio.sleep
        self._tasks: set[asyncio.Task[bool]] = set()

    def submit(self, session_id: str, messages: list[Message]) -> asyncio.Task[bool]:
        """Schedule an upload of the given snapshot."""
        snapshot = [m.model_copy() for m in messages]
        task = asyncio.get_running_loop().create_task(self.push(session_id, snapshot))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def push(self, session_id: str, messages: list[Message]) -> bool:
        """Push one snapshot; returns False after exhausting retries."""
        for attempt in range(self.retries + 1):
            try:
                await self.store.push_thread(session_id, messages)
                logger.debug("History pushed for %s (%d messages)", session_id, len(messages))
                return True
            except (StorageWriteError, BackendUnreachableError, OSError) as e:
                if attempt >= self.retries:
                    logger.warning(
                        "History upload for %s failed after %d attempts: %s",
                        session_id,
                        attempt + 1,
                        e,
                    )
                    return False
                delay = min(self.max_delay_seconds, self.base_delay_seconds * (2**attempt))
                delay += random.uniform(0.0, delay * 0.2)
                logger.info("History upload failed (%s); retrying in %.2fs", e, delay)
                await self._sleep(delay)
        return False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all submitted uploads to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
