"""
Pytest configuration and fixtures for Steward tests.

This module provides shared fixtures used across unit and integration
tests: policy snapshots and handshakes, an engine configuration rooted in a
temporary directory, and fake collaborators for the tool and session
boundaries.
"""

import asyncio
import inspect
import tempfile
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any, Generator

import pytest

from steward.config import EngineConfig
from steward.schema import (
    ApprovalRule,
    CapabilityGrant,
    HandshakeResult,
    PolicySnapshot,
    Scope,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolResultStatus,
    utcnow,
)

SESSION_ID = "sess_test"
WORKSPACE_ID = "ws_test"


# =============================================================================
# Fake collaborators
# =============================================================================


TOOL_DEFINITIONS = [
    ToolDefinition(name="read_file", description="Read a file", capability="File.Read"),
    ToolDefinition(name="write_file", description="Write a file", capability="File.Write"),
    ToolDefinition(name="run_command", description="Run a command", capability="Shell.Exec"),
    ToolDefinition(name="fetch_url", description="Fetch a URL", capability="Network.Fetch"),
]


class RecordingExecutor:
    """
    Tool executor that records every call it runs.

    handlers maps a tool name to a function of the call; it may return a
    ToolResult, a plain output string, or an awaitable of either. Tools
    without a handler succeed with "ok:<tool name>".
    """

    def __init__(self, definitions: list[ToolDefinition] | None = None) -> None:
        self.definitions = list(definitions if definitions is not None else TOOL_DEFINITIONS)
        self.handlers: dict[str, Callable[[ToolCall], Any]] = {}
        self.calls: list[ToolCall] = []

    def list_tools(self) -> list[ToolDefinition]:
        return list(self.definitions)

    async def execute(self, call: ToolCall, capability: str) -> ToolResult:
        self.calls.append(call)
        handler = self.handlers.get(call.tool_name)
        output: Any = f"ok:{call.tool_name}"
        if handler is not None:
            output = handler(call)
            if inspect.isawaitable(output):
                output = await output
        if isinstance(output, ToolResult):
            return output
        return ToolResult(
            call_id=call.call_id,
            tool_name=call.tool_name,
            status=ToolResultStatus.SUCCEEDED,
            output=str(output),
        )

    def executed(self, tool_name: str) -> list[ToolCall]:
        return [c for c in self.calls if c.tool_name == tool_name]


class StaticSessionBackend:
    """Session backend returning a fixed handshake (or raising a fixed error) on resume."""

    def __init__(self, handshake: HandshakeResult | None = None) -> None:
        self.handshake = handshake
        self.error: Exception | None = None
        self.resumes: list[tuple[str, int]] = []

    async def resume(self, session_id: str, step_cursor: int) -> HandshakeResult:
        self.resumes.append((session_id, step_cursor))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.handshake is None:
            raise OSError("backend offline")
        return self.handshake


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def make_policy(temp_dir: Path) -> Callable[..., PolicySnapshot]:
    """
    Factory for policy snapshots rooted in temp_dir.

    The default grants LLM.Call, File.Read inside the workspace, File.Write
    behind approval, and Shell.Exec for a few commands (rm blocked).
    """

    def factory(**overrides: Any) -> PolicySnapshot:
        data: dict[str, Any] = {
            "session_id": SESSION_ID,
            "workspace_id": WORKSPACE_ID,
            "workspace_root": str(temp_dir),
            "expires_at": utcnow() + timedelta(hours=1),
            "capabilities": [
                CapabilityGrant(name="LLM.Call"),
                CapabilityGrant(name="File.Read", scope=Scope(allow_paths=[f"{temp_dir}/**"])),
                CapabilityGrant(
                    name="File.Write",
                    scope=Scope(block_paths=[f"{temp_dir}/secrets/**"]),
                    requires_approval=True,
                    approval_rule_id="write-review",
                ),
                CapabilityGrant(
                    name="Shell.Exec",
                    scope=Scope(allow_commands=["ls", "echo", "pytest"], block_commands=["rm"]),
                ),
            ],
            "approval_rules": [ApprovalRule(rule_id="write-review", description="Writes are reviewed")],
        }
        data.update(overrides)
        return PolicySnapshot(**data)

    return factory


@pytest.fixture
def policy(make_policy: Callable[..., PolicySnapshot]) -> PolicySnapshot:
    return make_policy()


@pytest.fixture
def make_handshake(make_policy: Callable[..., PolicySnapshot]) -> Callable[..., HandshakeResult]:
    """Factory for handshakes around a policy snapshot."""

    def factory(
        policy: PolicySnapshot | None = None,
        feature_flags: dict[str, bool] | None = None,
    ) -> HandshakeResult:
        snapshot = policy or make_policy()
        return HandshakeResult(
            session_id=snapshot.session_id,
            workspace_id=snapshot.workspace_id,
            policy=snapshot,
            feature_flags=feature_flags or {},
        )

    return factory


@pytest.fixture
def handshake(make_handshake: Callable[..., HandshakeResult]) -> HandshakeResult:
    return make_handshake()


@pytest.fixture
def config(temp_dir: Path) -> EngineConfig:
    """Engine configuration with checkpoints and history inside temp_dir."""
    return EngineConfig(
        checkpoint_dir=temp_dir / "checkpoints",
        history_db_path=temp_dir / "history.db",
        approval_timeout_seconds=5.0,
        path_case_sensitive=True,
    )


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def backend(handshake: HandshakeResult) -> StaticSessionBackend:
    return StaticSessionBackend(handshake)
