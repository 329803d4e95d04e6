"""
Unit tests for schema models and configuration.

Tests cover:
- Enum helpers (capability families, risk escalation, terminal states)
- Policy snapshot lookups and expiry
- Handshake and config loading from YAML
- Validation of task options and boundary models
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from steward.config import EngineConfig, load_config, load_config_from_string
from steward.schema import (
    ApprovalRule,
    CapabilityFamily,
    CapabilityGrant,
    PolicySnapshot,
    RiskLevel,
    SessionState,
    TaskOptions,
    TaskState,
    ToolCall,
    generate_id,
    load_handshake,
    load_handshake_from_string,
    utcnow,
)

HANDSHAKE_YAML = """
session_id: sess_1
workspace_id: ws_1
feature_flags:
  parallel_tools: false
policy:
  version: "7"
  session_id: sess_1
  workspace_id: ws_1
  expires_at: "2099-01-01T00:00:00Z"
  capabilities:
    - name: LLM.Call
    - name: File.Write
      requires_approval: true
      approval_rule_id: writes
      scope:
        allow_paths: ["./src/**"]
        max_size_bytes: 1024
  approval_rules:
    - rule_id: writes
      risk_level: high
      timeout_seconds: 30
  limits:
    max_input_tokens: 5000
"""


# =============================================================================
# Enums
# =============================================================================


class TestEnums:
    """Tests for enum helpers."""

    @pytest.mark.parametrize(
        "capability,family",
        [
            ("File.Read", CapabilityFamily.FILE),
            ("File.Delete", CapabilityFamily.FILE),
            ("Shell.Exec", CapabilityFamily.EXEC),
            ("Network.Fetch", CapabilityFamily.NETWORK),
            ("LLM.Call", CapabilityFamily.MODEL),
            ("Calendar.Read", CapabilityFamily.OTHER),
        ],
    )
    def test_capability_family(self, capability: str, family: CapabilityFamily) -> None:
        """Families are derived from the capability prefix."""
        assert CapabilityFamily.of(capability) == family

    def test_risk_escalation(self) -> None:
        """Escalation moves one level up and stops at CRITICAL."""
        assert RiskLevel.LOW.escalate() == RiskLevel.MEDIUM
        assert RiskLevel.HIGH.escalate() == RiskLevel.CRITICAL
        assert RiskLevel.CRITICAL.escalate() == RiskLevel.CRITICAL

    def test_terminal_states(self) -> None:
        assert SessionState.COMPLETED.is_terminal
        assert not SessionState.PAUSED.is_terminal
        assert TaskState.CANCELLED.is_terminal
        assert not TaskState.WAITING_FOR_APPROVAL.is_terminal

    def test_generate_id(self) -> None:
        """IDs are unique and carry their prefix."""
        first = generate_id("task")
        assert first.startswith("task_")
        assert first != generate_id("task")


# =============================================================================
# Policy Snapshot
# =============================================================================


class TestPolicySnapshot:
    """Tests for PolicySnapshot."""

    def test_grant_and_rule_lookup(self) -> None:
        snapshot = PolicySnapshot(
            session_id="s",
            workspace_id="w",
            expires_at=utcnow() + timedelta(hours=1),
            capabilities=[CapabilityGrant(name="File.Read")],
            approval_rules=[ApprovalRule(rule_id="r1", risk_level=RiskLevel.LOW)],
        )
        assert snapshot.grant("File.Read") is not None
        assert snapshot.grant("File.Write") is None
        assert snapshot.rule("r1").risk_level == RiskLevel.LOW
        assert snapshot.rule(None) is None

    def test_expiry(self) -> None:
        """A snapshot is expired at and after its expiry time."""
        expires = datetime(2030, 1, 1, tzinfo=UTC)
        snapshot = PolicySnapshot(session_id="s", workspace_id="w", expires_at=expires)
        assert not snapshot.is_expired(expires - timedelta(seconds=1))
        assert snapshot.is_expired(expires)

    def test_naive_expiry_is_utc(self) -> None:
        snapshot = PolicySnapshot(session_id="s", workspace_id="w", expires_at=datetime(2030, 1, 1))
        assert snapshot.expires_at.tzinfo is not None

    def test_extra_fields_rejected(self) -> None:
        """Boundary models reject unknown fields."""
        with pytest.raises(ValidationError):
            PolicySnapshot(session_id="s", workspace_id="w", expires_at=utcnow(), surprise=True)


# =============================================================================
# Task and tool models
# =============================================================================


class TestTaskOptions:
    """Tests for TaskOptions validation."""

    def test_defaults(self) -> None:
        options = TaskOptions()
        assert options.max_steps == 25
        assert options.allow_network is False

    @pytest.mark.parametrize("max_steps", [0, -1, 1001])
    def test_max_steps_bounds(self, max_steps: int) -> None:
        with pytest.raises(ValidationError):
            TaskOptions(max_steps=max_steps)

    def test_tool_call_is_frozen(self) -> None:
        call = ToolCall(call_id="c1", tool_name="read_file")
        with pytest.raises(ValidationError):
            call.tool_name = "write_file"


# =============================================================================
# YAML loading
# =============================================================================


class TestLoading:
    """Tests for handshake and config loading."""

    def test_load_handshake_from_string(self) -> None:
        handshake = load_handshake_from_string(HANDSHAKE_YAML)
        assert handshake.session_id == "sess_1"
        assert handshake.feature_flags == {"parallel_tools": False}
        grant = handshake.policy.grant("File.Write")
        assert grant.requires_approval
        assert grant.scope.max_size_bytes == 1024
        assert handshake.policy.rule("writes").timeout_seconds == 30
        assert handshake.policy.limits.max_input_tokens == 5000
        assert handshake.policy.limits.max_output_tokens == 4096

    def test_load_handshake_file(self, temp_dir: Path) -> None:
        path = temp_dir / "handshake.yaml"
        path.write_text(HANDSHAKE_YAML)
        assert load_handshake(path).policy.version == "7"

    def test_load_handshake_missing_file(self, temp_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_handshake(temp_dir / "missing.yaml")

    def test_default_config(self) -> None:
        """An absent config file yields the defaults."""
        config = load_config(None)
        assert config == EngineConfig()
        assert config.tool_timeout(CapabilityFamily.FILE) == 30.0
        assert config.tool_timeout(CapabilityFamily.EXEC) == 120.0
        assert config.tool_timeout(CapabilityFamily.OTHER) == config.default_tool_timeout_seconds

    def test_config_from_string(self) -> None:
        config = load_config_from_string(
            """
model:
  base_url: http://example.test/v1
  model: coder
approval_timeout_seconds: 10
tool_timeouts:
  exec: 300
"""
        )
        assert config.model.model == "coder"
        assert config.approval_timeout_seconds == 10
        assert config.tool_timeout(CapabilityFamily.EXEC) == 300

    def test_empty_config_string(self) -> None:
        assert load_config_from_string("") == EngineConfig()

    def test_config_rejects_unknown_keys(self) -> None:
        with pytest.raises(ValidationError):
            load_config_from_string("approval_timeout: 5\n")
