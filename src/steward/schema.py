"""
Schema definitions for Steward.

This module defines the Pydantic models shared by every component:
- PolicySnapshot/CapabilityGrant/Scope: what the session may do
- HandshakeResult: what the session-registration backend hands us at start
- TaskOptions: per-task knobs (max steps, network, approval mode)
- Message: one entry of the conversation thread
- ToolCall/ToolResult/ToolDefinition: the tool boundary
- ApprovalRequest/ApprovalDecision: the human-approval boundary
- ModelResponse/TokenUsage: the model boundary
- Checkpoint: the crash-recovery snapshot

Design Decisions:
    - Everything crossing a boundary is validated (extra="forbid")
    - Values that must not change after creation are frozen
    - Timestamps are always timezone-aware UTC
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Policy snapshot schema versions this engine understands
SUPPORTED_POLICY_SCHEMA_VERSIONS = frozenset({1})

# Checkpoint schema version written by this engine
CHECKPOINT_SCHEMA_VERSION = 1

# Capability that gates every model invocation
MODEL_CAPABILITY = "LLM.Call"


def generate_id(prefix: str = "") -> str:
    """Generate a short unique ID, optionally prefixed (e.g. "task_1a2b3c4d5e6f")."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}_{short}" if prefix else short


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


# =============================================================================
# Enums
# =============================================================================


class Role(str, Enum):
    """Role of a thread message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolResultStatus(str, Enum):
    """Outcome of one tool call."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DENIED = "denied"


class StopReason(str, Enum):
    """Why the model stopped producing output for a turn."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    GUARDRAIL = "guardrail"
    UNKNOWN = "unknown"


class CapabilityFamily(str, Enum):
    """Scope-evaluation family a capability belongs to, derived from its name prefix."""

    FILE = "file"
    EXEC = "exec"
    NETWORK = "network"
    MODEL = "model"
    OTHER = "other"

    @classmethod
    def of(cls, capability: str) -> "CapabilityFamily":
        """Classify a capability name such as "File.Write" or "Shell.Exec"."""
        prefix = capability.split(".", 1)[0].lower()
        if prefix in ("file", "fs"):
            return cls.FILE
        if prefix in ("shell", "exec", "process"):
            return cls.EXEC
        if prefix in ("network", "net", "http", "web"):
            return cls.NETWORK
        if prefix in ("llm", "model"):
            return cls.MODEL
        return cls.OTHER


class RiskLevel(str, Enum):
    """Risk attached to an approval request."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def escalate(self) -> "RiskLevel":
        """Return the next level up (CRITICAL stays CRITICAL)."""
        order = list(RiskLevel)
        index = order.index(self)
        return order[min(index + 1, len(order) - 1)]


class ApprovalMode(str, Enum):
    """
    How approval-required tool calls are handled for a task.

    INTERACTIVE asks a human for every approval-required call.
    STRICT denies approval-required calls without asking.
    TRUSTED auto-approves LOW risk calls and asks for the rest.
    """

    INTERACTIVE = "interactive"
    STRICT = "strict"
    TRUSTED = "trusted"


class SessionState(str, Enum):
    """Session-level lifecycle state."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED)


class TaskState(str, Enum):
    """Task-level lifecycle state."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_MODEL = "waiting_for_model"
    PROCESSING_RESPONSE = "processing_response"
    CHECKING_POLICY = "checking_policy"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED)


# =============================================================================
# Policy Models
# =============================================================================


class Scope(BaseModel):
    """
    Scope constraints attached to a capability grant.

    Only the fields relevant to the capability's family are consulted:
    paths for File.*, commands for Shell.*, domains for Network.*.
    Block lists always take precedence over allow lists.

    Attributes:
        allow_paths: Glob patterns for allowed paths (empty = anything not blocked)
        block_paths: Glob patterns for blocked paths
        allow_commands: Allowed base command names (empty = anything not blocked)
        block_commands: Blocked base command names
        allow_domains: Allowed domains, "*.example.com" wildcards supported
        max_size_bytes: Upper bound on content size for writes/fetches
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allow_paths: list[str] = Field(default_factory=list, description="Allowed path globs")
    block_paths: list[str] = Field(default_factory=list, description="Blocked path globs")
    allow_commands: list[str] = Field(default_factory=list, description="Allowed base commands")
    block_commands: list[str] = Field(default_factory=list, description="Blocked base commands")
    allow_domains: list[str] = Field(default_factory=list, description="Allowed domains")
    max_size_bytes: int | None = Field(default=None, description="Content size limit", ge=0)


class CapabilityGrant(BaseModel):
    """
    One capability granted by the policy snapshot.

    Attributes:
        name: Capability name, e.g. "File.Write", "Shell.Exec", "LLM.Call"
        scope: Scope constraints for this capability
        requires_approval: Whether calls need human sign-off
        approval_rule_id: Rule describing the approval (risk override, timeout)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Capability name")
    scope: Scope = Field(default_factory=Scope, description="Scope constraints")
    requires_approval: bool = Field(default=False, description="Needs human sign-off")
    approval_rule_id: str | None = Field(default=None, description="Approval rule reference")

    @property
    def family(self) -> CapabilityFamily:
        return CapabilityFamily.of(self.name)


class ApprovalRule(BaseModel):
    """Approval-rule metadata issued with the policy bundle."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_id: str = Field(..., min_length=1)
    risk_level: RiskLevel | None = Field(default=None, description="Overrides the computed base risk")
    description: str = Field(default="")
    timeout_seconds: float | None = Field(default=None, gt=0, description="Overrides the approval timeout")


class TokenLimits(BaseModel):
    """Model and token limits for the session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_input_tokens: int = Field(default=100_000, gt=0)
    max_output_tokens: int = Field(default=4_096, gt=0)
    session_token_budget: int = Field(default=2_000_000, gt=0)


class PolicySnapshot(BaseModel):
    """
    The versioned, expiring set of grants governing one session.

    Attributes:
        schema_version: Snapshot schema version (must be supported)
        version: Issuer's version string for this snapshot
        session_id: Session this snapshot was issued for
        workspace_id: Workspace this snapshot was issued for
        workspace_root: Root directory; file paths outside it are out of scope
        expires_at: Expiry timestamp (aware)
        capabilities: Granted capabilities
        approval_rules: Approval-rule metadata
        models: Model allow-list (empty = any)
        limits: Token limits
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: int = Field(default=1)
    version: str = Field(default="1")
    session_id: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    workspace_root: str | None = Field(default=None)
    expires_at: datetime
    capabilities: list[CapabilityGrant] = Field(default_factory=list)
    approval_rules: list[ApprovalRule] = Field(default_factory=list)
    models: list[str] = Field(default_factory=list)
    limits: TokenLimits = Field(default_factory=TokenLimits)

    @field_validator("expires_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        """Naive expiry timestamps are interpreted as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def grant(self, capability: str) -> CapabilityGrant | None:
        """Look up a granted capability by name."""
        for entry in self.capabilities:
            if entry.name == capability:
                return entry
        return None

    def rule(self, rule_id: str | None) -> ApprovalRule | None:
        """Look up an approval rule by ID."""
        if rule_id is None:
            return None
        for entry in self.approval_rules:
            if entry.rule_id == rule_id:
                return entry
        return None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the snapshot is at or past its expiry."""
        return (now or utcnow()) >= self.expires_at


class HandshakeResult(BaseModel):
    """What the session-registration backend returns at session start."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    policy: PolicySnapshot
    feature_flags: dict[str, bool] = Field(default_factory=dict)


# =============================================================================
# Task Models
# =============================================================================


class TaskOptions(BaseModel):
    """Options supplied with a start-task command."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_steps: int = Field(default=25, gt=0, le=1000)
    allow_network: bool = Field(default=False)
    approval_mode: ApprovalMode = Field(default=ApprovalMode.INTERACTIVE)


class TaskSnapshot(BaseModel):
    """The persisted view of a task, as stored in checkpoints."""

    model_config = ConfigDict(extra="forbid")

    task_id: str
    prompt: str
    options: TaskOptions = Field(default_factory=TaskOptions)
    state: TaskState = Field(default=TaskState.IDLE)
    step_count: int = Field(default=0, ge=0)
    continuations: int = Field(default=0, ge=0)
    failure_reason: str | None = None


# =============================================================================
# Tool Models
# =============================================================================


class ToolDefinition(BaseModel):
    """A tool offered to the model, tagged with the capability it exercises."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    description: str = Field(default="")
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON schema for the arguments",
    )
    capability: str = Field(..., min_length=1)

    @property
    def family(self) -> CapabilityFamily:
        return CapabilityFamily.of(self.capability)


class ToolCall(BaseModel):
    """
    A tool invocation requested by the model.

    task_id/step_id are empty when the call comes off the wire and are filled
    in by the step loop before dispatch; capability is resolved by the
    dispatcher from the tool definitions.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    call_id: str = Field(..., min_length=1)
    tool_name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)
    task_id: str = Field(default="")
    step_id: str = Field(default="")
    capability: str | None = Field(default=None)


class ArtifactRef(BaseModel):
    """Reference to a tool output stored in the artifact store."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    artifact_id: str
    size_bytes: int = Field(ge=0)
    sha256: str
    media_type: str = Field(default="text/plain")


class ToolResult(BaseModel):
    """The outcome of one tool call."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    call_id: str
    tool_name: str
    status: ToolResultStatus
    output: str = Field(default="")
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    error: str | None = Field(default=None)
    error_code: int | None = Field(default=None)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Thread Models
# =============================================================================


class Message(BaseModel):
    """
    One entry of the conversation thread.

    Assistant messages may carry tool_calls; tool messages carry the
    tool_call_id they answer, the outcome status and artifact references.
    """

    model_config = ConfigDict(extra="forbid")

    message_id: str = Field(default_factory=lambda: generate_id("msg"))
    role: Role
    content: str = Field(default="")
    token_count: int = Field(default=0, ge=0)
    task_id: str | None = None
    step_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    status: ToolResultStatus | None = None
    artifacts: list[ArtifactRef] = Field(default_factory=list)


class TokenUsage(BaseModel):
    """Token counts reported by the model endpoint."""

    model_config = ConfigDict(extra="forbid")

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelResponse(BaseModel):
    """One complete model turn."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    text: str = Field(default="")
    tool_calls: list[ToolCall] = Field(default_factory=list)
    stop_reason: StopReason = Field(default=StopReason.END_TURN)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = Field(default="")


# =============================================================================
# Approval Models
# =============================================================================


class ApprovalRequest(BaseModel):
    """A request for human sign-off on one tool call."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: str = Field(default_factory=lambda: generate_id("apr"))
    call_id: str
    tool_name: str
    capability: str
    rule_id: str | None = None
    risk_level: RiskLevel
    summary: str
    details: dict[str, Any] = Field(default_factory=dict)
    task_id: str = Field(default="")
    step_id: str = Field(default="")
    created_at: datetime = Field(default_factory=utcnow)


class ApprovalDecision(BaseModel):
    """A resolution of an approval request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: str
    approved: bool
    reason: str | None = None
    decided_by: str = Field(default="human", description="human, timeout or policy")
    decided_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Session Models
# =============================================================================


class Checkpoint(BaseModel):
    """
    Point-in-time crash-recovery snapshot of the session.

    Written after every completed step; deleted on clean session end.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=CHECKPOINT_SCHEMA_VERSION)
    session_id: str
    workspace_id: str
    session_state: SessionState
    policy_version: str
    task: TaskSnapshot | None = None
    step_cursor: int = Field(default=0, ge=0)
    messages: list[Message] = Field(default_factory=list)
    thread_tokens: int = Field(default=0, ge=0)
    session_usage: TokenUsage = Field(default_factory=TokenUsage)
    written_at: datetime = Field(default_factory=utcnow)


class SessionStatus(BaseModel):
    """Answer to a fetch-status command."""

    model_config = ConfigDict(extra="forbid")

    session_id: str | None
    session_state: SessionState
    task_id: str | None = None
    task_state: TaskState = TaskState.IDLE
    step_count: int = 0
    max_steps: int | None = None
    failure_reason: str | None = None
    message_count: int = 0
    thread_tokens: int = 0
    session_usage: TokenUsage = Field(default_factory=TokenUsage)
    pending_approvals: int = 0
    policy_expires_at: datetime | None = None
    last_task_id: str | None = None
    last_task_state: TaskState | None = None


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_handshake(path: Path | str) -> HandshakeResult:
    """
    Load a handshake result from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return HandshakeResult.model_validate(data)


def load_handshake_from_string(content: str) -> HandshakeResult:
    """Load a handshake result from a YAML string."""
    data = yaml.safe_load(content)
    return HandshakeResult.model_validate(data)
