"""
Exception hierarchy for Steward.

All Steward exceptions inherit from StewardError, allowing callers to catch
all Steward-specific exceptions with a single except clause.

Exception Categories:
    - ModelError: The upstream model call failed (rate limit, guardrail, ...)
    - ToolError: A tool could not be found, timed out or failed
    - PolicyError: A capability was denied or the policy snapshot expired
    - ApprovalError: A human approval was denied or timed out
    - InfrastructureError: Backend, history or checkpoint I/O failed
    - SessionError: A command was issued in the wrong session/task state

Every error renders to the typed error payload exposed to the host
application: ``code``, ``message``, ``retryable`` and structured ``details``.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Model errors: 1xxx
ERROR_MODEL_RATE_LIMITED = 1001
ERROR_MODEL_GUARDRAIL = 1002
ERROR_MODEL_TRANSIENT = 1003
ERROR_MODEL_BUDGET_EXCEEDED = 1004
ERROR_MODEL_BAD_RESPONSE = 1005
ERROR_MODEL_UNREACHABLE = 1006

# Tool errors: 2xxx
ERROR_TOOL_NOT_FOUND = 2001
ERROR_TOOL_TIMEOUT = 2002
ERROR_TOOL_EXECUTION_FAILED = 2003

# Policy errors: 3xxx
ERROR_POLICY_CAPABILITY_DENIED = 3001
ERROR_POLICY_EXPIRED = 3002
ERROR_POLICY_INVALID = 3003

# Approval errors: 4xxx
ERROR_APPROVAL_DENIED = 4001
ERROR_APPROVAL_TIMED_OUT = 4002
ERROR_APPROVAL_UNKNOWN_REQUEST = 4003

# Infrastructure errors: 5xxx
ERROR_BACKEND_UNREACHABLE = 5001
ERROR_CHECKPOINT_WRITE = 5002
ERROR_CHECKPOINT_READ = 5003
ERROR_CHECKPOINT_CORRUPTED = 5004
ERROR_STORAGE_WRITE = 5005
ERROR_STORAGE_READ = 5006

# Session errors: 6xxx
ERROR_SESSION_STATE = 6001
ERROR_TASK_REJECTED = 6002
ERROR_INVALID_TRANSITION = 6003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class StewardError(Exception):
    """
    Base exception for all Steward errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        retryable: Whether repeating the same request may succeed
        suggestion: Optional hint for how to resolve the error
        details: Structured context for the host application
    """

    message: str = ""
    code: int = 0
    retryable: bool = False
    suggestion: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"retryable={self.retryable}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the typed error payload for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
            "suggestion": self.suggestion,
        }


# =============================================================================
# Model Errors
# =============================================================================


@dataclass
class ModelError(StewardError):
    """
    Base class for failures talking to the model endpoint.

    Attributes:
        model: The model that was requested
        attempts: How many attempts were made before giving up
    """

    model: str = ""
    attempts: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.details.update({"model": self.model, "attempts": self.attempts})


@dataclass
class RateLimitedError(ModelError):
    """Raised when the endpoint answered 429 on every attempt."""

    retry_after_seconds: float | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Model {self.model} rate limited after {self.attempts} attempts"
        if self.code == 0:
            self.code = ERROR_MODEL_RATE_LIMITED
        self.retryable = True
        super().__post_init__()
        self.details["retry_after_seconds"] = self.retry_after_seconds


@dataclass
class GuardrailRejectedError(ModelError):
    """Raised when the endpoint refuses the request on content grounds. Never retried."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Request rejected by model guardrail: {self.reason}"
        if self.code == 0:
            self.code = ERROR_MODEL_GUARDRAIL
        super().__post_init__()
        self.details["reason"] = self.reason


@dataclass
class TransientModelError(ModelError):
    """Raised when server errors or dropped streams exhausted the retry budget."""

    underlying_error: str = ""
    status_code: int | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Model {self.model} failed after {self.attempts} attempts: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_MODEL_TRANSIENT
        self.retryable = True
        super().__post_init__()
        self.details.update({
            "underlying_error": self.underlying_error,
            "status_code": self.status_code,
        })


@dataclass
class ModelUnreachableError(TransientModelError):
    """Raised when the endpoint could not be connected to at all (network loss)."""

    url: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cannot reach model endpoint {self.url}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_MODEL_UNREACHABLE
        if not self.suggestion:
            self.suggestion = "Check network connectivity, then resume the session"
        super().__post_init__()
        self.details["url"] = self.url


@dataclass
class BadModelResponseError(ModelError):
    """Raised when the endpoint returned something that is not a valid turn."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid response from model {self.model}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_MODEL_BAD_RESPONSE
        super().__post_init__()
        self.details["underlying_error"] = self.underlying_error


@dataclass
class BudgetExceededError(ModelError):
    """Raised when a model call would exceed the session token budget."""

    used_tokens: int = 0
    estimated_tokens: int = 0
    budget_tokens: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Token budget exceeded: {self.used_tokens} used + "
                f"{self.estimated_tokens} estimated > {self.budget_tokens}"
            )
        if self.code == 0:
            self.code = ERROR_MODEL_BUDGET_EXCEEDED
        if not self.suggestion:
            self.suggestion = "Start a new session or request a larger session_token_budget"
        super().__post_init__()
        self.details.update({
            "used_tokens": self.used_tokens,
            "estimated_tokens": self.estimated_tokens,
            "budget_tokens": self.budget_tokens,
        })


# =============================================================================
# Tool Errors
# =============================================================================


@dataclass
class ToolError(StewardError):
    """
    Base class for tool execution errors.

    These errors are converted into tool-result messages by the dispatcher;
    they never abort a task.

    Attributes:
        tool: Name of the tool that failed
    """

    tool: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.details["tool"] = self.tool


@dataclass
class ToolNotFoundError(ToolError):
    """Raised when a tool is not registered with the executor."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Tool not found: {self.tool}"
        if self.code == 0:
            self.code = ERROR_TOOL_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Check tool name spelling or register the tool"
        super().__post_init__()


@dataclass
class ToolTimeoutError(ToolError):
    """Raised when a tool exceeds its category timeout."""

    timeout_seconds: float = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Tool {self.tool} timed out after {self.timeout_seconds}s"
        if self.code == 0:
            self.code = ERROR_TOOL_TIMEOUT
        self.retryable = True
        super().__post_init__()
        self.details["timeout_seconds"] = self.timeout_seconds


@dataclass
class ToolExecutionError(ToolError):
    """Raised when a tool fails during execution."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Tool {self.tool} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_TOOL_EXECUTION_FAILED
        super().__post_init__()
        self.details["underlying_error"] = self.underlying_error


# =============================================================================
# Policy Errors
# =============================================================================


@dataclass
class PolicyError(StewardError):
    """Base class for policy errors."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_POLICY_INVALID


@dataclass
class CapabilityDeniedError(PolicyError):
    """Raised when a required capability is not granted by the policy snapshot."""

    capability: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Capability {self.capability} denied: {self.reason}"
        if self.code == 0:
            self.code = ERROR_POLICY_CAPABILITY_DENIED
        super().__post_init__()
        self.details.update({"capability": self.capability, "reason": self.reason})


@dataclass
class PolicyExpiredError(PolicyError):
    """Raised when the policy snapshot is past its expiry."""

    expires_at: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy snapshot expired at {self.expires_at}"
        if self.code == 0:
            self.code = ERROR_POLICY_EXPIRED
        if not self.suggestion:
            self.suggestion = "Resume the session to obtain a refreshed policy snapshot"
        self.retryable = True
        super().__post_init__()
        self.details["expires_at"] = self.expires_at


@dataclass
class InvalidPolicyError(PolicyError):
    """Raised when a handshake or policy snapshot fails validation."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid policy snapshot: {self.reason}"
        super().__post_init__()
        self.details["reason"] = self.reason


# =============================================================================
# Approval Errors
# =============================================================================


@dataclass
class ApprovalError(StewardError):
    """
    Base class for approval errors.

    Attributes:
        request_id: ID of the approval request
    """

    request_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.details["request_id"] = self.request_id


@dataclass
class ApprovalDeniedError(ApprovalError):
    """Raised when a human denied an approval request."""

    reason: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Approval {self.request_id} denied"
            if self.reason:
                self.message += f": {self.reason}"
        if self.code == 0:
            self.code = ERROR_APPROVAL_DENIED
        super().__post_init__()
        self.details["reason"] = self.reason


@dataclass
class ApprovalTimedOutError(ApprovalError):
    """Raised when no decision arrived within the approval timeout."""

    timeout_seconds: float = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Approval {self.request_id} timed out after {self.timeout_seconds}s"
        if self.code == 0:
            self.code = ERROR_APPROVAL_TIMED_OUT
        super().__post_init__()
        self.details["timeout_seconds"] = self.timeout_seconds


@dataclass
class UnknownApprovalRequestError(ApprovalError):
    """Raised when a decision is delivered for a request that is not pending."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No pending approval request: {self.request_id}"
        if self.code == 0:
            self.code = ERROR_APPROVAL_UNKNOWN_REQUEST
        super().__post_init__()


# =============================================================================
# Infrastructure Errors
# =============================================================================


@dataclass
class InfrastructureError(StewardError):
    """
    Base class for backend and local I/O errors.

    Attributes:
        operation: The operation that failed (e.g., "resume", "write")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.details["operation"] = self.operation


@dataclass
class BackendUnreachableError(InfrastructureError):
    """Raised when the session or history backend cannot be reached."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Backend unreachable during {self.operation}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_BACKEND_UNREACHABLE
        self.retryable = True
        super().__post_init__()
        self.details["underlying_error"] = self.underlying_error


@dataclass
class CheckpointWriteError(InfrastructureError):
    """Raised when a checkpoint could not be persisted."""

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Checkpoint write failed for {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CHECKPOINT_WRITE
        self.retryable = True
        super().__post_init__()
        self.details.update({"path": self.path, "underlying_error": self.underlying_error})


@dataclass
class CheckpointCorruptedError(InfrastructureError):
    """Raised when a checkpoint is unreadable or has an unknown schema version."""

    path: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Checkpoint recovery failed for {self.path}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_CHECKPOINT_CORRUPTED
        if not self.suggestion:
            self.suggestion = "The checkpoint was discarded; start a new session"
        super().__post_init__()
        self.details.update({"path": self.path, "reason": self.reason})


@dataclass
class StorageWriteError(InfrastructureError):
    """Raised when a history/artifact write fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        self.retryable = True
        super().__post_init__()
        self.details["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(InfrastructureError):
    """Raised when a history/artifact read fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.details["underlying_error"] = self.underlying_error


# =============================================================================
# Session Errors
# =============================================================================


@dataclass
class SessionStateError(StewardError):
    """Raised when a command is not valid in the current session state."""

    state: str = ""
    command: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cannot {self.command} while session is {self.state}"
        if self.code == 0:
            self.code = ERROR_SESSION_STATE
        self.details.update({"state": self.state, "command": self.command})


@dataclass
class TaskRejectedError(SessionStateError):
    """Raised when start_task is rejected (another task running, bad options, ...)."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Task rejected: {self.reason}"
        if self.code == 0:
            self.code = ERROR_TASK_REJECTED
        super().__post_init__()
        self.details["reason"] = self.reason


@dataclass
class InvalidTransitionError(StewardError):
    """Raised when the state machine receives an event it has no transition for."""

    machine: str = ""
    state: str = ""
    event: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No {self.machine} transition from {self.state} on {self.event}"
        if self.code == 0:
            self.code = ERROR_INVALID_TRANSITION
        self.details.update({
            "machine": self.machine,
            "state": self.state,
            "event": self.event,
        })
