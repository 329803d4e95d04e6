"""
Capability Enforcer for Steward.

The enforcer is the security boundary between the model and the tool
executor. Every tool call and every model call is checked here first.

Design Principles:
    - Deny-by-default: A capability absent from the snapshot is always denied
    - Blocklist precedence: A path/command on a block list is denied even if
      it is also allowed
    - Pure: No I/O beyond path resolution, no state, same inputs give the
      same decision, so it is safe to call from any task
    - Auditable: Every decision carries a reason and the rule that produced it

How it works:
    1. The policy snapshot must not be expired
    2. The capability must be granted by the snapshot
    3. Scope constraints are evaluated for the capability's family
       (paths for File.*, base commands for Shell.*, domains for Network.*)
    4. If the grant requires approval, a risk level is computed and the call
       is flagged ApprovalRequired; otherwise it is Allowed

Extension points (deliberately not implemented):
    Command arguments are not inspected; only the base command is matched.
"""

import shlex
import sys
from datetime import datetime
from enum import Enum
from fnmatch import fnmatchcase
from pathlib import Path, PurePath
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from steward.schema import (
    MODEL_CAPABILITY,
    CapabilityFamily,
    CapabilityGrant,
    PolicySnapshot,
    RiskLevel,
    ToolCall,
    ToolDefinition,
)

# Argument names that carry filesystem paths
PATH_ARGUMENTS = ("path", "paths", "source", "destination", "target")

# Argument names that carry content whose size is limited
CONTENT_ARGUMENTS = ("content", "data", "text")

# Base risk per capability; families fill the gaps
BASE_RISK: dict[str, RiskLevel] = {
    "File.Read": RiskLevel.LOW,
    "File.List": RiskLevel.LOW,
    "File.Write": RiskLevel.MEDIUM,
    "File.Delete": RiskLevel.HIGH,
    "Shell.Exec": RiskLevel.HIGH,
    "Network.Fetch": RiskLevel.MEDIUM,
    "Network.Post": RiskLevel.HIGH,
}

FAMILY_RISK: dict[CapabilityFamily, RiskLevel] = {
    CapabilityFamily.FILE: RiskLevel.MEDIUM,
    CapabilityFamily.EXEC: RiskLevel.HIGH,
    CapabilityFamily.NETWORK: RiskLevel.MEDIUM,
    CapabilityFamily.MODEL: RiskLevel.LOW,
    CapabilityFamily.OTHER: RiskLevel.MEDIUM,
}

# Commands considered recognized when no allow list narrows Shell.Exec
RECOGNIZED_COMMANDS = frozenset({
    "cat", "echo", "find", "git", "grep", "head", "ls", "pwd", "python",
    "python3", "pytest", "rg", "sort", "tail", "uniq", "wc",
})


class DecisionOutcome(str, Enum):
    """Result kind of a capability check."""

    ALLOWED = "allowed"
    DENIED = "denied"
    APPROVAL_REQUIRED = "approval_required"


class PolicyDecision(BaseModel):
    """
    Result of checking one call against the policy snapshot.

    Attributes:
        outcome: Allowed, Denied or ApprovalRequired
        reason: Human-readable explanation of the decision
        rule: Which policy rule caused this decision
        risk_level: Set when approval is required
        approval_rule_id: Approval rule reference when approval is required
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    outcome: DecisionOutcome
    reason: str
    rule: str | None = None
    risk_level: RiskLevel | None = None
    approval_rule_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.ALLOWED

    @property
    def denied(self) -> bool:
        return self.outcome == DecisionOutcome.DENIED

    @property
    def needs_approval(self) -> bool:
        return self.outcome == DecisionOutcome.APPROVAL_REQUIRED

    @classmethod
    def allow(cls, reason: str, rule: str | None = None) -> "PolicyDecision":
        """Create an ALLOWED decision."""
        return cls(outcome=DecisionOutcome.ALLOWED, reason=reason, rule=rule)

    @classmethod
    def deny(cls, reason: str, rule: str | None = None) -> "PolicyDecision":
        """Create a DENIED decision."""
        return cls(outcome=DecisionOutcome.DENIED, reason=reason, rule=rule)

    @classmethod
    def require_approval(
        cls,
        reason: str,
        risk_level: RiskLevel,
        approval_rule_id: str | None,
        details: dict[str, Any] | None = None,
    ) -> "PolicyDecision":
        """Create an APPROVAL_REQUIRED decision."""
        return cls(
            outcome=DecisionOutcome.APPROVAL_REQUIRED,
            reason=reason,
            rule=approval_rule_id,
            risk_level=risk_level,
            approval_rule_id=approval_rule_id,
            details=details or {},
        )


class _ScopeVerdict:
    """Internal result of scope evaluation: a denial, or an allow with an escalation note."""

    __slots__ = ("denial", "escalate", "notes")

    def __init__(self, denial: PolicyDecision | None = None) -> None:
        self.denial = denial
        self.escalate = False
        self.notes: dict[str, Any] = {}


class CapabilityEnforcer:
    """
    Stateless evaluator of tool and model calls against a policy snapshot.

    Usage:
        enforcer = CapabilityEnforcer(snapshot)
        decision = enforcer.check(call, "File.Write")
        if decision.needs_approval:
            ...

    Attributes:
        policy: The snapshot being enforced
        case_sensitive: Whether path comparison is case-sensitive
    """

    def __init__(
        self,
        policy: PolicySnapshot,
        case_sensitive: bool | None = None,
        working_dir: str | None = None,
    ) -> None:
        """
        Initialize the enforcer.

        Args:
            policy: The policy snapshot to enforce
            case_sensitive: Path case rule; None follows the platform
                (insensitive on Windows and macOS)
            working_dir: Base for relative paths; defaults to the snapshot's
                workspace_root, then the current directory
        """
        self.policy = policy
        if case_sensitive is None:
            case_sensitive = sys.platform not in ("win32", "darwin")
        self.case_sensitive = case_sensitive
        self.working_dir = working_dir or policy.workspace_root or "."

    # =========================================================================
    # Entry points
    # =========================================================================

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the snapshot has expired."""
        return self.policy.is_expired(now)

    def check_model_call(self, now: datetime | None = None) -> PolicyDecision:
        """Pre-check performed before every model invocation."""
        if self.is_expired(now):
            return PolicyDecision.deny(
                f"Policy expired at {self.policy.expires_at.isoformat()}",
                rule="policy_expired",
            )
        if self.policy.grant(MODEL_CAPABILITY) is None:
            return PolicyDecision.deny(
                f"Capability {MODEL_CAPABILITY} not granted",
                rule="capability_not_granted",
            )
        return PolicyDecision.allow(f"{MODEL_CAPABILITY} granted", rule=MODEL_CAPABILITY)

    def check(
        self,
        tool_call: ToolCall,
        capability: str,
        allow_network: bool = True,
        now: datetime | None = None,
    ) -> PolicyDecision:
        """
        Evaluate a tool call against the policy.

        Args:
            tool_call: The call requested by the model
            capability: The capability the call exercises
            allow_network: Task-level switch for Network.* capabilities
            now: Evaluation time (defaults to the current time)

        Returns:
            PolicyDecision: allowed, denied (with reason) or approval required
        """
        if self.is_expired(now):
            return PolicyDecision.deny(
                f"Policy expired at {self.policy.expires_at.isoformat()}",
                rule="policy_expired",
            )

        grant = self.policy.grant(capability)
        if grant is None:
            return PolicyDecision.deny(
                f"Capability {capability} not granted",
                rule="capability_not_granted",
            )

        family = grant.family
        if family == CapabilityFamily.FILE:
            verdict = self._evaluate_file_scope(tool_call.arguments, grant)
        elif family == CapabilityFamily.EXEC:
            verdict = self._evaluate_exec_scope(tool_call.arguments, grant)
        elif family == CapabilityFamily.NETWORK:
            verdict = self._evaluate_network_scope(tool_call.arguments, grant, allow_network)
        else:
            verdict = _ScopeVerdict()

        if verdict.denial is not None:
            return verdict.denial

        if grant.requires_approval:
            risk = self._risk_level(grant, escalate=verdict.escalate)
            return PolicyDecision.require_approval(
                f"{capability} requires approval",
                risk_level=risk,
                approval_rule_id=grant.approval_rule_id,
                details=verdict.notes,
            )

        return PolicyDecision.allow(f"{capability} granted", rule=capability)

    def visible_tools(
        self,
        definitions: list[ToolDefinition],
        allow_network: bool = True,
    ) -> list[ToolDefinition]:
        """Filter tool definitions down to those whose capability is granted."""
        visible = []
        for definition in definitions:
            if self.policy.grant(definition.capability) is None:
                continue
            if definition.family == CapabilityFamily.NETWORK and not allow_network:
                continue
            visible.append(definition)
        return visible

    # =========================================================================
    # Risk
    # =========================================================================

    def _risk_level(self, grant: CapabilityGrant, escalate: bool) -> RiskLevel:
        """Look up the deterministic base risk, apply rule override and escalation."""
        rule = self.policy.rule(grant.approval_rule_id)
        if rule is not None and rule.risk_level is not None:
            risk = rule.risk_level
        else:
            risk = BASE_RISK.get(grant.name, FAMILY_RISK[grant.family])
        if escalate:
            risk = risk.escalate()
        return risk

    # =========================================================================
    # File scope
    # =========================================================================

    def _evaluate_file_scope(
        self,
        args: dict[str, Any],
        grant: CapabilityGrant,
    ) -> _ScopeVerdict:
        """
        Evaluate path allow/block lists for a File.* capability.

        Security checks performed:
        1. At least one path argument must be provided
        2. Each path is resolved (symlinks followed, ".." collapsed)
        3. Any block_paths match denies (precedence over allow_paths)
        4. A non-empty allow_paths must match, else deny
        5. Content size is checked against max_size_bytes
        6. Paths outside the workspace root escalate the approval risk
        """
        scope = grant.scope
        raw_paths = self._collect_paths(args)
        if not raw_paths:
            return _ScopeVerdict(PolicyDecision.deny("No path provided", rule="missing_argument"))

        verdict = _ScopeVerdict()
        resolved_paths = []
        for raw in raw_paths:
            try:
                resolved = self._resolve(raw)
            except (ValueError, OSError) as e:
                return _ScopeVerdict(PolicyDecision.deny(f"Invalid path: {e}", rule="invalid_path"))

            for pattern in scope.block_paths:
                if self._path_matches(resolved, pattern):
                    return _ScopeVerdict(
                        PolicyDecision.deny(
                            f"Path matches block pattern: {pattern}",
                            rule=f"block_paths[{pattern}]",
                        )
                    )

            if scope.allow_paths and not any(
                self._path_matches(resolved, pattern) for pattern in scope.allow_paths
            ):
                return _ScopeVerdict(
                    PolicyDecision.deny(f"Path not in allowlist: {raw}", rule="allow_paths")
                )

            if not self._within_workspace(resolved):
                verdict.escalate = True
                verdict.notes.setdefault("out_of_scope_paths", []).append(str(resolved))
            resolved_paths.append(str(resolved))

        if scope.max_size_bytes is not None:
            size = self._content_size(args)
            if size > scope.max_size_bytes:
                return _ScopeVerdict(
                    PolicyDecision.deny(
                        f"Content size {size} exceeds limit {scope.max_size_bytes}",
                        rule="max_size_bytes",
                    )
                )

        verdict.notes["paths"] = resolved_paths
        return verdict

    def _collect_paths(self, args: dict[str, Any]) -> list[str]:
        paths: list[str] = []
        for key in PATH_ARGUMENTS:
            value = args.get(key)
            if isinstance(value, str) and value:
                paths.append(value)
            elif isinstance(value, list):
                paths.extend(str(item) for item in value if item)
        return paths

    def _content_size(self, args: dict[str, Any]) -> int:
        for key in CONTENT_ARGUMENTS:
            value = args.get(key)
            if isinstance(value, str):
                return len(value.encode("utf-8"))
            if isinstance(value, bytes):
                return len(value)
        return 0

    def _resolve(self, raw: str) -> Path:
        """Resolve a path against the working directory, following symlinks."""
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = Path(self.working_dir) / path
        return path.resolve()

    def _fold(self, value: str) -> str:
        """Apply the case rule to a path string."""
        return value if self.case_sensitive else value.casefold()

    def _within_workspace(self, resolved: Path) -> bool:
        root = self.policy.workspace_root
        if root is None:
            return True
        try:
            base = Path(root).expanduser().resolve()
        except OSError:
            return False
        return self._is_relative_to(resolved, base)

    def _is_relative_to(self, path: PurePath, base: PurePath) -> bool:
        path_parts = [self._fold(p) for p in path.parts]
        base_parts = [self._fold(p) for p in base.parts]
        return path_parts[: len(base_parts)] == base_parts

    def _path_matches(self, resolved: Path, pattern: str) -> bool:
        """
        Check if a resolved path matches a glob pattern.

        Patterns can be:
        - Absolute: /home/user/projects/**
        - Relative: ./src/** (resolved against the working directory)
        - Plain paths: /etc/passwd (matches the path and anything below it)

        The non-glob base of the pattern is resolved too, so system symlinks
        such as /var -> /private/var on macOS match consistently.
        """
        if "**" in pattern:
            base_pattern, suffix = pattern.split("**", 1)
        elif any(ch in pattern for ch in "*?["):
            base_pattern = str(Path(pattern).parent)
            suffix = "/" + Path(pattern).name
        else:
            base_pattern, suffix = pattern, ""

        base = Path(base_pattern).expanduser() if base_pattern else Path(".")
        if not base.is_absolute():
            base = Path(self.working_dir) / base
        try:
            base = base.resolve()
        except OSError:
            pass

        if not self._is_relative_to(resolved, base):
            return False

        tail = resolved.parts[len(base.parts):]
        remainder = PurePath(*tail).as_posix() if tail else ""
        remainder = self._fold(remainder)
        suffix = self._fold(suffix.lstrip("/"))

        if "**" in pattern:
            if not suffix:
                return True
            if "/" in suffix:
                return fnmatchcase(remainder, suffix)
            return fnmatchcase(self._fold(resolved.name), suffix)

        if suffix:
            return "/" not in remainder and fnmatchcase(remainder, suffix)

        # Plain path: the path itself or anything beneath it
        return True

    # =========================================================================
    # Exec scope
    # =========================================================================

    def _evaluate_exec_scope(
        self,
        args: dict[str, Any],
        grant: CapabilityGrant,
    ) -> _ScopeVerdict:
        """
        Evaluate base-command allow/block lists for a Shell.* capability.

        Only the base command (the executable name) is matched; arguments are
        not inspected.
        """
        scope = grant.scope
        command = args.get("command", args.get("cmd"))
        base = self._base_command(command)
        if base is None:
            return _ScopeVerdict(PolicyDecision.deny("No command provided", rule="missing_argument"))

        blocked = {c.lower() for c in scope.block_commands}
        if base.lower() in blocked:
            return _ScopeVerdict(
                PolicyDecision.deny(f"Command is blocked: {base}", rule=f"block_commands[{base}]")
            )

        verdict = _ScopeVerdict()
        verdict.notes["base_command"] = base
        if scope.allow_commands:
            if base not in scope.allow_commands:
                return _ScopeVerdict(
                    PolicyDecision.deny(f"Command not in allowlist: {base}", rule="allow_commands")
                )
        elif base not in RECOGNIZED_COMMANDS:
            verdict.escalate = True
            verdict.notes["unrecognized_command"] = base
        return verdict

    def _base_command(self, command: Any) -> str | None:
        if isinstance(command, list):
            if not command:
                return None
            executable = str(command[0])
        elif isinstance(command, str) and command.strip():
            try:
                tokens = shlex.split(command)
            except ValueError:
                tokens = command.split()
            if not tokens:
                return None
            executable = tokens[0]
        else:
            return None
        return PurePath(executable.replace("\\", "/")).name

    # =========================================================================
    # Network scope
    # =========================================================================

    def _evaluate_network_scope(
        self,
        args: dict[str, Any],
        grant: CapabilityGrant,
        allow_network: bool,
    ) -> _ScopeVerdict:
        """Evaluate the domain allow list for a Network.* capability."""
        if not allow_network:
            return _ScopeVerdict(
                PolicyDecision.deny("Network access is disabled for this task", rule="allow_network=false")
            )

        url = args.get("url")
        if not isinstance(url, str) or not url:
            return _ScopeVerdict(PolicyDecision.deny("No URL provided", rule="missing_argument"))
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.hostname:
            return _ScopeVerdict(PolicyDecision.deny(f"Invalid URL: {url}", rule="invalid_url"))

        domain = parsed.hostname.lower()
        if not grant.scope.allow_domains:
            return _ScopeVerdict(
                PolicyDecision.deny(f"No domains allowed for {grant.name}", rule="allow_domains=[]")
            )
        if not any(self._domain_matches(domain, p) for p in grant.scope.allow_domains):
            return _ScopeVerdict(
                PolicyDecision.deny(f"Domain not in allowlist: {domain}", rule="allow_domains")
            )

        verdict = _ScopeVerdict()
        verdict.notes["domain"] = domain
        return verdict

    def _domain_matches(self, domain: str, pattern: str) -> bool:
        """
        Check if a domain matches a pattern.

        Examples:
            api.github.com matches api.github.com
            api.github.com matches *.github.com
            github.com matches *.github.com
        """
        pattern = pattern.lower()
        if pattern.startswith("*."):
            return domain.endswith(pattern[1:]) or domain == pattern[2:]
        return domain == pattern

