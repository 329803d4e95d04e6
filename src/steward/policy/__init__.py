"""
Capability enforcement for Steward.

This module implements the core security model: deny-by-default capability
gating over a policy snapshot. Every tool call and every model call passes
through the enforcer before it runs.

Key concepts:
    - Capability: a named permission ("File.Write", "Shell.Exec") with scope
    - PolicyDecision: Allowed, Denied(reason) or ApprovalRequired(rule, risk)
    - CapabilityEnforcer: pure evaluator over one policy snapshot
"""

from steward.policy.enforcer import CapabilityEnforcer, DecisionOutcome, PolicyDecision

__all__ = [
    "CapabilityEnforcer",
    "DecisionOutcome",
    "PolicyDecision",
]
