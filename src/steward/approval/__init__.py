"""Human-in-the-loop approval for Steward."""

from steward.approval.gate import TIMED_OUT_REASON, ApprovalGate, build_approval_request

__all__ = [
    "TIMED_OUT_REASON",
    "ApprovalGate",
    "build_approval_request",
]
