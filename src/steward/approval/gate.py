"""
Approval gate for Steward.

Mediates human sign-off for tool calls the capability enforcer flagged as
requiring approval. Each request is an independent awaitable; a slow
decision on one call never holds up its siblings.

Outcomes by task approval mode:
    - interactive: the request is published and a decision awaited
    - strict: denied immediately, nobody is asked
    - trusted: LOW risk is approved immediately, anything else is asked

No decision within the timeout is a denial with reason "timed out".
"""

import asyncio
import json
import logging
from typing import Any

from steward.errors import UnknownApprovalRequestError
from steward.events import EventBus, EventType
from steward.policy.enforcer import PolicyDecision
from steward.schema import (
    ApprovalDecision,
    ApprovalMode,
    ApprovalRequest,
    RiskLevel,
    ToolCall,
)

logger = logging.getLogger(__name__)

TIMED_OUT_REASON = "timed out"

SUMMARY_ARGUMENT_CHARS = 160


def build_approval_request(
    call: ToolCall,
    capability: str,
    decision: PolicyDecision,
) -> ApprovalRequest:
    """Describe a flagged tool call for the human deciding on it."""
    arguments = json.dumps(call.arguments, sort_keys=True, default=str)
    if len(arguments) > SUMMARY_ARGUMENT_CHARS:
        arguments = arguments[: SUMMARY_ARGUMENT_CHARS - 3] + "..."

    details: dict[str, Any] = {"arguments": call.arguments, "reason": decision.reason}
    details.update(decision.details)

    return ApprovalRequest(
        call_id=call.call_id,
        tool_name=call.tool_name,
        capability=capability,
        rule_id=decision.approval_rule_id,
        risk_level=decision.risk_level or RiskLevel.MEDIUM,
        summary=f"{call.tool_name} ({capability}) {arguments}",
        details=details,
        task_id=call.task_id,
        step_id=call.step_id,
    )


class ApprovalGate:
    """
    Pending approval requests and the futures awaiting their decisions.

    Usage:
        decision = await gate.request(req, ApprovalMode.INTERACTIVE, timeout_seconds=300)
        # elsewhere, on the host's command:
        gate.resolve(req.request_id, approved=True)
    """

    def __init__(self, events: EventBus | None = None) -> None:
        self.events = events or EventBus()
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Future[ApprovalDecision]]] = {}

    def pending(self) -> list[ApprovalRequest]:
        """Requests currently awaiting a decision, oldest first."""
        return [request for request, _ in self._pending.values()]

    async def request(
        self,
        request: ApprovalRequest,
        mode: ApprovalMode,
        timeout_seconds: float,
    ) -> ApprovalDecision:
        """
        Obtain a decision for one approval request.

        Returns:
            The decision; a timeout yields a denial, never an exception
        """
        if mode == ApprovalMode.STRICT:
            return self._settle(request, approved=False, reason="approval mode is strict", decided_by="policy")
        if mode == ApprovalMode.TRUSTED and request.risk_level == RiskLevel.LOW:
            return self._settle(request, approved=True, reason="low risk in trusted mode", decided_by="policy")

        future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = (request, future)
        self.events.emit(
            EventType.APPROVAL_REQUESTED,
            task_id=request.task_id or None,
            step_id=request.step_id or None,
            request=request.model_dump(mode="json"),
        )
        logger.info("Approval requested: %s (%s risk)", request.summary, request.risk_level.value)

        try:
            decision = await asyncio.wait_for(asyncio.shield(future), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            decision = ApprovalDecision(
                request_id=request.request_id,
                approved=False,
                reason=TIMED_OUT_REASON,
                decided_by="timeout",
            )
            logger.info("Approval %s timed out after %ss", request.request_id, timeout_seconds)
        finally:
            self._pending.pop(request.request_id, None)
            if not future.done():
                future.cancel()

        self._publish(request, decision)
        return decision

    def resolve(
        self,
        request_id: str,
        approved: bool,
        reason: str | None = None,
        decided_by: str = "human",
    ) -> ApprovalDecision:
        """
        Deliver a decision for a pending request.

        Raises:
            UnknownApprovalRequestError: If the request is not pending (never
                issued, already decided or timed out)
        """
        entry = self._pending.get(request_id)
        if entry is None or entry[1].done():
            raise UnknownApprovalRequestError(request_id=request_id)

        decision = ApprovalDecision(
            request_id=request_id,
            approved=approved,
            reason=reason,
            decided_by=decided_by,
        )
        entry[1].set_result(decision)
        return decision

    def deny_all(self, reason: str) -> int:
        """Deny every pending request (shutdown); returns how many were denied."""
        count = 0
        for request_id in list(self._pending):
            _, future = self._pending[request_id]
            if not future.done():
                future.set_result(
                    ApprovalDecision(request_id=request_id, approved=False, reason=reason, decided_by="policy")
                )
                count += 1
        return count

    def _settle(
        self,
        request: ApprovalRequest,
        approved: bool,
        reason: str,
        decided_by: str,
    ) -> ApprovalDecision:
        decision = ApprovalDecision(
            request_id=request.request_id,
            approved=approved,
            reason=reason,
            decided_by=decided_by,
        )
        logger.debug("Approval %s settled without asking: %s", request.request_id, reason)
        self._publish(request, decision)
        return decision

    def _publish(self, request: ApprovalRequest, decision: ApprovalDecision) -> None:
        self.events.emit(
            EventType.APPROVAL_RESOLVED,
            task_id=request.task_id or None,
            step_id=request.step_id or None,
            request_id=request.request_id,
            call_id=request.call_id,
            approved=decision.approved,
            reason=decision.reason,
            decided_by=decision.decided_by,
        )
