"""
Unit tests for the approval gate and the event bus.

Tests cover:
- Approval modes (interactive, strict, trusted)
- Resolution, timeout and unknown requests
- Deny-all on shutdown
- Notifications published for requests and decisions
- EventBus subscription and failing subscribers
"""

import asyncio

import pytest

from steward.approval.gate import TIMED_OUT_REASON, ApprovalGate, build_approval_request
from steward.errors import UnknownApprovalRequestError
from steward.events import EventBus, EventRecorder, EventType
from steward.policy.enforcer import PolicyDecision
from steward.schema import ApprovalMode, ApprovalRequest, RiskLevel, ToolCall


def make_request(risk: RiskLevel = RiskLevel.MEDIUM) -> ApprovalRequest:
    call = ToolCall(
        call_id="c1",
        tool_name="write_file",
        arguments={"path": "a.txt", "content": "hi"},
        task_id="task_1",
        step_id="step_1",
    )
    decision = PolicyDecision.require_approval(
        "File.Write requires approval", risk_level=risk, approval_rule_id="write-review", details={"paths": ["a.txt"]}
    )
    return build_approval_request(call, "File.Write", decision)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def gate(recorder: EventRecorder) -> ApprovalGate:
    bus = EventBus("sess_1")
    bus.subscribe(recorder)
    return ApprovalGate(bus)


# =============================================================================
# Request construction
# =============================================================================


class TestBuildApprovalRequest:
    def test_structured_details(self) -> None:
        request = make_request()
        assert request.call_id == "c1"
        assert request.capability == "File.Write"
        assert request.rule_id == "write-review"
        assert request.details["arguments"] == {"path": "a.txt", "content": "hi"}
        assert request.details["paths"] == ["a.txt"]
        assert request.summary.startswith("write_file (File.Write)")


# =============================================================================
# Modes
# =============================================================================


class TestApprovalModes:
    """Decisions that never reach a human."""

    def test_strict_denies_without_asking(self, gate: ApprovalGate, recorder: EventRecorder) -> None:
        decision = asyncio.run(gate.request(make_request(), ApprovalMode.STRICT, timeout_seconds=5))
        assert not decision.approved
        assert decision.decided_by == "policy"
        assert recorder.types() == [EventType.APPROVAL_RESOLVED]

    def test_trusted_approves_low_risk(self, gate: ApprovalGate) -> None:
        decision = asyncio.run(gate.request(make_request(RiskLevel.LOW), ApprovalMode.TRUSTED, timeout_seconds=5))
        assert decision.approved
        assert decision.decided_by == "policy"

    def test_trusted_asks_for_higher_risk(self, gate: ApprovalGate, recorder: EventRecorder) -> None:
        async def scenario() -> bool:
            pending = asyncio.ensure_future(gate.request(make_request(RiskLevel.HIGH), ApprovalMode.TRUSTED, 5))
            await asyncio.sleep(0)
            assert len(gate.pending()) == 1
            gate.resolve(gate.pending()[0].request_id, approved=False, reason="too risky")
            return (await pending).approved

        assert asyncio.run(scenario()) is False
        assert recorder.types() == [EventType.APPROVAL_REQUESTED, EventType.APPROVAL_RESOLVED]


# =============================================================================
# Interactive decisions
# =============================================================================


class TestInteractive:
    """Human decisions, timeouts and shutdown."""

    def test_approve(self, gate: ApprovalGate, recorder: EventRecorder) -> None:
        request = make_request()

        async def scenario() -> bool:
            pending = asyncio.ensure_future(gate.request(request, ApprovalMode.INTERACTIVE, 5))
            await asyncio.sleep(0)
            gate.resolve(request.request_id, approved=True)
            return (await pending).approved

        assert asyncio.run(scenario()) is True
        assert gate.pending() == []
        published = recorder.of_type(EventType.APPROVAL_REQUESTED)[0]
        assert published.payload["request"]["request_id"] == request.request_id
        assert published.task_id == "task_1"
        resolved = recorder.of_type(EventType.APPROVAL_RESOLVED)[0]
        assert resolved.payload["approved"] is True
        assert resolved.payload["decided_by"] == "human"

    def test_timeout_is_denial(self, gate: ApprovalGate) -> None:
        decision = asyncio.run(gate.request(make_request(), ApprovalMode.INTERACTIVE, timeout_seconds=0.05))
        assert not decision.approved
        assert decision.reason == TIMED_OUT_REASON
        assert decision.decided_by == "timeout"
        assert gate.pending() == []

    def test_resolve_unknown(self, gate: ApprovalGate) -> None:
        with pytest.raises(UnknownApprovalRequestError):
            gate.resolve("apr_missing", approved=True)

    def test_resolve_after_timeout(self, gate: ApprovalGate) -> None:
        """A late decision for a timed-out request is rejected."""
        request = make_request()
        asyncio.run(gate.request(request, ApprovalMode.INTERACTIVE, timeout_seconds=0.01))
        with pytest.raises(UnknownApprovalRequestError):
            gate.resolve(request.request_id, approved=True)

    def test_deny_all(self, gate: ApprovalGate) -> None:
        async def scenario() -> list[bool]:
            pending = [
                asyncio.ensure_future(gate.request(make_request(), ApprovalMode.INTERACTIVE, 5)) for _ in range(2)
            ]
            await asyncio.sleep(0)
            assert gate.deny_all("session shutting down") == 2
            decisions = await asyncio.gather(*pending)
            assert all(d.reason == "session shutting down" for d in decisions)
            return [d.approved for d in decisions]

        assert asyncio.run(scenario()) == [False, False]


# =============================================================================
# Event bus
# =============================================================================


class TestEventBus:
    """Tests for notification delivery."""

    def test_emit_stamps_ids(self, recorder: EventRecorder) -> None:
        bus = EventBus("sess_1")
        bus.subscribe(recorder)
        bus.emit(EventType.STEP_STARTED, task_id="task_1", step_id="step_1", continuation=False)

        notification = recorder.notifications[0]
        assert notification.session_id == "sess_1"
        assert notification.task_id == "task_1"
        assert notification.step_id == "step_1"
        assert notification.payload == {"continuation": False}

    def test_unsubscribe(self, recorder: EventRecorder) -> None:
        bus = EventBus()
        unsubscribe = bus.subscribe(recorder)
        unsubscribe()
        bus.emit(EventType.TEXT_DELTA, text="x")
        assert recorder.notifications == []

    def test_failing_subscriber_is_isolated(self, recorder: EventRecorder) -> None:
        """A broken subscriber cannot stop delivery to the others."""

        def broken(notification: object) -> None:
            raise RuntimeError("subscriber bug")

        bus = EventBus()
        bus.subscribe(broken)
        bus.subscribe(recorder)
        bus.emit(EventType.TASK_STARTED, task_id="task_1")
        assert recorder.types() == [EventType.TASK_STARTED]
