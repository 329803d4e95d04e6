"""
Tool dispatcher for Steward.

Runs the batch of tool calls from one model turn:

    1. authorize(): sequentially resolve each call's capability and run the
       capability check (pure and cheap, so no concurrency needed)
    2. execute(): one coroutine per call, joined in original order. Calls
       needing approval wait on the approval gate inside their own
       coroutine, so a slow decision never blocks a sibling call
    3. every authorized execution is bounded by its category timeout

A denied or failed call never aborts the batch; it becomes a ToolResult the
model reads on the next step. Outputs above the artifact threshold are
stored through the history store and truncated in the thread.

Timed-out executions are NOT cancelled (tool side effects must never be
cut off midway). The dispatcher stops waiting, reports a timeout, and logs
the orphaned result when it eventually arrives. Force-killing is an
extension point that is deliberately not implemented.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from steward.approval.gate import TIMED_OUT_REASON, ApprovalGate, build_approval_request
from steward.boundaries import HistoryStore, ToolExecutor
from steward.config import EngineConfig
from steward.errors import (
    ERROR_APPROVAL_DENIED,
    ERROR_APPROVAL_TIMED_OUT,
    ERROR_POLICY_CAPABILITY_DENIED,
    ERROR_POLICY_EXPIRED,
    ERROR_TOOL_EXECUTION_FAILED,
    StewardError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from steward.events import EventBus, EventType
from steward.model.base import INVALID_ARGUMENTS_KEY
from steward.policy.enforcer import CapabilityEnforcer, PolicyDecision
from steward.schema import (
    ApprovalMode,
    CapabilityFamily,
    Message,
    Role,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolResultStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

POLICY_EXPIRED_RULE = "policy_expired"
CANCELLED_REASON = "task cancelled"


@dataclass
class PlannedCall:
    """
    One call after authorization.

    Either `result` is already settled (denied, unknown tool, bad arguments)
    or `decision` says whether the call runs directly or needs approval.
    """

    index: int
    call: ToolCall
    capability: str | None = None
    decision: PolicyDecision | None = None
    result: ToolResult | None = None

    @property
    def needs_approval(self) -> bool:
        return self.result is None and self.decision is not None and self.decision.needs_approval


@dataclass
class DispatchOutcome:
    """Results of one batch, in original call order."""

    results: list[ToolResult] = field(default_factory=list)
    policy_expired: bool = False


def _settled(
    call: ToolCall,
    status: ToolResultStatus,
    error: str,
    error_code: int | None = None,
) -> ToolResult:
    now = utcnow()
    return ToolResult(
        call_id=call.call_id,
        tool_name=call.tool_name,
        status=status,
        error=error,
        error_code=error_code,
        started_at=now,
        ended_at=now,
    )


def result_message(result: ToolResult, task_id: str | None = None, step_id: str | None = None) -> Message:
    """Turn a tool result into the tool message appended to the thread."""
    if result.status == ToolResultStatus.DENIED:
        content = f"Denied: {result.error or 'not permitted'}"
    elif result.status == ToolResultStatus.FAILED:
        content = f"Error: {result.error or 'tool failed'}"
        if result.output:
            content += f"\n{result.output}"
    else:
        content = result.output
    for ref in result.artifacts:
        content += f"\n[artifact {ref.artifact_id}: {ref.size_bytes} bytes, sha256 {ref.sha256}]"
    return Message(
        role=Role.TOOL,
        content=content,
        task_id=task_id,
        step_id=step_id,
        tool_call_id=result.call_id,
        tool_name=result.tool_name,
        status=result.status,
        artifacts=list(result.artifacts),
    )


class ToolDispatcher:
    """
    Authorizes and executes the tool calls of one model turn.

    Attributes:
        executor: The tool-execution collaborator
        enforcer: Capability enforcer for the current policy snapshot
        gate: Approval gate for flagged calls
        parallel: Run authorized calls concurrently (False = one at a time)
        cancel_event: Set when the task is cancelled; approvals not yet
            requested are denied without asking
    """

    def __init__(
        self,
        executor: ToolExecutor,
        enforcer: CapabilityEnforcer,
        gate: ApprovalGate,
        config: EngineConfig | None = None,
        events: EventBus | None = None,
        history_store: HistoryStore | None = None,
        session_id: str = "",
        parallel: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.executor = executor
        self.enforcer = enforcer
        self.gate = gate
        self.config = config or EngineConfig()
        self.events = events or gate.events
        self.history_store = history_store
        self.session_id = session_id
        self.parallel = parallel
        self.cancel_event = cancel_event

    # =========================================================================
    # Public API
    # =========================================================================

    async def dispatch(
        self,
        calls: list[ToolCall],
        definitions: list[ToolDefinition],
        approval_mode: ApprovalMode = ApprovalMode.INTERACTIVE,
        allow_network: bool = False,
    ) -> DispatchOutcome:
        """Authorize and execute a batch in one go."""
        plan = self.authorize(calls, definitions, allow_network)
        return await self.execute(plan, approval_mode)

    def authorize(
        self,
        calls: list[ToolCall],
        definitions: list[ToolDefinition],
        allow_network: bool = False,
    ) -> list[PlannedCall]:
        """
        Resolve capabilities and check every call, in order.

        Unknown tools and unparseable arguments settle as failed; capability
        denials settle as denied. Everything else is left for execute().
        """
        by_name = {d.name: d for d in definitions}
        plan: list[PlannedCall] = []

        for index, call in enumerate(calls):
            planned = PlannedCall(index=index, call=call)
            plan.append(planned)

            if INVALID_ARGUMENTS_KEY in call.arguments:
                planned.result = _settled(
                    call,
                    ToolResultStatus.FAILED,
                    "Arguments were not a valid JSON object",
                    ERROR_TOOL_EXECUTION_FAILED,
                )
                continue

            definition = by_name.get(call.tool_name)
            if definition is None:
                error = ToolNotFoundError(tool=call.tool_name)
                planned.result = _settled(call, ToolResultStatus.FAILED, error.message, error.code)
                continue

            planned.capability = definition.capability
            planned.call = call.model_copy(update={"capability": definition.capability})
            decision = self.enforcer.check(planned.call, definition.capability, allow_network=allow_network)
            planned.decision = decision

            if decision.denied:
                code = (
                    ERROR_POLICY_EXPIRED
                    if decision.rule == POLICY_EXPIRED_RULE
                    else ERROR_POLICY_CAPABILITY_DENIED
                )
                planned.result = _settled(call, ToolResultStatus.DENIED, decision.reason, code)
                logger.info("Denied %s: %s", call.tool_name, decision.reason)

        return plan

    async def execute(
        self,
        plan: list[PlannedCall],
        approval_mode: ApprovalMode = ApprovalMode.INTERACTIVE,
        on_approvals_settled: Callable[[], None] | None = None,
    ) -> DispatchOutcome:
        """
        Execute an authorized plan.

        Args:
            plan: Output of authorize()
            approval_mode: Task approval mode
            on_approvals_settled: Called once, when the last approval in the
                batch has been decided (not called if none were needed)

        Returns:
            Results in the original call order
        """
        outstanding = sum(1 for p in plan if p.needs_approval)
        expired = any(
            p.decision is not None and p.decision.rule == POLICY_EXPIRED_RULE for p in plan
        )

        def approval_settled() -> None:
            nonlocal outstanding
            outstanding -= 1
            if outstanding == 0 and on_approvals_settled is not None:
                on_approvals_settled()

        async def run(planned: PlannedCall) -> ToolResult:
            nonlocal expired
            if planned.result is not None:
                return planned.result

            if planned.needs_approval:
                denial = await self._await_approval(planned, approval_mode)
                approval_settled()
                if denial is not None:
                    return denial

            if self.enforcer.is_expired():
                expired = True
                return _settled(
                    planned.call,
                    ToolResultStatus.DENIED,
                    f"Policy expired at {self.enforcer.policy.expires_at.isoformat()}",
                    ERROR_POLICY_EXPIRED,
                )
            return await self._invoke(planned)

        if self.parallel:
            results = list(await asyncio.gather(*(run(p) for p in plan)))
        else:
            results = [await run(p) for p in plan]

        return DispatchOutcome(results=results, policy_expired=expired)

    # =========================================================================
    # Approval
    # =========================================================================

    async def _await_approval(
        self,
        planned: PlannedCall,
        approval_mode: ApprovalMode,
    ) -> ToolResult | None:
        """Wait for a decision; returns a denied result, or None if approved."""
        decision = planned.decision
        if decision is None:
            return None
        if self.cancel_event is not None and self.cancel_event.is_set():
            return _settled(planned.call, ToolResultStatus.DENIED, CANCELLED_REASON, ERROR_APPROVAL_DENIED)
        request = build_approval_request(planned.call, planned.capability or "", decision)
        rule = self.enforcer.policy.rule(decision.approval_rule_id)
        timeout = (
            rule.timeout_seconds
            if rule is not None and rule.timeout_seconds is not None
            else self.config.approval_timeout_seconds
        )

        answer = await self.gate.request(request, approval_mode, timeout)
        if answer.approved:
            return None

        if answer.reason == TIMED_OUT_REASON:
            return _settled(planned.call, ToolResultStatus.DENIED, TIMED_OUT_REASON, ERROR_APPROVAL_TIMED_OUT)
        reason = answer.reason or "denied by approver"
        return _settled(planned.call, ToolResultStatus.DENIED, reason, ERROR_APPROVAL_DENIED)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _invoke(self, planned: PlannedCall) -> ToolResult:
        call = planned.call
        capability = planned.capability or ""
        family = CapabilityFamily.of(capability)
        timeout = self.config.tool_timeout(family)

        self.events.emit(
            EventType.TOOL_CALL_STARTED,
            task_id=call.task_id or None,
            step_id=call.step_id or None,
            call_id=call.call_id,
            tool_name=call.tool_name,
            capability=capability,
        )

        execution = asyncio.ensure_future(self._call_executor(call, capability))
        try:
            result = await asyncio.wait_for(asyncio.shield(execution), timeout=timeout)
        except asyncio.TimeoutError:
            execution.add_done_callback(self._orphan_callback(call))
            error: StewardError = ToolTimeoutError(tool=call.tool_name, timeout_seconds=timeout)
            result = _settled(call, ToolResultStatus.FAILED, error.message, error.code)
        except StewardError as e:
            result = _settled(call, ToolResultStatus.FAILED, e.message, e.code)
        except Exception as e:
            logger.warning("Tool %s raised unexpectedly", call.tool_name, exc_info=True)
            error = ToolExecutionError(tool=call.tool_name, underlying_error=str(e))
            result = _settled(call, ToolResultStatus.FAILED, error.message, error.code)
        else:
            result = result.model_copy(update={"call_id": call.call_id, "tool_name": call.tool_name})
            result = await self._offload_artifact(result)

        self.events.emit(
            EventType.TOOL_CALL_COMPLETED,
            task_id=call.task_id or None,
            step_id=call.step_id or None,
            call_id=call.call_id,
            tool_name=call.tool_name,
            status=result.status.value,
            error=result.error,
        )
        return result

    async def _call_executor(self, call: ToolCall, capability: str) -> ToolResult:
        outcome = self.executor.execute(call, capability)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def _orphan_callback(self, call: ToolCall) -> Callable[[asyncio.Future[ToolResult]], None]:
        def log_orphan(future: asyncio.Future[ToolResult]) -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                logger.warning("Timed-out tool %s (%s) later failed: %s", call.tool_name, call.call_id, error)
            else:
                logger.warning(
                    "Timed-out tool %s (%s) finished late with status %s; result discarded",
                    call.tool_name,
                    call.call_id,
                    future.result().status.value,
                )

        return log_orphan

    async def _offload_artifact(self, result: ToolResult) -> ToolResult:
        """Move an oversized output to the artifact store, keeping a prefix in the thread."""
        threshold = self.config.artifact_threshold_bytes
        payload = result.output.encode("utf-8")
        if len(payload) <= threshold:
            return result

        preview = payload[:threshold].decode("utf-8", errors="ignore")
        if self.history_store is None:
            note = f"\n[output truncated: {len(payload)} bytes total]"
            return result.model_copy(update={"output": preview + note})

        try:
            ref = await self.history_store.put_artifact(self.session_id, result.call_id, payload)
        except (StewardError, OSError) as e:
            logger.warning("Artifact upload for %s failed: %s", result.call_id, e)
            note = f"\n[output truncated: {len(payload)} bytes total; full output unavailable]"
            return result.model_copy(update={"output": preview + note})

        note = f"\n[output truncated: {len(payload)} bytes total, stored as artifact {ref.artifact_id}]"
        return result.model_copy(
            update={"output": preview + note, "artifacts": [*result.artifacts, ref]}
        )
