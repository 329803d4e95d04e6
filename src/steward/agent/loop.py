"""
Step loop for Steward.

This module drives one task to completion. Each iteration is one step:
exactly one model call plus zero or more tool calls.

    1. Stop if cancellation was requested
    2. Build the request from the (truncated) thread and the visible tools
    3. Pre-check LLM.Call and policy expiry; check the token budget
    4. Stream the model turn; append it and reconcile token usage
    5. No tool calls and a completion stop reason: the task is complete
    6. Cut off by the output limit with no tool calls: continue without
       counting a step
    7. Otherwise dispatch the tool calls, append one result per call in call
       order, write a checkpoint and count the step
    8. Warn once the step count reaches the warning ratio of max_steps
    9. Fail with max_steps_exceeded when the count reaches max_steps

Design Principles:
    - Single writer: only the loop mutates the thread, counters and task
    - Cooperative cancellation: the flag is checked at the top of each
      iteration and before each model call; a model stream in flight is
      abandoned without touching the thread; tools in flight always finish
    - Recoverable failures become thread messages; only non-recoverable
      ones end the task
    - Policy expiry and an unreachable endpoint suspend the task and pause
      the session instead of failing
"""

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from steward.boundaries import HistoryUploader, ToolExecutor
from steward.checkpoint.store import CheckpointStore
from steward.config import EngineConfig
from steward.errors import (
    BadModelResponseError,
    BudgetExceededError,
    CheckpointWriteError,
    GuardrailRejectedError,
    ModelError,
    ModelUnreachableError,
    RateLimitedError,
    StewardError,
    TransientModelError,
)
from steward.events import EventBus, EventType
from steward.model.base import ModelClient, ModelRequest
from steward.policy.enforcer import CapabilityEnforcer
from steward.schema import (
    Message,
    ModelResponse,
    Role,
    StopReason,
    TaskSnapshot,
    TaskState,
)
from steward.session.session import Session
from steward.session.states import Effect, TaskEvent, task_transition
from steward.thread.manager import estimate_tool_tokens
from steward.tools.dispatcher import POLICY_EXPIRED_RULE, ToolDispatcher, result_message

logger = logging.getLogger(__name__)

# Failure reasons reported on the task
REASON_MAX_STEPS = "max_steps_exceeded"
REASON_OUTPUT_LIMIT = "output_limit_exceeded"
REASON_BUDGET = "budget_exceeded"
REASON_GUARDRAIL = "guardrail_rejected"
REASON_RATE_LIMITED = "rate_limited"
REASON_MODEL_UNAVAILABLE = "model_unavailable"
REASON_BAD_RESPONSE = "bad_model_response"
REASON_CAPABILITY = "capability_denied"
REASON_CANCELLED = "cancelled"


class PauseReason(str, Enum):
    """Why a task was suspended and its session paused."""

    POLICY_EXPIRED = "policy_expired"
    MODEL_UNREACHABLE = "model_unreachable"


@dataclass
class LoopOutcome:
    """
    How a run of the loop ended.

    Attributes:
        task: The task after the run (terminal, or RUNNING when paused)
        paused: Set when the session must pause; the task is resumable
        error: The error that ended or paused the task, if any
    """

    task: TaskSnapshot
    paused: PauseReason | None = None
    error: StewardError | None = None


class _StreamCancelled(Exception):
    """The model stream was abandoned because cancellation was requested."""


class StepLoop:
    """
    Runs one task step by step.

    Usage:
        loop = StepLoop(session, model, executor, dispatcher, enforcer, ...)
        outcome = await loop.run(task)

    Attributes:
        session: The session whose thread the loop mutates
        model: Model client
        executor: Tool-execution collaborator (source of tool definitions)
        dispatcher: Tool dispatcher for the current policy
        enforcer: Capability enforcer for the current policy
    """

    def __init__(
        self,
        session: Session,
        model: ModelClient,
        executor: ToolExecutor,
        dispatcher: ToolDispatcher,
        enforcer: CapabilityEnforcer,
        cancel_event: asyncio.Event,
        config: EngineConfig | None = None,
        events: EventBus | None = None,
        checkpoints: CheckpointStore | None = None,
        uploader: HistoryUploader | None = None,
    ) -> None:
        self.session = session
        self.model = model
        self.executor = executor
        self.dispatcher = dispatcher
        self.enforcer = enforcer
        self.cancel_event = cancel_event
        self.config = config or EngineConfig()
        self.events = events or EventBus(session.session_id)
        self.checkpoints = checkpoints
        self.uploader = uploader
        self._step_id: str | None = None

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self, task: TaskSnapshot) -> LoopOutcome:
        """
        Drive the task until it completes, fails, is cancelled or pauses.

        The task may be fresh (IDLE) or resumed (RUNNING, from a pause or a
        checkpoint); a resumed task continues with its recorded step count.
        """
        if task.state == TaskState.IDLE:
            self._fire(task, TaskEvent.START, prompt=task.prompt)
        elif task.state != TaskState.RUNNING:
            logger.warning("Task %s resumed in state %s", task.task_id, task.state.value)
        else:
            logger.info("Resuming task %s at step %d", task.task_id, task.step_count)

        options = task.options
        limits = self.session.policy.limits
        warn_at = max(1, math.ceil(options.max_steps * self.config.step_warning_ratio))

        while True:
            # 1. Cancellation
            if self.cancel_event.is_set():
                return self._cancel(task)

            if task.step_count >= options.max_steps:
                return self._fail(task, REASON_MAX_STEPS)

            self._step_id = f"step_{task.step_count + 1}"

            # 2. Request
            all_tools = self.executor.list_tools()
            visible = self.enforcer.visible_tools(all_tools, allow_network=options.allow_network)
            tool_tokens = estimate_tool_tokens(visible)
            context = self.session.thread.build_context(limits.max_input_tokens, tool_tokens)
            estimated_input = sum(m.token_count for m in context) + tool_tokens

            # 3. Pre-checks
            decision = self.enforcer.check_model_call()
            if decision.denied:
                if decision.rule == POLICY_EXPIRED_RULE:
                    return self._suspend(task, PauseReason.POLICY_EXPIRED)
                return self._fail(task, f"{REASON_CAPABILITY}: {decision.reason}")

            try:
                self.session.thread.check_budget(estimated_input + limits.max_output_tokens)
            except BudgetExceededError as e:
                return self._fail(task, REASON_BUDGET, error=e)

            if self.cancel_event.is_set():
                return self._cancel(task)

            # 4. Model call
            self._fire(task, TaskEvent.CALL_MODEL, continuation=task.continuations > 0)
            request = ModelRequest(
                model=self.config.model.model,
                messages=context,
                tools=visible,
                max_output_tokens=limits.max_output_tokens,
                task_id=task.task_id,
                step_id=self._step_id,
            )
            try:
                response = await self._call_model(request, task)
            except _StreamCancelled:
                return self._cancel(task)
            except ModelUnreachableError as e:
                logger.warning("Model endpoint unreachable: %s", e.message)
                return self._suspend(task, PauseReason.MODEL_UNREACHABLE, error=e)
            except GuardrailRejectedError as e:
                self.session.thread.append(
                    Message(
                        role=Role.ASSISTANT,
                        content=f"[guardrail] The request was rejected by the model's safety filter: {e.reason}",
                        task_id=task.task_id,
                        step_id=self._step_id,
                    )
                )
                return self._fail(task, REASON_GUARDRAIL, error=e)
            except ModelError as e:
                return self._fail(task, _model_failure_reason(e), error=e)

            self._fire(task, TaskEvent.RESPONSE_RECEIVED)
            assistant = self._append_response(response, task)
            self.session.thread.reconcile(response.usage, estimated_input, assistant)

            # 5. Completion
            if not response.tool_calls:
                if response.stop_reason == StopReason.MAX_TOKENS:
                    # 6. Output limit hit mid-answer: continue, same step
                    task.continuations += 1
                    if task.continuations > self.config.max_continuations:
                        return self._fail(task, REASON_OUTPUT_LIMIT)
                    logger.debug("Continuation %d of task %s", task.continuations, task.task_id)
                    self._fire(task, TaskEvent.CONTINUE)
                    continue
                self._fire(task, TaskEvent.COMPLETE, text=response.text)
                return LoopOutcome(task=task)

            # 7. Tools
            task.continuations = 0
            self._fire(task, TaskEvent.TOOL_CALLS)
            plan = self.dispatcher.authorize(
                list(assistant.tool_calls), all_tools, allow_network=options.allow_network
            )
            on_settled: Callable[[], None] | None = None
            if any(p.needs_approval for p in plan):
                self._fire(task, TaskEvent.APPROVAL_NEEDED)

                def approvals_resolved() -> None:
                    self._fire(task, TaskEvent.APPROVALS_RESOLVED)

                on_settled = approvals_resolved
            else:
                self._fire(task, TaskEvent.AUTHORIZED)

            outcome = await self.dispatcher.execute(plan, options.approval_mode, on_settled)
            for result in outcome.results:
                self.session.thread.append(result_message(result, task.task_id, self._step_id))

            task.step_count += 1
            self._fire(
                task,
                TaskEvent.TOOLS_FINISHED,
                step_count=task.step_count,
                statuses=[r.status.value for r in outcome.results],
            )

            # 8. Step-limit warning
            if task.step_count == warn_at:
                self.events.emit(
                    EventType.STEP_LIMIT_WARNING,
                    task_id=task.task_id,
                    step_id=self._step_id,
                    step_count=task.step_count,
                    max_steps=options.max_steps,
                )

            if outcome.policy_expired:
                return self._suspend(task, PauseReason.POLICY_EXPIRED)

            # 9. Step limit
            if task.step_count >= options.max_steps:
                return self._fail(task, REASON_MAX_STEPS)

    # =========================================================================
    # Model
    # =========================================================================

    async def _call_model(self, request: ModelRequest, task: TaskSnapshot) -> ModelResponse:
        """Stream one turn, abandoning it if cancellation is requested meanwhile."""
        step_id = self._step_id

        def forward(delta: str) -> None:
            self.events.emit(EventType.TEXT_DELTA, task_id=task.task_id, step_id=step_id, text=delta)

        stream = asyncio.ensure_future(self.model.stream(request, on_text_delta=forward))
        cancelled = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({stream, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if stream in done:
                return stream.result()
            logger.info("Cancellation requested mid-stream; discarding partial response")
            stream.cancel()
            await asyncio.gather(stream, return_exceptions=True)
            raise _StreamCancelled()
        finally:
            for future in (stream, cancelled):
                if not future.done():
                    future.cancel()

    def _append_response(self, response: ModelResponse, task: TaskSnapshot) -> Message:
        calls = [
            call.model_copy(update={"task_id": task.task_id, "step_id": self._step_id})
            for call in response.tool_calls
        ]
        return self.session.thread.append(
            Message(
                role=Role.ASSISTANT,
                content=response.text,
                task_id=task.task_id,
                step_id=self._step_id,
                tool_calls=calls,
            )
        )

    # =========================================================================
    # Endings
    # =========================================================================

    def _fail(self, task: TaskSnapshot, reason: str, error: StewardError | None = None) -> LoopOutcome:
        task.failure_reason = reason
        logger.info("Task %s failed: %s", task.task_id, reason)
        self._fire(task, TaskEvent.FAIL, reason=reason, error=error.to_dict() if error else None)
        return LoopOutcome(task=task, error=error)

    def _cancel(self, task: TaskSnapshot) -> LoopOutcome:
        task.failure_reason = REASON_CANCELLED
        logger.info("Task %s cancelled", task.task_id)
        self._fire(task, TaskEvent.CANCEL)
        return LoopOutcome(task=task)

    def _suspend(
        self,
        task: TaskSnapshot,
        reason: PauseReason,
        error: StewardError | None = None,
    ) -> LoopOutcome:
        logger.info("Task %s suspended: %s", task.task_id, reason.value)
        self._fire(task, TaskEvent.SUSPEND)
        return LoopOutcome(task=task, paused=reason, error=error)

    # =========================================================================
    # State machine
    # =========================================================================

    def _fire(self, task: TaskSnapshot, event: TaskEvent, **payload: object) -> None:
        """Apply a task transition and perform its effects."""
        transition = task_transition(task.state, event)
        task.state = transition.state  # type: ignore[assignment]
        for effect in transition.effects:
            self._perform(effect, task, payload)

    def _perform(self, effect: Effect, task: TaskSnapshot, payload: dict[str, object]) -> None:
        step_id = self._step_id
        if effect == Effect.WRITE_CHECKPOINT:
            self._write_checkpoint()
        elif effect == Effect.UPLOAD_HISTORY:
            if self.uploader is not None:
                self.uploader.submit(self.session.session_id, self.session.thread.messages)
        elif effect == Effect.EMIT_TASK_STARTED:
            self.events.emit(EventType.TASK_STARTED, task_id=task.task_id, **payload)
        elif effect == Effect.EMIT_STEP_STARTED:
            self.events.emit(EventType.STEP_STARTED, task_id=task.task_id, step_id=step_id, **payload)
        elif effect == Effect.EMIT_STEP_COMPLETED:
            self.events.emit(EventType.STEP_COMPLETED, task_id=task.task_id, step_id=step_id, **payload)
        elif effect == Effect.EMIT_TASK_COMPLETED:
            self.events.emit(
                EventType.TASK_COMPLETED, task_id=task.task_id, step_count=task.step_count, **payload
            )
        elif effect == Effect.EMIT_TASK_FAILED:
            self.events.emit(EventType.TASK_FAILED, task_id=task.task_id, **payload)
        elif effect == Effect.EMIT_TASK_CANCELLED:
            self.events.emit(EventType.TASK_CANCELLED, task_id=task.task_id, **payload)

    def _write_checkpoint(self) -> None:
        """Persist the session; a failed write is logged and retried next step."""
        if self.checkpoints is None:
            return
        try:
            self.checkpoints.write(self.session.checkpoint())
        except CheckpointWriteError as e:
            logger.warning("Checkpoint write failed, will retry after the next step: %s", e.message)


def _model_failure_reason(error: ModelError) -> str:
    if isinstance(error, RateLimitedError):
        return REASON_RATE_LIMITED
    if isinstance(error, BadModelResponseError):
        return REASON_BAD_RESPONSE
    if isinstance(error, TransientModelError):
        return REASON_MODEL_UNAVAILABLE
    return f"model_error: {error.message}"
