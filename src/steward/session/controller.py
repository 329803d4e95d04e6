"""
Session Controller for Steward.

The controller is the command surface the host application talks to. It
owns the one live Session, validates handshakes, spawns the step loop for
each task and drives the session-level state machine.

Commands:
    start(handshake)            CREATED -> RUNNING, or FAILED on a bad snapshot
    start_task(prompt, options) Accept a task while RUNNING and idle
    cancel_task()               Cooperative cancellation of the running task
    resume(checkpoint)          PAUSED -> RUNNING, or recovery after a crash
    shutdown()                  Finish the in-flight step, flush history, end
    status(), pending_changes(), deliver_approval(), wait_for_task()

Design Principles:
    - One session per controller, held as a single attribute
    - Validation failures refuse to proceed; nothing is partially started
    - A pause is recoverable; only a resume with a refreshed, valid
      snapshot returns the session to RUNNING
"""

import asyncio
import logging
from typing import Any

from steward.agent.loop import LoopOutcome, PauseReason, StepLoop
from steward.approval.gate import ApprovalGate
from steward.boundaries import HistoryStore, HistoryUploader, SessionBackend, ToolExecutor
from steward.checkpoint.store import CheckpointStore
from steward.config import EngineConfig
from steward.errors import (
    BackendUnreachableError,
    CheckpointWriteError,
    InvalidPolicyError,
    PolicyExpiredError,
    SessionStateError,
    TaskRejectedError,
)
from steward.events import EventBus, EventType
from steward.model.base import ModelClient
from steward.policy.enforcer import CapabilityEnforcer
from steward.schema import (
    SUPPORTED_POLICY_SCHEMA_VERSIONS,
    ApprovalDecision,
    ApprovalRequest,
    Checkpoint,
    HandshakeResult,
    Message,
    PolicySnapshot,
    Role,
    SessionState,
    SessionStatus,
    TaskOptions,
    TaskSnapshot,
    TaskState,
    generate_id,
)
from steward.session.session import Session
from steward.session.states import Effect, SessionEvent, TaskEvent, session_transition, task_transition
from steward.thread.manager import ThreadManager
from steward.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

# Feature flag switching tool execution between concurrent and sequential
PARALLEL_TOOLS_FLAG = "parallel_tools"


def validate_handshake(
    handshake: HandshakeResult,
    model: str,
    expected_session_id: str | None = None,
    expected_workspace_id: str | None = None,
) -> None:
    """
    Validate a handshake before a session may run under it.

    Raises:
        InvalidPolicyError: Unsupported schema, identity mismatch or model
            not on the allow-list
        PolicyExpiredError: The snapshot is already expired
    """
    policy = handshake.policy
    if policy.schema_version not in SUPPORTED_POLICY_SCHEMA_VERSIONS:
        raise InvalidPolicyError(reason=f"unsupported policy schema version {policy.schema_version}")

    if policy.session_id != handshake.session_id or policy.workspace_id != handshake.workspace_id:
        raise InvalidPolicyError(
            reason=(
                f"snapshot issued for {policy.session_id}/{policy.workspace_id}, "
                f"handshake is {handshake.session_id}/{handshake.workspace_id}"
            )
        )

    if expected_session_id is not None and handshake.session_id != expected_session_id:
        raise InvalidPolicyError(
            reason=f"backend returned session {handshake.session_id}, expected {expected_session_id}"
        )
    if expected_workspace_id is not None and handshake.workspace_id != expected_workspace_id:
        raise InvalidPolicyError(
            reason=f"backend returned workspace {handshake.workspace_id}, expected {expected_workspace_id}"
        )

    if policy.is_expired():
        raise PolicyExpiredError(expires_at=policy.expires_at.isoformat())

    if policy.models and model not in policy.models:
        raise InvalidPolicyError(reason=f"model {model!r} is not in the policy allow-list")


class SessionController:
    """
    Owns the session and exposes the host-facing commands.

    Usage:
        controller = SessionController(model, executor, backend=backend)
        await controller.start(handshake)
        await controller.start_task("fix the failing test")
        task = await controller.wait_for_task()
        await controller.shutdown()

    Attributes:
        model: Model client shared by every task
        executor: Tool-execution collaborator
        backend: Session backend used to re-validate on resume
        history_store: History/artifact store (optional)
        config: Engine configuration
        events: Outbound notification bus
        gate: Approval gate shared by every task
    """

    def __init__(
        self,
        model: ModelClient,
        executor: ToolExecutor,
        backend: SessionBackend | None = None,
        history_store: HistoryStore | None = None,
        config: EngineConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.model = model
        self.executor = executor
        self.backend = backend
        self.history_store = history_store
        self.config = config or EngineConfig()
        self.events = events or EventBus()
        self.gate = ApprovalGate(self.events)
        self.uploader = (
            HistoryUploader(history_store, retries=self.config.history_upload_retries)
            if history_store is not None
            else None
        )

        self._session: Session | None = None
        self._enforcer: CapabilityEnforcer | None = None
        self._checkpoints: CheckpointStore | None = None
        self._cancel = asyncio.Event()
        self._runner: asyncio.Task[None] | None = None

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def checkpoints(self) -> CheckpointStore | None:
        return self._checkpoints

    # =========================================================================
    # Commands
    # =========================================================================

    async def start(self, handshake: HandshakeResult) -> SessionStatus:
        """
        Start the session from a handshake result.

        Raises:
            SessionStateError: If a session is already live
            InvalidPolicyError: If the snapshot fails validation
            PolicyExpiredError: If the snapshot has already expired
        """
        if self._session is not None and not self._session.state.is_terminal:
            raise SessionStateError(state=self._session.state.value, command="start")

        self._session = self._new_session(handshake)
        self.events.session_id = handshake.session_id

        try:
            validate_handshake(handshake, self.config.model.model)
        except (InvalidPolicyError, PolicyExpiredError) as e:
            logger.error("Session %s rejected: %s", handshake.session_id, e.message)
            await self._fire(SessionEvent.START_FAILED, error=e.to_dict())
            raise

        self._install_policy(handshake.policy)
        self._checkpoints = CheckpointStore.for_session(self.config.checkpoint_dir, handshake.session_id)
        await self._fire(
            SessionEvent.STARTED,
            workspace_id=handshake.workspace_id,
            policy_version=handshake.policy.version,
        )
        logger.info("Session %s started", handshake.session_id)
        return self.status()

    async def start_task(self, prompt: str, options: TaskOptions | None = None) -> TaskSnapshot:
        """
        Accept a task and start running it in the background.

        Raises:
            TaskRejectedError: Session not running, a task already active,
                or an empty prompt
        """
        session = self._require_session("start_task")
        if session.state != SessionState.RUNNING:
            raise TaskRejectedError(
                state=session.state.value,
                command="start_task",
                reason=f"session is {session.state.value}",
            )
        active = session.active_task
        if active is not None:
            raise TaskRejectedError(
                state=session.state.value,
                command="start_task",
                reason=f"task {active.task_id} is still {active.state.value}",
            )
        if not prompt.strip():
            raise TaskRejectedError(state=session.state.value, command="start_task", reason="prompt is empty")

        task = TaskSnapshot(task_id=generate_id("task"), prompt=prompt, options=options or TaskOptions())
        if not session.thread.has_system_message() and self.config.system_prompt:
            session.thread.append(Message(role=Role.SYSTEM, content=self.config.system_prompt))
        session.thread.append(Message(role=Role.USER, content=prompt, task_id=task.task_id))
        session.task = task

        self._cancel.clear()
        self._spawn(task)
        logger.info("Task %s accepted (max_steps=%d)", task.task_id, task.options.max_steps)
        return task.model_copy()

    def cancel_task(self) -> bool:
        """
        Request cancellation of the active task.

        Pending approvals are denied at once; tools already executing run to
        completion before the loop acts on the request.

        Returns:
            True if a task was active
        """
        session = self._require_session("cancel_task")
        task = session.active_task
        if task is None:
            return False
        self._cancel.set()
        denied = self.gate.deny_all("task cancelled")
        logger.info("Cancellation requested for %s (%d approvals denied)", task.task_id, denied)
        return True

    async def resume(self, checkpoint: Checkpoint | None = None) -> SessionStatus:
        """
        Resume a paused session, or recover a crashed one from its checkpoint.

        A paused session re-validates with the backend and continues any
        parked task. With no live session, the checkpoint is required: the
        session and thread are rebuilt from it and an unfinished task
        continues from the last completed step.

        Raises:
            SessionStateError: Nothing to resume
            BackendUnreachableError: The backend could not be reached; the
                session stays paused
            InvalidPolicyError / PolicyExpiredError: The refreshed snapshot
                is not valid; the session stays paused
        """
        if self._session is None or (self._session.state.is_terminal and checkpoint is not None):
            if checkpoint is None:
                raise SessionStateError(state="absent", command="resume")
            return await self._recover(checkpoint)

        session = self._session
        if session.state != SessionState.PAUSED:
            raise SessionStateError(state=session.state.value, command="resume")

        cursor = session.task.step_count if session.task is not None else 0
        handshake = await self._revalidate(session.session_id, session.workspace_id, cursor)
        self._install_policy(handshake.policy)
        session.feature_flags = dict(handshake.feature_flags)
        await self._fire(SessionEvent.RESUMED, policy_version=handshake.policy.version)

        task = session.active_task
        if task is not None:
            self._spawn(task)
        return self.status()

    async def shutdown(self) -> SessionStatus:
        """
        End the session.

        Sets the cancellation flag, denies pending approvals, waits for the
        in-flight step to reach a safe boundary, flushes history and deletes
        the checkpoint.
        """
        session = self._require_session("shutdown")
        if session.state.is_terminal:
            return self.status()

        interrupted = session.active_task is not None
        self._cancel.set()
        self.gate.deny_all("session shutting down")
        if self._runner is not None and not self._runner.done():
            await asyncio.gather(self._runner, return_exceptions=True)

        if session.state == SessionState.RUNNING and interrupted and self._last_task_cancelled():
            event = SessionEvent.SHUTDOWN_CANCELLING
        else:
            event = SessionEvent.SHUTDOWN
        await self._fire(event)
        logger.info("Session %s ended: %s", session.session_id, session.state.value)
        return self.status()

    def status(self) -> SessionStatus:
        """Current session and task status."""
        session = self._session
        if session is None:
            return SessionStatus(session_id=None, session_state=SessionState.CREATED)

        task = session.task
        last = session.last_task
        return SessionStatus(
            session_id=session.session_id,
            session_state=session.state,
            task_id=task.task_id if task else None,
            task_state=task.state if task else TaskState.IDLE,
            step_count=task.step_count if task else 0,
            max_steps=task.options.max_steps if task else None,
            failure_reason=task.failure_reason if task else None,
            message_count=len(session.thread),
            thread_tokens=session.thread.thread_tokens,
            session_usage=session.thread.session_usage,
            pending_approvals=len(self.gate.pending()),
            policy_expires_at=session.policy.expires_at,
            last_task_id=last.task_id if last else None,
            last_task_state=last.state if last else None,
        )

    def pending_changes(self) -> list[ApprovalRequest]:
        """Approval requests awaiting a decision, with their structured details."""
        return self.gate.pending()

    def deliver_approval(
        self,
        request_id: str,
        approved: bool,
        reason: str | None = None,
    ) -> ApprovalDecision:
        """
        Deliver a human decision.

        Raises:
            UnknownApprovalRequestError: If the request is not pending
        """
        self._require_session("deliver_approval")
        return self.gate.resolve(request_id, approved=approved, reason=reason)

    async def wait_for_task(self) -> TaskSnapshot | None:
        """
        Wait until the running task finishes or parks.

        Returns:
            The parked task if the session paused, else the last finished task
        """
        if self._runner is not None:
            await self._runner
        session = self._session
        if session is None:
            return None
        task = session.active_task or session.last_task
        return task.model_copy() if task is not None else None

    async def drain_uploads(self) -> None:
        """Wait for background history uploads to finish."""
        if self.uploader is not None:
            await self.uploader.drain()

    # =========================================================================
    # Task runner
    # =========================================================================

    def _spawn(self, task: TaskSnapshot) -> None:
        self._runner = asyncio.get_running_loop().create_task(self._run_task(task))

    def _step_loop(self, session: Session) -> StepLoop:
        enforcer = self._enforcer
        if enforcer is None:
            raise SessionStateError(state=session.state.value, command="run_task")
        dispatcher = ToolDispatcher(
            self.executor,
            enforcer,
            self.gate,
            config=self.config,
            events=self.events,
            history_store=self.history_store,
            session_id=session.session_id,
            parallel=session.feature(PARALLEL_TOOLS_FLAG, True),
            cancel_event=self._cancel,
        )
        return StepLoop(
            session,
            self.model,
            self.executor,
            dispatcher,
            enforcer,
            self._cancel,
            config=self.config,
            events=self.events,
            checkpoints=self._checkpoints,
            uploader=self.uploader,
        )

    async def _run_task(self, task: TaskSnapshot) -> None:
        session = self._session
        if session is None:
            return
        try:
            outcome = await self._step_loop(session).run(task)
        except Exception as e:
            logger.exception("Task %s crashed", task.task_id)
            # The state machine itself may be what failed, so no transition here
            task.state = TaskState.FAILED
            task.failure_reason = f"internal_error: {e}"
            session.last_task = task.model_copy()
            session.task = None
            self.events.emit(EventType.TASK_FAILED, task_id=task.task_id, reason=task.failure_reason)
            await self._fire(SessionEvent.FATAL, reason=task.failure_reason)
            return

        if outcome.paused is not None:
            await self._pause(outcome)
            return

        session.last_task = task.model_copy()
        task.state = task_transition(task.state, TaskEvent.RESET).state  # type: ignore[assignment]
        session.task = None

    async def _pause(self, outcome: LoopOutcome) -> None:
        reason = outcome.paused
        event = SessionEvent.POLICY_EXPIRED if reason == PauseReason.POLICY_EXPIRED else SessionEvent.INFRA_FAILURE
        payload: dict[str, Any] = {"reason": reason.value if reason else None, "task_id": outcome.task.task_id}
        if outcome.error is not None:
            payload["error"] = outcome.error.to_dict()
        if reason == PauseReason.POLICY_EXPIRED and self._session is not None:
            payload["expires_at"] = self._session.policy.expires_at.isoformat()
        await self._fire(event, **payload)

    def _last_task_cancelled(self) -> bool:
        session = self._session
        return (
            session is not None
            and session.last_task is not None
            and session.last_task.state == TaskState.CANCELLED
        )

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def _new_session(self, handshake: HandshakeResult) -> Session:
        limits = handshake.policy.limits
        thread = ThreadManager(
            limits.session_token_budget,
            recency_window=self.config.recency_window,
            system_share=self.config.system_share,
        )
        return Session(
            session_id=handshake.session_id,
            workspace_id=handshake.workspace_id,
            policy=handshake.policy,
            thread=thread,
            feature_flags=dict(handshake.feature_flags),
        )

    def _install_policy(self, policy: PolicySnapshot) -> None:
        if self._session is not None:
            self._session.policy = policy
        self._enforcer = CapabilityEnforcer(policy, case_sensitive=self.config.path_case_sensitive)

    async def _revalidate(self, session_id: str, workspace_id: str, step_cursor: int) -> HandshakeResult:
        if self.backend is None:
            raise BackendUnreachableError(operation="resume", underlying_error="no session backend configured")
        try:
            handshake = await self.backend.resume(session_id, step_cursor)
        except OSError as e:
            raise BackendUnreachableError(operation="resume", underlying_error=str(e)) from e
        validate_handshake(
            handshake,
            self.config.model.model,
            expected_session_id=session_id,
            expected_workspace_id=workspace_id,
        )
        return handshake

    async def _recover(self, checkpoint: Checkpoint) -> SessionStatus:
        handshake = await self._revalidate(checkpoint.session_id, checkpoint.workspace_id, checkpoint.step_cursor)
        if handshake.policy.version != checkpoint.policy_version:
            logger.info(
                "Policy refreshed on recovery: %s -> %s", checkpoint.policy_version, handshake.policy.version
            )

        session = self._new_session(handshake)
        session.thread.restore(checkpoint.messages, checkpoint.session_usage)
        self._session = session
        self.events.session_id = session.session_id
        self._install_policy(handshake.policy)
        self._checkpoints = CheckpointStore.for_session(self.config.checkpoint_dir, session.session_id)

        task = checkpoint.task
        if task is not None and not task.state.is_terminal:
            # Checkpoints are taken at step boundaries
            session.task = task.model_copy(update={"state": TaskState.RUNNING})
        elif task is not None:
            session.last_task = task.model_copy()

        await self._fire(SessionEvent.RECOVERED, step_cursor=checkpoint.step_cursor)
        logger.info(
            "Session %s recovered at step %d (%d messages)",
            session.session_id,
            checkpoint.step_cursor,
            len(checkpoint.messages),
        )

        if session.task is not None:
            self._cancel.clear()
            self._spawn(session.task)
        return self.status()

    def _require_session(self, command: str) -> Session:
        if self._session is None:
            raise SessionStateError(state="absent", command=command)
        return self._session

    # =========================================================================
    # State machine
    # =========================================================================

    async def _fire(self, event: SessionEvent, **payload: Any) -> None:
        """Apply a session transition and perform its effects in order."""
        session = self._require_session(event.value)
        transition = session_transition(session.state, event)
        session.state = transition.state  # type: ignore[assignment]
        for effect in transition.effects:
            await self._perform(effect, session, payload)

    async def _perform(self, effect: Effect, session: Session, payload: dict[str, Any]) -> None:
        if effect == Effect.WRITE_CHECKPOINT:
            if self._checkpoints is not None:
                try:
                    self._checkpoints.write(session.checkpoint())
                except CheckpointWriteError as e:
                    logger.warning("Checkpoint write on pause failed: %s", e.message)
        elif effect == Effect.CANCEL_TASK:
            self._cancel_parked_task(session)
        elif effect == Effect.FLUSH_HISTORY:
            if self.uploader is not None:
                await self.uploader.drain()
                await self.uploader.push(session.session_id, session.thread.messages)
        elif effect == Effect.DELETE_CHECKPOINT:
            if self._checkpoints is not None:
                self._checkpoints.delete()
        elif effect == Effect.EMIT_SESSION_STARTED:
            self.events.emit(EventType.SESSION_STARTED, **payload)
        elif effect == Effect.EMIT_SESSION_PAUSED:
            self.events.emit(EventType.SESSION_PAUSED, **payload)
        elif effect == Effect.EMIT_POLICY_EXPIRED:
            self.events.emit(EventType.POLICY_EXPIRED, **payload)
        elif effect == Effect.EMIT_SESSION_RESUMED:
            self.events.emit(EventType.SESSION_RESUMED, **payload)
        elif effect == Effect.EMIT_SESSION_ENDED:
            self.events.emit(EventType.SESSION_ENDED, state=session.state.value, **payload)

    def _cancel_parked_task(self, session: Session) -> None:
        """Cancel a task suspended by a pause; a running task cancels itself."""
        task = session.active_task
        if task is None:
            return
        task.state = task_transition(task.state, TaskEvent.CANCEL).state  # type: ignore[assignment]
        task.failure_reason = "cancelled"
        session.last_task = task.model_copy()
        session.task = None
        self.events.emit(EventType.TASK_CANCELLED, task_id=task.task_id, reason="session shutdown")
