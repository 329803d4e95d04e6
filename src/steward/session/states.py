"""
Two-level state machine for Steward.

Session and task lifecycles are explicit enumerations driven by typed
transition tables. Each transition is a pure function from (state, event)
to (next state, side effects); the controller and step loop perform the
effects. An event with no entry for the current state is an error, never
a silent no-op.

Session:
    CREATED -> RUNNING <-> PAUSED -> {COMPLETED, FAILED, CANCELLED}

Task:
    IDLE -> RUNNING -> WAITING_FOR_MODEL -> PROCESSING_RESPONSE
         -> CHECKING_POLICY -> {WAITING_FOR_APPROVAL -> EXECUTING_TOOLS, EXECUTING_TOOLS}
         -> RUNNING -> ... -> {COMPLETED, FAILED, CANCELLED} -> IDLE
"""

import logging
from enum import Enum
from typing import NamedTuple

from steward.errors import InvalidTransitionError
from steward.schema import SessionState, TaskState

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    STARTED = "started"
    START_FAILED = "start_failed"
    RECOVERED = "recovered"
    INFRA_FAILURE = "infra_failure"
    POLICY_EXPIRED = "policy_expired"
    RESUMED = "resumed"
    SHUTDOWN = "shutdown"
    SHUTDOWN_CANCELLING = "shutdown_cancelling"
    FATAL = "fatal"


class TaskEvent(str, Enum):
    START = "start"
    CALL_MODEL = "call_model"
    RESPONSE_RECEIVED = "response_received"
    CONTINUE = "continue"
    TOOL_CALLS = "tool_calls"
    APPROVAL_NEEDED = "approval_needed"
    AUTHORIZED = "authorized"
    APPROVALS_RESOLVED = "approvals_resolved"
    TOOLS_FINISHED = "tools_finished"
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"
    SUSPEND = "suspend"
    RESET = "reset"


class Effect(str, Enum):
    """Side effects a transition asks its owner to perform."""

    EMIT_SESSION_STARTED = "emit_session_started"
    EMIT_SESSION_PAUSED = "emit_session_paused"
    EMIT_SESSION_RESUMED = "emit_session_resumed"
    EMIT_POLICY_EXPIRED = "emit_policy_expired"
    EMIT_SESSION_ENDED = "emit_session_ended"
    CANCEL_TASK = "cancel_task"
    FLUSH_HISTORY = "flush_history"
    DELETE_CHECKPOINT = "delete_checkpoint"
    WRITE_CHECKPOINT = "write_checkpoint"

    EMIT_TASK_STARTED = "emit_task_started"
    EMIT_STEP_STARTED = "emit_step_started"
    EMIT_STEP_COMPLETED = "emit_step_completed"
    EMIT_TASK_COMPLETED = "emit_task_completed"
    EMIT_TASK_FAILED = "emit_task_failed"
    EMIT_TASK_CANCELLED = "emit_task_cancelled"
    UPLOAD_HISTORY = "upload_history"


class Transition(NamedTuple):
    state: Enum
    effects: tuple[Effect, ...]


S = SessionState
SE = SessionEvent

SESSION_TRANSITIONS: dict[tuple[SessionState, SessionEvent], Transition] = {
    (S.CREATED, SE.STARTED): Transition(S.RUNNING, (Effect.EMIT_SESSION_STARTED,)),
    (S.CREATED, SE.RECOVERED): Transition(S.RUNNING, (Effect.EMIT_SESSION_RESUMED,)),
    (S.CREATED, SE.START_FAILED): Transition(S.FAILED, ()),
    (S.CREATED, SE.SHUTDOWN): Transition(S.COMPLETED, (Effect.EMIT_SESSION_ENDED,)),
    (S.RUNNING, SE.INFRA_FAILURE): Transition(
        S.PAUSED, (Effect.WRITE_CHECKPOINT, Effect.EMIT_SESSION_PAUSED)
    ),
    (S.RUNNING, SE.POLICY_EXPIRED): Transition(
        S.PAUSED, (Effect.WRITE_CHECKPOINT, Effect.EMIT_POLICY_EXPIRED, Effect.EMIT_SESSION_PAUSED)
    ),
    (S.RUNNING, SE.SHUTDOWN): Transition(
        S.COMPLETED, (Effect.FLUSH_HISTORY, Effect.DELETE_CHECKPOINT, Effect.EMIT_SESSION_ENDED)
    ),
    (S.RUNNING, SE.SHUTDOWN_CANCELLING): Transition(
        S.CANCELLED,
        (Effect.CANCEL_TASK, Effect.FLUSH_HISTORY, Effect.DELETE_CHECKPOINT, Effect.EMIT_SESSION_ENDED),
    ),
    (S.RUNNING, SE.FATAL): Transition(S.FAILED, (Effect.FLUSH_HISTORY, Effect.EMIT_SESSION_ENDED)),
    (S.PAUSED, SE.RESUMED): Transition(S.RUNNING, (Effect.EMIT_SESSION_RESUMED,)),
    (S.PAUSED, SE.SHUTDOWN): Transition(
        S.CANCELLED,
        (Effect.CANCEL_TASK, Effect.FLUSH_HISTORY, Effect.DELETE_CHECKPOINT, Effect.EMIT_SESSION_ENDED),
    ),
    (S.PAUSED, SE.FATAL): Transition(S.FAILED, (Effect.FLUSH_HISTORY, Effect.EMIT_SESSION_ENDED)),
}

T = TaskState
TE = TaskEvent

TASK_TRANSITIONS: dict[tuple[TaskState, TaskEvent], Transition] = {
    (T.IDLE, TE.START): Transition(T.RUNNING, (Effect.EMIT_TASK_STARTED,)),
    (T.RUNNING, TE.CALL_MODEL): Transition(T.WAITING_FOR_MODEL, (Effect.EMIT_STEP_STARTED,)),
    (T.WAITING_FOR_MODEL, TE.RESPONSE_RECEIVED): Transition(T.PROCESSING_RESPONSE, ()),
    (T.PROCESSING_RESPONSE, TE.CONTINUE): Transition(T.RUNNING, ()),
    (T.PROCESSING_RESPONSE, TE.TOOL_CALLS): Transition(T.CHECKING_POLICY, ()),
    (T.CHECKING_POLICY, TE.APPROVAL_NEEDED): Transition(T.WAITING_FOR_APPROVAL, ()),
    (T.CHECKING_POLICY, TE.AUTHORIZED): Transition(T.EXECUTING_TOOLS, ()),
    (T.WAITING_FOR_APPROVAL, TE.APPROVALS_RESOLVED): Transition(T.EXECUTING_TOOLS, ()),
    (T.EXECUTING_TOOLS, TE.TOOLS_FINISHED): Transition(
        T.RUNNING, (Effect.WRITE_CHECKPOINT, Effect.EMIT_STEP_COMPLETED)
    ),
    (T.FAILED, TE.RESET): Transition(T.IDLE, ()),
    (T.COMPLETED, TE.RESET): Transition(T.IDLE, ()),
    (T.CANCELLED, TE.RESET): Transition(T.IDLE, ()),
}

# Completion happens from a processed response; failure and cancellation
# from any active state. Suspension (session pause) parks the task in RUNNING
# so a resume continues the loop from the top.
_ACTIVE = (
    T.RUNNING,
    T.WAITING_FOR_MODEL,
    T.PROCESSING_RESPONSE,
    T.CHECKING_POLICY,
    T.WAITING_FOR_APPROVAL,
    T.EXECUTING_TOOLS,
)
TASK_TRANSITIONS[(T.PROCESSING_RESPONSE, TE.COMPLETE)] = Transition(
    T.COMPLETED, (Effect.WRITE_CHECKPOINT, Effect.UPLOAD_HISTORY, Effect.EMIT_TASK_COMPLETED)
)
for _state in _ACTIVE:
    TASK_TRANSITIONS[(_state, TE.FAIL)] = Transition(
        T.FAILED, (Effect.WRITE_CHECKPOINT, Effect.UPLOAD_HISTORY, Effect.EMIT_TASK_FAILED)
    )
    TASK_TRANSITIONS[(_state, TE.CANCEL)] = Transition(
        T.CANCELLED, (Effect.WRITE_CHECKPOINT, Effect.UPLOAD_HISTORY, Effect.EMIT_TASK_CANCELLED)
    )
    TASK_TRANSITIONS[(_state, TE.SUSPEND)] = Transition(T.RUNNING, ())


def session_transition(state: SessionState, event: SessionEvent) -> Transition:
    """
    Look up the session transition for an event.

    Raises:
        InvalidTransitionError: If the event is not valid in this state
    """
    transition = SESSION_TRANSITIONS.get((state, event))
    if transition is None:
        raise InvalidTransitionError(machine="session", state=state.value, event=event.value)
    logger.debug("session: %s --%s--> %s", state.value, event.value, transition.state.value)
    return transition


def task_transition(state: TaskState, event: TaskEvent) -> Transition:
    """
    Look up the task transition for an event.

    Raises:
        InvalidTransitionError: If the event is not valid in this state
    """
    transition = TASK_TRANSITIONS.get((state, event))
    if transition is None:
        raise InvalidTransitionError(machine="task", state=state.value, event=event.value)
    logger.debug("task: %s --%s--> %s", state.value, event.value, transition.state.value)
    return transition
