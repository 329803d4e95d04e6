"""
The Session value.

Exactly one Session exists per running engine. It is owned by the
SessionController as a single attribute (never a registry keyed by id), and
lent to the step loop while a task runs.
"""

from dataclasses import dataclass, field

from steward.schema import (
    Checkpoint,
    PolicySnapshot,
    SessionState,
    TaskSnapshot,
)
from steward.thread.manager import ThreadManager


@dataclass
class Session:
    """
    One governed working period.

    Attributes:
        session_id: Identifier issued by the session backend
        workspace_id: Workspace the session operates on
        policy: Current policy snapshot (replaced on resume)
        thread: The conversation thread and token counters
        feature_flags: Flags issued with the handshake
        state: Session lifecycle state
        task: The task currently running or parked (None when idle)
        last_task: The most recently finished task
    """

    session_id: str
    workspace_id: str
    policy: PolicySnapshot
    thread: ThreadManager
    feature_flags: dict[str, bool] = field(default_factory=dict)
    state: SessionState = SessionState.CREATED
    task: TaskSnapshot | None = None
    last_task: TaskSnapshot | None = None

    @property
    def active_task(self) -> TaskSnapshot | None:
        """The task that has not yet reached a terminal state, if any."""
        if self.task is not None and not self.task.state.is_terminal:
            return self.task
        return None

    def feature(self, name: str, default: bool = False) -> bool:
        return self.feature_flags.get(name, default)

    def checkpoint(self, state: SessionState | None = None) -> Checkpoint:
        """Snapshot the session for crash recovery."""
        task = self.task
        return Checkpoint(
            session_id=self.session_id,
            workspace_id=self.workspace_id,
            session_state=state or self.state,
            policy_version=self.policy.version,
            task=task.model_copy() if task is not None else None,
            step_cursor=task.step_count if task is not None else 0,
            messages=self.thread.messages,
            thread_tokens=self.thread.thread_tokens,
            session_usage=self.thread.session_usage,
        )
