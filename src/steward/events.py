"""
Outbound notifications for Steward.

Everything the host application observes during execution (step progress,
streamed text, tool calls, approvals, warnings, pauses) is published as a
Notification on the session's EventBus.

Design Principles:
    - Fire-and-forget: emit() never blocks and never raises
    - Every notification carries the sessionId/taskId/stepId chain
    - A failing subscriber is logged and skipped; it cannot break the loop
"""

import logging
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from steward.schema import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of outbound notification."""

    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_ENDED = "session_ended"
    POLICY_EXPIRED = "policy_expired"

    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"

    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_LIMIT_WARNING = "step_limit_warning"
    TEXT_DELTA = "text_delta"

    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"

    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"


class Notification(BaseModel):
    """One outbound notification."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: str | None = None
    task_id: str | None = None
    step_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[Notification], None]


class EventBus:
    """
    Synchronous publish/subscribe hub for notifications.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(lambda n: print(n.event_type))
        bus.emit(EventType.STEP_STARTED, task_id="task_1", step_id="step_1")
        unsubscribe()

    Attributes:
        session_id: Stamped on every notification; set by the session controller
    """

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that removes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(
        self,
        event_type: EventType,
        task_id: str | None = None,
        step_id: str | None = None,
        **payload: Any,
    ) -> Notification:
        """Publish a notification to every subscriber."""
        notification = Notification(
            event_type=event_type,
            session_id=self.session_id,
            task_id=task_id,
            step_id=step_id,
            payload=payload,
        )
        for subscriber in list(self._subscribers):
            try:
                subscriber(notification)
            except Exception:
                logger.warning(
                    "Subscriber %r failed on %s", subscriber, event_type.value, exc_info=True
                )
        return notification


class EventRecorder:
    """Subscriber that keeps every notification; handy for tests and reports."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def __call__(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of_type(self, event_type: EventType) -> list[Notification]:
        return [n for n in self.notifications if n.event_type == event_type]

    def types(self) -> list[EventType]:
        return [n.event_type for n in self.notifications]
