"""
Session lifecycle for Steward.

The Session value and the two-level state machine live here. The
controller that drives them is in steward.session.controller.
"""

from steward.session.session import Session
from steward.session.states import (
    SESSION_TRANSITIONS,
    TASK_TRANSITIONS,
    Effect,
    SessionEvent,
    TaskEvent,
    Transition,
    session_transition,
    task_transition,
)

__all__ = [
    "SESSION_TRANSITIONS",
    "TASK_TRANSITIONS",
    "Effect",
    "Session",
    "SessionEvent",
    "TaskEvent",
    "Transition",
    "session_transition",
    "task_transition",
]
