"""Conversation thread and token accounting for Steward."""

from steward.thread.manager import (
    TRUNCATION_MARKER_PREFIX,
    ThreadManager,
    estimate_message_tokens,
    estimate_tokens,
    estimate_tool_tokens,
    is_truncation_marker,
)

__all__ = [
    "TRUNCATION_MARKER_PREFIX",
    "ThreadManager",
    "estimate_message_tokens",
    "estimate_tokens",
    "estimate_tool_tokens",
    "is_truncation_marker",
]
