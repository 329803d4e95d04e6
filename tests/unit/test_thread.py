"""
Unit tests for the thread manager.

Tests cover:
- Token estimation
- Append-only thread and counters
- Budget checks and usage reconciliation
- Context truncation (system head, recency window including an empty one,
  single marker, tool pairing)
- Restore from persisted state
"""

import pytest

from steward.errors import BudgetExceededError
from steward.schema import Message, Role, TokenUsage, ToolCall
from steward.thread.manager import (
    ThreadManager,
    estimate_message_tokens,
    estimate_tokens,
    is_truncation_marker,
)


def user(text: str) -> Message:
    return Message(role=Role.USER, content=text)


def assistant(text: str) -> Message:
    return Message(role=Role.ASSISTANT, content=text)


# =============================================================================
# Estimation and counters
# =============================================================================


class TestEstimation:
    """Token estimates at roughly four characters per token."""

    def test_estimate_tokens(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_message_estimate_includes_tool_calls(self) -> None:
        plain = Message(role=Role.ASSISTANT, content="")
        with_call = Message(
            role=Role.ASSISTANT,
            tool_calls=[ToolCall(call_id="c1", tool_name="read_file", arguments={"path": "a.txt"})],
        )
        assert estimate_message_tokens(with_call) > estimate_message_tokens(plain)


class TestThreadCounters:
    """Append and the running counters."""

    def test_append_estimates_and_counts(self) -> None:
        thread = ThreadManager(session_token_budget=1000)
        message = thread.append(user("x" * 40))
        assert message.token_count == estimate_message_tokens(user("x" * 40))
        assert thread.thread_tokens == message.token_count
        assert len(thread) == 1

    def test_messages_is_a_copy(self) -> None:
        thread = ThreadManager(session_token_budget=1000)
        thread.append(user("hi"))
        thread.messages.append(user("not stored"))
        assert len(thread) == 1

    def test_has_system_message(self) -> None:
        thread = ThreadManager(session_token_budget=1000)
        assert not thread.has_system_message()
        thread.append(Message(role=Role.SYSTEM, content="rules"))
        assert thread.has_system_message()


# =============================================================================
# Budget
# =============================================================================


class TestBudget:
    """Session budget and usage reconciliation."""

    def test_check_budget(self) -> None:
        thread = ThreadManager(session_token_budget=100)
        thread.reconcile(TokenUsage(input_tokens=60, output_tokens=20))
        thread.check_budget(20)
        with pytest.raises(BudgetExceededError) as exc_info:
            thread.check_budget(21)
        assert exc_info.value.used_tokens == 80
        assert exc_info.value.budget_tokens == 100

    def test_reconcile_replaces_estimate(self) -> None:
        """Reported output tokens replace the assistant message's estimate."""
        thread = ThreadManager(session_token_budget=1000)
        message = thread.append(assistant("y" * 400))
        before = thread.thread_tokens

        charged = thread.reconcile(TokenUsage(input_tokens=30, output_tokens=7), 30, message)

        assert charged.total == 37
        assert message.token_count == 7
        assert thread.thread_tokens == before - 104 + 7
        assert thread.session_usage.total == 37

    def test_reconcile_without_usage_charges_estimate(self) -> None:
        thread = ThreadManager(session_token_budget=1000)
        message = thread.append(assistant("z" * 40))
        charged = thread.reconcile(TokenUsage(), estimated_input_tokens=50, message=message)
        assert charged.input_tokens == 50
        assert charged.output_tokens == message.token_count
        assert thread.session_usage.total == 50 + message.token_count


# =============================================================================
# Truncation
# =============================================================================


def fill(thread: ThreadManager, count: int, size: int = 400) -> None:
    for i in range(count):
        thread.append(user(f"{i:03d}" + "u" * size) if i % 2 == 0 else assistant(f"{i:03d}" + "a" * size))


class TestBuildContext:
    """Truncated request views."""

    def test_fits_unchanged(self) -> None:
        thread = ThreadManager(session_token_budget=10**6)
        fill(thread, 4, size=10)
        assert thread.build_context(max_input_tokens=10_000) == thread.messages

    def test_truncates_with_single_marker(self) -> None:
        """Old messages are dropped, the recency window survives, one marker marks the cut."""
        thread = ThreadManager(session_token_budget=10**6, recency_window=4, system_share=0.1)
        thread.append(Message(role=Role.SYSTEM, content="system rules"))
        fill(thread, 20)

        context = thread.build_context(max_input_tokens=1000)
        history = [m for m in thread.messages if m.role != Role.SYSTEM]

        assert context[0].role == Role.SYSTEM
        markers = [m for m in context if is_truncation_marker(m)]
        assert len(markers) == 1
        assert context[1] is markers[0]
        assert context[-4:] == history[-4:]
        assert len(context) < len(thread.messages)
        assert sum(m.token_count for m in context) <= 1000

    def test_truncation_never_mutates_thread(self) -> None:
        thread = ThreadManager(session_token_budget=10**6, recency_window=2)
        fill(thread, 12)
        before = thread.messages
        thread.build_context(max_input_tokens=300)
        assert thread.messages == before

    def test_tool_results_stay_with_their_call(self) -> None:
        """The window never starts with tool results orphaned from their assistant turn."""
        thread = ThreadManager(session_token_budget=10**6, recency_window=2, system_share=0.1)
        fill(thread, 10)
        calls = [ToolCall(call_id=f"c{i}", tool_name="read_file") for i in range(3)]
        thread.append(Message(role=Role.ASSISTANT, content="", tool_calls=calls))
        for call in calls:
            thread.append(Message(role=Role.TOOL, content="r" * 40, tool_call_id=call.call_id))

        context = thread.build_context(max_input_tokens=600)
        kept = [m for m in context if not is_truncation_marker(m)]
        assert kept[0].role != Role.TOOL
        assert [m.tool_call_id for m in context if m.role == Role.TOOL] == ["c0", "c1", "c2"]

    def test_zero_recency_window(self) -> None:
        """With no recency window only what fits the budget survives the cut."""
        thread = ThreadManager(session_token_budget=10**6, recency_window=0, system_share=0.1)
        fill(thread, 12)

        context = thread.build_context(max_input_tokens=300)

        assert len([m for m in context if is_truncation_marker(m)]) == 1
        assert len(context) < len(thread.messages)
        assert sum(m.token_count for m in context) <= 300

    def test_nothing_droppable_returns_thread(self) -> None:
        thread = ThreadManager(session_token_budget=10**6, recency_window=8)
        fill(thread, 3)
        assert thread.build_context(max_input_tokens=50) == thread.messages


# =============================================================================
# Restore
# =============================================================================


class TestRestore:
    def test_restore(self) -> None:
        source = ThreadManager(session_token_budget=1000)
        fill(source, 3, size=20)
        usage = TokenUsage(input_tokens=40, output_tokens=10)

        restored = ThreadManager(session_token_budget=1000)
        restored.restore(source.messages, usage)

        assert restored.messages == source.messages
        assert restored.thread_tokens == source.thread_tokens
        assert restored.session_usage == usage
