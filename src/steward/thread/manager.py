"""
Thread manager for Steward.

Owns the append-only conversation thread of a session together with two
running counters: the estimated size of the thread and the session's
cumulative token usage as reported by the model endpoint.

Truncation never rewrites the stored thread. build_context() derives a
request view from it each time:
    - system messages at the head are always kept
    - the most recent `recency_window` messages are always kept verbatim
    - the oldest messages between the two are dropped until the rest fits
    - exactly one marker message is inserted where messages were dropped

Token counts are estimated at roughly four characters per token; actual
usage reported by the endpoint replaces the estimate in reconcile().
"""

import json
import logging
import math

from steward.errors import BudgetExceededError
from steward.schema import Message, Role, TokenUsage, ToolDefinition

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# Fixed per-message overhead (role, separators) added to every estimate
MESSAGE_OVERHEAD_TOKENS = 4

TRUNCATION_MARKER_PREFIX = "[context truncated]"


def estimate_tokens(text: str) -> int:
    """Rough token estimate for a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Estimate the tokens one message occupies in a request."""
    tokens = MESSAGE_OVERHEAD_TOKENS + estimate_tokens(message.content)
    for call in message.tool_calls:
        tokens += estimate_tokens(call.tool_name) + estimate_tokens(json.dumps(call.arguments))
    return tokens


def estimate_tool_tokens(definitions: list[ToolDefinition]) -> int:
    """Estimate the tokens the tool definitions occupy in a request."""
    return sum(
        estimate_tokens(d.name) + estimate_tokens(d.description) + estimate_tokens(json.dumps(d.parameters))
        for d in definitions
    )


def _marker(dropped: int) -> Message:
    return Message(
        role=Role.USER,
        content=f"{TRUNCATION_MARKER_PREFIX} {dropped} earlier messages were omitted to fit the context window.",
    )


def is_truncation_marker(message: Message) -> bool:
    return message.content.startswith(TRUNCATION_MARKER_PREFIX)


class ThreadManager:
    """
    The ordered message thread plus token accounting.

    Only the step loop mutates a ThreadManager; nothing here is locked.

    Attributes:
        session_token_budget: Upper bound on cumulative session usage
        recency_window: Messages always kept verbatim on truncation
        system_share: Fraction of the input budget reserved for system
            instructions and tool definitions
    """

    def __init__(
        self,
        session_token_budget: int,
        recency_window: int = 8,
        system_share: float = 0.25,
    ) -> None:
        self.session_token_budget = session_token_budget
        self.recency_window = recency_window
        self.system_share = system_share
        self._messages: list[Message] = []
        self._thread_tokens = 0
        self._usage = TokenUsage()

    # =========================================================================
    # Thread
    # =========================================================================

    @property
    def messages(self) -> list[Message]:
        """A copy of the full thread, in order."""
        return list(self._messages)

    @property
    def thread_tokens(self) -> int:
        return self._thread_tokens

    @property
    def session_usage(self) -> TokenUsage:
        return self._usage.model_copy()

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: Message) -> Message:
        """Append a message, estimating its token count if none is set."""
        if message.token_count == 0:
            message.token_count = estimate_message_tokens(message)
        self._messages.append(message)
        self._thread_tokens += message.token_count
        return message

    def extend(self, messages: list[Message]) -> None:
        for message in messages:
            self.append(message)

    def has_system_message(self) -> bool:
        return any(m.role == Role.SYSTEM for m in self._messages)

    # =========================================================================
    # Token accounting
    # =========================================================================

    def check_budget(self, estimated_tokens: int) -> None:
        """
        Verify a call of the given estimated size fits the session budget.

        Raises:
            BudgetExceededError: If cumulative usage plus the estimate exceeds it
        """
        used = self._usage.total
        if used + estimated_tokens > self.session_token_budget:
            raise BudgetExceededError(
                used_tokens=used,
                estimated_tokens=estimated_tokens,
                budget_tokens=self.session_token_budget,
            )

    def reconcile(
        self,
        usage: TokenUsage,
        estimated_input_tokens: int = 0,
        message: Message | None = None,
    ) -> TokenUsage:
        """
        Fold one call's usage into the session counter.

        Endpoints that report nothing are charged the request estimate. When
        the assistant message of the call is given, its estimated token count
        is replaced with the reported output tokens.

        Returns:
            The usage that was charged
        """
        if usage.total == 0:
            output_estimate = message.token_count if message is not None else 0
            usage = TokenUsage(input_tokens=estimated_input_tokens, output_tokens=output_estimate)
            logger.debug("No usage reported; charging estimate %d", usage.total)

        self._usage = TokenUsage(
            input_tokens=self._usage.input_tokens + usage.input_tokens,
            output_tokens=self._usage.output_tokens + usage.output_tokens,
        )

        if message is not None and usage.output_tokens and any(m is message for m in self._messages):
            self._thread_tokens += usage.output_tokens - message.token_count
            message.token_count = usage.output_tokens

        return usage

    # =========================================================================
    # Context window
    # =========================================================================

    def build_context(self, max_input_tokens: int, tool_tokens: int = 0) -> list[Message]:
        """
        Build the message list for the next request.

        Args:
            max_input_tokens: Input-token budget of the model
            tool_tokens: Estimated size of the tool definitions sent alongside

        Returns:
            The full thread if it fits, otherwise a truncated view with one
            marker message at the cut point
        """
        head = [m for m in self._messages if m.role == Role.SYSTEM]
        history = [m for m in self._messages if m.role != Role.SYSTEM]

        if self._thread_tokens + tool_tokens <= max_input_tokens:
            return list(self._messages)

        head_tokens = sum(m.token_count for m in head)
        reserved = max(int(max_input_tokens * self.system_share), head_tokens + tool_tokens)
        available = max_input_tokens - reserved

        # Recency window, widened back to the assistant turn owning any leading tool results
        recent_start = max(0, len(history) - max(0, self.recency_window))
        while 0 < recent_start < len(history) and history[recent_start].role == Role.TOOL:
            recent_start -= 1

        marker_tokens = estimate_message_tokens(_marker(len(history)))
        remaining = available - marker_tokens - sum(m.token_count for m in history[recent_start:])

        cut = recent_start
        while cut > 0 and history[cut - 1].token_count <= remaining:
            remaining -= history[cut - 1].token_count
            cut -= 1

        # Tool results whose assistant turn was dropped cannot stand alone
        while cut < recent_start and history[cut].role == Role.TOOL:
            cut += 1

        if cut == 0:
            logger.warning(
                "Thread exceeds input budget (%d tokens) but nothing can be dropped",
                max_input_tokens,
            )
            return list(self._messages)

        if remaining < 0:
            logger.warning("Recency window alone exceeds the history budget of %d tokens", available)

        marker = _marker(cut)
        marker.token_count = estimate_message_tokens(marker)
        logger.info("Truncated thread: dropped %d of %d messages", cut, len(history))

        return head + [marker] + history[cut:]

    # =========================================================================
    # Persistence
    # =========================================================================

    def restore(self, messages: list[Message], usage: TokenUsage) -> None:
        """Replace the thread and counters with persisted values."""
        self._messages = []
        self._thread_tokens = 0
        self.extend([m.model_copy() for m in messages])
        self._usage = usage.model_copy()
