"""
Streaming chat-completions parser.

Consumes the `data:` payloads of an OpenAI-compatible server-sent-event
stream and accumulates them into one ModelResponse.

Handled payloads:
    - choices[].delta.content          text fragments (returned for live forwarding)
    - choices[].delta.tool_calls[]     tool-call fragments, concatenated per index
    - choices[].finish_reason          mapped to StopReason
    - usage                            token counts (stream_options.include_usage)
    - [DONE]                           end-of-stream sentinel

Tool calls are never surfaced before the stream completes.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from steward.model.base import INVALID_ARGUMENTS_KEY
from steward.schema import ModelResponse, StopReason, TokenUsage, ToolCall, generate_id

logger = logging.getLogger(__name__)

FINISH_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "tool_use": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
    "content_filter": StopReason.GUARDRAIL,
}


@dataclass
class _ToolCallFragments:
    """Accumulated fragments of one tool call."""

    call_id: str | None = None
    name: str = ""
    arguments: str = ""


@dataclass
class StreamAccumulator:
    """
    Incremental parser for one streamed turn.

    Usage:
        acc = StreamAccumulator(model="m")
        for data in payloads:
            for delta in acc.feed(data):
                forward(delta)
        if not acc.complete:
            ...  # stream dropped
        response = acc.result()
    """

    model: str = ""
    text_parts: list[str] = field(default_factory=list)
    finish_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    done: bool = False
    _calls: dict[int, _ToolCallFragments] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        """Whether the stream ended properly (finish reason seen or [DONE] received)."""
        return self.done or self.finish_reason is not None

    def feed(self, data: str) -> list[str]:
        """
        Process one SSE data payload.

        Returns:
            Text fragments contained in the payload, in order
        """
        data = data.strip()
        if not data:
            return []
        if data in ("[DONE]", "DONE"):
            self.done = True
            return []

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream payload: %.80s", data)
            return []
        if not isinstance(chunk, dict):
            return []

        if isinstance(chunk.get("usage"), dict):
            usage = chunk["usage"]
            self.usage = TokenUsage(
                input_tokens=int(usage.get("prompt_tokens", usage.get("input_tokens", 0)) or 0),
                output_tokens=int(usage.get("completion_tokens", usage.get("output_tokens", 0)) or 0),
            )
        if chunk.get("model") and not self.model:
            self.model = str(chunk["model"])

        deltas: list[str] = []
        for choice in chunk.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if isinstance(content, str) and content:
                self.text_parts.append(content)
                deltas.append(content)
            for fragment in delta.get("tool_calls") or []:
                self._feed_tool_call(fragment)
            if choice.get("finish_reason"):
                self.finish_reason = str(choice["finish_reason"])
        return deltas

    def _feed_tool_call(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int):
            index = len(self._calls)
        state = self._calls.setdefault(index, _ToolCallFragments())
        if fragment.get("id"):
            state.call_id = str(fragment["id"])
        function = fragment.get("function") or {}
        if function.get("name"):
            state.name += str(function["name"])
        if function.get("arguments"):
            state.arguments += str(function["arguments"])

    def result(self) -> ModelResponse:
        """Build the complete turn from the accumulated fragments."""
        tool_calls = []
        for index in sorted(self._calls):
            state = self._calls[index]
            if not state.name:
                logger.warning("Dropping tool call fragment %d without a name", index)
                continue
            tool_calls.append(
                ToolCall(
                    call_id=state.call_id or generate_id("call"),
                    tool_name=state.name,
                    arguments=parse_arguments(state.arguments),
                )
            )

        stop_reason = FINISH_REASONS.get(self.finish_reason or "", StopReason.UNKNOWN)
        if self.finish_reason is None and self.done:
            stop_reason = StopReason.TOOL_USE if tool_calls else StopReason.END_TURN

        return ModelResponse(
            text="".join(self.text_parts),
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            usage=self.usage,
            model=self.model,
        )


def parse_arguments(raw: str) -> dict[str, Any]:
    """
    Parse the concatenated arguments of a tool call.

    Anything other than a JSON object is kept under INVALID_ARGUMENTS_KEY so
    the dispatcher can fail the call instead of running it with guessed arguments.
    """
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {INVALID_ARGUMENTS_KEY: raw}
    if not isinstance(parsed, dict):
        return {INVALID_ARGUMENTS_KEY: raw}
    return parsed
