"""
Unit tests for the model boundary.

Tests cover:
- SSE accumulation (text deltas, fragmented tool calls, usage, stop reasons)
- Argument parsing of tool calls
- HttpModelClient over httpx.MockTransport: success, retry with backoff,
  rate limiting, guardrail rejection, dropped streams (text never repeated
  to the host), unreachable endpoint (refused or connect timeout)
- ScriptedModelClient
"""

import asyncio
import json
from typing import Any

import httpx
import pytest

from steward.config import ModelEndpointConfig
from steward.errors import (
    BadModelResponseError,
    GuardrailRejectedError,
    ModelUnreachableError,
    RateLimitedError,
    TransientModelError,
)
from steward.model.base import INVALID_ARGUMENTS_KEY, ModelRequest
from steward.model.fake import ScriptedModelClient
from steward.model.http import HttpModelClient, to_wire_message
from steward.model.sse import StreamAccumulator, parse_arguments
from steward.schema import Message, ModelResponse, Role, StopReason, ToolCall, ToolDefinition


def sse(*chunks: dict[str, Any], done: bool = True) -> bytes:
    """Encode chunks as a server-sent event stream."""
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def text_chunk(text: str, finish: str | None = None) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish}]}


REQUEST = ModelRequest(
    model="coder",
    messages=[Message(role=Role.USER, content="hello")],
    tools=[ToolDefinition(name="read_file", capability="File.Read")],
    max_output_tokens=256,
)


# =============================================================================
# SSE accumulation
# =============================================================================


class TestStreamAccumulator:
    """Tests for incremental stream parsing."""

    def test_text_and_usage(self) -> None:
        acc = StreamAccumulator(model="coder")
        assert acc.feed(json.dumps(text_chunk("Hel"))) == ["Hel"]
        assert acc.feed(json.dumps(text_chunk("lo", finish="stop"))) == ["lo"]
        acc.feed(json.dumps({"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 3}}))
        acc.feed("[DONE]")

        response = acc.result()
        assert response.text == "Hello"
        assert response.stop_reason == StopReason.END_TURN
        assert response.usage.input_tokens == 12
        assert response.usage.output_tokens == 3

    def test_fragmented_tool_calls(self) -> None:
        """Tool-call fragments are joined per index, in index order."""
        acc = StreamAccumulator()
        fragments = [
            {"index": 1, "id": "c2", "function": {"name": "run_command", "arguments": '{"command": '}},
            {"index": 0, "id": "c1", "function": {"name": "read_", "arguments": '{"path"'}},
            {"index": 0, "function": {"name": "file", "arguments": ': "a.txt"}'}},
            {"index": 1, "function": {"arguments": '["ls"]}'}},
        ]
        for fragment in fragments:
            acc.feed(json.dumps({"choices": [{"delta": {"tool_calls": [fragment]}}]}))
        acc.feed(json.dumps({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}))

        response = acc.result()
        assert response.stop_reason == StopReason.TOOL_USE
        assert [(c.call_id, c.tool_name) for c in response.tool_calls] == [
            ("c1", "read_file"),
            ("c2", "run_command"),
        ]
        assert response.tool_calls[0].arguments == {"path": "a.txt"}
        assert response.tool_calls[1].arguments == {"command": ["ls"]}

    @pytest.mark.parametrize(
        "finish,expected",
        [
            ("length", StopReason.MAX_TOKENS),
            ("content_filter", StopReason.GUARDRAIL),
            ("stop_sequence", StopReason.STOP_SEQUENCE),
            ("something_new", StopReason.UNKNOWN),
        ],
    )
    def test_finish_reasons(self, finish: str, expected: StopReason) -> None:
        acc = StreamAccumulator()
        acc.feed(json.dumps(text_chunk("x", finish=finish)))
        assert acc.result().stop_reason == expected

    def test_incomplete_without_finish(self) -> None:
        acc = StreamAccumulator()
        acc.feed(json.dumps(text_chunk("partial")))
        assert not acc.complete

    def test_done_without_finish_reason(self) -> None:
        acc = StreamAccumulator()
        acc.feed(json.dumps(text_chunk("all done")))
        acc.feed("[DONE]")
        assert acc.complete
        assert acc.result().stop_reason == StopReason.END_TURN

    def test_non_json_payload_skipped(self) -> None:
        acc = StreamAccumulator()
        assert acc.feed(": keep-alive") == []
        assert acc.feed("") == []


class TestParseArguments:
    """Tests for tool-call argument parsing."""

    def test_empty(self) -> None:
        assert parse_arguments("  ") == {}

    def test_object(self) -> None:
        assert parse_arguments('{"a": 1}') == {"a": 1}

    @pytest.mark.parametrize("raw", ['{"a": 1', "[1, 2]", "nonsense"])
    def test_invalid_kept_for_dispatcher(self, raw: str) -> None:
        assert parse_arguments(raw) == {INVALID_ARGUMENTS_KEY: raw}


# =============================================================================
# HTTP client
# =============================================================================


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_client(handler: Any, max_retries: int = 2) -> tuple[HttpModelClient, FakeSleep]:
    sleep = FakeSleep()
    config = ModelEndpointConfig(base_url="http://model.test/v1", model="coder", max_retries=max_retries)
    client = HttpModelClient(config, transport=httpx.MockTransport(handler), sleep=sleep)
    return client, sleep


def stream_once(client: HttpModelClient, deltas: list[str] | None = None) -> ModelResponse:
    async def go() -> ModelResponse:
        try:
            return await client.stream(REQUEST, on_text_delta=deltas.append if deltas is not None else None)
        finally:
            await client.aclose()

    return asyncio.run(go())


class TestHttpModelClient:
    """Tests for HttpModelClient against a mock transport."""

    def test_payload(self) -> None:
        client, _ = make_client(lambda request: httpx.Response(200))
        payload = client.build_payload(REQUEST)
        assert payload["stream"] is True
        assert payload["model"] == "coder"
        assert payload["max_tokens"] == 256
        assert payload["tools"][0]["function"]["name"] == "read_file"

    def test_wire_message_for_tool_calls(self) -> None:
        message = Message(
            role=Role.ASSISTANT,
            tool_calls=[ToolCall(call_id="c1", tool_name="read_file", arguments={"path": "a"})],
        )
        wire = to_wire_message(message)
        assert wire["tool_calls"][0]["id"] == "c1"
        assert json.loads(wire["tool_calls"][0]["function"]["arguments"]) == {"path": "a"}

    def test_streaming_success(self) -> None:
        """Text is forwarded as it arrives and the turn is assembled."""
        seen: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            body = sse(text_chunk("Hello, "), text_chunk("world", finish="stop"))
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        client, sleep = make_client(handler)
        deltas: list[str] = []
        response = stream_once(client, deltas)

        assert response.text == "Hello, world"
        assert deltas == ["Hello, ", "world"]
        assert response.stop_reason == StopReason.END_TURN
        assert seen[0]["messages"][0] == {"role": "user", "content": "hello"}
        assert sleep.delays == []

    def test_server_error_then_success(self) -> None:
        """5xx is retried with backoff."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(503, text="overloaded")
            return httpx.Response(200, content=sse(text_chunk("ok", finish="stop")))

        client, sleep = make_client(handler)
        assert stream_once(client).text == "ok"
        assert len(attempts) == 2
        assert len(sleep.delays) == 1

    def test_rate_limited_exhausted(self) -> None:
        """429 on every attempt surfaces as RateLimitedError honoring Retry-After."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="slow down", headers={"Retry-After": "3"})

        client, sleep = make_client(handler, max_retries=2)
        with pytest.raises(RateLimitedError) as exc_info:
            stream_once(client)
        assert exc_info.value.attempts == 3
        assert exc_info.value.retry_after_seconds == 3.0
        assert sleep.delays == [3.0, 3.0]

    def test_server_error_exhausted(self) -> None:
        client, _ = make_client(lambda request: httpx.Response(500, text="boom"), max_retries=1)
        with pytest.raises(TransientModelError) as exc_info:
            stream_once(client)
        assert exc_info.value.status_code == 500

    def test_guardrail_body_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            body = {"error": {"code": "content_filter", "message": "flagged by safety system"}}
            return httpx.Response(400, json=body)

        client, _ = make_client(handler)
        with pytest.raises(GuardrailRejectedError) as exc_info:
            stream_once(client)
        assert exc_info.value.reason == "flagged by safety system"
        assert len(calls) == 1

    def test_guardrail_finish_reason(self) -> None:
        client, _ = make_client(
            lambda request: httpx.Response(200, content=sse(text_chunk("", finish="content_filter")))
        )
        with pytest.raises(GuardrailRejectedError):
            stream_once(client)

    def test_other_client_error(self) -> None:
        client, _ = make_client(lambda request: httpx.Response(400, json={"error": {"message": "bad"}}))
        with pytest.raises(BadModelResponseError):
            stream_once(client)

    def test_dropped_stream_retried_in_full(self) -> None:
        """A stream ending mid-turn is retried as a whole request."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(200, content=sse(text_chunk("half"), done=False))
            return httpx.Response(200, content=sse(text_chunk("whole", finish="stop")))

        client, _ = make_client(handler)
        deltas: list[str] = []
        response = stream_once(client, deltas)
        assert response.text == "whole"
        assert deltas == ["half", "whole"]

    def test_retried_stream_does_not_repeat_text(self) -> None:
        """Text replayed by the retry reaches the host once."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(200, content=sse(text_chunk("Hello "), done=False))
            return httpx.Response(200, content=sse(text_chunk("Hello "), text_chunk("world", finish="stop")))

        client, _ = make_client(handler)
        deltas: list[str] = []
        response = stream_once(client, deltas)
        assert response.text == "Hello world"
        assert "".join(deltas) == "Hello world"
        assert deltas == ["Hello ", "world"]

    def test_retry_overlapping_forwarded_text(self) -> None:
        """A retry chunked differently forwards only what runs past the shown text."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(200, content=sse(text_chunk("Hel"), text_chunk("lo "), done=False))
            return httpx.Response(200, content=sse(text_chunk("Hello wor"), text_chunk("ld", finish="stop")))

        client, _ = make_client(handler)
        deltas: list[str] = []
        stream_once(client, deltas)
        assert deltas == ["Hel", "lo ", "wor", "ld"]

    def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, sleep = make_client(handler, max_retries=2)
        with pytest.raises(ModelUnreachableError) as exc_info:
            stream_once(client)
        assert exc_info.value.attempts == 3
        assert len(sleep.delays) == 2
        assert all(d <= client.config.max_delay_seconds for d in sleep.delays)

    def test_connect_timeout_is_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out connecting", request=request)

        client, sleep = make_client(handler, max_retries=1)
        with pytest.raises(ModelUnreachableError) as exc_info:
            stream_once(client)
        assert exc_info.value.attempts == 2
        assert len(sleep.delays) == 1


# =============================================================================
# Scripted client
# =============================================================================


class TestScriptedModelClient:
    """Tests for the scripted client used by the engine tests."""

    def test_replays_in_order(self) -> None:
        client = ScriptedModelClient(
            [ModelResponse(text="first"), lambda request: ModelResponse(text=f"{len(request.messages)} messages")]
        )
        deltas: list[str] = []

        async def go() -> list[str]:
            first = await client.stream(REQUEST, on_text_delta=deltas.append)
            second = await client.stream(REQUEST)
            return [first.text, second.text]

        assert asyncio.run(go()) == ["first", "1 messages"]
        assert deltas == ["first"]
        assert len(client.requests) == 2
        assert client.remaining == 0

    def test_raises_scripted_errors_and_exhaustion(self) -> None:
        client = ScriptedModelClient([RateLimitedError(model="coder")])
        with pytest.raises(RateLimitedError):
            asyncio.run(client.stream(REQUEST))
        with pytest.raises(BadModelResponseError):
            asyncio.run(client.stream(REQUEST))
