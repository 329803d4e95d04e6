"""
Streaming model client over an OpenAI-compatible HTTP endpoint.

Sends the thread and tool definitions to `{base_url}/chat/completions` with
`stream=true`, parses the server-sent events incrementally and returns one
complete turn.

Failure handling:
    - 429 and 5xx: retried with exponential backoff and jitter (Retry-After
      honoured) up to max_retries, then RateLimitedError/TransientModelError
    - Connection failures and connect timeouts: retried, then
      ModelUnreachableError
    - Dropped streams (read errors, EOF before a finish reason): the partial
      response is discarded and the full request retried; text already
      forwarded to the host is not forwarded again
    - Guardrail rejections (content-filter errors or finish reasons): never
      retried, GuardrailRejectedError
    - Other 4xx: never retried, BadModelResponseError

Usage:
    client = HttpModelClient(config.model)
    response = await client.stream(request, on_text_delta=print)
    await client.aclose()
"""

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from steward.config import ModelEndpointConfig
from steward.errors import (
    BadModelResponseError,
    GuardrailRejectedError,
    ModelUnreachableError,
    RateLimitedError,
    TransientModelError,
)
from steward.model.base import ModelClient, ModelRequest, TextDeltaCallback
from steward.model.sse import StreamAccumulator
from steward.schema import Message, ModelResponse, Role, StopReason, ToolDefinition

logger = logging.getLogger(__name__)

# Error codes/types that identify a guardrail rejection in an error body
GUARDRAIL_MARKERS = ("content_filter", "content_policy", "guardrail", "safety")


class _StreamDropped(Exception):
    """The stream ended before the turn was complete."""


class _RetryableStatus(Exception):
    """A retryable HTTP status was returned."""

    def __init__(self, status_code: int, body: str, retry_after: float | None) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after


class _DeltaForwarder:
    """
    Forwards text deltas to the host across retried attempts.

    A retry after a dropped stream replays the turn from the start. While the
    new attempt repeats text the host already has, nothing is forwarded; once
    it runs past that text only the new part is. A retry that diverges is
    forwarded from its start.
    """

    def __init__(self, on_text_delta: TextDeltaCallback | None) -> None:
        self.on_text_delta = on_text_delta
        self.forwarded = ""
        self.attempt = ""
        self.replaying = False

    def begin_attempt(self) -> None:
        self.attempt = ""
        self.replaying = bool(self.forwarded)

    def __call__(self, delta: str) -> None:
        if self.on_text_delta is None or not delta:
            return
        self.attempt += delta
        if not self.replaying:
            self.forwarded = self.attempt
            self.on_text_delta(delta)
            return

        if self.forwarded.startswith(self.attempt):
            return
        if self.attempt.startswith(self.forwarded):
            fresh = self.attempt[len(self.forwarded):]
        else:
            logger.warning("Retried model stream diverged from text already shown")
            fresh = self.attempt
        self.replaying = False
        self.forwarded = self.attempt
        self.on_text_delta(fresh)


def to_wire_message(message: Message) -> dict[str, Any]:
    """Convert a thread message to the chat-completions wire format."""
    if message.role == Role.TOOL:
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id or "",
            "content": message.content,
        }
    wire: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.role == Role.ASSISTANT and message.tool_calls:
        wire["content"] = message.content or None
        wire["tool_calls"] = [
            {
                "id": call.call_id,
                "type": "function",
                "function": {
                    "name": call.tool_name,
                    "arguments": json.dumps(call.arguments),
                },
            }
            for call in message.tool_calls
        ]
    return wire


def to_wire_tool(definition: ToolDefinition) -> dict[str, Any]:
    """Convert a tool definition to the chat-completions wire format."""
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description,
            "parameters": definition.parameters,
        },
    }


def _retry_after_seconds(headers: httpx.Headers) -> float | None:
    """Parse an integer-seconds Retry-After header."""
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _is_guardrail_body(body: str) -> tuple[bool, str]:
    """Inspect an error body for a guardrail marker; returns (matched, reason)."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        error = data.get("error", data)
        if isinstance(error, dict):
            fields = " ".join(
                str(error.get(key, "")) for key in ("code", "type", "param")
            ).lower()
            if any(marker in fields for marker in GUARDRAIL_MARKERS):
                return True, str(error.get("message") or fields.strip())
    return False, ""


class HttpModelClient(ModelClient):
    """
    Model client for OpenAI-compatible streaming endpoints.

    Features:
        - Incremental SSE parsing with live text forwarding
        - Retry with exponential backoff plus jitter
        - Failure classification into the model error taxonomy

    Attributes:
        config: Endpoint settings
    """

    def __init__(
        self,
        config: ModelEndpointConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Endpoint settings; defaults if None
            transport: Optional httpx transport (e.g. MockTransport in tests)
            sleep: Backoff sleep function; defaults to asyncio.sleep
        """
        self.config = config or ModelEndpointConfig()
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            api_key = self.config.api_key()
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=self.config.timeout_seconds,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpModelClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def build_payload(self, request: ModelRequest) -> dict[str, Any]:
        """Build the chat-completions request body."""
        payload: dict[str, Any] = {
            "model": request.model or self.config.model,
            "messages": [to_wire_message(m) for m in request.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            payload["tools"] = [to_wire_tool(t) for t in request.tools]
        if request.max_output_tokens is not None:
            payload["max_tokens"] = request.max_output_tokens
        if self.config.temperature is not None:
            payload["temperature"] = self.config.temperature
        return payload

    async def stream(
        self,
        request: ModelRequest,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> ModelResponse:
        """Stream one turn, retrying retryable failures."""
        payload = self.build_payload(request)
        model = payload["model"]
        max_attempts = self.config.max_retries + 1
        last_error: Exception | None = None
        forward = _DeltaForwarder(on_text_delta)

        for attempt in range(max_attempts):
            forward.begin_attempt()
            try:
                response = await self._stream_once(payload, forward)
            except _RetryableStatus as e:
                last_error = e
                if attempt + 1 >= max_attempts:
                    if e.status_code == 429:
                        raise RateLimitedError(
                            model=model,
                            attempts=attempt + 1,
                            retry_after_seconds=e.retry_after,
                        ) from e
                    raise TransientModelError(
                        model=model,
                        attempts=attempt + 1,
                        status_code=e.status_code,
                        underlying_error=e.body[:500],
                    ) from e
                await self._backoff(attempt, e.retry_after)
                continue
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = e
                if attempt + 1 >= max_attempts:
                    raise ModelUnreachableError(
                        model=model,
                        attempts=attempt + 1,
                        url=self.config.base_url,
                        underlying_error=str(e),
                    ) from e
                await self._backoff(attempt, None)
                continue
            except (_StreamDropped, httpx.TransportError) as e:
                last_error = e
                if attempt + 1 >= max_attempts:
                    raise TransientModelError(
                        model=model,
                        attempts=attempt + 1,
                        underlying_error=str(e) or e.__class__.__name__,
                    ) from e
                logger.info("Model stream interrupted (%s); retrying full request", e)
                await self._backoff(attempt, None)
                continue

            if response.stop_reason == StopReason.GUARDRAIL:
                raise GuardrailRejectedError(
                    model=model,
                    attempts=attempt + 1,
                    reason="response stopped by content filter",
                )
            return response

        # Unreachable: every path above returns or raises on the last attempt
        raise TransientModelError(
            model=model,
            attempts=max_attempts,
            underlying_error=str(last_error),
        )

    async def _stream_once(
        self,
        payload: dict[str, Any],
        on_text_delta: Callable[[str], None],
    ) -> ModelResponse:
        """Make one streaming attempt."""
        client = self._get_client()
        accumulator = StreamAccumulator(model=payload["model"])

        async with client.stream("POST", "/chat/completions", json=payload) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                self._classify_status(payload["model"], response, body)

            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                for delta in accumulator.feed(line[len("data:"):]):
                    on_text_delta(delta)
                if accumulator.done:
                    break

        if not accumulator.complete:
            raise _StreamDropped("stream ended before the turn completed")
        return accumulator.result()

    def _classify_status(self, model: str, response: httpx.Response, body: str) -> None:
        """Raise the right error for a non-2xx status."""
        status = response.status_code
        if status == 429 or status >= 500:
            raise _RetryableStatus(status, body, _retry_after_seconds(response.headers))

        guardrail, reason = _is_guardrail_body(body)
        if guardrail:
            raise GuardrailRejectedError(model=model, attempts=1, reason=reason)

        raise BadModelResponseError(
            model=model,
            attempts=1,
            underlying_error=f"HTTP {status}: {body[:500]}",
        )

    async def _backoff(self, attempt: int, retry_after: float | None) -> None:
        """Sleep before the next attempt (exponential backoff plus jitter)."""
        if retry_after is not None:
            delay = min(retry_after, self.config.max_delay_seconds)
        else:
            base = min(self.config.max_delay_seconds, self.config.base_delay_seconds * (2**attempt))
            delay = base + random.uniform(0.0, base * self.config.jitter_ratio)
            delay = min(self.config.max_delay_seconds, delay)
        logger.debug("Model retry %d in %.2fs", attempt + 1, delay)
        await self._sleep(delay)

    def get_name(self) -> str:
        return f"HttpModelClient({self.config.model})"
