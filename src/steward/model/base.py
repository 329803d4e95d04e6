"""
Base classes for Steward model clients.

This module defines the interface the step loop uses to obtain the next
model turn, along with the request object passed to it.

Design Principles:
    - One call, one complete turn: stream() returns only after the whole
      turn was received, so the thread never observes a partial response
    - Text deltas are forwarded live through a callback as they arrive
    - Retry policy lives inside the client; the loop only sees terminal errors
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from steward.schema import Message, ModelResponse, ToolDefinition

# Receives each text fragment as the model streams it
TextDeltaCallback = Callable[[str], None]

# Reserved argument key marking a tool call whose arguments were not valid JSON
INVALID_ARGUMENTS_KEY = "__invalid_arguments__"


@dataclass
class ModelRequest:
    """
    Everything needed for one model invocation.

    Attributes:
        model: Model name
        messages: The (possibly truncated) thread to send
        tools: Tool definitions visible under the current policy
        max_output_tokens: Output limit for this turn
        task_id: Owning task, for tracing
        step_id: Owning step, for tracing
        metadata: Provider-specific extras
    """

    model: str
    messages: list[Message]
    tools: list[ToolDefinition] = field(default_factory=list)
    max_output_tokens: int | None = None
    task_id: str | None = None
    step_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ModelClient(ABC):
    """
    Abstract base class for model clients.

    Implementations:
        - HttpModelClient: OpenAI-compatible streaming endpoint over httpx
        - ScriptedModelClient: replays canned turns (tests, offline demos)

    Example Implementation:
        class EchoModel(ModelClient):
            async def stream(self, request, on_text_delta=None):
                text = request.messages[-1].content
                if on_text_delta:
                    on_text_delta(text)
                return ModelResponse(text=text)
    """

    @abstractmethod
    async def stream(
        self,
        request: ModelRequest,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> ModelResponse:
        """
        Obtain one complete model turn.

        Args:
            request: The request to send
            on_text_delta: Called with each text fragment as it arrives

        Returns:
            The complete turn (text, accumulated tool calls, stop reason, usage)

        Raises:
            RateLimitedError: Rate limited on every attempt
            TransientModelError: Server errors or dropped streams exhausted retries
            ModelUnreachableError: Endpoint could not be reached
            GuardrailRejectedError: Request refused on content grounds
            BadModelResponseError: Response was not a valid turn
        """
        ...

    async def aclose(self) -> None:
        """Release network resources. Default does nothing."""
        return None

    def get_name(self) -> str:
        """Return the client's name for logging."""
        return self.__class__.__name__
