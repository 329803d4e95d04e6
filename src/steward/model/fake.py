"""
Scripted model client.

Replays a fixed list of turns instead of calling a model endpoint. Used by
the test suite and for offline demos of the engine.

Each script entry is one of:
    - ModelResponse: returned as the next turn (its text is streamed as deltas)
    - Exception: raised from the call
    - Callable[[ModelRequest], ModelResponse | Exception]: evaluated lazily,
      so a turn can depend on what the model was sent
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Union

from steward.errors import BadModelResponseError
from steward.model.base import ModelClient, ModelRequest, TextDeltaCallback
from steward.schema import ModelResponse

logger = logging.getLogger(__name__)

ScriptEntry = Union[
    ModelResponse,
    BaseException,
    Callable[[ModelRequest], Union[ModelResponse, BaseException]],
]


class ScriptedModelClient(ModelClient):
    """
    Model client that returns pre-scripted turns in order.

    Attributes:
        requests: Every request received, in order
        delay_seconds: Artificial latency before each turn
    """

    def __init__(
        self,
        script: Iterable[ScriptEntry] = (),
        delay_seconds: float = 0.0,
        chunk_size: int = 16,
    ) -> None:
        self._script: list[ScriptEntry] = list(script)
        self.delay_seconds = delay_seconds
        self.chunk_size = chunk_size
        self.requests: list[ModelRequest] = []

    def add(self, entry: ScriptEntry) -> None:
        """Append one entry to the script."""
        self._script.append(entry)

    @property
    def remaining(self) -> int:
        return len(self._script)

    async def stream(
        self,
        request: ModelRequest,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> ModelResponse:
        self.requests.append(request)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        if not self._script:
            raise BadModelResponseError(
                model=request.model,
                attempts=1,
                underlying_error="script exhausted",
            )

        entry = self._script.pop(0)
        if callable(entry) and not isinstance(entry, (ModelResponse, BaseException)):
            entry = entry(request)
        if isinstance(entry, BaseException):
            raise entry

        if on_text_delta is not None and entry.text:
            for start in range(0, len(entry.text), self.chunk_size):
                on_text_delta(entry.text[start:start + self.chunk_size])

        logger.debug(
            "Scripted turn: stop=%s tool_calls=%d",
            entry.stop_reason.value,
            len(entry.tool_calls),
        )
        return entry
