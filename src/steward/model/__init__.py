"""Model clients for Steward."""

from steward.model.base import INVALID_ARGUMENTS_KEY, ModelClient, ModelRequest, TextDeltaCallback
from steward.model.fake import ScriptedModelClient
from steward.model.http import HttpModelClient
from steward.model.sse import StreamAccumulator, parse_arguments

__all__ = [
    "INVALID_ARGUMENTS_KEY",
    "HttpModelClient",
    "ModelClient",
    "ModelRequest",
    "ScriptedModelClient",
    "StreamAccumulator",
    "TextDeltaCallback",
    "parse_arguments",
]
