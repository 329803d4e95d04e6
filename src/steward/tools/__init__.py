"""
Tools for Steward.

- ToolDispatcher: authorizes and runs the tool calls of one model turn
- Tool/ToolRegistry/RegistryToolExecutor: in-process tool execution
- builtin: read_file, write_file and run_command for standalone use
"""

from steward.tools.base import Tool, ToolContext, ToolOutput
from steward.tools.builtin import builtin_registry
from steward.tools.dispatcher import DispatchOutcome, PlannedCall, ToolDispatcher, result_message
from steward.tools.registry import RegistryToolExecutor, ToolRegistry

__all__ = [
    "DispatchOutcome",
    "PlannedCall",
    "RegistryToolExecutor",
    "Tool",
    "ToolContext",
    "ToolDispatcher",
    "ToolOutput",
    "ToolRegistry",
    "builtin_registry",
    "result_message",
]
