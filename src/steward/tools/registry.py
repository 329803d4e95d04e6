"""
Tool registry and the in-process tool executor.

The registry maps tool names to Tool instances. RegistryToolExecutor wraps a
registry as a ToolExecutor: it lists the registered tools' definitions and
runs calls in worker threads, converting ToolOutput into ToolResult.

Usage:
    registry = ToolRegistry()
    registry.register(ReadFileTool())
    executor = RegistryToolExecutor(registry, working_dir="/work")
    result = await executor.execute(call, "File.Read")
"""

import asyncio
import json
import logging
from collections.abc import Iterator

from steward.errors import ToolNotFoundError
from steward.schema import ToolCall, ToolDefinition, ToolResult, ToolResultStatus, utcnow
from steward.tools.base import Tool, ToolContext, ToolOutput

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Registry for looking up tools by name.

    Attributes:
        _tools: Internal mapping of tool names to tool instances
    """

    def __init__(self, tools: list[Tool] | None = None) -> None:
        """Initialize the registry, optionally with some tools."""
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """
        Register a tool, replacing any tool with the same name.

        Raises:
            ValueError: If tool is None or has an empty name
        """
        if tool is None:
            msg = "Cannot register None as a tool"
            raise ValueError(msg)

        name = tool.name
        if not name:
            msg = "Tool must have a non-empty name"
            raise ValueError(msg)

        if name in self._tools:
            logger.debug("Replacing registered tool %s", name)

        self._tools[name] = tool

    def get(self, name: str) -> Tool:
        """
        Look up a tool by name.

        Raises:
            ToolNotFoundError: If no tool with that name is registered
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(tool=name)
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def unregister(self, name: str) -> bool:
        """Remove a tool; returns False if it wasn't registered."""
        return self._tools.pop(name, None) is not None

    def list_tools(self) -> list[str]:
        """Registered tool names, sorted."""
        return sorted(self._tools.keys())

    def definitions(self) -> list[ToolDefinition]:
        """Definitions of all registered tools, sorted by name."""
        return [self._tools[name].definition() for name in self.list_tools()]

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __repr__(self) -> str:
        tools = ", ".join(self.list_tools())
        return f"<ToolRegistry: [{tools}]>"


def render_output(output: ToolOutput) -> str:
    """Render tool data as the text the model reads."""
    data = output.data
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return json.dumps(data, indent=2, default=str)


class RegistryToolExecutor:
    """
    ToolExecutor running registered in-process tools.

    Tools are synchronous; each call runs in a worker thread via
    asyncio.to_thread so concurrent calls overlap.
    """

    def __init__(self, registry: ToolRegistry, working_dir: str = ".") -> None:
        self.registry = registry
        self.working_dir = working_dir

    def list_tools(self) -> list[ToolDefinition]:
        return self.registry.definitions()

    async def execute(self, call: ToolCall, capability: str) -> ToolResult:
        """
        Run one call.

        Raises:
            ToolNotFoundError: If the tool is not registered
        """
        tool = self.registry.get(call.tool_name)
        started = utcnow()

        errors = tool.validate_args(call.arguments)
        if errors:
            return ToolResult(
                call_id=call.call_id,
                tool_name=call.tool_name,
                status=ToolResultStatus.FAILED,
                error=f"Invalid arguments: {'; '.join(errors)}",
                started_at=started,
                ended_at=utcnow(),
            )

        context = ToolContext(
            call_id=call.call_id,
            task_id=call.task_id,
            step_id=call.step_id,
            capability=capability,
            working_dir=self.working_dir,
        )
        output = await asyncio.to_thread(tool.execute, call.arguments, context)

        if output.success:
            return ToolResult(
                call_id=call.call_id,
                tool_name=call.tool_name,
                status=ToolResultStatus.SUCCEEDED,
                output=render_output(output),
                started_at=started,
                ended_at=utcnow(),
            )
        return ToolResult(
            call_id=call.call_id,
            tool_name=call.tool_name,
            status=ToolResultStatus.FAILED,
            output=render_output(output),
            error=output.error,
            started_at=started,
            ended_at=utcnow(),
        )
