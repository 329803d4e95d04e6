"""
Base classes for in-process tools.

This module defines the abstractions behind RegistryToolExecutor, the local
implementation of the tool boundary:
- Tool: Abstract base class that all tools must implement
- ToolContext: Runtime context passed to tools during execution
- ToolOutput: Standardized result format from tool execution

Design Principles:
    - Tools are stateless - all state comes from ToolContext
    - Tools declare the capability they exercise; the dispatcher authorizes
      that capability before execute() is ever called
    - Tools return ToolOutput - never raise exceptions for expected failures
    - Tools are registered by name - the registry handles lookup
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from steward.schema import ToolDefinition


@dataclass(frozen=True)
class ToolOutput:
    """
    Standardized output from tool execution.

    Attributes:
        success: Whether the tool executed successfully
        data: The output data from the tool (type varies by tool)
        error: Error message if success is False
        metadata: Additional metadata about the execution
    """

    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any, **metadata: Any) -> "ToolOutput":
        """Create a successful output."""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "ToolOutput":
        """Create a failed output."""
        return cls(success=False, error=error, metadata=metadata)


@dataclass
class ToolContext:
    """
    Runtime context passed to tools during execution.

    Attributes:
        call_id: The tool call being executed
        task_id: Owning task
        step_id: Owning step
        capability: The capability that was authorized for this call
        working_dir: The working directory for relative paths
        metadata: Additional context-specific metadata
    """

    call_id: str
    task_id: str = ""
    step_id: str = ""
    capability: str = ""
    working_dir: str = "."
    metadata: dict[str, Any] = field(default_factory=dict)


class Tool(ABC):
    """
    Abstract base class for in-process tools.

    Each tool:
    - Has a unique name (e.g., "read_file", "run_command")
    - Declares the capability it exercises (e.g., "File.Read", "Shell.Exec")
    - Describes its arguments as a JSON schema for the model
    - Implements the execute() method and returns a ToolOutput

    Example:
        class EchoTool(Tool):
            @property
            def name(self) -> str:
                return "echo"

            @property
            def capability(self) -> str:
                return "Util.Echo"

            def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
                return ToolOutput.ok(args.get("message", ""))
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The unique identifier for this tool, as the model sees it."""
        ...

    @property
    @abstractmethod
    def capability(self) -> str:
        """The capability this tool exercises (e.g., "File.Write")."""
        ...

    @property
    def description(self) -> str:
        """Human-readable description of what the tool does."""
        return f"Tool: {self.name}"

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON schema of the arguments. Override to describe them."""
        return {"type": "object", "properties": {}}

    @abstractmethod
    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
        """
        Execute the tool with the given arguments.

        This method is called after capability checks (and approval, where
        required) have passed. It runs in a worker thread.

        Note:
            - Do NOT raise exceptions for expected failures (file not found, etc.)
            - Use ToolOutput.fail() for expected errors
        """
        ...

    def validate_args(self, args: dict[str, Any]) -> list[str]:
        """
        Validate the arguments for this tool.

        Returns:
            List of validation error messages (empty if valid)
        """
        return []

    def definition(self) -> ToolDefinition:
        """The definition offered to the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            capability=self.capability,
        )

    def __repr__(self) -> str:
        return f"<Tool: {self.name} ({self.capability})>"
