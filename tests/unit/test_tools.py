"""
Unit tests for in-process tools.

Tests cover:
- ToolOutput helpers and Tool definitions
- ToolRegistry registration and lookup
- RegistryToolExecutor (argument validation, ToolOutput -> ToolResult)
- Built-in read_file, write_file and run_command
"""

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from steward.errors import ToolNotFoundError
from steward.schema import ToolCall, ToolResultStatus
from steward.tools import (
    RegistryToolExecutor,
    Tool,
    ToolContext,
    ToolOutput,
    ToolRegistry,
    builtin_registry,
)
from steward.tools.builtin import ReadFileTool, RunCommandTool, WriteFileTool


class EchoTool(Tool):
    """Minimal tool for registry tests."""

    @property
    def name(self) -> str:
        return "echo"

    @property
    def capability(self) -> str:
        return "Util.Echo"

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
        return ToolOutput.ok({"message": args.get("message", ""), "call": context.call_id})


@pytest.fixture
def context(temp_dir: Path) -> ToolContext:
    return ToolContext(call_id="c1", working_dir=str(temp_dir))


def run_call(executor: RegistryToolExecutor, tool_name: str, capability: str, **arguments: Any):
    call = ToolCall(call_id="c1", tool_name=tool_name, arguments=arguments)
    return asyncio.run(executor.execute(call, capability))


# =============================================================================
# Base and registry
# =============================================================================


class TestToolOutput:
    def test_ok(self) -> None:
        output = ToolOutput.ok("data", path="/x")
        assert output.success
        assert output.metadata == {"path": "/x"}

    def test_fail(self) -> None:
        output = ToolOutput.fail("nope")
        assert not output.success
        assert output.error == "nope"


class TestToolRegistry:
    """Registration and lookup."""

    def test_register_and_get(self) -> None:
        registry = ToolRegistry([EchoTool()])
        assert "echo" in registry
        assert registry.get("echo").capability == "Util.Echo"
        assert len(registry) == 1

    def test_get_missing(self) -> None:
        with pytest.raises(ToolNotFoundError):
            ToolRegistry().get("missing")

    def test_unregister(self) -> None:
        registry = ToolRegistry([EchoTool()])
        assert registry.unregister("echo") is True
        assert registry.unregister("echo") is False

    def test_definitions_carry_capability(self) -> None:
        definitions = builtin_registry().definitions()
        assert [(d.name, d.capability) for d in definitions] == [
            ("read_file", "File.Read"),
            ("run_command", "Shell.Exec"),
            ("write_file", "File.Write"),
        ]


class TestRegistryToolExecutor:
    """Executor wrapping the registry."""

    def test_structured_output_rendered_as_json(self, temp_dir: Path) -> None:
        executor = RegistryToolExecutor(ToolRegistry([EchoTool()]), working_dir=str(temp_dir))
        result = run_call(executor, "echo", "Util.Echo", message="hi")
        assert result.status == ToolResultStatus.SUCCEEDED
        assert '"message": "hi"' in result.output
        assert result.call_id == "c1"

    def test_invalid_arguments_fail(self, temp_dir: Path) -> None:
        executor = RegistryToolExecutor(builtin_registry(), working_dir=str(temp_dir))
        result = run_call(executor, "read_file", "File.Read")
        assert result.status == ToolResultStatus.FAILED
        assert "'path' is required" in result.error

    def test_unknown_tool_raises(self, temp_dir: Path) -> None:
        executor = RegistryToolExecutor(builtin_registry(), working_dir=str(temp_dir))
        with pytest.raises(ToolNotFoundError):
            run_call(executor, "missing", "File.Read")


# =============================================================================
# Built-in tools
# =============================================================================


class TestReadFileTool:
    def test_read(self, temp_dir: Path, context: ToolContext) -> None:
        (temp_dir / "a.txt").write_text("hello")
        output = ReadFileTool().execute({"path": "a.txt"}, context)
        assert output.success
        assert output.data == "hello"

    def test_missing_file(self, context: ToolContext) -> None:
        output = ReadFileTool().execute({"path": "nope.txt"}, context)
        assert not output.success
        assert "File not found" in output.error

    def test_directory(self, temp_dir: Path, context: ToolContext) -> None:
        (temp_dir / "sub").mkdir()
        assert "Not a file" in ReadFileTool().execute({"path": "sub"}, context).error


class TestWriteFileTool:
    def test_write_and_append(self, temp_dir: Path, context: ToolContext) -> None:
        tool = WriteFileTool()
        assert tool.execute({"path": "out.txt", "content": "one"}, context).success
        assert tool.execute({"path": "out.txt", "content": "two", "mode": "append"}, context).success
        assert (temp_dir / "out.txt").read_text() == "onetwo"

    def test_missing_parent(self, context: ToolContext) -> None:
        output = WriteFileTool().execute({"path": "deep/dir/out.txt", "content": "x"}, context)
        assert not output.success

    def test_create_dirs(self, temp_dir: Path, context: ToolContext) -> None:
        output = WriteFileTool().execute({"path": "deep/out.txt", "content": "x", "create_dirs": True}, context)
        assert output.success
        assert (temp_dir / "deep" / "out.txt").exists()

    def test_validation(self) -> None:
        errors = WriteFileTool().validate_args({"path": "a", "mode": "truncate"})
        assert "'content' is required" in errors
        assert "'mode' must be 'overwrite' or 'append'" in errors


class TestRunCommandTool:
    def test_success(self, context: ToolContext) -> None:
        output = RunCommandTool().execute({"command": [sys.executable, "-c", "print('hi')"]}, context)
        assert output.success
        assert output.data["stdout"].strip() == "hi"
        assert output.data["return_code"] == 0

    def test_nonzero_exit(self, context: ToolContext) -> None:
        output = RunCommandTool().execute({"command": [sys.executable, "-c", "import sys; sys.exit(3)"]}, context)
        assert not output.success
        assert output.data["return_code"] == 3

    def test_missing_executable(self, context: ToolContext) -> None:
        output = RunCommandTool().execute({"command": ["definitely-not-a-real-binary-xyz"]}, context)
        assert not output.success
        assert "Executable not found" in output.error

    def test_requires_list(self) -> None:
        assert RunCommandTool().validate_args({"command": "ls -la"}) == [
            "'command' must be a non-empty list of strings"
        ]
