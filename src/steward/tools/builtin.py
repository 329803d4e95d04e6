"""
Built-in local tools.

A small tool set for running Steward standalone (the CLI registers these):
- read_file:   File.Read
- write_file:  File.Write
- run_command: Shell.Exec

Capability checks and approvals happen BEFORE these tools execute. By the
time execute() is called, paths and base commands have been validated
against the policy snapshot. The tools still handle ordinary failures
(missing files, permissions, encodings) and report them as ToolOutput.fail().

Commands are always executed as an argument list, never through a shell.
"""

import os
import subprocess
from pathlib import Path
from typing import Any

from steward.tools.base import Tool, ToolContext, ToolOutput
from steward.tools.registry import ToolRegistry


def _resolve(path_str: str, context: ToolContext) -> Path:
    path = Path(path_str).expanduser()
    if not path.is_absolute():
        path = Path(context.working_dir) / path
    return path.resolve()


def _require_path(args: dict[str, Any]) -> list[str]:
    if "path" not in args:
        return ["'path' is required"]
    if not isinstance(args["path"], str):
        return ["'path' must be a string"]
    if not args["path"].strip():
        return ["'path' cannot be empty"]
    return []


class ReadFileTool(Tool):
    """
    Read a text file.

    Arguments:
        path (str): Path to the file to read (required)
        encoding (str): Text encoding, default "utf-8"
    """

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def capability(self) -> str:
        return "File.Read"

    @property
    def description(self) -> str:
        return "Read the contents of a text file"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File to read"},
                "encoding": {"type": "string", "default": "utf-8"},
            },
            "required": ["path"],
        }

    def validate_args(self, args: dict[str, Any]) -> list[str]:
        errors = _require_path(args)
        if "encoding" in args and not isinstance(args["encoding"], str):
            errors.append("'encoding' must be a string")
        return errors

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
        path_str = args["path"]
        encoding = args.get("encoding", "utf-8")
        try:
            path = _resolve(path_str, context)
        except (ValueError, OSError) as e:
            return ToolOutput.fail(f"Invalid path: {e}")

        if not path.exists():
            return ToolOutput.fail(f"File not found: {path_str}", path=str(path))
        if not path.is_file():
            return ToolOutput.fail(f"Not a file: {path_str}", path=str(path))

        try:
            content = path.read_text(encoding=encoding)
        except PermissionError:
            return ToolOutput.fail(f"Permission denied: {path_str}", path=str(path))
        except UnicodeDecodeError as e:
            return ToolOutput.fail(f"Encoding error reading {path_str}: {e}", path=str(path))
        except OSError as e:
            return ToolOutput.fail(f"Error reading {path_str}: {e}", path=str(path))
        return ToolOutput.ok(content, path=str(path), size=len(content))


class WriteFileTool(Tool):
    """
    Write (or append) text to a file.

    Arguments:
        path (str): Path to the file to write (required)
        content (str): Content to write (required)
        mode (str): "overwrite" (default) or "append"
        create_dirs (bool): Create parent directories if needed, default False
    """

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def capability(self) -> str:
        return "File.Write"

    @property
    def description(self) -> str:
        return "Write text content to a file"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File to write"},
                "content": {"type": "string", "description": "Text to write"},
                "mode": {"type": "string", "enum": ["overwrite", "append"]},
                "create_dirs": {"type": "boolean"},
            },
            "required": ["path", "content"],
        }

    def validate_args(self, args: dict[str, Any]) -> list[str]:
        errors = _require_path(args)
        if "content" not in args:
            errors.append("'content' is required")
        elif not isinstance(args["content"], str):
            errors.append("'content' must be a string")
        if "mode" in args and args["mode"] not in ("overwrite", "append"):
            errors.append("'mode' must be 'overwrite' or 'append'")
        return errors

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
        path_str = args["path"]
        content = args["content"]
        mode = args.get("mode", "overwrite")
        try:
            path = _resolve(path_str, context)
        except (ValueError, OSError) as e:
            return ToolOutput.fail(f"Invalid path: {e}")

        if args.get("create_dirs"):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                return ToolOutput.fail(f"Failed to create directories: {e}")
        if not path.parent.exists():
            return ToolOutput.fail(f"Parent directory does not exist: {path.parent}", path=str(path))

        try:
            with path.open("a" if mode == "append" else "w", encoding="utf-8") as f:
                f.write(content)
        except PermissionError:
            return ToolOutput.fail(f"Permission denied: {path_str}", path=str(path))
        except OSError as e:
            return ToolOutput.fail(f"Error writing {path_str}: {e}", path=str(path))
        written = len(content.encode("utf-8"))
        return ToolOutput.ok(f"Wrote {written} bytes to {path}", path=str(path), mode=mode)


class RunCommandTool(Tool):
    """
    Run a command without a shell.

    Arguments:
        command (list[str]): Executable followed by its arguments (required)
        cwd (str): Working directory (optional)

    The process is never killed by Steward; a hung command keeps its worker
    thread until it exits.
    """

    max_output_bytes = 256 * 1024

    @property
    def name(self) -> str:
        return "run_command"

    @property
    def capability(self) -> str:
        return "Shell.Exec"

    @property
    def description(self) -> str:
        return "Run a command given as a list of arguments (no shell)"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Executable and arguments, e.g. [\"ls\", \"-la\"]",
                },
                "cwd": {"type": "string"},
            },
            "required": ["command"],
        }

    def validate_args(self, args: dict[str, Any]) -> list[str]:
        errors = []
        command = args.get("command")
        if command is None:
            errors.append("'command' is required")
        elif not isinstance(command, list) or not command:
            errors.append("'command' must be a non-empty list of strings")
        elif not all(isinstance(part, str) for part in command):
            errors.append("'command' elements must be strings")
        if "cwd" in args and not isinstance(args["cwd"], str):
            errors.append("'cwd' must be a string")
        return errors

    def execute(self, args: dict[str, Any], context: ToolContext) -> ToolOutput:
        command = args["command"]
        try:
            cwd = _resolve(args.get("cwd", "."), context)
        except (ValueError, OSError) as e:
            return ToolOutput.fail(f"Invalid working directory: {e}")
        if not cwd.is_dir():
            return ToolOutput.fail(f"Working directory does not exist: {cwd}", cwd=str(cwd))

        try:
            result = subprocess.run(
                command,
                cwd=str(cwd),
                env=os.environ.copy(),
                capture_output=True,
                shell=False,
            )
        except FileNotFoundError:
            return ToolOutput.fail(f"Executable not found: {command[0]}", executable=command[0])
        except PermissionError:
            return ToolOutput.fail(f"Permission denied executing: {command[0]}", executable=command[0])
        except OSError as e:
            return ToolOutput.fail(f"OS error executing command: {e}", command=command)

        stdout = result.stdout[: self.max_output_bytes].decode("utf-8", errors="replace")
        stderr = result.stderr[: self.max_output_bytes].decode("utf-8", errors="replace")
        data = {"return_code": result.returncode, "stdout": stdout, "stderr": stderr}
        if result.returncode != 0:
            return ToolOutput(
                success=False,
                data=data,
                error=f"Command exited with status {result.returncode}",
                metadata={"command": command},
            )
        return ToolOutput.ok(data, command=command)


def builtin_registry() -> ToolRegistry:
    """A registry holding the built-in tools."""
    return ToolRegistry([ReadFileTool(), WriteFileTool(), RunCommandTool()])
