"""
CLI entry point for Steward.

This module provides the Typer-based command-line interface for Steward.

Commands:
    run         Start a session from a handshake file and run one task
    resume      Recover a crashed or paused session from its checkpoint
    checkpoint  Inspect a checkpoint file
    history     Show a thread stored in the local history database

Architecture Note:
    The CLI is a thin host application: it builds a SessionController,
    streams notifications to the terminal and answers approval requests by
    prompting. All engine behavior lives in the library.
"""

import asyncio
import json
import logging
import traceback
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm

from steward import __version__
from steward.boundaries import FileSessionBackend
from steward.checkpoint.store import CheckpointStore
from steward.config import EngineConfig, load_config
from steward.errors import StewardError, UnknownApprovalRequestError
from steward.events import EventType, Notification
from steward.model.http import HttpModelClient
from steward.report import render_approval_request, render_checkpoint, render_status, render_thread
from steward.schema import ApprovalMode, ApprovalRequest, SessionState, TaskOptions, TaskSnapshot, TaskState
from steward.session.controller import SessionController
from steward.store import SQLiteHistoryStore
from steward.tools.builtin import builtin_registry
from steward.tools.registry import RegistryToolExecutor

# Initialize Typer app with metadata
app = typer.Typer(
    name="steward",
    help="Run a policy-governed, tool-using agent session on this machine.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()

EXIT_PAUSED = 2


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]steward[/bold] version {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _output_json_error(error: StewardError | Exception, include_traceback: bool = False) -> None:
    """Output an error in JSON format."""
    if isinstance(error, StewardError):
        output = {"error": True, **error.to_dict()}
    else:
        output = {"error": True, "error_type": type(error).__name__, "message": str(error)}
    if include_traceback:
        output["traceback"] = traceback.format_exc()
    print(json.dumps(output, indent=2, default=str))


def _report_error(error: Exception, json_output: bool, debug: bool) -> None:
    if json_output:
        _output_json_error(error, debug)
        return
    console.print(f"[red]{error}[/red]")
    if debug:
        console.print(f"[dim]{traceback.format_exc()}[/dim]")


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    Steward - local agent-loop orchestration under capability policy.

    Drives a multi-step, tool-using model session with capability checks,
    human approvals and crash-recovery checkpoints.
    """
    pass


# =============================================================================
# Host plumbing
# =============================================================================


class TerminalHost:
    """
    Terminal side of the notification and approval boundaries.

    Streams text deltas and tool activity to the console; queues approval
    requests and answers them by prompting, one at a time.
    """

    def __init__(self, controller: SessionController, json_output: bool = False) -> None:
        self.controller = controller
        self.json_output = json_output
        self._approvals: asyncio.Queue[ApprovalRequest] = asyncio.Queue()
        self._streaming = False

    def __call__(self, notification: Notification) -> None:
        if self.json_output:
            if notification.event_type == EventType.APPROVAL_REQUESTED:
                self._approvals.put_nowait(ApprovalRequest.model_validate(notification.payload["request"]))
            return

        payload = notification.payload
        event = notification.event_type
        if event == EventType.TEXT_DELTA:
            console.print(payload.get("text", ""), end="", highlight=False, markup=False)
            self._streaming = True
            return
        if self._streaming:
            console.print()
            self._streaming = False

        if event == EventType.STEP_STARTED:
            console.print(f"[dim]── {notification.step_id} ──[/dim]")
        elif event == EventType.TOOL_CALL_STARTED:
            console.print(f"[cyan]→ {payload.get('tool_name')}[/cyan] [dim]{payload.get('call_id')}[/dim]")
        elif event == EventType.TOOL_CALL_COMPLETED:
            status = payload.get("status")
            style = "green" if status == "succeeded" else "red"
            line = f"[{style}]← {payload.get('tool_name')} {status}[/{style}]"
            if payload.get("error"):
                line += f" [dim]{payload['error']}[/dim]"
            console.print(line)
        elif event == EventType.APPROVAL_REQUESTED:
            self._approvals.put_nowait(ApprovalRequest.model_validate(payload["request"]))
        elif event == EventType.APPROVAL_RESOLVED and payload.get("decided_by") != "human":
            verdict = "approved" if payload.get("approved") else "denied"
            console.print(f"[yellow]approval {verdict}: {payload.get('reason')}[/yellow]")
        elif event == EventType.STEP_LIMIT_WARNING:
            console.print(
                f"[yellow]⚠ {payload.get('step_count')} of {payload.get('max_steps')} steps used[/yellow]"
            )
        elif event == EventType.SESSION_PAUSED:
            console.print(f"[yellow]Session paused: {payload.get('reason')}[/yellow]")
        elif event == EventType.TASK_FAILED:
            console.print(f"[red]Task failed: {payload.get('reason')}[/red]")

    async def answer_approvals(self) -> None:
        """Prompt for each queued approval request until cancelled."""
        while True:
            request = await self._approvals.get()
            if self.json_output:
                # No terminal to ask; let the request time out
                continue
            render_approval_request(request, console=console)
            approved = await asyncio.to_thread(Confirm.ask, "Approve?", console=console, default=False)
            try:
                reason = None if approved else "denied at terminal"
                self.controller.deliver_approval(request.request_id, approved, reason=reason)
            except UnknownApprovalRequestError:
                console.print("[dim]Request already settled (timed out or cancelled)[/dim]")


async def _drive(controller: SessionController, host: TerminalHost) -> TaskSnapshot | None:
    """Wait for the task while answering approvals; then end or keep the session."""
    prompter = asyncio.get_running_loop().create_task(host.answer_approvals())
    try:
        task = await controller.wait_for_task()
    finally:
        prompter.cancel()
        await asyncio.gather(prompter, return_exceptions=True)

    if controller.status().session_state == SessionState.RUNNING:
        await controller.shutdown()
    else:
        await controller.drain_uploads()
    return task


def _build_controller(
    config: EngineConfig,
    handshake_path: Path,
    working_dir: Path,
    history_db: Optional[Path],
) -> tuple[SessionController, SQLiteHistoryStore]:
    store = SQLiteHistoryStore(history_db or config.history_db_path)
    executor = RegistryToolExecutor(builtin_registry(), working_dir=str(working_dir))
    controller = SessionController(
        model=HttpModelClient(config.model),
        executor=executor,
        backend=FileSessionBackend(handshake_path),
        history_store=store,
        config=config,
    )
    return controller, store


def _finish(task: TaskSnapshot | None, controller: SessionController, json_output: bool) -> None:
    status = controller.status()
    if json_output:
        print(
            json.dumps(
                {
                    "status": status.model_dump(mode="json"),
                    "task": task.model_dump(mode="json") if task else None,
                },
                indent=2,
            )
        )
    else:
        console.print()
        render_status(status, console=console)

    if status.session_state == SessionState.PAUSED:
        if not json_output and controller.checkpoints is not None:
            console.print(f"[yellow]Resume with: steward resume {controller.checkpoints.path}[/yellow]")
        raise typer.Exit(code=EXIT_PAUSED)
    if task is None or task.state != TaskState.COMPLETED:
        raise typer.Exit(code=1)
    raise typer.Exit(code=0)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def run(
    prompt: Annotated[
        str,
        typer.Argument(help="The task for the agent."),
    ],
    handshake_path: Annotated[
        Path,
        typer.Option(
            "--handshake",
            "-H",
            help="Path to the handshake YAML file (session id, workspace, policy snapshot).",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to the engine configuration YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    max_steps: Annotated[
        int,
        typer.Option("--max-steps", help="Maximum number of steps for the task."),
    ] = 25,
    allow_network: Annotated[
        bool,
        typer.Option("--allow-network", help="Allow network capabilities for this task."),
    ] = False,
    approval_mode: Annotated[
        ApprovalMode,
        typer.Option("--approval-mode", help="How approval-required calls are handled."),
    ] = ApprovalMode.INTERACTIVE,
    working_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--working-dir",
            "-w",
            help="Working directory for tool execution.",
            resolve_path=True,
        ),
    ] = None,
    history_db: Annotated[
        Optional[Path],
        typer.Option("--history-db", help="SQLite history database (overrides config).", resolve_path=True),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable verbose (debug) logging."),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug mode with full error tracebacks."),
    ] = False,
) -> None:
    """
    Start a session and run one task to completion.

    Example:
        $ steward run "make the tests pass" --handshake session.yaml
        $ steward run "summarize README.md" -H session.yaml --approval-mode strict
    """
    _configure_logging(verbose)
    try:
        config = load_config(config_path)
        handshake = FileSessionBackend(handshake_path).handshake()
        options = TaskOptions(max_steps=max_steps, allow_network=allow_network, approval_mode=approval_mode)
    except Exception as e:
        _report_error(e, json_output, debug)
        raise typer.Exit(code=1)

    if verbose and not json_output:
        console.print(f"[dim]Loaded handshake: {handshake_path}[/dim]")
        console.print(f"[dim]Model: {config.model.model} at {config.model.base_url}[/dim]")

    async def session() -> tuple[TaskSnapshot | None, SessionController]:
        controller, store = _build_controller(config, handshake_path, working_dir or Path.cwd(), history_db)
        host = TerminalHost(controller, json_output)
        controller.events.subscribe(host)
        try:
            await controller.start(handshake)
            await controller.start_task(prompt, options)
            task = await _drive(controller, host)
        finally:
            await controller.model.aclose()
            store.close()
        return task, controller

    try:
        task, controller = asyncio.run(session())
    except StewardError as e:
        _report_error(e, json_output, debug)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; the checkpoint is kept for resume[/yellow]")
        raise typer.Exit(code=130)

    _finish(task, controller, json_output)


@app.command()
def resume(
    checkpoint_path: Annotated[
        Path,
        typer.Argument(
            help="Path to the checkpoint file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    handshake_path: Annotated[
        Path,
        typer.Option(
            "--handshake",
            "-H",
            help="Handshake YAML re-read to refresh the policy snapshot.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Engine configuration YAML.", exists=True, resolve_path=True),
    ] = None,
    working_dir: Annotated[
        Optional[Path],
        typer.Option("--working-dir", "-w", help="Working directory for tool execution.", resolve_path=True),
    ] = None,
    history_db: Annotated[
        Optional[Path],
        typer.Option("--history-db", help="SQLite history database (overrides config).", resolve_path=True),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable verbose (debug) logging."),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug mode with full error tracebacks."),
    ] = False,
) -> None:
    """
    Recover a session from its checkpoint and continue any unfinished task.

    Example:
        $ steward resume .steward/checkpoints/sess_01.json --handshake session.yaml
    """
    _configure_logging(verbose)
    try:
        config = load_config(config_path)
        checkpoint = CheckpointStore(checkpoint_path).load()
    except Exception as e:
        _report_error(e, json_output, debug)
        raise typer.Exit(code=1)

    if checkpoint is None:
        _report_error(FileNotFoundError(f"No checkpoint at {checkpoint_path}"), json_output, debug)
        raise typer.Exit(code=1)

    # Keep writing to the same file the checkpoint came from
    config = config.model_copy(update={"checkpoint_dir": checkpoint_path.parent})

    async def session() -> tuple[TaskSnapshot | None, SessionController]:
        controller, store = _build_controller(config, handshake_path, working_dir or Path.cwd(), history_db)
        host = TerminalHost(controller, json_output)
        controller.events.subscribe(host)
        try:
            await controller.resume(checkpoint)
            task = await _drive(controller, host)
        finally:
            await controller.model.aclose()
            store.close()
        return task, controller

    try:
        task, controller = asyncio.run(session())
    except StewardError as e:
        _report_error(e, json_output, debug)
        raise typer.Exit(code=1)

    _finish(task, controller, json_output)


@app.command("checkpoint")
def show_checkpoint(
    checkpoint_path: Annotated[
        Path,
        typer.Argument(help="Path to the checkpoint file.", exists=True, readable=True, resolve_path=True),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the checkpoint as JSON."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="List the checkpointed thread."),
    ] = False,
) -> None:
    """
    Inspect a checkpoint file.

    Note that an unreadable or unsupported checkpoint is discarded on load.
    """
    try:
        checkpoint = CheckpointStore(checkpoint_path).load()
    except StewardError as e:
        _report_error(e, json_output, False)
        raise typer.Exit(code=1)

    if checkpoint is None:
        console.print(f"[red]No checkpoint at {checkpoint_path}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        print(checkpoint.model_dump_json(indent=2))
    else:
        render_checkpoint(checkpoint, console=console, verbose=verbose)


@app.command()
def history(
    session_id: Annotated[
        Optional[str],
        typer.Argument(help="Session to show; omit to list stored sessions."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to the SQLite history database.", resolve_path=True),
    ] = Path(".steward/history.db"),
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output in JSON format."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Show full message content."),
    ] = False,
) -> None:
    """
    Show threads pushed to the local history database.

    Example:
        $ steward history
        $ steward history sess_01 --verbose
    """
    if not db.exists():
        console.print(f"[red]No history database at {db}[/red]")
        raise typer.Exit(code=1)

    try:
        with SQLiteHistoryStore(db) as store:
            if session_id is None:
                sessions = store.list_sessions()
                if json_output:
                    print(json.dumps(sessions, indent=2))
                    return
                if not sessions:
                    console.print("[dim]No sessions stored.[/dim]")
                    return
                for entry in sessions:
                    console.print(
                        f"[cyan]{entry['session_id']}[/cyan]  {entry['updated_at']}  "
                        f"[dim]{entry['message_count']} messages, {entry['push_count']} pushes[/dim]"
                    )
                return

            messages = store.load_thread(session_id)
    except StewardError as e:
        _report_error(e, json_output, False)
        raise typer.Exit(code=1)

    if messages is None:
        console.print(f"[red]No thread stored for session {session_id}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        print(json.dumps([m.model_dump(mode="json") for m in messages], indent=2))
    else:
        render_thread(messages, console=console, title=f"Session {session_id}", verbose=verbose)


if __name__ == "__main__":
    app()
