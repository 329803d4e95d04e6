"""
Console rendering for Steward.

Renders threads, checkpoints, session status and approval requests with
the Rich library.

Design Principles:
    - Human-readable first: Optimize for quick scanning
    - Status at a glance: Use icons and colors for tool outcomes
    - Progressive detail: Summary first, full content with --verbose
"""

from collections import Counter

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from steward.schema import (
    ApprovalRequest,
    Checkpoint,
    Message,
    RiskLevel,
    Role,
    SessionState,
    SessionStatus,
    TaskState,
    ToolResultStatus,
)
from steward.thread.manager import is_truncation_marker

# Status icons
ICON_SUCCESS = "[green]✓[/green]"
ICON_ERROR = "[red]✗[/red]"
ICON_DENIED = "[yellow]⊘[/yellow]"
ICON_PENDING = "[dim]○[/dim]"

ROLE_STYLES = {
    Role.SYSTEM: "dim",
    Role.USER: "bold blue",
    Role.ASSISTANT: "bold green",
    Role.TOOL: "cyan",
}

RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


def _truncate(s: str, max_len: int) -> str:
    """Truncate string with ellipsis."""
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def _status_icon(status: ToolResultStatus | None) -> str:
    if status == ToolResultStatus.SUCCEEDED:
        return ICON_SUCCESS
    if status == ToolResultStatus.DENIED:
        return ICON_DENIED
    if status == ToolResultStatus.FAILED:
        return ICON_ERROR
    return ICON_PENDING


def _state_style(state: SessionState | TaskState) -> str:
    if state in (SessionState.COMPLETED, TaskState.COMPLETED):
        return "green"
    if state in (SessionState.FAILED, TaskState.FAILED):
        return "red"
    if state in (SessionState.CANCELLED, TaskState.CANCELLED, SessionState.PAUSED):
        return "yellow"
    return "cyan"


# =============================================================================
# Thread
# =============================================================================


def render_thread(
    messages: list[Message],
    console: Console | None = None,
    title: str = "Thread",
    verbose: bool = False,
) -> None:
    """
    Print a conversation thread as a table, followed by a tool summary.

    Args:
        messages: The thread to render
        console: Rich Console instance (creates one if not provided)
        title: Header text
        verbose: Show full content instead of a one-line preview
    """
    if console is None:
        console = Console()

    console.print(Panel(Text(f" {title} ", style="bold"), expand=False))

    table = Table(show_header=True, header_style="bold", show_lines=verbose, expand=True)
    table.add_column("#", style="dim", width=4, justify="right")
    table.add_column("Role", width=10)
    table.add_column("Step", style="dim", width=8)
    table.add_column("Tokens", justify="right", width=7)
    table.add_column("Content", overflow="fold")

    limit = 2000 if verbose else 80
    for index, message in enumerate(messages, start=1):
        role = Text(message.role.value, style=ROLE_STYLES.get(message.role, ""))
        table.add_row(
            str(index),
            role,
            message.step_id or "",
            str(message.token_count),
            _format_content(message, limit),
        )

    console.print(table)
    console.print()
    _print_tool_summary(console, messages)


def _format_content(message: Message, limit: int) -> str:
    if is_truncation_marker(message):
        return f"[magenta]{message.content}[/magenta]"

    parts = []
    if message.role == Role.TOOL:
        parts.append(f"{_status_icon(message.status)} [cyan]{message.tool_name or '?'}[/cyan]")
    if message.content:
        parts.append(_truncate(message.content.replace("\n", " ") if limit < 200 else message.content, limit))
    for call in message.tool_calls:
        args = ", ".join(f"{k}={_truncate(str(v), 30)}" for k, v in call.arguments.items())
        parts.append(f"[dim]→[/dim] [cyan]{call.tool_name}[/cyan]({args})")
    for ref in message.artifacts:
        parts.append(f"[dim]artifact {ref.artifact_id} ({ref.size_bytes} bytes)[/dim]")
    return "\n".join(parts)


def _print_tool_summary(console: Console, messages: list[Message]) -> None:
    outcomes = Counter(m.status for m in messages if m.role == Role.TOOL and m.status is not None)
    tools = Counter(m.tool_name for m in messages if m.role == Role.TOOL and m.tool_name)

    stats = Table(show_header=False, box=None, padding=(0, 2))
    stats.add_column("Metric", style="dim")
    stats.add_column("Value")
    stats.add_row("Messages", str(len(messages)))
    stats.add_row("Tokens", str(sum(m.token_count for m in messages)))
    succeeded = outcomes.get(ToolResultStatus.SUCCEEDED, 0)
    denied = outcomes.get(ToolResultStatus.DENIED, 0)
    failed = outcomes.get(ToolResultStatus.FAILED, 0)
    stats.add_row("Succeeded", f"[green]{succeeded}[/green]" if succeeded else "0")
    stats.add_row("Denied", f"[yellow]{denied}[/yellow]" if denied else "0")
    stats.add_row("Failed", f"[red]{failed}[/red]" if failed else "0")
    if tools:
        stats.add_row("Tools", ", ".join(f"{name} ×{count}" for name, count in tools.most_common(5)))
    console.print(stats)


# =============================================================================
# Checkpoint and status
# =============================================================================


def render_checkpoint(
    checkpoint: Checkpoint,
    console: Console | None = None,
    verbose: bool = False,
) -> None:
    """Print a checkpoint header and, with verbose, its thread."""
    if console is None:
        console = Console()

    header = Text()
    header.append(" Checkpoint ", style="bold")
    header.append(checkpoint.session_id, style="bold cyan")
    header.append(" │ ", style="dim")
    header.append(checkpoint.session_state.value.upper(), style=f"bold {_state_style(checkpoint.session_state)}")
    console.print(Panel(header, expand=False))

    console.print(f"  [dim]Written:[/dim]   {checkpoint.written_at.strftime('%Y-%m-%d %H:%M:%S')}")
    console.print(f"  [dim]Workspace:[/dim] {checkpoint.workspace_id}")
    console.print(f"  [dim]Policy:[/dim]    v{checkpoint.policy_version}")
    console.print(f"  [dim]Cursor:[/dim]    step {checkpoint.step_cursor}")
    usage = checkpoint.session_usage
    console.print(
        f"  [dim]Tokens:[/dim]    thread {checkpoint.thread_tokens}, "
        f"session {usage.input_tokens} in / {usage.output_tokens} out"
    )
    task = checkpoint.task
    if task is not None:
        console.print(
            f"  [dim]Task:[/dim]      {task.task_id} "
            f"[{_state_style(task.state)}]{task.state.value}[/{_state_style(task.state)}] "
            f"({task.step_count}/{task.options.max_steps} steps)"
        )
        if task.failure_reason:
            console.print(f"  [dim]Reason:[/dim]    [red]{task.failure_reason}[/red]")
    console.print()

    if verbose:
        render_thread(checkpoint.messages, console=console, title="Checkpointed thread", verbose=False)
    else:
        console.print(f"  [dim]{len(checkpoint.messages)} messages (use --verbose to list)[/dim]")


def render_status(status: SessionStatus, console: Console | None = None) -> None:
    """Print a one-panel session status summary."""
    if console is None:
        console = Console()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="dim")
    table.add_column("Value")
    state_style = _state_style(status.session_state)
    table.add_row("Session", f"{status.session_id or '-'} [{state_style}]{status.session_state.value}[/{state_style}]")
    if status.task_id:
        table.add_row("Task", f"{status.task_id} {status.task_state.value} ({status.step_count}/{status.max_steps})")
    if status.last_task_id and status.last_task_state:
        last_style = _state_style(status.last_task_state)
        table.add_row("Last task", f"{status.last_task_id} [{last_style}]{status.last_task_state.value}[/{last_style}]")
    table.add_row("Messages", f"{status.message_count} ({status.thread_tokens} tokens)")
    table.add_row(
        "Usage",
        f"{status.session_usage.input_tokens} in / {status.session_usage.output_tokens} out",
    )
    if status.pending_approvals:
        table.add_row("Pending approvals", f"[yellow]{status.pending_approvals}[/yellow]")
    console.print(Panel(table, title="Status", expand=False))


def render_approval_request(request: ApprovalRequest, console: Console | None = None) -> None:
    """Print an approval request for a human to decide on."""
    if console is None:
        console = Console()

    style = RISK_STYLES.get(request.risk_level, "")
    body = Text()
    body.append(f"{request.summary}\n", style="bold")
    body.append("capability: ", style="dim")
    body.append(f"{request.capability}\n")
    body.append("risk: ", style="dim")
    body.append(request.risk_level.value.upper(), style=style)
    for key, value in request.details.items():
        body.append(f"\n{key}: ", style="dim")
        body.append(_truncate(str(value), 200))
    console.print(Panel(body, title="Approval required", border_style=style, expand=False))
