"""
Reporting module for Steward.

Rich terminal rendering of threads (from the history store or a
checkpoint), session status and approval requests.
"""

from steward.report.console import (
    render_approval_request,
    render_checkpoint,
    render_status,
    render_thread,
)

__all__ = [
    "render_approval_request",
    "render_checkpoint",
    "render_status",
    "render_thread",
]
