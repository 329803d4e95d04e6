"""
Agent loop for Steward.

The StepLoop drives one task: model turn, capability checks, approvals,
tool execution and checkpointing, step after step.
"""

from steward.agent.loop import LoopOutcome, PauseReason, StepLoop

__all__ = [
    "LoopOutcome",
    "PauseReason",
    "StepLoop",
]
