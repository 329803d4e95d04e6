"""
Crash-recovery checkpoints for Steward.

One JSON file per session, replaced atomically after every step and
removed on clean shutdown.
"""

from steward.checkpoint.store import CheckpointStore, checkpoint_path

__all__ = [
    "CheckpointStore",
    "checkpoint_path",
]
