"""
Steward - local agent-loop orchestration engine.

Steward drives one multi-step, tool-using model session on an end-user
machine. It provides:
- Capability enforcement against an expiring policy snapshot
- Concurrent tool dispatch with human-in-the-loop approval
- Atomic crash-recovery checkpoints
- Context-window truncation and token-budget accounting

Example usage:
    $ steward run "make the tests pass" --handshake session.yaml
    $ steward resume .steward/checkpoints/sess_01.json --handshake session.yaml
    $ steward history sess_01
"""

__version__ = "0.1.0"
__author__ = "Steward Contributors"

__all__ = [
    "__version__",
    "__author__",
]
