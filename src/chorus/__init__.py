"""Chorus: multi-agent coding orchestration core.

Coordinates autonomous coding agents running in isolated git worktrees,
gates their completions through an approval policy, and serializes merges
into the shared branch through a conflict-aware queue.
"""

__version__ = "0.1.0"
