"""Persistent per-user, per-worktree terminals on top of zellij."""

__version__ = "0.1.0"
