"""Zellij control and query caching."""

from .cache import SessionCache
from .zellij import ZellijClient, run_shell_command

__all__ = ["SessionCache", "ZellijClient", "run_shell_command"]
