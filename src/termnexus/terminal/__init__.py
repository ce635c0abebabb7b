"""Terminal orchestration package."""

from .batcher import OutputBatcher
from .models import (
    CreateTerminalRequest,
    CreateTerminalResult,
    ResizeRequest,
    TabAction,
    Terminal,
    TerminalEvent,
    TerminalInfo,
    TerminalPatch,
    TerminalSummary,
)
from .pty_backend import PtyBackend, PtyHandle, TerminalPty
from .service import TerminalService, build_init_commands

__all__ = [
    "build_init_commands",
    "CreateTerminalRequest",
    "CreateTerminalResult",
    "OutputBatcher",
    "PtyBackend",
    "PtyHandle",
    "ResizeRequest",
    "TabAction",
    "Terminal",
    "TerminalEvent",
    "TerminalInfo",
    "TerminalPatch",
    "TerminalPty",
    "TerminalService",
    "TerminalSummary",
]
