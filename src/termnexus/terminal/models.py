"""Terminal domain models."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from termnexus.terminal.batcher import OutputBatcher
from termnexus.terminal.pty_backend import TerminalPty


class TabAction(str, Enum):
    FIRST_SESSION = "first-session"
    NEW_TAB = "new-tab"
    SWITCH_TAB = "switch-tab"


@dataclass(frozen=True)
class CreateTerminalRequest:
    cwd: str | None = None
    shell: str | None = None
    cols: int | None = None
    rows: int | None = None
    user_id: str | None = None
    worktree_id: str | None = None


@dataclass(frozen=True)
class ResizeRequest:
    cols: int
    rows: int


@dataclass(frozen=True)
class TerminalPatch:
    input: str | None = None
    resize: ResizeRequest | None = None


@dataclass(frozen=True)
class CreateTerminalResult:
    terminal_id: str
    cwd: str
    session_name: str
    reused_existing_session: bool
    worktree_name: str | None = None


@dataclass(frozen=True)
class TerminalInfo:
    terminal_id: str
    cwd: str
    alive: bool


@dataclass(frozen=True)
class TerminalSummary:
    terminal_id: str
    cwd: str
    created_at: datetime


@dataclass(frozen=True)
class TerminalEvent:
    terminal_id: str
    step: str
    message: str


@dataclass
class Terminal:
    terminal_id: str
    pty: TerminalPty
    shell: str
    cwd: str
    session_name: str
    cols: int
    rows: int
    batcher: OutputBatcher
    user_id: str | None = None
    worktree_id: str | None = None
    unix_user: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    env: dict[str, str] = field(default_factory=dict)
    exit_code: int | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)

    def release(self) -> None:
        """Flush pending output, then drop the batcher's buffer and timer."""
        self.batcher.flush()
        self.batcher.destroy()
