"""Read-only user and worktree lookups consumed by the terminal service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from termnexus.config import AppConfig


@dataclass(frozen=True)
class Worktree:
    worktree_id: str
    name: str
    path: str


class UserDirectory(Protocol):
    async def get_unix_username(self, user_id: str) -> str | None: ...

    async def get_environment(self, user_id: str) -> dict[str, str]: ...


class WorktreeDirectory(Protocol):
    async def get(self, worktree_id: str) -> Worktree | None: ...


class ConfigDirectory:
    """Serves users and worktrees declared in the TOML config."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    async def get_unix_username(self, user_id: str) -> str | None:
        entry = self._config.users.get(user_id)
        return entry.unix_username if entry else None

    async def get_environment(self, user_id: str) -> dict[str, str]:
        entry = self._config.users.get(user_id)
        return dict(entry.env) if entry else {}

    async def get(self, worktree_id: str) -> Worktree | None:
        entry = self._config.worktrees.get(worktree_id)
        if entry is None:
            return None
        return Worktree(worktree_id=worktree_id, name=entry.name, path=entry.path)
