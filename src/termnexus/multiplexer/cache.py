"""TTL cache over Zellij session and tab queries."""

from __future__ import annotations

import logging as py_logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from termnexus.errors import MultiplexerError, MultiplexerTimeoutError
from termnexus.multiplexer.zellij import ZellijClient

logger = py_logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5.0
DAEMON_IDENTITY = "daemon"

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    captured_at: float


class SessionCache:
    """Stale-tolerant view of external Zellij state.

    Entries are keyed by ``(session_name, identity)`` and expire after ``ttl``
    seconds. Query failures degrade to ``False``/``[]`` and are cached like
    real answers; a timeout is logged separately from a missing session. Callers must :meth:`invalidate` after creating or
    renaming a tab.
    """

    def __init__(
        self,
        client: ZellijClient,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._exists: dict[tuple[str, str], CacheEntry[bool]] = {}
        self._tabs: dict[tuple[str, str], CacheEntry[list[str]]] = {}

    @staticmethod
    def _key(session_name: str, as_user: str | None) -> tuple[str, str]:
        return session_name, as_user or DAEMON_IDENTITY

    def _fresh(self, entry: CacheEntry[T] | None, now: float) -> bool:
        return entry is not None and now - entry.captured_at < self.ttl_seconds

    async def session_exists(self, session_name: str, as_user: str | None = None) -> bool:
        key = self._key(session_name, as_user)
        now = self._clock()
        cached = self._exists.get(key)
        if cached is not None and self._fresh(cached, now):
            return cached.value

        try:
            exists = await self._client.session_exists(session_name, as_user=as_user)
        except MultiplexerTimeoutError:
            logger.warning("zellij timeout checking session %s; zellij may be stuck", session_name)
            exists = False
        except MultiplexerError as exc:
            logger.debug("zellij session %s not listed: %s", session_name, exc)
            exists = False
        self._exists[key] = CacheEntry(value=exists, captured_at=now)
        return exists

    async def get_tabs(self, session_name: str, as_user: str | None = None) -> list[str]:
        key = self._key(session_name, as_user)
        now = self._clock()
        cached = self._tabs.get(key)
        if cached is not None and self._fresh(cached, now):
            return list(cached.value)

        try:
            tabs = await self._client.query_tab_names(session_name, as_user=as_user)
        except MultiplexerTimeoutError:
            logger.warning("zellij timeout listing tabs for session %s; zellij may be stuck", session_name)
            tabs = []
        except MultiplexerError as exc:
            logger.warning("zellij failed listing tabs for session %s: %s", session_name, exc)
            tabs = []
        self._tabs[key] = CacheEntry(value=list(tabs), captured_at=now)
        return list(tabs)

    def invalidate(self, session_name: str, as_user: str | None = None) -> None:
        key = self._key(session_name, as_user)
        self._exists.pop(key, None)
        self._tabs.pop(key, None)
