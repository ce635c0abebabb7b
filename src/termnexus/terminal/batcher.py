"""Coalesces PTY output into fewer, larger transport messages."""

from __future__ import annotations

import asyncio
import logging as py_logging
from collections.abc import Callable

logger = py_logging.getLogger(__name__)

DEFAULT_BATCH_INTERVAL_SECONDS = 0.010
DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024


class OutputBatcher:
    """Buffers output until ``interval_seconds`` elapse or ``max_buffer_size`` UTF-8 bytes are held.

    States: idle (empty buffer, no timer) and pending (buffer and one timer).
    All calls must come from the event loop thread.
    """

    def __init__(
        self,
        on_flush: Callable[[str], None],
        *,
        interval_seconds: float = DEFAULT_BATCH_INTERVAL_SECONDS,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._on_flush = on_flush
        self.interval_seconds = interval_seconds
        self.max_buffer_size = max_buffer_size
        self._loop = loop
        self._buffer: list[str] = []
        self._size = 0
        self._timer: asyncio.TimerHandle | None = None
        self._first_flush = asyncio.Event()
        self._destroyed = False

    @property
    def buffered_size(self) -> int:
        return self._size

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def push(self, data: str) -> None:
        if self._destroyed or not data:
            return
        self._buffer.append(data)
        self._size += len(data.encode("utf-8", errors="replace"))

        if self._size >= self.max_buffer_size:
            self.flush()
            return

        if self._timer is None:
            loop = self._loop or asyncio.get_running_loop()
            self._timer = loop.call_later(self.interval_seconds, self.flush)

    def flush(self) -> None:
        self._cancel_timer()
        if not self._buffer:
            return
        data = "".join(self._buffer)
        self._buffer.clear()
        self._size = 0
        self._first_flush.set()
        try:
            self._on_flush(data)
        except Exception:
            logger.warning("Output sink raised while flushing %s chars", len(data), exc_info=True)

    def destroy(self) -> None:
        """Drop buffered output and the pending timer without emitting."""
        self._cancel_timer()
        self._buffer.clear()
        self._size = 0
        self._destroyed = True

    async def wait_first_flush(self, timeout: float) -> bool:
        """Wait for the first emission; ``False`` when ``timeout`` elapses first."""
        try:
            await asyncio.wait_for(self._first_flush.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
