"""Ptyprocess-backed PTY lifecycle for terminals."""

from __future__ import annotations

import asyncio
import codecs
import logging as py_logging
import os
import signal as py_signal
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from typing import Protocol

from termnexus.errors import SpawnError, TermNexusError

logger = py_logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
DataCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]


class TerminalPty(Protocol):
    pid: int

    def on_data(self, callback: DataCallback) -> None: ...

    def on_exit(self, callback: ExitCallback) -> None: ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self, signal: int = py_signal.SIGTERM) -> None: ...

    def isalive(self) -> bool: ...


PtySpawn = Callable[..., TerminalPty]


class PtyHandle:
    """Event-loop adapter over a :class:`ptyprocess.PtyProcess`.

    The master fd is only watched once a callback is registered, so output
    produced before registration waits in the kernel buffer.
    """

    def __init__(self, process: object, *, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._process = process
        self._fd: int = process.fd
        self.pid: int = process.pid
        self._loop = loop or asyncio.get_running_loop()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._data_callback: DataCallback | None = None
        self._exit_callback: ExitCallback | None = None
        self._reading = False
        self._reap_task: asyncio.Task[None] | None = None

    def on_data(self, callback: DataCallback) -> None:
        self._data_callback = callback
        self._start_reading()

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callback = callback
        self._start_reading()

    def write(self, data: str) -> None:
        self._process.write(data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        self._process.setwinsize(rows, cols)

    def kill(self, signal: int = py_signal.SIGTERM) -> None:
        if not self.isalive():
            return
        with suppress(ProcessLookupError):
            self._process.kill(signal)

    def isalive(self) -> bool:
        try:
            return bool(self._process.isalive())
        except Exception:
            return False

    def _start_reading(self) -> None:
        if self._reading:
            return
        self._reading = True
        self._loop.add_reader(self._fd, self._on_readable)

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self._fd, READ_CHUNK_SIZE)
        except OSError:
            # Linux reports EIO on the master once the child side is gone.
            chunk = b""
        if not chunk:
            self._on_eof()
            return
        text = self._decoder.decode(chunk)
        if text and self._data_callback is not None:
            self._data_callback(text)

    def _on_eof(self) -> None:
        self._loop.remove_reader(self._fd)
        tail = self._decoder.decode(b"", final=True)
        if tail and self._data_callback is not None:
            self._data_callback(tail)
        if self._reap_task is None:
            self._reap_task = self._loop.create_task(self._reap())

    async def _reap(self) -> None:
        try:
            await self._loop.run_in_executor(None, self._process.wait)
        except Exception:
            logger.warning("Failed to reap pty pid=%s", self.pid, exc_info=True)
        exit_code = _exit_code(self._process)
        with suppress(OSError):
            self._process.close(force=True)
        if self._exit_callback is not None:
            self._exit_callback(exit_code)


def _exit_code(process: object) -> int:
    status = getattr(process, "exitstatus", None)
    if status is not None:
        return int(status)
    signal_status = getattr(process, "signalstatus", None)
    if signal_status is not None:
        return 128 + int(signal_status)
    return -1


def _spawn_with_ptyprocess(
    command: str,
    args: Sequence[str],
    *,
    name: str,
    cols: int,
    rows: int,
    cwd: str | None,
    env: Mapping[str, str] | None,
) -> PtyHandle:
    from ptyprocess import PtyProcess

    spawn_env = dict(env) if env is not None else None
    if spawn_env is not None:
        spawn_env.setdefault("TERM", name)
    process = PtyProcess.spawn([command, *args], cwd=cwd, env=spawn_env, dimensions=(rows, cols))
    return PtyHandle(process)


class PtyBackend:
    def __init__(self, spawn: PtySpawn | None = None) -> None:
        self._spawn = spawn or _spawn_with_ptyprocess

    def spawn(
        self,
        command: str,
        args: Sequence[str],
        *,
        name: str = "xterm-256color",
        cols: int,
        rows: int,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> TerminalPty:
        if not command:
            raise SpawnError(
                "PTY command cannot be empty.",
                hint="Provide the multiplexer command to attach.",
            )
        if cols <= 0 or rows <= 0:
            raise SpawnError(
                f"Invalid PTY size: {cols}x{rows}",
                hint="Use positive terminal row/column values.",
            )
        try:
            return self._spawn(command, list(args), name=name, cols=cols, rows=rows, cwd=cwd, env=env)
        except TermNexusError:
            raise
        except Exception as exc:
            raise SpawnError(
                "Failed to create terminal session.",
                hint=str(exc) or "Check that zellij is installed and the cwd exists.",
            ) from exc
