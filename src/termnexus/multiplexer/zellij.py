"""Async Zellij CLI client with bounded command timeouts."""

from __future__ import annotations

import asyncio
import logging as py_logging
import os
import shutil
import signal as py_signal
from collections.abc import Awaitable, Callable
from contextlib import suppress

from termnexus.errors import MultiplexerError, MultiplexerTimeoutError
from termnexus.identity import wrap_shell_command
from termnexus.shell import command_for_log, double_quote, truncate_log

logger = py_logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 5.0
CTRL_C = 3
CARRIAGE_RETURN = 13
REAP_TIMEOUT_SECONDS = 1.0

CommandRunner = Callable[[str, float], Awaitable[str]]


async def run_shell_command(command: str, timeout: float) -> str:
    """Run ``command`` through ``/bin/sh`` and return stdout.

    The command runs in its own process group. When ``timeout`` expires the
    whole group is killed, including forks such as ``sudo`` -> ``su`` ->
    ``zellij`` that would otherwise keep the output pipes open.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=asyncio.subprocess.DEVNULL,
        start_new_session=True,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _kill_process_group(process)
        raise MultiplexerTimeoutError(
            f"Multiplexer command timed out after {timeout:g}s",
            hint=command_for_log(command),
        ) from exc
    if process.returncode != 0:
        raise MultiplexerError(
            f"Multiplexer command failed with exit code {process.returncode}",
            hint=truncate_log(stderr.decode("utf-8", errors="replace")) or command_for_log(command),
        )
    return stdout.decode("utf-8", errors="replace")


async def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    # The shell may already be gone while a grandchild still holds the pipes.
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, py_signal.SIGKILL)
    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.kill()
    try:
        await asyncio.wait_for(process.wait(), timeout=REAP_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Multiplexer command pid=%s not reaped after SIGKILL", process.pid)


def _non_empty_lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


class ZellijClient:
    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        binary: str = "zellij",
    ) -> None:
        self._runner = runner or run_shell_command
        self.timeout_seconds = timeout_seconds
        self.binary = binary

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    async def run(self, command: str, *, as_user: str | None = None) -> str:
        full_command = wrap_shell_command(command, as_user=as_user)
        logger.debug("zellij command user=%s command=%s", as_user or "daemon", command_for_log(command))
        return await self._runner(full_command, self.timeout_seconds)

    async def list_sessions(self, *, as_user: str | None = None) -> list[str]:
        output = await self.run(f"{self.binary} list-sessions --short 2>/dev/null", as_user=as_user)
        # Older releases decorate lines; the name is always the first token.
        return [line.split()[0] for line in _non_empty_lines(output)]

    async def session_exists(self, session_name: str, *, as_user: str | None = None) -> bool:
        # Exact match so "termnexus-abc" never matches "termnexus-abcde".
        return session_name in await self.list_sessions(as_user=as_user)

    async def action(self, session_name: str, action: str, *, as_user: str | None = None) -> str:
        command = f'{self.binary} --session "{double_quote(session_name)}" action {action}'
        return await self.run(command, as_user=as_user)

    async def query_tab_names(self, session_name: str, *, as_user: str | None = None) -> list[str]:
        output = await self.action(session_name, "query-tab-names 2>/dev/null", as_user=as_user)
        return _non_empty_lines(output)

    async def rename_tab(self, session_name: str, name: str, *, as_user: str | None = None) -> None:
        await self.action(session_name, f'rename-tab "{double_quote(name)}"', as_user=as_user)

    async def new_tab(self, session_name: str, name: str, cwd: str, *, as_user: str | None = None) -> None:
        await self.action(
            session_name,
            f'new-tab --name "{double_quote(name)}" --cwd "{double_quote(cwd)}"',
            as_user=as_user,
        )

    async def go_to_tab(self, session_name: str, name: str, *, as_user: str | None = None) -> None:
        await self.action(session_name, f'go-to-tab-name "{double_quote(name)}"', as_user=as_user)

    async def write_chars(self, session_name: str, text: str, *, as_user: str | None = None) -> None:
        await self.action(session_name, f'write-chars "{double_quote(text)}"', as_user=as_user)

    async def write_byte(self, session_name: str, code: int, *, as_user: str | None = None) -> None:
        if not 0 <= code <= 255:
            raise ValueError(f"Byte code out of range: {code}")
        await self.action(session_name, f"write {code}", as_user=as_user)
