"""Zellij-backed terminal orchestration: one session per user, one tab per worktree."""

from __future__ import annotations

import asyncio
import contextlib
import logging as py_logging
import os
import secrets
import signal as py_signal
import string
import subprocess
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from termnexus.config import AppConfig
from termnexus.directory import ConfigDirectory, UserDirectory, Worktree, WorktreeDirectory
from termnexus.environment import Runner, create_process_environment, write_env_file
from termnexus.errors import (
    MultiplexerError,
    MultiplexerTimeoutError,
    NotFoundError,
    SpawnError,
    TermNexusError,
)
from termnexus.identity import (
    UserExists,
    build_spawn_args,
    resolve_unix_user,
    unix_user_exists,
    validate_resolved_unix_user,
)
from termnexus.multiplexer.cache import SessionCache
from termnexus.multiplexer.zellij import CARRIAGE_RETURN, CTRL_C, ZellijClient
from termnexus.shell import single_quote
from termnexus.terminal.batcher import OutputBatcher
from termnexus.terminal.models import (
    CreateTerminalRequest,
    CreateTerminalResult,
    TabAction,
    Terminal,
    TerminalEvent,
    TerminalInfo,
    TerminalPatch,
    TerminalSummary,
)
from termnexus.terminal.pty_backend import PtyBackend

logger = py_logging.getLogger(__name__)

DEFAULT_TAB_NAME = "terminal"
SHARED_SESSION_SUFFIX = "shared"
TERMINAL_NAME = "xterm-256color"
NEW_TAB_SETTLE_SECONDS = 0.05
INTERRUPT_SETTLE_SECONDS = 0.02
_ID_ALPHABET = string.ascii_lowercase + string.digits

Emitter = Callable[[str, str, dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def new_terminal_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"term-{int(time.time() * 1000)}-{suffix}"


def build_init_commands(
    env_file: str | Path | None,
    cwd: str,
    *,
    home_dir: str,
    always_cd: bool = False,
) -> list[str]:
    """Shell lines that load the user's env file and enter ``cwd`` in a tab."""
    commands: list[str] = []
    if env_file:
        quoted = single_quote(str(env_file))
        commands.append(f"[ -f {quoted} ] && . {quoted} 2>/dev/null || true")
    if always_cd or os.path.normpath(cwd) != os.path.normpath(home_dir):
        commands.append(f"cd {single_quote(cwd)}")
    return commands


class TerminalService:
    """Owns the live terminal table for one process.

    Concurrent ``create`` calls for the same user may both see "no session"
    and both take the first-session path; zellij's ``attach --create`` makes
    that converge on one session but the second tab rename can win. Set
    ``terminal.serialize_session_setup`` to serialize setup per session.
    """

    def __init__(
        self,
        *,
        emit: Emitter,
        config: AppConfig | None = None,
        users: UserDirectory | None = None,
        worktrees: WorktreeDirectory | None = None,
        zellij: ZellijClient | None = None,
        cache: SessionCache | None = None,
        pty_backend: PtyBackend | None = None,
        user_exists: UserExists = unix_user_exists,
        base_env: Mapping[str, str] | None = None,
        env_dir: str | Path | None = None,
        env_runner: Runner = subprocess.run,
        home_dir: str | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config or AppConfig()
        settings = self._config.terminal
        directory = ConfigDirectory(self._config)
        self._emit = emit
        self._users = users or directory
        self._worktrees = worktrees or directory
        self._zellij = zellij or ZellijClient(timeout_seconds=settings.command_timeout_seconds)
        if not self._zellij.is_available():
            raise MultiplexerError(
                "Zellij is not installed or not available in PATH.",
                hint="Install zellij (https://zellij.dev/documentation/installation) and retry.",
            )
        self._cache = cache or SessionCache(self._zellij, ttl_seconds=settings.cache_ttl_seconds)
        self._pty_backend = pty_backend or PtyBackend()
        self._user_exists = user_exists
        self._base_env = base_env
        self._env_dir = env_dir
        self._env_runner = env_runner
        self._home_dir = home_dir or os.path.expanduser("~")
        self._sleep = sleep
        self._terminals: dict[str, Terminal] = {}
        self._session_locks: dict[str, _SessionLock] = {}
        self._events: list[TerminalEvent] = []
        logger.info("Zellij detected; persistent terminal sessions enabled")

    @property
    def cache(self) -> SessionCache:
        return self._cache

    def list_events(self) -> list[TerminalEvent]:
        return list(self._events)

    def session_name_for(self, user_id: str | None) -> str:
        suffix = user_id[:8] if user_id else SHARED_SESSION_SUFFIX
        return f"{self._config.terminal.session_prefix}-{suffix}"

    async def create(self, request: CreateTerminalRequest | None = None) -> CreateTerminalResult:
        request = request or CreateTerminalRequest()
        settings = self._config.terminal
        terminal_id = new_terminal_id()

        unix_user = await self._resolve_unix_user(request.user_id)
        worktree = await self._load_worktree(request.worktree_id)
        home_dir = self._home_for(unix_user)
        cwd = self._resolve_cwd(request.cwd, worktree, unix_user, home_dir)
        session_name = self.session_name_for(request.user_id)
        tab_name = worktree.name if worktree else DEFAULT_TAB_NAME

        async with self._session_setup(session_name):
            action = await self._classify(session_name, tab_name, unix_user)

            user_env = await self._users.get_environment(request.user_id) if request.user_id else {}
            env = create_process_environment(user_env, base_env=self._base_env)
            env_file = await asyncio.to_thread(
                write_env_file,
                request.user_id,
                user_env,
                chown_to=unix_user,
                directory=self._env_dir,
                runner=self._env_runner,
            )

            terminal = self._spawn(
                terminal_id,
                request,
                session_name=session_name,
                cwd=cwd,
                env=env,
                unix_user=unix_user,
            )

            ready = await self._wait_ready(terminal, settings.ready_timeout_seconds)
            self._ensure_running(terminal)
            if not ready:
                logger.warning(
                    "Terminal %s ready timeout after %ss",
                    terminal_id,
                    settings.ready_timeout_seconds,
                )

            try:
                await self._configure_tab(
                    action,
                    session_name=session_name,
                    tab_name=tab_name,
                    cwd=cwd,
                    home_dir=home_dir,
                    env_file=env_file,
                    unix_user=unix_user,
                )
            except TermNexusError as exc:
                logger.error("Failed to configure zellij tab %s in %s: %s", tab_name, session_name, exc)
                self._discard(terminal)
                error_type = MultiplexerTimeoutError if isinstance(exc, MultiplexerTimeoutError) else MultiplexerError
                raise error_type("Zellij tab configuration failed.", hint=str(exc)) from exc
            self._ensure_running(terminal)

        self._record(terminal_id, action.value, f"Attached to {session_name} tab '{tab_name}'.")
        return CreateTerminalResult(
            terminal_id=terminal_id,
            cwd=cwd,
            session_name=session_name,
            reused_existing_session=action == TabAction.SWITCH_TAB,
            worktree_name=worktree.name if worktree else None,
        )

    async def get(self, terminal_id: str) -> TerminalInfo:
        terminal = self._must_get(terminal_id)
        return TerminalInfo(terminal_id=terminal.terminal_id, cwd=terminal.cwd, alive=terminal.pty.isalive())

    async def find(self) -> list[TerminalSummary]:
        return [
            TerminalSummary(terminal_id=terminal.terminal_id, cwd=terminal.cwd, created_at=terminal.created_at)
            for terminal in self._terminals.values()
        ]

    async def patch(self, terminal_id: str, patch: TerminalPatch) -> None:
        terminal = self._must_get(terminal_id)

        if patch.input is not None:
            try:
                terminal.pty.write(patch.input)
            except OSError as exc:
                raise TermNexusError(
                    f"Failed to write to terminal {terminal_id}.",
                    hint=str(exc) or "Verify terminal process health.",
                ) from exc

        if patch.resize is not None:
            cols, rows = patch.resize.cols, patch.resize.rows
            if cols <= 0 or rows <= 0:
                raise TermNexusError(
                    f"Invalid terminal size: {cols}x{rows}",
                    hint="Use positive terminal row/column values.",
                )
            terminal.cols = cols
            terminal.rows = rows
            # SIGWINCH makes zellij redraw at the new size.
            terminal.pty.resize(cols, rows)

    async def remove(self, terminal_id: str) -> str:
        terminal = self._must_get(terminal_id)
        try:
            terminal.release()
            terminal.pty.kill(py_signal.SIGTERM)
        finally:
            self._terminals.pop(terminal_id, None)
        self._record(terminal_id, "remove", "Terminal removed.")
        return terminal_id

    def cleanup(self) -> None:
        for terminal in list(self._terminals.values()):
            try:
                terminal.release()
            except Exception:
                logger.warning("Failed to release output for terminal %s", terminal.terminal_id, exc_info=True)
            try:
                terminal.pty.kill(py_signal.SIGTERM)
            except Exception:
                logger.warning("Failed to kill terminal %s", terminal.terminal_id, exc_info=True)
        self._terminals.clear()
        logger.info("All terminals cleaned up")

    async def _resolve_unix_user(self, user_id: str | None) -> str | None:
        execution = self._config.execution
        user_unix_username = await self._users.get_unix_username(user_id) if user_id else None
        result = resolve_unix_user(
            execution.unix_user_mode,
            user_unix_username=user_unix_username,
            executor_unix_user=execution.executor_unix_user,
        )
        validate_resolved_unix_user(execution.unix_user_mode, result.unix_user, user_exists=self._user_exists)
        logger.debug("Resolved unix user=%s (%s)", result.unix_user or "daemon", result.reason)
        return result.unix_user

    async def _load_worktree(self, worktree_id: str | None) -> Worktree | None:
        if not worktree_id:
            return None
        worktree = await self._worktrees.get(worktree_id)
        if worktree is None:
            logger.warning("Worktree %s not found; using requested cwd", worktree_id)
        return worktree

    def _home_for(self, unix_user: str | None) -> str:
        if unix_user:
            return str(Path(self._config.terminal.home_root) / unix_user)
        return self._home_dir

    def _resolve_cwd(
        self,
        requested: str | None,
        worktree: Worktree | None,
        unix_user: str | None,
        home_dir: str,
    ) -> str:
        if worktree is None:
            return requested or home_dir
        if unix_user:
            link = Path(home_dir) / self._config.terminal.worktree_link_dir / worktree.name
            if link.exists():
                return str(link)
        return worktree.path

    async def _classify(self, session_name: str, tab_name: str, unix_user: str | None) -> TabAction:
        if not await self._cache.session_exists(session_name, unix_user):
            return TabAction.FIRST_SESSION
        tabs = await self._cache.get_tabs(session_name, unix_user)
        return TabAction.SWITCH_TAB if tab_name in tabs else TabAction.NEW_TAB

    def _spawn(
        self,
        terminal_id: str,
        request: CreateTerminalRequest,
        *,
        session_name: str,
        cwd: str,
        env: dict[str, str],
        unix_user: str | None,
    ) -> Terminal:
        settings = self._config.terminal
        cols = request.cols or settings.default_cols
        rows = request.rows or settings.default_rows

        # `su -` starts a fresh login shell, so env has to ride inside the wrapped command.
        spawn_env = {**env, "HOME": self._home_for(unix_user), "USER": unix_user} if unix_user else env
        command, args = build_spawn_args(
            self._zellij.binary,
            ["attach", session_name, "--create"],
            as_user=unix_user,
            env=spawn_env if unix_user else None,
        )
        try:
            pty = self._pty_backend.spawn(
                command,
                args,
                name=TERMINAL_NAME,
                cols=cols,
                rows=rows,
                cwd=cwd,
                env=None if unix_user else spawn_env,
            )
        except TermNexusError as exc:
            logger.error("Failed to spawn PTY for session %s: %s", session_name, exc)
            raise

        batcher = OutputBatcher(
            lambda data: self._emit_event(terminal_id, "data", {"terminal_id": terminal_id, "data": data}),
            interval_seconds=settings.batch_interval_ms / 1000,
            max_buffer_size=settings.max_buffer_bytes,
        )
        terminal = Terminal(
            terminal_id=terminal_id,
            pty=pty,
            shell=request.shell or self._zellij.binary,
            cwd=cwd,
            session_name=session_name,
            cols=cols,
            rows=rows,
            batcher=batcher,
            user_id=request.user_id,
            worktree_id=request.worktree_id,
            unix_user=unix_user,
            env=env,
        )
        # Registered before wiring callbacks so the first bytes have a home.
        self._terminals[terminal_id] = terminal
        pty.on_data(batcher.push)
        pty.on_exit(lambda exit_code: self._handle_exit(terminal, exit_code))
        self._record(terminal_id, "spawn", f"PTY pid={pty.pid} attached to {session_name}.")
        return terminal

    async def _configure_tab(
        self,
        action: TabAction,
        *,
        session_name: str,
        tab_name: str,
        cwd: str,
        home_dir: str,
        env_file: Path | None,
        unix_user: str | None,
    ) -> None:
        if action == TabAction.FIRST_SESSION:
            await self._zellij.rename_tab(session_name, tab_name, as_user=unix_user)
            self._cache.invalidate(session_name, unix_user)
            commands = build_init_commands(env_file, cwd, home_dir=home_dir)
        elif action == TabAction.NEW_TAB:
            await self._zellij.new_tab(session_name, tab_name, cwd, as_user=unix_user)
            await self._zellij.go_to_tab(session_name, tab_name, as_user=unix_user)
            self._cache.invalidate(session_name, unix_user)
            await self._sleep(NEW_TAB_SETTLE_SECONDS)
            commands = build_init_commands(env_file, cwd, home_dir=home_dir, always_cd=True)
        else:
            await self._zellij.go_to_tab(session_name, tab_name, as_user=unix_user)
            self._cache.invalidate(session_name, unix_user)
            # Ctrl-C discards whatever was half-typed in the reused tab.
            await self._best_effort(self._zellij.write_byte(session_name, CTRL_C, as_user=unix_user), "interrupt")
            await self._sleep(INTERRUPT_SETTLE_SECONDS)
            commands = build_init_commands(env_file, cwd, home_dir=home_dir, always_cd=True)

        if commands:
            await self._best_effort(
                self._inject_commands(session_name, " && ".join(commands), unix_user),
                "init-commands",
            )

    async def _inject_commands(self, session_name: str, script: str, unix_user: str | None) -> None:
        await self._zellij.write_chars(session_name, script, as_user=unix_user)
        await self._zellij.write_byte(session_name, CARRIAGE_RETURN, as_user=unix_user)

    async def _best_effort(self, operation: Awaitable[None], step: str) -> None:
        try:
            await operation
        except TermNexusError as exc:
            logger.warning("Non-critical zellij step %s failed: %s", step, exc)

    def _handle_exit(self, terminal: Terminal, exit_code: int) -> None:
        terminal_id = terminal.terminal_id
        try:
            terminal.release()
            logger.info("Terminal %s exited with code %s", terminal_id, exit_code)
        except Exception:
            logger.warning("Error handling exit for terminal %s", terminal_id, exc_info=True)
            terminal.batcher.destroy()
        finally:
            if self._terminals.get(terminal_id) is terminal:
                del self._terminals[terminal_id]
            terminal.exit_code = exit_code
            terminal.exited.set()
        self._emit_event(terminal_id, "exit", {"terminal_id": terminal_id, "exit_code": exit_code})
        self._record(terminal_id, "exit", f"Exited with code {exit_code}.")

    def _discard(self, terminal: Terminal) -> None:
        self._terminals.pop(terminal.terminal_id, None)
        terminal.release()
        with contextlib.suppress(Exception):
            terminal.pty.kill(py_signal.SIGTERM)
        self._record(terminal.terminal_id, "discard", "Setup failed; terminal torn down.")

    def _emit_event(self, terminal_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            self._emit(terminal_id, event, payload)
        except Exception:
            logger.warning("Error emitting %s for terminal %s", event, terminal_id, exc_info=True)

    @contextlib.asynccontextmanager
    async def _session_setup(self, session_name: str) -> AsyncIterator[None]:
        if not self._config.terminal.serialize_session_setup:
            yield
            return
        entry = self._session_locks.get(session_name)
        if entry is None:
            entry = self._session_locks[session_name] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._session_locks[session_name]

    async def _wait_ready(self, terminal: Terminal, timeout: float) -> bool:
        """Wait for the first output batch; gives up early when the PTY exits."""
        ready = asyncio.ensure_future(terminal.batcher.wait_first_flush(timeout))
        exited = asyncio.ensure_future(terminal.exited.wait())
        try:
            await asyncio.wait({ready, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            exited.cancel()
        return ready.done() and not ready.cancelled() and ready.result()

    def _ensure_running(self, terminal: Terminal) -> None:
        if self._terminals.get(terminal.terminal_id) is terminal:
            return
        raise SpawnError(
            "Terminal exited during setup.",
            hint=f"Exit code {terminal.exit_code}. Check that zellij can attach to {terminal.session_name}.",
        )

    def _must_get(self, terminal_id: str) -> Terminal:
        terminal = self._terminals.get(terminal_id)
        if terminal is None:
            raise NotFoundError(
                f"Terminal {terminal_id} not found",
                hint="Create a terminal before sending input.",
            )
        return terminal

    def _record(self, terminal_id: str, step: str, message: str) -> None:
        self._events.append(TerminalEvent(terminal_id=terminal_id, step=step, message=message))
        logger.info("runtime-event terminal=%s step=%s message=%s", terminal_id, step, message)
