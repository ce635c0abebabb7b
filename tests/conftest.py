from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from termnexus.config import AppConfig, UserEntry, WorktreeEntry
from termnexus.errors import MultiplexerError
from termnexus.multiplexer.zellij import ZellijClient
from termnexus.terminal import PtyBackend, TerminalService

_SECURITY_TEST_FILES = {
    "test_shell_quoting.py",
    "test_identity.py",
    "test_shell_quoting_properties.py",
}

USER_ID = "3f2a9c1e-77aa-4b1e-9d1c-0a1b2c3d4e5f"
OTHER_USER_ID = "8b7c6d5e-0000-4000-8000-000000000000"


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in item.keywords:
            item.add_marker(pytest.mark.slow)

        if name in _SECURITY_TEST_FILES:
            item.add_marker(pytest.mark.security)


class FakePty:
    _next_pid = 4000

    def __init__(
        self,
        *,
        banner: str = "\x1b[?1049h",
        sticky_alive: bool = True,
        exit_on_start: int | None = None,
    ) -> None:
        FakePty._next_pid += 1
        self.pid = FakePty._next_pid
        self.banner = banner
        self.writes: list[str] = []
        self.resizes: list[tuple[int, int]] = []
        self.kills: list[int] = []
        self.alive = sticky_alive
        self.exit_on_start = exit_on_start
        self.data_callback = None
        self.exit_callback = None

    def on_data(self, callback) -> None:
        self.data_callback = callback
        if self.banner:
            asyncio.get_running_loop().call_soon(callback, self.banner)

    def on_exit(self, callback) -> None:
        self.exit_callback = callback
        if self.exit_on_start is not None:
            asyncio.get_running_loop().call_later(0.005, self.exit, self.exit_on_start)

    def write(self, data: str) -> None:
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    def kill(self, signal: int = 15) -> None:
        self.kills.append(signal)
        self.alive = False

    def isalive(self) -> bool:
        return self.alive

    def output(self, data: str) -> None:
        assert self.data_callback is not None
        self.data_callback(data)

    def exit(self, code: int) -> None:
        self.alive = False
        assert self.exit_callback is not None
        self.exit_callback(code)


class FakeZellij(ZellijClient):
    """In-memory zellij: sessions map to ordered tab names with one focused tab."""

    def __init__(self) -> None:
        super().__init__(runner=self._unexpected_runner)
        self.sessions: dict[str, list[str]] = {}
        self.focus: dict[str, int] = {}
        self.calls: list[tuple[str, ...]] = []
        self.failures: dict[str, Exception] = {}
        self.hooks: dict[str, Callable[[], None]] = {}
        self.available = True

    async def _unexpected_runner(self, command: str, timeout: float) -> str:
        raise AssertionError(f"unexpected raw command: {command}")

    def is_available(self) -> bool:
        return self.available

    def attach(self, session_name: str) -> None:
        if session_name not in self.sessions:
            self.sessions[session_name] = ["Tab #1"]
            self.focus[session_name] = 0

    def _check(self, verb: str, *args: str) -> None:
        self.calls.append((verb, *args))
        hook = self.hooks.get(verb)
        if hook is not None:
            hook()
        failure = self.failures.get(verb)
        if failure is not None:
            raise failure

    async def list_sessions(self, *, as_user: str | None = None) -> list[str]:
        self._check("list-sessions")
        if not self.sessions:
            raise MultiplexerError("No active zellij sessions found.")
        return list(self.sessions)

    async def query_tab_names(self, session_name: str, *, as_user: str | None = None) -> list[str]:
        self._check("query-tab-names", session_name)
        return list(self.sessions.get(session_name, []))

    async def rename_tab(self, session_name: str, name: str, *, as_user: str | None = None) -> None:
        self._check("rename-tab", session_name, name)
        self.sessions[session_name][self.focus[session_name]] = name

    async def new_tab(self, session_name: str, name: str, cwd: str, *, as_user: str | None = None) -> None:
        self._check("new-tab", session_name, name, cwd)
        self.sessions[session_name].append(name)
        self.focus[session_name] = len(self.sessions[session_name]) - 1

    async def go_to_tab(self, session_name: str, name: str, *, as_user: str | None = None) -> None:
        self._check("go-to-tab-name", session_name, name)
        if name not in self.sessions.get(session_name, []):
            raise MultiplexerError(f"No tab named {name}")
        self.focus[session_name] = self.sessions[session_name].index(name)

    async def write_chars(self, session_name: str, text: str, *, as_user: str | None = None) -> None:
        self._check("write-chars", session_name, text)

    async def write_byte(self, session_name: str, code: int, *, as_user: str | None = None) -> None:
        self._check("write", session_name, str(code))


class SpawnRecorder:
    def __init__(self, zellij: FakeZellij) -> None:
        self.zellij = zellij
        self.calls: list[dict[str, object]] = []
        self.ptys: list[FakePty] = []
        self.error: Exception | None = None
        self.banner = "\x1b[?1049h"
        self.exit_on_start: int | None = None

    def __call__(
        self,
        command: str,
        args: Sequence[str],
        *,
        name: str,
        cols: int,
        rows: int,
        cwd: str | None,
        env: Mapping[str, str] | None,
    ) -> FakePty:
        if self.error is not None:
            raise self.error
        self.calls.append(
            {"command": command, "args": list(args), "name": name, "cols": cols, "rows": rows, "cwd": cwd, "env": env}
        )
        argv = shlex.split(args[-1]) if command == "sudo" else list(args)
        if "attach" in argv:
            self.zellij.attach(argv[argv.index("attach") + 1])
        pty = FakePty(banner=self.banner, exit_on_start=self.exit_on_start)
        self.ptys.append(pty)
        return pty


class EmitRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, object]]] = []

    def __call__(self, terminal_id: str, event: str, payload: dict[str, object]) -> None:
        self.events.append((terminal_id, event, payload))

    def of(self, event: str) -> list[dict[str, object]]:
        return [payload for _, name, payload in self.events if name == event]


async def no_sleep(_seconds: float) -> None:
    return None


def _chown_runner(command: list[str], **_: object) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=command, returncode=0, stdout="", stderr="")


@pytest.fixture
def zellij() -> FakeZellij:
    return FakeZellij()


@pytest.fixture
def spawner(zellij: FakeZellij) -> SpawnRecorder:
    return SpawnRecorder(zellij)


@pytest.fixture
def emitted() -> EmitRecorder:
    return EmitRecorder()


@pytest.fixture
def worktree_dir(tmp_path: Path) -> Path:
    path = tmp_path / "worktrees" / "feature-a"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def app_config(tmp_path: Path, worktree_dir: Path) -> AppConfig:
    config = AppConfig(
        users={
            USER_ID: UserEntry(unix_username="alice", env={"API_TOKEN": "it's secret", "PATH": "/evil"}),
            OTHER_USER_ID: UserEntry(),
        },
        worktrees={
            "wt-a": WorktreeEntry(name="feature-a", path=str(worktree_dir)),
            "wt-b": WorktreeEntry(name="bugfix-b", path=str(tmp_path / "worktrees" / "bugfix-b")),
        },
    )
    config.terminal.ready_timeout_seconds = 0.5
    config.terminal.batch_interval_ms = 1
    config.terminal.home_root = str(tmp_path / "home")
    return config


@pytest.fixture
def make_service(tmp_path: Path, app_config: AppConfig, zellij: FakeZellij, spawner: SpawnRecorder, emitted: EmitRecorder):
    def _make(**overrides: object) -> TerminalService:
        kwargs: dict[str, object] = {
            "emit": emitted,
            "config": app_config,
            "zellij": zellij,
            "pty_backend": PtyBackend(spawn=spawner),
            "user_exists": lambda _name: True,
            "base_env": {"PATH": "/usr/bin", "HOME": "/root", "ZELLIJ": "0", "TERMNEXUS_DB_URL": "sqlite://"},
            "env_dir": tmp_path,
            "env_runner": _chown_runner,
            "home_dir": str(tmp_path / "daemon-home"),
            "sleep": no_sleep,
        }
        kwargs.update(overrides)
        return TerminalService(**kwargs)

    return _make


@pytest.fixture(autouse=True)
def _reset_termnexus_logger():
    yield
    logger = logging.getLogger("termnexus")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
