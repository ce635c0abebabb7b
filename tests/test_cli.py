from __future__ import annotations

from pathlib import Path

import pytest

from termnexus import cli
from termnexus.errors import ExitCode, MultiplexerError, MultiplexerTimeoutError
from termnexus.multiplexer import ZellijClient


class _StubClient(ZellijClient):
    def __init__(self, *, available: bool = True) -> None:
        super().__init__(runner=self._never)
        self.available = available
        self.sessions: list[str] | Exception = []
        self.tabs: dict[str, list[str]] = {}
        self.users: list[str | None] = []

    async def _never(self, command: str, timeout: float) -> str:
        raise AssertionError(command)

    def is_available(self) -> bool:
        return self.available

    async def list_sessions(self, *, as_user: str | None = None) -> list[str]:
        self.users.append(as_user)
        if isinstance(self.sessions, Exception):
            raise self.sessions
        return list(self.sessions)

    async def query_tab_names(self, session_name: str, *, as_user: str | None = None) -> list[str]:
        self.users.append(as_user)
        return list(self.tabs.get(session_name, []))


@pytest.fixture
def log_file(tmp_path: Path) -> Path:
    return tmp_path / "termnexus.log"


def _run(args: list[str], client: ZellijClient, log_file: Path) -> int:
    return cli.main(["--log-file", str(log_file), *args], client=client)


def test_cli_help_includes_commands() -> None:
    help_text = cli.build_parser().format_help()

    assert "check" in help_text
    assert "sessions" in help_text
    assert "tabs" in help_text
    assert "--log-level" in help_text


def test_missing_command_is_an_argument_error(log_file: Path) -> None:
    assert _run([], _StubClient(), log_file) == ExitCode.INVALID_ARGS


def test_invalid_log_level_is_an_argument_error(log_file: Path) -> None:
    assert _run(["--log-level", "loud", "check"], _StubClient(), log_file) == ExitCode.INVALID_ARGS


def test_check_reports_binary(capsys, log_file: Path) -> None:
    assert _run(["check"], _StubClient(), log_file) == ExitCode.SUCCESS

    assert capsys.readouterr().out == "zellij: ok\n"


def test_missing_zellij_maps_to_multiplexer_exit_code(capsys, log_file: Path) -> None:
    code = _run(["check"], _StubClient(available=False), log_file)

    assert code == ExitCode.MULTIPLEXER_ERROR
    err = capsys.readouterr().err
    assert err.startswith("Error: Zellij is not installed")
    assert "Next step" in err


def test_sessions_lists_names_for_user(capsys, log_file: Path) -> None:
    client = _StubClient()
    client.sessions = ["termnexus-3f2a9c1e", "termnexus-shared"]

    assert _run(["sessions", "--as-user", "alice"], client, log_file) == ExitCode.SUCCESS

    assert capsys.readouterr().out == "termnexus-3f2a9c1e\ntermnexus-shared\n"
    assert client.users == ["alice"]


def test_sessions_with_no_server_prints_nothing(capsys, log_file: Path) -> None:
    client = _StubClient()
    client.sessions = MultiplexerError("Multiplexer command failed with exit code 1")

    assert _run(["sessions"], client, log_file) == ExitCode.SUCCESS
    assert capsys.readouterr().out == ""


def test_sessions_timeout_is_an_error(log_file: Path) -> None:
    client = _StubClient()
    client.sessions = MultiplexerTimeoutError("Multiplexer command timed out after 5s")

    assert _run(["sessions"], client, log_file) == ExitCode.MULTIPLEXER_ERROR


def test_tabs_lists_tab_names(capsys, log_file: Path) -> None:
    client = _StubClient()
    client.tabs = {"termnexus-shared": ["terminal", "feature-a"]}

    assert _run(["tabs", "termnexus-shared"], client, log_file) == ExitCode.SUCCESS
    assert capsys.readouterr().out == "terminal\nfeature-a\n"


def test_unexpected_errors_point_at_the_log(capsys, log_file: Path) -> None:
    class _Broken(_StubClient):
        async def query_tab_names(self, session_name: str, *, as_user: str | None = None) -> list[str]:
            raise RuntimeError("boom")

    assert _run(["tabs", "s"], _Broken(), log_file) == ExitCode.RUNTIME_ERROR

    assert str(log_file) in capsys.readouterr().err
    assert "boom" in log_file.read_text(encoding="utf-8")


def test_config_file_is_loaded(tmp_path: Path, log_file: Path) -> None:
    config = tmp_path / "config.toml"
    config.write_text("[terminal]\ncommand_timeout_seconds = 1.5\n", encoding="utf-8")

    assert _run(["--config", str(config), "check"], _StubClient(), log_file) == ExitCode.SUCCESS


def test_logging_defaults_come_from_config(tmp_path: Path) -> None:
    log_file = tmp_path / "from-config.log"
    config = tmp_path / "config.toml"
    config.write_text(f'[logging]\nlevel = "debug"\nfile = "{log_file}"\n', encoding="utf-8")

    assert cli.main(["--config", str(config), "check"], client=_StubClient()) == ExitCode.SUCCESS

    assert "Running command check" in log_file.read_text(encoding="utf-8")


def test_log_flags_override_config(tmp_path: Path, log_file: Path) -> None:
    ignored = tmp_path / "from-config.log"
    config = tmp_path / "config.toml"
    config.write_text(f'[logging]\nlevel = "debug"\nfile = "{ignored}"\n', encoding="utf-8")

    args = ["--config", str(config), "--log-level", "error", "check"]
    assert _run(args, _StubClient(), log_file) == ExitCode.SUCCESS

    assert not ignored.exists()
    assert "Running command check" not in log_file.read_text(encoding="utf-8")
