from __future__ import annotations

import pytest

from termnexus.errors import (
    ConfigurationError,
    ExitCode,
    MultiplexerError,
    MultiplexerTimeoutError,
    NotFoundError,
    SpawnError,
    TermNexusError,
    user_facing_error,
)


def test_exit_codes_are_deterministic() -> None:
    assert int(ExitCode.SUCCESS) == 0
    assert int(ExitCode.INVALID_ARGS) == 2
    assert int(ExitCode.CONFIG_ERROR) == 3
    assert int(ExitCode.RUNTIME_ERROR) == 4
    assert int(ExitCode.NOT_FOUND) == 7


@pytest.mark.parametrize(
    ("error_type", "code"),
    [
        (TermNexusError, ExitCode.RUNTIME_ERROR),
        (ConfigurationError, ExitCode.CONFIG_ERROR),
        (SpawnError, ExitCode.SPAWN_ERROR),
        (MultiplexerError, ExitCode.MULTIPLEXER_ERROR),
        (MultiplexerTimeoutError, ExitCode.MULTIPLEXER_ERROR),
        (NotFoundError, ExitCode.NOT_FOUND),
    ],
)
def test_error_types_carry_default_codes(error_type: type[TermNexusError], code: ExitCode) -> None:
    assert error_type("boom").code == code


def test_timeout_is_a_multiplexer_error() -> None:
    with pytest.raises(MultiplexerError):
        raise MultiplexerTimeoutError("zellij did not answer")


def test_error_string_contains_hint() -> None:
    err = MultiplexerError("zellij not found", hint="Install zellij")

    assert str(err) == "zellij not found Hint: Install zellij"
    assert str(MultiplexerError("zellij not found")) == "zellij not found"


def test_user_facing_error_template() -> None:
    text = user_facing_error("Terminal term-1 not found", hint="Create a terminal first")

    assert text.startswith("Error:")
    assert "Next step" in text
    assert user_facing_error("boom") == "Error: boom."
