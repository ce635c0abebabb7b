"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    SPAWN_ERROR = 5
    MULTIPLEXER_ERROR = 6
    NOT_FOUND = 7


@dataclass
class TermNexusError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


@dataclass
class ConfigurationError(TermNexusError):
    """A required OS identity or setting is missing; never retried."""

    code: ExitCode = ExitCode.CONFIG_ERROR


@dataclass
class SpawnError(TermNexusError):
    code: ExitCode = ExitCode.SPAWN_ERROR


@dataclass
class MultiplexerError(TermNexusError):
    code: ExitCode = ExitCode.MULTIPLEXER_ERROR


@dataclass
class MultiplexerTimeoutError(MultiplexerError):
    """The multiplexer did not answer within its bound."""


@dataclass
class NotFoundError(TermNexusError):
    code: ExitCode = ExitCode.NOT_FOUND


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
