"""Shell quoting for multiplexer commands and bounded command logging."""

from __future__ import annotations

DEFAULT_LOG_TRUNCATE_LIMIT = 400


def single_quote(value: str) -> str:
    """Quote ``value`` for a POSIX shell with no further interpretation.

    Embedded single quotes close the quote, emit an escaped quote and reopen:
    ``foo'bar`` becomes ``'foo'\\''bar'``.
    """
    return "'" + value.replace("'", "'\\''") + "'"


def double_quote(value: str) -> str:
    """Escape ``value`` for use inside a double-quoted shell string.

    The result carries no surrounding quotes. Backslashes are escaped first so
    the escapes added for ``"``, ``$`` and backticks are not doubled.
    """
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )


def truncate_log(value: str, limit: int = DEFAULT_LOG_TRUNCATE_LIMIT) -> str:
    """Truncate log text to the specified limit with ellipsis."""
    value = value.strip()
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 3)] + "..."


def command_for_log(command: str | list[str]) -> str:
    """Return a command string bounded for logging."""
    if not command:
        return ""
    if isinstance(command, list):
        command = " ".join(single_quote(part) for part in command)
    return truncate_log(command)
