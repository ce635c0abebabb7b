"""Unix identity resolution for terminal impersonation."""

from __future__ import annotations

import logging as py_logging
import pwd
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from termnexus.errors import ConfigurationError
from termnexus.shell import single_quote

logger = py_logging.getLogger(__name__)


class UnixUserMode(str, Enum):
    SIMPLE = "simple"
    INSULATED = "insulated"
    STRICT = "strict"


@dataclass(frozen=True)
class ImpersonationResult:
    unix_user: str | None
    reason: str


UserExists = Callable[[str], bool]


def unix_user_exists(username: str) -> bool:
    try:
        pwd.getpwnam(username)
    except KeyError:
        return False
    return True


def _normalize_mode(mode: UnixUserMode | str) -> UnixUserMode:
    try:
        return UnixUserMode(mode)
    except ValueError as exc:
        raise ConfigurationError(
            f"Unknown unix user mode: {mode}",
            hint="Use simple, insulated or strict.",
        ) from exc


def resolve_unix_user(
    mode: UnixUserMode | str,
    *,
    user_unix_username: str | None,
    executor_unix_user: str | None,
) -> ImpersonationResult:
    resolved_mode = _normalize_mode(mode)
    if resolved_mode == UnixUserMode.SIMPLE:
        return ImpersonationResult(unix_user=None, reason="simple mode never impersonates")
    if user_unix_username:
        return ImpersonationResult(unix_user=user_unix_username, reason="user has a mapped unix account")
    if executor_unix_user:
        return ImpersonationResult(unix_user=executor_unix_user, reason="falling back to executor account")
    if resolved_mode == UnixUserMode.STRICT:
        raise ConfigurationError(
            "Strict unix user mode requires a unix account but none is mapped",
            hint="Set unix_username for the user or execution.executor_unix_user.",
        )
    return ImpersonationResult(unix_user=None, reason="no unix account mapped")


def validate_resolved_unix_user(
    mode: UnixUserMode | str,
    unix_user: str | None,
    *,
    user_exists: UserExists = unix_user_exists,
) -> None:
    resolved_mode = _normalize_mode(mode)
    if resolved_mode == UnixUserMode.SIMPLE or unix_user is None:
        return
    if not user_exists(unix_user):
        raise ConfigurationError(
            f"Unix user '{unix_user}' does not exist",
            hint="Ensure the Unix user is created before attempting terminal access.",
        )


def build_spawn_args(
    command: str,
    args: Sequence[str],
    *,
    as_user: str | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, list[str]]:
    """Wrap ``command`` so it runs as ``as_user`` through a fresh login shell.

    ``su -`` discards the caller's environment, so ``env`` is injected as
    ``env K=v ...`` inside the login shell command.
    """
    if not as_user:
        return command, list(args)

    inner: list[str] = []
    if env:
        inner.append("env")
        inner.extend(single_quote(f"{key}={value}") for key, value in env.items())
    inner.append(single_quote(command))
    inner.extend(single_quote(arg) for arg in args)
    logger.debug("Wrapping %s for unix user %s", command, as_user)
    return "sudo", ["-n", "su", "-", as_user, "-c", " ".join(inner)]


def wrap_shell_command(command: str, *, as_user: str | None = None) -> str:
    """Return a shell command line that runs ``command`` as ``as_user`` when set."""
    if not as_user:
        return command
    return f"sudo -n su - {single_quote(as_user)} -c {single_quote(command)}"
