"""Per-user process environment for terminals."""

from __future__ import annotations

import logging as py_logging
import os
import stat
import subprocess
import tempfile
from collections.abc import Callable, Mapping
from contextlib import suppress
from pathlib import Path

from termnexus.shell import single_quote

logger = py_logging.getLogger(__name__)

INTERNAL_ENV_PREFIX = "TERMNEXUS_"
TERMINAL_DEFAULTS = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
    "LANG": "C.UTF-8",
}
# Users may not override these; the shell owns them.
RESERVED_KEYS = frozenset({"PATH", "HOME", "USER", "SHELL", "PWD", "OLDPWD", "TERM", "COLORTERM"})
# Inherited markers would make zellij refuse to nest or attach to the wrong session.
MULTIPLEXER_MARKERS = ("ZELLIJ", "ZELLIJ_SESSION_NAME", "ZELLIJ_PANE_ID")
CHOWN_TIMEOUT_SECONDS = 2.0
# Impersonated users must traverse to their own file but never list or create.
ENV_DIR_MODE = 0o711

Runner = Callable[..., subprocess.CompletedProcess]


def filter_user_environment(user_env: Mapping[str, str]) -> dict[str, str]:
    return {
        key: value
        for key, value in user_env.items()
        if key not in RESERVED_KEYS and not key.startswith(INTERNAL_ENV_PREFIX) and key not in MULTIPLEXER_MARKERS
    }


def create_process_environment(
    user_env: Mapping[str, str] | None = None,
    *,
    base_env: Mapping[str, str] | None = None,
    defaults: Mapping[str, str] = TERMINAL_DEFAULTS,
) -> dict[str, str]:
    source = os.environ if base_env is None else base_env
    env = {key: value for key, value in source.items() if not key.startswith(INTERNAL_ENV_PREFIX)}
    env.update(defaults)
    env.update(filter_user_environment(user_env or {}))

    for marker in MULTIPLEXER_MARKERS:
        env.pop(marker, None)

    lang = env.get("LANG", "")
    if lang:
        env.setdefault("LC_ALL", lang)
        env.setdefault("LC_CTYPE", lang)
    return env


def render_env_script(user_env: Mapping[str, str]) -> str:
    lines = ["#!/bin/sh", "# termnexus user environment", "# Auto-generated - do not edit manually"]
    for key, value in filter_user_environment(user_env).items():
        lines.append(f"export {key}={single_quote(value)}")
    return "\n".join(lines) + "\n"


def default_env_dir() -> Path:
    return Path(tempfile.gettempdir()) / f"termnexus-{os.geteuid()}"


def env_file_path(user_id: str, directory: str | Path | None = None) -> Path:
    root = Path(directory) if directory is not None else default_env_dir()
    return root / f"termnexus-env-{user_id[:8]}.sh"


def _private_directory(directory: Path) -> None:
    """Create ``directory`` or check that an existing one is ours alone to write."""
    directory.mkdir(mode=ENV_DIR_MODE, exist_ok=True)
    info = os.lstat(directory)
    if stat.S_ISLNK(info.st_mode) or not stat.S_ISDIR(info.st_mode):
        raise OSError(f"{directory} is not a real directory")
    if info.st_uid != os.geteuid():
        raise OSError(f"{directory} is owned by uid {info.st_uid}")
    if stat.S_IMODE(info.st_mode) & (stat.S_IWGRP | stat.S_IWOTH):
        os.chmod(directory, ENV_DIR_MODE)


def _replace_atomically(path: Path, content: str) -> None:
    # mkstemp yields a new 0600 inode; the rename replaces whatever sat at
    # ``path``, links included.
    fd, temp_name = tempfile.mkstemp(prefix=".termnexus-env-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except OSError:
        with suppress(OSError):
            os.unlink(temp_name)
        raise


def write_env_file(
    user_id: str | None,
    user_env: Mapping[str, str],
    *,
    chown_to: str | None = None,
    directory: str | Path | None = None,
    runner: Runner = subprocess.run,
) -> Path | None:
    """Write the user's custom variables to a private script for sourcing in tabs.

    The file lives in a directory only this process can write to and is
    always a new 0600 inode. Returns ``None`` when there is no user or the
    file cannot be written safely.
    """
    if not user_id:
        return None

    path = env_file_path(user_id, directory)
    try:
        _private_directory(path.parent)
        _replace_atomically(path, render_env_script(user_env))
    except OSError:
        logger.warning("Failed to write env file for user=%s", user_id, exc_info=True)
        return None

    if chown_to:
        _chown_env_file(path, chown_to, runner)
    return path


def _chown_env_file(path: Path, owner: str, runner: Runner) -> None:
    # -n: a password prompt would hang the daemon.
    command = ["sudo", "-n", "chown", owner, str(path)]
    try:
        result = runner(
            command,
            capture_output=True,
            text=True,
            timeout=CHOWN_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Failed to chown env file %s to %s: %s", path, owner, exc)
        return
    if result.returncode != 0:
        logger.warning(
            "Failed to chown env file %s to %s: %s",
            path,
            owner,
            (result.stderr or "").strip()[:200],
        )
