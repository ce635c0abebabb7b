"""Operator CLI for inspecting zellij sessions managed by termnexus."""

from __future__ import annotations

import argparse
import asyncio
import logging as py_logging
import sys
from collections.abc import Sequence
from pathlib import Path

from .config import load_config
from .errors import (
    ExitCode,
    MultiplexerError,
    MultiplexerTimeoutError,
    TermNexusError,
    user_facing_error,
)
from .logging import LEVEL_NAMES, configure_logging, default_log_path, normalize_level, resolve_log_path
from .multiplexer.zellij import ZellijClient


def _log_level_type(value: str) -> str:
    normalized = normalize_level(value)
    if normalized not in LEVEL_NAMES:
        accepted = ", ".join(LEVEL_NAMES)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="termnexus")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-level", type=_log_level_type, default=None)
    parser.add_argument("--log-file", type=Path, default=None)

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("check", help="Verify zellij is installed")

    sessions = commands.add_parser("sessions", help="List zellij sessions")
    sessions.add_argument("--as-user", default=None)

    tabs = commands.add_parser("tabs", help="List tab names of a zellij session")
    tabs.add_argument("session")
    tabs.add_argument("--as-user", default=None)
    return parser


def run_command(namespace: argparse.Namespace, client: ZellijClient) -> int:
    if not client.is_available():
        raise MultiplexerError(
            "Zellij is not installed or not available in PATH.",
            hint="Install zellij (https://zellij.dev/documentation/installation) and retry.",
        )
    if namespace.command == "check":
        print(f"{client.binary}: ok")
        return int(ExitCode.SUCCESS)
    if namespace.command == "sessions":
        try:
            names = asyncio.run(client.list_sessions(as_user=namespace.as_user))
        except MultiplexerTimeoutError:
            raise
        except MultiplexerError:
            # zellij exits non-zero when there is nothing to list.
            names = []
        for name in names:
            print(name)
        return int(ExitCode.SUCCESS)
    for name in asyncio.run(client.query_tab_names(namespace.session, as_user=namespace.as_user)):
        print(name)
    return int(ExitCode.SUCCESS)


def main(argv: Sequence[str] | None = None, *, client: ZellijClient | None = None) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    config = load_config(namespace.config)
    settings = config.logging
    if namespace.log_file is not None:
        log_path = resolve_log_path(namespace.log_file)
    elif settings.file is not None:
        log_path = resolve_log_path(settings.file)
    logger = configure_logging(
        level=namespace.log_level or settings.level,
        log_file=log_path,
        max_bytes=settings.max_bytes,
        backup_count=settings.backup_count,
    )

    try:
        resolved_client = client or ZellijClient(timeout_seconds=config.terminal.command_timeout_seconds)
        logger.debug("Running command %s", namespace.command)
        return run_command(namespace, resolved_client)
    except TermNexusError as exc:
        logger.error(
            "Handled TermNexusError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        try:
            hint = f"Inspect logs: {log_path}"
            print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        except Exception:
            pass
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
