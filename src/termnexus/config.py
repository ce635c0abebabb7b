"""XDG config loading."""

from __future__ import annotations

import logging as py_logging
import sys
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .logging import DEFAULT_BACKUP_COUNT, DEFAULT_MAX_BYTES, normalize_level

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

logger = py_logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/termnexus/config.toml").expanduser()
DEFAULT_SESSION_PREFIX = "termnexus"
DEFAULT_WORKTREE_LINK_DIR = "termnexus/worktrees"

UnixUserModeName = Literal["simple", "insulated", "strict"]
LogLevelName = Literal["DEBUG", "INFO", "WARN", "ERROR"]


class ExecutionConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    unix_user_mode: UnixUserModeName = "simple"
    executor_unix_user: str | None = None

    @field_validator("executor_unix_user")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


class TerminalConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    session_prefix: str = Field(default=DEFAULT_SESSION_PREFIX, min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    default_cols: int = Field(default=80, ge=1, le=1000)
    default_rows: int = Field(default=30, ge=1, le=1000)
    command_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    ready_timeout_seconds: float = Field(default=3.0, gt=0, le=60)
    batch_interval_ms: float = Field(default=10.0, gt=0, le=1000)
    max_buffer_bytes: int = Field(default=1024 * 1024, ge=1024)
    cache_ttl_seconds: float = Field(default=5.0, ge=0, le=300)
    home_root: str = "/home"
    worktree_link_dir: str = DEFAULT_WORKTREE_LINK_DIR
    serialize_session_setup: bool = False


class LoggingConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    level: LogLevelName = "INFO"
    file: str | None = None
    max_bytes: int = Field(default=DEFAULT_MAX_BYTES, ge=0)
    backup_count: int = Field(default=DEFAULT_BACKUP_COUNT, ge=0, le=100)

    @field_validator("level", mode="before")
    @classmethod
    def _fold_level(cls, value: object) -> object:
        return normalize_level(value) if isinstance(value, str) else value

    @field_validator("file")
    @classmethod
    def _blank_file_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


class UserEntry(BaseModel):
    unix_username: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class WorktreeEntry(BaseModel):
    name: str
    path: str


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    users: dict[str, UserEntry] = Field(default_factory=dict)
    worktrees: dict[str, WorktreeEntry] = Field(default_factory=dict)


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _apply_fields(model: BaseModel, raw: object, section: str) -> None:
    if not isinstance(raw, dict):
        return
    for key, value in raw.items():
        if key not in type(model).model_fields:
            logger.warning("Ignoring unknown config key %s.%s", section, key)
            continue
        try:
            setattr(model, key, value)
        except ValidationError:
            logger.warning("Ignoring invalid config value %s.%s=%r", section, key, value)


def _normalize_users(value: object) -> dict[str, UserEntry]:
    if not isinstance(value, dict):
        return {}
    normalized: dict[str, UserEntry] = {}
    for user_id, payload in value.items():
        if not isinstance(user_id, str) or not isinstance(payload, dict):
            continue
        username = payload.get("unix_username")
        raw_env = payload.get("env", {})
        env = (
            {key: item for key, item in raw_env.items() if isinstance(key, str) and isinstance(item, str)}
            if isinstance(raw_env, dict)
            else {}
        )
        normalized[user_id] = UserEntry(
            unix_username=username.strip() if isinstance(username, str) and username.strip() else None,
            env=env,
        )
    return normalized


def _normalize_worktrees(value: object) -> dict[str, WorktreeEntry]:
    if not isinstance(value, dict):
        return {}
    normalized: dict[str, WorktreeEntry] = {}
    for worktree_id, payload in value.items():
        if not isinstance(worktree_id, str) or not isinstance(payload, dict):
            continue
        name = payload.get("name")
        path = payload.get("path")
        if not isinstance(name, str) or not isinstance(path, str):
            continue
        if not name.strip() or not path.strip():
            continue
        normalized[worktree_id] = WorktreeEntry(name=name.strip(), path=path.strip())
    return normalized


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()
    _apply_fields(cfg.execution, raw.get("execution", {}), "execution")
    _apply_fields(cfg.terminal, raw.get("terminal", {}), "terminal")
    _apply_fields(cfg.logging, raw.get("logging", {}), "logging")
    cfg.users = _normalize_users(raw.get("users", {}))
    cfg.worktrees = _normalize_worktrees(raw.get("worktrees", {}))
    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return AppConfig()
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        logger.warning("Unreadable config at %s; using defaults", resolved)
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()
    return _sanitize(raw)
