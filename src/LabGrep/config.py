"""Runtime configuration from ``.env`` and the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from LabGrep import token_store
from LabGrep.store import DEFAULT_DB_PATH


class ConfigError(Exception):
    """Raised when required settings are missing or invalid."""


@dataclass
class Settings:
    endpoint: str = ""
    group: str = ""
    token: str | None = None
    db_path: Path = DEFAULT_DB_PATH
    project_workers: int = 3
    file_workers: int = 3
    page_workers: int = 3
    log_level: str = "INFO"

    def require_remote(self) -> None:
        """Raise ConfigError unless the GitLab endpoint and group are set."""
        missing = [
            name
            for name, value in (("GITLAB_ENDPOINT", self.endpoint), ("GITLAB_GROUP", self.group))
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing setting(s): {', '.join(missing)}")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ConfigError(f"{name} must be at least 1, got {value}")
    return value


def _log_level_env(name: str = "LOG_LEVEL", default: str = "INFO") -> str:
    level = os.getenv(name, "").strip().upper() or default
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"{name} must be a logging level name, got {level!r}")
    return level


def load_settings(env_file: str | Path | None = ".env") -> Settings:
    """Build Settings from *env_file* (if it exists) and the environment.

    Variables already set in the environment win over the file. When
    ``GITLAB_TOKEN`` is unset the keychain token saved for the endpoint is used.
    """
    if env_file and Path(env_file).is_file():
        load_dotenv(env_file)

    endpoint = os.getenv("GITLAB_ENDPOINT", "").strip().rstrip("/")
    token = os.getenv("GITLAB_TOKEN", "").strip() or token_store.load_token(endpoint)
    db_path = os.getenv("LABGREP_DB", "").strip()

    return Settings(
        endpoint=endpoint,
        group=os.getenv("GITLAB_GROUP", "").strip(),
        token=token or None,
        db_path=Path(db_path).expanduser() if db_path else DEFAULT_DB_PATH,
        project_workers=_int_env("LABGREP_PROJECT_WORKERS", 3),
        file_workers=_int_env("LABGREP_FILE_WORKERS", 3),
        page_workers=_int_env("LABGREP_PAGE_WORKERS", 3),
        log_level=_log_level_env(),
    )
