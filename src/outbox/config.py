# src/outbox/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app, passed into the composition root.
- No secrets required at import time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENV_PREFIX = "OUTBOX"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path

    # ---- Runner ----
    runner_parallelism: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    retry_max_attempts: int  # 0 = retry transient errors forever
    completed_retention: int  # 0 = keep every finished task

    # ---- Connectivity ----
    connectivity_probe_url: Optional[str]
    connectivity_probe_interval_seconds: float
    connectivity_probe_timeout_seconds: float

    # ---- HTTP task kind ----
    http_timeout_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "outbox") or "outbox"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/outbox"))
        tasks_db_path = _env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3")

        probe_url = _env(_k("CONNECTIVITY_PROBE_URL"), "").strip() or None

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            runner_parallelism=max(1, _env_int(_k("RUNNER_PARALLELISM"), 4)),
            retry_base_delay_seconds=_env_float(_k("RETRY_BASE_DELAY_SECONDS"), 2.0),
            retry_max_delay_seconds=_env_float(_k("RETRY_MAX_DELAY_SECONDS"), 300.0),
            retry_max_attempts=max(0, _env_int(_k("RETRY_MAX_ATTEMPTS"), 0)),
            completed_retention=max(0, _env_int(_k("COMPLETED_RETENTION"), 200)),
            connectivity_probe_url=probe_url,
            connectivity_probe_interval_seconds=_env_float(_k("CONNECTIVITY_PROBE_INTERVAL_SECONDS"), 15.0),
            connectivity_probe_timeout_seconds=_env_float(_k("CONNECTIVITY_PROBE_TIMEOUT_SECONDS"), 5.0),
            http_timeout_seconds=_env_float(_k("HTTP_TIMEOUT_SECONDS"), 20.0),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
