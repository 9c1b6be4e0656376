# src/taskmirror/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Tests build their own Settings instead of reading the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "TASKMIRROR"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv_if_available() -> None:
    """Load .env locally if python-dotenv is installed. Safe no-op otherwise."""
    try:
        from dotenv import load_dotenv  # type: ignore
    except Exception:
        return
    load_dotenv(override=False)


_load_dotenv_if_available()


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


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

    # ---- Identity ----
    user_id: str
    multi_user: bool

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    fallback_db_path: Path
    remote_snapshot_path: Path

    # ---- Sync tuning ----
    quiet_period_seconds: float
    idle_save_interval_seconds: float
    idle_min_flush_seconds: float
    probe_interval_seconds: float
    canary_path: str

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskmirror").strip() or "taskmirror"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        user_id = _env(_k("USER_ID"), "").strip()
        # Without an identity there is nothing to scope per-user paths with.
        multi_user = _env_bool(_k("MULTI_USER"), bool(user_id))

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskmirror"))
        fallback_db_path = _env_path(_k("FALLBACK_DB_PATH"), data_dir / "fallback.sqlite3")
        remote_snapshot_path = _env_path(_k("REMOTE_SNAPSHOT_PATH"), data_dir / "remote_documents.json")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            user_id=user_id,
            multi_user=multi_user,
            data_dir=data_dir,
            fallback_db_path=fallback_db_path,
            remote_snapshot_path=remote_snapshot_path,
            quiet_period_seconds=_env_float(_k("QUIET_PERIOD_SECONDS"), 2.0),
            idle_save_interval_seconds=_env_float(_k("IDLE_SAVE_INTERVAL_SECONDS"), 900.0),
            idle_min_flush_seconds=_env_float(_k("IDLE_MIN_FLUSH_SECONDS"), 30.0),
            probe_interval_seconds=_env_float(_k("PROBE_INTERVAL_SECONDS"), 60.0),
            canary_path=_env(_k("CANARY_PATH"), "test/write-permission").strip() or "test/write-permission",
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
