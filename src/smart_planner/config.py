# src/smart_planner/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole engine (normal "settings layer").
- No secrets required at import time.
- Oracle/transport credentials are optional; missing ones select the offline adapters.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

ENV_PREFIX = "SMART"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


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


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    parts = [p.strip() for p in raw.replace(",", " ").split() if p.strip()]
    return parts


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

    # ---- Optimizer tuning ----
    default_task_minutes: int
    break_minutes_high: int
    break_minutes_medium: int
    break_minutes_low: int
    break_fallback_minutes: int
    history_limit: int

    # ---- Timeouts (seconds) ----
    oracle_timeout_seconds: float
    store_timeout_seconds: float
    shutdown_grace_seconds: float

    # ---- Importance oracle (OpenAI-compatible) ----
    llm_enabled: bool
    llm_api_key: Optional[str]
    llm_base_url: str
    llm_models: List[str]
    extra_headers: Dict[str, str]

    # ---- Travel oracle ----
    travel_api_key: Optional[str]
    travel_base_url: str
    travel_mode: str

    # ---- Notifications ----
    notify_webhook_url: Optional[str]

    @property
    def break_minutes(self) -> Dict[str, int]:
        return {
            "high": self.break_minutes_high,
            "medium": self.break_minutes_medium,
            "low": self.break_minutes_low,
        }

    @staticmethod
    def from_env() -> "Settings":
        app_name = _first_env(_k("APP_NAME"), default="smart-planner") or "smart-planner"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/smart"))
        tasks_db_path = _env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3")

        default_task_minutes = _env_int(_k("DEFAULT_TASK_MINUTES"), 30)
        break_minutes_high = _env_int(_k("BREAK_MINUTES_HIGH"), 10)
        break_minutes_medium = _env_int(_k("BREAK_MINUTES_MEDIUM"), 15)
        break_minutes_low = _env_int(_k("BREAK_MINUTES_LOW"), 20)
        break_fallback_minutes = _env_int(_k("BREAK_FALLBACK_MINUTES"), 15)
        history_limit = _env_int(_k("HISTORY_LIMIT"), 10)

        oracle_timeout_seconds = _env_float(_k("ORACLE_TIMEOUT_SECONDS"), 3.0)
        store_timeout_seconds = _env_float(_k("STORE_TIMEOUT_SECONDS"), 5.0)
        shutdown_grace_seconds = _env_float(_k("SHUTDOWN_GRACE_SECONDS"), 10.0)

        llm_enabled = _env_bool(_k("LLM_ENABLED"), True)
        llm_api_key = _first_env(_k("LLM_API_KEY"), "OPENAI_API_KEY", default=None)
        llm_base_url = _env(_k("LLM_BASE_URL"), "https://api.openai.com/v1")
        llm_models = _env_list(_k("LLM_MODELS"), ["gpt-4o-mini"])
        extra_headers = {"X-Title": _env(_k("APP_TITLE"), app_name)}

        travel_api_key = _first_env(_k("TRAVEL_API_KEY"), "GOOGLE_MAPS_API_KEY", default=None)
        travel_base_url = _env(
            _k("TRAVEL_BASE_URL"),
            "https://maps.googleapis.com/maps/api/distancematrix/json",
        )
        travel_mode = _env(_k("TRAVEL_MODE"), "driving")

        notify_webhook_url = _first_env(_k("NOTIFY_WEBHOOK_URL"), default=None)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            default_task_minutes=default_task_minutes,
            break_minutes_high=break_minutes_high,
            break_minutes_medium=break_minutes_medium,
            break_minutes_low=break_minutes_low,
            break_fallback_minutes=break_fallback_minutes,
            history_limit=history_limit,
            oracle_timeout_seconds=oracle_timeout_seconds,
            store_timeout_seconds=store_timeout_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
            llm_enabled=llm_enabled,
            llm_api_key=llm_api_key,
            llm_base_url=llm_base_url,
            llm_models=llm_models,
            extra_headers=extra_headers,
            travel_api_key=travel_api_key,
            travel_base_url=travel_base_url,
            travel_mode=travel_mode,
            notify_webhook_url=notify_webhook_url,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
