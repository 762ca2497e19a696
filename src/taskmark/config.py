# src/taskmark/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time: the backend URL/key are only checked
  when the backend client is built.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "TASKMARK"

INSERT_POLICIES = ("optimistic", "realtime")
FILTER_MODES = ("client", "server")


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


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_choice(name: str, choices: tuple[str, ...], default: str) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    return raw if raw in choices else default


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

    # ---- Backend ----
    supabase_url: str
    supabase_anon_key: str
    http_timeout_seconds: float

    # ---- Realtime ----
    realtime_enabled: bool
    realtime_heartbeat_seconds: float
    realtime_reconnect_seconds: float

    # ---- Store policies (one per deployment) ----
    insert_policy: str
    filter_mode: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    session_path: Path

    @staticmethod
    def from_env() -> "Settings":
        app_name = _first_env(_k("APP_NAME"), default="taskmark") or "taskmark"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        # Accept the plain SUPABASE_* names too (what the dashboard tells you to export).
        supabase_url = (_first_env(_k("SUPABASE_URL"), "SUPABASE_URL", default="") or "").strip()
        supabase_anon_key = (
            _first_env(_k("SUPABASE_ANON_KEY"), "SUPABASE_ANON_KEY", default="") or ""
        ).strip()
        http_timeout_seconds = max(1.0, _env_float(_k("HTTP_TIMEOUT_SECONDS"), 30.0))

        realtime_enabled = _env_bool(_k("REALTIME_ENABLED"), True)
        realtime_heartbeat_seconds = max(1.0, _env_float(_k("REALTIME_HEARTBEAT_SECONDS"), 25.0))
        realtime_reconnect_seconds = max(0.5, _env_float(_k("REALTIME_RECONNECT_SECONDS"), 5.0))

        insert_policy = _env_choice(_k("INSERT_POLICY"), INSERT_POLICIES, "optimistic")
        # The realtime policy is meaningless without a push channel.
        if insert_policy == "realtime" and not realtime_enabled:
            insert_policy = "optimistic"
        filter_mode = _env_choice(_k("FILTER_MODE"), FILTER_MODES, "client")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskmark"))
        session_path = _env_path(_k("SESSION_PATH"), data_dir / "session.json")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            supabase_url=supabase_url,
            supabase_anon_key=supabase_anon_key,
            http_timeout_seconds=http_timeout_seconds,
            realtime_enabled=realtime_enabled,
            realtime_heartbeat_seconds=realtime_heartbeat_seconds,
            realtime_reconnect_seconds=realtime_reconnect_seconds,
            insert_policy=insert_policy,
            filter_mode=filter_mode,
            data_dir=data_dir,
            session_path=session_path,
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
