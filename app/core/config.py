from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getint(name: str, default: str, *, minimum: int) -> int:
    raw = _getenv(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    redis_url: str | None
    dashboard_api_url: str | None
    dashboard_poll_seconds: int = 10
    activity_log_limit: int = 50
    session_idle_seconds: int = 1800

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if log_json_raw not in ("true", "false", "1", "0"):
        raise ValueError(f"LOG_JSON must be true|false (got {log_json_raw!r})")

    port = _getint("PORT", "8000", minimum=1)
    dashboard_poll_seconds = _getint("DASHBOARD_POLL_SECONDS", "10", minimum=1)
    activity_log_limit = _getint("ACTIVITY_LOG_LIMIT", "50", minimum=1)
    session_idle_seconds = _getint("SESSION_IDLE_SECONDS", "1800", minimum=1)

    redis_url = _getenv("REDIS_URL", "") or None
    dashboard_api_url = _getenv("DASHBOARD_API_URL", "").rstrip("/") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("true", "1"),
        port=port,
        redis_url=redis_url,
        dashboard_api_url=dashboard_api_url,
        dashboard_poll_seconds=dashboard_poll_seconds,
        activity_log_limit=activity_log_limit,
        session_idle_seconds=session_idle_seconds,
    )


SETTINGS = load_settings()
