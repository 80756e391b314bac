from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Paths
    config_path: str = os.getenv("CONFIG_PATH", "/app/data/config.yaml")
    state_path: str = os.getenv("ENVSYNC_STATE_PATH", "/app/data/agent-state.json")
    # Empty string disables the sqlite event journal.
    events_db_path: str = os.getenv("ENVSYNC_EVENTS_DB", "/app/data/envsync-events.db")

    # Docker
    stop_timeout_s: int = _env_int("ENVSYNC_STOP_TIMEOUT_S", 10)
    shutdown_timeout_s: int = _env_int("ENVSYNC_SHUTDOWN_TIMEOUT_S", 60)

    # Secret provider
    http_timeout_s: int = _env_int("ENVSYNC_HTTP_TIMEOUT_S", 30)

    # Config watcher. Polling is the safe choice for bind-mounted files.
    watch_polling: bool = _env_bool("ENVSYNC_WATCH_POLLING", True)
    watch_stability_s: float = _env_float("ENVSYNC_WATCH_STABILITY_S", 2.0)

    # Logging
    log_level: str = os.getenv("ENVSYNC_LOG_LEVEL", "info")
    container_name: str = os.getenv("CONTAINER_NAME", "infisical-docker-sync")


settings = Settings()
