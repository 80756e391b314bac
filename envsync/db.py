from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from .settings import settings

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    # Nothing we emit is above CRITICAL.
    "silent": logging.CRITICAL + 1,
}

logger = logging.getLogger("envsync")

_LEVEL_NUMBERS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_schema_lock = Lock()
_schema_ready: set[str] = set()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def configure_logging(level: str | None = None) -> None:
    """Install the console handler once and apply ``level`` (debug|info|silent)."""
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                f"%(asctime)s [{settings.container_name}] %(levelname)s %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        logger.addHandler(handler)
        logger.propagate = False

    normalized = (level or "info").strip().lower()
    if normalized not in LOG_LEVELS:
        logger.warning("Unknown log level %r, using 'info'", level)
        normalized = "info"
    if logger.level != LOG_LEVELS[normalized]:
        logger.setLevel(LOG_LEVELS[normalized])
        logger.debug("Log level: %s", normalized)


def _resolve_db_path() -> str | None:
    """Return a file path usable by sqlite, or None when the journal is disabled.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the journal is placed inside it.
    """
    if not settings.events_db_path:
        return None

    p = os.path.abspath(settings.events_db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "envsync-events.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str | None = None) -> None:
    """Create the events table if it does not exist."""
    path = path or _resolve_db_path()
    if path is None:
        return
    with _schema_lock:
        if path in _schema_ready:
            return
        with connect(path) as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  service TEXT,
                  container TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )
        _schema_ready.add(path)


def log_event(level: str, message: str, service: str | None = None, container: str | None = None) -> None:
    level = level.upper()
    prefix = ""
    if service:
        prefix += f"[{service}] "
    if container and container != service:
        prefix += f"({container}) "
    logger.log(_LEVEL_NUMBERS.get(level, logging.INFO), "%s%s", prefix, message)

    # DEBUG chatter stays out of the journal.
    if level == "DEBUG":
        return
    try:
        path = _resolve_db_path()
        if path is None:
            return
        init_db(path)
        with connect(path) as conn:
            conn.execute(
                "INSERT INTO events (ts, level, service, container, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level, service, container, message),
            )
    except (sqlite3.Error, OSError) as e:
        logger.warning("Event journal write failed: %s: %s", type(e).__name__, e)


def latest_events(limit: int = 100, service: str | None = None) -> list[dict[str, Any]]:
    path = _resolve_db_path()
    if path is None:
        return []
    init_db(path)
    with connect(path) as conn:
        if service:
            rows = conn.execute(
                "SELECT * FROM events WHERE service=? ORDER BY id DESC LIMIT ?", (service, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
