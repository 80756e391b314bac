from __future__ import annotations

import json
import os
import stat
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Any

from .db import log_event, utc_now

STATE_VERSION = "1.0.0"


class StateError(RuntimeError):
    pass


@dataclass(frozen=True)
class ServiceState:
    env_file_path: str
    last_hash: str
    last_sync: str
    variable_count: int

    def to_json(self) -> dict[str, Any]:
        return {
            "envFilePath": self.env_file_path,
            "lastHash": self.last_hash,
            "lastSync": self.last_sync,
            "variableCount": self.variable_count,
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "ServiceState":
        return cls(
            env_file_path=str(raw["envFilePath"]),
            last_hash=str(raw["lastHash"]),
            last_sync=str(raw["lastSync"]),
            variable_count=int(raw["variableCount"]),
        )


def atomic_write(path: str, data: bytes) -> None:
    """Write ``data`` to ``path`` via a temp file in the same directory + rename."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    tmp = os.path.join(directory, f".tmp-{uuid.uuid4().hex}")
    # New files get 0o666 & ~umask; an existing file keeps its mode.
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        try:
            os.chmod(tmp, stat.S_IMODE(os.stat(path).st_mode))
        except FileNotFoundError:
            pass
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


class StateStore:
    """Per-service record of what was last applied.

    This, not the env file on disk, is the source of truth for "has the secret
    source changed since we last acted". A version mismatch resets everything.
    """

    def __init__(self, path: str, version: str = STATE_VERSION):
        self.path = path
        self.version = version
        self._lock = Lock()
        self._services: dict[str, ServiceState] = {}

    def load(self) -> dict[str, ServiceState]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            log_event("INFO", f"No state file at {self.path}, starting fresh")
            return self._reset_all()
        except (OSError, ValueError) as e:
            log_event("WARN", f"Cannot read state file {self.path}: {type(e).__name__}: {e}, starting fresh")
            return self._reset_all()

        if not isinstance(raw, dict) or raw.get("version") != self.version:
            found = raw.get("version") if isinstance(raw, dict) else None
            log_event("WARN", f"State version {found!r} does not match {self.version!r}, resetting state")
            return self._reset_all()

        services: dict[str, ServiceState] = {}
        try:
            for service_id, entry in (raw.get("services") or {}).items():
                services[str(service_id)] = ServiceState.from_json(entry)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            log_event("WARN", f"State file {self.path} is malformed ({type(e).__name__}: {e}), resetting state")
            return self._reset_all()

        with self._lock:
            self._services = services
        log_event("INFO", f"State loaded ({len(services)} services)")
        for service_id, st in services.items():
            log_event("DEBUG", f"{st.variable_count} variables, last sync {st.last_sync}", service=service_id)
        return dict(services)

    def _reset_all(self) -> dict[str, ServiceState]:
        with self._lock:
            self._services = {}
            try:
                self._persist_locked()
            except StateError as e:
                # Keep running on the empty in-memory state.
                log_event("ERROR", str(e))
        return {}

    def _persist_locked(self, services: dict[str, ServiceState] | None = None) -> None:
        services = self._services if services is None else services
        doc = {
            "version": self.version,
            "lastUpdate": utc_now(),
            "services": {k: v.to_json() for k, v in services.items()},
        }
        try:
            atomic_write(self.path, json.dumps(doc, indent=2).encode("utf-8"))
        except OSError as e:
            raise StateError(f"Cannot save state to {self.path}: {type(e).__name__}: {e}") from e

    def get(self, service_id: str) -> ServiceState | None:
        with self._lock:
            return self._services.get(service_id)

    def all(self) -> dict[str, ServiceState]:
        with self._lock:
            return dict(self._services)

    def recorded_hash(self, service_id: str) -> str | None:
        st = self.get(service_id)
        return st.last_hash if st else None

    def has_changed(self, service_id: str, digest: str) -> bool:
        st = self.get(service_id)
        if st is None:
            return True
        return st.last_hash != digest

    def update(self, service_id: str, path: str, digest: str, count: int) -> ServiceState:
        """Persist first, then swap the in-memory entry; a failed write changes nothing."""
        entry = ServiceState(env_file_path=path, last_hash=digest, last_sync=utc_now(), variable_count=count)
        with self._lock:
            services = dict(self._services)
            services[service_id] = entry
            self._persist_locked(services)
            self._services = services
        log_event("INFO", f"State updated: hash {digest[:10]}, {count} variables, {path}", service=service_id)
        return entry

    def reset(self, service_id: str | None = None) -> bool:
        """Forget one service (or all when ``service_id`` is None). Returns False if unknown."""
        with self._lock:
            if service_id is None:
                services: dict[str, ServiceState] = {}
            elif service_id in self._services:
                services = {k: v for k, v in self._services.items() if k != service_id}
            else:
                return False
            self._persist_locked(services)
            self._services = services
        log_event("INFO", "State reset", service=service_id)
        return True
