from __future__ import annotations

import os
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any

from .change_detector import ChangeResult, detect_change
from .config import Config, ServiceConfig
from .db import log_event
from .env_format import EnvFormatError, parse_dotenv, to_dotenv
from .reconciler import ReconcileError, ReconcileOutcome
from .state import StateError, StateStore, atomic_write


class SyncResult(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    EMPTY = "empty"
    FETCH_FAILED = "fetch_failed"
    DETECT_FAILED = "detect_failed"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    APPLY_FAILED = "apply_failed"


class ServiceScheduler:
    """Drives fetch -> detect -> apply for one service on its own interval.

    Fetch and detect have no side effects and may overlap with a manual
    trigger; apply is single-flight per service.
    """

    def __init__(
        self,
        service: ServiceConfig,
        config: Config,
        provider: Any,
        store: StateStore,
        reconciler: Any,
    ):
        self.service = service
        self.config = config
        self.provider = provider
        self.store = store
        self.reconciler = reconciler
        self.interval_s = config.interval_for(service)
        self.last_result: SyncResult | None = None
        self._apply_lock = Lock()
        self._stop = Event()
        self._thr: Thread | None = None

    @property
    def service_id(self) -> str:
        return self.service.service_id

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        if self.service.sync_interval:
            log_event("INFO", f"Using own interval: {self.interval_s}s", service=self.service_id)
        self._stop.clear()
        self._thr = Thread(target=self._loop, name=f"sync-{self.service_id}", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        """Cancel the timer. A running apply finishes on its own."""
        self._stop.set()

    def join(self, timeout: float | None = None) -> bool:
        if self._thr is None:
            return True
        self._thr.join(timeout)
        return not self._thr.is_alive()

    @property
    def running(self) -> bool:
        return bool(self._thr and self._thr.is_alive() and not self._stop.is_set())

    def _loop(self) -> None:
        # First cycle immediately, then every interval.
        while not self._stop.is_set():
            try:
                self.sync_once()
            except Exception as e:
                log_event("ERROR", f"Sync cycle crashed: {type(e).__name__}: {e}", service=self.service_id)
            if self._stop.wait(self.interval_s):
                break
            log_event("DEBUG", f"Periodic sync (interval {self.interval_s}s)", service=self.service_id)

    def sync_once(self) -> SyncResult:
        result = self._sync()
        self.last_result = result
        return result

    def _sync(self) -> SyncResult:
        svc = self.service
        sid = self.service_id
        log_event("INFO", "Syncing", service=sid, container=svc.container)

        try:
            variables = self.provider.fetch_variables(self.config.credentials_for(svc))
        except Exception as e:
            log_event("ERROR", f"Fetch failed: {type(e).__name__}: {e}", service=sid)
            return SyncResult.FETCH_FAILED
        if not variables:
            log_event("WARN", "Secret source returned no variables, leaving container alone", service=sid)
            return SyncResult.EMPTY

        content = to_dotenv(variables)
        path = svc.env_path
        try:
            change: ChangeResult = detect_change(sid, path, content, self.store.recorded_hash(sid))
        except Exception as e:
            log_event("ERROR", f"Change detection failed: {type(e).__name__}: {e}", service=sid)
            return SyncResult.DETECT_FAILED
        if not change.changed:
            log_event("INFO", f"No changes ({len(variables)} variables)", service=sid)
            return SyncResult.UNCHANGED

        if self._stop.is_set():
            return SyncResult.BUSY
        if not self._apply_lock.acquire(blocking=False):
            log_event("WARN", "Apply already in progress, will retry next cycle", service=sid)
            return SyncResult.BUSY
        try:
            return self._apply(variables, content, change)
        finally:
            self._apply_lock.release()

    def _apply(self, variables: dict[str, str], content: str, change: ChangeResult) -> SyncResult:
        svc = self.service
        sid = self.service_id
        path = svc.env_path
        log_event("INFO", f"Applying {len(variables)} variables", service=sid, container=svc.container)

        removed = sorted(set(self._previous_variables(path)) - set(variables))
        try:
            outcome = self.reconciler.reconcile(svc.container, variables=variables, removed=removed)
        except ReconcileError as e:
            log_event("ERROR", f"Recreate failed, will retry: {e}", service=sid, container=svc.container)
            return SyncResult.APPLY_FAILED
        if outcome == ReconcileOutcome.NOT_FOUND:
            return SyncResult.NOT_FOUND
        if outcome == ReconcileOutcome.IN_PROGRESS:
            return SyncResult.BUSY

        # File and state only move after the container is back.
        try:
            atomic_write(path, content.encode("utf-8"))
            self.store.update(sid, path, change.digest, len(variables))
        except (OSError, StateError) as e:
            log_event("ERROR", f"Recreated but could not record the new state: {e}", service=sid)
            return SyncResult.APPLY_FAILED
        return SyncResult.APPLIED

    def _previous_variables(self, path: str) -> dict[str, str]:
        try:
            with open(path, "r", encoding="utf-8", newline="") as fh:
                return parse_dotenv(fh.read())
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError, EnvFormatError) as e:
            log_event("DEBUG", f"Ignoring unreadable previous env file: {e}", service=self.service_id)
            return {}


def ensure_env_dir(service: ServiceConfig) -> None:
    os.makedirs(service.env_dir, exist_ok=True)
