from __future__ import annotations

import time
from threading import Lock, Thread
from typing import Any, Callable

from .config import Config, ConfigError, load_config
from .db import configure_logging, log_event
from .scheduler import ServiceScheduler, SyncResult, ensure_env_dir
from .state import StateStore


class ReconciliationSupervisor:
    """Owns one ServiceScheduler per configured service.

    A reload stops every scheduler and builds a new set from the fresh config.
    If the new config does not load, the current schedulers stay as they are.
    """

    def __init__(
        self,
        config_path: str,
        store: StateStore,
        provider: Any,
        reconciler: Any,
        scheduler_factory: Callable[..., ServiceScheduler] = ServiceScheduler,
        loader: Callable[[str], Config] = load_config,
    ):
        self.config_path = config_path
        self.store = store
        self.provider = provider
        self.reconciler = reconciler
        self.scheduler_factory = scheduler_factory
        self.loader = loader
        self.config: Config | None = None
        self._lock = Lock()
        self._schedulers: dict[str, ServiceScheduler] = {}
        self._retired: list[ServiceScheduler] = []

    def start(self) -> bool:
        self.store.load()
        ok = self.reload()
        if not ok:
            log_event("ERROR", "Running without sync until the config file is fixed")
        return ok

    def reload(self) -> bool:
        log_event("INFO", f"Reloading config {self.config_path}")
        try:
            config = self.loader(self.config_path)
        except ConfigError as e:
            log_event("ERROR", f"Config reload failed, keeping previous config: {e}")
            return False

        configure_logging(config.log_level)
        log_event("INFO", f"Config loaded: {len(config.services)} services, default interval {config.sync_interval}s")

        with self._lock:
            for sid, sched in self._schedulers.items():
                sched.stop()
                self._retired.append(sched)
                log_event("DEBUG", "Timer stopped", service=sid)
            self._schedulers = {}
            self.config = config

            for service in config.services:
                try:
                    ensure_env_dir(service)
                except OSError as e:
                    log_event("ERROR", f"Cannot create {service.env_dir}, not scheduling: {e}", service=service.service_id)
                    continue
                sched = self.scheduler_factory(service, config, self.provider, self.store, self.reconciler)
                self._schedulers[service.service_id] = sched
                sched.start()
            self._retired = [s for s in self._retired if not s.join(0)]

        log_event("INFO", f"Config applied, {len(self._schedulers)} schedulers running")
        return True

    def schedulers(self) -> dict[str, ServiceScheduler]:
        with self._lock:
            return dict(self._schedulers)

    def get(self, service_id: str) -> ServiceScheduler | None:
        with self._lock:
            return self._schedulers.get(service_id)

    def trigger(self, service_id: str, wait: bool = True) -> SyncResult | None:
        """Run one cycle for ``service_id`` now. Returns None if the service is unknown."""
        sched = self.get(service_id)
        if sched is None:
            return None
        if wait:
            return sched.sync_once()
        Thread(target=sched.sync_once, name=f"trigger-{service_id}", daemon=True).start()
        return None

    def shutdown(self, timeout: float = 60.0) -> None:
        """Cancel every timer, then wait up to ``timeout`` for in-flight applies."""
        with self._lock:
            pending = list(self._schedulers.values()) + self._retired
            self._schedulers = {}
            self._retired = []
        log_event("INFO", "Shutting down, stopping timers")
        for sched in pending:
            sched.stop()
        deadline = time.monotonic() + max(0.0, timeout)
        for sched in pending:
            if not sched.join(max(0.0, deadline - time.monotonic())):
                log_event("WARN", "Sync still running at shutdown", service=sched.service_id)
