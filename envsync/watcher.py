from __future__ import annotations

import os
from threading import Lock, Timer, current_thread
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from .db import log_event


def _path_of(raw: str | bytes | None) -> str | None:
    if not raw:
        return None
    # watchdog can hand out bytes paths
    if isinstance(raw, bytes):
        raw = os.fsdecode(raw)
    return os.path.abspath(raw)


class ConfigWatcher:
    """Emits ``on_change`` once per burst of writes to one file.

    Every event restarts a ``stability_s`` timer; the callback runs only when
    the file has been quiet for that long.
    """

    def __init__(
        self,
        path: str,
        on_change: Callable[[], object],
        stability_s: float = 2.0,
        polling: bool = True,
        poll_interval_s: float = 1.0,
    ):
        self.path = os.path.abspath(path)
        self.on_change = on_change
        self.stability_s = max(0.0, float(stability_s))
        self.observer = PollingObserver(timeout=poll_interval_s) if polling else Observer()
        self._lock = Lock()
        self._timer: Timer | None = None
        self.running = False

        watcher = self

        class _Handler(FileSystemEventHandler):
            def on_any_event(self, event: FileSystemEvent) -> None:
                if event.is_directory:
                    return
                paths = {_path_of(event.src_path), _path_of(getattr(event, "dest_path", None))}
                if watcher.path in paths:
                    watcher.notify()

        self._handler = _Handler()

    def start(self) -> None:
        if self.running:
            return
        directory = os.path.dirname(self.path)
        self.observer.schedule(self._handler, directory, recursive=False)
        self.observer.start()
        self.running = True
        log_event("INFO", f"Watching {self.path}")

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if not self.running:
            return
        self.observer.stop()
        self.observer.join(timeout=5)
        self.running = False

    def notify(self) -> None:
        """Register one raw change event and (re)start the stability timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = Timer(self.stability_s, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._timer is current_thread():
                self._timer = None
        log_event("INFO", f"Config changed: {self.path}")
        try:
            self.on_change()
        except Exception as e:
            log_event("ERROR", f"Config change handler failed: {type(e).__name__}: {e}")
