from __future__ import annotations

from enum import Enum
from threading import Lock
from typing import Any, Iterable, Mapping

from docker.errors import APIError, DockerException, NotFound

from .db import log_event
from .docker_ops import (
    COMPOSE_DEPENDS_ON_LABEL,
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    DEPENDS_MALFORMED,
    ContainerSnapshot,
    compose_info,
    merge_environment,
    parse_depends_on,
)


class ReconcileError(RuntimeError):
    """A stop/remove/create/start call was rejected by the container engine."""


class ReconcileOutcome(str, Enum):
    RECREATED = "recreated"
    NOT_FOUND = "not_found"
    IN_PROGRESS = "in_progress"


class ContainerReconciler:
    """Recreates a container in place so it picks up a new environment.

    Compose dependents (containers whose depends_on names the target, directly
    or transitively) are stopped first and started again once the replacement
    is running. This is best-effort ordering, not a transaction.
    """

    def __init__(self, client: Any, stop_timeout: int = 10):
        self.client = client
        self.stop_timeout = max(0, int(stop_timeout))
        self._locks_guard = Lock()
        self._locks: dict[str, Lock] = {}

    def _lock_for(self, container_name: str) -> Lock:
        with self._locks_guard:
            return self._locks.setdefault(container_name, Lock())

    def reconcile(
        self,
        container_name: str,
        variables: Mapping[str, str] | None = None,
        removed: Iterable[str] = (),
    ) -> ReconcileOutcome:
        lock = self._lock_for(container_name)
        if not lock.acquire(blocking=False):
            log_event("WARN", "Recreate already in progress, skipping", container=container_name)
            return ReconcileOutcome.IN_PROGRESS
        try:
            return self._reconcile(container_name, variables, list(removed))
        finally:
            lock.release()

    def _reconcile(self, container_name: str, variables: Mapping[str, str] | None, removed: list[str]) -> ReconcileOutcome:
        log_event("INFO", "Starting recreate", container=container_name)
        try:
            target = self.client.containers.get(container_name)
        except NotFound:
            log_event("ERROR", "Container not found", container=container_name)
            return ReconcileOutcome.NOT_FOUND
        except DockerException as e:
            raise self._fail(container_name, "lookup", e) from e

        dependents = self.dependents_of(target)
        stopped = self._stop_dependents(dependents)

        snapshot = ContainerSnapshot.from_attrs(target.attrs)
        try:
            self._remove(snapshot)
        except ReconcileError:
            # Target is still in place, so its dependents can run again.
            self._restart_dependents(stopped)
            raise
        self._recreate(snapshot, variables, removed)

        self._restart_dependents(stopped)
        log_event("INFO", f"Recreated ({len(stopped)} dependents restarted)", container=container_name)
        return ReconcileOutcome.RECREATED

    def dependents_of(self, target: Any) -> list[Any]:
        """Containers to stop before recreating ``target``, outermost first."""
        info = compose_info(target.labels)
        if info is None:
            log_event("INFO", "No compose labels, treating as standalone", container=target.name)
            return []

        try:
            siblings = self.client.containers.list(all=True, filters={"label": f"{COMPOSE_PROJECT_LABEL}={info.project}"})
        except DockerException as e:
            log_event("WARN", f"Cannot list project {info.project}: {type(e).__name__}: {e}", container=target.name)
            return []

        # compose service -> containers that depend on it
        reverse: dict[str, list[Any]] = {}
        for c in siblings:
            if c.id == target.id:
                continue
            parsed = parse_depends_on((c.labels or {}).get(COMPOSE_DEPENDS_ON_LABEL))
            if parsed.kind == DEPENDS_MALFORMED:
                log_event("WARN", f"Ignoring malformed depends_on label on {c.name}: {parsed.error}", container=target.name)
                continue
            for dep in parsed.services:
                reverse.setdefault(dep, []).append(c)

        # Breadth-first over the reverse graph; a cycle back to the target is ignored.
        order: list[Any] = []
        seen_ids = {target.id}
        queue = [info.service]
        while queue:
            service = queue.pop(0)
            for c in reverse.get(service, []):
                if c.id in seen_ids:
                    continue
                seen_ids.add(c.id)
                order.append(c)
                dep_service = (c.labels or {}).get(COMPOSE_SERVICE_LABEL)
                if dep_service:
                    queue.append(dep_service)

        if order:
            log_event("INFO", f"Dependents: {', '.join(c.name for c in order)}", container=target.name)
        order.reverse()
        return order

    def _stop_dependents(self, dependents: list[Any]) -> list[str]:
        """Stop running dependents in order; return the names that were running."""
        stopped: list[str] = []
        for c in dependents:
            try:
                c.reload()
                if c.status != "running":
                    continue
                log_event("INFO", f"Stopping dependent {c.name}")
                c.stop(timeout=self.stop_timeout)
                stopped.append(c.name)
            except NotFound:
                log_event("WARN", f"Dependent {c.name} disappeared before stop")
            except DockerException as e:
                # Still restart the ones we already stopped on the next step.
                log_event("ERROR", f"Cannot stop dependent {c.name}: {type(e).__name__}: {e}")
        return stopped

    def _remove(self, snapshot: ContainerSnapshot) -> None:
        name = snapshot.name
        api = self.client.api
        try:
            if snapshot.status == "running":
                log_event("INFO", f"Stopping (timeout {self.stop_timeout}s)", container=name)
                api.stop(snapshot.id, timeout=self.stop_timeout)
            log_event("INFO", "Removing", container=name)
            api.remove_container(snapshot.id, force=True)
        except NotFound:
            # Gone already; creating from the snapshot is still correct.
            log_event("WARN", "Container vanished during stop/remove", container=name)
        except (APIError, DockerException) as e:
            raise self._fail(name, "stop/remove", e) from e

    def _recreate(self, snapshot: ContainerSnapshot, variables: Mapping[str, str] | None, removed: list[str]) -> None:
        name = snapshot.name
        api = self.client.api
        env = merge_environment(snapshot.env, variables, removed) if variables is not None else None
        try:
            created = api.create_container(**snapshot.create_options(api, environment=env))
        except (APIError, DockerException) as e:
            raise self._fail(name, "create", e) from e
        new_id = created["Id"] if isinstance(created, dict) else created
        log_event("INFO", f"Created {str(new_id)[:12]} from {snapshot.image}", container=name)

        self._reattach_networks(new_id, snapshot)

        try:
            api.start(new_id)
        except (APIError, DockerException) as e:
            raise self._fail(name, "start", e) from e

    def _reattach_networks(self, container_id: str, snapshot: ContainerSnapshot) -> None:
        for net_name, aliases in snapshot.extra_networks().items():
            try:
                self.client.networks.get(net_name).connect(container_id, aliases=list(aliases) or None)
                log_event("INFO", f"Connected to network {net_name}", container=snapshot.name)
            except DockerException as e:
                log_event("WARN", f"Cannot connect network {net_name}: {type(e).__name__}: {e}", container=snapshot.name)

    def _restart_dependents(self, names: list[str]) -> None:
        for name in reversed(names):
            try:
                # Resolve again: it may have been recreated by someone else meanwhile.
                c = self.client.containers.get(name)
                c.reload()
                if c.status == "running":
                    continue
                c.start()
                log_event("INFO", f"Started dependent {name}")
            except NotFound:
                log_event("ERROR", f"Dependent {name} not found, cannot restart")
            except DockerException as e:
                log_event("ERROR", f"Cannot restart dependent {name}: {type(e).__name__}: {e}")

    def _fail(self, container_name: str, step: str, e: Exception) -> ReconcileError:
        msg = f"{step} failed: {type(e).__name__}: {e}"
        log_event("ERROR", msg, container=container_name)
        return ReconcileError(f"{container_name}: {msg}")
