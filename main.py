from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from envsync import db
from envsync.api_models import EventOut, HealthOut, ServiceStatusOut, SyncOut
from envsync.docker_ops import docker_available, get_client
from envsync.infisical import InfisicalClient
from envsync.reconciler import ContainerReconciler
from envsync.settings import settings
from envsync.state import StateStore
from envsync.supervisor import ReconciliationSupervisor
from envsync.watcher import ConfigWatcher


def build_supervisor() -> tuple[ReconciliationSupervisor, Any]:
    client = get_client()
    supervisor = ReconciliationSupervisor(
        config_path=settings.config_path,
        store=StateStore(settings.state_path),
        provider=InfisicalClient(timeout_s=settings.http_timeout_s),
        reconciler=ContainerReconciler(client, stop_timeout=settings.stop_timeout_s),
    )
    return supervisor, client


def create_app(
    supervisor: ReconciliationSupervisor | None = None,
    watcher: ConfigWatcher | None = None,
    docker_client: Any = None,
) -> FastAPI:
    """Build the app. Tests pass their own supervisor/watcher/client; production builds them on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.configure_logging(settings.log_level)
        db.init_db()
        db.log_event("INFO", "Starting Infisical Docker Sync")

        sup, client = supervisor, docker_client
        if sup is None:
            sup, client = build_supervisor()
        sup.start()

        w = watcher or ConfigWatcher(
            settings.config_path,
            sup.reload,
            stability_s=settings.watch_stability_s,
            polling=settings.watch_polling,
        )
        try:
            w.start()
        except OSError as e:
            db.log_event("WARN", f"Config watcher not started: {e}")

        app.state.supervisor = sup
        app.state.docker = client
        try:
            yield
        finally:
            w.stop()
            sup.shutdown(timeout=settings.shutdown_timeout_s)

    app = FastAPI(title="Infisical Docker Sync", lifespan=lifespan)

    def _supervisor() -> ReconciliationSupervisor:
        return app.state.supervisor

    @app.get("/health", response_model=HealthOut)
    def health():
        client = app.state.docker
        return HealthOut(
            status="healthy",
            docker=docker_available(client) if client is not None else False,
            services=len(_supervisor().schedulers()),
        )

    @app.get("/services", response_model=list[ServiceStatusOut])
    def list_services():
        sup = _supervisor()
        out = []
        for sid, sched in sorted(sup.schedulers().items()):
            st = sup.store.get(sid)
            out.append(
                ServiceStatusOut(
                    name=sid,
                    container=sched.service.container,
                    env_file=sched.service.env_path,
                    interval_s=sched.interval_s,
                    running=sched.running,
                    last_result=sched.last_result.value if sched.last_result else None,
                    last_hash=st.last_hash if st else None,
                    variable_count=st.variable_count if st else None,
                    last_sync=st.last_sync if st else None,
                )
            )
        return out

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000), service: str | None = None):
        return db.latest_events(limit=limit, service=service)

    @app.post("/services/{name}/sync", response_model=SyncOut)
    def sync_now(name: str):
        result = _supervisor().trigger(name)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")
        return SyncOut(service=name, result=result.value)

    @app.delete("/services/{name}/state")
    def reset_state(name: str):
        if not _supervisor().store.reset(name):
            raise HTTPException(status_code=404, detail=f"No recorded state for '{name}'")
        return {"ok": True}

    @app.post("/reload")
    def reload():
        if not _supervisor().reload():
            raise HTTPException(status_code=409, detail="Config reload failed; previous config still active")
        return {"ok": True, "services": len(_supervisor().schedulers())}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
