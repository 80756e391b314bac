from __future__ import annotations

from pydantic import BaseModel, Field


class HealthOut(BaseModel):
    status: str
    docker: bool
    services: int


class ServiceStatusOut(BaseModel):
    name: str
    container: str
    env_file: str
    interval_s: int = Field(..., description="Effective poll interval")
    running: bool
    last_result: str | None = None
    last_hash: str | None = None
    variable_count: int | None = None
    last_sync: str | None = None


class SyncOut(BaseModel):
    service: str
    result: str


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    service: str | None = None
    container: str | None = None
    message: str
