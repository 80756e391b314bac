from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Literal

import yaml
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, ValidationError, model_validator

from .db import log_event

DEFAULT_SYNC_INTERVAL_S = 60
MIN_SYNC_INTERVAL_S = 10


class ConfigError(Exception):
    pass


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class ServiceOverrides(_Model):
    site_url: AnyHttpUrl | None = Field(None, alias="siteUrl")
    client_id: str | None = Field(None, alias="clientId")
    client_secret: str | None = Field(None, alias="clientSecret")


class ServiceConfig(_Model):
    name: str | None = Field(None, description="Logical service id; defaults to the container name")
    container: str = Field(..., min_length=1)
    env_file_name: str = Field(..., alias="envFileName", min_length=1)
    env_dir: str = Field(..., alias="envDir", min_length=1, description="Directory (usually host-mounted) for the env file")
    project_id: str = Field(..., alias="projectId", min_length=1)
    environment: str = Field(..., min_length=1)
    sync_interval: int | None = Field(None, alias="syncInterval", ge=MIN_SYNC_INTERVAL_S)
    overrides: ServiceOverrides | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_env_file(cls, data: Any) -> Any:
        # Older configs used envFile.
        if isinstance(data, dict) and "envFile" in data and "envFileName" not in data and "env_file_name" not in data:
            data = dict(data)
            data["envFileName"] = data.pop("envFile")
        return data

    @property
    def service_id(self) -> str:
        return self.name or self.container

    @property
    def env_path(self) -> str:
        return os.path.join(self.env_dir, self.env_file_name)


class Config(_Model):
    site_url: AnyHttpUrl = Field(..., alias="siteUrl")
    client_id: str = Field(..., alias="clientId", min_length=1)
    client_secret: str = Field(..., alias="clientSecret", min_length=1)
    sync_interval: int = Field(DEFAULT_SYNC_INTERVAL_S, alias="syncInterval", ge=MIN_SYNC_INTERVAL_S)
    log_level: Literal["debug", "info", "silent"] = Field("info", alias="logLevel")
    services: list[ServiceConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_service_ids(self) -> "Config":
        seen: set[str] = set()
        for s in self.services:
            if s.service_id in seen:
                raise ValueError(f"duplicate service name '{s.service_id}'")
            seen.add(s.service_id)
        return self

    def interval_for(self, service: ServiceConfig) -> int:
        return service.sync_interval or self.sync_interval or DEFAULT_SYNC_INTERVAL_S

    def credentials_for(self, service: ServiceConfig) -> "Credentials":
        o = service.overrides or ServiceOverrides()
        return Credentials(
            site_url=str(o.site_url or self.site_url).rstrip("/"),
            client_id=o.client_id or self.client_id,
            client_secret=o.client_secret or self.client_secret,
            project_id=service.project_id,
            environment=service.environment,
        )


@dataclass(frozen=True)
class Credentials:
    site_url: str
    client_id: str
    client_secret: str
    project_id: str
    environment: str

    def __repr__(self) -> str:
        return (
            f"Credentials(site_url={self.site_url!r}, client_id={self.client_id!r}, "
            f"project_id={self.project_id!r}, environment={self.environment!r})"
        )


def load_config(path: str) -> Config:
    abs_path = os.path.abspath(path)
    log_event("INFO", f"Loading config from {abs_path}")
    try:
        with open(abs_path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"Cannot read config {abs_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {abs_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config {abs_path} must be a mapping at the top level")
    if raw.get("services") is None:
        raw["services"] = []

    try:
        config = Config.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed: {e}") from e

    for s in config.services:
        log_event("DEBUG", f"env file: {s.env_path}", service=s.service_id, container=s.container)
    return config
