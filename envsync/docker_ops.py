from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import docker
from docker.errors import DockerException

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"
COMPOSE_WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
COMPOSE_CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"
COMPOSE_DEPENDS_ON_LABEL = "com.docker.compose.depends_on"

# Networks that are never reattached explicitly.
SKIP_NETWORKS = {"bridge", "host", "none", "default"}


def get_client() -> docker.DockerClient:
    return docker.from_env()


def docker_available(client: Any) -> bool:
    try:
        client.ping()
        return True
    except DockerException:
        return False


@dataclass(frozen=True)
class ComposeInfo:
    project: str
    service: str
    working_dir: str | None = None
    config_files: tuple[str, ...] = ()


def compose_info(labels: Mapping[str, str] | None) -> ComposeInfo | None:
    """Compose membership from container labels, or None for a standalone container."""
    labels = labels or {}
    project = (labels.get(COMPOSE_PROJECT_LABEL) or "").strip()
    service = (labels.get(COMPOSE_SERVICE_LABEL) or "").strip()
    if not project or not service:
        return None
    files = labels.get(COMPOSE_CONFIG_FILES_LABEL) or ""
    return ComposeInfo(
        project=project,
        service=service,
        working_dir=labels.get(COMPOSE_WORKING_DIR_LABEL) or None,
        config_files=tuple(f.strip() for f in files.split(",") if f.strip()),
    )


DEPENDS_NONE = "none"
DEPENDS_JSON = "json"
DEPENDS_DELIMITED = "delimited"
DEPENDS_MALFORMED = "malformed"


@dataclass(frozen=True)
class DependsOn:
    kind: str  # none|json|delimited|malformed
    services: tuple[str, ...] = ()
    error: str | None = None


def _service_of(entry: str) -> str:
    # "db:service_started:false" -> "db"
    return entry.split(":", 1)[0].strip()


def parse_depends_on(raw: str | None) -> DependsOn:
    """Parse a depends_on label.

    Order: empty -> JSON (text starting with [, { or a double quote) -> comma list.
    JSON that fails to parse is reported as malformed rather than retried as a
    comma list.
    """
    if raw is None or not raw.strip():
        return DependsOn(DEPENDS_NONE)
    text = raw.strip()

    if text[0] in '[{"':
        try:
            data = json.loads(text)
        except ValueError as e:
            return DependsOn(DEPENDS_MALFORMED, error=f"invalid JSON: {e}")
        names: list[str] = []
        if isinstance(data, dict):
            names = [str(k).strip() for k in data]
        elif isinstance(data, list):
            for item in data:
                if isinstance(item, str):
                    names.append(_service_of(item))
                elif isinstance(item, dict) and isinstance(item.get("service"), str):
                    names.append(item["service"].strip())
                else:
                    return DependsOn(DEPENDS_MALFORMED, error=f"unsupported entry {item!r}")
        else:
            return DependsOn(DEPENDS_MALFORMED, error=f"unsupported JSON type {type(data).__name__}")
        return DependsOn(DEPENDS_JSON, tuple(n for n in names if n))

    names = [_service_of(part) for part in text.split(",")]
    return DependsOn(DEPENDS_DELIMITED, tuple(n for n in names if n))


def merge_environment(env: Iterable[str], variables: Mapping[str, str] | None, removed: Iterable[str] = ()) -> list[str]:
    """Apply a fresh variable set on top of a container's ``KEY=VALUE`` list."""
    merged: dict[str, str | None] = {}
    for item in env:
        key, sep, value = item.partition("=")
        merged[key] = value if sep else None
    for key in removed:
        merged.pop(key, None)
    for key, value in (variables or {}).items():
        merged[key] = value
    return [k if v is None else f"{k}={v}" for k, v in merged.items()]


@dataclass(frozen=True)
class ContainerSnapshot:
    """Everything needed to recreate a container, read from ``docker inspect``."""

    id: str
    name: str
    image: str
    status: str
    command: list[str] | str | None = None
    entrypoint: list[str] | str | None = None
    env: tuple[str, ...] = ()
    exposed_ports: tuple[str, ...] = ()
    volumes: tuple[str, ...] = ()
    working_dir: str | None = None
    user: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    binds: list[str] | None = None
    mounts: list[dict[str, Any]] | None = None
    port_bindings: dict[str, Any] | None = None
    network_mode: str | None = None
    restart_policy: dict[str, Any] | None = None
    memory: int | None = None
    cpu_shares: int | None = None
    nano_cpus: int | None = None
    extra_hosts: list[str] | None = None
    cap_add: list[str] | None = None
    privileged: bool = False
    networks: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_attrs(cls, attrs: Mapping[str, Any]) -> "ContainerSnapshot":
        cfg = attrs.get("Config") or {}
        host = attrs.get("HostConfig") or {}
        state = attrs.get("State") or {}
        container_id = attrs.get("Id") or ""
        stale = {container_id, container_id[:12]}

        networks: dict[str, tuple[str, ...]] = {}
        for net_name, net_cfg in ((attrs.get("NetworkSettings") or {}).get("Networks") or {}).items():
            aliases = (net_cfg or {}).get("Aliases") or []
            networks[net_name] = tuple(a for a in aliases if a and a not in stale)

        return cls(
            id=container_id,
            name=(attrs.get("Name") or "").lstrip("/"),
            image=cfg.get("Image") or attrs.get("Image") or "",
            status=state.get("Status") or "",
            command=cfg.get("Cmd"),
            entrypoint=cfg.get("Entrypoint"),
            env=tuple(cfg.get("Env") or ()),
            exposed_ports=tuple((cfg.get("ExposedPorts") or {}).keys()),
            volumes=tuple((cfg.get("Volumes") or {}).keys()),
            working_dir=cfg.get("WorkingDir") or None,
            user=cfg.get("User") or None,
            labels=dict(cfg.get("Labels") or {}),
            binds=host.get("Binds") or None,
            mounts=host.get("Mounts") or None,
            port_bindings=host.get("PortBindings") or None,
            network_mode=host.get("NetworkMode") or None,
            restart_policy=host.get("RestartPolicy") or None,
            memory=host.get("Memory") or None,
            cpu_shares=host.get("CpuShares") or None,
            nano_cpus=host.get("NanoCpus") or None,
            extra_hosts=host.get("ExtraHosts") or None,
            cap_add=host.get("CapAdd") or None,
            privileged=bool(host.get("Privileged")),
            networks=networks,
        )

    @property
    def primary_network(self) -> str | None:
        """Named network the container is created on (None for bridge/host/none/container:...)."""
        mode = self.network_mode
        if not mode or mode in SKIP_NETWORKS or mode.startswith("container:"):
            return None
        return mode

    def extra_networks(self) -> dict[str, tuple[str, ...]]:
        """Networks to connect after create: everything except defaults and the primary one."""
        return {
            name: aliases
            for name, aliases in self.networks.items()
            if name not in SKIP_NETWORKS and name != self.primary_network
        }

    def port_specs(self) -> list[Any]:
        """Exposed ports as docker-py expects them: ``"80/tcp"`` becomes ``("80", "tcp")``."""
        return [tuple(p.split("/", 1)) if "/" in p else p for p in self.exposed_ports]

    def create_options(self, api: Any, environment: list[str] | None = None) -> dict[str, Any]:
        """kwargs for ``APIClient.create_container`` that replay this snapshot."""
        host_config = api.create_host_config(
            binds=self.binds,
            mounts=self.mounts,
            port_bindings=self.port_bindings,
            network_mode=self.network_mode,
            restart_policy=self.restart_policy,
            mem_limit=self.memory,
            cpu_shares=self.cpu_shares,
            nano_cpus=self.nano_cpus,
            extra_hosts=self.extra_hosts,
            cap_add=self.cap_add,
            privileged=self.privileged,
        )
        networking_config = None
        primary = self.primary_network
        if primary:
            networking_config = api.create_networking_config(
                {primary: api.create_endpoint_config(aliases=list(self.networks.get(primary, ())) or None)}
            )
        return {
            "image": self.image,
            "name": self.name,
            "command": self.command,
            "entrypoint": self.entrypoint,
            "environment": list(self.env) if environment is None else environment,
            "ports": self.port_specs() or None,
            "volumes": list(self.volumes) or None,
            "working_dir": self.working_dir,
            "user": self.user,
            "labels": self.labels,
            "host_config": host_config,
            "networking_config": networking_config,
            # Keep Env exactly as captured; no proxy vars injected from the docker CLI config.
            "use_config_proxy": False,
        }
