import dataclasses
import itertools
import os
import sys

import pytest
from docker.errors import APIError, NotFound

# Ensure project root is importable (so `import main` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from envsync import db  # noqa: E402


@pytest.fixture(autouse=True)
def events_db(tmp_path, monkeypatch):
    """Point the event journal at an isolated sqlite file."""
    path = str(tmp_path / "events.db")
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, events_db_path=path))
    return path


class FakeContainer:
    def __init__(self, engine, cid, attrs):
        self._engine = engine
        self.id = cid
        self.attrs = attrs

    @property
    def name(self):
        return self.attrs["Name"].lstrip("/")

    @property
    def labels(self):
        return self.attrs["Config"].get("Labels") or {}

    @property
    def status(self):
        return self.attrs["State"]["Status"]

    def reload(self):
        if self.id not in self._engine.by_id:
            raise NotFound(f"No such container: {self.id}")
        self.attrs = self._engine.by_id[self.id].attrs

    def stop(self, timeout=None):
        self._engine.api.stop(self.id, timeout=timeout)

    def start(self):
        self._engine.api.start(self.id)


class FakeContainers:
    def __init__(self, engine):
        self._engine = engine

    def get(self, name_or_id):
        for c in self._engine.by_id.values():
            if c.id == name_or_id or c.name == name_or_id:
                return FakeContainer(self._engine, c.id, c.attrs)
        raise NotFound(f"No such container: {name_or_id}")

    def list(self, all=False, filters=None):
        wanted = (filters or {}).get("label")
        out = []
        for c in self._engine.by_id.values():
            if not all and c.status != "running":
                continue
            if wanted:
                key, _, value = wanted.partition("=")
                if c.labels.get(key) != value:
                    continue
            out.append(FakeContainer(self._engine, c.id, c.attrs))
        return out


class FakeAPI:
    def __init__(self, engine):
        self._engine = engine

    def create_host_config(self, **kwargs):
        return dict(kwargs)

    def create_endpoint_config(self, **kwargs):
        return dict(kwargs)

    def create_networking_config(self, endpoints):
        return {"EndpointsConfig": endpoints}

    def _get(self, cid):
        try:
            return self._engine.by_id[cid]
        except KeyError:
            raise NotFound(f"No such container: {cid}")

    def stop(self, cid, timeout=None):
        c = self._get(cid)
        self._engine.record("stop", c.name)
        c.attrs["State"]["Status"] = "exited"

    def remove_container(self, cid, force=False):
        c = self._get(cid)
        self._engine.fail_if("remove", c.name)
        self._engine.record("remove", c.name)
        del self._engine.by_id[cid]

    def create_container(self, **kwargs):
        self._engine.fail_if("create", kwargs["name"])
        self._engine.created.append(kwargs)
        networking = kwargs.get("networking_config") or {}
        networks = {n: {"Aliases": (ep or {}).get("aliases") or []} for n, ep in networking.get("EndpointsConfig", {}).items()}
        c = self._engine.add(
            kwargs["name"],
            image=kwargs["image"],
            labels=kwargs.get("labels"),
            env=kwargs.get("environment"),
            status="created",
            networks=networks,
            network_mode=(kwargs.get("host_config") or {}).get("network_mode"),
        )
        self._engine.record("create", c.name)
        return {"Id": c.id, "Warnings": []}

    def start(self, cid):
        c = self._get(cid)
        self._engine.fail_if("start", c.name)
        self._engine.record("start", c.name)
        c.attrs["State"]["Status"] = "running"


class FakeNetwork:
    def __init__(self, engine, name):
        self._engine = engine
        self.name = name

    def connect(self, container, aliases=None):
        self._engine.fail_if("connect", self.name)
        self._engine.record("connect", self.name, tuple(aliases or ()))
        c = self._engine.by_id[container]
        c.attrs["NetworkSettings"]["Networks"][self.name] = {"Aliases": list(aliases or [])}


class FakeNetworks:
    def __init__(self, engine):
        self._engine = engine

    def get(self, name):
        return FakeNetwork(self._engine, name)


class FakeDocker:
    """In-memory stand-in for docker.DockerClient with an ordered call log."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.by_id = {}
        self.events = []
        self.created = []
        self.failures = set()
        self.containers = FakeContainers(self)
        self.api = FakeAPI(self)
        self.networks = FakeNetworks(self)

    def ping(self):
        return True

    def record(self, *event):
        self.events.append(event)

    def fail_if(self, op, name):
        if (op, name) in self.failures:
            raise APIError(f"{op} {name} refused")

    def add(
        self,
        name,
        image="nginx:alpine",
        labels=None,
        env=None,
        status="running",
        networks=None,
        network_mode=None,
        **host,
    ):
        cid = f"{next(self._ids):064x}"
        attrs = {
            "Id": cid,
            "Name": f"/{name}",
            "State": {"Status": status},
            "Config": {
                "Image": image,
                "Cmd": ["run"],
                "Entrypoint": None,
                "Env": list(env or []),
                "ExposedPorts": {"80/tcp": {}},
                "Labels": dict(labels or {}),
                "WorkingDir": "/srv",
            },
            "HostConfig": {
                "Binds": ["/data:/data:rw"],
                "PortBindings": {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]},
                "NetworkMode": network_mode or "bridge",
                "RestartPolicy": {"Name": "unless-stopped", "MaximumRetryCount": 0},
                "Memory": 0,
                **host,
            },
            "NetworkSettings": {"Networks": dict(networks or {"bridge": {"Aliases": None}})},
        }
        c = FakeContainer(self, cid, attrs)
        self.by_id[cid] = c
        return c

    def is_running(self, name):
        return any(c.name == name and c.status == "running" for c in self.by_id.values())

    def index(self, *event):
        return self.events.index(event)


@pytest.fixture
def docker_engine():
    return FakeDocker()


def compose_labels(project, service, depends_on=None):
    labels = {
        "com.docker.compose.project": project,
        "com.docker.compose.service": service,
    }
    if depends_on is not None:
        labels["com.docker.compose.depends_on"] = depends_on
    return labels


@pytest.fixture
def labels():
    return compose_labels
