import docker
import pytest

from envsync.docker_ops import (
    DEPENDS_DELIMITED,
    DEPENDS_JSON,
    DEPENDS_MALFORMED,
    DEPENDS_NONE,
    ContainerSnapshot,
    compose_info,
    merge_environment,
    parse_depends_on,
)


@pytest.mark.parametrize(
    "raw,kind,services",
    [
        (None, DEPENDS_NONE, ()),
        ("   ", DEPENDS_NONE, ()),
        ("db:service_started:false,redis:service_healthy:true", DEPENDS_DELIMITED, ("db", "redis")),
        ("db", DEPENDS_DELIMITED, ("db",)),
        ("db, cache ,", DEPENDS_DELIMITED, ("db", "cache")),
        ('["db", "redis:service_healthy"]', DEPENDS_JSON, ("db", "redis")),
        ('[{"service": "db", "condition": "service_started"}]', DEPENDS_JSON, ("db",)),
        ('{"db": {"condition": "service_started"}}', DEPENDS_JSON, ("db",)),
        ("[]", DEPENDS_JSON, ()),
    ],
)
def test_parse_depends_on(raw, kind, services):
    parsed = parse_depends_on(raw)
    assert parsed.kind == kind
    assert parsed.services == services


@pytest.mark.parametrize("raw", ['["db", ', "[1, 2]", '"service"'])
def test_parse_depends_on_malformed(raw):
    parsed = parse_depends_on(raw)
    assert parsed.kind == DEPENDS_MALFORMED
    assert parsed.error
    assert parsed.services == ()


def test_compose_info_requires_project_and_service():
    assert compose_info({}) is None
    assert compose_info(None) is None
    assert compose_info({"com.docker.compose.project": "shop"}) is None
    info = compose_info(
        {
            "com.docker.compose.project": "shop",
            "com.docker.compose.service": "api",
            "com.docker.compose.project.config_files": "/srv/a.yml,/srv/b.yml",
        }
    )
    assert info.project == "shop"
    assert info.service == "api"
    assert info.config_files == ("/srv/a.yml", "/srv/b.yml")


def test_merge_environment_overwrites_and_drops():
    env = ["PATH=/usr/bin", "OLD=1", "KEEP=yes", "FLAG"]
    merged = merge_environment(env, {"OLD": "2", "NEW": "x=y"}, removed=["KEEP"])
    assert merged == ["PATH=/usr/bin", "OLD=2", "FLAG", "NEW=x=y"]


def test_merge_environment_without_variables_is_identity():
    assert merge_environment(["A=1"], None) == ["A=1"]


def _attrs(**host):
    cid = "f" * 64
    return {
        "Id": cid,
        "Name": "/shop-api-1",
        "State": {"Status": "running"},
        "Config": {
            "Image": "shop/api:1.2",
            "Cmd": ["serve"],
            "Entrypoint": ["/entry.sh"],
            "Env": ["A=1"],
            "ExposedPorts": {"80/tcp": {}, "53/udp": {}},
            "Volumes": {"/cache": {}},
            "Labels": {"com.docker.compose.project": "shop"},
            "WorkingDir": "/app",
            "User": "app",
        },
        "HostConfig": {
            "Binds": ["/srv/data:/data:ro"],
            "PortBindings": {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]},
            "NetworkMode": "shop_default",
            "RestartPolicy": {"Name": "always", "MaximumRetryCount": 0},
            "Memory": 268435456,
            "CpuShares": 512,
            **host,
        },
        "NetworkSettings": {
            "Networks": {
                "shop_default": {"Aliases": ["shop-api-1", "api", cid[:12]]},
                "shop_backend": {"Aliases": ["api"]},
                "bridge": {"Aliases": None},
            }
        },
    }


def test_snapshot_from_attrs():
    snap = ContainerSnapshot.from_attrs(_attrs())
    assert snap.name == "shop-api-1"
    assert snap.image == "shop/api:1.2"
    assert snap.status == "running"
    assert set(snap.exposed_ports) == {"80/tcp", "53/udp"}
    assert snap.restart_policy == {"Name": "always", "MaximumRetryCount": 0}
    assert snap.memory == 268435456
    # The old short id is not carried over as an alias.
    assert snap.networks["shop_default"] == ("shop-api-1", "api")
    assert snap.primary_network == "shop_default"
    assert snap.extra_networks() == {"shop_backend": ("api",)}


@pytest.mark.parametrize("mode", ["bridge", "host", "none", "container:abc", None])
def test_no_primary_network_for_builtin_modes(mode):
    snap = ContainerSnapshot.from_attrs(_attrs(NetworkMode=mode))
    assert snap.primary_network is None
    assert "shop_default" in snap.extra_networks()


def test_create_options_replay_runtime_config(docker_engine):
    snap = ContainerSnapshot.from_attrs(_attrs())
    opts = snap.create_options(docker_engine.api, environment=["A=2"])
    assert opts["name"] == "shop-api-1"
    assert opts["image"] == "shop/api:1.2"
    assert opts["command"] == ["serve"]
    assert opts["entrypoint"] == ["/entry.sh"]
    assert opts["environment"] == ["A=2"]
    assert opts["volumes"] == ["/cache"]
    assert opts["labels"] == {"com.docker.compose.project": "shop"}
    host = opts["host_config"]
    assert host["binds"] == ["/srv/data:/data:ro"]
    assert host["port_bindings"] == {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]}
    assert host["network_mode"] == "shop_default"
    assert host["restart_policy"]["Name"] == "always"
    assert host["mem_limit"] == 268435456
    assert host["cpu_shares"] == 512
    assert opts["networking_config"] == {"EndpointsConfig": {"shop_default": {"aliases": ["shop-api-1", "api"]}}}


def test_create_options_default_to_snapshot_env(docker_engine):
    snap = ContainerSnapshot.from_attrs(_attrs())
    assert snap.create_options(docker_engine.api)["environment"] == ["A=1"]


def test_create_options_build_a_valid_container_config():
    snap = ContainerSnapshot.from_attrs(_attrs())
    api = docker.APIClient(base_url="tcp://127.0.0.1:2375", version="1.41")
    try:
        opts = snap.create_options(api, environment=["A=2"])
        kwargs = {k: v for k, v in opts.items() if k not in ("name", "use_config_proxy")}
        config = api.create_container_config(**kwargs)
    finally:
        api.close()
    assert config["ExposedPorts"] == {"80/tcp": {}, "53/udp": {}}
    assert config["HostConfig"]["PortBindings"] == {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]}
    assert config["Env"] == ["A=2"]
    assert config["NetworkingConfig"]["EndpointsConfig"]["shop_default"]["Aliases"] == ["shop-api-1", "api"]
