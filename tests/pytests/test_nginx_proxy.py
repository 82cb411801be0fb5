from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from scripts.server_init import docker_runtime, nginx_proxy
from scripts.server_init.errors import ContainerRuntimeError, ProxyBootstrapError


@pytest.fixture
def fake_docker(monkeypatch):
    state = {
        "calls": [],
        "running": True,
        "container_networks": ["nginx_nginx-proxy-network"],
        "networks": ["bridge", "host", "nginx_nginx-proxy-network"],
        "up_error": None,
    }

    def compose_pull(project_dir: Path) -> None:
        state["calls"].append(("pull", project_dir))

    def compose_up(project_dir: Path) -> None:
        state["calls"].append(("up", project_dir))
        if state["up_error"]:
            raise ContainerRuntimeError(state["up_error"])

    monkeypatch.setattr(docker_runtime, "compose_pull", compose_pull)
    monkeypatch.setattr(docker_runtime, "compose_up", compose_up)
    monkeypatch.setattr(docker_runtime, "container_running", lambda name: state["running"])
    monkeypatch.setattr(docker_runtime, "container_networks", lambda name: list(state["container_networks"]))
    monkeypatch.setattr(docker_runtime, "list_network_names", lambda: list(state["networks"]))
    return state


def test_proxy_state_discriminates_partial_setup(tmp_path: Path) -> None:
    assert nginx_proxy.proxy_state(tmp_path) is nginx_proxy.ProxyState.NOT_PROVISIONED
    (tmp_path / "nginx").mkdir()
    assert nginx_proxy.proxy_state(tmp_path) is nginx_proxy.ProxyState.INCOMPLETE
    (tmp_path / "nginx" / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    assert nginx_proxy.proxy_state(tmp_path) is nginx_proxy.ProxyState.PROVISIONED


def test_render_proxy_compose_wires_companion_to_proxy() -> None:
    payload = yaml.safe_load(nginx_proxy.render_proxy_compose(acme_email="ops@example.com"))
    proxy = payload["services"]["nginx-proxy"]
    companion = payload["services"]["acme-companion"]

    assert proxy["ports"] == ["80:80", "443:443"]
    assert "DEFAULT_EMAIL=ops@example.com" in companion["environment"]
    assert "NGINX_PROXY_CONTAINER=nginx-proxy" in companion["environment"]
    assert companion["depends_on"] == ["nginx-proxy"]
    assert payload["networks"]["nginx-proxy-network"] == {"driver": "bridge"}


def test_ensure_proxy_provisions_when_absent(fake_docker, tmp_path: Path) -> None:
    stack = nginx_proxy.ensure_proxy(tmp_path, acme_email="ops@example.com", ready_interval_seconds=0)

    assert stack.state is nginx_proxy.ProxyState.NOT_PROVISIONED
    assert stack.network_name == "nginx_nginx-proxy-network"
    for sub in nginx_proxy.PROXY_SUBDIRS:
        assert (tmp_path / "nginx" / sub).is_dir()
    assert (tmp_path / "nginx" / "docker-compose.yml").is_file()
    assert fake_docker["calls"] == [("pull", tmp_path / "nginx"), ("up", tmp_path / "nginx")]


def test_ensure_proxy_is_noop_when_provisioned(fake_docker, tmp_path: Path) -> None:
    (tmp_path / "nginx").mkdir()
    (tmp_path / "nginx" / "docker-compose.yml").write_text("custom: true\n", encoding="utf-8")

    stack = nginx_proxy.ensure_proxy(tmp_path, acme_email="ops@example.com")

    assert stack.state is nginx_proxy.ProxyState.PROVISIONED
    assert fake_docker["calls"] == []
    assert (tmp_path / "nginx" / "docker-compose.yml").read_text(encoding="utf-8") == "custom: true\n"


def test_ensure_proxy_convergence_timeout_is_not_fatal(fake_docker, tmp_path: Path) -> None:
    fake_docker["running"] = False
    sleeps: list[float] = []

    assert nginx_proxy.wait_for_proxy(attempts=3, interval_seconds=0.5, sleep=sleeps.append) is False
    assert sleeps == [0.5, 0.5]

    stack = nginx_proxy.ensure_proxy(tmp_path, acme_email="ops@example.com", ready_attempts=2, ready_interval_seconds=0)
    assert stack.network_name == "nginx_nginx-proxy-network"


def test_ensure_proxy_start_failure_leaves_incomplete_state(fake_docker, tmp_path: Path) -> None:
    fake_docker["up_error"] = "port 80 already allocated"

    with pytest.raises(ProxyBootstrapError) as excinfo:
        nginx_proxy.ensure_proxy(tmp_path, acme_email="ops@example.com", ready_interval_seconds=0)

    assert "port 80 already allocated" in str(excinfo.value)
    assert nginx_proxy.proxy_state(tmp_path) is nginx_proxy.ProxyState.INCOMPLETE


def test_resolve_network_name_prefers_live_container(fake_docker) -> None:
    fake_docker["container_networks"] = ["proxy_nginx-proxy-network"]
    assert nginx_proxy.resolve_network_name() == "proxy_nginx-proxy-network"


def test_resolve_network_name_falls_back_to_pattern_then_default(fake_docker) -> None:
    fake_docker["container_networks"] = []
    fake_docker["networks"] = ["bridge", "nginx-proxy-network"]
    assert nginx_proxy.resolve_network_name() == "nginx-proxy-network"

    fake_docker["networks"] = ["bridge", "host"]
    assert nginx_proxy.resolve_network_name() == "nginx_nginx-proxy-network"
