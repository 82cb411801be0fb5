"""Container runtime capability: ``docker compose`` CLI plus docker SDK lookups."""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path

import docker
from docker.errors import APIError, DockerException, NotFound

from scripts.server_init.errors import ContainerRuntimeError


LOG_PREFIX = "[DOCKER]"

logger = logging.getLogger(__name__)


def build_compose_cmd(*args: str, compose_file: str | None = None) -> list[str]:
    cmd = ["docker", "compose"]
    if compose_file:
        cmd.extend(["-f", compose_file])
    cmd.extend(args)
    return cmd


def _result_text(result: subprocess.CompletedProcess) -> str:
    stderr = str(result.stderr or "").strip()
    stdout = str(result.stdout or "").strip()
    return stderr or stdout


def _run_compose(project_dir: Path, *args: str, action: str) -> None:
    cmd = build_compose_cmd(*args)
    logger.debug("%s %s (cwd=%s)", LOG_PREFIX, " ".join(cmd), project_dir)
    result = subprocess.run(cmd, cwd=str(project_dir), capture_output=True, text=True, check=False)
    if result.returncode != 0:
        detail = _result_text(result)
        message = f"{action} (exit code {result.returncode})."
        if detail:
            message = f"{message} {detail}"
        raise ContainerRuntimeError(message)


def compose_available() -> bool:
    try:
        result = subprocess.run(build_compose_cmd("version"), capture_output=True, text=True, check=False)
    except FileNotFoundError:
        return False
    return result.returncode == 0


def compose_pull(project_dir: Path) -> None:
    _run_compose(project_dir, "pull", action="Failed to pull images")


def compose_build(project_dir: Path) -> None:
    _run_compose(project_dir, "build", "--pull", action="Failed to build Docker image")


def compose_up(project_dir: Path) -> None:
    _run_compose(project_dir, "up", "-d", action="Failed to start container")


def _client() -> docker.DockerClient:
    try:
        return docker.from_env()
    except DockerException as exc:
        raise ContainerRuntimeError(f"Docker daemon unavailable: {exc}") from exc


def container_running(name: str) -> bool:
    for container in _client().containers.list(filters={"name": name}):
        if container.name == name and container.status == "running":
            return True
    return False


def container_networks(name: str) -> list[str]:
    try:
        container = _client().containers.get(name)
    except NotFound:
        return []
    attrs = dict(container.attrs or {})
    settings = dict(attrs.get("NetworkSettings") or {})
    return sorted(dict(settings.get("Networks") or {}).keys())


def list_network_names() -> list[str]:
    return sorted(str(network.name) for network in _client().networks.list())


def connect_container_to_network(network_name: str, container_name: str) -> bool:
    """Attach *container_name* to *network_name*.

    Returns False when it was already attached, True when newly connected.
    """
    client = _client()
    try:
        network = client.networks.get(network_name)
        network.connect(container_name)
    except NotFound as exc:
        raise ContainerRuntimeError(f"Cannot connect {container_name} to {network_name}: {exc}") from exc
    except APIError as exc:
        if "already" in str(exc).lower():
            logger.info("%s %s already connected to %s", LOG_PREFIX, container_name, network_name)
            return False
        raise ContainerRuntimeError(f"Failed to connect {container_name} to {network_name}: {exc}") from exc
    logger.info("%s Connected %s to %s", LOG_PREFIX, container_name, network_name)
    return True
