"""Shared nginx-proxy + acme-companion stack, provisioned once per host.

Every deployed application joins the stack's bridge network; the proxy
discovers containers through their ``VIRTUAL_HOST``/``LETSENCRYPT_*``
variables and the companion issues and renews certificates.

An existing stack is never reconfigured, so redeploying one application
cannot disrupt the others sharing the proxy.
"""
from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import yaml

from scripts.server_init import docker_runtime
from scripts.server_init.compose_spec import COMPOSE_FILE_NAME, DEFAULT_PROXY_NETWORK_NAME, PROXY_NETWORK_KEY
from scripts.server_init.errors import ContainerRuntimeError, ProxyBootstrapError


LOG_PREFIX = "[NGINX-PROXY]"
PROXY_DIR_NAME = "nginx"
PROXY_CONTAINER = "nginx-proxy"
ACME_CONTAINER = "nginx-proxy-acme"
PROXY_IMAGE = "nginxproxy/nginx-proxy:latest"
ACME_IMAGE = "nginxproxy/acme-companion:latest"
PROXY_SUBDIRS = ("certs", "vhost.d", "html", "conf.d", "acme.sh")
READY_ATTEMPTS = 30
READY_INTERVAL_SECONDS = 1.0

NETWORK_NAME_PATTERN = re.compile(r"nginx.*proxy.*network|nginx-proxy-network")

logger = logging.getLogger(__name__)


class ProxyState(str, enum.Enum):
    NOT_PROVISIONED = "not_provisioned"
    INCOMPLETE = "incomplete"
    PROVISIONED = "provisioned"


@dataclass(frozen=True)
class ProxyStack:
    state: ProxyState
    network_name: str
    proxy_dir: Path


def proxy_dir(deploy_dir: Path) -> Path:
    return deploy_dir / PROXY_DIR_NAME


def proxy_state(deploy_dir: Path) -> ProxyState:
    directory = proxy_dir(deploy_dir)
    if not directory.is_dir():
        return ProxyState.NOT_PROVISIONED
    if not (directory / COMPOSE_FILE_NAME).is_file():
        return ProxyState.INCOMPLETE
    return ProxyState.PROVISIONED


def build_proxy_compose(*, acme_email: str) -> dict[str, Any]:
    return {
        "services": {
            PROXY_CONTAINER: {
                "image": PROXY_IMAGE,
                "container_name": PROXY_CONTAINER,
                "restart": "unless-stopped",
                "ports": ["80:80", "443:443"],
                "volumes": [
                    "/var/run/docker.sock:/tmp/docker.sock:ro",
                    "./certs:/etc/nginx/certs:ro",
                    "./vhost.d:/etc/nginx/vhost.d",
                    "./html:/usr/share/nginx/html",
                    "./conf.d:/etc/nginx/conf.d",
                ],
                "networks": [PROXY_NETWORK_KEY],
                "labels": ["com.github.nginx-proxy.nginx-proxy"],
            },
            "acme-companion": {
                "image": ACME_IMAGE,
                "container_name": ACME_CONTAINER,
                "restart": "unless-stopped",
                "volumes": [
                    "/var/run/docker.sock:/var/run/docker.sock:ro",
                    "./certs:/etc/nginx/certs:rw",
                    "./vhost.d:/etc/nginx/vhost.d",
                    "./acme.sh:/etc/acme.sh",
                    "./html:/usr/share/nginx/html",
                ],
                "networks": [PROXY_NETWORK_KEY],
                "depends_on": [PROXY_CONTAINER],
                "environment": [
                    f"DEFAULT_EMAIL={acme_email}",
                    f"NGINX_PROXY_CONTAINER={PROXY_CONTAINER}",
                ],
            },
        },
        "networks": {PROXY_NETWORK_KEY: {"driver": "bridge"}},
    }


def render_proxy_compose(*, acme_email: str) -> str:
    return yaml.safe_dump(build_proxy_compose(acme_email=acme_email), sort_keys=False)


def wait_for_proxy(
    *,
    attempts: int = READY_ATTEMPTS,
    interval_seconds: float = READY_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    for attempt in range(1, attempts + 1):
        if docker_runtime.container_running(PROXY_CONTAINER):
            logger.info("%s Nginx proxy is running", LOG_PREFIX)
            return True
        if attempt < attempts:
            sleep(interval_seconds)
    return False


def _pick_network(names: list[str]) -> str:
    for name in names:
        if NETWORK_NAME_PATTERN.search(name):
            return name
    return ""


def resolve_network_name() -> str:
    """Name of the live shared network.

    Read from the proxy container's own attachments first, then by naming
    pattern over all networks, then the conventional default.
    """
    name = _pick_network(docker_runtime.container_networks(PROXY_CONTAINER))
    if not name:
        name = _pick_network(docker_runtime.list_network_names())
    if not name:
        logger.warning(
            "%s Could not resolve proxy network; falling back to %s",
            LOG_PREFIX,
            DEFAULT_PROXY_NETWORK_NAME,
        )
        name = DEFAULT_PROXY_NETWORK_NAME
    return name


def _provision(directory: Path, acme_email: str) -> None:
    for sub in PROXY_SUBDIRS:
        (directory / sub).mkdir(parents=True, exist_ok=True)

    compose_path = directory / COMPOSE_FILE_NAME
    compose_path.write_text(render_proxy_compose(acme_email=acme_email), encoding="utf-8")

    logger.info("%s Starting Nginx reverse proxy...", LOG_PREFIX)
    try:
        docker_runtime.compose_pull(directory)
        docker_runtime.compose_up(directory)
    except ContainerRuntimeError as exc:
        # Without the compose file the next run sees INCOMPLETE and retries.
        compose_path.unlink(missing_ok=True)
        raise ProxyBootstrapError(f"Failed to start the shared reverse proxy: {exc}") from exc


def ensure_proxy(
    deploy_dir: Path,
    *,
    acme_email: str,
    ready_attempts: int = READY_ATTEMPTS,
    ready_interval_seconds: float = READY_INTERVAL_SECONDS,
) -> ProxyStack:
    state = proxy_state(deploy_dir)
    directory = proxy_dir(deploy_dir)

    if state is ProxyState.PROVISIONED:
        logger.info("%s Shared reverse proxy already provisioned at %s", LOG_PREFIX, directory)
    else:
        if state is ProxyState.INCOMPLETE:
            logger.warning("%s Found incomplete proxy setup at %s; provisioning again", LOG_PREFIX, directory)
        logger.info("%s Setting up Nginx reverse proxy with automatic SSL...", LOG_PREFIX)
        _provision(directory, acme_email)
        logger.info("%s Waiting for Nginx proxy to be ready...", LOG_PREFIX)
        if not wait_for_proxy(attempts=ready_attempts, interval_seconds=ready_interval_seconds):
            logger.warning(
                "%s %s did not reach running state after %s attempts; continuing. Check: docker logs %s",
                LOG_PREFIX,
                PROXY_CONTAINER,
                ready_attempts,
                PROXY_CONTAINER,
            )

    return ProxyStack(state=state, network_name=resolve_network_name(), proxy_dir=directory)
