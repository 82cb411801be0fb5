"""Register an app's domain with the host Nginx.

Writes ``sites-available/<app>`` forwarding the domain to the app's host
port, enables it, and reloads Nginx only when ``nginx -t`` accepts the whole
configuration.  Rerunning with the same inputs rewrites an identical file.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from scripts.server_init.config import DEFAULT_NGINX_SITES_AVAILABLE, DEFAULT_NGINX_SITES_ENABLED
from scripts.server_init.errors import RouteRegistrationError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOG_PREFIX = "[NGINX-ROUTE]"


logger = logging.getLogger(__name__)

# Template for the server block.  Placeholders: {domain}, {host_port}.
SERVER_BLOCK_TEMPLATE = """\
server {{
    listen 80;
    server_name {domain};

    location / {{
        proxy_pass http://127.0.0.1:{host_port}/;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
}}
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(cmd: list[str], *, env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True, check=False, env=env)


def _result_text(result: subprocess.CompletedProcess) -> str:
    stderr = str(result.stderr or "").strip()
    stdout = str(result.stdout or "").strip()
    return stderr or stdout


def render_server_block(*, domain: str, host_port: int) -> str:
    return SERVER_BLOCK_TEMPLATE.format(domain=domain, host_port=host_port)


def ensure_nginx_installed() -> bool:
    """Install Nginx through apt when missing.  Returns True if installed now."""
    if shutil.which("nginx"):
        return False
    logger.info("%s Installing Nginx...", LOG_PREFIX)
    env = dict(os.environ)
    env["DEBIAN_FRONTEND"] = "noninteractive"
    for cmd in (["apt-get", "update", "-qq"], ["apt-get", "install", "-y", "-qq", "nginx"]):
        result = _run(cmd, env=env)
        if result.returncode != 0:
            raise RouteRegistrationError(f"Failed to install Nginx ({' '.join(cmd)}): {_result_text(result)}")
    return True


def _restore(config_path: Path, previous: bytes | None, link_path: Path, link_created: bool) -> None:
    if link_created:
        link_path.unlink(missing_ok=True)
    if previous is None:
        config_path.unlink(missing_ok=True)
    else:
        config_path.write_bytes(previous)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def ensure_nginx_route(
    *,
    app_name: str,
    domain: str,
    host_port: int,
    sites_available: Path = Path(DEFAULT_NGINX_SITES_AVAILABLE),
    sites_enabled: Path = Path(DEFAULT_NGINX_SITES_ENABLED),
    install: bool = True,
) -> bool:
    """Create or refresh the route for *app_name*.

    Returns True when Nginx accepted and reloaded the configuration, False
    when validation failed and the previous configuration was kept.
    """
    if install:
        ensure_nginx_installed()

    # 1. Write the server block  ──────────────────────────────────────────
    sites_available.mkdir(parents=True, exist_ok=True)
    sites_enabled.mkdir(parents=True, exist_ok=True)
    config_path = sites_available / app_name
    link_path = sites_enabled / app_name
    if link_path.exists() and not link_path.is_symlink():
        raise RouteRegistrationError(
            f"{link_path} exists and is not a symlink; move it aside before registering {app_name}"
        )

    previous = config_path.read_bytes() if config_path.exists() else None
    logger.info("%s Creating Nginx server block for %s", LOG_PREFIX, domain)
    config_path.write_text(render_server_block(domain=domain, host_port=host_port), encoding="utf-8")

    # 2. Enable the site  ─────────────────────────────────────────────────
    link_created = False
    if not link_path.is_symlink():
        link_path.symlink_to(config_path)
        link_created = True
        logger.info("%s Enabled Nginx site: %s", LOG_PREFIX, app_name)

    # 3. Validate before reloading  ───────────────────────────────────────
    validate_result = _run(["nginx", "-t"])
    if validate_result.returncode != 0:
        _restore(config_path, previous, link_path, link_created)
        logger.warning(
            "%s Nginx configuration test failed; keeping the previous configuration: %s",
            LOG_PREFIX,
            _result_text(validate_result),
        )
        return False

    # 4. Reload  ──────────────────────────────────────────────────────────
    reload_result = _run(["systemctl", "reload", "nginx"])
    if reload_result.returncode != 0:
        logger.warning(
            "%s Nginx reload failed: %s. The route takes effect on the next Nginx start.",
            LOG_PREFIX,
            _result_text(reload_result),
        )
        return False

    logger.info("%s Registered %s -> 127.0.0.1:%s", LOG_PREFIX, domain, host_port)
    return True
