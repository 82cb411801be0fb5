"""Settings resolution for server-init.

Each setting resolves CLI flag -> environment variable -> ``.env.deploy`` in
the deployment directory -> built-in default.
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import dotenv_values


ENV_DEPLOY_DIR = "SERVER_INIT_DEPLOY_DIR"
ENV_ACME_EMAIL = "ACME_EMAIL"
ENV_ENVIRONMENT = "ENV"
ENV_GIT_TOKEN = "GIT_TOKEN"
ENV_GIT_USERNAME = "GIT_USERNAME"
ENV_GIT_PASSWORD = "GIT_PASSWORD"
ENV_PORT_RANGE_START = "PORT_RANGE_START"
ENV_PORT_RANGE_END = "PORT_RANGE_END"
ENV_NGINX_SITES_AVAILABLE = "NGINX_SITES_AVAILABLE"
ENV_NGINX_SITES_ENABLED = "NGINX_SITES_ENABLED"
ENV_LOG_LEVEL = "SERVER_INIT_LOG_LEVEL"

DEFAULT_DEPLOY_DIR = "/opt/deployment"
DEFAULT_ACME_EMAIL = "admin@example.com"
DEFAULT_ENVIRONMENT = "prod"
DEFAULT_BRANCH = "main"
DEFAULT_APP_PORT = 3000
DEFAULT_PORT_RANGE_START = 8000
DEFAULT_PORT_RANGE_END = 9999
DEFAULT_NGINX_SITES_AVAILABLE = "/etc/nginx/sites-available"
DEFAULT_NGINX_SITES_ENABLED = "/etc/nginx/sites-enabled"

ENVIRONMENTS = ("prod", "staging", "dev")

DEPLOY_DOTENV = ".env.deploy"


def read_dotenv_key(*, dotenv_path: Path, key: str) -> str:
    if not dotenv_path.exists():
        return ""
    raw = dotenv_values(dotenv_path)
    return str(raw.get(key) or "").strip()


def read_deploy_key(*, deploy_dir: Path, key: str) -> str:
    return read_dotenv_key(dotenv_path=deploy_dir / DEPLOY_DOTENV, key=key)


def resolve_setting(
    cli_value: object,
    *,
    env_key: str,
    deploy_dir: Path | None = None,
    default: str = "",
) -> str:
    resolved = str(cli_value or "").strip()
    if not resolved:
        resolved = str(os.getenv(env_key) or "").strip()
    if not resolved and deploy_dir is not None:
        resolved = read_deploy_key(deploy_dir=deploy_dir, key=env_key)
    if not resolved:
        resolved = default
    return resolved


def resolve_secret(cli_value: object, *, env_key: str) -> str:
    """Credentials come from the CLI or the process environment only."""
    resolved = str(cli_value or "").strip()
    if not resolved:
        resolved = str(os.getenv(env_key) or "").strip()
    return resolved
