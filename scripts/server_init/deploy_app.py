#!/usr/bin/env python3
"""Deploy one containerized application to this host.

Clones or updates the app's repository under ``<deploy_dir>/apps/<name>``,
materializes its ``.env`` and ``docker-compose.yml``, makes sure the shared
nginx-proxy/acme-companion stack is running, starts the app on the proxy
network and writes a host Nginx route for its domain.

Run it again for another app, or to redeploy one in place.  Every step is
safe to repeat; nothing is retried automatically.

Security note: this script shells out to ``git``, ``docker`` and ``nginx``
and must run as root.  Git credentials are never written to disk.
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import requests
from dotenv import dotenv_values

from scripts.server_init import docker_runtime, git_sync, nginx_proxy, nginx_route, ports, prompts
from scripts.server_init.app_spec import ApplicationSpec, Credentials, build_application_spec
from scripts.server_init.compose_spec import (
    COMPOSE_FILE_NAME,
    patch_network_name_file,
    render_app_compose,
    write_app_compose,
)
from scripts.server_init.config import (
    DEFAULT_ACME_EMAIL,
    DEFAULT_APP_PORT,
    DEFAULT_BRANCH,
    DEFAULT_DEPLOY_DIR,
    DEFAULT_ENVIRONMENT,
    DEFAULT_NGINX_SITES_AVAILABLE,
    DEFAULT_NGINX_SITES_ENABLED,
    DEFAULT_PORT_RANGE_END,
    DEFAULT_PORT_RANGE_START,
    ENV_ACME_EMAIL,
    ENV_DEPLOY_DIR,
    ENV_ENVIRONMENT,
    ENV_GIT_PASSWORD,
    ENV_GIT_TOKEN,
    ENV_GIT_USERNAME,
    ENV_LOG_LEVEL,
    ENV_NGINX_SITES_AVAILABLE,
    ENV_NGINX_SITES_ENABLED,
    ENV_PORT_RANGE_END,
    ENV_PORT_RANGE_START,
    resolve_secret,
    resolve_setting,
)
from scripts.server_init.env_file import ENV_FILE_NAME, materialize_env_file
from scripts.server_init.errors import (
    BuildDescriptorMissingError,
    DeployError,
    InputValidationError,
    PreflightError,
)
from scripts.server_init.repo_url import redact_url


BUILD_DESCRIPTOR = "Dockerfile"
APPS_DIR_NAME = "apps"
SUPPORTED_OS_IDS = {"ubuntu", "debian"}
HEALTH_PROBE_ATTEMPTS = 5
HEALTH_PROBE_INTERVAL_SECONDS = 3.0
HEALTH_PROBE_TIMEOUT_SECONDS = 5

# Files this tool writes into the working directory; `git clean` leaves them alone.
GENERATED_FILES = (ENV_FILE_NAME, COMPOSE_FILE_NAME, ports.HOST_PORT_FILE)

logger = logging.getLogger(__name__)

StepLogger = Callable[..., None]


@dataclass(frozen=True)
class DeploySettings:
    deploy_dir: Path
    port_range_start: int = DEFAULT_PORT_RANGE_START
    port_range_end: int = DEFAULT_PORT_RANGE_END
    sites_available: Path = Path(DEFAULT_NGINX_SITES_AVAILABLE)
    sites_enabled: Path = Path(DEFAULT_NGINX_SITES_ENABLED)
    install_nginx: bool = True
    health_check: bool = True

    @property
    def apps_dir(self) -> Path:
        return self.deploy_dir / APPS_DIR_NAME


@dataclass(frozen=True)
class DeployResult:
    app_dir: Path
    host_port: int
    network_name: str
    repo_state: git_sync.RepoState
    proxy_state: nginx_proxy.ProxyState
    route_active: bool
    healthy: bool | None


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


def read_os_release(path: Path = Path("/etc/os-release")) -> dict[str, str]:
    if not path.exists():
        return {}
    return {str(k): str(v or "") for k, v in dotenv_values(path).items()}


def check_preflight(*, os_release_path: Path = Path("/etc/os-release")) -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise PreflightError("This script must be run as root")

    release = read_os_release(os_release_path)
    if not release:
        raise PreflightError("Cannot detect OS. This script supports Ubuntu/Debian only.")
    os_id = release.get("ID", "")
    if os_id not in SUPPORTED_OS_IDS:
        raise PreflightError(f"This script supports Ubuntu/Debian only. Detected: {os_id}")
    logger.info("Detected OS: %s", release.get("PRETTY_NAME", os_id))

    if not shutil.which("git"):
        raise PreflightError("git is not installed")
    if not docker_runtime.compose_available():
        raise PreflightError("Docker Compose is not available")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def resolve_host_port(app_dir: Path, *, app_name: str, settings: DeploySettings) -> int:
    """Reuse the recorded host port, or allocate and record a fresh one."""
    recorded = ports.read_host_port(app_dir)
    if recorded is not None:
        logger.info("Reusing recorded host port %s", recorded)
        return recorded
    reserved = ports.reserved_host_ports(settings.apps_dir, exclude=app_name)
    host_port = ports.allocate_port(settings.port_range_start, settings.port_range_end, reserved=reserved)
    ports.write_host_port(app_dir, host_port)
    return host_port


def parse_port_range(start_text: object, end_text: object) -> tuple[int, int]:
    """Parse and check the candidate host-port range from any settings source."""
    problems: list[str] = []
    bounds: list[int] = []
    for label, text in (("start", start_text), ("end", end_text)):
        value = str(text).strip()
        if not value.isdigit():
            problems.append(f"Port range {label} must be a number, got '{value}'")
            continue
        port = int(value)
        if port < 1 or port > 65535:
            problems.append(f"Port range {label} must be in range 1-65535, got {port}")
        bounds.append(port)
    if not problems and bounds[0] > bounds[1]:
        problems.append("Port range start must not exceed port range end")
    if problems:
        raise InputValidationError(context="port range", problems=problems)
    return bounds[0], bounds[1]


def probe_health(
    host_port: int,
    *,
    attempts: int = HEALTH_PROBE_ATTEMPTS,
    interval_seconds: float = HEALTH_PROBE_INTERVAL_SECONDS,
) -> bool:
    url = f"http://127.0.0.1:{host_port}/health"
    for attempt in range(1, attempts + 1):
        try:
            response = requests.get(url, timeout=HEALTH_PROBE_TIMEOUT_SECONDS)
            if 200 <= response.status_code < 400:
                return True
        except requests.RequestException:
            pass
        if attempt < attempts:
            time.sleep(interval_seconds)
    return False


def _log_step_default(message: str, *, icon: str = "") -> None:
    logger.info(message)


def deploy(
    spec: ApplicationSpec,
    credentials: Credentials,
    settings: DeploySettings,
    *,
    log_step: StepLogger = _log_step_default,
) -> DeployResult:
    app_dir = settings.apps_dir / spec.name
    app_dir.mkdir(parents=True, exist_ok=True)

    log_step("Synchronizing repository", icon="📦")
    repo_state = git_sync.sync_repository(
        directory=app_dir,
        repo_url=spec.repo_url,
        branch=spec.branch,
        credentials=credentials,
        keep=GENERATED_FILES,
    )

    if not (app_dir / BUILD_DESCRIPTOR).is_file():
        raise BuildDescriptorMissingError(f"{BUILD_DESCRIPTOR} not found in repository ({app_dir})")

    log_step("Materializing environment file", icon="🔐")
    materialize_env_file(app_dir, spec.overrides_dict(), spec.environment)

    log_step("Resolving host port", icon="🔌")
    host_port = resolve_host_port(app_dir, app_name=spec.name, settings=settings)

    log_step("Generating docker-compose.yml", icon="🧭")
    compose_path = write_app_compose(
        app_dir,
        render_app_compose(
            app_name=spec.name,
            image_name=spec.image,
            domain=spec.domain,
            app_port=spec.app_port,
            host_port=host_port,
            acme_email=spec.acme_email,
            env_file=ENV_FILE_NAME,
        ),
    )
    logger.info("docker-compose.yml generated (host port: %s)", host_port)

    log_step("Ensuring shared reverse proxy", icon="🌐")
    proxy = nginx_proxy.ensure_proxy(settings.deploy_dir, acme_email=spec.acme_email)
    patch_network_name_file(compose_path, proxy.network_name)

    log_step("Building and starting application container", icon="🏗️")
    docker_runtime.compose_build(app_dir)
    docker_runtime.compose_up(app_dir)
    docker_runtime.connect_container_to_network(proxy.network_name, spec.name)

    log_step("Registering host Nginx route", icon="🔒")
    route_active = nginx_route.ensure_nginx_route(
        app_name=spec.name,
        domain=spec.domain,
        host_port=host_port,
        sites_available=settings.sites_available,
        sites_enabled=settings.sites_enabled,
        install=settings.install_nginx,
    )

    healthy: bool | None = None
    if settings.health_check:
        log_step("Probing application health", icon="🩺")
        healthy = probe_health(host_port)
        if not healthy:
            logger.warning(
                "No healthy response from http://127.0.0.1:%s/health yet; check: docker logs %s",
                host_port,
                spec.name,
            )

    return DeployResult(
        app_dir=app_dir,
        host_port=host_port,
        network_name=proxy.network_name,
        repo_state=repo_state,
        proxy_state=proxy.state,
        route_active=route_active,
        healthy=healthy,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deploy one containerized application behind the shared Nginx proxy")
    parser.add_argument("--name", default=None, help="Application name (also the container name)")
    parser.add_argument("--repo-url", default=None, help="HTTPS repository URL, e.g. https://github.com/user/repo.git")
    parser.add_argument("--branch", default=None, help=f"Branch to deploy (default: {DEFAULT_BRANCH})")
    parser.add_argument("--domain", default=None, help="Public domain, e.g. app.example.com")
    parser.add_argument("--image", default=None, help="Docker image name (default: app name)")
    parser.add_argument("--port", default=None, help=f"Port the application listens on (default: {DEFAULT_APP_PORT})")
    parser.add_argument(
        "--env",
        default=None,
        help=f"Environment tag written as ENV= (resolution: CLI -> {ENV_ENVIRONMENT} env var -> .env.deploy -> {DEFAULT_ENVIRONMENT})",
    )
    parser.add_argument(
        "--acme-email",
        default=None,
        help=f"Let's Encrypt contact email (resolution: CLI -> {ENV_ACME_EMAIL} env var -> .env.deploy -> {DEFAULT_ACME_EMAIL})",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Environment override for the app's .env (repeatable)",
    )
    parser.add_argument("--git-token", default=None, help=f"Git access token (or {ENV_GIT_TOKEN} env var)")
    parser.add_argument("--git-username", default=None, help=f"Git username (or {ENV_GIT_USERNAME} env var)")
    parser.add_argument("--git-password", default=None, help=f"Git password (or {ENV_GIT_PASSWORD} env var)")
    parser.add_argument(
        "--deploy-dir",
        default=None,
        help=f"Deployment root (resolution: CLI -> {ENV_DEPLOY_DIR} env var -> {DEFAULT_DEPLOY_DIR})",
    )
    parser.add_argument("--port-range-start", type=int, default=None, help="First candidate host port")
    parser.add_argument("--port-range-end", type=int, default=None, help="Last candidate host port")
    parser.add_argument("--nginx-sites-available", default=None, help="Host Nginx sites-available directory")
    parser.add_argument("--nginx-sites-enabled", default=None, help="Host Nginx sites-enabled directory")
    parser.add_argument("--non-interactive", action="store_true", help="Never prompt; missing required values are errors")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    parser.add_argument("--skip-preflight", action="store_true", help="Skip root/OS/tooling checks")
    parser.add_argument("--skip-health-check", action="store_true", help="Skip the post-deploy /health probe")
    return parser


def _resolve_credentials(args: argparse.Namespace) -> Credentials:
    token = resolve_secret(args.git_token, env_key=ENV_GIT_TOKEN)
    if token:
        return Credentials(token=token)
    return Credentials(
        username=resolve_secret(args.git_username, env_key=ENV_GIT_USERNAME),
        password=resolve_secret(args.git_password, env_key=ENV_GIT_PASSWORD),
    )


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    log_level = str(os.getenv(ENV_LOG_LEVEL, "INFO")).upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), format="%(message)s")

    step_number = 0
    step_color = "\033[95m"
    color_reset = "\033[0m"

    def log_step(message: str, *, icon: str = "🚀") -> None:
        nonlocal step_number
        step_number += 1
        print(f"{step_color}[server-init] {icon} Step {step_number}: {message}{color_reset}")

    def log_info(message: str, *, icon: str = "ℹ️") -> None:
        print(f"[server-init] {icon} {message}")

    deploy_dir = Path(resolve_setting(args.deploy_dir, env_key=ENV_DEPLOY_DIR, default=DEFAULT_DEPLOY_DIR))
    interactive = not args.non_interactive and sys.stdin.isatty()

    try:
        if not args.skip_preflight:
            log_step("Checking host prerequisites", icon="🛡️")
            check_preflight()

        name = str(args.name or "").strip()
        repo_url = str(args.repo_url or "").strip()
        branch = str(args.branch or "").strip()
        domain = str(args.domain or "").strip()
        image_name = str(args.image or "").strip()
        app_port = str(args.port or "").strip()
        environment = resolve_setting(args.env, env_key=ENV_ENVIRONMENT, deploy_dir=deploy_dir)
        acme_email = resolve_setting(
            args.acme_email,
            env_key=ENV_ACME_EMAIL,
            deploy_dir=deploy_dir,
            default=DEFAULT_ACME_EMAIL,
        )
        overrides = list(args.overrides or [])
        credentials = _resolve_credentials(args)

        if interactive:
            log_info("Deploy one application at a time. Run this script again for additional apps.")
            name = name or prompts.prompt_text("App Name")
            repo_url = repo_url or prompts.prompt_text("Repository URL (HTTPS, e.g., https://github.com/user/repo.git)")
            branch = branch or prompts.prompt_text("Branch", default=DEFAULT_BRANCH)
            domain = domain or prompts.prompt_text("Domain URL (e.g., app.example.com)")
            image_name = image_name or prompts.prompt_text("Docker Image Name", default=name.lower())
            app_port = app_port or prompts.prompt_text("Application Port", default=str(DEFAULT_APP_PORT))
            if not args.env:
                environment = prompts.prompt_environment(default=environment or DEFAULT_ENVIRONMENT)
            if not args.acme_email:
                acme_email = prompts.prompt_text("Email for SSL certificates (Let's Encrypt)", default=acme_email)

        spec = build_application_spec(
            name=name,
            repo_url=repo_url,
            domain=domain,
            branch=branch,
            image_name=image_name,
            app_port=app_port,
            overrides=overrides,
            environment=environment,
            acme_email=acme_email,
        )

        if interactive:
            if credentials.is_empty:
                log_info("Checking repository access...")
                credentials = prompts.prompt_credentials(spec.repo_url)
            if not overrides:
                extra = prompts.prompt_overrides()
                if extra:
                    spec = build_application_spec(
                        name=spec.name,
                        repo_url=spec.repo_url,
                        domain=spec.domain,
                        branch=spec.branch,
                        image_name=spec.image_name,
                        app_port=spec.app_port,
                        overrides=extra,
                        environment=spec.environment,
                        acme_email=spec.acme_email,
                    )

        port_range_start, port_range_end = parse_port_range(
            resolve_setting(args.port_range_start, env_key=ENV_PORT_RANGE_START, deploy_dir=deploy_dir, default=str(DEFAULT_PORT_RANGE_START)),
            resolve_setting(args.port_range_end, env_key=ENV_PORT_RANGE_END, deploy_dir=deploy_dir, default=str(DEFAULT_PORT_RANGE_END)),
        )

        settings = DeploySettings(
            deploy_dir=deploy_dir,
            port_range_start=port_range_start,
            port_range_end=port_range_end,
            sites_available=Path(
                resolve_setting(
                    args.nginx_sites_available,
                    env_key=ENV_NGINX_SITES_AVAILABLE,
                    deploy_dir=deploy_dir,
                    default=DEFAULT_NGINX_SITES_AVAILABLE,
                )
            ),
            sites_enabled=Path(
                resolve_setting(
                    args.nginx_sites_enabled,
                    env_key=ENV_NGINX_SITES_ENABLED,
                    deploy_dir=deploy_dir,
                    default=DEFAULT_NGINX_SITES_ENABLED,
                )
            ),
            health_check=not args.skip_health_check,
        )

        log_step("Prepared deployment plan", icon="🧭")
        log_info(f"App Name: {spec.name}")
        log_info(f"Repository: {redact_url(spec.repo_url)}")
        log_info(f"Branch: {spec.branch}")
        log_info(f"Domain: {spec.domain}")
        log_info(f"Image Name: {spec.image}")
        log_info(f"Port: {spec.app_port}")
        log_info(f"Environment: {spec.environment}")
        log_info(f"ACME Email: {spec.acme_email}")
        if spec.env_overrides:
            log_info(f"Environment Overrides: {', '.join(key for key, _ in spec.env_overrides)}")

        if interactive and not args.yes and not prompts.confirm("Continue with deployment?"):
            log_info("Deployment cancelled by user")
            return

        result = deploy(spec, credentials, settings, log_step=log_step)
    except InputValidationError as exc:
        raise SystemExit(exc.format())
    except DeployError as exc:
        raise SystemExit(f"[server-init] ❌ {exc}")

    if not result.route_active:
        log_info("Host Nginx route was not activated; the previous routing configuration remains in effect.", icon="⚠️")
    log_info(f"Application: {spec.name}")
    log_info(f"Domain: https://{spec.domain}")
    log_info(f"Image: {spec.image}:latest")
    log_info(f"Host port: {result.host_port} -> {spec.app_port}")
    log_info(f"Environment: {spec.environment}")
    log_info(f"To view logs: docker logs {spec.name}")
    log_info(f"To restart: docker restart {spec.name}")
    print("[server-init] ✅ Done.")


if __name__ == "__main__":
    main()
