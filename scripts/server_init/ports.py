"""Host port allocation for application containers."""
from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Iterable

from scripts.server_init.config import DEFAULT_PORT_RANGE_END, DEFAULT_PORT_RANGE_START
from scripts.server_init.errors import PortExhaustedError


LOG_PREFIX = "[PORTS]"
HOST_PORT_FILE = ".host_port"

logger = logging.getLogger(__name__)

_ADDRESS_PORT_PATTERN = re.compile(r":(\d+)$")


def build_socket_table_cmd() -> list[str]:
    if shutil.which("ss"):
        return ["ss", "-Htuln"]
    return ["netstat", "-tuln"]


def parse_listening_ports(socket_table: str) -> set[int]:
    """Extract local ports from ``ss -tuln`` or ``netstat -tuln`` output.

    The first ``addr:port`` column on a line is the local address; peer
    columns end in ``:*`` and never match.
    """
    ports: set[int] = set()
    for line in socket_table.splitlines():
        for token in line.split():
            match = _ADDRESS_PORT_PATTERN.search(token)
            if match:
                ports.add(int(match.group(1)))
                break
    return ports


def listening_ports() -> set[int]:
    cmd = build_socket_table_cmd()
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        logger.warning("%s Neither ss nor netstat is installed; assuming no ports are in use", LOG_PREFIX)
        return set()
    if result.returncode != 0:
        logger.warning("%s Socket table inspection failed: %s", LOG_PREFIX, str(result.stderr or "").strip())
        return set()
    return parse_listening_ports(str(result.stdout or ""))


def allocate_port(
    range_start: int = DEFAULT_PORT_RANGE_START,
    range_end: int = DEFAULT_PORT_RANGE_END,
    *,
    reserved: Iterable[int] = (),
) -> int:
    """Return the lowest port in ``[range_start, range_end]`` nobody is using.

    Not atomic: two concurrent allocators on the same host can pick the same
    port.  Deployments are expected to run one at a time.
    """
    taken = listening_ports() | set(reserved)
    for port in range(range_start, range_end + 1):
        if port not in taken:
            logger.info("%s Allocated host port %s", LOG_PREFIX, port)
            return port
    raise PortExhaustedError(range_start, range_end)


def read_host_port(app_dir: Path) -> int | None:
    path = app_dir / HOST_PORT_FILE
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8").strip()
    if not text.isdigit() or not 0 < int(text) < 65536:
        logger.warning("%s Ignoring malformed %s: %r", LOG_PREFIX, path, text)
        return None
    return int(text)


def write_host_port(app_dir: Path, port: int) -> Path:
    path = app_dir / HOST_PORT_FILE
    path.write_text(f"{port}\n", encoding="utf-8")
    return path


def reserved_host_ports(apps_dir: Path, *, exclude: str = "") -> set[int]:
    """Ports recorded by other deployed applications, running or not."""
    out: set[int] = set()
    if not apps_dir.is_dir():
        return out
    for app_dir in sorted(apps_dir.iterdir()):
        if not app_dir.is_dir() or app_dir.name == exclude:
            continue
        port = read_host_port(app_dir)
        if port is not None:
            out.add(port)
    return out
