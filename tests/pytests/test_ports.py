from __future__ import annotations

from pathlib import Path

import pytest

from scripts.server_init import ports
from scripts.server_init.errors import PortExhaustedError


SS_OUTPUT = """\
udp   UNCONN 0      0          127.0.0.53%lo:53        0.0.0.0:*
tcp   LISTEN 0      4096             0.0.0.0:8000      0.0.0.0:*
tcp   LISTEN 0      511                 [::]:8001         [::]:*
tcp   LISTEN 0      128                    *:22              *:*
"""

NETSTAT_OUTPUT = """\
Active Internet connections (only servers)
Proto Recv-Q Send-Q Local Address           Foreign Address         State
tcp        0      0 0.0.0.0:8002            0.0.0.0:*               LISTEN
tcp6       0      0 :::443                  :::*                    LISTEN
"""


def test_parse_listening_ports_from_ss() -> None:
    assert ports.parse_listening_ports(SS_OUTPUT) == {53, 8000, 8001, 22}


def test_parse_listening_ports_from_netstat() -> None:
    assert ports.parse_listening_ports(NETSTAT_OUTPUT) == {8002, 443}


def test_allocate_port_skips_occupied_ports(monkeypatch) -> None:
    monkeypatch.setattr(ports, "listening_ports", lambda: {8000, 8001, 8002, 8003, 8004, 8005})
    assert ports.allocate_port() == 8006


def test_allocate_port_on_fresh_host_returns_range_start(monkeypatch) -> None:
    monkeypatch.setattr(ports, "listening_ports", lambda: set())
    assert ports.allocate_port() == 8000


def test_allocate_port_honours_reserved_ports(monkeypatch) -> None:
    monkeypatch.setattr(ports, "listening_ports", lambda: {8000})
    assert ports.allocate_port(reserved={8001}) == 8002


def test_allocate_port_raises_when_range_exhausted(monkeypatch) -> None:
    monkeypatch.setattr(ports, "listening_ports", lambda: {9000, 9001, 9002})
    with pytest.raises(PortExhaustedError) as excinfo:
        ports.allocate_port(9000, 9002)
    assert "9000-9002" in str(excinfo.value)


def test_host_port_record_round_trip(tmp_path: Path) -> None:
    assert ports.read_host_port(tmp_path) is None
    ports.write_host_port(tmp_path, 8004)
    assert (tmp_path / ".host_port").read_text(encoding="utf-8") == "8004\n"
    assert ports.read_host_port(tmp_path) == 8004


def test_malformed_host_port_record_is_ignored(tmp_path: Path) -> None:
    (tmp_path / ".host_port").write_text("not-a-port\n", encoding="utf-8")
    assert ports.read_host_port(tmp_path) is None


def test_reserved_host_ports_excludes_current_app(tmp_path: Path) -> None:
    for name, port in [("a", 8000), ("b", 8001), ("c", 8002)]:
        (tmp_path / name).mkdir()
        ports.write_host_port(tmp_path / name, port)
    (tmp_path / "d").mkdir()
    assert ports.reserved_host_ports(tmp_path, exclude="b") == {8000, 8002}
    assert ports.reserved_host_ports(tmp_path / "missing") == set()


def test_listening_ports_without_socket_tools_returns_empty(monkeypatch) -> None:
    def missing_binary(cmd, **_):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(ports.shutil, "which", lambda name: None)
    monkeypatch.setattr(ports.subprocess, "run", missing_binary)
    assert ports.listening_ports() == set()
