"""Unit tests for port availability checks."""

from __future__ import annotations

import socket
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from outpost.deploy.ports import PortGuard, _describe_owner
from outpost.lib.errors import DeploymentError, PortConflictError


def _conn(
    port: int,
    kind: int = socket.SOCK_STREAM,
    status: str = psutil.CONN_LISTEN,
    pid: int | None = 1234,
) -> SimpleNamespace:
    return SimpleNamespace(
        laddr=SimpleNamespace(ip="0.0.0.0", port=port),
        type=kind,
        status=status,
        pid=pid,
    )


@pytest.fixture
def fake_process():
    """Resolve every pid to a process called 'nginx'."""
    process = MagicMock()
    process.name.return_value = "nginx"
    with patch("outpost.deploy.ports.psutil.Process", return_value=process):
        yield process


class TestOccupiedPorts:
    """Tests for reading the socket table."""

    def test_listening_tcp_counts(self, fake_process: MagicMock) -> None:
        with patch(
            "outpost.deploy.ports.psutil.net_connections",
            return_value=[_conn(8080)],
        ):
            occupied = PortGuard().occupied_ports()

        assert occupied == {8080: "nginx (pid 1234)"}

    def test_established_tcp_is_ignored(self, fake_process: MagicMock) -> None:
        """Outgoing connections do not hold a local port for binding."""
        with patch(
            "outpost.deploy.ports.psutil.net_connections",
            return_value=[_conn(8080, status=psutil.CONN_ESTABLISHED)],
        ):
            assert PortGuard().occupied_ports() == {}

    def test_bound_udp_counts(self, fake_process: MagicMock) -> None:
        with patch(
            "outpost.deploy.ports.psutil.net_connections",
            return_value=[_conn(8080, kind=socket.SOCK_DGRAM, status=psutil.CONN_NONE)],
        ):
            assert 8080 in PortGuard().occupied_ports()

    def test_connections_without_local_address_skipped(self) -> None:
        conn = _conn(8080)
        conn.laddr = ()
        with patch(
            "outpost.deploy.ports.psutil.net_connections", return_value=[conn]
        ):
            assert PortGuard().occupied_ports() == {}

    def test_access_denied_raises_deployment_error(self) -> None:
        with patch(
            "outpost.deploy.ports.psutil.net_connections",
            side_effect=psutil.AccessDenied(),
        ):
            with pytest.raises(DeploymentError, match="Permission denied"):
                PortGuard().occupied_ports()


class TestCheckFree:
    """Tests for PortGuard.check_free."""

    def test_free_ports_pass(self) -> None:
        with patch("outpost.deploy.ports.psutil.net_connections", return_value=[]):
            PortGuard().check_free({8080, 8081})

    def test_conflict_names_port_and_owner(self, fake_process: MagicMock) -> None:
        with patch(
            "outpost.deploy.ports.psutil.net_connections",
            return_value=[_conn(8081)],
        ):
            with pytest.raises(PortConflictError) as exc_info:
                PortGuard().check_free({8080, 8081})

        assert exc_info.value.port == 8081
        assert exc_info.value.owner == "nginx (pid 1234)"
        assert exc_info.value.operation == "ports"

    def test_lowest_conflicting_port_reported(self, fake_process: MagicMock) -> None:
        with patch(
            "outpost.deploy.ports.psutil.net_connections",
            return_value=[_conn(8081), _conn(8080)],
        ):
            with pytest.raises(PortConflictError) as exc_info:
                PortGuard().check_free([8081, 8080])

        assert exc_info.value.port == 8080

    def test_unrequested_ports_ignored(self, fake_process: MagicMock) -> None:
        with patch(
            "outpost.deploy.ports.psutil.net_connections",
            return_value=[_conn(22), _conn(443)],
        ):
            PortGuard().check_free({8080, 8081})


class TestDescribeOwner:
    """Tests for owner descriptions."""

    def test_unknown_pid(self) -> None:
        assert _describe_owner(None) == "an unknown process"

    def test_vanished_process_falls_back_to_pid(self) -> None:
        with patch(
            "outpost.deploy.ports.psutil.Process",
            side_effect=psutil.NoSuchProcess(42),
        ):
            assert _describe_owner(42) == "pid 42"
