"""Port availability checks against the host socket table."""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterable

import psutil

from outpost.lib.errors import DeploymentError, PortConflictError

logger = logging.getLogger(__name__)


def _describe_owner(pid: int | None) -> str:
    """Describe the process owning a socket, as far as it is visible."""
    if not pid:
        return "an unknown process"
    try:
        return f"{psutil.Process(pid).name()} (pid {pid})"
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return f"pid {pid}"


class PortGuard:
    """Checks that ports are free before the runtime tries to bind them.

    A TCP port counts as occupied when a socket listens on it; a UDP port
    when any socket is bound to it (the relay serves its data port on both).
    """

    def occupied_ports(self) -> dict[int, str]:
        """Return occupied local ports mapped to an owner description.

        Raises:
            DeploymentError: If the socket table cannot be read
        """
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied as e:
            raise DeploymentError(
                operation="ports",
                message="Permission denied reading the socket table; run as root",
            ) from e

        occupied: dict[int, str] = {}
        for conn in connections:
            if not conn.laddr:
                continue
            listening = (
                conn.type == socket.SOCK_STREAM and conn.status == psutil.CONN_LISTEN
            ) or conn.type == socket.SOCK_DGRAM
            if listening and conn.laddr.port not in occupied:
                occupied[conn.laddr.port] = _describe_owner(conn.pid)
        return occupied

    def check_free(self, ports: Iterable[int]) -> None:
        """Ensure none of the given ports is in use.

        Args:
            ports: Port numbers that must be free

        Raises:
            PortConflictError: For the lowest requested port that is in use
        """
        requested = sorted(set(ports))
        occupied = self.occupied_ports()
        for port in requested:
            if port in occupied:
                logger.error(f"Port {port} is already in use by {occupied[port]}")
                raise PortConflictError(port, occupied[port])
        logger.info(f"Ports {', '.join(str(p) for p in requested)} are free")
