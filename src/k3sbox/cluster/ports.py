"""Free TCP port discovery for the k3s API server."""

from __future__ import annotations

import logging
import socket

from k3sbox.shared.exceptions import AllocationError

logger = logging.getLogger(__name__)


def allocate_port(host: str = "") -> int:
    """Ask the OS for a TCP port that is currently unused.

    The socket is closed before returning, so another process may
    claim the port before the cluster binds it. Callers accept that race.

    Args:
        host: Interface to bind; empty string means all interfaces.

    Returns:
        The port number assigned by the OS.

    Raises:
        AllocationError: If no socket could be bound.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            port: int = sock.getsockname()[1]
    except OSError as exc:
        raise AllocationError(f"could not bind a socket on {host or '*'}: {exc}") from exc

    logger.debug("OS assigned free port %d", port)
    return port
