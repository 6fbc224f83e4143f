"""TCP port selection for the temporary server."""

from __future__ import annotations

import logging
import socket

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PORT = 54321


def find_free_port(host: str, fallback: int = DEFAULT_FALLBACK_PORT) -> int:
    """Ask the OS for an unused TCP port on *host*.

    The listener is closed before PostgreSQL binds the port, so another
    process could grab it in between. That race is accepted for test use.

    Args:
        host: Address the server will listen on.
        fallback: Port returned when binding is not possible at all
            (e.g. a sandbox without networking).

    Returns:
        An ephemeral port number, or *fallback*.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            sock.listen(1)
            port = sock.getsockname()[1]
    except OSError as exc:
        logger.warning(
            "Could not allocate a port on %s (%s); falling back to %d", host, exc, fallback
        )
        return fallback
    logger.debug("Allocated port %d on %s", port, host)
    return port
