"""Local port selection for SSH forwards."""

from __future__ import annotations

import logging
import random
import socket

LOG = logging.getLogger(__name__)

PORT_RANGE = (1024, 65535)
DEFAULT_MAX_ATTEMPTS = 256


class PortExhaustionError(RuntimeError):
    """Raised when no free local port is found within the attempt budget."""


def acquire_free_port(
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    rng: random.Random | None = None,
) -> int:
    """Return a random port in [1024, 65535) that could be bound just now.

    Nothing reserves the port after the probe socket is released, so another
    process may still grab it before the caller binds.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    chooser = rng or random
    low, high = PORT_RANGE
    for _ in range(max_attempts):
        port = chooser.randrange(low, high)
        if _try_bind(port):
            return port
        LOG.debug("port %s is busy", port)
    raise PortExhaustionError(f"No free local port found after {max_attempts} attempts")


def _try_bind(port: int) -> bool:
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        probe.bind(("", port))
        probe.listen(1)
    except OSError:
        return False
    finally:
        probe.close()
    return True


__all__ = ["DEFAULT_MAX_ATTEMPTS", "PORT_RANGE", "PortExhaustionError", "acquire_free_port"]
