import logging
import random
import socket
from typing import Callable, Iterable, Optional, Sequence, Tuple

from .errors import SetupError

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# 8888 is what most people register as the redirect URI port in the Spotify dashboard.
DEFAULT_PORT_CANDIDATES: Tuple[int, ...] = (8888, 8889, 8890, 8891, 8892)
FALLBACK_PORT_RANGE: Tuple[int, int] = (9000, 9999)


def is_port_in_use(port: int, host: str = LOOPBACK_HOST, timeout: float = 1.0) -> bool:
    """Return True when something already accepts TCP connections on host:port."""

    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            return True
    except OSError:
        return False


def can_listen(port: int, host: str = LOOPBACK_HOST) -> bool:
    """Return True when this process can bind and listen on host:port."""

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, int(port)))
        sock.listen(1)
        return True
    except OSError:
        return False
    finally:
        sock.close()


def port_is_available(port: int, host: str = LOOPBACK_HOST) -> bool:
    return not is_port_in_use(port, host) and can_listen(port, host)


def select_port(
    candidates: Iterable[int] = DEFAULT_PORT_CANDIDATES,
    *,
    host: str = LOOPBACK_HOST,
    fallback_range: Sequence[int] = FALLBACK_PORT_RANGE,
    probe: Callable[[int, str], bool] = port_is_available,
    rng: Optional[random.Random] = None,
) -> int:
    """Pick the callback port.

    Candidates are tried in order and the first available one wins. When all of
    them are taken a pseudo-random port from ``fallback_range`` (inclusive) is
    returned without probing it; a bind failure there surfaces later as a
    SetupError from the listener.
    """

    tried = []
    for port in candidates:
        port = int(port)
        tried.append(port)
        if probe(port, host):
            logger.debug("Callback port %s is available", port)
            return port
        logger.debug("Callback port %s is in use", port)

    low, high = int(fallback_range[0]), int(fallback_range[1])
    exhausted = set(tried)
    pool = [p for p in range(low, high + 1) if p not in exhausted]
    if not pool:
        raise SetupError(f"No callback port left to try in {low}-{high}")

    port = (rng or random).choice(pool)
    logger.info("Preferred callback ports %s are busy; falling back to %s", tried, port)
    return port
