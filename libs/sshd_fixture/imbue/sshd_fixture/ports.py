import random
import socket
from typing import Final

from loguru import logger

from imbue.sshd_fixture.errors import PortsExhaustedError
from imbue.sshd_fixture.primitives import Port

DEFAULT_PORT_ATTEMPT_COUNT: Final[int] = 32

# Candidate ports are drawn from [low, high)
DEFAULT_PORT_RANGE: Final[tuple[int, int]] = (5000, 32000)

DEFAULT_CONNECT_TIMEOUT_SECONDS: Final[float] = 1.0


def is_port_open(host: str, port: int, timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS) -> bool:
    """Check if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            return True
    except OSError:
        return False


def find_unused_port(
    host: str = "localhost",
    attempt_count: int = DEFAULT_PORT_ATTEMPT_COUNT,
    port_range: tuple[int, int] = DEFAULT_PORT_RANGE,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    rng: random.Random | None = None,
) -> Port:
    """Return a pseudo-random port in port_range on which nothing is listening.

    The port is not reserved: another process may grab it before the caller
    binds it, so whoever binds it next has the final word.
    """
    chooser = rng if rng is not None else random.Random()
    low, high = port_range
    logger.debug("Looking for an unused TCP port")
    for _ in range(attempt_count):
        port = Port(chooser.randrange(low, high))
        if not is_port_open(host, port, timeout=connect_timeout):
            logger.debug("Port {} is available", port)
            return port
        logger.trace("Port {} is in use", port)
    error = PortsExhaustedError(host, attempt_count)
    logger.error("{}", error)
    raise error
