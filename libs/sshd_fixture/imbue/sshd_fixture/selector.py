"""Picks the first backend able to produce a working SSH server."""

from collections.abc import Iterator
from contextlib import contextmanager

from loguru import logger

from imbue.sshd_fixture.backends.registry import get_backend_class
from imbue.sshd_fixture.config.data_types import SshdFixtureConfig
from imbue.sshd_fixture.errors import NoBackendAvailableError
from imbue.sshd_fixture.executables import ExecutableResolver
from imbue.sshd_fixture.handle import ServerHandle
from imbue.sshd_fixture.logging import attach_log_sink


def acquire_server(config: SshdFixtureConfig, resolver: ExecutableResolver | None = None) -> ServerHandle:
    """Try the configured backends in order and return the first working server.

    The caller owns the returned handle and must close it. Raises
    NoBackendAvailableError when every backend came up empty. Executables are
    looked up along config.search_path unless a resolver is given.
    """
    with attach_log_sink(config.log_sink):
        if resolver is None:
            resolver = ExecutableResolver(config.search_path, config.timeout)
        for name in config.backends:
            backend = get_backend_class(name)(config, resolver)
            handle = backend.acquire()
            if handle is not None:
                logger.info("Connection URI: {}", handle.uri(is_password_hidden=True))
                return handle
        error = NoBackendAvailableError([str(name) for name in config.backends])
        logger.warning("{}", error)
        raise error


@contextmanager
def open_server(config: SshdFixtureConfig, resolver: ExecutableResolver | None = None) -> Iterator[ServerHandle]:
    """Acquire a server for the duration of the block and release it afterwards."""
    handle = acquire_server(config, resolver)
    try:
        yield handle
    finally:
        handle.close()
