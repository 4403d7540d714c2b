from abc import ABC
from abc import abstractmethod

from loguru import logger

from imbue.sshd_fixture.config.data_types import SshdFixtureConfig
from imbue.sshd_fixture.errors import BaseSshdFixtureError
from imbue.sshd_fixture.executables import ExecutableResolver
from imbue.sshd_fixture.handle import ServerHandle
from imbue.sshd_fixture.logging import log_span
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.probe import ConnectivityProbe


class BackendInterface(ABC):
    """One strategy for obtaining a working SSH endpoint.

    Backends never raise for an endpoint that cannot be obtained: any
    sshd_fixture error inside acquire() is logged and turned into None, so the
    selector can move on to the next backend.
    """

    def __init__(self, config: SshdFixtureConfig, resolver: ExecutableResolver) -> None:
        self._config = config
        self._resolver = resolver

    @property
    def config(self) -> SshdFixtureConfig:
        return self._config

    @staticmethod
    @abstractmethod
    def get_name() -> BackendName:
        """Return the unique name identifier for this backend."""
        ...

    @abstractmethod
    def _acquire(self) -> ServerHandle | None:
        """Obtain a working endpoint, or return None. May raise sshd_fixture errors."""
        ...

    def acquire(self) -> ServerHandle | None:
        name = self.get_name()
        with log_span("Starting backend {}", name):
            try:
                handle = self._acquire()
            except BaseSshdFixtureError as e:
                logger.warning("Backend {} failed: {}", name, e)
                return None
        if handle is None:
            logger.debug("Backend {} did not produce a usable SSH server", name)
        return handle

    def _build_probe(self) -> ConnectivityProbe:
        return ConnectivityProbe(self._resolver.resolve_ssh())
