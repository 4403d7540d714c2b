from pathlib import Path
from types import TracebackType
from typing import Final
from typing import Self

from loguru import logger

from imbue.sshd_fixture.connection import ConnectionParams
from imbue.sshd_fixture.daemon import DaemonSupervisor
from imbue.sshd_fixture.primitives import AuthMethod
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.primitives import Port
from imbue.sshd_fixture.primitives import Username
from imbue.sshd_fixture.probe import read_server_banner

DEFAULT_BANNER_TIMEOUT_SECONDS: Final[float] = 10.0


class ServerHandle:
    """A usable SSH endpoint, as handed to tests.

    The connection parameters never change. When the endpoint is an ephemeral
    daemon, the handle owns it and closing the handle stops the daemon.
    """

    def __init__(
        self,
        params: ConnectionParams,
        backend_name: BackendName,
        daemon: DaemonSupervisor | None = None,
        timeout: float = DEFAULT_BANNER_TIMEOUT_SECONDS,
    ) -> None:
        self._params = params
        self._backend_name = backend_name
        self._daemon = daemon
        self._timeout = timeout
        self._server_version: str | None = None
        self._is_closed = False

    @property
    def params(self) -> ConnectionParams:
        return self._params

    @property
    def backend_name(self) -> BackendName:
        return self._backend_name

    @property
    def host(self) -> str:
        return self._params.host

    @property
    def port(self) -> Port:
        return self._params.port

    @property
    def username(self) -> Username:
        return self._params.username

    @property
    def auth_method(self) -> AuthMethod:
        return self._params.auth_method

    @property
    def private_key_path(self) -> Path | None:
        return self._params.private_key_path

    @property
    def password(self) -> str | None:
        return self._params.password

    @property
    def daemon(self) -> DaemonSupervisor | None:
        return self._daemon

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def uri(self, is_password_hidden: bool = False) -> str:
        return self._params.to_uri(is_password_hidden=is_password_hidden)

    def connection_params(self) -> dict[str, str | int]:
        return self._params.as_dict()

    def server_version(self) -> str:
        """Return the identification string the server sends on connect. Read once, then cached."""
        if self._server_version is None:
            logger.debug("Retrieving server version")
            self._server_version = read_server_banner(self.host, self.port, self._timeout)
            logger.debug("Server version is {}", self._server_version)
        return self._server_version

    def close(self) -> None:
        """Release the endpoint, stopping the owned daemon if there is one. Safe to call repeatedly."""
        if self._is_closed:
            return
        self._is_closed = True
        if self._daemon is not None:
            self._daemon.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ServerHandle({self.uri(is_password_hidden=True)}, backend={self._backend_name})"
