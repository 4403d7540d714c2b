from loguru import logger

from imbue.sshd_fixture.backends.base import BackendInterface
from imbue.sshd_fixture.connection import ConnectionParams
from imbue.sshd_fixture.connection import parse_connection_uri
from imbue.sshd_fixture.handle import ServerHandle
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.probe import read_server_banner


class ExplicitRemoteBackend(BackendInterface):
    """Uses an SSH server somebody else runs, named by the requested URI.

    Values present in the URI override the configured host, port, user and
    credentials. The password is tried first, then the key given in the URI,
    or else each of the configured user keys.
    """

    @staticmethod
    def get_name() -> BackendName:
        return BackendName.EXPLICIT_REMOTE

    def _acquire(self) -> ServerHandle | None:
        config = self._config
        if config.requested_uri is None:
            logger.debug("No SSH server was requested explicitly")
            return None

        parsed = parse_connection_uri(config.requested_uri)
        host = parsed.host or config.host
        port = parsed.port or config.port
        username = parsed.username or config.username
        password = parsed.password if parsed.password is not None else config.password
        key_paths = (parsed.private_key_path,) if parsed.private_key_path is not None else config.user_keys

        banner = read_server_banner(host, port, config.timeout)
        logger.debug("{}:{} identifies itself as {}", host, port, banner)

        candidates: list[ConnectionParams] = []
        if password is not None:
            logger.debug("Trying to authenticate using the given password")
            candidates.append(ConnectionParams.with_password(host, port, username, password))
        candidates.extend(ConnectionParams.with_key(host, port, username, key_path) for key_path in key_paths)
        if not candidates:
            logger.debug("No password or key available for {}@{}", username, host)
            return None

        params = self._build_probe().find_working_connection(
            candidates,
            test_commands=config.test_commands,
            timeout=config.timeout,
        )
        if params is None:
            return None
        logger.debug("{} can be used to connect to {}", params.credential_display, host)
        return ServerHandle(params, self.get_name(), timeout=config.timeout)
