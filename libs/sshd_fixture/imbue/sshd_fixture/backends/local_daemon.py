from loguru import logger

from imbue.sshd_fixture.backends.base import BackendInterface
from imbue.sshd_fixture.config.data_types import DEFAULT_HOST
from imbue.sshd_fixture.connection import ConnectionParams
from imbue.sshd_fixture.handle import ServerHandle
from imbue.sshd_fixture.primitives import BackendName


class LocalDaemonBackend(BackendInterface):
    """Logs into the SSH server already running on this machine with one of the user's own keys."""

    @staticmethod
    def get_name() -> BackendName:
        return BackendName.LOCAL_DAEMON

    def _acquire(self) -> ServerHandle | None:
        config = self._config
        if not config.user_keys:
            logger.debug("No user keys found, skipping the local SSH server")
            return None

        candidates = [
            ConnectionParams.with_key(DEFAULT_HOST, config.port, config.username, key_path)
            for key_path in config.user_keys
        ]
        params = self._build_probe().find_working_connection(
            candidates,
            test_commands=config.test_commands,
            timeout=config.timeout,
            is_local_check_required=True,
        )
        if params is None:
            return None
        logger.debug("Key '{}' can be used to connect to the local SSH server", params.private_key_path)
        return ServerHandle(params, self.get_name(), timeout=config.timeout)
