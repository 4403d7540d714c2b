from pathlib import Path
from typing import Final

from loguru import logger

from imbue.sshd_fixture.backends.base import BackendInterface
from imbue.sshd_fixture.config.data_types import DEFAULT_HOST
from imbue.sshd_fixture.connection import ConnectionParams
from imbue.sshd_fixture.daemon import DaemonLaunchSettings
from imbue.sshd_fixture.daemon import DaemonSupervisor
from imbue.sshd_fixture.errors import DaemonSpawnError
from imbue.sshd_fixture.handle import ServerHandle
from imbue.sshd_fixture.keys import DaemonKeyMaterial
from imbue.sshd_fixture.keys import provision_daemon_keys
from imbue.sshd_fixture.paths import PrivateDirLayout
from imbue.sshd_fixture.ports import find_unused_port
from imbue.sshd_fixture.primitives import BackendName

# The port is probed before sshd binds it, so another process can win the race
MAX_DAEMON_START_ATTEMPTS: Final[int] = 3


class EphemeralDaemonBackend(BackendInterface):
    """Starts a private sshd on a free loopback port, owned by the returned handle."""

    @staticmethod
    def get_name() -> BackendName:
        return BackendName.EPHEMERAL_DAEMON

    def _acquire(self) -> ServerHandle | None:
        config = self._config
        if not config.is_server_backend_enabled:
            logger.debug("Backend skipped because starting SSH servers is disabled")
            return None

        # everything that can be missing is looked up before the private directory is touched
        sshd_path = self._resolver.resolve_sshd()
        keygen_path = self._resolver.resolve_ssh_keygen()
        probe = self._build_probe()

        layout = PrivateDirLayout(root=config.private_dir)
        key_material = provision_daemon_keys(layout.keys_dir, keygen_path, config.timeout)

        supervisor = self._start_daemon(sshd_path, layout, key_material)
        if supervisor is None:
            return None
        port = supervisor.port
        assert port is not None

        try:
            params = probe.find_working_connection(
                [
                    ConnectionParams.with_key(
                        DEFAULT_HOST,
                        port,
                        config.username,
                        key_material.user_key.private_key_path,
                    )
                ],
                test_commands=config.test_commands,
                timeout=config.timeout,
                is_server_running=supervisor.is_running,
            )
        except BaseException:
            supervisor.close()
            raise
        if params is None:
            supervisor.close()
            return None
        return ServerHandle(params, self.get_name(), daemon=supervisor, timeout=config.timeout)

    def _start_daemon(
        self,
        sshd_path: Path,
        layout: PrivateDirLayout,
        key_material: DaemonKeyMaterial,
    ) -> DaemonSupervisor | None:
        """Start sshd on a free port, retrying with a new port if it dies before listening."""
        config = self._config
        for attempt in range(1, MAX_DAEMON_START_ATTEMPTS + 1):
            port = find_unused_port(DEFAULT_HOST)
            supervisor = DaemonSupervisor(sshd_path, layout, startup_timeout=config.timeout)
            try:
                supervisor.configure(
                    DaemonLaunchSettings(
                        host_key_path=key_material.host_key.private_key_path,
                        authorized_keys_path=key_material.user_key.public_key_path,
                        username=config.username,
                        port=port,
                        listen_host=DEFAULT_HOST,
                    )
                )
                supervisor.start()
                supervisor.wait_until_listening()
            except DaemonSpawnError as e:
                supervisor.close()
                logger.warning(
                    "SSH server did not come up (attempt {} of {}): {}",
                    attempt,
                    MAX_DAEMON_START_ATTEMPTS,
                    e.reason,
                )
                continue
            except BaseException:
                supervisor.close()
                raise
            return supervisor
        return None
