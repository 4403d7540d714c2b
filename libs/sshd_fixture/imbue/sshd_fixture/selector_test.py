import socket
from collections.abc import Sequence
from pathlib import Path

import pytest

from imbue.sshd_fixture.config.data_types import SshdFixtureConfig
from imbue.sshd_fixture.config.loader import load_config
from imbue.sshd_fixture.errors import NoBackendAvailableError
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.primitives import DaemonState
from imbue.sshd_fixture.selector import acquire_server
from imbue.sshd_fixture.selector import open_server
from imbue.sshd_fixture.testing import StaticExecutableResolver
from imbue.sshd_fixture.testing import write_fake_ssh
from imbue.sshd_fixture.testing import write_fake_ssh_keygen
from imbue.sshd_fixture.testing import write_fake_sshd


@pytest.fixture
def fake_resolver(tmp_path: Path) -> StaticExecutableResolver:
    bin_dir = tmp_path / "bin"
    return StaticExecutableResolver(
        {
            "ssh": write_fake_ssh(bin_dir),
            "sshd": write_fake_sshd(bin_dir),
            "ssh-keygen": write_fake_ssh_keygen(bin_dir),
        }
    )


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_missing_sshd_means_no_backend_and_no_private_dir(tmp_path: Path) -> None:
    private_dir = tmp_path / "private"
    received: list[Sequence[str]] = []
    config = SshdFixtureConfig(
        username="tester",
        private_dir=private_dir,
        backends=(BackendName.EPHEMERAL_DAEMON,),
        search_path=(),
        log_sink=received.append,
    )

    with pytest.raises(NoBackendAvailableError) as exc_info:
        acquire_server(config)

    assert exc_info.value.attempted_backends == ("EPHEMERAL_DAEMON",)
    assert not private_dir.exists()
    assert any(level == "WARNING" and "'sshd'" in message for level, message in received)


def test_explicit_target_never_provisions_a_daemon(
    tmp_path: Path,
    fake_resolver: StaticExecutableResolver,
) -> None:
    private_dir = tmp_path / "private"
    config = load_config(
        environ={"TEST_SSH_TARGET": f"ssh://tester@127.0.0.1:{_closed_port()}"},
        username="tester",
        private_dir=private_dir,
        user_keys=(),
    )

    with pytest.raises(NoBackendAvailableError):
        acquire_server(config, fake_resolver)

    assert not private_dir.exists()


def test_first_successful_backend_wins(tmp_path: Path, fake_resolver: StaticExecutableResolver) -> None:
    private_dir = tmp_path / "private"
    config = SshdFixtureConfig(
        username="tester",
        private_dir=private_dir,
        backends=(BackendName.LOCAL_DAEMON, BackendName.EPHEMERAL_DAEMON),
        user_keys=(tmp_path / "id_ed25519",),
        test_commands=("true",),
    )

    with open_server(config, fake_resolver) as handle:
        assert handle.backend_name == BackendName.LOCAL_DAEMON

    assert not private_dir.exists()


@pytest.mark.timeout(60)
def test_falls_back_to_ephemeral_daemon(tmp_path: Path, fake_resolver: StaticExecutableResolver) -> None:
    received: list[Sequence[str]] = []
    config = SshdFixtureConfig(
        username="tester",
        private_dir=tmp_path / "private",
        user_keys=(),
        test_commands=("true",),
        log_sink=received.append,
    )

    with open_server(config, fake_resolver) as handle:
        assert handle.backend_name == BackendName.EPHEMERAL_DAEMON
        daemon = handle.daemon
        assert daemon is not None
        assert daemon.is_running()

    assert daemon.state == DaemonState.STOPPED
    assert handle.is_closed
    assert ("INFO", f"Connection URI: {handle.uri(is_password_hidden=True)}") in [tuple(r) for r in received]
