import socket
import threading
from collections.abc import Iterator
from pathlib import Path

import psutil
import pytest

from imbue.sshd_fixture.backends.ephemeral_daemon import EphemeralDaemonBackend
from imbue.sshd_fixture.backends.explicit_remote import ExplicitRemoteBackend
from imbue.sshd_fixture.backends.local_daemon import LocalDaemonBackend
from imbue.sshd_fixture.backends.registry import get_backend_class
from imbue.sshd_fixture.config.data_types import SshdFixtureConfig
from imbue.sshd_fixture.paths import PrivateDirLayout
from imbue.sshd_fixture.ports import is_port_open
from imbue.sshd_fixture.primitives import AuthMethod
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.primitives import DaemonState
from imbue.sshd_fixture.testing import FAKE_SSH_EXIT_CODE_ENV_VAR
from imbue.sshd_fixture.testing import StaticExecutableResolver
from imbue.sshd_fixture.testing import write_fake_ssh
from imbue.sshd_fixture.testing import write_fake_ssh_keygen
from imbue.sshd_fixture.testing import write_fake_sshd


@pytest.fixture
def fake_bin(tmp_path: Path) -> Path:
    bin_dir = tmp_path / "bin"
    write_fake_ssh(bin_dir)
    write_fake_sshd(bin_dir)
    write_fake_ssh_keygen(bin_dir)
    return bin_dir


@pytest.fixture
def fake_resolver(fake_bin: Path) -> StaticExecutableResolver:
    return StaticExecutableResolver(
        {"ssh": fake_bin / "ssh", "sshd": fake_bin / "sshd", "ssh-keygen": fake_bin / "ssh-keygen"}
    )


@pytest.fixture
def private_dir(tmp_path: Path) -> Path:
    return tmp_path / "private"


@pytest.fixture
def banner_port() -> Iterator[int]:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        server.bind(("127.0.0.1", 0))
        server.listen(4)

        def _answer() -> None:
            connection, _ = server.accept()
            with connection:
                connection.sendall(b"SSH-2.0-OpenSSH_9.6\r\n")

        thread = threading.Thread(target=_answer, daemon=True)
        thread.start()
        yield server.getsockname()[1]


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _make_config(private_dir: Path, **overrides: object) -> SshdFixtureConfig:
    values: dict[str, object] = {
        "username": "tester",
        "private_dir": private_dir,
        "timeout": 10.0,
        "test_commands": ("true",),
    }
    values.update(overrides)
    return SshdFixtureConfig(**values)


@pytest.mark.parametrize("name", list(BackendName))
def test_registry_maps_every_backend_name(name: BackendName) -> None:
    assert get_backend_class(name).get_name() == name


def test_explicit_remote_does_nothing_without_uri(
    fake_resolver: StaticExecutableResolver, private_dir: Path
) -> None:
    backend = ExplicitRemoteBackend(_make_config(private_dir), fake_resolver)

    assert backend.acquire() is None


def test_explicit_remote_rejects_non_ssh_endpoint(fake_resolver: StaticExecutableResolver, private_dir: Path) -> None:
    config = _make_config(private_dir, requested_uri=f"ssh://bob:pw@127.0.0.1:{_closed_port()}")

    assert ExplicitRemoteBackend(config, fake_resolver).acquire() is None
    assert not private_dir.exists()


def test_explicit_remote_rejects_malformed_uri(fake_resolver: StaticExecutableResolver, private_dir: Path) -> None:
    config = _make_config(private_dir, requested_uri="http://127.0.0.1:22")

    assert ExplicitRemoteBackend(config, fake_resolver).acquire() is None


@pytest.mark.timeout(30)
def test_explicit_remote_tries_uri_password_first(
    fake_resolver: StaticExecutableResolver,
    private_dir: Path,
    banner_port: int,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("FAKE_SSH_PASSWORD", "pw")
    config = _make_config(
        private_dir,
        requested_uri=f"ssh://bob:pw@127.0.0.1:{banner_port}",
        user_keys=(tmp_path / "id_ed25519",),
    )

    handle = ExplicitRemoteBackend(config, fake_resolver).acquire()

    assert handle is not None
    assert handle.auth_method == AuthMethod.PASSWORD
    assert handle.username == "bob"
    assert handle.port == banner_port
    assert handle.backend_name == BackendName.EXPLICIT_REMOTE
    assert handle.daemon is None


@pytest.mark.timeout(30)
def test_explicit_remote_uses_key_from_uri(
    fake_resolver: StaticExecutableResolver,
    private_dir: Path,
    banner_port: int,
    tmp_path: Path,
) -> None:
    key_path = tmp_path / "remote_key"
    config = _make_config(
        private_dir,
        requested_uri=f"ssh://bob;private_key_path={key_path}@127.0.0.1:{banner_port}",
        user_keys=(tmp_path / "id_ed25519",),
    )

    handle = ExplicitRemoteBackend(config, fake_resolver).acquire()

    assert handle is not None
    assert handle.auth_method == AuthMethod.PUBLICKEY
    assert handle.private_key_path == key_path


def test_local_daemon_needs_user_keys(fake_resolver: StaticExecutableResolver, private_dir: Path) -> None:
    assert LocalDaemonBackend(_make_config(private_dir, user_keys=()), fake_resolver).acquire() is None


def test_local_daemon_returns_first_working_key(
    fake_resolver: StaticExecutableResolver,
    private_dir: Path,
    tmp_path: Path,
) -> None:
    keys = (tmp_path / "id_a", tmp_path / "id_b")
    config = _make_config(private_dir, user_keys=keys, port=2222)

    handle = LocalDaemonBackend(config, fake_resolver).acquire()

    assert handle is not None
    assert handle.host == "localhost"
    assert handle.port == 2222
    assert handle.private_key_path == keys[0]
    assert not private_dir.exists()


def test_local_daemon_yields_nothing_when_login_fails(
    fake_resolver: StaticExecutableResolver,
    private_dir: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(FAKE_SSH_EXIT_CODE_ENV_VAR, "255")
    config = _make_config(private_dir, user_keys=(tmp_path / "id_a",))

    assert LocalDaemonBackend(config, fake_resolver).acquire() is None


def test_ephemeral_daemon_is_skipped_when_servers_are_disabled(
    fake_resolver: StaticExecutableResolver, private_dir: Path
) -> None:
    config = _make_config(private_dir, is_server_backend_enabled=False)

    assert EphemeralDaemonBackend(config, fake_resolver).acquire() is None
    assert not private_dir.exists()


def test_ephemeral_daemon_without_sshd_touches_nothing(fake_bin: Path, private_dir: Path) -> None:
    resolver = StaticExecutableResolver({"ssh": fake_bin / "ssh", "ssh-keygen": fake_bin / "ssh-keygen"})

    assert EphemeralDaemonBackend(_make_config(private_dir), resolver).acquire() is None
    assert not private_dir.exists()


@pytest.mark.timeout(60)
def test_ephemeral_daemon_provisions_and_owns_server(
    fake_resolver: StaticExecutableResolver, private_dir: Path
) -> None:
    layout = PrivateDirLayout(root=private_dir)

    handle = EphemeralDaemonBackend(_make_config(private_dir), fake_resolver).acquire()

    assert handle is not None
    daemon = handle.daemon
    assert daemon is not None
    assert daemon.is_running()
    assert handle.host == "localhost"
    assert handle.private_key_path == layout.keys_dir / "user_key"
    assert (layout.keys_dir / "host_key.pub").is_file()
    assert is_port_open("localhost", handle.port)
    process = daemon.process
    assert process is not None

    handle.close()

    assert daemon.state == DaemonState.STOPPED
    assert not psutil.pid_exists(process.pid)
    assert not is_port_open("localhost", handle.port)
    assert (layout.last_run_dir / "sshd_config").is_file()


@pytest.mark.timeout(60)
def test_ephemeral_daemon_is_stopped_when_login_fails(
    fake_resolver: StaticExecutableResolver,
    private_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(FAKE_SSH_EXIT_CODE_ENV_VAR, "255")
    layout = PrivateDirLayout(root=private_dir)

    assert EphemeralDaemonBackend(_make_config(private_dir), fake_resolver).acquire() is None

    assert not layout.run_dir().exists()
    assert (layout.last_run_dir / "sshd_config").is_file()


@pytest.mark.timeout(60)
def test_ephemeral_daemon_gives_up_after_repeated_start_failures(fake_bin: Path, private_dir: Path) -> None:
    dying_sshd = write_fake_sshd(fake_bin / "dying", is_exiting_immediately=True)
    resolver = StaticExecutableResolver(
        {"ssh": fake_bin / "ssh", "sshd": dying_sshd, "ssh-keygen": fake_bin / "ssh-keygen"}
    )

    assert EphemeralDaemonBackend(_make_config(private_dir), resolver).acquire() is None
    assert "cannot bind" in (PrivateDirLayout(root=private_dir).last_run_dir / "sshd.err").read_text()
