from typing import assert_never

from imbue.sshd_fixture.backends.base import BackendInterface
from imbue.sshd_fixture.backends.ephemeral_daemon import EphemeralDaemonBackend
from imbue.sshd_fixture.backends.explicit_remote import ExplicitRemoteBackend
from imbue.sshd_fixture.backends.local_daemon import LocalDaemonBackend
from imbue.sshd_fixture.primitives import BackendName


def get_backend_class(name: BackendName) -> type[BackendInterface]:
    match name:
        case BackendName.EXPLICIT_REMOTE:
            return ExplicitRemoteBackend
        case BackendName.LOCAL_DAEMON:
            return LocalDaemonBackend
        case BackendName.EPHEMERAL_DAEMON:
            return EphemeralDaemonBackend
        case _ as unreachable:
            assert_never(unreachable)
