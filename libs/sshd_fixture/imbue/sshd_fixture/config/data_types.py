from pathlib import Path
from typing import Final
from typing import Self

from pydantic import Field
from pydantic import model_validator

from imbue.sshd_fixture.base_models import FrozenModel
from imbue.sshd_fixture.connection import DEFAULT_SSH_PORT
from imbue.sshd_fixture.logging import LogSink
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.primitives import Port
from imbue.sshd_fixture.primitives import PositiveFloat
from imbue.sshd_fixture.primitives import Username
from imbue.sshd_fixture.probe import DEFAULT_TEST_COMMANDS

# Environment variable holding the URI of an SSH server to use instead of provisioning one
TARGET_URI_ENV_VAR: Final[str] = "TEST_SSH_TARGET"

DEFAULT_BACKENDS: Final[tuple[BackendName, ...]] = (
    BackendName.EXPLICIT_REMOTE,
    BackendName.LOCAL_DAEMON,
    BackendName.EPHEMERAL_DAEMON,
)

DEFAULT_TIMEOUT_SECONDS: Final[float] = 10.0

DEFAULT_HOST: Final[str] = "localhost"

PRIVATE_DIR_NAME: Final[str] = ".libtest-ssh"


class SshdFixtureConfig(FrozenModel):
    """Everything that controls how an SSH server is obtained."""

    backends: tuple[BackendName, ...] = Field(
        default=DEFAULT_BACKENDS,
        description="Backends to try, in order; the first one producing a server wins",
    )
    timeout: PositiveFloat = Field(
        default=PositiveFloat(DEFAULT_TIMEOUT_SECONDS),
        description="Seconds allowed for each external command and probe",
    )
    host: str = Field(default=DEFAULT_HOST, min_length=1, description="Host used for the remote backend")
    port: Port = Field(default=DEFAULT_SSH_PORT, description="Port of the remote or local SSH server")
    username: Username = Field(description="User to log in as")
    password: str | None = Field(default=None, description="Password for the remote backend")
    test_commands: tuple[str, ...] = Field(
        default=DEFAULT_TEST_COMMANDS,
        description="Commands tried in order to check that a connection works",
    )
    search_path: tuple[Path, ...] = Field(default=(), description="Directories searched for OpenSSH executables")
    user_keys: tuple[Path, ...] = Field(default=(), description="Private keys of the invoking user")
    private_dir: Path = Field(description="Directory for generated keys and daemon run directories")
    requested_uri: str | None = Field(default=None, description="URI of an explicitly requested SSH server")
    is_server_backend_enabled: bool = Field(
        default=True,
        description="Whether backends that start their own SSH server may be used",
    )
    log_sink: LogSink | None = Field(
        default=None,
        description="Optional callable receiving (level, message) for every log record emitted while acquiring",
    )

    @model_validator(mode="after")
    def _check_backends(self) -> Self:
        if not self.backends:
            raise ValueError("At least one backend must be configured")
        duplicates = sorted({name for name in self.backends if self.backends.count(name) > 1})
        if duplicates:
            raise ValueError(f"Backends must not be repeated: {', '.join(duplicates)}")
        return self

    @model_validator(mode="after")
    def _check_test_commands(self) -> Self:
        if not self.test_commands:
            raise ValueError("At least one test command must be configured")
        return self
