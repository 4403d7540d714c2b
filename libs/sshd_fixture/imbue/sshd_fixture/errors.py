from collections.abc import Sequence
from pathlib import Path


class BaseSshdFixtureError(Exception):
    """Base exception for all sshd_fixture errors."""


class ExecutableNotFoundError(BaseSshdFixtureError):
    """No usable executable was found for a command.

    This is recoverable: the backend that needed the command is skipped.
    """

    def __init__(self, command_name: str, min_version: int | None = None) -> None:
        self.command_name = command_name
        self.min_version = min_version
        if min_version is None:
            message = f"No executable found for command '{command_name}'"
        else:
            message = f"No executable found for command '{command_name}' (OpenSSH {min_version}.x or newer required)"
        super().__init__(message)


class KeyGenerationError(BaseSshdFixtureError):
    """Key material could not be produced."""

    def __init__(self, key_path: Path, reason: str) -> None:
        self.key_path = key_path
        self.reason = reason
        super().__init__(f"Key generation failed for '{key_path}': {reason}")


class PortsExhaustedError(BaseSshdFixtureError):
    """No unused TCP port was found within the attempt budget."""

    def __init__(self, host: str, attempt_count: int) -> None:
        self.host = host
        self.attempt_count = attempt_count
        super().__init__(f"Can't find free TCP port for SSH server on {host} after {attempt_count} attempts")


class DaemonError(BaseSshdFixtureError):
    """Base class for errors raised while supervising sshd."""


class DaemonConfigError(DaemonError):
    """The sshd configuration file could not be written."""

    def __init__(self, config_path: Path, reason: str) -> None:
        self.config_path = config_path
        self.reason = reason
        super().__init__(f"Unable to create sshd configuration file at '{config_path}': {reason}")


class DaemonSpawnError(DaemonError):
    """sshd could not be started, or exited before it started listening."""

    def __init__(self, command: Sequence[str], reason: str) -> None:
        self.command = tuple(command)
        self.reason = reason
        super().__init__(f"Unable to start SSH server `{' '.join(self.command)}`: {reason}")


class InvalidDaemonStateError(DaemonError):
    """A supervisor operation was requested from the wrong lifecycle state."""


class EndpointError(BaseSshdFixtureError):
    """Base class for errors about connecting to an SSH endpoint."""


class InvalidConnectionUriError(EndpointError, ValueError):
    """A connection URI could not be parsed."""

    def __init__(self, uri: str, reason: str) -> None:
        self.uri = uri
        self.reason = reason
        super().__init__(f"Invalid SSH URI '{uri}': {reason}")


class ProtocolMismatchError(EndpointError):
    """The target did not identify itself as an SSH server."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"{host}:{port} is not reachable as an SSH endpoint: {reason}")


class NoBackendAvailableError(BaseSshdFixtureError):
    """Every configured backend failed to produce a working SSH server.

    Callers should treat this as "skip the tests that need SSH", not as a defect.
    """

    def __init__(self, attempted_backends: Sequence[str]) -> None:
        self.attempted_backends = tuple(attempted_backends)
        super().__init__(f"No SSH backend available (tried: {', '.join(self.attempted_backends) or 'none'})")


class UnknownUserError(BaseSshdFixtureError):
    """The invoking user's login name could not be determined."""
