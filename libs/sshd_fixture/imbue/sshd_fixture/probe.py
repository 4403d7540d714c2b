"""Connectivity probing: can a given set of connection parameters run a remote command?

Public key probes run the ssh client as a plain subprocess in batch mode.
Password probes run it attached to a pseudo-terminal and answer the password
prompt it prints there.
"""

import errno
import os
import re
import select
import shlex
import socket
import subprocess
import time
from collections.abc import Callable
from collections.abc import Sequence
from pathlib import Path
from typing import Final
from typing import Self
from typing import assert_never

import deal
from loguru import logger
from pydantic import Field

from imbue.sshd_fixture.base_models import FrozenModel
from imbue.sshd_fixture.connection import ConnectionParams
from imbue.sshd_fixture.errors import ProtocolMismatchError
from imbue.sshd_fixture.logging import REDACTED_SECRET
from imbue.sshd_fixture.primitives import AuthMethod
from imbue.sshd_fixture.primitives import ProbeFailureReason
from imbue.sshd_fixture.primitives import PromptWatcherState

DEFAULT_TEST_COMMANDS: Final[tuple[str, ...]] = ("true", "exit", "echo foo", "date")

# How long a timed-out client gets between TERM and KILL
KILL_GRACE_SECONDS: Final[float] = 3.0

LOCAL_SHELL: Final[str] = "/bin/sh"

SSH_BANNER_PREFIX: Final[str] = "SSH-"

# Anything ending in ':' or '?' (optionally followed by whitespace) is taken as a prompt
_PROMPT_PATTERN: Final[re.Pattern[str]] = re.compile(r"[:?]\s*\Z")

_READ_CHUNK_SIZE: Final[int] = 4096

_READ_INTERVAL_SECONDS: Final[float] = 1.0

_STDERR_TAIL_CHARS: Final[int] = 500

_MAX_BANNER_BYTES: Final[int] = 1024


class ProbeAttempt(FrozenModel):
    """One trial of a command against an endpoint, as logged."""

    auth_method: AuthMethod = Field(description="Authentication method tried")
    credential_display: str = Field(description="Key path, or the redacted password")
    command: str = Field(description="Remote command")
    timeout: float = Field(description="Seconds allowed for the whole attempt")


class ProbeOutcome(FrozenModel):
    """The result of a probe. Probes report failures here instead of raising."""

    is_success: bool = Field(description="Whether the remote command ran and exited with code 0")
    exit_code: int | None = Field(default=None, description="Exit code of the ssh client, if it exited")
    failure_reason: ProbeFailureReason | None = Field(default=None, description="Why the probe failed")
    detail: str = Field(default="", description="Human readable detail, e.g. client error output")

    @classmethod
    def success(cls) -> Self:
        return cls(is_success=True, exit_code=0)

    @classmethod
    def failure(cls, reason: ProbeFailureReason, detail: str = "", exit_code: int | None = None) -> Self:
        return cls(is_success=False, exit_code=exit_code, failure_reason=reason, detail=detail)


@deal.has()
def _build_common_options(params: ConnectionParams, dev_null: str) -> list[str]:
    return [
        "-l",
        str(params.username),
        "-p",
        str(int(params.port)),
        "-F",
        dev_null,
    ]


@deal.has()
def build_publickey_command(ssh_path: Path, params: ConnectionParams, command: str, dev_null: str) -> list[str]:
    assert params.private_key_path is not None
    return [
        str(ssh_path),
        "-T",
        "-i",
        str(params.private_key_path),
        *_build_common_options(params, dev_null),
        "-o",
        "PreferredAuthentications=publickey",
        "-o",
        "BatchMode=yes",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        f"UserKnownHostsFile={dev_null}",
        "--",
        params.host,
        command,
    ]


@deal.has()
def build_password_command(ssh_path: Path, params: ConnectionParams, command: str, dev_null: str) -> list[str]:
    # the password itself is never part of the command line
    return [
        str(ssh_path),
        "-T",
        *_build_common_options(params, dev_null),
        "-o",
        "PreferredAuthentications=password,keyboard-interactive",
        "-o",
        "BatchMode=no",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        f"UserKnownHostsFile={dev_null}",
        "-o",
        "NumberOfPasswordPrompts=1",
        "--",
        params.host,
        command,
    ]


class PasswordPromptWatcher:
    """Watches client output for a password prompt and answers it exactly once.

    Output is accumulated until it ends like a prompt. The password is then
    returned for injection, the buffer is cleared and the watcher moves to
    PASSWORD_SENT, after which it never responds again. A second prompt means
    the password was rejected, and answering it again would only loop.
    """

    def __init__(self, password: str) -> None:
        self._password = password
        self._state = PromptWatcherState.AWAITING_PROMPT
        self._buffer = ""

    @property
    def state(self) -> PromptWatcherState:
        return self._state

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, output: str) -> bytes | None:
        """Consume client output. Returns the bytes to write to the terminal, if any."""
        match self._state:
            case PromptWatcherState.PASSWORD_SENT:
                return None
            case PromptWatcherState.AWAITING_PROMPT:
                self._buffer += output
                if _PROMPT_PATTERN.search(self._buffer) is None:
                    return None
                self._buffer = ""
                self._state = PromptWatcherState.PASSWORD_SENT
                return (self._password + "\n").encode("utf-8")
            case _ as unreachable:
                assert_never(unreachable)


def is_pty_supported() -> bool:
    return hasattr(os, "openpty") and hasattr(os, "fork")


def _read_with_timeout(fd: int, timeout: float) -> bytes | None:
    """Read whatever is available on fd within timeout.

    Returns None when nothing arrived in time and b"" at end of file. A pty
    master reports the end of file as EIO once every slave descriptor is closed.
    """
    readable, _, _ = select.select([fd], [], [], max(timeout, 0.0))
    if not readable:
        return None
    try:
        return os.read(fd, _READ_CHUNK_SIZE)
    except OSError as e:
        if e.errno == errno.EIO:
            return b""
        raise


def _make_controlling_terminal() -> None:
    # runs in the child after setsid(), with the pty slave already on fd 0
    import fcntl
    import termios

    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _terminate_process(process: subprocess.Popen[bytes], grace_seconds: float = KILL_GRACE_SECONDS) -> None:
    """Send TERM, then KILL if the process is still there after the grace period."""
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.debug("ssh client (pid: {}) ignored SIGTERM, killing it", process.pid)
        process.kill()
        process.wait()


def _describe_exit(exit_code: int) -> ProbeOutcome:
    if exit_code == 0:
        return ProbeOutcome.success()
    return ProbeOutcome.failure(ProbeFailureReason.NONZERO_EXIT, f"ssh exited with code {exit_code}", exit_code)


class ConnectivityProbe:
    """Runs test commands through an ssh client against an endpoint."""

    def __init__(self, ssh_path: Path, dev_null: str = os.devnull) -> None:
        self._ssh_path = ssh_path
        self._dev_null = dev_null

    @property
    def ssh_path(self) -> Path:
        return self._ssh_path

    def probe(
        self,
        params: ConnectionParams,
        command: str,
        timeout: float,
        is_server_running: Callable[[], bool] | None = None,
    ) -> ProbeOutcome:
        """Try to run command on the endpoint described by params.

        Never raises for an unsuccessful attempt: timeouts, nonzero exit codes,
        client spawn failures and missing pty support are all reported through
        the returned outcome.
        """
        attempt = ProbeAttempt(
            auth_method=params.auth_method,
            credential_display=params.credential_display,
            command=command,
            timeout=timeout,
        )
        if is_server_running is not None and not is_server_running():
            logger.warning("SSH server is not running")
            return ProbeOutcome.failure(ProbeFailureReason.SERVER_NOT_RUNNING, "SSH server is not running")

        logger.debug(
            "Trying to run '{}' on {}@{}:{} using {} auth ({})",
            attempt.command,
            params.username,
            params.host,
            params.port,
            attempt.auth_method.lower(),
            attempt.credential_display,
        )
        match params.auth_method:
            case AuthMethod.PUBLICKEY:
                outcome = self._probe_with_key(params, command, timeout)
            case AuthMethod.PASSWORD:
                outcome = self._probe_with_password(params, command, timeout)
            case _ as unreachable:
                assert_never(unreachable)

        if outcome.is_success:
            logger.debug("Command '{}' succeeded on {}:{}", command, params.host, params.port)
        else:
            logger.debug(
                "Command '{}' failed on {}:{} ({}): {}",
                command,
                params.host,
                params.port,
                outcome.failure_reason,
                outcome.detail,
            )
        return outcome

    def _probe_with_key(self, params: ConnectionParams, command: str, timeout: float) -> ProbeOutcome:
        argv = build_publickey_command(self._ssh_path, params, command, self._dev_null)
        logger.trace("Running {}", shlex.join(argv))
        try:
            process = subprocess.Popen(argv, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as e:
            return ProbeOutcome.failure(ProbeFailureReason.SPAWN_FAILED, f"unable to run '{self._ssh_path}': {e}")

        try:
            _, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _terminate_process(process)
            process.communicate()
            return ProbeOutcome.failure(ProbeFailureReason.TIMEOUT, f"ssh did not finish within {timeout}s")

        outcome = _describe_exit(process.returncode)
        if outcome.is_success:
            return outcome
        error_output = stderr.decode("utf-8", errors="replace").strip()[-_STDERR_TAIL_CHARS:]
        return outcome.model_copy(update={"detail": f"{outcome.detail}: {error_output}" if error_output else outcome.detail})

    def _probe_with_password(self, params: ConnectionParams, command: str, timeout: float) -> ProbeOutcome:
        if not is_pty_supported():
            return ProbeOutcome.failure(
                ProbeFailureReason.UNSUPPORTED_PLATFORM, "password authentication requires pseudo-terminal support"
            )
        assert params.password is not None
        argv = build_password_command(self._ssh_path, params, command, self._dev_null)
        logger.trace("Running {} (password {})", shlex.join(argv), REDACTED_SECRET)

        deadline = time.monotonic() + timeout
        master_fd, slave_fd = os.openpty()
        try:
            try:
                process = subprocess.Popen(
                    argv,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    start_new_session=True,
                    preexec_fn=_make_controlling_terminal,
                )
            except (OSError, subprocess.SubprocessError) as e:
                return ProbeOutcome.failure(ProbeFailureReason.SPAWN_FAILED, f"unable to run '{self._ssh_path}': {e}")
            finally:
                os.close(slave_fd)

            transcript = self._drive_password_session(master_fd, process, params.password, deadline)
            if params.password:
                transcript = transcript.replace(params.password, REDACTED_SECRET)
            logger.trace("ssh client output: {!r}", transcript)

            try:
                exit_code = process.wait(timeout=max(deadline - time.monotonic(), 0.0))
            except subprocess.TimeoutExpired:
                _terminate_process(process)
                return ProbeOutcome.failure(ProbeFailureReason.TIMEOUT, f"ssh did not finish within {timeout}s")
        finally:
            os.close(master_fd)

        return _describe_exit(exit_code)

    def _drive_password_session(
        self,
        master_fd: int,
        process: subprocess.Popen[bytes],
        password: str,
        deadline: float,
    ) -> str:
        """Pump client output through the prompt watcher until end of file or the deadline."""
        watcher = PasswordPromptWatcher(password)
        transcript: list[str] = []
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                data = _read_with_timeout(master_fd, min(remaining, _READ_INTERVAL_SECONDS))
            except OSError as e:
                logger.debug("Reading from the ssh client terminal failed: {}", e)
                break
            if data is None:
                # something else may still hold the terminal open after the client is gone
                if process.poll() is not None:
                    break
                continue
            if not data:
                break
            text = data.decode("utf-8", errors="replace")
            transcript.append(text)
            response = watcher.feed(text)
            if response is not None:
                logger.debug("Password prompt detected, sending password ({})", REDACTED_SECRET)
                try:
                    os.write(master_fd, response)
                except OSError as e:
                    logger.debug("Unable to send password to the ssh client: {}", e)
                    break
        return "".join(transcript)

    def find_working_connection(
        self,
        candidates: Sequence[ConnectionParams],
        test_commands: Sequence[str] = DEFAULT_TEST_COMMANDS,
        timeout: float = 10.0,
        is_local_check_required: bool = False,
        is_server_running: Callable[[], bool] | None = None,
    ) -> ConnectionParams | None:
        """Return the first candidate that can run one of the test commands.

        With is_local_check_required, a test command is only tried remotely if it
        also succeeds under the local shell, so a command that cannot work
        anywhere does not count against the credential.
        """
        local_results: dict[str, bool] = {}
        for params in candidates:
            for command in test_commands:
                if is_local_check_required:
                    if command not in local_results:
                        local_results[command] = is_command_runnable_locally(command, timeout)
                    if not local_results[command]:
                        continue
                outcome = self.probe(params, command, timeout, is_server_running)
                if outcome.is_success:
                    logger.debug("Connection ok")
                    return params
                if outcome.failure_reason == ProbeFailureReason.SERVER_NOT_RUNNING:
                    return None
        return None


def is_command_runnable_locally(command: str, timeout: float) -> bool:
    """Check that a test command succeeds under the local shell."""
    try:
        completed = subprocess.run(
            [LOCAL_SHELL, "-c", command],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
            check=False,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug("Local command '{}' failed: {}", command, e)
        return False
    if completed.returncode != 0:
        logger.debug("Local command '{}' exited with code {}", command, completed.returncode)
        return False
    return True


def read_server_banner(host: str, port: int, timeout: float) -> str:
    """Connect to host:port and return the identification line the server sends.

    Raises ProtocolMismatchError if nothing that looks like an SSH banner arrives.
    """
    deadline = time.monotonic() + timeout
    buffer = b""
    try:
        with socket.create_connection((host, int(port)), timeout=timeout) as sock:
            while b"\n" not in buffer and len(buffer) < _MAX_BANNER_BYTES:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sock.settimeout(remaining)
                chunk = sock.recv(_MAX_BANNER_BYTES)
                if not chunk:
                    break
                buffer += chunk
    except OSError as e:
        raise ProtocolMismatchError(host, port, str(e)) from e

    line = buffer.split(b"\n", 1)[0].decode("utf-8", errors="replace").rstrip("\r")
    if not line.startswith(SSH_BANNER_PREFIX):
        raise ProtocolMismatchError(host, port, f"unexpected banner {line!r}")
    return line
