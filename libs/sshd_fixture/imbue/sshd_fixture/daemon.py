"""Supervision of a private, ephemeral sshd instance.

A DaemonSupervisor walks through UNCONFIGURED -> CONFIGURED -> STARTING ->
RUNNING -> STOPPING -> STOPPED. Disposal (close) works from any state, runs at
most once, and is also hooked into interpreter shutdown so the daemon never
outlives the process that started it.
"""

import atexit
import os
import shutil
import signal
import subprocess
import threading
from pathlib import Path
from types import TracebackType
from typing import Final
from typing import Self

import deal
import psutil
from loguru import logger
from pydantic import Field

from imbue.sshd_fixture.base_models import FrozenModel
from imbue.sshd_fixture.errors import DaemonConfigError
from imbue.sshd_fixture.errors import DaemonSpawnError
from imbue.sshd_fixture.errors import InvalidDaemonStateError
from imbue.sshd_fixture.paths import PrivateDirLayout
from imbue.sshd_fixture.paths import SSHD_CONFIG_NAME
from imbue.sshd_fixture.paths import SSHD_PID_NAME
from imbue.sshd_fixture.paths import SSHD_STDERR_NAME
from imbue.sshd_fixture.paths import SSHD_STDOUT_NAME
from imbue.sshd_fixture.paths import ensure_private_dir
from imbue.sshd_fixture.polling import poll_until
from imbue.sshd_fixture.ports import is_port_open
from imbue.sshd_fixture.primitives import DaemonState
from imbue.sshd_fixture.primitives import Port
from imbue.sshd_fixture.primitives import Username

# TERM is retried a few times before falling back to KILL
STOP_SIGNAL_SEQUENCE: Final[tuple[signal.Signals, ...]] = (
    signal.SIGTERM,
    signal.SIGTERM,
    signal.SIGTERM,
    signal.SIGTERM,
    signal.SIGKILL,
)

STOP_SIGNAL_PAUSE_SECONDS: Final[float] = 1.0

DEFAULT_STARTUP_TIMEOUT_SECONDS: Final[float] = 10.0

_STDERR_TAIL_CHARS: Final[int] = 2000


class DaemonLaunchSettings(FrozenModel):
    """What the generated sshd configuration needs to know."""

    host_key_path: Path = Field(description="Private host key file")
    authorized_keys_path: Path = Field(description="Public key file of the user allowed to log in")
    username: Username = Field(description="The only user allowed to log in")
    port: Port = Field(description="Port to listen on")
    listen_host: str = Field(default="localhost", description="Address to bind (loopback)")
    log_level: str = Field(default="INFO", description="sshd LogLevel")


@deal.has()
def escape_config_path(path: Path) -> str:
    """Escape a path for sshd directives that expand %-tokens."""
    return str(path).replace("%", "%%")


@deal.has()
def build_sshd_config_directives(settings: DaemonLaunchSettings, pid_file_path: Path) -> list[tuple[str, str]]:
    return [
        ("HostKey", str(settings.host_key_path)),
        ("AuthorizedKeysFile", escape_config_path(settings.authorized_keys_path)),
        # only the user running the tests can log in
        ("AllowUsers", str(settings.username)),
        ("AllowTcpForwarding", "yes"),
        # port forwarding listeners are bound to localhost only
        ("GatewayPorts", "no"),
        ("ChallengeResponseAuthentication", "no"),
        ("PasswordAuthentication", "no"),
        ("Port", str(settings.port)),
        ("ListenAddress", f"{settings.listen_host}:{settings.port}"),
        ("LogLevel", settings.log_level),
        ("PermitRootLogin", "yes"),
        ("PidFile", str(pid_file_path)),
        ("PrintLastLog", "no"),
        ("PrintMotd", "no"),
        ("UseDNS", "no"),
        # the private directory may sit below a group-writable temp dir
        ("StrictModes", "no"),
    ]


@deal.has()
def render_sshd_config(settings: DaemonLaunchSettings, pid_file_path: Path) -> str:
    directives = build_sshd_config_directives(settings, pid_file_path)
    return "".join(f"{key}={value}\n" for key, value in directives)


def _is_pid_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def read_pid_file(pid_file_path: Path) -> int | None:
    """Return the pid recorded in a pid file, if there is a valid one."""
    try:
        text = pid_file_path.read_text().strip()
    except OSError:
        return None
    if not text.isdigit():
        return None
    pid = int(text)
    return pid if pid > 0 else None


# Run directories owned by a supervisor of this process that has not been closed yet
_claimed_run_dirs: set[Path] = set()
_claimed_run_dirs_lock = threading.Lock()


def _claim_run_dir(run_dir: Path, config_path: Path) -> None:
    """Reserve run_dir for one supervisor. Raises DaemonConfigError if an SSH server still uses it."""
    with _claimed_run_dirs_lock:
        if run_dir in _claimed_run_dirs:
            raise DaemonConfigError(config_path, f"run directory '{run_dir}' is in use by another SSH server of this process")
        recorded_pid = read_pid_file(run_dir / SSHD_PID_NAME)
        if recorded_pid is not None and recorded_pid != os.getpid() and _is_pid_alive(recorded_pid):
            raise DaemonConfigError(
                config_path, f"run directory '{run_dir}' is in use by a running SSH server (pid: {recorded_pid})"
            )
        _claimed_run_dirs.add(run_dir)


def _release_run_dir(run_dir: Path) -> None:
    with _claimed_run_dirs_lock:
        _claimed_run_dirs.discard(run_dir)


def _send_signal(pid: int, sig: signal.Signals) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.warning("Not allowed to send {} to pid {}: {}", sig.name, pid, e)


class DaemonProcess:
    """A running sshd and the files it writes. Owned by exactly one DaemonSupervisor."""

    def __init__(
        self,
        popen: subprocess.Popen[bytes],
        command: tuple[str, ...],
        run_dir: Path,
        config_path: Path,
        pid_file_path: Path,
        stdout_path: Path,
        stderr_path: Path,
    ) -> None:
        self._popen = popen
        self.command = command
        self.run_dir = run_dir
        self.config_path = config_path
        self.pid_file_path = pid_file_path
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self._is_stopped = False

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def is_stopped(self) -> bool:
        return self._is_stopped

    @property
    def returncode(self) -> int | None:
        return self._popen.poll()

    def is_alive(self) -> bool:
        return not self._is_stopped and self._popen.poll() is None

    def read_recorded_pid(self) -> int | None:
        """Return the pid sshd wrote to its pid file, if any."""
        return read_pid_file(self.pid_file_path)

    def read_stderr_tail(self) -> str:
        try:
            return self.stderr_path.read_text(errors="replace")[-_STDERR_TAIL_CHARS:].strip()
        except OSError as e:
            return f"(unable to read {self.stderr_path}: {e})"

    def _get_signal_targets(self, recorded_pid: int | None) -> list[int]:
        targets: list[int] = []
        if self._popen.poll() is None:
            targets.append(self._popen.pid)
        if recorded_pid is not None and recorded_pid not in targets and recorded_pid != os.getpid():
            if _is_pid_alive(recorded_pid):
                targets.append(recorded_pid)
        return targets

    def stop(self, pause_seconds: float = STOP_SIGNAL_PAUSE_SECONDS) -> None:
        """Signal the daemon until it is gone: TERM a few times, then KILL.

        Both the direct child and the pid recorded in the pid file are targeted.
        Does nothing once the process has been stopped.
        """
        if self._is_stopped:
            return
        # sshd removes its pid file on exit, so read it before signalling
        recorded_pid = self.read_recorded_pid()
        try:
            for sig in STOP_SIGNAL_SEQUENCE:
                targets = self._get_signal_targets(recorded_pid)
                if not targets:
                    break
                for pid in targets:
                    logger.debug("Sending {} signal to server (pid: {})", sig.name, pid)
                    _send_signal(pid, sig)
                poll_until(lambda: not self._get_signal_targets(recorded_pid), timeout=pause_seconds)
            try:
                self._popen.wait(timeout=pause_seconds)
            except subprocess.TimeoutExpired:
                logger.error("SSH server (pid: {}) did not exit after SIGKILL", self._popen.pid)
        finally:
            self._is_stopped = True


class DaemonSupervisor:
    """Configures, starts, watches and disposes of one private sshd."""

    def __init__(
        self,
        sshd_path: Path,
        layout: PrivateDirLayout,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT_SECONDS,
    ) -> None:
        self._sshd_path = sshd_path
        self._layout = layout
        self._startup_timeout = startup_timeout
        self._state = DaemonState.UNCONFIGURED
        self._settings: DaemonLaunchSettings | None = None
        self._run_dir: Path | None = None
        self._config_path: Path | None = None
        self._process: DaemonProcess | None = None
        self._is_atexit_registered = False

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def run_dir(self) -> Path | None:
        return self._run_dir

    @property
    def config_path(self) -> Path | None:
        return self._config_path

    @property
    def process(self) -> DaemonProcess | None:
        return self._process

    @property
    def port(self) -> Port | None:
        return None if self._settings is None else self._settings.port

    def _require_state(self, expected: DaemonState, operation: str) -> None:
        if self._state != expected:
            raise InvalidDaemonStateError(f"Cannot {operation} an SSH server in state {self._state}")

    def configure(self, settings: DaemonLaunchSettings) -> Path:
        """Create the run directory and write sshd_config into it. Returns the config path."""
        self._require_state(DaemonState.UNCONFIGURED, "configure")
        run_dir = self._layout.run_dir()
        config_path = run_dir / SSHD_CONFIG_NAME
        try:
            _claim_run_dir(run_dir, config_path)
        except DaemonConfigError as e:
            logger.error("{}", e)
            raise
        self._run_dir = run_dir
        self._register_atexit()
        try:
            # nothing runs from a leftover unclaimed directory, so it is stale
            if run_dir.exists():
                shutil.rmtree(run_dir)
            ensure_private_dir(run_dir)
            config_path.write_text(render_sshd_config(settings, run_dir / SSHD_PID_NAME))
        except OSError as e:
            error = DaemonConfigError(config_path, str(e))
            logger.error("{}", error)
            raise error from e
        self._settings = settings
        self._config_path = config_path
        self._state = DaemonState.CONFIGURED
        logger.debug("sshd configuration written to '{}'", config_path)
        return config_path

    def start(self) -> DaemonProcess:
        """Spawn sshd in the foreground with its output captured in the run directory."""
        self._require_state(DaemonState.CONFIGURED, "start")
        assert self._run_dir is not None and self._config_path is not None
        run_dir = self._run_dir
        command = (str(self._sshd_path), "-D", "-e", "-f", str(self._config_path))
        stdout_path = run_dir / SSHD_STDOUT_NAME
        stderr_path = run_dir / SSHD_STDERR_NAME

        self._state = DaemonState.STARTING
        logger.debug("Starting SSH server '{}'", self._sshd_path)
        try:
            with stdout_path.open("wb") as stdout_file, stderr_path.open("wb") as stderr_file:
                popen = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_file,
                    stderr=stderr_file,
                )
        except OSError as e:
            self._state = DaemonState.CONFIGURED
            error = DaemonSpawnError(command, str(e))
            logger.error("{}", error)
            raise error from e

        self._process = DaemonProcess(
            popen=popen,
            command=command,
            run_dir=run_dir,
            config_path=self._config_path,
            pid_file_path=run_dir / SSHD_PID_NAME,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )
        self._state = DaemonState.RUNNING
        logger.debug("SSH server started (pid: {})", popen.pid)
        return self._process

    def wait_until_listening(self) -> None:
        """Block until sshd accepts connections on its port.

        Raises DaemonSpawnError if sshd exits first (typically because the port
        was taken in the meantime) or does not listen within the startup timeout.
        """
        self._require_state(DaemonState.RUNNING, "wait for")
        process = self._process
        settings = self._settings
        assert process is not None and settings is not None

        poll_until(
            lambda: not process.is_alive() or is_port_open(settings.listen_host, settings.port, timeout=0.5),
            timeout=self._startup_timeout,
        )
        if not process.is_alive():
            error = DaemonSpawnError(
                process.command,
                f"sshd exited with code {process.returncode}: {process.read_stderr_tail()}",
            )
            logger.error("{}", error)
            raise error
        if not is_port_open(settings.listen_host, settings.port, timeout=0.5):
            error = DaemonSpawnError(
                process.command,
                f"sshd is not listening on port {settings.port} after {self._startup_timeout}s",
            )
            logger.error("{}", error)
            raise error
        logger.debug("SSH server listening on port {}", settings.port)

    def is_running(self) -> bool:
        return self._state == DaemonState.RUNNING and self._process is not None and self._process.is_alive()

    def close(self) -> None:
        """Stop the daemon and archive its run directory. Safe to call repeatedly and from any state."""
        if self._state in (DaemonState.STOPPED, DaemonState.STOPPING):
            return
        self._state = DaemonState.STOPPING
        try:
            if self._process is not None:
                logger.debug("Stopping SSH server")
                self._process.stop()
                logger.debug("SSH server stopped")
            self._archive_run_dir()
        finally:
            if self._run_dir is not None:
                _release_run_dir(self._run_dir)
            self._state = DaemonState.STOPPED
            self._unregister_atexit()

    def _archive_run_dir(self) -> None:
        run_dir = self._run_dir
        if run_dir is None or not run_dir.exists():
            return
        last_run_dir = self._layout.last_run_dir
        try:
            if last_run_dir.exists():
                shutil.rmtree(last_run_dir)
            run_dir.rename(last_run_dir)
        except OSError as e:
            logger.warning("Unable to move SSH server run directory '{}' to '{}': {}", run_dir, last_run_dir, e)
            return
        logger.debug("SSH server logs moved to '{}'", last_run_dir)

    def _register_atexit(self) -> None:
        if not self._is_atexit_registered:
            atexit.register(self.close)
            self._is_atexit_registered = True

    def _unregister_atexit(self) -> None:
        if self._is_atexit_registered:
            atexit.unregister(self.close)
            self._is_atexit_registered = False

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()
