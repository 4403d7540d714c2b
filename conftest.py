"""Root conftest: registers the sshd_fixture pytest fixtures and checks for leaked processes."""

import psutil
import pytest

# pytest only honors pytest_plugins in the top-level conftest
pytest_plugins = ["imbue.sshd_fixture.fixtures"]


def _is_alive_non_zombie(proc: psutil.Process) -> bool:
    """Check if a process is alive and not a zombie."""
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def _format_process_info(proc: psutil.Process) -> str:
    try:
        return f"  PID {proc.pid}: {proc.name()} - {' '.join(proc.cmdline()[:6])}"
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return f"  PID {proc.pid}: <process info unavailable>"


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    """Fail the run if a test left an ssh client or sshd behind."""
    try:
        children = list(psutil.Process().children(recursive=True))
    except psutil.NoSuchProcess:
        children = []
    leftover_processes = [proc for proc in children if _is_alive_non_zombie(proc)]
    if leftover_processes:
        proc_info = "\n".join(_format_process_info(proc) for proc in leftover_processes)
        session.exitstatus = pytest.ExitCode.TESTS_FAILED
        print(f"\nLeftover child processes found!\nTests should stop every process they start.\n{proc_info}")
