import os
from pathlib import Path
from typing import Final

from loguru import logger
from pydantic import Field

from imbue.sshd_fixture.base_models import FrozenModel

# Subsystem directory holding everything the ephemeral OpenSSH backend writes
OPENSSH_SUBSYSTEM: Final[str] = "openssh"

LAST_RUN_DIRNAME: Final[str] = "last"

USER_KEY_NAME: Final[str] = "user_key"
HOST_KEY_NAME: Final[str] = "host_key"

SSHD_CONFIG_NAME: Final[str] = "sshd_config"
SSHD_PID_NAME: Final[str] = "sshd.pid"
SSHD_STDOUT_NAME: Final[str] = "sshd.out"
SSHD_STDERR_NAME: Final[str] = "sshd.err"

_PRIVATE_DIR_MODE: Final[int] = 0o700


class PrivateDirLayout(FrozenModel):
    """Locations inside the private working directory.

    <root>/openssh/keys/{user_key,user_key.pub,host_key,host_key.pub}
    <root>/openssh/run/<pid>/{sshd_config,sshd.pid,sshd.out,sshd.err}
    <root>/openssh/run/last   (the most recent run directory, archived on disposal)

    Nothing is created on construction.
    """

    root: Path = Field(description="Private root directory for this tool")

    @property
    def subsystem_dir(self) -> Path:
        return self.root / OPENSSH_SUBSYSTEM

    @property
    def keys_dir(self) -> Path:
        return self.subsystem_dir / "keys"

    @property
    def run_root(self) -> Path:
        return self.subsystem_dir / "run"

    @property
    def last_run_dir(self) -> Path:
        return self.run_root / LAST_RUN_DIRNAME

    def run_dir(self, pid: int | None = None) -> Path:
        """Return the run directory owned by the given process (the current one by default)."""
        return self.run_root / str(os.getpid() if pid is None else pid)


def ensure_private_dir(path: Path) -> Path:
    """Create a directory and any missing parents with owner-only permissions.

    Existing directories are left untouched.
    """
    if path.is_dir():
        return path
    missing = [candidate for candidate in (path, *path.parents) if not candidate.exists()]
    for directory in reversed(missing):
        directory.mkdir(mode=_PRIVATE_DIR_MODE, exist_ok=True)
        logger.debug("Directory '{}' created", directory)
    return path
