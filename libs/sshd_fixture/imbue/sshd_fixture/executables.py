"""Resolution of OpenSSH executables on the local machine.

Candidates are searched along an ordered directory list. A candidate must be a
regular, executable, binary file (wrapper scripts are skipped), and may also be
required to report a minimum OpenSSH major version. Resolved paths are cached
for the lifetime of the resolver.
"""

import os
import re
import subprocess
from collections.abc import Sequence
from glob import glob
from pathlib import Path
from typing import Final

import deal
from loguru import logger

from imbue.sshd_fixture.errors import ExecutableNotFoundError

SSH_COMMAND: Final[str] = "ssh"
SSHD_COMMAND: Final[str] = "sshd"
SSH_KEYGEN_COMMAND: Final[str] = "ssh-keygen"

SSH_VERSION_FLAG: Final[str] = "-V"

# sshd has no portable version flag. An unknown option makes it print its
# version together with the usage text, which is all we need.
SSHD_VERSION_FLAG: Final[str] = "-zalacain"

MIN_OPENSSH_MAJOR_VERSION: Final[int] = 5

# Installation roots searched in addition to PATH; each contributes bin/ and sbin/
_EXTRA_ROOT_PATTERNS: Final[tuple[str, ...]] = (
    "/",
    "/usr",
    "/usr/local",
    "~",
    "/usr/local/*ssh*",
    "/opt/*ssh*",
    "/opt/*SSH*",
)

_OPENSSH_VERSION_PATTERN: Final[re.Pattern[str]] = re.compile(r"^(OpenSSH[_\-](\d+)\.\d+(?:p\d+)?)", re.MULTILINE)

_BINARY_SNIFF_SIZE: Final[int] = 512

# Bytes that commonly appear in text files besides printable ASCII
_TEXT_CONTROL_BYTES: Final[frozenset[int]] = frozenset(b"\t\n\r\f\b\x1b")

# Above this share of non-text bytes a file is considered binary
_BINARY_RATIO_THRESHOLD: Final[float] = 0.3


def build_default_search_path(environ_path: str | None = None) -> tuple[Path, ...]:
    """Return PATH followed by bin/sbin under well-known installation roots.

    Directories that don't exist are dropped and duplicates are removed, keeping
    the first occurrence.
    """
    path_text = os.environ.get("PATH", "") if environ_path is None else environ_path
    candidates: list[Path] = [Path(entry) for entry in path_text.split(os.pathsep) if entry]
    for pattern in _EXTRA_ROOT_PATTERNS:
        for root in sorted(glob(os.path.expanduser(pattern))):
            root_path = Path(root).absolute()
            candidates.append(root_path / "bin")
            candidates.append(root_path / "sbin")

    search_path: list[Path] = []
    for candidate in candidates:
        if candidate.is_dir() and candidate not in search_path:
            search_path.append(candidate)
    return tuple(search_path)


@deal.has()
def looks_like_binary(head: bytes) -> bool:
    """Guess whether the leading bytes of a file belong to a binary rather than a text file.

    Scripts (anything starting with a shebang) and empty files count as text.
    """
    if not head or head.startswith(b"#!"):
        return False
    if b"\x00" in head:
        return True
    non_text_count = sum(1 for byte in head if not (32 <= byte < 127 or byte in _TEXT_CONTROL_BYTES))
    return non_text_count / len(head) > _BINARY_RATIO_THRESHOLD


@deal.has()
def parse_openssh_version(output: str) -> tuple[str, int] | None:
    """Find an OpenSSH version signature in command output.

    Returns (full version string, major version), or None if there is none.
    """
    match = _OPENSSH_VERSION_PATTERN.search(output)
    if match is None:
        return None
    return match.group(1), int(match.group(2))


def is_binary_file(path: Path) -> bool:
    with path.open("rb") as f:
        return looks_like_binary(f.read(_BINARY_SNIFF_SIZE))


class ExecutableResolver:
    """Finds executables along a search path and caches what it finds.

    Later calls for a command that has already been resolved return the cached
    path without searching again. Failed lookups are not cached.
    """

    def __init__(self, search_path: Sequence[Path], timeout: float) -> None:
        self._search_path = tuple(search_path)
        self._timeout = timeout
        self._resolved: dict[str, Path] = {}

    @property
    def search_path(self) -> tuple[Path, ...]:
        return self._search_path

    def get_cached(self, command_name: str) -> Path | None:
        return self._resolved.get(command_name)

    def _get_effective_search_path(self) -> list[Path]:
        # Tools shipped with an already selected ssh client are preferred, so the
        # client, server and keygen come from the same installation
        search_path = list(self._search_path)
        ssh_path = self._resolved.get(SSH_COMMAND)
        if ssh_path is not None:
            ssh_dir = ssh_path.parent
            search_path = [ssh_dir, ssh_dir.parent / "sbin", *search_path]
        return search_path

    def find_candidates(self, command_name: str) -> list[Path]:
        """Return every qualifying candidate for a command, in search order."""
        search_path = self._get_effective_search_path()
        logger.debug("Resolving command '{}'; search path is {}", command_name, os.pathsep.join(map(str, search_path)))
        candidates: list[Path] = []
        for directory in search_path:
            candidate = directory / command_name
            if not candidate.is_file():
                continue
            resolved = candidate.resolve()
            if resolved in candidates:
                continue
            logger.trace("Candidate found at {}", candidate)
            if not os.access(candidate, os.X_OK):
                logger.debug("File {} is not executable", candidate)
                continue
            try:
                is_binary = is_binary_file(candidate)
            except OSError as e:
                logger.debug("Unable to read {}: {}", candidate, e)
                continue
            if not is_binary:
                logger.debug("File {} looks like a wrapper, ignoring it", candidate)
                continue
            candidates.append(resolved)
        return candidates

    def _read_version(self, executable: Path, version_flag: str) -> tuple[str, int] | None:
        logger.debug("Checking version of '{}'", executable)
        try:
            completed = subprocess.run(
                [str(executable), version_flag],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.debug("Version check of '{}' timed out after {}s", executable, self._timeout)
            return None
        except OSError as e:
            logger.debug("Version check of '{}' failed: {}", executable, e)
            return None
        return parse_openssh_version(completed.stdout.decode("utf-8", errors="replace"))

    def resolve(
        self,
        command_name: str,
        min_version: int | None = None,
        version_flag: str = SSH_VERSION_FLAG,
    ) -> Path:
        """Return the path of the first acceptable executable for command_name.

        Raises ExecutableNotFoundError if no candidate qualifies.
        """
        cached = self._resolved.get(command_name)
        if cached is not None:
            return cached

        selected: Path | None = None
        for candidate in self.find_candidates(command_name):
            if min_version is None:
                selected = candidate
                break
            version = self._read_version(candidate, version_flag)
            if version is None:
                logger.debug("No OpenSSH version reported by '{}'", candidate)
                continue
            version_text, major_version = version
            if major_version >= min_version:
                logger.debug("Executable version is {}, selecting it", version_text)
                selected = candidate
                break
            logger.debug("Executable is too old ({}), {}.x required", version_text, min_version)

        if selected is None:
            error = ExecutableNotFoundError(command_name, min_version)
            logger.warning("{}", error)
            raise error

        logger.debug("Command '{}' resolved as '{}'", command_name, selected)
        self._resolved[command_name] = selected
        return selected

    def resolve_ssh(self) -> Path:
        return self.resolve(SSH_COMMAND, MIN_OPENSSH_MAJOR_VERSION, SSH_VERSION_FLAG)

    def resolve_sshd(self) -> Path:
        return self.resolve(SSHD_COMMAND, MIN_OPENSSH_MAJOR_VERSION, SSHD_VERSION_FLAG)

    def resolve_ssh_keygen(self) -> Path:
        return self.resolve(SSH_KEYGEN_COMMAND)
