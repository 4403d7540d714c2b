import os
import random
import re
import subprocess
from pathlib import Path
from typing import Final

from loguru import logger
from pydantic import Field

from imbue.sshd_fixture.base_models import FrozenModel
from imbue.sshd_fixture.errors import KeyGenerationError
from imbue.sshd_fixture.paths import HOST_KEY_NAME
from imbue.sshd_fixture.paths import USER_KEY_NAME
from imbue.sshd_fixture.paths import ensure_private_dir

# ed25519 keys have a fixed size, so no -b argument is passed
KEY_ALGORITHM: Final[str] = "ed25519"

_PRIVATE_KEY_HEADER_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bBEGIN\b.*\bPRIVATE\s+KEY\b")


class KeyPair(FrozenModel):
    """A private key file and its .pub companion."""

    private_key_path: Path = Field(description="Path of the private key file")

    @property
    def public_key_path(self) -> Path:
        return public_key_path_for(self.private_key_path)

    def is_valid(self) -> bool:
        """A pair is only usable when both files exist."""
        return self.private_key_path.is_file() and self.public_key_path.is_file()


class DaemonKeyMaterial(FrozenModel):
    """The keys an ephemeral sshd needs: its host key and the key clients log in with."""

    host_key: KeyPair = Field(description="Host key presented by the server")
    user_key: KeyPair = Field(description="Key authorized to log in")


def public_key_path_for(private_key_path: Path) -> Path:
    return private_key_path.with_name(private_key_path.name + ".pub")


def _remove_if_present(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Unable to remove partial key file '{}': {}", path, e)


def ensure_key_pair(key_path: Path, keygen_path: Path, timeout: float) -> KeyPair:
    """Make sure key_path and key_path.pub exist, generating them if needed.

    An existing pair is reused as-is. New keys are generated under a randomized
    temporary name and renamed into place only once both files were produced, so
    concurrent runs sharing the directory never see a half-written pair.
    """
    key_pair = KeyPair(private_key_path=key_path)
    if key_pair.is_valid():
        return key_pair

    logger.debug("Generating key '{}'", key_path)
    temp_path = key_path.with_name(f"{key_path.name}.{os.getpid()}.{random.randrange(10_000_000)}")
    temp_public_path = public_key_path_for(temp_path)
    command = [
        str(keygen_path),
        "-q",
        "-t",
        KEY_ALGORITHM,
        "-N",
        "",
        "-f",
        str(temp_path),
    ]
    try:
        try:
            completed = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise KeyGenerationError(key_path, f"ssh-keygen timed out after {timeout}s") from e
        except OSError as e:
            raise KeyGenerationError(key_path, f"unable to run '{keygen_path}': {e}") from e

        if completed.returncode != 0:
            output = completed.stdout.decode("utf-8", errors="replace").strip()
            raise KeyGenerationError(key_path, f"ssh-keygen exited with code {completed.returncode}: {output}")
        if not (temp_path.is_file() and temp_public_path.is_file()):
            raise KeyGenerationError(key_path, "ssh-keygen did not produce both key files")

        try:
            os.replace(temp_path, key_path)
            os.replace(temp_public_path, key_pair.public_key_path)
        except OSError as e:
            raise KeyGenerationError(key_path, f"unable to move generated key into place: {e}") from e
    except KeyGenerationError as e:
        _remove_if_present(temp_path)
        _remove_if_present(temp_public_path)
        logger.error("{}", e)
        raise

    logger.debug("Key '{}' generated", key_path)
    return key_pair


def provision_daemon_keys(keys_dir: Path, keygen_path: Path, timeout: float) -> DaemonKeyMaterial:
    """Ensure the user and host keys of the ephemeral daemon exist in keys_dir."""
    ensure_private_dir(keys_dir)
    user_key = ensure_key_pair(keys_dir / USER_KEY_NAME, keygen_path, timeout)
    host_key = ensure_key_pair(keys_dir / HOST_KEY_NAME, keygen_path, timeout)
    return DaemonKeyMaterial(host_key=host_key, user_key=user_key)


def is_private_key_file(path: Path) -> bool:
    """Check whether the first line of a file is a private key header."""
    try:
        with path.open("r", encoding="utf-8", errors="replace") as f:
            first_line = f.readline()
    except OSError:
        return False
    return _PRIVATE_KEY_HEADER_PATTERN.search(first_line) is not None


def discover_user_private_keys(ssh_dir: Path) -> tuple[Path, ...]:
    """Return the private keys found directly inside ssh_dir, in listing order."""
    if not ssh_dir.is_dir():
        return ()
    return tuple(path for path in sorted(ssh_dir.iterdir()) if path.is_file() and is_private_key_file(path))
