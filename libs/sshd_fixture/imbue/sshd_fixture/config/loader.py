import getpass
import os
import pwd
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from loguru import logger

from imbue.sshd_fixture.config.data_types import PRIVATE_DIR_NAME
from imbue.sshd_fixture.config.data_types import SshdFixtureConfig
from imbue.sshd_fixture.config.data_types import TARGET_URI_ENV_VAR
from imbue.sshd_fixture.errors import UnknownUserError
from imbue.sshd_fixture.executables import build_default_search_path
from imbue.sshd_fixture.keys import discover_user_private_keys
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.primitives import Username


def get_default_username() -> Username:
    """Return the login name of the effective user.

    sshd only lets real accounts in, so the password database wins over
    environment variables such as USER.
    """
    try:
        return Username(pwd.getpwuid(os.geteuid()).pw_name)
    except KeyError:
        logger.debug("No password database entry for uid {}", os.geteuid())
    try:
        return Username(getpass.getuser())
    except (OSError, KeyError, ValueError) as e:
        raise UnknownUserError("Unable to determine the name of the current user") from e


def get_default_private_dir() -> Path:
    """Return ~/.libtest-ssh, or a directory under the system temp dir when there is no home."""
    try:
        return Path.home() / PRIVATE_DIR_NAME
    except RuntimeError:
        private_dir = Path(tempfile.gettempdir()) / f"libtest-ssh-{os.geteuid()}"
        logger.debug("Home directory unknown, using '{}' as private directory", private_dir)
        return private_dir


def get_default_ssh_dir() -> Path | None:
    try:
        return Path.home() / ".ssh"
    except RuntimeError:
        return None


def load_config(environ: Mapping[str, str] | None = None, **overrides: Any) -> SshdFixtureConfig:
    """Build the configuration from defaults, the environment and explicit overrides.

    Explicit overrides win over defaults. When TEST_SSH_TARGET is set, it
    becomes the requested URI, the explicit remote backend is the only one
    tried and no server is ever started.
    """
    env = os.environ if environ is None else environ

    values: dict[str, Any] = dict(overrides)
    if "username" not in values:
        values["username"] = get_default_username()
    if "search_path" not in values:
        values["search_path"] = build_default_search_path(env.get("PATH", ""))
    if "user_keys" not in values:
        ssh_dir = get_default_ssh_dir()
        values["user_keys"] = discover_user_private_keys(ssh_dir) if ssh_dir is not None else ()
    if "private_dir" not in values:
        values["private_dir"] = get_default_private_dir()

    target_uri = env.get(TARGET_URI_ENV_VAR)
    if target_uri:
        logger.debug("{} is set, only the requested SSH server will be used", TARGET_URI_ENV_VAR)
        values["requested_uri"] = target_uri
        values["backends"] = (BackendName.EXPLICIT_REMOTE,)
        values["is_server_backend_enabled"] = False

    return SshdFixtureConfig(**values)
