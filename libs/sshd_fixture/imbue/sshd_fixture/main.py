import json
import time
from functools import partial
from pathlib import Path
from typing import Any

import click
from loguru import logger

from imbue.sshd_fixture.config.loader import load_config
from imbue.sshd_fixture.errors import BaseSshdFixtureError
from imbue.sshd_fixture.errors import ExecutableNotFoundError
from imbue.sshd_fixture.executables import ExecutableResolver
from imbue.sshd_fixture.executables import SSH_VERSION_FLAG
from imbue.sshd_fixture.executables import build_default_search_path
from imbue.sshd_fixture.logging import REDACTED_SECRET
from imbue.sshd_fixture.logging import setup_logging
from imbue.sshd_fixture.primitives import BackendName
from imbue.sshd_fixture.selector import open_server

_HOLD_POLL_SECONDS = 1.0


@click.group()
@click.option("--log-level", default="WARNING", show_default=True, help="Log level for messages written to stderr")
def main(log_level: str) -> None:
    """Provision SSH servers for tests."""
    handler_id = setup_logging(log_level)
    click.get_current_context().call_on_close(partial(logger.remove, handler_id))


@main.command()
@click.option(
    "--backend",
    "backend_names",
    multiple=True,
    type=click.Choice([name.value for name in BackendName], case_sensitive=False),
    help="Backend to try; repeat to give several, in order (default: all)",
)
@click.option("--timeout", type=float, default=None, help="Seconds allowed for each external command")
@click.option("--private-dir", type=click.Path(path_type=Path), default=None, help="Directory for keys and run files")
@click.option("--uri", "requested_uri", default=None, help="URI of an SSH server to use instead of provisioning one")
@click.option("--json", "is_json", is_flag=True, help="Print the connection parameters as JSON")
@click.option("--show-password", is_flag=True, help="Print the password instead of hiding it")
@click.option("--hold", is_flag=True, help="Keep the server until interrupted")
def acquire(
    backend_names: tuple[str, ...],
    timeout: float | None,
    private_dir: Path | None,
    requested_uri: str | None,
    is_json: bool,
    show_password: bool,
    hold: bool,
) -> None:
    """Acquire an SSH server and print how to connect to it."""
    overrides: dict[str, Any] = {}
    if backend_names:
        overrides["backends"] = tuple(BackendName(name.upper()) for name in backend_names)
    if timeout is not None:
        overrides["timeout"] = timeout
    if private_dir is not None:
        overrides["private_dir"] = private_dir
    if requested_uri is not None:
        overrides["requested_uri"] = requested_uri

    try:
        config = load_config(**overrides)
        with open_server(config) as handle:
            if is_json:
                params = handle.connection_params()
                if "password" in params and not show_password:
                    params["password"] = REDACTED_SECRET
                click.echo(json.dumps(params, sort_keys=True))
            else:
                click.echo(handle.uri(is_password_hidden=not show_password))
            if hold:
                click.echo("Press Ctrl-C to stop", err=True)
                try:
                    while True:
                        time.sleep(_HOLD_POLL_SECONDS)
                except KeyboardInterrupt:
                    pass
    except BaseSshdFixtureError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.argument("command_name")
@click.option("--min-version", type=int, default=None, help="Minimum OpenSSH major version")
@click.option("--version-flag", default=SSH_VERSION_FLAG, show_default=True, help="Flag that makes the command print its version")
@click.option(
    "--search-path",
    "search_dirs",
    multiple=True,
    type=click.Path(path_type=Path),
    help="Directory to search; repeat to give several (default: PATH and well-known locations)",
)
@click.option("--timeout", type=float, default=10.0, show_default=True, help="Seconds allowed for the version check")
def resolve(
    command_name: str,
    min_version: int | None,
    version_flag: str,
    search_dirs: tuple[Path, ...],
    timeout: float,
) -> None:
    """Print the path an executable resolves to."""
    search_path = search_dirs if search_dirs else build_default_search_path()
    resolver = ExecutableResolver(search_path, timeout)
    try:
        path = resolver.resolve(command_name, min_version=min_version, version_flag=version_flag)
    except ExecutableNotFoundError as e:
        raise click.ClickException(str(e)) from e
    click.echo(str(path))


if __name__ == "__main__":
    main()
