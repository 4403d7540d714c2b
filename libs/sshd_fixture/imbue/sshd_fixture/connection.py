"""Connection parameters for an SSH endpoint and their ssh:// URI form.

The URI syntax is:

    ssh://<user>[;private_key_path=<path> | :<password>]@<host>:<port>

The user-info segment carries the credential of the chosen authentication
method. Reserved characters inside user-info values are percent-encoded.
"""

from pathlib import Path
from typing import Final
from typing import Self
from urllib.parse import quote
from urllib.parse import unquote

import deal
from pydantic import Field
from pydantic import model_validator

from imbue.sshd_fixture.base_models import FrozenModel
from imbue.sshd_fixture.errors import InvalidConnectionUriError
from imbue.sshd_fixture.logging import REDACTED_SECRET
from imbue.sshd_fixture.primitives import AuthMethod
from imbue.sshd_fixture.primitives import Port
from imbue.sshd_fixture.primitives import Username

SSH_SCHEME: Final[str] = "ssh"

DEFAULT_SSH_PORT: Final[Port] = Port(22)

_KEY_PATH_PARAM: Final[str] = "private_key_path"

# Older URIs spell the key parameter this way
_LEGACY_KEY_PATH_PARAM: Final[str] = "key_path"

# Characters left unescaped in user-info values; everything else that could be
# confused with a URI delimiter (:, ;, @, %, ...) is percent-encoded
_SAFE_PASSWORD_CHARS: Final[str] = "!$&'()*+,=-._~"
_SAFE_PATH_CHARS: Final[str] = _SAFE_PASSWORD_CHARS + "/"


class ConnectionParams(FrozenModel):
    """Everything a client needs to open an SSH session."""

    host: str = Field(min_length=1, description="Hostname or IP address of the SSH server")
    port: Port = Field(default=DEFAULT_SSH_PORT, description="TCP port of the SSH server")
    username: Username = Field(description="Login name on the SSH server")
    auth_method: AuthMethod = Field(description="How the client authenticates")
    private_key_path: Path | None = Field(default=None, description="Private key file, for public key auth")
    password: str | None = Field(default=None, description="Password, for password auth")

    @model_validator(mode="after")
    def _check_credential_matches_auth_method(self) -> Self:
        match self.auth_method:
            case AuthMethod.PUBLICKEY:
                if self.private_key_path is None or self.password is not None:
                    raise ValueError("Public key authentication requires a private key path and no password")
            case AuthMethod.PASSWORD:
                if self.password is None or self.private_key_path is not None:
                    raise ValueError("Password authentication requires a password and no private key path")
        return self

    @classmethod
    def with_key(cls, host: str, port: int, username: str, private_key_path: Path) -> Self:
        return cls(
            host=host,
            port=Port(port),
            username=Username(username),
            auth_method=AuthMethod.PUBLICKEY,
            private_key_path=private_key_path,
        )

    @classmethod
    def with_password(cls, host: str, port: int, username: str, password: str) -> Self:
        return cls(
            host=host,
            port=Port(port),
            username=Username(username),
            auth_method=AuthMethod.PASSWORD,
            password=password,
        )

    @property
    def credential_display(self) -> str:
        """The credential in a form safe to log."""
        if self.auth_method == AuthMethod.PASSWORD:
            return REDACTED_SECRET
        return str(self.private_key_path)

    def to_uri(self, is_password_hidden: bool = False) -> str:
        return format_connection_uri(self, is_password_hidden=is_password_hidden)

    def as_dict(self) -> dict[str, str | int]:
        """Return host, port, user and the credential for the auth method, keyed like client options."""
        params: dict[str, str | int] = {
            "host": self.host,
            "port": int(self.port),
            "user": str(self.username),
        }
        if self.auth_method == AuthMethod.PASSWORD:
            assert self.password is not None
            params["password"] = self.password
        else:
            params["key_path"] = str(self.private_key_path)
        return params


@deal.has()
def _format_host(host: str) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


@deal.has()
def format_connection_uri(params: ConnectionParams, is_password_hidden: bool = False) -> str:
    """Render connection parameters as an ssh:// URI.

    With is_password_hidden, the password is replaced by a fixed placeholder so
    the URI can be logged or displayed.
    """
    user_info = quote(str(params.username), safe=_SAFE_PASSWORD_CHARS)
    match params.auth_method:
        case AuthMethod.PASSWORD:
            assert params.password is not None
            secret = REDACTED_SECRET if is_password_hidden else quote(params.password, safe=_SAFE_PASSWORD_CHARS)
            user_info = f"{user_info}:{secret}"
        case AuthMethod.PUBLICKEY:
            key_path = quote(str(params.private_key_path), safe=_SAFE_PATH_CHARS)
            user_info = f"{user_info};{_KEY_PATH_PARAM}={key_path}"
    return f"{SSH_SCHEME}://{user_info}@{_format_host(params.host)}:{int(params.port)}"


class ParsedConnectionUri(FrozenModel):
    """The pieces of an ssh:// URI; any of them may be absent."""

    host: str | None = None
    port: Port | None = None
    username: str | None = None
    password: str | None = None
    private_key_path: Path | None = None


@deal.has()
def _split_host_port(uri: str, host_port: str) -> tuple[str | None, Port | None]:
    if not host_port:
        return None, None
    if host_port.startswith("["):
        closing = host_port.find("]")
        if closing == -1:
            raise InvalidConnectionUriError(uri, "unterminated IPv6 address")
        host = host_port[1:closing]
        rest = host_port[closing + 1 :]
        if rest and not rest.startswith(":"):
            raise InvalidConnectionUriError(uri, "unexpected text after IPv6 address")
        port_text = rest[1:] if rest else ""
    elif host_port.count(":") == 1:
        host, port_text = host_port.split(":", 1)
    else:
        host, port_text = host_port, ""

    port: Port | None = None
    if port_text:
        if not port_text.isdigit():
            raise InvalidConnectionUriError(uri, f"port '{port_text}' is not a number")
        try:
            port = Port(int(port_text))
        except ValueError as e:
            raise InvalidConnectionUriError(uri, str(e)) from e
    return (host or None), port


@deal.has()
def parse_connection_uri(uri: str) -> ParsedConnectionUri:
    """Parse an ssh:// URI into its parts.

    A URI without a scheme is taken to be an ssh URI. Any other scheme is rejected.
    """
    text = uri.strip()
    if "://" in text:
        scheme, rest = text.split("://", 1)
        if scheme.lower() != SSH_SCHEME:
            raise InvalidConnectionUriError(uri, f"not a ssh URI (scheme '{scheme}')")
    else:
        rest = text

    # Drop any path, query or fragment
    for delimiter in ("/", "?", "#"):
        index = rest.find(delimiter)
        if index != -1 and "@" not in rest[index:]:
            rest = rest[:index]

    if "@" in rest:
        user_info, host_port = rest.rsplit("@", 1)
    else:
        user_info, host_port = "", rest

    host, port = _split_host_port(uri, host_port)
    if host is None:
        raise InvalidConnectionUriError(uri, "no host given")

    username: str | None = None
    password: str | None = None
    private_key_path: Path | None = None
    if user_info:
        if ";" in user_info:
            user_text, params_text = user_info.split(";", 1)
            for param in params_text.split(";"):
                name, _, value = param.partition("=")
                if name in (_KEY_PATH_PARAM, _LEGACY_KEY_PATH_PARAM) and value:
                    private_key_path = Path(unquote(value))
        elif ":" in user_info:
            user_text, password_text = user_info.split(":", 1)
            password = unquote(password_text)
        else:
            user_text = user_info
        username = unquote(user_text) or None

    return ParsedConnectionUri(
        host=host,
        port=port,
        username=username,
        password=password,
        private_key_path=private_key_path,
    )
