from enum import StrEnum
from enum import auto
from typing import Any
from typing import Self

from pydantic import GetCoreSchemaHandler
from pydantic_core import CoreSchema
from pydantic_core import core_schema


class UpperCaseStrEnum(StrEnum):
    """A StrEnum that automatically converts enum member names to uppercase values."""

    @staticmethod
    def _generate_next_value_(
        name: str,
        start: int,
        count: int,
        last_values: list[str],
    ) -> str:
        return name.upper()


# === Enums ===


class AuthMethod(UpperCaseStrEnum):
    """How a client authenticates against an SSH server."""

    PUBLICKEY = auto()
    PASSWORD = auto()


class BackendName(UpperCaseStrEnum):
    """Strategies for obtaining a usable SSH endpoint, in default trial order."""

    EXPLICIT_REMOTE = auto()
    LOCAL_DAEMON = auto()
    EPHEMERAL_DAEMON = auto()


class DaemonState(UpperCaseStrEnum):
    """Lifecycle of a supervised sshd instance."""

    UNCONFIGURED = auto()
    CONFIGURED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()


class ProbeFailureReason(UpperCaseStrEnum):
    """Why a connectivity probe did not succeed."""

    NONZERO_EXIT = auto()
    TIMEOUT = auto()
    SPAWN_FAILED = auto()
    UNSUPPORTED_PLATFORM = auto()
    SERVER_NOT_RUNNING = auto()


class PromptWatcherState(UpperCaseStrEnum):
    """States of the password prompt watcher."""

    AWAITING_PROMPT = auto()
    PASSWORD_SENT = auto()


# === Validated scalars ===


class NonEmptyStr(str):
    """A string that cannot be empty or whitespace-only."""

    def __new__(cls, value: str) -> Self:
        if not value or not value.strip():
            raise ValueError(f"{cls.__name__} cannot be empty")
        return super().__new__(cls, value.strip())

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.str_schema(min_length=1),
            serialization=core_schema.to_string_ser_schema(),
        )


class Username(NonEmptyStr):
    """A login name on the SSH server."""


class Port(int):
    """A TCP port number."""

    def __new__(cls, value: int) -> Self:
        if not (1 <= value <= 65535):
            raise ValueError(f"Port must be between 1 and 65535, got {value}")
        return super().__new__(cls, value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.int_schema(ge=1, le=65535),
        )


class PositiveFloat(float):
    """A float that must be > 0."""

    def __new__(cls, value: float) -> Self:
        if value <= 0:
            raise ValueError(f"{cls.__name__} must be > 0, got {value}")
        return super().__new__(cls, value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.float_schema(gt=0),
        )
