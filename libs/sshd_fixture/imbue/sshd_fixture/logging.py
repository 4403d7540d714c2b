import sys
import time
from collections.abc import Callable
from collections.abc import Iterator
from collections.abc import Sequence
from contextlib import contextmanager
from typing import Any
from typing import Final

from loguru import logger

# Log records emitted from modules under this prefix are forwarded to injected sinks
_PACKAGE_PREFIX: Final[str] = "imbue.sshd_fixture"

REDACTED_SECRET: Final[str] = "*****"

LogSink = Callable[[Sequence[str]], None]


def setup_logging(level: str = "INFO") -> int:
    """Configure loguru logging with the specified level. Returns the id of the stderr handler."""
    logger.remove()
    return logger.add(
        sys.stderr,
        level=level.upper(),
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )


def _is_package_record(record: Any) -> bool:
    name = record["name"] or ""
    return name == _PACKAGE_PREFIX or name.startswith(_PACKAGE_PREFIX + ".")


@contextmanager
def attach_log_sink(sink: LogSink | None, level: str = "DEBUG") -> Iterator[None]:
    """Forward this package's log records to an injected sink while the block runs.

    The sink receives a sequence of string fields: the level name and the message.
    Its return value is ignored, and an exception raised by the sink is reported
    by loguru rather than propagated into provisioning code.
    """
    if sink is None:
        yield
        return

    def _forward(message: Any) -> None:
        record = message.record
        sink((record["level"].name, record["message"]))

    handler_id = logger.add(_forward, level=level, format="{message}", filter=_is_package_record, catch=True)
    try:
        yield
    finally:
        logger.remove(handler_id)


@contextmanager
def log_span(message: str, *args: Any, **context: Any) -> Iterator[None]:
    """Context manager that logs a debug message on entry and a trace message with timing on exit.

    Keyword arguments are passed to logger.contextualize so that all log messages
    within the span include the extra context fields.
    """
    with logger.contextualize(**context):
        logger.debug(message, *args)
        start_time = time.monotonic()
        try:
            yield
        except BaseException:
            elapsed = time.monotonic() - start_time
            logger.trace(message + " [failed after {:.5f} sec]", *args, elapsed)
            raise
        else:
            elapsed = time.monotonic() - start_time
            logger.trace(message + " [done in {:.5f} sec]", *args, elapsed)
