from collections.abc import Sequence

from loguru import logger

from imbue.sshd_fixture.logging import attach_log_sink
from imbue.sshd_fixture.logging import log_span


def test_attach_log_sink_forwards_package_records() -> None:
    received: list[tuple[str, ...]] = []

    with attach_log_sink(lambda fields: received.append(tuple(fields))):
        with log_span("Starting backend {}", "EPHEMERAL_DAEMON"):
            pass

    assert ("DEBUG", "Starting backend EPHEMERAL_DAEMON") in received


def test_attach_log_sink_ignores_other_modules() -> None:
    received: list[Sequence[str]] = []

    with attach_log_sink(received.append):
        logger.patch(lambda record: record.update(name="some.other.library")).info("unrelated")

    assert received == []


def test_attach_log_sink_detaches_after_block() -> None:
    received: list[Sequence[str]] = []

    with attach_log_sink(received.append):
        pass
    with log_span("after"):
        pass

    assert received == []


def test_attach_log_sink_survives_failing_sink() -> None:
    def failing_sink(fields: Sequence[str]) -> None:
        raise RuntimeError("sink is broken")

    with attach_log_sink(failing_sink):
        with log_span("still running"):
            pass


def test_attach_log_sink_accepts_no_sink() -> None:
    with attach_log_sink(None):
        with log_span("no sink"):
            pass


def test_log_span_reraises_exceptions() -> None:
    received: list[Sequence[str]] = []

    try:
        with attach_log_sink(received.append, level="TRACE"):
            with log_span("failing step"):
                raise ValueError("boom")
    except ValueError:
        pass
    else:
        raise AssertionError("log_span swallowed the exception")

    messages = [fields[1] for fields in received]
    assert messages[0] == "failing step"
    assert "failing step [failed after" in messages[-1]
