import time

from imbue.sshd_fixture.polling import poll_until


def test_poll_until_returns_true_when_condition_met() -> None:
    """poll_until should return True when condition is met immediately."""
    assert poll_until(lambda: True, timeout=1.0) is True


def test_poll_until_returns_false_on_timeout() -> None:
    """poll_until should return False when timeout expires without condition being met."""
    assert poll_until(lambda: False, timeout=0.3, poll_interval=0.1) is False


def test_poll_until_evaluates_condition_with_zero_timeout() -> None:
    calls: list[int] = []

    def condition() -> bool:
        calls.append(1)
        return True

    assert poll_until(condition, timeout=0.0) is True
    assert len(calls) == 1


def test_poll_until_polls_until_condition_met() -> None:
    """poll_until should keep polling until the condition turns true."""
    start = time.monotonic()

    result = poll_until(lambda: time.monotonic() - start > 0.15, timeout=2.0, poll_interval=0.05)

    elapsed = time.monotonic() - start
    assert result is True
    assert 0.15 < elapsed < 1.5
