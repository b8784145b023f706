from unittest.mock import Mock, call

import pytest

from ec2_gha_provision.errors import (
    ContentionTimeoutError,
    ConfigureError,
    InstallError,
    PreconditionError,
    RetriesExhausted,
)
from ec2_gha_provision.retry import BackoffRetryExecutor, backoff_delay


@pytest.mark.parametrize("attempt, expected", [
    (0, 30),
    (1, 60),
    (2, 120),
    (3, 240),
    (4, 300),
    (10, 300),
])
def test_backoff_delay(attempt, expected):
    assert backoff_delay(attempt, 30) == expected


def test_backoff_delay_bounds():
    for base in (0, 1, 5, 30, 500):
        for attempt in range(8):
            delay = backoff_delay(attempt, base, 300)
            assert 0 <= delay <= 300
            assert delay == min(base * 2 ** attempt, 300)
    assert backoff_delay(0, -5) == 0


def flaky(failures, error=InstallError("apt-get failed", 100)):
    """Work that raises ``error`` ``failures`` times, then returns 'done'."""
    work = Mock(side_effect=[error] * failures + ["done"])
    return work


def test_first_attempt_success_does_not_sleep(clock):
    executor = BackoffRetryExecutor(clock=clock)
    result = executor.run(flaky(0), max_retries=3, base_delay=30)
    assert result.value == "done"
    assert result.attempts == 1
    assert result.retries == 0
    assert clock.sleeps == []


def test_delays_double_between_attempts(clock):
    executor = BackoffRetryExecutor(clock=clock)
    result = executor.run(flaky(3), max_retries=3, base_delay=5)
    assert result.attempts == 4
    assert clock.sleeps == [5, 10, 20]


def test_delays_are_capped(clock):
    executor = BackoffRetryExecutor(clock=clock)
    executor.run(flaky(3), max_retries=3, base_delay=100, max_delay=150)
    assert clock.sleeps == [100, 150, 150]


def test_exhausted_retries_report_attempts(clock):
    error = InstallError("apt-get failed", 100)
    work = Mock(side_effect=error)
    executor = BackoffRetryExecutor(clock=clock)

    with pytest.raises(RetriesExhausted) as exc_info:
        executor.run(work, max_retries=2, base_delay=1)

    assert exc_info.value.attempts == 3
    assert exc_info.value.last_error is error
    assert exc_info.value.hint == error.hint
    assert "after 3 attempts" in exc_info.value.message
    assert work.call_count == 3
    assert clock.sleeps == [1, 2]


def test_zero_retries_runs_once(clock):
    work = Mock(side_effect=InstallError("boom"))
    with pytest.raises(RetriesExhausted):
        BackoffRetryExecutor(clock=clock).run(work, max_retries=0, base_delay=10)
    assert work.call_count == 1
    assert clock.sleeps == []


def test_non_retriable_error_propagates_immediately(clock):
    work = Mock(side_effect=PreconditionError("no token"))
    with pytest.raises(PreconditionError):
        BackoffRetryExecutor(clock=clock).run(work, max_retries=3, base_delay=10)
    assert work.call_count == 1
    assert clock.sleeps == []


def test_should_retry_can_refuse(clock):
    work = Mock(side_effect=ConfigureError("bad labels", 1, token_expired=False))
    with pytest.raises(ConfigureError):
        BackoffRetryExecutor(clock=clock).run(
            work, max_retries=1, base_delay=5, should_retry=lambda exc: exc.token_expired
        )
    assert work.call_count == 1


def test_contention_checked_before_each_retry(clock):
    monitor = Mock()
    monitor.wait_until_free.return_value = True
    executor = BackoffRetryExecutor(monitor, clock, contention_timeout=120, contention_interval=5)

    executor.run(flaky(2), max_retries=3, base_delay=30)

    assert monitor.wait_until_free.call_args_list == [call(120, 5), call(120, 5)]


def test_contention_timeout_is_soft_and_backoff_still_applies(clock):
    monitor = Mock()
    monitor.wait_until_free.return_value = False
    warnings = []
    executor = BackoffRetryExecutor(monitor, clock, on_warning=warnings.append)

    result = executor.run(flaky(1), max_retries=3, base_delay=30)

    assert result.attempts == 2
    assert len(warnings) == 1
    assert isinstance(warnings[0], ContentionTimeoutError)
    assert clock.sleeps == [30]


def test_progress_events_for_backoff(clock):
    events = []
    executor = BackoffRetryExecutor(clock=clock, on_progress=events.append)
    executor.run(flaky(1), max_retries=1, base_delay=7, description="deps")
    assert [(e.source, e.timeout) for e in events] == [("backoff", 7)]
