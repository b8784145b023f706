"""Retry with exponential backoff around contended remote steps."""
import logging
from dataclasses import dataclass
from typing import Any

from ec2_gha_provision import defaults
from ec2_gha_provision.clock import SYSTEM_CLOCK, Clock, ProgressEvent
from ec2_gha_provision.contention import LockContentionMonitor
from ec2_gha_provision.errors import ContentionTimeoutError, ProvisioningError, RetriesExhausted
from ec2_gha_provision.log import StepLogger


def backoff_delay(attempt: int, base_delay: float, max_delay: float = defaults.MAX_DELAY) -> float:
    """Delay after the failure of 0-indexed ``attempt``: ``min(base * 2**attempt, max)``."""
    return max(0, min(base_delay * (2 ** attempt), max_delay))


@dataclass(frozen=True)
class RetryResult:
    """Value returned by the successful attempt and how many attempts it took."""

    value: Any
    attempts: int

    @property
    def retries(self) -> int:
        return self.attempts - 1


class BackoffRetryExecutor:
    """Runs a unit of work until it succeeds or the retry budget is spent.

    Between attempts the executor first waits for package-manager contention
    to clear (bounded by ``contention_timeout``), then sleeps the backoff
    delay regardless of how the contention wait ended.

    Parameters
    ----------
    monitor : LockContentionMonitor, optional
        Consulted before every retry. Without one the contention wait is skipped.
    clock : Clock
        Time source.
    contention_timeout : float
        Upper bound on each contention wait.
    contention_interval : float
        Seconds between contention checks.
    logger : StepLogger, optional
    on_warning : callable, optional
        Receives soft errors such as :class:`ContentionTimeoutError`.
    on_progress : callable, optional
        Receives a :class:`ProgressEvent` for each backoff sleep.

    """

    def __init__(self, monitor: LockContentionMonitor = None, clock: Clock = SYSTEM_CLOCK,
                 contention_timeout: float = defaults.CONTENTION_TIMEOUT,
                 contention_interval: float = defaults.CONTENTION_INTERVAL,
                 logger: StepLogger = None, on_warning=None, on_progress=None):
        self.monitor = monitor
        self.clock = clock
        self.contention_timeout = contention_timeout
        self.contention_interval = contention_interval
        self.logger = logger or StepLogger(logging.getLogger(__name__))
        self.on_warning = on_warning
        self.on_progress = on_progress

    def run(self, work, max_retries: int, base_delay: float,
            max_delay: float = defaults.MAX_DELAY, should_retry=None,
            description: str = "step") -> RetryResult:
        """Run ``work`` up to ``max_retries + 1`` times.

        Parameters
        ----------
        work : callable
            Zero-argument callable. Returning means success; raising a
            retriable :class:`ProvisioningError` means the attempt failed.
        max_retries : int
            Retries allowed after the first attempt.
        base_delay : float
            Delay after the first failure; doubles on each further failure.
        max_delay : float
            Cap on any single delay.
        should_retry : callable, optional
            Extra predicate on the raised error; False stops retrying.
        description : str
            Used in log messages.

        Returns
        -------
        RetryResult

        Raises
        ------
        RetriesExhausted
            If every attempt failed.
        ProvisioningError
            Immediately, if the error is not retriable.

        """
        attempt = 0
        while True:
            if attempt == 0:
                self.logger.info("Attempt 1/%d: %s", max_retries + 1, description)
            else:
                self.logger.info("Retry %d/%d: %s", attempt, max_retries, description)
            try:
                value = work()
            except ProvisioningError as exc:
                if not exc.retriable or (should_retry is not None and not should_retry(exc)):
                    raise
                if attempt >= max_retries:
                    self.logger.error(
                        "%s failed after %d retries: %s", description, max_retries, exc.message
                    )
                    raise RetriesExhausted(attempt + 1, exc) from exc
                delay = backoff_delay(attempt, base_delay, max_delay)
                self.logger.warning("%s failed (%s), retrying in %ss", description, exc.message, delay)
                self._wait_for_contention()
                if self.on_progress is not None:
                    self.on_progress(ProgressEvent("backoff", f"Retrying {description}", 0, delay))
                self.clock.sleep(delay)
                attempt += 1
                continue
            if attempt == 0:
                self.logger.success("%s succeeded on first attempt", description)
            else:
                self.logger.success("%s succeeded after %d retries", description, attempt)
            return RetryResult(value, attempt + 1)

    def _wait_for_contention(self):
        if self.monitor is None:
            return
        if not self.monitor.wait_until_free(self.contention_timeout, self.contention_interval):
            warning = ContentionTimeoutError(
                f"Package managers still busy after {self.contention_timeout}s, retrying anyway"
            )
            self.logger.warning(warning.message)
            if self.on_warning is not None:
                self.on_warning(warning)
