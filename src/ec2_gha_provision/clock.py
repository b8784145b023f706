"""Time source used by every wait loop.

Polling code never calls :mod:`time` directly so tests can substitute a
clock that advances instantly.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of a bounded wait, reported to ``on_progress`` callbacks."""

    source: str
    message: str
    elapsed: float = 0.0
    timeout: float = 0.0

    @property
    def percent(self) -> int:
        if self.timeout <= 0:
            return 100
        return min(100, int(self.elapsed * 100 / self.timeout))


class Clock:
    """Wall clock, monotonic clock and blocking sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK = Clock()


def poll_until(check, timeout: float, interval: float, clock: Clock = SYSTEM_CLOCK,
               on_tick=None) -> bool:
    """Call ``check`` until it returns True or ``timeout`` seconds pass.

    Parameters
    ----------
    check : callable
        Zero-argument predicate, evaluated once before any sleep.
    timeout : float
        Upper bound on the total wait.
    interval : float
        Seconds between evaluations.
    clock : Clock
        Time source.
    on_tick : callable, optional
        Called with the elapsed seconds after each unsuccessful check.

    Returns
    -------
    bool
        Whether ``check`` succeeded before the timeout.

    """
    start = clock.monotonic()
    while True:
        if check():
            return True
        elapsed = clock.monotonic() - start
        if elapsed >= timeout:
            return False
        if on_tick is not None:
            on_tick(elapsed)
        clock.sleep(min(interval, timeout - elapsed))
