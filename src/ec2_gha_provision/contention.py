"""Detection of package-manager contention on the runner host.

The package manager is shared with unattended upgrades, cloud-init and
whatever else runs on the host. It is never locked from here; the monitor
only observes it and waits.
"""
import logging
import shlex
from dataclasses import dataclass
from typing import Iterator

from ec2_gha_provision import defaults
from ec2_gha_provision.clock import SYSTEM_CLOCK, Clock, ProgressEvent, poll_until
from ec2_gha_provision.log import StepLogger
from ec2_gha_provision.remote import RemoteHost

# flock exit status when the lock is held by someone else
LOCK_HELD_EXIT = 75


@dataclass(frozen=True)
class LockHolder:
    """A process observed holding or using the package manager."""

    pid: int
    command: str
    resource: str

    def __str__(self) -> str:
        return f"PID {self.pid} ({self.command}) holding {self.resource}"


def _self_excluding(pattern: str) -> str:
    # "[a]pt" matches "apt" but not the shell running the pgrep command line
    return f"[{pattern[0]}]{pattern[1:]}"


class LockContentionMonitor:
    """Reports whether the package manager on a host is busy.

    Busy is the OR of three independent signals: a package-manager process
    is running, one of the lock files is held, or the unattended-upgrades
    service is active. An inconclusive probe counts as busy.

    Parameters
    ----------
    host : RemoteHost
        Where the checks run.
    clock : Clock
        Time source for :meth:`wait_until_free`.
    process_patterns : sequence of str
        ``pgrep -f`` patterns of package-manager processes.
    lock_files : sequence of str
        Lock files tested with a non-blocking exclusive ``flock``.
    upgrade_service : str
        Systemd unit of the background upgrade service.
    logger : StepLogger, optional
    on_progress : callable, optional
        Receives a :class:`ProgressEvent` while waiting.

    """

    def __init__(self, host: RemoteHost, clock: Clock = SYSTEM_CLOCK,
                 process_patterns=defaults.PACKAGE_PROCESS_PATTERNS,
                 lock_files=defaults.PACKAGE_LOCK_FILES,
                 upgrade_service: str = defaults.UPGRADE_SERVICE,
                 logger: StepLogger = None, on_progress=None):
        self.host = host
        self.clock = clock
        self.process_patterns = tuple(process_patterns)
        self.lock_files = tuple(lock_files)
        self.upgrade_service = upgrade_service
        self.logger = logger or StepLogger(logging.getLogger(__name__))
        self.on_progress = on_progress
        self._upgrade_note_logged = False

    def package_process_running(self) -> bool:
        for pattern in self.process_patterns:
            result = self.host.run(f"pgrep -f {shlex.quote(_self_excluding(pattern))}")
            # pgrep exits 1 when nothing matched, anything else but 0 is an error
            if result.exit_code != 1:
                self.logger.debug("Package manager process matched: %s", pattern)
                return True
        return False

    def lock_file_held(self) -> bool:
        for lock_file in self.lock_files:
            path = shlex.quote(lock_file)
            result = self.host.run(
                f"test ! -e {path} || sudo -n flock --nonblock --exclusive "
                f"--conflict-exit-code {LOCK_HELD_EXIT} {path} true"
            )
            if not result.ok:
                self.logger.debug("Lock file is held: %s", lock_file)
                return True
        return False

    def upgrade_service_active(self) -> bool:
        result = self.host.run(
            f"systemctl is-active --quiet {shlex.quote(self.upgrade_service)}"
        )
        if result.ok:
            self.logger.debug("%s is active", self.upgrade_service)
        return result.ok

    def is_busy(self) -> bool:
        return (
            self.package_process_running()
            or self.lock_file_held()
            or self.upgrade_service_active()
        )

    def list_holders(self) -> Iterator[LockHolder]:
        """Yield processes holding lock files or matching package-manager patterns.

        Diagnostic only. Holders that cannot be resolved are skipped.
        """
        for lock_file in self.lock_files:
            result = self.host.run(f"sudo -n lsof -F pc {shlex.quote(lock_file)}")
            if not result.ok:
                continue
            yield from _parse_lsof(result.output, lock_file)
        for pattern in self.process_patterns:
            result = self.host.run(f"pgrep -a -f {shlex.quote(_self_excluding(pattern))}")
            if not result.ok:
                continue
            for line in result.output.splitlines():
                pid, _, command = line.strip().partition(" ")
                if not pid.isdigit():
                    continue
                yield LockHolder(int(pid), command or "unknown", f"{pattern} process")

    def wait_until_free(self, timeout: float = defaults.CONTENTION_TIMEOUT,
                        interval: float = defaults.CONTENTION_INTERVAL) -> bool:
        """Block until the package manager is free or ``timeout`` passes.

        Returns
        -------
        bool
            True if the package manager became free in time.

        """
        if not self.is_busy():
            return True
        self.logger.info("Package managers are busy, waiting up to %ss", timeout)
        holders = list(self.list_holders())
        for holder in holders:
            self.logger.info("  %s", holder)

        def tick(elapsed):
            if self.on_progress is not None:
                self.on_progress(ProgressEvent(
                    "contention", "Waiting for package managers", elapsed, timeout
                ))

        free = poll_until(lambda: not self.is_busy(), timeout, interval, self.clock, tick)
        if free:
            self.logger.success("Package managers are now available")
        elif not self._upgrade_note_logged and self.upgrade_service_active():
            self._upgrade_note_logged = True
            self.logger.info(
                "%s.service is active; on stock Ubuntu it stays active while "
                "unattended-upgrade-shutdown runs, which keeps the package manager looking busy",
                self.upgrade_service,
            )
        return free


def _parse_lsof(output: str, resource: str) -> Iterator[LockHolder]:
    pid = None
    for field in output.splitlines():
        if field.startswith("p") and field[1:].isdigit():
            pid = int(field[1:])
        elif field.startswith("c") and pid is not None:
            yield LockHolder(pid, field[1:], resource)
            pid = None
