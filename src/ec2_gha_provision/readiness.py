"""Readiness gate for a freshly booted host."""
import logging
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ec2_gha_provision import defaults
from ec2_gha_provision.clock import SYSTEM_CLOCK, Clock, ProgressEvent
from ec2_gha_provision.contention import LockContentionMonitor
from ec2_gha_provision.errors import ProbeError
from ec2_gha_provision.log import StepLogger
from ec2_gha_provision.remote import RemoteHost

BOOT_FINISHED_MARKER = "/var/lib/cloud/instance/boot-finished"


class CloudInitStatus(str, Enum):
    DONE = "done"
    RUNNING = "running"
    ERROR = "error"
    ABSENT = "absent"
    UNKNOWN = "unknown"

    @property
    def finished(self) -> bool:
        # Boot-time provisioning cannot be retried, so errors count as finished
        return self is not CloudInitStatus.RUNNING


@dataclass(frozen=True)
class ReadinessState:
    """One observation of the host."""

    cloud_init_done: bool
    package_manager_free: bool
    disk_available_mb: int
    cloud_init_status: CloudInitStatus = CloudInitStatus.UNKNOWN
    tmp_available_mb: Optional[int] = None
    memory_available_mb: Optional[int] = None

    def disk_sufficient(self, floor_mb: int = defaults.DISK_FLOOR_MB) -> bool:
        return self.disk_available_mb >= floor_mb

    def tmp_sufficient(self, floor_mb: int = defaults.TMP_FLOOR_MB) -> bool:
        return self.tmp_available_mb is None or self.tmp_available_mb >= floor_mb


class ReadinessProbe:
    """Polls a host until boot provisioning has finished and disk space suffices.

    Package-manager contention is recorded in the state for reporting but
    does not gate readiness; it is re-checked before every install attempt.

    Parameters
    ----------
    host : RemoteHost
        The host to observe.
    monitor : LockContentionMonitor, optional
        Used to fill ``package_manager_free``. Without one it is reported True.
    clock : Clock
        Time source.
    disk_floor_mb : int
        Minimum free space on ``path``.
    interval : float
        Seconds between polls.
    path : str
        Filesystem checked for free space.
    tmp_path : str
        Scratch filesystem, reported separately.

    """

    def __init__(self, host: RemoteHost, monitor: LockContentionMonitor = None,
                 clock: Clock = SYSTEM_CLOCK, disk_floor_mb: int = defaults.DISK_FLOOR_MB,
                 interval: float = defaults.READINESS_INTERVAL, path: str = "/", tmp_path: str = "/tmp",
                 logger: StepLogger = None, on_progress=None):
        self.host = host
        self.monitor = monitor
        self.clock = clock
        self.disk_floor_mb = disk_floor_mb
        self.interval = interval
        self.path = path
        self.tmp_path = tmp_path
        self.logger = logger or StepLogger(logging.getLogger(__name__))
        self.on_progress = on_progress

    def cloud_init_status(self) -> CloudInitStatus:
        if not self.host.run("command -v cloud-init").ok:
            return CloudInitStatus.ABSENT
        # cloud-init exits non-zero for error and degraded states, so read the output
        output = self.host.run("cloud-init status").output
        for status in (CloudInitStatus.DONE, CloudInitStatus.RUNNING, CloudInitStatus.ERROR):
            if f"status: {status.value}" in output:
                return status
        if "status: not started" in output or self.host.run("pgrep -f '[c]loud-init'").ok:
            return CloudInitStatus.RUNNING
        if self.host.run(f"test -f {BOOT_FINISHED_MARKER}").ok:
            return CloudInitStatus.DONE
        return CloudInitStatus.UNKNOWN

    def disk_available_mb(self, path: str = None) -> int:
        """Free space on ``path`` in megabytes, by default the probe's own path.

        Raises
        ------
        ProbeError
            If the value cannot be read.

        """
        path = path or self.path
        result = self.host.run(f"df -Pm {path} | awk 'NR==2 {{print $4}}'")
        value = result.output.strip()
        if not result.ok or not value.isdigit():
            raise ProbeError(
                f"Failed to check disk space on {path} "
                f"(exit code {result.exit_code}): {result.tail(3) or 'no output'}"
            )
        return int(value)

    def memory_available_mb(self) -> Optional[int]:
        # Memory only warns, so an unreadable value is reported as unknown
        result = self.host.run("free -m | awk '/^Mem:/ {print $7}'")
        value = result.output.strip()
        if not result.ok or not value.isdigit():
            return None
        return int(value)

    def unreachable_endpoints(self, urls, timeout: int = defaults.CONNECTIVITY_TIMEOUT) -> list[str]:
        """Return the URLs the host cannot open a connection to.

        Any HTTP response counts as reachable; only DNS, connect and TLS
        failures do not.
        """
        unreachable = []
        for url in urls:
            result = self.host.run(
                f"curl -sS -o /dev/null --max-time {int(timeout)} {shlex.quote(url)}"
            )
            if not result.ok:
                self.logger.debug("%s is unreachable: %s", url, result.tail(1))
                unreachable.append(url)
        return unreachable

    def probe(self) -> ReadinessState:
        status = self.cloud_init_status()
        if status is CloudInitStatus.ERROR:
            self.logger.warning("cloud-init completed with errors")
        package_manager_free = True
        if self.monitor is not None:
            package_manager_free = not self.monitor.is_busy()
        return ReadinessState(
            cloud_init_done=status.finished,
            package_manager_free=package_manager_free,
            disk_available_mb=self.disk_available_mb(),
            cloud_init_status=status,
            tmp_available_mb=self.disk_available_mb(self.tmp_path),
            memory_available_mb=self.memory_available_mb(),
        )

    def await_ready(self, timeout: float = defaults.READINESS_TIMEOUT) -> tuple:
        """Wait until cloud-init is done and disk space is above the floor.

        Returns
        -------
        tuple[ReadinessState, bool]
            The last observed state and whether it converged before
            ``timeout``. Returns early, unconverged, when cloud-init is done
            but disk space is still short.

        """
        start = self.clock.monotonic()
        state = self.probe()
        while True:
            if state.cloud_init_done and state.disk_sufficient(self.disk_floor_mb):
                return state, True
            if state.cloud_init_done:
                return state, False
            elapsed = self.clock.monotonic() - start
            if elapsed >= timeout:
                return state, False
            if self.on_progress is not None:
                self.on_progress(ProgressEvent(
                    "readiness", "Waiting for cloud-init to complete", elapsed, timeout
                ))
            self.clock.sleep(min(self.interval, timeout - elapsed))
            state = self.probe()
