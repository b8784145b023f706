"""Point-in-time health of a provisioned runner."""
from dataclasses import dataclass, field
from enum import IntEnum

from ec2_gha_provision.config import ProvisionConfig
from ec2_gha_provision.contention import LockContentionMonitor
from ec2_gha_provision.errors import ProvisioningError
from ec2_gha_provision.github import GitHubBroker
from ec2_gha_provision.remote import RemoteHost
from ec2_gha_provision.runner_host import RunnerHost


class HealthStatus(IntEnum):
    OK = 0
    WARNING = 1
    ERROR = 2

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class HealthCheck:
    name: str
    status: HealthStatus
    detail: str = ""


@dataclass
class HealthReport:
    checks: list[HealthCheck] = field(default_factory=list)

    @property
    def status(self) -> HealthStatus:
        return max((check.status for check in self.checks), default=HealthStatus.OK)

    @property
    def healthy(self) -> bool:
        return self.status is not HealthStatus.ERROR

    def add(self, name: str, status: HealthStatus, detail: str = ""):
        self.checks.append(HealthCheck(name, status, detail))

    def lines(self) -> list[str]:
        return [f"{check.status}: {check.name}: {check.detail}" for check in self.checks]


def check_runner_health(config: ProvisionConfig, broker: GitHubBroker, host: RemoteHost = None,
                        monitor: LockContentionMonitor = None) -> HealthReport:
    """Collect the health of a runner's registration and, given a host, its installation.

    Parameters
    ----------
    config : ProvisionConfig
        Identifies the runner.
    broker : GitHubBroker
        Used to look up the registration.
    host : RemoteHost, optional
        Host with the runner installation. Host checks are skipped without it.
    monitor : LockContentionMonitor, optional
        Package-manager monitor for ``host``; one is created when omitted.

    Returns
    -------
    HealthReport
        One record per check; the overall status is the worst one.

    """
    report = HealthReport()
    name = config.identity.name
    try:
        registration = broker.find_registration(config.scope, name)
    except ProvisioningError as exc:
        report.add("registration", HealthStatus.ERROR, exc.message)
    else:
        if registration is None:
            report.add("registration", HealthStatus.ERROR, f"'{name}' is not registered in {config.scope}")
        elif registration.online:
            state = "busy" if registration.busy else "idle"
            report.add("registration", HealthStatus.OK, f"online and {state} (ID: {registration.id})")
        else:
            report.add("registration", HealthStatus.WARNING, f"registered but {registration.status.value}")

    if host is None:
        return report

    runner = RunnerHost(host, config.runner_dir)
    monitor = monitor or LockContentionMonitor(host)
    try:
        if runner.binary_installed():
            report.add("installation", HealthStatus.OK, config.runner_dir)
        else:
            report.add("installation", HealthStatus.ERROR, f"no runner binary in {config.runner_dir}")
        if runner.configured():
            report.add("configuration", HealthStatus.OK, "configuration and credentials present")
        else:
            report.add("configuration", HealthStatus.ERROR, "runner is not configured")
        if runner.service_active():
            report.add("service", HealthStatus.OK, "active (running)")
        else:
            report.add("service", HealthStatus.ERROR, "runner service is not running")
        if monitor.is_busy():
            report.add("package-manager", HealthStatus.WARNING, "package managers are busy")
        else:
            report.add("package-manager", HealthStatus.OK, "free")
    except ProvisioningError as exc:
        report.add("host", HealthStatus.ERROR, exc.message)
    return report
