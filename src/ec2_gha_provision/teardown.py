"""Removal of a provisioned runner."""
import logging
from dataclasses import dataclass, field
from typing import Optional

from ec2_gha_provision.config import ProvisionConfig
from ec2_gha_provision.github import DeleteResult, GitHubBroker
from ec2_gha_provision.log import StepLogger
from ec2_gha_provision.remote import RemoteHost
from ec2_gha_provision.runner_host import RunnerHost


@dataclass
class TeardownReport:
    """What :meth:`RunnerTeardown.remove` changed."""

    registration: Optional[DeleteResult] = None
    service_removed: bool = False
    configuration_removed: bool = False
    warnings: list[str] = field(default_factory=list)


class RunnerTeardown:
    """Deregisters a runner and removes its service and configuration.

    Every part is idempotent: a registration, service or configuration that
    is already gone counts as removed.

    Parameters
    ----------
    config : ProvisionConfig
        Identifies the runner and its installation directory.
    broker : GitHubBroker
        Used to find and delete the registration.
    host : RemoteHost, optional
        When given, the service and local configuration are removed too.

    """

    def __init__(self, config: ProvisionConfig, broker: GitHubBroker,
                 host: RemoteHost = None, logger: StepLogger = None):
        self.config = config
        self.broker = broker
        self.host = host
        self.logger = logger or StepLogger(logging.getLogger(__name__))
        self.runner = RunnerHost(host, config.runner_dir) if host is not None else None

    def remove(self) -> TeardownReport:
        report = TeardownReport()
        identity = self.config.identity
        registration = self.broker.find_registration(self.config.scope, identity.name)
        if registration is None:
            self.logger.info("Runner '%s' is not registered in %s", identity.name, self.config.scope)
            report.registration = DeleteResult.NOT_FOUND
        else:
            if registration.busy:
                report.warnings.append(f"Runner '{registration.name}' was busy running a job")
            report.registration = self.broker.delete_registration(self.config.scope, registration.id)
            self.logger.success("Deregistered runner '%s' (ID: %s)", registration.name, registration.id)

        if self.runner is None:
            return report

        if self.runner.service_installed():
            stopped = self.runner.stop_service()
            if not stopped.ok:
                report.warnings.append(f"Stopping the runner service failed: {stopped.tail(1)}")
            uninstalled = self.runner.uninstall_service()
            if uninstalled.ok:
                report.service_removed = True
                self.logger.success("Runner service uninstalled")
            else:
                report.warnings.append(f"Uninstalling the runner service failed: {uninstalled.tail(1)}")

        report.configuration_removed = self.runner.remove_local_configuration()
        if report.configuration_removed:
            self.logger.success("Removed runner configuration from %s", self.config.runner_dir)

        for warning in report.warnings:
            self.logger.warning(warning)
        return report
