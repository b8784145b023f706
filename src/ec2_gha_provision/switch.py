"""Moving a provisioned runner from one registration scope to another."""
import dataclasses
import logging
from dataclasses import dataclass

from ec2_gha_provision.config import ProvisionConfig, Scope
from ec2_gha_provision.errors import PreconditionError
from ec2_gha_provision.github import GitHubBroker
from ec2_gha_provision.log import StepLogger
from ec2_gha_provision.orchestrator import ProvisioningRun, RunnerLifecycleOrchestrator
from ec2_gha_provision.remote import RemoteHost
from ec2_gha_provision.runner_host import RunnerHost
from ec2_gha_provision.teardown import RunnerTeardown, TeardownReport


@dataclass
class SwitchReport:
    """The removal from the previous scope and the run that registered the new one."""

    teardown: TeardownReport
    run: ProvisioningRun


class RunnerSwitch:
    """Re-registers an installed runner with a different repository or organization.

    The runner is deregistered from ``previous_scope`` and its service and
    local configuration are removed, then the regular provisioning pipeline
    registers it with ``config.scope``. The installed binary is reused.

    Parameters
    ----------
    config : ProvisionConfig
        The runner and the scope it moves to.
    previous_scope : Scope
        The scope it is registered in now.
    broker : GitHubBroker
        Registration calls for both scopes.
    host : RemoteHost
        The host carrying the runner installation.
    logger : StepLogger, optional
    orchestrator_kwargs
        Passed on to :class:`RunnerLifecycleOrchestrator`.

    """

    def __init__(self, config: ProvisionConfig, previous_scope: Scope, broker: GitHubBroker,
                 host: RemoteHost, logger: StepLogger = None, **orchestrator_kwargs):
        self.config = config
        self.previous_scope = previous_scope
        self.broker = broker
        self.host = host
        self.logger = logger or StepLogger(logging.getLogger(__name__))
        self.orchestrator_kwargs = orchestrator_kwargs

    def _previous_config(self) -> ProvisionConfig:
        identity = dataclasses.replace(self.config.identity, scope=self.previous_scope)
        return dataclasses.replace(self.config, identity=identity)

    def switch(self) -> SwitchReport:
        """Move the runner.

        Raises
        ------
        PreconditionError
            If both scopes are the same or no runner is installed on the host.
        CredentialError
            If the token cannot manage runners in the previous scope.

        """
        previous = self._previous_config()
        if previous.identity.key == self.config.identity.key:
            raise PreconditionError(
                f"Runner '{self.config.identity.name}' is already registered for {self.config.scope}",
                hint="Set PREVIOUS_GITHUB_* to the scope the runner is registered in now.",
            )
        runner = RunnerHost(self.host, self.config.runner_dir)
        if not runner.binary_installed():
            raise PreconditionError(
                f"No runner installation in {self.config.runner_dir} on {self.host.address or 'the host'}",
                hint="Install the runner first with INPUT_ACTION=provision.",
            )
        if self.config.validate_permissions:
            self.broker.validate_access(self.previous_scope)

        self.logger.info(
            "Switching runner '%s' from %s to %s",
            self.config.identity.name, self.previous_scope, self.config.scope,
        )
        teardown = RunnerTeardown(previous, self.broker, self.host, logger=self.logger).remove()
        run = RunnerLifecycleOrchestrator(
            self.config, self.host, self.broker, logger=self.logger, **self.orchestrator_kwargs
        ).provision()
        return SwitchReport(teardown=teardown, run=run)
