import os
import signal
import sys
import threading

from gha_runner.helper.input import check_required
from gha_runner.helper.workflow_cmds import output

from ec2_gha_provision.config import TargetConfig, load_config, load_previous_scope
from ec2_gha_provision.errors import PreconditionError, ProvisioningError
from ec2_gha_provision.github import GitHubBroker
from ec2_gha_provision.health import check_runner_health
from ec2_gha_provision.instance import Ec2Instance
from ec2_gha_provision.log import get_logger, setup_logging
from ec2_gha_provision.orchestrator import Outcome, RunnerLifecycleOrchestrator
from ec2_gha_provision.remote import LocalGateway, RemoteHost, SSHGateway
from ec2_gha_provision.switch import RunnerSwitch
from ec2_gha_provision.teardown import RunnerTeardown

ACTIONS = ("provision", "remove", "status", "validate", "switch")

logger = get_logger("ec2_gha_provision")


def connect(target: TargetConfig) -> RemoteHost:
    """Open a gateway to the host described by ``target``, starting its instance if needed."""
    if target.is_local:
        return LocalGateway()
    address = target.host
    if not address:
        if not target.instance_id:
            raise PreconditionError(
                "No target host: set RUNNER_HOST, or INSTANCE_ID and AWS_REGION",
                hint="Use RUNNER_HOST=local to provision the machine this runs on.",
            )
        instance = Ec2Instance(target.instance_id, target.region_name)
        description = instance.ensure_running()
        address = instance.public_address(description)
        logger.info("Instance %s is running at %s", target.instance_id, address)
    return SSHGateway(address, target.user, target.key_filename, target.connect_timeout)


def has_target(target: TargetConfig) -> bool:
    return bool(target.is_local or target.host or target.instance_id)


def set_outputs(**values):
    # Only meaningful inside a workflow step
    if not os.environ.get("GITHUB_OUTPUT"):
        return
    for name, value in values.items():
        output(name, value)


def main() -> int:
    # Make a copy of environment variables for immutability
    env = dict(os.environ)
    check_required(env, ["GH_PAT"])
    setup_logging(env.get("LOG_LEVEL"))

    action = (env.get("INPUT_ACTION") or "provision").strip().lower()
    if action not in ACTIONS:
        logger.error("Unknown action '%s', expected one of: %s", action, ", ".join(ACTIONS))
        return 1

    try:
        config, target = load_config(env)
        broker = GitHubBroker(config.token, config.api_url)

        if action == "validate":
            report = broker.validate_access(config.scope)
            for warning in report.warnings:
                logger.warning(warning)
            logger.success("GH_PAT as %s can manage runners for %s", report.login, config.scope)
            return 0

        if action == "status":
            host = connect(target) if has_target(target) else None
            try:
                health = check_runner_health(config, broker, host)
            finally:
                if host is not None:
                    host.close()
            for line in health.lines():
                logger.info(line)
            logger.info("Overall status: %s", health.status)
            return 0 if health.healthy else 1

        if action == "remove":
            host = connect(target) if has_target(target) else None
            try:
                report = RunnerTeardown(config, broker, host).remove()
            finally:
                if host is not None:
                    host.close()
            logger.success("Runner '%s' removed (registration: %s)",
                           config.identity.name, report.registration.value)
            return 0

        previous_scope = load_previous_scope(env) if action == "switch" else None
        cancel = threading.Event()
        signal.signal(signal.SIGTERM, lambda signum, frame: cancel.set())
        with connect(target) as host:
            if previous_scope is not None:
                run = RunnerSwitch(config, previous_scope, broker, host, cancel=cancel).switch().run
            else:
                run = RunnerLifecycleOrchestrator(config, host, broker, cancel=cancel).provision()
    except ProvisioningError as e:
        logger.error("%s", e.message)
        if e.hint:
            logger.error("Hint: %s", e.hint)
        return 1

    set_outputs(**{
        "runner-name": config.identity.name,
        "scope": config.scope.target,
        "outcome": run.outcome.value,
    })
    for warning in run.warnings:
        logger.warning(warning.message)
    if run.outcome is Outcome.SUCCEEDED:
        logger.success("Runner '%s' is ready for %s", config.identity.name, config.scope)
        return 0
    # The failure reason is always the last line
    logger.error("%s", run.failure)
    return 1


if __name__ == "__main__":
    sys.exit(main())
