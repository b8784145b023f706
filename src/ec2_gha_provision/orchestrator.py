"""The runner provisioning pipeline.

A :class:`ProvisioningRun` moves through :class:`Step` in a fixed order. Each
step either succeeds, records a soft warning and lets the run continue, or
raises; the first raised error ends the run as failed with a reason derived
from the step it happened in.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from ec2_gha_provision.clock import SYSTEM_CLOCK, Clock, ProgressEvent, poll_until
from ec2_gha_provision.config import ProvisionConfig, RunnerIdentity
from ec2_gha_provision.contention import LockContentionMonitor
from ec2_gha_provision.errors import (
    ConfigureError,
    ContentionTimeoutError,
    CredentialError,
    GitHubAPIError,
    PreconditionError,
    ProvisioningError,
    ReadinessTimeoutError,
    RemoteExecutionError,
    ServiceError,
    VerificationWarning,
)
from ec2_gha_provision.github import DeleteResult, GitHubBroker, RegistrationToken
from ec2_gha_provision.log import StepLogger
from ec2_gha_provision.readiness import ReadinessProbe
from ec2_gha_provision.remote import RemoteHost
from ec2_gha_provision.retry import BackoffRetryExecutor
from ec2_gha_provision.runner_host import RunnerHost

# Re-mint a token this close to expiry rather than hand config.sh a dying one
TOKEN_EXPIRY_MARGIN = timedelta(minutes=2)


class Step(str, Enum):
    INIT = "Init"
    VALIDATING_PRECONDITIONS = "ValidatingPreconditions"
    AWAITING_READINESS = "AwaitingReadiness"
    ACQUIRING_TOKEN = "AcquiringToken"
    PREEMPTING_EXISTING_REGISTRATION = "PreemptingExistingRegistration"
    INSTALLING_BINARY = "InstallingBinary"
    CONFIGURING_IDENTITY = "ConfiguringIdentity"
    INSTALLING_SERVICE = "InstallingService"
    STARTING_SERVICE = "StartingService"
    VERIFYING_SERVICE = "VerifyingService"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (Step.SUCCEEDED, Step.FAILED)


# Failure reason for an error raised while in each step
FAILURE_REASONS = {
    Step.INIT: "unexpected",
    Step.VALIDATING_PRECONDITIONS: "precondition",
    Step.AWAITING_READINESS: "readiness",
    Step.ACQUIRING_TOKEN: "credential",
    Step.PREEMPTING_EXISTING_REGISTRATION: "preempt",
    Step.INSTALLING_BINARY: "install",
    Step.CONFIGURING_IDENTITY: "configure",
    Step.INSTALLING_SERVICE: "service-install",
    Step.STARTING_SERVICE: "service-start",
    Step.VERIFYING_SERVICE: "unexpected",
}

DIAGNOSED_STEPS = (
    Step.INSTALLING_BINARY,
    Step.CONFIGURING_IDENTITY,
    Step.INSTALLING_SERVICE,
    Step.STARTING_SERVICE,
)


class Outcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Failure:
    """Why a run failed.

    Parameters
    ----------
    reason : str
        Short machine-readable reason, e.g. ``install`` or ``credential``.
    step : Step
        The step that was active when the run failed.
    cause : str
        The proximate cause: HTTP status, exit code or timeout.
    hint : str
        Remediation the operator can act on.

    """

    reason: str
    step: Step
    cause: str
    hint: str = ""

    def __str__(self) -> str:
        text = f"Failed({self.reason}) in {self.step.value}: {self.cause}"
        if self.hint:
            text += f" Hint: {self.hint}"
        return text


@dataclass
class ProvisioningRun:
    """State of one provisioning attempt, owned by the orchestrator that created it."""

    identity: RunnerIdentity
    started_at: datetime
    current_step: Step = Step.INIT
    attempts_per_step: dict = field(default_factory=dict)
    outcome: Outcome = Outcome.PENDING
    failure: Optional[Failure] = None
    warnings: list = field(default_factory=list)
    steps_visited: list = field(default_factory=list)
    finished_at: Optional[datetime] = None

    @property
    def reason(self) -> Optional[str]:
        return self.failure.reason if self.failure else None

    @property
    def retries(self) -> int:
        return sum(max(0, attempts - 1) for attempts in self.attempts_per_step.values())

    @property
    def terminal(self) -> bool:
        return self.current_step.terminal

    def enter(self, step: Step):
        self.current_step = step
        self.steps_visited.append(step)
        self.attempts_per_step.setdefault(step, 1)


class RunnerLifecycleOrchestrator:
    """Drives a host from bare to a registered, running GitHub Actions runner.

    Parameters
    ----------
    config : ProvisionConfig
        Identity, versions, timeouts and retry budgets.
    host : RemoteHost
        Transport to the target host.
    broker : GitHubBroker
        Registration tokens and registrations.
    clock : Clock
        Time source for every wait.
    logger : StepLogger, optional
        Receives ``info``/``warning``/``error``/``success`` messages.
    monitor, probe, executor, runner : optional
        Collaborators built from ``host`` and ``config`` when omitted.
    cancel : optional
        Object with ``is_set()``, checked between steps.
    on_step : callable, optional
        Called with ``(step, run)`` on each transition.
    on_progress : callable, optional
        Receives progress events from every wait loop.

    """

    _active = set()
    _active_lock = threading.Lock()

    def __init__(self, config: ProvisionConfig, host: RemoteHost, broker: GitHubBroker,
                 clock: Clock = SYSTEM_CLOCK, logger: StepLogger = None,
                 monitor: LockContentionMonitor = None, probe: ReadinessProbe = None,
                 executor: BackoffRetryExecutor = None, runner: RunnerHost = None,
                 cancel=None, on_step=None, on_progress=None):
        self.config = config
        self.host = host
        self.broker = broker
        self.clock = clock
        self.logger = logger or StepLogger(logging.getLogger(__name__))
        self.cancel = cancel
        self.on_step = on_step
        self.on_progress = on_progress
        self.monitor = monitor or LockContentionMonitor(
            host, clock, logger=self.logger.bind("contention"), on_progress=on_progress
        )
        self.probe = probe or ReadinessProbe(
            host, self.monitor, clock,
            disk_floor_mb=config.disk_floor_mb,
            interval=config.readiness_interval,
            logger=self.logger.bind("readiness"),
            on_progress=on_progress,
        )
        self.executor = executor or BackoffRetryExecutor(
            self.monitor, clock,
            contention_timeout=config.contention_timeout,
            contention_interval=config.contention_interval,
            logger=self.logger.bind("retry"),
            on_progress=on_progress,
        )
        self.runner = runner or RunnerHost(
            host, config.runner_dir, config.runner_version, config.runner_arch
        )
        self.run: Optional[ProvisioningRun] = None
        self._token: Optional[RegistrationToken] = None
        self._log = self.logger

    @property
    def identity(self) -> RunnerIdentity:
        return self.config.identity

    def provision(self) -> ProvisioningRun:
        """Run the whole pipeline once.

        Never raises for provisioning problems: the returned run carries the
        outcome and, when failed, a :class:`Failure`.
        """
        self.run = ProvisioningRun(identity=self.identity, started_at=self.clock.now())
        self.executor.on_warning = self._warn
        key = self.identity.key
        with self._active_lock:
            duplicate = key in self._active
            if not duplicate:
                self._active.add(key)
        if duplicate:
            self._fail(PreconditionError(
                f"A provisioning run for runner '{self.identity.name}' in {self.identity.scope} "
                "is already in progress",
                hint="Wait for the running provisioning to finish before starting another.",
            ), reason="precondition")
            return self.run
        try:
            self._pipeline()
        finally:
            self._token = None
            with self._active_lock:
                self._active.discard(key)
        return self.run

    def _pipeline(self):
        steps = (
            (Step.VALIDATING_PRECONDITIONS, self._validate_preconditions),
            (Step.AWAITING_READINESS, self._await_readiness),
            (Step.ACQUIRING_TOKEN, self._acquire_token),
            (Step.PREEMPTING_EXISTING_REGISTRATION, self._preempt_existing_registration),
            (Step.INSTALLING_BINARY, self._install_binary),
            (Step.CONFIGURING_IDENTITY, self._configure_identity),
            (Step.INSTALLING_SERVICE, self._install_service),
            (Step.STARTING_SERVICE, self._start_service),
            (Step.VERIFYING_SERVICE, self._verify_service),
        )
        self.logger.info(
            "Provisioning runner '%s' for %s", self.identity.name, self.identity.scope
        )
        for step, action in steps:
            if self.cancel is not None and self.cancel.is_set():
                self._fail(ProvisioningError(
                    f"Cancelled before {step.value}",
                    hint="Re-run provisioning; completed steps are skipped or repeated safely.",
                ), reason="cancelled")
                return
            self._transition(step)
            try:
                action()
            except ProvisioningError as exc:
                self._fail(exc)
                return
            except Exception as exc:
                self.logger.exception("Unexpected error in %s", step.value)
                self._fail(exc, reason="unexpected")
                return
        self._finish(Step.SUCCEEDED, Outcome.SUCCEEDED)
        self.logger.success(
            "Runner '%s' provisioned for %s (%d retries, %d warnings)",
            self.identity.name, self.identity.scope, self.run.retries, len(self.run.warnings),
        )

    def _transition(self, step: Step):
        self.run.enter(step)
        self._log = self.logger.bind(step.value)
        self._log.info("Entering %s", step.value)
        if self.on_step is not None:
            self.on_step(step, self.run)

    def _finish(self, step: Step, outcome: Outcome):
        self.run.current_step = step
        self.run.outcome = outcome
        self.run.finished_at = self.clock.now()
        if self.on_step is not None:
            self.on_step(step, self.run)

    def _warn(self, warning: ProvisioningError):
        self.run.warnings.append(warning)
        self._log.warning(warning.message)

    def _fail(self, exc: Exception, reason: str = None):
        step = self.run.current_step
        if reason is None:
            if isinstance(exc, CredentialError):
                reason = "credential"
            else:
                reason = FAILURE_REASONS.get(step, "unexpected")
        if isinstance(exc, ProvisioningError):
            cause, hint = exc.message, exc.hint
        else:
            cause, hint = f"{type(exc).__name__}: {exc}", "This is a bug; please report it with the log."
        self.run.failure = Failure(reason=reason, step=step, cause=cause, hint=hint)
        self._log.error("%s", self.run.failure)
        if step in DIAGNOSED_STEPS and reason != "cancelled" and self.config.collect_diagnostics:
            self._collect_diagnostics()
        self._finish(Step.FAILED, Outcome.FAILED)

    def _collect_diagnostics(self):
        self._log.info("Collecting diagnostics from %s", self.host.address or "the host")
        try:
            result = self.runner.collect_diagnostics()
        except ProvisioningError as exc:
            self._log.warning("Could not collect diagnostics: %s", exc.message)
            return
        for line in result.output.splitlines():
            self._log.info("  %s", line)

    # -- steps -----------------------------------------------------------

    def _await_reachable(self):
        timeout = self.config.reachable_timeout
        address = self.host.address or "the host"
        errors = []

        def answers():
            try:
                self.host.run("true")
            except RemoteExecutionError as exc:
                errors.append(exc)
                return False
            return True

        def tick(elapsed):
            self._log.info("%s is not accepting connections yet (%ds elapsed)", address, elapsed)
            if self.on_progress is not None:
                self.on_progress(ProgressEvent(
                    "reachability", f"Waiting for {address} to accept connections", elapsed, timeout
                ))

        if not poll_until(answers, timeout, self.config.reachable_interval, self.clock, tick):
            raise PreconditionError(
                f"{address} did not accept connections within {timeout}s: {errors[-1].message}",
                hint=errors[-1].hint,
            )
        if errors:
            self._log.success("%s is reachable after %d attempts", address, len(errors) + 1)

    def _validate_preconditions(self):
        self._await_reachable()
        missing = self.runner.missing_commands()
        if missing:
            raise PreconditionError(
                f"Required tools missing on {self.host.address or 'the host'}: {', '.join(missing)}",
                hint=f"Install {' '.join(missing)} on the host image before provisioning.",
            )
        if self.config.validate_permissions:
            report = self.broker.validate_access(self.config.scope)
            for message in report.warnings:
                self._warn(ProvisioningError(message))
            self._log.success("Token authenticated as %s", report.login or "unknown user")

    def _await_readiness(self):
        state, converged = self.probe.await_ready(self.config.readiness_timeout)
        if not state.disk_sufficient(self.config.disk_floor_mb):
            raise ReadinessTimeoutError(
                f"Insufficient disk space: {state.disk_available_mb}MB available, "
                f"{self.config.disk_floor_mb}MB required",
                hint="Grow the root volume or free space under / (see 'df -h /').",
            )
        if not state.tmp_sufficient(self.config.tmp_floor_mb):
            raise ReadinessTimeoutError(
                f"Insufficient space in {self.probe.tmp_path}: {state.tmp_available_mb}MB available, "
                f"{self.config.tmp_floor_mb}MB required",
                hint=f"Free space under {self.probe.tmp_path} (see 'df -h {self.probe.tmp_path}').",
            )
        if (state.memory_available_mb is not None
                and state.memory_available_mb < self.config.memory_recommended_mb):
            self._warn(ProvisioningError(
                f"Low memory: {state.memory_available_mb}MB available, "
                f"{self.config.memory_recommended_mb}MB recommended"
            ))
        if converged:
            self._log.success(
                "Host ready (cloud-init %s, %sMB free)",
                state.cloud_init_status.value, state.disk_available_mb,
            )
        else:
            self._warn(ReadinessTimeoutError(
                f"cloud-init still {state.cloud_init_status.value} after "
                f"{self.config.readiness_timeout}s, proceeding anyway"
            ))
        if self.config.check_connectivity:
            self._check_connectivity()

    def _check_connectivity(self):
        urls = (self.config.server_url, self.config.api_url) + tuple(self.config.package_mirrors)
        for url in self.probe.unreachable_endpoints(urls):
            self._warn(ProvisioningError(
                f"{url} is not reachable from {self.host.address or 'the host'}",
                hint="Check DNS resolution, the security group egress rules and any NAT gateway or proxy.",
            ))

    def _mint_token(self) -> RegistrationToken:
        self._token = self.broker.mint_registration_token(self.config.scope)
        return self._token

    def _acquire_token(self):
        self._mint_token()

    def _preempt_existing_registration(self):
        existing = self.broker.find_registration(self.config.scope, self.identity.name)
        if existing is None:
            self._log.info("No existing registration named '%s'", self.identity.name)
            return
        self._log.info(
            "Removing existing registration '%s' (ID: %s, status: %s)",
            existing.name, existing.id, existing.status.value,
        )
        result = self.broker.delete_registration(self.config.scope, existing.id)
        if result is DeleteResult.NOT_FOUND:
            self._log.info("Registration %s was already gone", existing.id)
        else:
            self._log.success("Removed existing registration %s", existing.id)

    def _install_binary(self):
        if self.runner.binary_installed() and self.runner.dependencies_installed():
            self._log.info(
                "Runner binary and dependencies already present in %s, skipping installation",
                self.config.runner_dir,
            )
            return
        if not self.monitor.wait_until_free(self.config.package_wait_timeout, self.config.contention_interval):
            self._warn(ContentionTimeoutError(
                f"Package managers still busy after {self.config.package_wait_timeout}s, "
                "installing anyway"
            ))

        attempts = 0

        def install():
            nonlocal attempts
            attempts += 1
            if not self.runner.binary_installed():
                self._log.info("Downloading %s", self.runner.download_url)
                self.runner.download()
                self.runner.extract()
            self.runner.install_dependencies()

        try:
            self.executor.run(
                install,
                max_retries=self.config.install_retries,
                base_delay=self.config.install_base_delay,
                max_delay=self.config.max_delay,
                description="runner installation",
            )
        finally:
            self.run.attempts_per_step[Step.INSTALLING_BINARY] = attempts
        self._log.success("Runner %s installed in %s", self.config.runner_version, self.config.runner_dir)

    def _configure_identity(self):
        if self.runner.remove_local_configuration():
            self._log.info("Removed leftover runner configuration")
        url = self.config.scope.runner_url(self.config.server_url)
        attempts = 0

        def configure():
            nonlocal attempts
            attempts += 1
            token = self._token
            if attempts > 1 or token is None or token.expired(self.clock.now(), TOKEN_EXPIRY_MARGIN):
                self._log.info("Minting a fresh registration token")
                token = self._mint_token()
                if attempts > 1:
                    self.runner.remove_local_configuration()
            self.runner.configure(
                url, token, self.identity,
                token_expired=token.expired(self.clock.now()),
            )

        try:
            result = self.executor.run(
                configure,
                max_retries=self.config.configure_retries,
                base_delay=self.config.configure_base_delay,
                max_delay=self.config.max_delay,
                should_retry=lambda exc: isinstance(exc, ConfigureError) and exc.token_expired,
                description="runner configuration",
            )
        finally:
            self.run.attempts_per_step[Step.CONFIGURING_IDENTITY] = attempts
        if not self.runner.configured():
            raise ConfigureError(
                f"config.sh succeeded but {self.config.runner_dir} has no runner configuration"
            )
        self._log.success(
            "Runner configured for %s after %d attempt(s)", url, result.attempts
        )

    def _install_service(self):
        if self.runner.service_installed():
            self._log.info("Replacing existing runner service")
            for action in (self.runner.stop_service, self.runner.uninstall_service):
                result = action()
                if not result.ok:
                    self._log.debug("Ignoring failed %s: %s", action.__name__, result.tail(1))
        self.runner.install_service(self.config.runner_user)
        self._log.success("Runner service installed for %s", self.config.runner_user)

    def _start_service(self):
        self.runner.start_service()
        for check in range(1, self.config.service_checks + 1):
            self.clock.sleep(self.config.service_check_interval)
            if self.runner.service_active():
                self._log.success("Runner service is active")
                return
            self._log.info("Service not active yet (check %d/%d)", check, self.config.service_checks)
        raise ServiceError(
            f"Runner service not active after {self.config.service_checks} checks"
        )

    def _verify_service(self):
        registration = None
        for check in range(1, self.config.verify_checks + 1):
            try:
                registration = self.broker.find_registration(self.config.scope, self.identity.name)
            except CredentialError:
                raise
            except GitHubAPIError as exc:
                self._log.warning("Could not list runners: %s", exc.message)
            if registration is not None and registration.online:
                self._log.success(
                    "Runner '%s' is online (ID: %s)", registration.name, registration.id
                )
                return
            if check < self.config.verify_checks:
                self.clock.sleep(self.config.verify_interval)
        if registration is None:
            warning = VerificationWarning(f"Runner '{self.identity.name}' is not listed yet")
        else:
            warning = VerificationWarning(
                f"Runner '{registration.name}' is registered but {registration.status.value}"
            )
        self._warn(warning)

