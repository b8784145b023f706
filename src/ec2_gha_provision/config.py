"""Runner identity, scope resolution and configuration loading."""
import os
import re
from dataclasses import dataclass, field
from enum import Enum

from gha_runner.helper.input import EnvVarBuilder

from ec2_gha_provision import defaults
from ec2_gha_provision.errors import PreconditionError

OWNER_PATTERN = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$")
REPOSITORY_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")


class RunnerMode(str, Enum):
    AUTO = "auto"
    ORGANIZATION = "organization"
    REPOSITORY = "repository"


@dataclass(frozen=True)
class Scope:
    """Where a runner is registered: an organization or one repository.

    Parameters
    ----------
    mode : RunnerMode
        Either ``ORGANIZATION`` or ``REPOSITORY``.
    organization : str
        Organization login, for organization scope.
    owner : str
        Repository owner, for repository scope.
    repository : str
        Repository name, for repository scope.

    """

    mode: RunnerMode
    organization: str = ""
    owner: str = ""
    repository: str = ""

    @property
    def target(self) -> str:
        if self.mode is RunnerMode.ORGANIZATION:
            return self.organization
        return f"{self.owner}/{self.repository}"

    @property
    def api_path(self) -> str:
        if self.mode is RunnerMode.ORGANIZATION:
            return f"orgs/{self.organization}"
        return f"repos/{self.owner}/{self.repository}"

    def runner_url(self, server_url: str = defaults.GITHUB_SERVER_URL) -> str:
        return f"{server_url.rstrip('/')}/{self.target}"

    @property
    def required_token_scope(self) -> str:
        if self.mode is RunnerMode.ORGANIZATION:
            return "'admin:org' scope and organization admin role"
        return "'repo' scope and admin access to the repository"

    def __str__(self) -> str:
        return f"{self.mode.value} {self.target}"


def resolve_scope(organization: str = "", username: str = "", repository: str = "",
                  mode=RunnerMode.AUTO) -> Scope:
    """Resolve the registration scope from the supplied inputs.

    ``repository`` may be given as ``owner/name``, in which case ``username``
    is optional. In ``auto`` mode repository inputs take precedence over an
    organization when both are supplied.

    Raises
    ------
    PreconditionError
        If the inputs do not determine a scope or a name is malformed.

    """
    try:
        mode = RunnerMode(mode or RunnerMode.AUTO)
    except ValueError as e:
        raise PreconditionError(
            f"Unknown runner mode: {mode}",
            hint="RUNNER_MODE must be auto, organization or repository.",
        ) from e
    organization = (organization or "").strip()
    username = (username or "").strip()
    repository = (repository or "").strip()
    if "/" in repository:
        owner, _, repository = repository.partition("/")
        username = username or owner

    has_repo = bool(username and repository)
    if mode is RunnerMode.AUTO:
        if has_repo:
            mode = RunnerMode.REPOSITORY
        elif organization:
            mode = RunnerMode.ORGANIZATION
        else:
            raise PreconditionError(
                "Cannot determine runner mode",
                hint="Set GITHUB_ORGANIZATION for an organization runner, or "
                     "GITHUB_USERNAME and GITHUB_REPOSITORY for a repository runner.",
            )

    if mode is RunnerMode.ORGANIZATION:
        if not organization:
            raise PreconditionError("GITHUB_ORGANIZATION is required for organization mode")
        if not OWNER_PATTERN.match(organization):
            raise PreconditionError(f"Invalid GitHub organization name format: {organization}")
        return Scope(mode, organization=organization)

    if not has_repo:
        raise PreconditionError(
            "GITHUB_USERNAME and GITHUB_REPOSITORY are required for repository mode"
        )
    if not OWNER_PATTERN.match(username):
        raise PreconditionError(f"Invalid GitHub username format: {username}")
    if not REPOSITORY_PATTERN.match(repository):
        raise PreconditionError(f"Invalid GitHub repository name format: {repository}")
    return Scope(mode, owner=username, repository=repository)


def parse_labels(labels) -> frozenset:
    if isinstance(labels, str):
        labels = labels.split(",")
    return frozenset(label.strip() for label in labels if label and label.strip())


@dataclass(frozen=True)
class RunnerIdentity:
    """Name, labels and scope of the runner being provisioned."""

    name: str
    scope: Scope
    labels: frozenset = field(default_factory=lambda: parse_labels(defaults.RUNNER_LABELS))
    work_dir: str = defaults.RUNNER_WORK_DIR

    @property
    def mode(self) -> RunnerMode:
        return self.scope.mode

    @property
    def ephemeral(self) -> bool:
        return self.scope.mode is RunnerMode.ORGANIZATION

    @property
    def labels_arg(self) -> str:
        return ",".join(sorted(self.labels))

    @property
    def key(self) -> tuple:
        return (self.scope.mode, self.scope.target.lower(), self.name)


@dataclass
class ProvisionConfig:
    """Everything the orchestrator needs besides its collaborators.

    Parameters
    ----------
    token : str
        GitHub personal access token used against the REST API.
    identity : RunnerIdentity
        The runner to provision.
    runner_version : str
        Version of the actions/runner release to install.
    runner_arch : str
        Release architecture, e.g. ``linux-x64``.
    runner_dir : str
        Installation directory on the host, relative to the login home.
    runner_user : str
        Account the runner service runs as.

    The remaining fields bound the wait loops and retry budgets.
    """

    token: str = field(repr=False)
    identity: RunnerIdentity
    runner_version: str = defaults.RUNNER_VERSION
    runner_arch: str = defaults.RUNNER_ARCH
    runner_dir: str = defaults.RUNNER_DIR
    runner_user: str = defaults.RUNNER_USER
    api_url: str = defaults.GITHUB_API_URL
    server_url: str = defaults.GITHUB_SERVER_URL
    readiness_timeout: int = defaults.READINESS_TIMEOUT
    readiness_interval: int = defaults.READINESS_INTERVAL
    disk_floor_mb: int = defaults.DISK_FLOOR_MB
    tmp_floor_mb: int = defaults.TMP_FLOOR_MB
    memory_recommended_mb: int = defaults.MEMORY_RECOMMENDED_MB
    package_mirrors: tuple = defaults.PACKAGE_MIRRORS
    reachable_timeout: int = defaults.REACHABLE_TIMEOUT
    reachable_interval: int = defaults.REACHABLE_INTERVAL
    package_wait_timeout: int = defaults.PACKAGE_WAIT_TIMEOUT
    contention_timeout: int = defaults.CONTENTION_TIMEOUT
    contention_interval: int = defaults.CONTENTION_INTERVAL
    install_retries: int = defaults.INSTALL_RETRIES
    install_base_delay: int = defaults.INSTALL_BASE_DELAY
    configure_retries: int = defaults.CONFIGURE_RETRIES
    configure_base_delay: int = defaults.CONFIGURE_BASE_DELAY
    max_delay: int = defaults.MAX_DELAY
    service_checks: int = defaults.SERVICE_CHECKS
    service_check_interval: int = defaults.SERVICE_CHECK_INTERVAL
    verify_checks: int = defaults.VERIFY_CHECKS
    verify_interval: int = defaults.VERIFY_INTERVAL
    validate_permissions: bool = True
    check_connectivity: bool = True
    collect_diagnostics: bool = True

    @property
    def scope(self) -> Scope:
        return self.identity.scope


@dataclass
class TargetConfig:
    """How to reach the host the runner is installed on."""

    instance_id: str = ""
    region_name: str = ""
    host: str = ""
    user: str = defaults.RUNNER_USER
    key_filename: str = ""
    connect_timeout: int = defaults.SSH_CONNECT_TIMEOUT

    @property
    def is_local(self) -> bool:
        return self.host == defaults.LOCAL


def load_config(env: dict) -> tuple:
    """Build the provisioning and target configuration from environment variables.

    Parameters
    ----------
    env : dict
        A copy of the process environment.

    Returns
    -------
    tuple[ProvisionConfig, TargetConfig]

    Raises
    ------
    PreconditionError
        If the scope cannot be resolved or the token is missing.

    """
    builder = (
        EnvVarBuilder(env)
        .update_state("GH_PAT", "token")
        .update_state("GITHUB_ORGANIZATION", "organization")
        .update_state("GITHUB_USERNAME", "username")
        .update_state("GITHUB_REPOSITORY", "repository")
        .update_state("RUNNER_MODE", "mode")
        .update_state("RUNNER_NAME", "name")
        .update_state("RUNNER_LABELS", "labels")
        .update_state("RUNNER_WORK_DIR", "work_dir")
        .update_state("RUNNER_VERSION", "runner_version")
        .update_state("RUNNER_ARCH", "runner_arch")
        .update_state("RUNNER_DIR", "runner_dir")
        .update_state("RUNNER_USER", "runner_user")
        .update_state("READINESS_TIMEOUT", "readiness_timeout", type_hint=int)
        .update_state("REACHABLE_TIMEOUT", "reachable_timeout", type_hint=int)
        .update_state("INSTANCE_ID", "instance_id")
        .update_state("AWS_REGION", "region_name")        # default
        .update_state("INPUT_AWS_REGION", "region_name")  # input override
        .update_state("RUNNER_HOST", "host")
        .update_state("KEY_PAIR_NAME", "key_pair_name")
        .update_state("SSH_KEY_FILE", "key_filename")
    )
    params = builder.params

    token = params.get("token")
    if not token:
        raise PreconditionError("GH_PAT environment variable is required")

    scope = resolve_scope(
        organization=params.get("organization"),
        username=params.get("username"),
        repository=params.get("repository"),
        mode=params.get("mode") or RunnerMode.AUTO,
    )
    identity = RunnerIdentity(
        name=params.get("name") or defaults.RUNNER_NAME,
        scope=scope,
        labels=parse_labels(params.get("labels") or defaults.RUNNER_LABELS),
        work_dir=params.get("work_dir") or defaults.RUNNER_WORK_DIR,
    )
    runner_user = params.get("runner_user") or defaults.RUNNER_USER
    config = ProvisionConfig(
        token=token,
        identity=identity,
        runner_version=params.get("runner_version") or defaults.RUNNER_VERSION,
        runner_arch=params.get("runner_arch") or defaults.RUNNER_ARCH,
        runner_dir=params.get("runner_dir") or defaults.RUNNER_DIR,
        runner_user=runner_user,
        readiness_timeout=params.get("readiness_timeout") or defaults.READINESS_TIMEOUT,
        reachable_timeout=params.get("reachable_timeout") or defaults.REACHABLE_TIMEOUT,
    )

    key_filename = params.get("key_filename") or ""
    if not key_filename and params.get("key_pair_name"):
        key_filename = os.path.expanduser(f"~/.ssh/{params['key_pair_name']}.pem")
    target = TargetConfig(
        instance_id=params.get("instance_id") or "",
        region_name=params.get("region_name") or "",
        host=params.get("host") or "",
        user=runner_user,
        key_filename=key_filename,
    )
    return config, target


def load_previous_scope(env: dict) -> Scope:
    """Resolve the scope a runner is registered in before it is switched.

    Reads ``PREVIOUS_GITHUB_ORGANIZATION``, ``PREVIOUS_GITHUB_USERNAME`` and
    ``PREVIOUS_GITHUB_REPOSITORY`` with the same rules as the current scope.

    Raises
    ------
    PreconditionError
        If none of the variables is set or they do not determine a scope.

    """
    params = (
        EnvVarBuilder(env)
        .update_state("PREVIOUS_GITHUB_ORGANIZATION", "organization")
        .update_state("PREVIOUS_GITHUB_USERNAME", "username")
        .update_state("PREVIOUS_GITHUB_REPOSITORY", "repository")
        .params
    )
    if not any(params.get(name) for name in ("organization", "username", "repository")):
        raise PreconditionError(
            "Switching needs the scope the runner is registered in now",
            hint="Set PREVIOUS_GITHUB_REPOSITORY (owner/repo) or PREVIOUS_GITHUB_ORGANIZATION.",
        )
    return resolve_scope(
        organization=params.get("organization"),
        username=params.get("username"),
        repository=params.get("repository"),
    )
