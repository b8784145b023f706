"""Exceptions raised while provisioning a runner.

Fatal errors end a provisioning run. Soft conditions (readiness timeout,
contention timeout, verification) are instantiated but recorded as run
warnings instead of being raised.
"""


class ProvisioningError(Exception):
    """Base class for all provisioning failures.

    Parameters
    ----------
    message : str
        The proximate cause of the failure.
    hint : str
        A remediation the operator can act on. Falls back to the class
        default when not given.

    """

    retriable = False
    default_hint = ""

    def __init__(self, message: str, hint: str = None):
        super().__init__(message)
        self.message = message
        self.hint = hint or self.default_hint


class PreconditionError(ProvisioningError):
    """A required tool, input or credential is missing."""

    default_hint = "Check GH_PAT, the scope variables and that the target host is reachable."


class ProbeError(ProvisioningError):
    """The target host could not report a value the readiness gate needs."""

    default_hint = "Run 'df -m /' on the host to check the root filesystem."


class ReadinessTimeoutError(ProvisioningError):
    """The host did not become ready before the timeout."""

    default_hint = "Inspect boot progress with 'cloud-init status --long' on the host."


class ContentionTimeoutError(ProvisioningError):
    """The package manager stayed busy for the whole wait."""

    default_hint = (
        "Check 'ps aux | grep -E \"apt|dpkg\"' and 'systemctl status unattended-upgrades'. "
        "On stock Ubuntu unattended-upgrades.service stays active while its shutdown helper "
        "(unattended-upgrade-shutdown) runs, so with no apt or dpkg process the wait can run to its timeout."
    )


class GitHubAPIError(ProvisioningError):
    """Unexpected response from the GitHub REST API.

    Parameters
    ----------
    message : str
        Description of the failed call.
    status_code : int
        HTTP status, or None when the request never completed.
    body : str
        Response body kept for diagnostics.

    """

    default_hint = "Check https://www.githubstatus.com and retry."

    def __init__(self, message: str, status_code: int = None, body: str = "", hint: str = None):
        super().__init__(message, hint)
        self.status_code = status_code
        self.body = body


class CredentialError(GitHubAPIError):
    """Authentication, permission or not-found failure. Never retried."""

    default_hint = "Ensure GH_PAT is valid and has the 'repo' scope (plus 'admin:org' for organizations)."


class RemoteExecutionError(ProvisioningError):
    """The transport to the target host failed."""

    retriable = True
    default_hint = "Verify SSH access, the key pair and that the security group allows port 22."


class StepError(ProvisioningError):
    """A remote step exited non-zero."""

    retriable = True

    def __init__(self, message: str, exit_code: int = None, output: str = "", hint: str = None):
        super().__init__(message, hint)
        self.exit_code = exit_code
        self.output = output


class InstallError(StepError):
    default_hint = "Inspect the host with 'sudo journalctl -xe' and '/var/log/apt/term.log'."


class ConfigureError(StepError):
    """The runner configuration script failed.

    ``token_expired`` is set when the failure is attributed to the
    registration token having expired, which allows one re-mint.
    """

    default_hint = "Inspect the runner's '_diag' directory in the runner installation."

    def __init__(self, message: str, exit_code: int = None, output: str = "",
                 token_expired: bool = False, hint: str = None):
        super().__init__(message, exit_code, output, hint)
        self.token_expired = token_expired


class ServiceError(StepError):
    default_hint = "Run 'sudo ./svc.sh status' and 'sudo journalctl -u \"actions.runner.*\"' on the host."


class RetriesExhausted(ProvisioningError):
    """Every attempt of a retried step failed.

    Parameters
    ----------
    attempts : int
        How many attempts were made.
    last_error : ProvisioningError
        The failure of the final attempt.

    """

    def __init__(self, attempts: int, last_error: ProvisioningError):
        super().__init__(
            f"{last_error.message} (after {attempts} attempts)", last_error.hint
        )
        self.attempts = attempts
        self.last_error = last_error


class VerificationWarning(ProvisioningError):
    """The runner did not show up online in time. Non-fatal."""

    default_hint = "Check the runner list in the repository or organization settings in a minute."
