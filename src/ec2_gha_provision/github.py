"""GitHub REST API client for runner registration.

HTTP statuses are decoded here, once: callers receive typed values or a
:class:`CredentialError` / :class:`GitHubAPIError`.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import requests

from ec2_gha_provision import defaults
from ec2_gha_provision.config import RunnerMode, Scope
from ec2_gha_provision.errors import CredentialError, GitHubAPIError

logger = logging.getLogger(__name__)

# Statuses that will not change without operator action
CREDENTIAL_STATUSES = (401, 403, 404)


@dataclass(frozen=True)
class RegistrationToken:
    """Short-lived token that binds a runner to a scope. Never logged."""

    value: str = field(repr=False)
    expires_at: datetime

    def expired(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        return now + margin >= self.expires_at


class RunnerStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class RemoteRunnerRegistration:
    """A runner as listed by the API."""

    id: int
    name: str
    status: RunnerStatus
    busy: bool = False
    labels: tuple = ()
    os: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "RemoteRunnerRegistration":
        return cls(
            id=int(data["id"]),
            name=data["name"],
            status=RunnerStatus(data.get("status", "offline")),
            busy=bool(data.get("busy", False)),
            labels=tuple(label["name"] for label in data.get("labels", [])),
            os=data.get("os", ""),
        )

    @property
    def online(self) -> bool:
        return self.status is RunnerStatus.ONLINE


class DeleteResult(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"


@dataclass
class AccessReport:
    """Outcome of the permission pre-flight."""

    login: str = ""
    warnings: list[str] = field(default_factory=list)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GitHubBroker:
    """Registration tokens and runner registrations through the REST API.

    Parameters
    ----------
    token : str
        Personal access token.
    api_url : str
        API root, ``https://api.github.com`` or a GHES ``/api/v3`` root.
    session : requests.Session, optional
        Session to reuse; one is created when omitted.
    timeout : float
        Per-request timeout in seconds.

    """

    def __init__(self, token: str, api_url: str = defaults.GITHUB_API_URL,
                 session: requests.Session = None, timeout: float = 30):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": defaults.GITHUB_API_VERSION,
        })

    def _request(self, method: str, path: str, expected=(200,), params: dict = None,
                 hint: str = None) -> requests.Response:
        url = f"{self.api_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise GitHubAPIError(f"{method} {url} failed: {e}") from e
        if response.status_code in expected:
            return response
        if response.status_code in CREDENTIAL_STATUSES:
            raise CredentialError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
                hint=hint,
            )
        raise GitHubAPIError(
            f"{method} {path} returned HTTP {response.status_code}: {response.text}",
            status_code=response.status_code,
            body=response.text,
        )

    def _scope_hint(self, scope: Scope) -> str:
        return f"Ensure GH_PAT has the {scope.required_token_scope} for {scope.target}."

    def mint_registration_token(self, scope: Scope) -> RegistrationToken:
        """Create a registration token for ``scope`` (``POST .../registration-token``).

        Raises
        ------
        CredentialError
            On 401, 403 or 404.
        GitHubAPIError
            On any other non-201 response or a malformed body.

        """
        response = self._request(
            "POST", f"{scope.api_path}/actions/runners/registration-token",
            expected=(201,), hint=self._scope_hint(scope),
        )
        data = response.json()
        value = data.get("token")
        if not value:
            raise GitHubAPIError("Invalid registration token received", response.status_code, response.text)
        token = RegistrationToken(value=value, expires_at=parse_timestamp(data["expires_at"]))
        logger.info("Generated %s registration token (expires: %s)", scope.mode.value, token.expires_at)
        return token

    def list_registrations(self, scope: Scope) -> list[RemoteRunnerRegistration]:
        runners = []
        page = 1
        while True:
            response = self._request(
                "GET", f"{scope.api_path}/actions/runners",
                params={"per_page": 100, "page": page}, hint=self._scope_hint(scope),
            )
            data = response.json()
            batch = data.get("runners", [])
            runners.extend(RemoteRunnerRegistration.from_api(runner) for runner in batch)
            if not batch or len(runners) >= data.get("total_count", 0):
                return runners
            page += 1

    def find_registration(self, scope: Scope, name: str) -> Optional[RemoteRunnerRegistration]:
        for runner in self.list_registrations(scope):
            if runner.name == name:
                return runner
        return None

    def delete_registration(self, scope: Scope, runner_id: int) -> DeleteResult:
        """Delete a runner registration; an already-missing runner is not an error."""
        response = self._request(
            "DELETE", f"{scope.api_path}/actions/runners/{runner_id}",
            expected=(204, 404), hint=self._scope_hint(scope),
        )
        if response.status_code == 404:
            return DeleteResult.NOT_FOUND
        return DeleteResult.DELETED

    def validate_access(self, scope: Scope) -> AccessReport:
        """Check that the token can manage runners in ``scope``.

        Raises
        ------
        CredentialError
            If authentication fails or the scope is not accessible with
            sufficient rights.

        """
        report = AccessReport()
        user = self._request(
            "GET", "user", hint="GH_PAT is invalid or expired; create a new token."
        ).json()
        report.login = user.get("login", "")

        if scope.mode is RunnerMode.ORGANIZATION:
            self._request("GET", f"orgs/{scope.organization}", hint=self._scope_hint(scope))
            try:
                membership = self._request(
                    "GET", f"orgs/{scope.organization}/memberships/{report.login}"
                ).json()
            except GitHubAPIError as e:
                report.warnings.append(f"Could not verify organization membership: {e.message}")
                return report
            if membership.get("state") != "active":
                raise CredentialError(
                    f"Organization membership is not active (state: {membership.get('state')})",
                    hint=f"Accept the pending invitation to {scope.organization}.",
                )
            if membership.get("role") != "admin":
                report.warnings.append(
                    f"You have '{membership.get('role')}' role. "
                    "'admin' role is recommended for runner management"
                )
            return report

        repo = self._request("GET", f"repos/{scope.owner}/{scope.repository}",
                             hint=self._scope_hint(scope)).json()
        if not repo.get("permissions", {}).get("admin", False):
            raise CredentialError(
                f"Insufficient permissions on {scope.target}: admin access required for runner management",
                status_code=403,
                hint=self._scope_hint(scope),
            )
        return report
