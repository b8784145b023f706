from datetime import datetime, timedelta, timezone

import pytest

from ec2_gha_provision.clock import Clock
from ec2_gha_provision.config import ProvisionConfig, RunnerIdentity, RunnerMode, Scope
from ec2_gha_provision.github import (
    AccessReport,
    DeleteResult,
    RegistrationToken,
    RemoteRunnerRegistration,
    RunnerStatus,
)
from ec2_gha_provision.errors import RemoteExecutionError
from ec2_gha_provision.remote import CommandResult, RemoteHost

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Clock that records sleeps and advances instantly."""

    def __init__(self, start: datetime = START):
        self.start = start
        self.elapsed = 0.0
        self.sleeps = []

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.elapsed += seconds


class FakeHost(RemoteHost):
    """Host whose commands are answered from substring rules.

    The most recently added matching rule wins. A rule given a list of
    results answers with them in order and then keeps repeating the last.
    """

    address = "fake-host"

    def __init__(self):
        self.rules = []
        self.commands = []
        self.scripts = []
        self.closed = False
        self.refusals = 0

    def refuse(self, count: int):
        self.refusals = count
        return self

    def on(self, substring: str, exit_code: int = 0, output: str = ""):
        self.rules.append((substring, [CommandResult(exit_code, output)]))
        return self

    def on_sequence(self, substring: str, results):
        self.rules.append((substring, [
            r if isinstance(r, CommandResult) else CommandResult(*r) for r in results
        ]))
        return self

    def run(self, command, stdin=None, timeout=None, secrets=()):
        self.commands.append(command)
        if self.refusals:
            self.refusals -= 1
            raise RemoteExecutionError("Unable to SSH into ubuntu@fake-host: [Errno 111] Connection refused")
        if stdin is not None:
            self.scripts.append(stdin)
        for substring, results in reversed(self.rules):
            if substring in command:
                return results.pop(0) if len(results) > 1 else results[0]
        return CommandResult(0, "")

    def ran(self, substring: str) -> list[str]:
        return [command for command in self.commands if substring in command]

    def close(self):
        self.closed = True


class FakeBroker:
    """In-memory stand-in for GitHubBroker.

    ``find_results`` answers successive ``find_registration`` calls, the
    last one repeating.
    """

    def __init__(self, find_results=None, clock: FakeClock = None):
        self.clock = clock or FakeClock()
        self.find_results = list(find_results) if find_results is not None else [None]
        self.mint_errors = []
        self.find_errors = []
        self.delete_result = DeleteResult.DELETED
        self.access_warnings = []
        self.tokens = []
        self.deleted = []
        self.scopes = []
        self.calls = []

    def mint_registration_token(self, scope):
        self.calls.append("mint")
        if self.mint_errors:
            raise self.mint_errors.pop(0)
        token = RegistrationToken(
            value=f"AABBCC{len(self.tokens)}", expires_at=self.clock.now() + timedelta(hours=1)
        )
        self.tokens.append(token)
        return token

    def find_registration(self, scope, name):
        self.calls.append("find")
        self.scopes.append(scope)
        if self.find_errors:
            raise self.find_errors.pop(0)
        if len(self.find_results) > 1:
            return self.find_results.pop(0)
        return self.find_results[0]

    def list_registrations(self, scope):
        return [r for r in self.find_results if r is not None]

    def delete_registration(self, scope, runner_id):
        self.calls.append("delete")
        self.scopes.append(scope)
        self.deleted.append(runner_id)
        return self.delete_result

    def validate_access(self, scope):
        self.calls.append("validate")
        self.scopes.append(scope)
        return AccessReport(login="octocat", warnings=list(self.access_warnings))


def registration(status=RunnerStatus.ONLINE, name="runner-1", runner_id=42, busy=False):
    return RemoteRunnerRegistration(
        id=runner_id, name=name, status=status, busy=busy, labels=("self-hosted",), os="Linux"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo_scope():
    return Scope(RunnerMode.REPOSITORY, owner="bob", repository="app")


@pytest.fixture
def org_scope():
    return Scope(RunnerMode.ORGANIZATION, organization="acme")


@pytest.fixture
def config(repo_scope):
    identity = RunnerIdentity(name="runner-1", scope=repo_scope)
    return ProvisionConfig(token="ghp_testtoken", identity=identity)


@pytest.fixture
def host():
    """A freshly booted host with nothing installed and an idle package manager."""
    return (
        FakeHost()
        .on("pgrep", exit_code=1)
        .on("systemctl is-active", exit_code=3)
        .on("cloud-init status", output="status: done\n")
        .on("df -Pm", output="50000\n")
        .on("test -x config.sh", exit_code=1)
        .on("test -e .runner", exit_code=1)
        .on("test -e .credentials", exit_code=1)
        .on("test -e .service", exit_code=1)
        .on("test -e .dependencies_installed", exit_code=1)
        .on("test -e .runner && test -e .credentials")
        .on("svc.sh status", output="Active: active (running) since Thu\n")
    )


@pytest.fixture
def broker(clock):
    # Nothing registered before provisioning, online afterwards
    return FakeBroker(find_results=[None, registration()], clock=clock)
