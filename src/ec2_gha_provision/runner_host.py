import importlib.resources
import re
import shlex
from string import Template

from ec2_gha_provision import defaults
from ec2_gha_provision.config import RunnerIdentity
from ec2_gha_provision.errors import ConfigureError, InstallError, ServiceError
from ec2_gha_provision.github import RegistrationToken
from ec2_gha_provision.remote import CommandResult, RemoteHost

# Output of config.sh when the server rejects the registration token
TOKEN_REJECTED = re.compile(r"\b401\b|unauthori[sz]ed|token .*expired|expired token", re.IGNORECASE)


class RunnerHost:
    """The actions/runner installation on a target host.

    Parameters
    ----------
    host : RemoteHost
        Transport to the host.
    runner_dir : str
        Installation directory, relative to the login home or absolute.
    version : str
        Runner release version.
    arch : str
        Runner release architecture.

    """

    def __init__(self, host: RemoteHost, runner_dir: str = defaults.RUNNER_DIR,
                 version: str = defaults.RUNNER_VERSION, arch: str = defaults.RUNNER_ARCH):
        self.host = host
        self.runner_dir = runner_dir
        self.version = version
        self.arch = arch

    @property
    def archive_name(self) -> str:
        return f"actions-runner-{self.arch}-{self.version}.tar.gz"

    @property
    def download_url(self) -> str:
        return defaults.RUNNER_RELEASE_URL.format(version=self.version, archive=self.archive_name)

    def _run(self, command: str, secrets=(), timeout: int = None) -> CommandResult:
        return self.host.run(
            f"cd {shlex.quote(self.runner_dir)} && {command}", secrets=secrets, timeout=timeout
        )

    def _exists(self, *names, test: str = "-e") -> bool:
        checks = " && ".join(f"test {test} {shlex.quote(name)}" for name in names)
        return self._run(checks).ok

    def missing_commands(self, commands=defaults.REQUIRED_REMOTE_COMMANDS) -> list[str]:
        return [
            command for command in commands
            if not self.host.run(f"command -v {shlex.quote(command)}").ok
        ]

    def binary_installed(self) -> bool:
        return self._exists("config.sh", "bin/Runner.Listener", test="-x")

    def download(self):
        result = self.host.run(
            f"mkdir -p {shlex.quote(self.runner_dir)} && cd {shlex.quote(self.runner_dir)} && "
            f"curl -fsSL --max-time 300 -o {shlex.quote(self.archive_name)} {shlex.quote(self.download_url)}"
        )
        if not result.ok:
            raise InstallError(
                f"Failed to download {self.download_url} (exit code {result.exit_code})",
                result.exit_code, result.output,
                hint="Check outbound HTTPS from the host and that RUNNER_VERSION/RUNNER_ARCH name a real release.",
            )

    def extract(self):
        archive = shlex.quote(self.archive_name)
        result = self._run(f"tar xzf {archive} && rm -f {archive}")
        if not result.ok:
            raise InstallError(
                f"Failed to extract {self.archive_name} (exit code {result.exit_code}): {result.tail(3)}",
                result.exit_code, result.output,
            )

    def dependencies_installed(self) -> bool:
        return self._exists(defaults.DEPENDENCIES_MARKER)

    def install_dependencies(self) -> CommandResult:
        result = self._run(
            "sudo -E env DEBIAN_FRONTEND=noninteractive NEEDRESTART_MODE=a "
            "bash -c 'apt-get update -y && ./bin/installdependencies.sh'"
            f" && touch {defaults.DEPENDENCIES_MARKER}"
        )
        if not result.ok:
            raise InstallError(
                f"Runner dependency installation failed (exit code {result.exit_code}): {result.tail(3)}",
                result.exit_code, result.output,
            )
        return result

    def configured(self) -> bool:
        return self._exists(defaults.CONFIG_MARKER, defaults.CREDENTIALS_MARKER)

    def has_leftover_configuration(self) -> bool:
        return any(self._exists(name) for name in (defaults.CONFIG_MARKER, defaults.CREDENTIALS_MARKER))

    def remove_local_configuration(self) -> bool:
        """Delete the local runner configuration files.

        Returns
        -------
        bool
            False when there was nothing to remove.

        Raises
        ------
        ConfigureError
            If configuration files remain after removal.

        """
        if not self.has_leftover_configuration():
            return False
        files = " ".join(shlex.quote(name) for name in defaults.CONFIG_FILES)
        result = self._run(f"rm -f {files}")
        if not result.ok or self.has_leftover_configuration():
            raise ConfigureError(
                f"Could not remove existing runner configuration in {self.runner_dir}: {result.tail(3)}",
                result.exit_code, result.output,
                hint=f"Remove {self.runner_dir}/.runner and .credentials by hand.",
            )
        return True

    def configure(self, url: str, token: RegistrationToken, identity: RunnerIdentity,
                  token_expired: bool = False):
        """Register the runner with ``config.sh``.

        Raises
        ------
        ConfigureError
            With ``token_expired`` set when the token was rejected or had
            already expired.

        """
        args = [
            "--unattended",
            "--replace",
            "--url", url,
            "--token", token.value,
            "--name", identity.name,
            "--labels", identity.labels_arg,
            "--work", identity.work_dir,
        ]
        if identity.ephemeral:
            args.append("--ephemeral")
        result = self._run(
            "./config.sh " + " ".join(shlex.quote(arg) for arg in args), secrets=(token.value,)
        )
        if not result.ok:
            rejected = bool(TOKEN_REJECTED.search(result.output))
            raise ConfigureError(
                f"Failed to configure runner '{identity.name}' (exit code {result.exit_code}): "
                f"{result.tail(3)}".replace(token.value, "***"),
                result.exit_code, result.output.replace(token.value, "***"),
                token_expired=token_expired or rejected,
            )

    def service_installed(self) -> bool:
        return self._exists(defaults.SERVICE_MARKER)

    def stop_service(self) -> CommandResult:
        return self._run("sudo ./svc.sh stop")

    def uninstall_service(self) -> CommandResult:
        return self._run("sudo ./svc.sh uninstall")

    def install_service(self, user: str):
        result = self._run(f"sudo ./svc.sh install {shlex.quote(user)}")
        if not result.ok:
            raise ServiceError(
                f"Failed to install runner service for {user} (exit code {result.exit_code}): {result.tail(3)}",
                result.exit_code, result.output,
            )

    def start_service(self):
        result = self._run("sudo ./svc.sh start")
        if not result.ok:
            raise ServiceError(
                f"Failed to start runner service (exit code {result.exit_code}): {result.tail(3)}",
                result.exit_code, result.output,
            )

    def service_active(self) -> bool:
        result = self._run("sudo ./svc.sh status")
        return result.ok and "active (running)" in result.output

    def render_diagnostics(self) -> str:
        """Render the diagnostics script for this installation."""
        template = importlib.resources.files("ec2_gha_provision").joinpath("templates/diagnostics.sh.templ")
        with template.open() as f:
            template_content = f.read()
        return Template(template_content).substitute(
            runner_dir=self.runner_dir,
            process_patterns=" ".join(defaults.PACKAGE_PROCESS_PATTERNS),
            lock_files=" ".join(defaults.PACKAGE_LOCK_FILES),
        )

    def collect_diagnostics(self) -> CommandResult:
        return self.host.run_script(self.render_diagnostics(), timeout=120)
