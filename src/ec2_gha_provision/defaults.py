"""Default values for ec2-gha-provision configuration."""

# Runner identity defaults
RUNNER_NAME = "gha_aws_runner"
RUNNER_LABELS = "self-hosted,gha_aws_runner"
RUNNER_WORK_DIR = "_work"
RUNNER_DIR = "actions-runner"
RUNNER_USER = "ubuntu"

# Runner package
RUNNER_VERSION = "2.311.0"
RUNNER_ARCH = "linux-x64"
RUNNER_RELEASE_URL = "https://github.com/actions/runner/releases/download/v{version}/{archive}"

# GitHub endpoints
GITHUB_API_URL = "https://api.github.com"
GITHUB_SERVER_URL = "https://github.com"
GITHUB_API_VERSION = "2022-11-28"

# Readiness gating
READINESS_TIMEOUT = 600      # 10 minutes (in seconds)
READINESS_INTERVAL = 10      # 10 seconds
DISK_FLOOR_MB = 2048
TMP_FLOOR_MB = 500
MEMORY_RECOMMENDED_MB = 1024

# Endpoints the host must reach; failures only warn
CONNECTIVITY_TIMEOUT = 10
PACKAGE_MIRRORS = ("http://archive.ubuntu.com/ubuntu/", "http://security.ubuntu.com/ubuntu/")

# Package manager contention
PACKAGE_WAIT_TIMEOUT = 300   # 5 minutes (in seconds)
CONTENTION_TIMEOUT = 120     # 2 minutes (in seconds)
CONTENTION_INTERVAL = 5
PACKAGE_PROCESS_PATTERNS = ("apt", "apt-get", "aptitude", "dpkg", "unattended-upgrade")
PACKAGE_LOCK_FILES = (
    "/var/lib/dpkg/lock",
    "/var/lib/dpkg/lock-frontend",
    "/var/cache/apt/archives/lock",
    "/var/lib/apt/lists/lock",
)
UPGRADE_SERVICE = "unattended-upgrades"

# Retry budgets
INSTALL_RETRIES = 3
INSTALL_BASE_DELAY = 30
CONFIGURE_RETRIES = 1
CONFIGURE_BASE_DELAY = 5
MAX_DELAY = 300              # 5 minutes (in seconds)

# Service start and registration verification
SERVICE_CHECKS = 3
SERVICE_CHECK_INTERVAL = 2
VERIFY_CHECKS = 3
VERIFY_INTERVAL = 5

# SSH transport
REACHABLE_TIMEOUT = 300      # 5 minutes (in seconds)
REACHABLE_INTERVAL = 5
SSH_CONNECT_TIMEOUT = 60
COMMAND_TIMEOUT = 900        # 15 minutes (in seconds)

# Tools the target host must provide
REQUIRED_REMOTE_COMMANDS = ("curl", "tar", "sudo", "systemctl")

# Files written by the runner software once it is configured
CONFIG_MARKER = ".runner"
CREDENTIALS_MARKER = ".credentials"
CONFIG_FILES = (
    ".runner",
    ".runner_migrated",
    ".credentials",
    ".credentials_migrated",
    ".credentials_rsaparams",
)
SERVICE_MARKER = ".service"
# Written once installdependencies.sh has succeeded
DEPENDENCIES_MARKER = ".dependencies_installed"

# Sentinel for provisioning the machine we are running on
LOCAL = "local"
