"""Configuration module for pollci.

Secrets come from the command line. Everything else is loaded from an
optional .pollci/config file (KEY=value format), with environment variables
taking precedence over the file.
"""

import logging
import os
import platform
import tempfile
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

POLLCI_DIR = ".pollci"
CONFIG_FILE = "config"

# Remote status descriptions are capped at this many characters
STATUS_DESCRIPTION_LIMIT = 140


class ConfigError(ValueError):
    """Raised when the configuration is missing required values or is invalid."""

    pass


def default_ci_identifier() -> str:
    """CI identifier derived from the host, e.g. 'linux-x86_64'."""
    return f"{platform.system().lower()}-{platform.machine().lower()}"


def generate_worker_uid() -> str:
    """Random per-process fingerprint used to recognize this worker's writes."""
    return uuid.uuid4().hex[:8]


@dataclass
class Config:
    """Application configuration.

    Attributes:
        github_token: Token used for the hosting-service API and for cloning
        storage_account: Log sink account name
        storage_key: Log sink access key (base64)
        repos: Repositories to poll, in 'owner/repo' format
        worker_uid: Ownership fingerprint, generated once per process
        ci_identifier: Status context name shared by all workers of a kind
        command: Shell command that builds and tests a merged checkout
        workspace_dir: Directory under which job workspaces are created
        status_timeout: Seconds after which a pending status looks stuck
        job_timeout: Wall-clock deadline for the command, in seconds
        flush_interval: Seconds between log flushes while the command runs
        short_backoff: Sleep after a cycle that triggered work
        long_backoff: Sleep after an idle or failed cycle
        command_scan_cycles: Scan comments for commands every N cycles
        command_users: Logins allowed to issue commands (empty = anyone)
        publish_command: Command run when a pull request is merged (empty = off)
        publish_branch: Base branch whose merges trigger the publish command
        daemon_mode: Log to the file only, with no console output
    """

    github_token: str
    storage_account: str
    storage_key: str
    repos: list[str] = field(default_factory=list)
    worker_uid: str = field(default_factory=generate_worker_uid)
    ci_identifier: str = field(default_factory=default_ci_identifier)
    command: str = "npm install && npm test"
    workspace_dir: str = field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "pollci")
    )
    status_timeout: float = 300.0
    job_timeout: float = 3600.0
    flush_interval: float = 5.0
    short_backoff: float = 20.0
    long_backoff: float = 120.0
    command_scan_cycles: int = 3
    command_users: list[str] = field(default_factory=list)
    publish_command: str = ""
    publish_branch: str = "master"
    log_file: str = ".pollci/logs/pollci.log"
    log_size: int = 10 * 1024 * 1024
    log_backups: int = 5
    daemon_mode: bool = False
    otel_endpoint: str = ""
    otel_service_name: str = "pollci"

    @property
    def status_prefix(self) -> str:
        """Ownership fingerprint prepended to every status description."""
        return f"[{self.worker_uid}] "

    @property
    def secrets(self) -> list[str]:
        """Values that must never appear in logs or status descriptions."""
        return [self.github_token, self.storage_key]


def parse_config_file(config_path: Path) -> dict[str, str]:
    """Parse a KEY=value config file.

    Args:
        config_path: Path to the config file

    Returns:
        Dictionary of key-value pairs
    """
    config = {}
    with open(config_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                if (value.startswith('"') and value.endswith('"')) or (
                    value.startswith("'") and value.endswith("'")
                ):
                    value = value[1:-1]
                config[key] = value
    return config


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(
    github_token: str,
    storage_account: str,
    storage_key: str,
    workdir: str | None = None,
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Build the configuration from CLI secrets, the config file and the environment.

    Args:
        github_token: Hosting-service token (positional CLI argument)
        storage_account: Log sink account (positional CLI argument)
        storage_key: Log sink key (positional CLI argument)
        workdir: Optional workspace directory override
        config_path: Config file location, defaults to .pollci/config
        environ: Environment mapping, defaults to os.environ

    Returns:
        Config: A populated Config instance

    Raises:
        ConfigError: If required values are missing or any value is invalid
    """
    environ = os.environ if environ is None else environ
    config_path = config_path or Path.cwd() / POLLCI_DIR / CONFIG_FILE

    data: dict[str, str] = {}
    if config_path.exists():
        data.update(parse_config_file(config_path))
        logger.debug(f"Loaded config file {config_path}")
    for key, value in environ.items():
        if key in _KNOWN_KEYS:
            data[key] = value

    problems: list[str] = []
    if not github_token:
        problems.append("GitHub token is empty")
    if not storage_account:
        problems.append("storage account is empty")
    if not storage_key:
        problems.append("storage key is empty")

    repos = _split_list(data.get("REPOS", ""))
    if not repos:
        problems.append("REPOS is required (comma-separated owner/repo list)")
    for repo in repos:
        if repo.count("/") != 1 or repo.startswith("/") or repo.endswith("/"):
            problems.append(f"REPOS entry '{repo}' is not in owner/repo format")

    def number(key: str, default: float, minimum: float = 0) -> float:
        raw = data.get(key)
        if raw is None or raw == "":
            return default
        try:
            value = float(raw)
        except ValueError:
            problems.append(f"{key} must be a number, got '{raw}'")
            return default
        if value <= minimum:
            problems.append(f"{key} must be greater than {minimum:g}, got '{raw}'")
        return value

    status_timeout = number("STATUS_TIMEOUT", 300.0)
    job_timeout = number("JOB_TIMEOUT", 3600.0)
    flush_interval = number("FLUSH_INTERVAL", 5.0)
    short_backoff = number("SHORT_BACKOFF", 20.0)
    long_backoff = number("LONG_BACKOFF", 120.0)
    command_scan_cycles = int(number("COMMAND_SCAN_CYCLES", 3))
    log_size = int(number("LOG_SIZE", 10 * 1024 * 1024))
    log_backups = int(number("LOG_BACKUPS", 5, minimum=-1))

    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))

    if "LOG_LEVEL" in data:
        os.environ["LOG_LEVEL"] = data["LOG_LEVEL"]

    config = Config(
        github_token=github_token,
        storage_account=storage_account,
        storage_key=storage_key,
        repos=repos,
        ci_identifier=data.get("CI_IDENTIFIER") or default_ci_identifier(),
        command=data.get("COMMAND") or "npm install && npm test",
        status_timeout=status_timeout,
        job_timeout=job_timeout,
        flush_interval=flush_interval,
        short_backoff=short_backoff,
        long_backoff=long_backoff,
        command_scan_cycles=command_scan_cycles,
        command_users=_split_list(data.get("COMMAND_USERS", "")),
        publish_command=data.get("PUBLISH_COMMAND", ""),
        publish_branch=data.get("PUBLISH_BRANCH") or "master",
        log_file=data.get("LOG_FILE", ".pollci/logs/pollci.log"),
        log_size=log_size,
        log_backups=log_backups,
        daemon_mode=data.get("DAEMON_MODE", "false").lower() == "true",
        otel_endpoint=data.get("OTEL_EXPORTER_OTLP_ENDPOINT", ""),
        otel_service_name=data.get("OTEL_SERVICE_NAME") or "pollci",
    )
    if workdir:
        config.workspace_dir = workdir
    return config


_KNOWN_KEYS = {
    "REPOS",
    "CI_IDENTIFIER",
    "COMMAND",
    "STATUS_TIMEOUT",
    "JOB_TIMEOUT",
    "FLUSH_INTERVAL",
    "SHORT_BACKOFF",
    "LONG_BACKOFF",
    "COMMAND_SCAN_CYCLES",
    "COMMAND_USERS",
    "PUBLISH_COMMAND",
    "PUBLISH_BRANCH",
    "LOG_FILE",
    "LOG_SIZE",
    "LOG_BACKUPS",
    "LOG_LEVEL",
    "DAEMON_MODE",
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "OTEL_SERVICE_NAME",
}
