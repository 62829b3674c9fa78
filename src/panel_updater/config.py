"""
Configuration management for the panel updater.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/panel-updater/config.yml or --config path)
3. Environment variables (PANEL_UPDATER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/panel-updater/config.yml")
DEFAULT_ENV_PREFIX = "PANEL_UPDATER_"

# Progress lines git and npm write to stderr that are not errors.
DEFAULT_BENIGN_STDERR_PATTERNS = [
    r"^From ",
    r"^remote:",
    r"^\s*\* branch",
    r"^\s*[0-9a-f]{7,}\.\.[0-9a-f]{7,}",
    r"^(Counting|Compressing|Receiving|Resolving|Unpacking|Enumerating) objects",
    r"^Already up[ -]to[ -]date",
    r"^npm (notice|WARN deprecated)",
]


def _validate_choice(value: str, valid: set[str], label: str) -> str:
    v_lower = value.lower()
    if v_lower not in valid:
        raise ValueError(
            f"Invalid {label}: {value}. Must be one of: {', '.join(sorted(valid))}"
        )
    return v_lower


# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """HTTP server settings.

    Attributes:
        listen: Listen address and port (e.g., "127.0.0.1:3002").
        log_level: Initial application log level.
    """

    listen: str = Field(
        default="127.0.0.1:3002",
        description="Listen address and port (e.g., '127.0.0.1:3002')",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v_lower = _validate_choice(
            v, {"debug", "info", "warn", "warning", "error", "critical"}, "log level"
        )
        if v_lower == "warn":
            return "warning"
        return v_lower

    @property
    def host(self) -> str:
        """Host part of ``listen``."""
        return self.listen.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        """Port part of ``listen``."""
        return int(self.listen.rsplit(":", 1)[1])


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON lines instead of plain text.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit one JSON object per log line",
    )


# =============================================================================
# Deployment Configuration
# =============================================================================


class DeploymentConfig(BaseModel):
    """Layout of the deployed application tree and its snapshots.

    Attributes:
        root: Root of the application tree that updates mutate.
        archive_dir: Snapshot directory, relative to root unless absolute.
        archive_prefix: Filename prefix for snapshots.
        exclude: Names or root-relative paths never captured in a snapshot.
        min_free_bytes: Free space required before a snapshot is written.
        restore_mode: 'overlay' keeps files absent from the archive,
            'clean' removes them after extraction.
    """

    root: str = Field(
        default="/opt/mikrotik-manager",
        description="Root of the application tree",
    )
    archive_dir: str = Field(
        default="backups",
        description="Snapshot directory (relative to root unless absolute)",
    )
    archive_prefix: str = Field(
        default="backup",
        description="Filename prefix for snapshots",
    )
    exclude: list[str] = Field(
        default_factory=lambda: [
            ".git",
            "node_modules",
            "api-backend/sessions",
            "api-backend/mikrotik_manager.db",
        ],
        description="Directory names or root-relative paths excluded from snapshots",
    )
    min_free_bytes: int = Field(
        default=100 * 1024 * 1024,
        ge=0,
        description="Free bytes required in the archive directory before a snapshot",
    )
    restore_mode: str = Field(
        default="overlay",
        description="Restore mode: 'overlay' or 'clean'",
    )

    @field_validator("archive_prefix")
    @classmethod
    def validate_archive_prefix(cls, v: str) -> str:
        """Reject prefixes that could not appear in a valid snapshot name."""
        if not v or not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError(
                f"Invalid archive prefix: {v!r}. Use letters, digits, '-' or '_'"
            )
        return v

    @field_validator("restore_mode")
    @classmethod
    def validate_restore_mode(cls, v: str) -> str:
        """Validate restore mode."""
        return _validate_choice(v, {"overlay", "clean"}, "restore mode")

    @property
    def root_path(self) -> Path:
        """Resolved application root."""
        return Path(self.root)

    @property
    def archive_path(self) -> Path:
        """Snapshot directory as an absolute path."""
        path = Path(self.archive_dir)
        if path.is_absolute():
            return path
        return self.root_path / path


# =============================================================================
# Version-control Configuration
# =============================================================================


class VCSConfig(BaseModel):
    """Version-control settings.

    Attributes:
        remote: Remote name to compare against and pull from.
        branch: Branch pulled during an update.
        require_ssh_remote: Refuse to check or update unless the remote
            URL uses SSH.
        timeout_seconds: Bound for each git invocation.
    """

    remote: str = Field(
        default="origin",
        description="Git remote name",
    )
    branch: str = Field(
        default="main",
        description="Branch pulled during an update",
    )
    require_ssh_remote: bool = Field(
        default=False,
        description="Require an SSH (git@...) remote URL",
    )
    timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for each git invocation in seconds",
    )


# =============================================================================
# Pipeline Configuration
# =============================================================================


class PipelineConfig(BaseModel):
    """Dependency installation and build settings.

    Attributes:
        subprojects: Directories (relative to root) whose dependencies are
            installed, in order.
        install_command: Command run in each subproject.
        build_command: Rebuild command, or None when no build step exists.
        build_cwd: Directory (relative to root) the build runs in.
        step_timeout_seconds: Bound for each pipeline step.
        benign_stderr_patterns: Regexes for stderr lines that are progress
            output rather than warnings.
        auto_rollback_on_failure: Restore the pre-update snapshot when an
            update fails after the snapshot was taken.
    """

    subprojects: list[str] = Field(
        default_factory=lambda: [".", "api-backend", "proxy"],
        description="Subproject directories relative to the root, in install order",
    )
    install_command: str = Field(
        default="npm install",
        description="Dependency install command run in each subproject",
    )
    build_command: str | None = Field(
        default="npm run build",
        description="Build command, or null for deployments without a build",
    )
    build_cwd: str = Field(
        default=".",
        description="Directory the build command runs in, relative to the root",
    )
    step_timeout_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Timeout for each pipeline step in seconds",
    )
    benign_stderr_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BENIGN_STDERR_PATTERNS),
        description="Regexes matching stderr lines that are not warnings",
    )
    auto_rollback_on_failure: bool = Field(
        default=False,
        description="Restore the pre-update snapshot when an update fails",
    )

    @field_validator("subprojects")
    @classmethod
    def validate_subprojects(cls, v: list[str]) -> list[str]:
        """Subprojects must stay inside the application root."""
        for entry in v:
            if Path(entry).is_absolute() or ".." in Path(entry).parts:
                raise ValueError(f"Subproject must be relative to the root: {entry}")
        return v


# =============================================================================
# Supervisor Configuration
# =============================================================================


class SupervisorConfig(BaseModel):
    """Process supervisor settings.

    Attributes:
        kind: 'pm2', 'systemd' or 'none'.
        services: Service names restarted after an update or rollback.
        restart_delay_seconds: Delay between the terminal event and the
            restart command.
        timeout_seconds: Bound for the restart command itself.
    """

    kind: str = Field(
        default="pm2",
        description="Supervisor: 'pm2', 'systemd' or 'none'",
    )
    services: list[str] = Field(
        default_factory=lambda: ["mikrotik-manager", "mikrotik-api-backend"],
        description="Services restarted after an update or rollback",
    )
    restart_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Delay before the restart command is issued",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for the restart command",
    )

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Validate supervisor kind."""
        return _validate_choice(v, {"pm2", "systemd", "none"}, "supervisor kind")


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        server: HTTP server settings.
        logging: Logging configuration.
        deployment: Application tree and snapshot layout.
        vcs: Version-control settings.
        pipeline: Install and build settings.
        supervisor: Process supervisor settings.
    """

    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="Server settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    deployment: DeploymentConfig = Field(
        default_factory=DeploymentConfig,
        description="Application tree and snapshot layout",
    )
    vcs: VCSConfig = Field(
        default_factory=VCSConfig,
        description="Version-control settings",
    )
    pipeline: PipelineConfig = Field(
        default_factory=PipelineConfig,
        description="Install and build settings",
    )
    supervisor: SupervisorConfig = Field(
        default_factory=SupervisorConfig,
        description="Process supervisor settings",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    ``PANEL_UPDATER_DEPLOYMENT__ROOT=/srv/panel``.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def build_arg_parser(parser: argparse.ArgumentParser | None = None) -> argparse.ArgumentParser:
    """
    Add the configuration options shared by every entry point.

    Args:
        parser: Parser to extend. A new one is created when omitted.

    Returns:
        The parser.
    """
    if parser is None:
        parser = argparse.ArgumentParser(
            description="Panel self-update and rollback orchestrator",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--root",
        type=str,
        help="Override the application root",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """
    Convert parsed command-line options into a config override dict.

    The config path, when given, is returned under ``_config_path``.
    """
    result: dict[str, Any] = {}

    if getattr(parsed, "config", None):
        result["_config_path"] = parsed.config

    if getattr(parsed, "root", None):
        result["deployment"] = {"root": parsed.root}

    if getattr(parsed, "log_level", None):
        result["server"] = {"log_level": parsed.log_level}
        result["logging"] = {"level": parsed.log_level}

    if getattr(parsed, "debug", False):
        result.setdefault("server", {})["log_level"] = "debug"
        result.setdefault("logging", {})["level"] = "debug"

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """Parse configuration options from a raw argument list."""
    parsed, _ = build_arg_parser().parse_known_args(args)
    return cli_overrides(parsed)


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file. If None, the
            ``--config`` option or the default path (when it exists) is used.
        env_prefix: Prefix for environment variables.
        cli_args: Raw command-line arguments, or overrides already produced
            by ``cli_overrides``. An empty list means no CLI overrides.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.supervisor.kind
        'pm2'
    """
    config_dict: dict[str, Any] = {}

    if isinstance(cli_args, dict):
        cli_config = dict(cli_args)
    else:
        cli_config = _parse_cli_args(cli_args if cli_args is not None else [])

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
