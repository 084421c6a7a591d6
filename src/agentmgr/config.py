"""
Configuration management for the agentmgr upgrade engine.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (~/.config/agentmgr/config.yml or --config path)
3. Environment variables (AGENTMGR_* prefix, __ for nesting)
4. Command-line overrides (highest precedence)

The resulting AppConfig is built once at the edge of the program and passed
explicitly to every component. Nothing below this module reads environment
variables or the current working directory.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("~/.config/agentmgr/config.yml")


def _default_home_dir() -> str:
    return str(Path.home() / "agentmgr")


# =============================================================================
# Paths Configuration
# =============================================================================


class PathsConfig(BaseModel):
    """Filesystem layout of a managed host.

    Attributes:
        home_dir: Root of the managed installation.
        skills_dir: Directory holding installed components and core skills.
        components_dir: Per-component data directories exported to hooks.
        locks_dir: Directory holding one lock record per upgrade target.
        backups_dir: Directory for self-upgrade backups.
        settings_file: Hook/automation settings file migrated on self-upgrade.
        managed_docs: Documents (relative to home_dir) carrying managed sections.
    """

    home_dir: str = Field(
        default_factory=_default_home_dir,
        description="Root of the managed installation",
    )
    skills_dir: str | None = Field(
        default=None,
        description="Installed components directory (default: <home_dir>/skills)",
    )
    components_dir: str | None = Field(
        default=None,
        description="Component data directory (default: <home_dir>/components)",
    )
    locks_dir: str | None = Field(
        default=None,
        description="Lock records directory (default: <home_dir>/.agentmgr/locks)",
    )
    backups_dir: str | None = Field(
        default=None,
        description="Self-upgrade backups directory (default: <home_dir>/.agentmgr/backups)",
    )
    settings_file: str | None = Field(
        default=None,
        description="Hook settings file (default: <home_dir>/.agent/settings.json)",
    )
    managed_docs: list[str] = Field(
        default_factory=lambda: ["AGENTS.md"],
        description="Documents under home_dir whose marked sections are managed",
    )

    def home_path(self) -> Path:
        """Return the expanded home directory."""
        return Path(self.home_dir).expanduser()

    def skills_path(self) -> Path:
        """Return the installed components directory."""
        if self.skills_dir:
            return Path(self.skills_dir).expanduser()
        return self.home_path() / "skills"

    def components_path(self) -> Path:
        """Return the component data directory."""
        if self.components_dir:
            return Path(self.components_dir).expanduser()
        return self.home_path() / "components"

    def locks_path(self) -> Path:
        """Return the lock records directory."""
        if self.locks_dir:
            return Path(self.locks_dir).expanduser()
        return self.home_path() / ".agentmgr" / "locks"

    def backups_path(self) -> Path:
        """Return the self-upgrade backups directory."""
        if self.backups_dir:
            return Path(self.backups_dir).expanduser()
        return self.home_path() / ".agentmgr" / "backups"

    def settings_path(self) -> Path:
        """Return the hook settings file path."""
        if self.settings_file:
            return Path(self.settings_file).expanduser()
        return self.home_path() / ".agent" / "settings.json"


# =============================================================================
# Upgrade Configuration
# =============================================================================


class UpgradeConfig(BaseModel):
    """Upgrade pipeline tuning.

    Attributes:
        lock_timeout_seconds: Age after which a lock record is stale.
        step_timeout_seconds: Upper bound for a single pipeline step.
        health_check_retries: Status polls after a restart.
        health_check_delay_seconds: Delay between status polls.
        merge_backend: Three-way merge implementation.
        service_prefix: Prefix of default component service names.
        core_services: Services owned by the core, restarted on self-upgrade.
    """

    lock_timeout_seconds: float = Field(
        default=600.0,
        description="Age in seconds after which a lock record is considered stale",
        gt=0,
    )
    step_timeout_seconds: float = Field(
        default=600.0,
        description="Maximum duration of a single pipeline step",
        gt=0,
    )
    health_check_retries: int = Field(
        default=5,
        description="Number of status polls after a service restart",
        ge=1,
    )
    health_check_delay_seconds: float = Field(
        default=0.5,
        description="Delay between status polls",
        ge=0,
    )
    merge_backend: str = Field(
        default="builtin",
        description="Three-way merge backend: 'builtin' or 'diff3'",
    )
    service_prefix: str = Field(
        default="agentmgr-",
        description="Prefix for default component service names",
    )
    core_services: list[str] = Field(
        default_factory=list,
        description="Core services stopped and restarted during self-upgrade",
    )

    @field_validator("merge_backend")
    @classmethod
    def validate_merge_backend(cls, v: str) -> str:
        """Validate the merge backend name."""
        valid = {"builtin", "diff3"}
        v_lower = v.lower()
        if v_lower not in valid:
            raise ValueError(
                f"Invalid merge backend: {v}. Must be one of: {', '.join(sorted(valid))}"
            )
        return v_lower


# =============================================================================
# Collaborator Configuration
# =============================================================================


class SupervisorConfig(BaseModel):
    """Process supervisor settings.

    Attributes:
        backend: Supervisor implementation ('pm2' or 'systemd').
        command_timeout_seconds: Timeout for a single supervisor command.
    """

    backend: str = Field(
        default="pm2",
        description="Process supervisor: 'pm2' or 'systemd'",
    )
    command_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for supervisor commands",
        gt=0,
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate the supervisor backend."""
        valid = {"pm2", "systemd"}
        v_lower = v.lower()
        if v_lower not in valid:
            raise ValueError(
                f"Invalid supervisor backend: {v}. Must be one of: {', '.join(sorted(valid))}"
            )
        return v_lower


class InstallerConfig(BaseModel):
    """Dependency installer settings.

    Attributes:
        timeout_seconds: Timeout for one install command.
        npm_omit_dev: Pass --omit=dev to npm.
        prefer_uv: Use ``uv pip`` when uv is on PATH.
    """

    timeout_seconds: float = Field(
        default=300.0,
        description="Timeout for dependency installation",
        gt=0,
    )
    npm_omit_dev: bool = Field(
        default=True,
        description="Skip development dependencies for npm manifests",
    )
    prefer_uv: bool = Field(
        default=True,
        description="Prefer 'uv pip' over 'pip' when available",
    )


class RoutesConfig(BaseModel):
    """Reverse-proxy route settings.

    Attributes:
        enabled: Whether declared HTTP routes are applied.
        caddyfile: Caddyfile that receives component route blocks.
        validate_command: Command run against a candidate file before deploy.
        reload_command: Command run after the file is written.
    """

    enabled: bool = Field(
        default=False,
        description="Apply component HTTP routes to the reverse proxy",
    )
    caddyfile: str = Field(
        default="/etc/caddy/Caddyfile",
        description="Caddyfile path",
    )
    validate_command: list[str] = Field(
        default_factory=lambda: [
            "caddy", "validate", "--config", "{path}", "--adapter", "caddyfile"
        ],
        description="Validation command; '{path}' is replaced by the candidate file",
    )
    reload_command: list[str] = Field(
        default_factory=lambda: [
            "caddy", "reload", "--config", "{path}", "--adapter", "caddyfile"
        ],
        description="Reload command; '{path}' is replaced by the Caddyfile path",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON records instead of plain text.
        debug_mode: Force debug level.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit one JSON object per log record",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        paths: Filesystem layout.
        upgrade: Upgrade pipeline settings.
        supervisor: Process supervisor settings.
        installer: Dependency installer settings.
        routes: Reverse-proxy route settings.
        logging: Logging configuration.
    """

    paths: PathsConfig = Field(
        default_factory=PathsConfig,
        description="Filesystem layout",
    )
    upgrade: UpgradeConfig = Field(
        default_factory=UpgradeConfig,
        description="Upgrade pipeline settings",
    )
    supervisor: SupervisorConfig = Field(
        default_factory=SupervisorConfig,
        description="Process supervisor settings",
    )
    installer: InstallerConfig = Field(
        default_factory=InstallerConfig,
        description="Dependency installer settings",
    )
    routes: RoutesConfig = Field(
        default_factory=RoutesConfig,
        description="Reverse-proxy route settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
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

    Booleans, integers, floats and comma-separated lists are recognised;
    anything else is returned as a string.
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


def _load_env_config(
    prefix: str = "AGENTMGR_",
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    ``AGENTMGR_UPGRADE__LOCK_TIMEOUT_SECONDS=300``. ``AGENTMGR_HOME`` is
    accepted as a shorthand for ``AGENTMGR_PATHS__HOME_DIR``.

    Args:
        prefix: Environment variable prefix.
        environ: Mapping to read instead of ``os.environ``.

    Returns:
        Dictionary with configuration values.
    """
    env = os.environ if environ is None else environ
    result: dict[str, Any] = {}

    for key, value in env.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        if config_key == "home":
            result = _deep_merge(result, {"paths": {"home_dir": value}})
            continue

        parts = config_key.split("__")

        current = result
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse configuration override flags.

    Args:
        args: Arguments to parse. An empty list is used when None so that
            embedding callers never consume the host program's argv.

    Returns:
        Dictionary with parsed overrides.
    """
    parser = argparse.ArgumentParser(
        description="agentmgr upgrade engine configuration",
        add_help=False,
    )
    parser.add_argument("--config", "-c", type=str)
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
    )
    parser.add_argument("--debug", action="store_true")

    parsed, _unknown = parser.parse_known_args(args or [])

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["debug_mode"] = True
        result["logging"]["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "AGENTMGR_",
    cli_args: list[str] | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file. If None, the
            ``--config`` override or the default path is used when present.
        env_prefix: Prefix for environment variables.
        cli_args: Override flags (``--config``, ``--log-level``, ``--debug``).
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(environ={"AGENTMGR_HOME": "/srv/agent"})
        >>> config.paths.skills_path()
        PosixPath('/srv/agent/skills')
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)
    cli_path = cli_config.pop("_config_path", None)

    if config_path is None:
        if cli_path:
            config_path = Path(cli_path)
        else:
            default_path = DEFAULT_CONFIG_PATH.expanduser()
            if default_path.exists():
                config_path = default_path
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(Path(config_path)))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix, environ))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
