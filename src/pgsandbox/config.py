"""Configuration loading and resolution for pgsandbox."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


@dataclass
class ServerConfig:
    """Network coordinates and superuser of the temporary server."""

    host: str = "127.0.0.1"
    port: int | None = None  # None selects a free port
    user: str | None = None  # None means "postgres", refused when running as root


@dataclass
class BinariesConfig:
    """Where to look for ``initdb`` and ``postgres``."""

    postgres_home: str | None = None  # falls back to $POSTGRES_HOME


@dataclass
class StartupConfig:
    """Readiness polling budget."""

    attempts: int = 50
    interval_ms: int = 100
    connect_timeout_ms: int = 500


@dataclass
class ShutdownConfig:
    """Grace period before escalating SIGTERM to SIGKILL."""

    attempts: int = 50
    interval_ms: int = 100


@dataclass
class WorkspaceConfig:
    """Temporary directory placement."""

    base_dir: str | None = None
    socket_path_limit: int = 85
    fallback_root: str | None = None


@dataclass
class PortsConfig:
    """Port allocation behaviour."""

    fallback: int = 54321


@dataclass
class PgSandboxConfig:
    """Complete pgsandbox configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    binaries: BinariesConfig = field(default_factory=BinariesConfig)
    startup: StartupConfig = field(default_factory=StartupConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    ports: PortsConfig = field(default_factory=PortsConfig)


# Environment variable -> (section, key)
_ENV_VARS = {
    "PGSANDBOX_HOST": ("server", "host"),
    "PGSANDBOX_PORT": ("server", "port"),
    "PGSANDBOX_USER": ("server", "user"),
    "PGSANDBOX_BASE_DIR": ("workspace", "base_dir"),
}

_INT_FIELDS = {
    ("server", "port"),
    ("startup", "attempts"),
    ("startup", "interval_ms"),
    ("startup", "connect_timeout_ms"),
    ("shutdown", "attempts"),
    ("shutdown", "interval_ms"),
    ("workspace", "socket_path_limit"),
    ("ports", "fallback"),
}


def load_config(
    project_path: Path | None = None, cli_overrides: dict[str, Any] | None = None
) -> PgSandboxConfig:
    """
    Load configuration with priority order (highest to lowest):
    1. CLI args (via cli_overrides)
    2. PGSANDBOX_* environment variables
    3. .pgsandbox.toml in project root
    4. ~/.config/pgsandbox/config.toml (user-global)
    5. Built-in defaults

    Args:
        project_path: Path to the project root (for finding .pgsandbox.toml)
        cli_overrides: Dictionary of CLI overrides (e.g., {"server": {"port": 5555}})

    Returns:
        Fully resolved and validated PgSandboxConfig

    Raises:
        ConfigError: If a value has the wrong type or is out of range.
    """
    config = PgSandboxConfig()

    # Layer 4: User-global config
    user_config_path = Path.home() / ".config" / "pgsandbox" / "config.toml"
    if user_config_path.exists():
        _merge_config_from_file(config, user_config_path)

    # Layer 3: Project-level config
    if project_path:
        project_config_path = project_path / ".pgsandbox.toml"
        if project_config_path.exists():
            _merge_config_from_file(config, project_config_path)

    # Layer 2: Environment
    _merge_config_from_dict(config, _env_overrides())

    # Layer 1: CLI overrides
    if cli_overrides:
        _merge_config_from_dict(config, cli_overrides)

    validate_config(config)
    return config


def _merge_config_from_file(config: PgSandboxConfig, path: Path) -> None:
    """Load TOML file and merge into existing config."""
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    _merge_config_from_dict(config, data)


def _env_overrides() -> dict[str, Any]:
    data: dict[str, dict[str, Any]] = {}
    for var, (section, key) in _ENV_VARS.items():
        value = os.environ.get(var)
        if value:
            data.setdefault(section, {})[key] = value
    return data


def _merge_config_from_dict(config: PgSandboxConfig, data: dict[str, Any]) -> None:
    """Merge dictionary data into config object.

    Unknown sections and keys are ignored. Integer fields given as strings
    (environment variables) are converted.
    """
    for section_name, section_data in data.items():
        section = getattr(config, section_name, None)
        if section is None or not isinstance(section_data, dict):
            continue
        for key, value in section_data.items():
            if not hasattr(section, key):
                continue
            if (section_name, key) in _INT_FIELDS and value is not None:
                value = _coerce_int(section_name, key, value)
            setattr(section, key, value)


def _coerce_int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{section}.{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key} must be an integer, got {value!r}") from exc


def validate_config(config: PgSandboxConfig) -> None:
    """
    Check ranges of numeric settings.

    Args:
        config: The configuration to check

    Raises:
        ConfigError: If any value is out of range.
    """
    port = config.server.port
    if port is not None and not 1 <= port <= 65535:
        raise ConfigError(f"server.port must be between 1 and 65535, got {port}")
    if config.server.user == "":
        raise ConfigError("server.user must not be empty")
    if not 1 <= config.ports.fallback <= 65535:
        raise ConfigError(
            f"ports.fallback must be between 1 and 65535, got {config.ports.fallback}"
        )
    for name in ("attempts", "interval_ms", "connect_timeout_ms"):
        if getattr(config.startup, name) <= 0:
            raise ConfigError(f"startup.{name} must be positive")
    for name in ("attempts", "interval_ms"):
        if getattr(config.shutdown, name) <= 0:
            raise ConfigError(f"shutdown.{name} must be positive")
    if config.workspace.socket_path_limit <= 0:
        raise ConfigError("workspace.socket_path_limit must be positive")
