"""Configuration management for deployctl using Pydantic."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from deployctl.core.exceptions import ConfigError
from deployctl.core.logging import LogLevel
from deployctl.core.output import OutputFormat
from deployctl.core.utils import get_config_dir, merge_dicts


class SSHConfig(BaseModel):
    """SSH connection configuration."""

    user: str = "root"
    port: int = 22
    key_file: str | None = None
    key_env: str = "SSH_PRIVATE_KEY"
    password: str | None = None
    connect_timeout: float = 30.0

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    def get_user(self) -> str:
        """Get SSH user from config or environment."""
        return os.environ.get("DEPLOYCTL_SSH_USER") or self.user

    def get_key_file(self) -> str | None:
        """Get private key path from config or environment."""
        return os.environ.get("DEPLOYCTL_SSH_KEY_FILE") or self.key_file

    def get_private_key(self) -> str | None:
        """Get private key material from the configured environment variable."""
        if not self.key_env:
            return None
        return os.environ.get(self.key_env) or None

    def get_password(self) -> str | None:
        """Get SSH password from config or environment."""
        password = self.password
        if password == "from_env" or password is None:
            password = os.environ.get("DEPLOYCTL_SSH_PASSWORD")
        return password


class RegistryConfig(BaseModel):
    """Container registry configuration."""

    url: str | None = None
    username: str | None = None
    password: str | None = None

    def get_url(self) -> str | None:
        """Get registry URL from config or environment."""
        return (
            os.environ.get("DEPLOYCTL_REGISTRY")
            or os.environ.get("REGISTRY_URL")
            or self.url
        )

    def get_username(self) -> str | None:
        """Get registry user from config or environment."""
        return (
            os.environ.get("DEPLOYCTL_REGISTRY_USER")
            or os.environ.get("REGISTRY_USER")
            or self.username
        )

    def get_password(self) -> str | None:
        """Get registry password from config or environment."""
        password = self.password
        if password == "from_env" or password is None:
            password = (
                os.environ.get("DEPLOYCTL_REGISTRY_PASSWORD")
                or os.environ.get("REGISTRY_PASSWORD")
            )
        return password

    @property
    def has_credentials(self) -> bool:
        return bool(self.get_url() and self.get_username() and self.get_password())


class DeploySettings(BaseModel):
    """Deployment engine settings."""

    compose_file: str = "docker-compose.yml"
    remote_work_dir: str = "deployctl-deploy"
    dynamic_config_dir: str = "/etc/traefik/config/dynamic"
    proxy_templates_dir: str = "traefik/dynamic"
    container_engine: str = "auto"  # auto, docker, podman
    health_timeout: float = 10.0
    traffic_health_timeout: float = 10.0
    traffic_rollback_timeout: float = 30.0
    rollback_step_timeout: float = 300.0
    health_interval: float = 1.0
    lock_ttl: int = 3600
    history_limit: int = 100

    @field_validator("container_engine")
    @classmethod
    def validate_engine(cls, v: str) -> str:
        if v not in ("auto", "docker", "podman"):
            raise ValueError("container_engine must be 'auto', 'docker', or 'podman'")
        return v

    @field_validator(
        "health_timeout",
        "traffic_health_timeout",
        "traffic_rollback_timeout",
        "rollback_step_timeout",
        "health_interval",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return v

    def get_remote_work_dir(self) -> str:
        """Get the remote working directory from config or environment."""
        return os.environ.get("DEPLOYCTL_REMOTE_WORK_DIR") or self.remote_work_dir


class ProfileConfig(BaseModel):
    """Profile configuration grouping all deployment settings."""

    hosts: list[str] = Field(default_factory=list)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    deploy: DeploySettings = Field(default_factory=DeploySettings)


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.WARNING
    dry_run: bool = False
    confirm_destructive: bool = True

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class DeployctlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    profiles: dict[str, ProfileConfig] = Field(default_factory=lambda: {"default": ProfileConfig()})

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """Get a profile by name, defaulting to 'default'."""
        profile_name = name or "default"
        if profile_name not in self.profiles:
            raise ConfigError(f"Profile '{profile_name}' not found")
        return self.profiles[profile_name]


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["deployctl.yaml", "deployctl.yml", ".deployctl.yaml", ".deployctl.yml"]

    def __init__(self, user_config_path: Path | None = None):
        self._user_config_path = user_config_path or get_config_dir() / "config.yaml"
        self._config: DeployctlConfig | None = None

    def load(
        self,
        config_file: str | Path | None = None,
        profile: str | None = None,
    ) -> DeployctlConfig:
        """Load configuration from files.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. Project config (./deployctl.yaml)
        3. User config (~/.deployctl/config.yaml)

        Args:
            config_file: Optional explicit config file path
            profile: Profile name that must exist in the result

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        if self._user_config_path.exists():
            configs.append(self._load_yaml_file(self._user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged = self._merge_configs(configs)

        try:
            self._config = DeployctlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        if profile:
            self._config.get_profile(profile)
        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")
        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content

    def _merge_configs(self, configs: list[dict[str, Any]]) -> dict[str, Any]:
        """Deep merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = merge_dicts(result, config)
        return result


# Global config loader instance
_config_loader = ConfigLoader()


def load_config(
    config_file: str | Path | None = None,
    profile: str | None = None,
) -> DeployctlConfig:
    """Load deployctl configuration.

    Args:
        config_file: Optional explicit config file path
        profile: Profile name to use

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file, profile)


def get_default_config() -> DeployctlConfig:
    """Get default configuration without loading from files."""
    return DeployctlConfig()
