"""
Configuration module for the ECR Operator.

Loads configuration from environment variables.
Supports plugin-based architecture with plugin-specific configuration.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _split_list(value: str) -> List[str]:
    return [p.strip() for p in value.split(",") if p.strip()] if value else []


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "ecr_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "ecr_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class ControllerConfig:
    """Dispatcher configuration shared by all reconciler kinds."""

    max_concurrent_reconciles: int = 1
    requeue_delay: float = 5.0  # seconds, for retriable failures
    resync_on_start: bool = True

    # Exponential backoff for reconcile errors
    backoff_base_delay: float = 5.0
    backoff_max_delay: float = 300.0
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "1")),
            requeue_delay=float(os.getenv("REQUEUE_DELAY", "5")),
            resync_on_start=os.getenv("RESYNC_ON_START", "true").lower() == "true",
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class AWSConfig:
    """AWS client configuration for the ECR gateway."""

    region: Optional[str] = None
    profile: Optional[str] = None
    endpoint_url: Optional[str] = None  # e.g. a LocalStack endpoint
    max_attempts: int = 3

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            region=os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION"),
            profile=os.getenv("AWS_PROFILE") or None,
            endpoint_url=os.getenv("ECR_ENDPOINT_URL") or None,
            max_attempts=int(os.getenv("AWS_MAX_ATTEMPTS", "3")),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # List of enabled plugin names (empty = use all registered plugins)
    enabled_reconcilers: List[str] = field(default_factory=list)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        plugin_configs = {}
        if os.getenv("PLUGIN_CONFIGS"):
            try:
                plugin_configs = json.loads(os.getenv("PLUGIN_CONFIGS"))
            except json.JSONDecodeError as e:
                raise ValueError(f"PLUGIN_CONFIGS is not valid JSON: {e}")

        return cls(
            enabled_reconcilers=_split_list(os.getenv("ENABLED_RECONCILERS", "")),
            enabled_input_plugins=_split_list(os.getenv("ENABLED_INPUT_PLUGINS", "")),
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    aws: AWSConfig
    api: APIConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            aws=AWSConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            aws=AWSConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
