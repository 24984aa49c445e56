"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    AWSConfig,
    DatabaseConfig,
    ControllerConfig,
    APIConfig,
    PluginConfig,
    Config,
    load_config,
    get_config,
    reset_config,
)


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        cfg = DatabaseConfig()
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "ecr_operator"
        assert cfg.user == "operator"
        assert cfg.password == ""
        assert cfg.min_pool_size == 2
        assert cfg.max_pool_size == 10

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "3",
            "DB_MAX_POOL_SIZE": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DatabaseConfig.from_env()
            assert cfg.host == "envhost"
            assert cfg.port == 5434
            assert cfg.database == "envdb"
            assert cfg.user == "envuser"
            assert cfg.password == "envpassword"
            assert cfg.min_pool_size == 3
            assert cfg.max_pool_size == 15

    def test_from_env_missing_password_raises(self):
        with patch.dict(os.environ, {"DB_PASSWORD": ""}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                DatabaseConfig.from_env()
            assert "DB_PASSWORD" in str(exc_info.value)

    def test_password_not_in_repr(self):
        cfg = DatabaseConfig(password="secret123")
        assert "secret123" not in repr(cfg)


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        cfg = ControllerConfig()
        assert cfg.max_concurrent_reconciles == 1
        assert cfg.requeue_delay == 5.0
        assert cfg.resync_on_start is True
        assert cfg.backoff_base_delay == 5.0
        assert cfg.backoff_max_delay == 300.0
        assert cfg.backoff_jitter_factor == 0.1

    def test_from_env(self):
        env_vars = {
            "MAX_CONCURRENT_RECONCILES": "4",
            "REQUEUE_DELAY": "2.5",
            "RESYNC_ON_START": "false",
            "BACKOFF_BASE_DELAY": "10",
            "BACKOFF_MAX_DELAY": "600",
            "BACKOFF_JITTER_FACTOR": "0.15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = ControllerConfig.from_env()
            assert cfg.max_concurrent_reconciles == 4
            assert cfg.requeue_delay == 2.5
            assert cfg.resync_on_start is False
            assert cfg.backoff_base_delay == 10
            assert cfg.backoff_max_delay == 600
            assert cfg.backoff_jitter_factor == 0.15

    def test_from_env_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = ControllerConfig.from_env()
            assert cfg.max_concurrent_reconciles == 1
            assert cfg.requeue_delay == 5.0
            assert cfg.resync_on_start is True


class TestAWSConfig:
    """Tests for AWSConfig class."""

    def test_default_values(self):
        cfg = AWSConfig()
        assert cfg.region is None
        assert cfg.profile is None
        assert cfg.endpoint_url is None
        assert cfg.max_attempts == 3

    def test_from_env(self):
        env_vars = {
            "AWS_REGION": "eu-west-1",
            "AWS_PROFILE": "ops",
            "ECR_ENDPOINT_URL": "http://localhost:4566",
            "AWS_MAX_ATTEMPTS": "6",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = AWSConfig.from_env()
            assert cfg.region == "eu-west-1"
            assert cfg.profile == "ops"
            assert cfg.endpoint_url == "http://localhost:4566"
            assert cfg.max_attempts == 6

    def test_default_region_fallback(self):
        with patch.dict(os.environ, {"AWS_DEFAULT_REGION": "us-east-2"}, clear=True):
            assert AWSConfig.from_env().region == "us-east-2"

    def test_empty_values_are_none(self):
        with patch.dict(os.environ, {"AWS_PROFILE": "", "ECR_ENDPOINT_URL": ""}, clear=True):
            cfg = AWSConfig.from_env()
            assert cfg.profile is None
            assert cfg.endpoint_url is None


class TestAPIConfig:
    """Tests for APIConfig class."""

    def test_default_values(self):
        cfg = APIConfig()
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 8000
        assert cfg.log_level == "INFO"

    def test_from_env(self):
        env_vars = {"API_HOST": "127.0.0.1", "API_PORT": "3000", "LOG_LEVEL": "DEBUG"}
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = APIConfig.from_env()
            assert cfg.host == "127.0.0.1"
            assert cfg.port == 3000
            assert cfg.log_level == "DEBUG"


class TestPluginConfig:
    """Tests for PluginConfig class."""

    def test_default_values(self):
        cfg = PluginConfig()
        assert cfg.enabled_reconcilers == []
        assert cfg.enabled_input_plugins == []
        assert cfg.plugin_configs == {}

    def test_from_env(self):
        env_vars = {
            "ENABLED_RECONCILERS": "repository, repository-policy ",
            "ENABLED_INPUT_PLUGINS": "http",
            "PLUGIN_CONFIGS": '{"http": {"port": 9000}}',
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = PluginConfig.from_env()
            assert cfg.enabled_reconcilers == ["repository", "repository-policy"]
            assert cfg.enabled_input_plugins == ["http"]
            assert cfg.plugin_configs == {"http": {"port": 9000}}

    def test_from_env_empty_plugins(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = PluginConfig.from_env()
            assert cfg.enabled_reconcilers == []
            assert cfg.enabled_input_plugins == []

    def test_from_env_invalid_json_raises(self):
        with patch.dict(os.environ, {"PLUGIN_CONFIGS": "not valid json"}, clear=False):
            with pytest.raises(ValueError) as exc_info:
                PluginConfig.from_env()
            assert "PLUGIN_CONFIGS" in str(exc_info.value)

    def test_get_plugin_config(self):
        cfg = PluginConfig(plugin_configs={"http": {"port": 9000}})
        assert cfg.get_plugin_config("http") == {"port": 9000}
        assert cfg.get_plugin_config("nonexistent") == {}


class TestConfig:
    """Tests for main Config class."""

    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.controller, ControllerConfig)
        assert isinstance(cfg.aws, AWSConfig)
        assert isinstance(cfg.api, APIConfig)
        assert isinstance(cfg.plugins, PluginConfig)

    def test_from_env(self):
        env_vars = {
            "DB_HOST": "testhost",
            "DB_PASSWORD": "testpass",
            "REQUEUE_DELAY": "7",
            "AWS_REGION": "eu-west-1",
            "API_PORT": "9000",
            "ENABLED_RECONCILERS": "repository",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = Config.from_env()
            assert cfg.database.host == "testhost"
            assert cfg.controller.requeue_delay == 7.0
            assert cfg.aws.region == "eu-west-1"
            assert cfg.api.port == 9000
            assert cfg.plugins.enabled_reconcilers == ["repository"]


class TestConfigSingleton:
    """Tests for config singleton functions."""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_get_config_loads_if_none(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=False):
            cfg = get_config()
            assert isinstance(cfg, Config)

    def test_singleton_returns_same_instance(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=False):
            assert load_config() is get_config()

    def test_reset_config(self):
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=False):
            cfg1 = load_config()
            reset_config()
            assert config.config is None
            assert load_config() is not cfg1
