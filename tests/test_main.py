"""Unit tests for main.py - application wiring."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from config import Config
from controller import Controller
from main import Application
from plugins.inputs.http import HTTPInputPlugin
from plugins.reconcilers import (
    LifecyclePolicyReconciler,
    RepositoryPolicyReconciler,
    RepositoryReconciler,
)
from plugins.registry import PluginRegistry


def make_config(**plugin_settings):
    cfg = Config.default()
    cfg.database.password = "testpass"
    cfg.aws.region = "eu-west-1"
    cfg.api.port = 9000
    for key, value in plugin_settings.items():
        setattr(cfg.plugins, key, value)
    return cfg


def service_mock():
    instance = MagicMock()
    instance.connect = AsyncMock()
    instance.close = AsyncMock()
    instance.initialize_schema = AsyncMock()
    return MagicMock(return_value=instance)


@pytest.fixture
def registry():
    return PluginRegistry()


@pytest.fixture
def builtins(registry):
    def register():
        for reconciler_class in (
            RepositoryReconciler,
            LifecyclePolicyReconciler,
            RepositoryPolicyReconciler,
        ):
            registry.register_reconciler_plugin(reconciler_class)
        registry.register_input_plugin(HTTPInputPlugin)

    return register


async def initialized(cfg, registry, builtins):
    with patch("main.get_config", return_value=cfg):
        app = Application()

    db_cls = service_mock()
    gateway_cls = service_mock()
    with patch("main.register_builtin_plugins", side_effect=builtins), patch(
        "main.get_registry", return_value=registry
    ), patch("main.DatabaseManager", db_cls), patch("main.EcrGateway", gateway_cls):
        await app.initialize()
    return app, db_cls, gateway_cls


@pytest.mark.asyncio
class TestApplication:
    """Tests for Application.initialize and stop."""

    async def test_initialize_wires_components(self, registry, builtins):
        app, db_cls, gateway_cls = await initialized(make_config(), registry, builtins)

        db = db_cls.return_value
        db_cls.assert_called_once()
        assert db_cls.call_args.kwargs["password"] == "testpass"
        assert db_cls.call_args.kwargs["event_bus"] is app.event_bus
        db.connect.assert_awaited_once()
        db.initialize_schema.assert_awaited_once()

        gateway_cls.assert_called_once_with(
            region="eu-west-1", profile=None, endpoint_url=None, max_attempts=3
        )
        gateway_cls.return_value.connect.assert_awaited_once()

        assert isinstance(app.controller, Controller)
        assert app.controller.ctx.gateway is gateway_cls.return_value
        assert app.controller.ctx.requeue_delay == 5.0

    async def test_http_plugin_configured(self, registry, builtins):
        app, db_cls, _ = await initialized(make_config(), registry, builtins)

        assert len(app.input_plugins) == 1
        plugin = app.input_plugins[0]
        assert plugin.name == "http"
        assert plugin.port == 9000
        assert plugin._db_manager is db_cls.return_value
        assert plugin._event_bus is app.event_bus
        assert plugin._registry is registry

    async def test_enabled_reconcilers_filter(self, registry, builtins):
        cfg = make_config(enabled_reconcilers=["repository"])

        await initialized(cfg, registry, builtins)

        assert registry.list_reconciler_plugins() == ["repository"]
        assert registry.get_reconciler_plugin_info("repository-policy") is None

    async def test_unknown_input_plugin_skipped(self, registry, builtins):
        cfg = make_config(enabled_input_plugins=["sqs"])

        app, _, _ = await initialized(cfg, registry, builtins)

        assert app.input_plugins == []

    async def test_stop_closes_everything_once(self, registry, builtins):
        app, db_cls, gateway_cls = await initialized(make_config(), registry, builtins)
        plugin = app.input_plugins[0]
        plugin.stop = AsyncMock()

        await app.stop()
        await app.stop()

        plugin.stop.assert_awaited_once()
        gateway_cls.return_value.close.assert_awaited_once()
        db_cls.return_value.close.assert_awaited_once()
        assert app.running is False
