"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for reconciler and input
plugins, handling discovery, registration, and instantiation.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.inputs.base import InputPlugin
from plugins.reconcilers.base import ReconcilerPlugin

logger = logging.getLogger(__name__)

RECONCILER_ENTRY_POINT_GROUP = "ecr_operator.reconcilers"


class PluginRegistry:
    """
    Central registry for all plugins.

    A resource kind can be claimed by exactly one reconciler.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._input_plugins: Dict[str, Type[InputPlugin]] = {}
        self._reconciler_plugins: Dict[str, Type[ReconcilerPlugin]] = {}

        # Cached plugin metadata to avoid repeated instantiation
        self._reconciler_plugin_info: Dict[str, Dict[str, Any]] = {}

        # Instantiated plugin instances
        self._input_instances: Dict[str, InputPlugin] = {}
        self._reconciler_instances: Dict[str, ReconcilerPlugin] = {}

        self._input_plugin_configs: Dict[str, Dict[str, Any]] = {}

        # Resource kind -> reconciler plugin name
        self._resource_type_to_reconciler: Dict[str, str] = {}

    # Registration methods

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._input_plugins:
            logger.warning(f"Overwriting existing input plugin: {name}")

        self._input_plugins[name] = plugin_class
        self._input_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {name} v{version}")

    def register_reconciler_plugin(
        self, plugin_class: Type[ReconcilerPlugin]
    ) -> None:
        """
        Register a reconciler plugin class.

        Args:
            plugin_class: The ReconcilerPlugin subclass to register

        Raises:
            ValueError: If a resource kind is already claimed by another reconciler
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        resource_types = list(temp_instance.resource_types)

        if name in self._reconciler_plugins:
            logger.warning(f"Overwriting existing reconciler plugin: {name}")

        for rt in resource_types:
            existing = self._resource_type_to_reconciler.get(rt)
            if existing and existing != name:
                raise ValueError(
                    f"Resource type '{rt}' is already claimed by "
                    f"reconciler '{existing}'. Cannot register '{name}'."
                )

        self._reconciler_plugins[name] = plugin_class
        self._reconciler_plugin_info[name] = {
            "name": name,
            "resource_types": resource_types,
        }
        self._reconciler_instances.pop(name, None)

        for rt in resource_types:
            self._resource_type_to_reconciler[rt] = name

        logger.info(
            f"Registered reconciler plugin: {name} "
            f"(resource types: {', '.join(resource_types)})"
        )

    def unregister_reconciler_plugin(self, name: str) -> None:
        """Remove a reconciler and release the kinds it claimed."""
        self._reconciler_plugins.pop(name, None)
        self._reconciler_plugin_info.pop(name, None)
        self._reconciler_instances.pop(name, None)
        self._resource_type_to_reconciler = {
            rt: owner
            for rt, owner in self._resource_type_to_reconciler.items()
            if owner != name
        }

    # Instantiation methods

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration merged over the plugin's env config

        Returns:
            An initialized InputPlugin instance

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._input_plugins:
            available = ", ".join(self._input_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._input_plugins[name]()
            merged = {**self._input_plugin_configs.get(name, {}), **(config or {})}
            await plugin.initialize(merged)
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    def get_reconciler_plugin(self, name: str) -> ReconcilerPlugin:
        """
        Get a reconciler plugin instance (no initialize step).

        Raises:
            ValueError: If the reconciler name is not registered
        """
        if name not in self._reconciler_plugins:
            available = ", ".join(self._reconciler_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown reconciler plugin: {name}. "
                f"Available reconcilers: {available}"
            )

        if name not in self._reconciler_instances:
            self._reconciler_instances[name] = self._reconciler_plugins[name]()
            logger.info(f"Instantiated reconciler plugin: {name}")

        return self._reconciler_instances[name]

    # Discovery methods

    def list_input_plugins(self) -> List[str]:
        """List all registered input plugin names."""
        return list(self._input_plugins.keys())

    def list_reconciler_plugins(self) -> List[str]:
        """List all registered reconciler plugin names."""
        return list(self._reconciler_plugins.keys())

    def has_input_plugin(self, name: str) -> bool:
        return name in self._input_plugins

    def get_reconciler_plugin_info(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Get information about a registered reconciler plugin.

        Returns:
            Dictionary with 'name' and 'resource_types', or None if not found
        """
        return self._reconciler_plugin_info.get(name)


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register all built-in plugins and discover reconciler plugins
    via entry points.

    Called during application startup.
    """
    from plugins.reconcilers import (
        LifecyclePolicyReconciler,
        RepositoryPolicyReconciler,
        RepositoryReconciler,
    )

    registry = get_registry()

    for reconciler_class in (
        RepositoryReconciler,
        LifecyclePolicyReconciler,
        RepositoryPolicyReconciler,
    ):
        registry.register_reconciler_plugin(reconciler_class)

    try:
        from plugins.inputs.http import HTTPInputPlugin

        registry.register_input_plugin(HTTPInputPlugin)
    except ImportError as e:
        logger.warning(f"Could not load HTTP input plugin: {e}")

    discovered = entry_points(group=RECONCILER_ENTRY_POINT_GROUP)
    for ep in discovered:
        try:
            reconciler_class = ep.load()
            registry.register_reconciler_plugin(reconciler_class)
        except Exception as e:
            logger.warning(f"Could not load reconciler plugin {ep.name}: {e}")
