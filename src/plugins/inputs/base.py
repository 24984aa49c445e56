"""
Input Plugin Base - Abstract interface for desired-state input sources.

Input plugins let users submit Repository, RepositoryLifecycle and
RepositoryPolicy objects to the declarative store, e.g. the HTTP API.
They write to the store only; the controller picks up every change from
the event bus.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class InputPlugin(ABC):
    """Abstract base class for input plugins."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Called once when the plugin is loaded.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """
        Start the input plugin.

        For the HTTP plugin this serves the API until stop() is called.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Override in subclasses that read their own settings.
        """
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """Set the declarative store for plugins that read or write objects."""
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """Set the event bus for plugins that stream events."""
        pass

    def set_registry(self, registry: Any) -> None:
        """Set the plugin registry for plugins that report on reconcilers."""
        pass
