"""
Main entry point for the ECR Operator.

Wires the declarative store, the event bus, the shared ECR gateway, the
reconciler plugins and the input plugins together, then runs them until a
shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus
from gateway import EcrGateway
from plugins.inputs.base import InputPlugin
from plugins.reconcilers.base import ReconcilerContext
from plugins.registry import get_registry, register_builtin_plugins

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.gateway: Optional[EcrGateway] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False
        self._stopped = False

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.api.log_level.upper())
        logger.info("Initializing ECR Operator")

        register_builtin_plugins()
        registry = get_registry()

        enabled_reconcilers = self.config.plugins.enabled_reconcilers
        if enabled_reconcilers:
            for name in registry.list_reconciler_plugins():
                if name not in enabled_reconcilers:
                    registry.unregister_reconciler_plugin(name)
                    logger.info(f"Reconciler plugin '{name}' not enabled, skipping")

        self.event_bus = EventBus()

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
            event_bus=self.event_bus,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        aws_config = self.config.aws
        self.gateway = EcrGateway(
            region=aws_config.region,
            profile=aws_config.profile,
            endpoint_url=aws_config.endpoint_url,
            max_attempts=aws_config.max_attempts,
        )
        await self.gateway.connect()

        ctx = ReconcilerContext(
            db=self.db,
            gateway=self.gateway,
            requeue_delay=self.config.controller.requeue_delay,
        )
        self.controller = Controller(
            db_manager=self.db,
            ctx=ctx,
            registry=registry,
            config=self.config.controller,
            event_bus=self.event_bus,
        )

        enabled_inputs = self.config.plugins.enabled_input_plugins
        if not enabled_inputs:
            enabled_inputs = registry.list_input_plugins()

        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            plugin_config = {"log_level": self.config.api.log_level}
            if plugin_name == "http":
                plugin_config.update(
                    host=self.config.api.host, port=self.config.api.port
                )
            plugin_config.update(self.config.plugins.get_plugin_config(plugin_name))

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_db_manager(self.db)
            plugin.set_event_bus(self.event_bus)
            plugin.set_registry(registry)
            self.input_plugins.append(plugin)

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting ECR Operator")

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        logger.info("Stopping ECR Operator")
        self.running = False
        self._stopped = True

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.controller:
            await self.controller.stop()

        if self.gateway:
            await self.gateway.close()

        if self.db:
            await self.db.close()

        logger.info("ECR Operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
