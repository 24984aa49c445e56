"""
Operator Controller - Event-driven reconcile dispatcher.

Similar to a Kubernetes controller manager: store change events are turned
into reconcile requests on a per-kind work queue, and worker tasks invoke
the reconciler plugin that owns the kind. A key is never processed by two
workers at once; a key that changes while it is being processed is run
again afterwards.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from config import ControllerConfig
from db import DatabaseManager
from events import EventBus, EventSubscription, EventType, ResourceEvent
from plugins import get_registry
from plugins.reconcilers.base import (
    ReconcilerContext,
    ReconcilerPlugin,
    ReconcileResult,
)
from plugins.registry import PluginRegistry
from resources import ResourceKey

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class WorkQueue:
    """
    De-duplicating queue of reconcile requests for one kind.

    A key waiting in the queue is only held once. A key added while a worker
    is processing it is marked dirty and re-queued when that worker calls
    done(), so invocations for the same key never overlap.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[ResourceKey] = set()
        self._processing: Set[ResourceKey] = set()
        self._dirty: Set[ResourceKey] = set()

    def add(self, key: ResourceKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    async def get(self) -> ResourceKey:
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ResourceKey) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def is_processing(self, key: ResourceKey) -> bool:
        return key in self._processing

    def __len__(self) -> int:
        return len(self._queued)


class Controller:
    """
    Dispatches reconcile requests to reconciler plugins.

    One WorkQueue and max_concurrent_reconciles workers are started per
    registered kind. Returned requeue_after values and raised errors are
    turned into delayed re-enqueues; raised errors back off exponentially.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        ctx: ReconcilerContext,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_manager
        self.ctx = ctx
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.running = False
        self._event_bus = event_bus

        self._queues: Dict[str, WorkQueue] = {}
        self._reconcilers: Dict[str, ReconcilerPlugin] = {}
        self._tasks: List[asyncio.Task] = []
        self._timers: Dict[ResourceKey, asyncio.TimerHandle] = {}
        self._failures: Dict[ResourceKey, int] = {}
        self._subscriber_id: Optional[str] = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start workers, the event pump and the startup resync; run until stop()."""
        logger.info("Starting ECR Operator controller")
        self.running = True
        self._shutdown_event.clear()

        for reconciler_name in self.registry.list_reconciler_plugins():
            reconciler = self.registry.get_reconciler_plugin(reconciler_name)
            for kind in reconciler.resource_types:
                queue = WorkQueue()
                self._queues[kind] = queue
                self._reconcilers[kind] = reconciler
                for _ in range(self.config.max_concurrent_reconciles):
                    self._tasks.append(
                        asyncio.create_task(self._worker(reconciler, queue))
                    )
            logger.info(
                f"Started reconciler plugin: {reconciler_name} "
                f"({self.config.max_concurrent_reconciles} worker(s) per kind)"
            )

        if self._event_bus is not None:
            # Unbounded: a dropped DELETED event would leave a Repository
            # behind in ECR, and resync only covers stored objects
            self._subscriber_id, subscription = await self._event_bus.subscribe(
                lambda event: event.event_type != EventType.RECONCILED,
                queue_size=0,
            )
            self._tasks.append(asyncio.create_task(self._pump_events(subscription)))

        if self.config.resync_on_start:
            await self.resync()

        await self._shutdown_event.wait()

    async def stop(self):
        """Stop workers and pending requeues gracefully."""
        logger.info("Stopping ECR Operator controller")
        self.running = False

        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        self._shutdown_event.set()

    async def resync(self) -> None:
        """Enqueue every stored object of every registered kind once."""
        for kind in self._queues:
            resources = await self.db.list_resources(kind=kind, limit=None)
            for resource in resources:
                self.enqueue(resource.key)
            logger.info(f"Resync enqueued {len(resources)} {kind} object(s)")

    def enqueue(self, key: ResourceKey) -> None:
        """Request a reconcile of one object."""
        queue = self._queues.get(key.kind)
        if queue is None:
            logger.debug(f"No reconciler registered for {key.kind}, ignoring {key}")
            return
        queue.add(key)

    async def _pump_events(self, subscription: EventSubscription) -> None:
        async for event in subscription:
            self.enqueue(event.key)

    async def _worker(self, reconciler: ReconcilerPlugin, queue: WorkQueue) -> None:
        while self.running:
            key = await queue.get()
            try:
                await self._reconcile(reconciler, key)
            finally:
                queue.done(key)

    async def _reconcile(self, reconciler: ReconcilerPlugin, key: ResourceKey) -> None:
        """
        Invoke a reconciler for one key and schedule any follow-up.

        Args:
            reconciler: The plugin that owns key.kind
            key: The object to reconcile
        """
        logger.debug(f"Reconciling {key} with {reconciler.name}")
        try:
            result = await reconciler.reconcile(key, self.ctx)
        except Exception as e:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = self._backoff_delay(failures)
            logger.error(
                f"Reconcile of {key} failed (attempt {failures}), "
                f"retrying in {delay:.1f}s: {e}",
                exc_info=True,
            )
            self._schedule(key, delay)
            return

        self._failures.pop(key, None)

        if result.requeue_after is not None:
            logger.info(
                f"Requeueing {key} in {result.requeue_after}s: {result.message}"
            )
            self._schedule(key, result.requeue_after)
        else:
            logger.debug(f"Reconciled {key}: {result.message}")

        if result.success:
            await self._publish_reconciled(key, result)

    def _backoff_delay(self, failures: int) -> float:
        """Exponential backoff with jitter for the given consecutive failure count."""
        delay = min(
            self.config.backoff_base_delay * (2 ** (failures - 1)),
            self.config.backoff_max_delay,
        )
        jitter = delay * self.config.backoff_jitter_factor * random.uniform(-1, 1)
        return max(0.0, delay + jitter)

    def _schedule(self, key: ResourceKey, delay: float) -> None:
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        if self.running:
            self.enqueue(key)

    async def _publish_reconciled(
        self, key: ResourceKey, result: ReconcileResult
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            ResourceEvent(
                event_type=EventType.RECONCILED,
                kind=key.kind,
                namespace=key.namespace,
                name=key.name,
                resource_data={
                    "message": result.message,
                    "requeue_after": result.requeue_after,
                },
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
        )

    def pending_requeues(self) -> int:
        """Number of keys waiting on a delayed re-enqueue."""
        return len(self._timers)
