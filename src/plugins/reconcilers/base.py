"""
Reconciler Plugin Base - Abstract interface for reconciler plugins.

A reconciler owns the convergence logic for one or more resource kinds.
The controller invokes reconcile() with a reference to a single object;
the reconciler re-reads everything it needs through the context, so it
can be re-run at any time after a crash or a lost response.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from db import DatabaseManager
from gateway import EcrGateway
from resources import Resource, ResourceKey

logger = logging.getLogger(__name__)

DEFAULT_REQUEUE_DELAY = 5.0


@dataclass
class ReconcileResult:
    """
    Result from a reconciler's reconcile() call.

    A result with requeue_after set asks the controller to invoke the
    reconciler again for the same object after that many seconds.
    Unexpected failures are raised instead of returned.
    """

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None

    @classmethod
    def done(cls, message: str = "") -> "ReconcileResult":
        return cls(success=True, message=message)

    @classmethod
    def retry(cls, delay: float, message: str) -> "ReconcileResult":
        return cls(success=False, message=message, requeue_after=delay)


class ReconcilerContext:
    """
    Context provided to reconciler plugins by the operator.

    Gives reconcilers access to the declarative store and the shared ECR
    gateway. Both are process-wide and safe to use from concurrent
    invocations.
    """

    def __init__(
        self,
        db: DatabaseManager,
        gateway: EcrGateway,
        requeue_delay: float = DEFAULT_REQUEUE_DELAY,
    ):
        self.db = db
        self.gateway = gateway
        self.requeue_delay = requeue_delay

    async def get_resource(
        self, kind: str, namespace: str, name: str
    ) -> Optional[Resource]:
        """
        Fetch the current state of an object.

        Returns:
            The object, or None if it is not in the store.
        """
        return await self.db.get_resource(kind, namespace, name)

    async def list_resources(self, kind: str) -> List[Resource]:
        """List every stored object of a kind across all namespaces."""
        return await self.db.list_resources(kind=kind, limit=None)

    async def update_resource(self, resource: Resource) -> Optional[Resource]:
        """
        Persist finalizers and owner references of an object.

        Returns:
            The stored object, or None if the update completed its deletion.
        """
        return await self.db.update_resource(resource)

    async def update_status(self, resource: Resource) -> Resource:
        """Persist the status of an object."""
        return await self.db.update_resource_status(resource)

    def retry(self, message: str) -> ReconcileResult:
        """Build a result that requeues the object after the fixed delay."""
        return ReconcileResult.retry(self.requeue_delay, message)


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconciler plugins.

    Reconcilers are registered with the PluginRegistry, either as built-ins
    or through the 'ecr_operator.reconcilers' entry point group.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> List[str]:
        """Resource kinds this reconciler handles."""
        pass

    @abstractmethod
    async def reconcile(
        self, request: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single object.

        Compare desired state against actual state and take action.

        Args:
            request: Kind, namespace and name of the object. The object
                itself may no longer exist.
            ctx: ReconcilerContext for store and gateway access.

        Returns:
            ReconcileResult; requeue_after is set for retriable failures.

        Raises:
            Exception: Any error the controller should retry with backoff,
                e.g. a failed store update.
        """
        pass
