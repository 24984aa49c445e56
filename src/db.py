"""
Database Manager - PostgreSQL-backed declarative object store.

Stores the desired state of every managed object together with its
persisted status, finalizers and owner references. Deletion follows the
Kubernetes model: an object carrying finalizers is only marked with a
deletion timestamp, and is removed once its last finalizer is cleared.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import asyncpg

from events import EventBus, EventType, ResourceEvent
from migrate import run_migrations
from resources import Resource

logger = logging.getLogger(__name__)

# Partial unique index from 002_unique_repository_name.sql
REPOSITORY_NAME_INDEX = "idx_resources_repository_name"


class StoreError(Exception):
    """Base class for declarative store failures."""


class ResourceNotFoundError(StoreError):
    """Raised when a write targets an object that does not exist."""


class ResourceConflictError(StoreError):
    """
    Raised when a write loses an optimistic-concurrency race, or when an
    object with the same kind/namespace/name already exists.
    """


class DatabaseManager:
    """Manages PostgreSQL database operations for the declarative store."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        event_bus: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._event_bus = event_bus

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus that receives a notification for every mutation."""
        self._event_bus = event_bus

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    async def _publish(self, event_type: EventType, resource: Resource) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(
                ResourceEvent.from_resource(event_type, resource)
            )

    # ==================== Reads ====================

    async def get_resource(
        self, kind: str, namespace: str, name: str
    ) -> Optional[Resource]:
        """
        Get an object by kind, namespace and name.

        Objects marked for deletion are still returned until their last
        finalizer is removed.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM resources
                WHERE kind = $1 AND namespace = $2 AND name = $3
                """,
                kind,
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_resource_row(row)

    async def list_resources(
        self,
        kind: Optional[str] = None,
        namespace: Optional[str] = None,
        limit: Optional[int] = 500,
    ) -> List[Resource]:
        """List objects with optional kind/namespace filters; limit=None lists all."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM resources WHERE 1=1"
            params: List[Any] = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind)

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            query += " ORDER BY kind, namespace, name"
            if limit is not None:
                param_count += 1
                query += f" LIMIT ${param_count}"
                params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_resource_row(row) for row in rows]

    # ==================== User writes ====================

    async def create_resource(
        self,
        kind: str,
        namespace: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Resource:
        """
        Create a new object.

        Raises:
            ResourceConflictError: If the object already exists, or if it is
                a Repository whose name another namespace already declares.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO resources (uid, kind, namespace, name, spec, labels)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb)
                    RETURNING *
                    """,
                    str(uuid.uuid4()),
                    kind,
                    namespace,
                    name,
                    json.dumps(spec or {}),
                    json.dumps(labels or {}),
                )
            except asyncpg.UniqueViolationError as e:
                if getattr(e, "constraint_name", None) == REPOSITORY_NAME_INDEX:
                    raise ResourceConflictError(
                        f"{kind} {name} is already declared in another namespace"
                    )
                raise ResourceConflictError(
                    f"{kind} {namespace}/{name} already exists"
                )

        created = self._parse_resource_row(row)
        logger.info(f"Created {kind} {namespace}/{name}")
        await self._publish(EventType.CREATED, created)
        return created

    async def replace_resource(
        self,
        kind: str,
        namespace: str,
        name: str,
        spec: Dict[str, Any],
        labels: Optional[Dict[str, str]] = None,
    ) -> Resource:
        """
        Replace the desired state (spec and labels) of an object.

        The generation is bumped only when the spec actually changes.

        Raises:
            ResourceNotFoundError: If the object does not exist.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE resources
                SET generation = CASE WHEN spec = $4::jsonb
                                      THEN generation ELSE generation + 1 END,
                    spec = $4::jsonb,
                    labels = COALESCE($5::jsonb, labels),
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE kind = $1 AND namespace = $2 AND name = $3
                RETURNING *
                """,
                kind,
                namespace,
                name,
                json.dumps(spec),
                json.dumps(labels) if labels is not None else None,
            )

        if not row:
            raise ResourceNotFoundError(f"{kind} {namespace}/{name} not found")

        updated = self._parse_resource_row(row)
        logger.info(
            f"Updated {kind} {namespace}/{name} (generation {updated.generation})"
        )
        await self._publish(EventType.MODIFIED, updated)
        return updated

    async def delete_resource(self, kind: str, namespace: str, name: str) -> bool:
        """
        Request deletion of an object.

        An object without finalizers is removed immediately. Otherwise only
        its deletion timestamp is set, and removal happens once the owning
        controllers clear their finalizers.

        Returns:
            True if the object existed, False otherwise.
        """
        self._ensure_connected()
        removed: Optional[Resource] = None
        marked: Optional[Resource] = None

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM resources
                    WHERE kind = $1 AND namespace = $2 AND name = $3
                    FOR UPDATE
                    """,
                    kind,
                    namespace,
                    name,
                )
                if not row:
                    return False

                resource = self._parse_resource_row(row)
                if not resource.finalizers:
                    await conn.execute("DELETE FROM resources WHERE id = $1", resource.id)
                    removed = resource
                elif resource.deletion_timestamp is None:
                    row = await conn.fetchrow(
                        """
                        UPDATE resources
                        SET deletion_timestamp = NOW(),
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE id = $1
                        RETURNING *
                        """,
                        resource.id,
                    )
                    marked = self._parse_resource_row(row)

        if removed is not None:
            await self._after_removal(removed)
        elif marked is not None:
            logger.info(
                f"Marked {kind} {namespace}/{name} for deletion, "
                f"waiting on finalizers: {marked.finalizers}"
            )
            await self._publish(EventType.MODIFIED, marked)
        return True

    # ==================== Controller writes ====================

    async def update_resource(self, resource: Resource) -> Optional[Resource]:
        """
        Persist the metadata (finalizers, owner references) of an object.

        Uses the object's resource_version for optimistic concurrency. If the
        object is marked for deletion and no finalizers remain, it is removed.

        Returns:
            The updated object, or None if the update completed its deletion.

        Raises:
            ResourceConflictError: If the object changed since it was read.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE resources
                    SET finalizers = $1::jsonb,
                        owner_references = $2::jsonb,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE id = $3 AND resource_version = $4
                    RETURNING *
                    """,
                    json.dumps(resource.finalizers),
                    json.dumps(resource.owner_references),
                    resource.id,
                    resource.resource_version,
                )
                if not row:
                    raise ResourceConflictError(
                        f"{resource.key} was modified or removed concurrently"
                    )

                updated = self._parse_resource_row(row)
                finalized = updated.is_being_deleted and not updated.finalizers
                if finalized:
                    await conn.execute("DELETE FROM resources WHERE id = $1", updated.id)

        if finalized:
            await self._after_removal(updated)
            return None

        await self._publish(EventType.MODIFIED, updated)
        return updated

    async def update_resource_status(self, resource: Resource) -> Resource:
        """
        Persist the status of an object.

        Raises:
            ResourceConflictError: If the object changed since it was read.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE resources
                SET status = $1::jsonb,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE id = $2 AND resource_version = $3
                RETURNING *
                """,
                json.dumps(resource.status),
                resource.id,
                resource.resource_version,
            )

        if not row:
            raise ResourceConflictError(
                f"{resource.key} was modified or removed concurrently"
            )

        updated = self._parse_resource_row(row)
        await self._publish(EventType.MODIFIED, updated)
        return updated

    # ==================== Removal and garbage collection ====================

    async def _after_removal(self, resource: Resource) -> None:
        logger.info(f"Removed {resource.key}")
        await self._publish(EventType.DELETED, resource)
        await self._collect_garbage(resource)

    async def _collect_garbage(self, owner: Resource) -> None:
        """Request deletion of every object owned by a removed object."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT kind, namespace, name FROM resources
                WHERE owner_references @> $1::jsonb
                  AND deletion_timestamp IS NULL
                """,
                json.dumps([{"uid": owner.uid}]),
            )

        for row in rows:
            logger.info(
                f"Garbage collecting {row['kind']} {row['namespace']}/{row['name']} "
                f"owned by {owner.key}"
            )
            await self.delete_resource(row["kind"], row["namespace"], row["name"])

    # ==================== Helpers ====================

    @staticmethod
    def _load_json(value: Any, default: Any) -> Any:
        if value is None:
            return default
        if isinstance(value, str):
            return json.loads(value) if value else default
        return value

    def _parse_resource_row(self, row: asyncpg.Record) -> Resource:
        """
        Parse a resource row from the database into a Resource.

        JSONB columns arrive as strings unless a type codec is registered,
        so both forms are accepted.
        """
        data = dict(row)
        uid = data.get("uid")
        return Resource(
            id=data.get("id"),
            uid=str(uid) if uid is not None else None,
            kind=data["kind"],
            namespace=data["namespace"],
            name=data["name"],
            labels=self._load_json(data.get("labels"), {}),
            spec=self._load_json(data.get("spec"), {}),
            status=self._load_json(data.get("status"), {}),
            finalizers=self._load_json(data.get("finalizers"), []),
            owner_references=self._load_json(data.get("owner_references"), []),
            deletion_timestamp=data.get("deletion_timestamp"),
            generation=data.get("generation", 1),
            resource_version=data.get("resource_version", 1),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
