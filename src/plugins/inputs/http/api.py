"""
HTTP Input Plugin - REST API for declarative ECR objects.

This plugin provides a FastAPI-based REST API for creating, replacing,
listing and deleting Repository, RepositoryLifecycle and RepositoryPolicy
objects, plus a Server-Sent Events stream of store changes.
"""

import asyncio
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from db import DatabaseManager, ResourceConflictError, ResourceNotFoundError
from events import EventBus, ResourceEvent
from plugins.inputs.base import InputPlugin
from resources import Resource, kind_for_plural
from validation import validate_resource_spec

logger = logging.getLogger(__name__)

# ECR repository names: lowercase segments separated by '.', '_', '-' or '/'
NAME_PATTERN = re.compile(
    r"^(?:[a-z0-9]+(?:[._-][a-z0-9]+)*/)*[a-z0-9]+(?:[._-][a-z0-9]+)*$"
)
MAX_NAME_LENGTH = 256
# Kubernetes-style namespace: lowercase alphanumeric, hyphens, max 63 chars
NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_LABELS = 50  # ECR tag limit per repository
MAX_LABEL_KEY_LENGTH = 128
MAX_LABEL_VALUE_LENGTH = 256
# ECR tag character set: letters, digits, whitespace and _ . : / = + - @
LABEL_PATTERN = re.compile(r"^[\w\s.:/=+\-@]*$")
MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for spec


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that an object name is a valid ECR repository name."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric segments "
            f"separated by '.', '_', '-' or '/'"
        )
    return value


def validate_namespace_format(value: str) -> str:
    if not NAMESPACE_PATTERN.match(value or ""):
        raise ValueError(
            "namespace must consist of lowercase alphanumeric characters or '-', "
            "must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(value: Dict[str, Any], field_name: str) -> Dict[str, Any]:
    """Validate that a JSON object doesn't exceed the maximum size."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE} bytes")
    return value


def validate_labels(value: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if value is None:
        return value
    if len(value) > MAX_LABELS:
        raise ValueError(f"labels cannot have more than {MAX_LABELS} entries")
    for key, label_value in value.items():
        if not key or len(key) > MAX_LABEL_KEY_LENGTH:
            raise ValueError(
                f"label key '{key}' must be 1-{MAX_LABEL_KEY_LENGTH} characters"
            )
        if key.startswith("aws:"):
            raise ValueError(f"label key '{key}' cannot use the reserved 'aws:' prefix")
        if len(label_value) > MAX_LABEL_VALUE_LENGTH:
            raise ValueError(
                f"label '{key}' value cannot exceed {MAX_LABEL_VALUE_LENGTH} characters"
            )
        if not LABEL_PATTERN.match(key) or not LABEL_PATTERN.match(label_value):
            raise ValueError(
                f"label '{key}' may only contain letters, digits, whitespace "
                f"and _ . : / = + - @"
            )
    return value


# Request/response models


class ResourceCreate(BaseModel):
    """Request model for creating an object."""

    name: str = Field(..., description="Object name", examples=["app-images"])
    labels: Dict[str, str] = Field(
        default_factory=dict, description="Labels, applied as repository tags"
    )
    spec: Dict[str, Any] = Field(default_factory=dict, description="Desired state")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("labels")
    @classmethod
    def validate_label_set(cls, v: Dict[str, str]) -> Dict[str, str]:
        return validate_labels(v)

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ResourceReplace(BaseModel):
    """Request model for replacing the desired state of an object."""

    spec: Dict[str, Any] = Field(..., description="Updated desired state")
    labels: Optional[Dict[str, str]] = Field(
        None, description="Updated labels (unchanged when omitted)"
    )

    @field_validator("labels")
    @classmethod
    def validate_label_set(
        cls, v: Optional[Dict[str, str]]
    ) -> Optional[Dict[str, str]]:
        return validate_labels(v)

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ResourceResponse(BaseModel):
    """Response model for an object."""

    kind: str
    namespace: str
    name: str
    uid: Optional[str] = None
    labels: Dict[str, str] = {}
    spec: Dict[str, Any] = {}
    status: Dict[str, Any] = {}
    finalizers: List[str] = []
    owner_references: List[Dict[str, Any]] = []
    generation: int = 1
    resource_version: int = 1
    deletion_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_resource(cls, resource: Resource) -> "ResourceResponse":
        data = resource.to_dict()
        data.pop("id", None)
        return cls(**data)


class ReconcilerInfo(BaseModel):
    name: str
    resource_types: List[str]


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for the declarative store.

    The API only writes desired state; reconciliation is driven by the
    store's change events.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._db_manager: Optional[DatabaseManager] = None
        self._event_bus: Optional[EventBus] = None
        self._registry = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin and its routes."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = str(config.get("log_level", "info")).lower()

        self.app = FastAPI(
            title="ECR Operator API",
            description="Declarative management of Amazon ECR repositories and policies",
            version="1.0.0",
        )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager: DatabaseManager) -> None:
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    def set_registry(self, registry) -> None:
        self._registry = registry

    def _require_db(self) -> DatabaseManager:
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    @staticmethod
    def _resolve_kind(plural: str) -> str:
        kind = kind_for_plural(plural)
        if kind is None:
            raise HTTPException(
                status_code=404, detail=f"Unknown resource type: {plural}"
            )
        return kind

    @staticmethod
    def _check_namespace(namespace: str) -> None:
        try:
            validate_namespace_format(namespace)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @staticmethod
    def _check_spec(kind: str, spec: Dict[str, Any]) -> None:
        is_valid, error = validate_resource_spec(kind, spec)
        if not is_valid:
            raise HTTPException(
                status_code=400, detail=f"Spec validation failed: {error}"
            )

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Reconcilers: GET /api/v1/reconcilers
        - Event stream: GET /api/v1/events
        - Objects: /api/v1/namespaces/{namespace}/{plural}[/{name}]
        - Objects across namespaces: GET /api/v1/{plural}

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "ecr-operator"}

        @self.app.get("/api/v1/reconcilers", response_model=List[ReconcilerInfo])
        async def list_reconcilers():
            """List registered reconcilers and the kinds they own."""
            if self._registry is None:
                return []
            reconcilers = []
            for name in self._registry.list_reconciler_plugins():
                info = self._registry.get_reconciler_plugin_info(name)
                if info:
                    reconcilers.append(ReconcilerInfo(**info))
            return reconcilers

        # ==================== Event Streaming ====================

        @self.app.get("/api/v1/events")
        async def stream_events(
            kind: Optional[str] = None, namespace: Optional[str] = None
        ):
            """SSE stream of store events, optionally filtered by kind/namespace."""
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: ResourceEvent) -> bool:
                if kind and event.kind != kind:
                    return False
                if namespace and event.namespace != namespace:
                    return False
                return True

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

        # ==================== Object Endpoints ====================

        @self.app.post(
            "/api/v1/namespaces/{namespace}/{plural}",
            response_model=ResourceResponse,
            status_code=201,
        )
        async def create_resource(
            namespace: str, plural: str, resource: ResourceCreate
        ):
            """Create a new object."""
            db = self._require_db()
            kind = self._resolve_kind(plural)
            self._check_namespace(namespace)
            self._check_spec(kind, resource.spec)

            try:
                created = await db.create_resource(
                    kind,
                    namespace,
                    resource.name,
                    spec=resource.spec,
                    labels=resource.labels,
                )
                return ResourceResponse.from_resource(created)
            except ResourceConflictError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error creating {kind} {namespace}/{resource.name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/{plural}",
            response_model=List[ResourceResponse],
        )
        async def list_resources(namespace: str, plural: str, limit: int = 500):
            """List objects of a kind in a namespace."""
            db = self._require_db()
            kind = self._resolve_kind(plural)

            try:
                resources = await db.list_resources(
                    kind=kind, namespace=namespace, limit=limit
                )
                return [ResourceResponse.from_resource(r) for r in resources]
            except Exception as e:
                logger.error(f"Error listing {kind} in {namespace}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/namespaces/{namespace}/{plural}/{name:path}",
            response_model=ResourceResponse,
        )
        async def get_resource(namespace: str, plural: str, name: str):
            """Get an object by namespace and name."""
            db = self._require_db()
            kind = self._resolve_kind(plural)

            try:
                resource = await db.get_resource(kind, namespace, name)
            except Exception as e:
                logger.error(f"Error getting {kind} {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if resource is None:
                raise HTTPException(
                    status_code=404, detail=f"{kind} {namespace}/{name} not found"
                )
            return ResourceResponse.from_resource(resource)

        @self.app.put(
            "/api/v1/namespaces/{namespace}/{plural}/{name:path}",
            response_model=ResourceResponse,
        )
        async def replace_resource(
            namespace: str, plural: str, name: str, update: ResourceReplace
        ):
            """Replace the spec (and optionally labels) of an object."""
            db = self._require_db()
            kind = self._resolve_kind(plural)
            self._check_spec(kind, update.spec)

            try:
                updated = await db.replace_resource(
                    kind, namespace, name, spec=update.spec, labels=update.labels
                )
                return ResourceResponse.from_resource(updated)
            except ResourceNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except Exception as e:
                logger.error(f"Error replacing {kind} {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/{plural}/{name:path}", status_code=202
        )
        async def delete_resource(namespace: str, plural: str, name: str):
            """Request deletion of an object; finalizers may delay its removal."""
            db = self._require_db()
            kind = self._resolve_kind(plural)

            try:
                existed = await db.delete_resource(kind, namespace, name)
            except Exception as e:
                logger.error(f"Error deleting {kind} {namespace}/{name}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if not existed:
                raise HTTPException(
                    status_code=404, detail=f"{kind} {namespace}/{name} not found"
                )
            return {
                "message": "Deletion requested",
                "kind": kind,
                "namespace": namespace,
                "name": name,
            }

        @self.app.get("/api/v1/{plural}", response_model=List[ResourceResponse])
        async def list_resources_all_namespaces(plural: str, limit: int = 500):
            """List objects of a kind across all namespaces."""
            db = self._require_db()
            kind = self._resolve_kind(plural)

            try:
                resources = await db.list_resources(kind=kind, limit=limit)
                return [ResourceResponse.from_resource(r) for r in resources]
            except Exception as e:
                logger.error(f"Error listing {kind}: {e}")
                raise HTTPException(status_code=500, detail=str(e))

    async def start(self) -> None:
        """Start the HTTP server."""
        if not self.app:
            raise RuntimeError("App not initialized")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True
