"""Pytest configuration and fixtures."""

import copy
import itertools
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from db import ResourceConflictError
from gateway import (
    RemoteAlreadyExistsError,
    RemoteNotFoundError,
    RepositoryDescription,
    TransientRemoteError,
)
from plugins.reconcilers.base import ReconcilerContext
from resources import Resource


class FakeStore:
    """
    In-memory stand-in for DatabaseManager.

    Implements the same deletion, finalizer, optimistic-concurrency and
    garbage-collection rules as the PostgreSQL store.
    """

    def __init__(self):
        self.objects: Dict[tuple, Resource] = {}
        self._ids = itertools.count(1)
        self.status_updates = 0
        self.fail_status_update = False

    def add(self, kind, namespace, name, spec=None, labels=None) -> Resource:
        resource = Resource(
            kind=kind,
            namespace=namespace,
            name=name,
            spec=spec or {},
            labels=labels or {},
            id=next(self._ids),
            uid=str(uuid.uuid4()),
        )
        self.objects[(kind, namespace, name)] = resource
        return resource.copy()

    async def get_resource(self, kind, namespace, name) -> Optional[Resource]:
        resource = self.objects.get((kind, namespace, name))
        return resource.copy() if resource else None

    async def list_resources(self, kind=None, namespace=None, limit=500) -> List[Resource]:
        return [
            r.copy()
            for r in self.objects.values()
            if (kind is None or r.kind == kind)
            and (namespace is None or r.namespace == namespace)
        ]

    def _current(self, resource: Resource) -> Resource:
        stored = self.objects.get((resource.kind, resource.namespace, resource.name))
        if stored is None or stored.resource_version != resource.resource_version:
            raise ResourceConflictError(f"{resource.key} was modified concurrently")
        return stored

    async def update_resource(self, resource: Resource) -> Optional[Resource]:
        stored = self._current(resource)
        stored.finalizers = list(resource.finalizers)
        stored.owner_references = copy.deepcopy(resource.owner_references)
        stored.resource_version += 1
        if stored.is_being_deleted and not stored.finalizers:
            await self._remove(stored)
            return None
        return stored.copy()

    async def update_resource_status(self, resource: Resource) -> Resource:
        if self.fail_status_update:
            raise ResourceConflictError(f"{resource.key} was modified concurrently")
        stored = self._current(resource)
        stored.status = copy.deepcopy(resource.status)
        stored.resource_version += 1
        self.status_updates += 1
        return stored.copy()

    async def delete_resource(self, kind, namespace, name) -> bool:
        stored = self.objects.get((kind, namespace, name))
        if stored is None:
            return False
        if not stored.finalizers:
            await self._remove(stored)
        elif stored.deletion_timestamp is None:
            stored.deletion_timestamp = datetime.now(timezone.utc)
            stored.resource_version += 1
        return True

    async def _remove(self, resource: Resource) -> None:
        del self.objects[(resource.kind, resource.namespace, resource.name)]
        owned = [
            r
            for r in list(self.objects.values())
            if any(ref.get("uid") == resource.uid for ref in r.owner_references)
        ]
        for r in owned:
            await self.delete_resource(r.kind, r.namespace, r.name)


class FakeEcr:
    """
    Stateful stand-in for EcrGateway.

    Records every call as (operation, args) and can be told to fail the
    next call of an operation.
    """

    def __init__(self, account: str = "123456789012", region: str = "eu-west-1"):
        self.account = account
        self.region = region
        self.repositories: Dict[str, dict] = {}
        self.lifecycle_policies: Dict[str, str] = {}
        self.repository_policies: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}

    def fail_next(self, operation: str, error: Exception) -> None:
        self.failures[operation] = error

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def operations(self) -> List[str]:
        return [op for op, _ in self.calls]

    def _describe(self, name: str) -> RepositoryDescription:
        repo = self.repositories[name]
        return RepositoryDescription(
            name=name,
            arn=repo["arn"],
            registry_id=self.account,
            uri=f"{self.account}.dkr.ecr.{self.region}.amazonaws.com/{name}",
            image_tag_mutability=repo["mutability"],
            scan_on_push=repo["scan_on_push"],
            encryption_type=repo["encryption_type"],
        )

    def _require(self, name: str) -> None:
        if name not in self.repositories:
            raise RemoteNotFoundError(f"{name} not found", "RepositoryNotFoundException")

    async def create_repository(
        self, name, image_tag_mutability, scanning=None, encryption=None, tags=None
    ):
        self._record("create_repository", name)
        if name in self.repositories:
            raise RemoteAlreadyExistsError(
                f"{name} exists", "RepositoryAlreadyExistsException"
            )
        self.repositories[name] = {
            "arn": f"arn:aws:ecr:{self.region}:{self.account}:repository/{name}",
            "mutability": image_tag_mutability.value,
            "scan_on_push": scanning.scan_on_push if scanning else False,
            "encryption_type": encryption.encryption_type.value if encryption else "AES256",
            "tags": dict(tags or {}),
        }
        return self._describe(name)

    async def describe_repository(self, name):
        self._record("describe_repository", name)
        self._require(name)
        return self._describe(name)

    async def put_image_tag_mutability(self, name, image_tag_mutability):
        self._record("put_image_tag_mutability", name, image_tag_mutability.value)
        self._require(name)
        self.repositories[name]["mutability"] = image_tag_mutability.value

    async def put_image_scanning_configuration(self, name, scanning):
        self._record("put_image_scanning_configuration", name, scanning.scan_on_push)
        self._require(name)
        self.repositories[name]["scan_on_push"] = scanning.scan_on_push

    async def update_tags(self, arn, tags):
        self._record("update_tags", arn, dict(tags))
        for repo in self.repositories.values():
            if repo["arn"] == arn:
                repo["tags"] = dict(tags)
                return
        raise RemoteNotFoundError(f"{arn} not found", "RepositoryNotFoundException")

    async def delete_repository(self, name, force=True):
        self._record("delete_repository", name, force)
        self._require(name)
        described = self._describe(name)
        del self.repositories[name]
        self.lifecycle_policies.pop(name, None)
        self.repository_policies.pop(name, None)
        return described

    async def put_lifecycle_policy(self, name, policy_text):
        self._record("put_lifecycle_policy", name, policy_text)
        self._require(name)
        self.lifecycle_policies[name] = policy_text

    async def delete_lifecycle_policy(self, name):
        self._record("delete_lifecycle_policy", name)
        self._require(name)
        if name not in self.lifecycle_policies:
            raise RemoteNotFoundError(
                f"no lifecycle policy on {name}", "LifecyclePolicyNotFoundException"
            )
        del self.lifecycle_policies[name]

    async def set_repository_policy(self, name, policy_text, force=False):
        self._record("set_repository_policy", name, policy_text, force)
        self._require(name)
        self.repository_policies[name] = policy_text

    async def delete_repository_policy(self, name):
        self._record("delete_repository_policy", name)
        self._require(name)
        if name not in self.repository_policies:
            raise RemoteNotFoundError(
                f"no repository policy on {name}", "RepositoryPolicyNotFoundException"
            )
        del self.repository_policies[name]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def ecr():
    return FakeEcr()


@pytest.fixture
def ctx(store, ecr):
    return ReconcilerContext(db=store, gateway=ecr, requeue_delay=5.0)


@pytest.fixture
def transient_error():
    return TransientRemoteError("throttled (ThrottlingException)", "ThrottlingException")
