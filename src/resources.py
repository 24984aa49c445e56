"""
Resource Kinds - Declarative object model for the ECR operator.

Defines the three managed kinds (Repository, RepositoryLifecycle,
RepositoryPolicy), their typed specs, the stored object envelope with
finalizer/owner-reference helpers, and the OpenAPI v3 schemas used to
validate submitted specs.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

KIND_REPOSITORY = "Repository"
KIND_REPOSITORY_LIFECYCLE = "RepositoryLifecycle"
KIND_REPOSITORY_POLICY = "RepositoryPolicy"

# URL plural -> kind
PLURALS = {
    "repositories": KIND_REPOSITORY,
    "repositorylifecycles": KIND_REPOSITORY_LIFECYCLE,
    "repositorypolicies": KIND_REPOSITORY_POLICY,
}

DEFAULT_NAMESPACE = "default"


class ImageTagMutability(Enum):
    """Tag mutability setting of a repository."""

    MUTABLE = "MUTABLE"
    IMMUTABLE = "IMMUTABLE"


class EncryptionType(Enum):
    """Server-side encryption type of a repository."""

    AES256 = "AES256"
    KMS = "KMS"


@dataclass(frozen=True)
class ResourceKey:
    """Namespaced reference to one declarative object of a given kind."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass
class ImageScanningConfiguration:
    scan_on_push: bool = True

    def to_api(self) -> Dict[str, Any]:
        return {"scanOnPush": self.scan_on_push}


@dataclass
class EncryptionConfiguration:
    encryption_type: EncryptionType = EncryptionType.AES256
    kms_key: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {"encryptionType": self.encryption_type.value}
        if self.kms_key:
            config["kmsKey"] = self.kms_key
        return config


@dataclass
class RepositorySpec:
    """Desired state of an ECR repository."""

    image_tag_mutability: ImageTagMutability = ImageTagMutability.IMMUTABLE
    image_scanning_configuration: Optional[ImageScanningConfiguration] = None
    encryption_configuration: Optional[EncryptionConfiguration] = None

    @classmethod
    def from_dict(cls, spec: Dict[str, Any]) -> "RepositorySpec":
        scanning = spec.get("imageScanningConfiguration")
        encryption = spec.get("encryptionConfiguration")
        return cls(
            image_tag_mutability=ImageTagMutability(
                spec.get("imageTagMutability") or ImageTagMutability.IMMUTABLE.value
            ),
            image_scanning_configuration=(
                ImageScanningConfiguration(
                    scan_on_push=scanning.get("scanOnPush", True)
                )
                if scanning is not None
                else None
            ),
            encryption_configuration=(
                EncryptionConfiguration(
                    encryption_type=EncryptionType(
                        encryption.get("encryptionType")
                        or EncryptionType.AES256.value
                    ),
                    kms_key=encryption.get("kmsKey"),
                )
                if encryption is not None
                else None
            ),
        )


@dataclass
class RepositoryStatus:
    """Observed state of an ECR repository, persisted after creation."""

    repository_arn: str = ""
    registry_id: str = ""
    repository_uri: str = ""

    @classmethod
    def from_dict(cls, status: Dict[str, Any]) -> "RepositoryStatus":
        return cls(
            repository_arn=status.get("registryArn", ""),
            registry_id=status.get("registryId", ""),
            repository_uri=status.get("repositoryUri", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registryArn": self.repository_arn,
            "registryId": self.registry_id,
            "repositoryUri": self.repository_uri,
        }


@dataclass
class LifecyclePolicySpec:
    repository_name: str
    lifecycle_policy_text: str

    @classmethod
    def from_dict(cls, spec: Dict[str, Any]) -> "LifecyclePolicySpec":
        return cls(
            repository_name=spec["repositoryName"],
            lifecycle_policy_text=spec["lifecyclePolicyText"],
        )


@dataclass
class RepositoryPolicySpec:
    repository_name: str
    policy_text: str
    force: bool = False

    @classmethod
    def from_dict(cls, spec: Dict[str, Any]) -> "RepositoryPolicySpec":
        return cls(
            repository_name=spec["repositoryName"],
            policy_text=spec["policyText"],
            force=bool(spec.get("force", False)),
        )


@dataclass
class Resource:
    """
    A declarative object as held by the store.

    Mirrors the metadata a Kubernetes object carries: finalizers block
    removal while deletion_timestamp signals deletion intent, and owner
    references drive garbage collection when the owner disappears.
    """

    kind: str
    namespace: str
    name: str
    spec: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    owner_references: List[Dict[str, str]] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    id: Optional[int] = None
    uid: Optional[str] = None
    generation: int = 1
    resource_version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)

    @property
    def is_being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer; returns False if it was already present."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer; returns False if it was not present."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True

    def set_owner_reference(self, owner: "Resource") -> None:
        """Point this object at its owner, replacing any earlier reference to it."""
        reference = {"kind": owner.kind, "name": owner.name, "uid": owner.uid}
        self.owner_references = [
            ref
            for ref in self.owner_references
            if not (ref.get("kind") == owner.kind and ref.get("name") == owner.name)
        ]
        self.owner_references.append(reference)

    def copy(self) -> "Resource":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "uid": self.uid,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "labels": self.labels,
            "spec": self.spec,
            "status": self.status,
            "finalizers": self.finalizers,
            "owner_references": self.owner_references,
            "deletion_timestamp": self.deletion_timestamp,
            "generation": self.generation,
            "resource_version": self.resource_version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ==================== Schemas ====================

REPOSITORY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "imageTagMutability": {
            "type": "string",
            "enum": ["MUTABLE", "IMMUTABLE"],
            "default": "IMMUTABLE",
        },
        "imageScanningConfiguration": {
            "type": ["object", "null"],
            "properties": {"scanOnPush": {"type": "boolean", "default": True}},
            "additionalProperties": False,
        },
        "encryptionConfiguration": {
            "type": ["object", "null"],
            "properties": {
                "encryptionType": {
                    "type": "string",
                    "enum": ["AES256", "KMS"],
                    "default": "AES256",
                },
                "kmsKey": {"type": "string"},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}

REPOSITORY_LIFECYCLE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["repositoryName", "lifecyclePolicyText"],
    "properties": {
        "repositoryName": {"type": "string", "minLength": 1},
        "lifecyclePolicyText": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}

REPOSITORY_POLICY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["repositoryName", "policyText"],
    "properties": {
        "repositoryName": {"type": "string", "minLength": 1},
        "policyText": {"type": "string", "minLength": 1},
        "force": {"type": "boolean", "default": False},
    },
    "additionalProperties": False,
}

SCHEMAS = {
    KIND_REPOSITORY: REPOSITORY_SCHEMA,
    KIND_REPOSITORY_LIFECYCLE: REPOSITORY_LIFECYCLE_SCHEMA,
    KIND_REPOSITORY_POLICY: REPOSITORY_POLICY_SCHEMA,
}


def kind_for_plural(plural: str) -> Optional[str]:
    """Resolve a URL plural (e.g. 'repositories') to its kind."""
    return PLURALS.get(plural.lower())


def plural_for_kind(kind: str) -> Optional[str]:
    for plural, k in PLURALS.items():
        if k == kind:
            return plural
    return None
