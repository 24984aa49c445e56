"""
ECR Gateway - Remote resource operations against Amazon ECR.

Wraps a single long-lived aioboto3 ECR client. Every call either returns a
typed value or raises one of three outcomes the reconcilers branch on:
RemoteNotFoundError, RemoteAlreadyExistsError or TransientRemoteError.
"""

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from resources import (
    EncryptionConfiguration,
    ImageScanningConfiguration,
    ImageTagMutability,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset(
    {
        "RepositoryNotFoundException",
        "LifecyclePolicyNotFoundException",
        "RepositoryPolicyNotFoundException",
    }
)
ALREADY_EXISTS_CODES = frozenset({"RepositoryAlreadyExistsException"})


class GatewayError(Exception):
    """Base class for remote call failures."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(message)


class RemoteNotFoundError(GatewayError):
    """The remote repository or policy does not exist."""


class RemoteAlreadyExistsError(GatewayError):
    """The remote repository already exists."""


class TransientRemoteError(GatewayError):
    """Any other remote failure; safe to retry."""


def classify_error(operation: str, error: Exception) -> GatewayError:
    """
    Map a botocore exception onto the gateway's error taxonomy.

    Only the not-found and already-exists error codes are treated as
    idempotency signals; everything else is transient.
    """
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        message = error.response.get("Error", {}).get("Message", "") or str(error)
        text = f"{operation} failed ({code}): {message}"
        if code in NOT_FOUND_CODES:
            return RemoteNotFoundError(text, code)
        if code in ALREADY_EXISTS_CODES:
            return RemoteAlreadyExistsError(text, code)
        return TransientRemoteError(text, code)
    return TransientRemoteError(f"{operation} failed: {error}")


@dataclass
class RepositoryDescription:
    """What ECR reports about a repository."""

    name: str
    arn: str
    registry_id: str
    uri: str
    image_tag_mutability: Optional[str] = None
    scan_on_push: Optional[bool] = None
    encryption_type: Optional[str] = None
    kms_key: Optional[str] = None

    @classmethod
    def from_api(cls, repository: Dict[str, Any]) -> "RepositoryDescription":
        scanning = repository.get("imageScanningConfiguration") or {}
        encryption = repository.get("encryptionConfiguration") or {}
        return cls(
            name=repository.get("repositoryName", ""),
            arn=repository.get("repositoryArn", ""),
            registry_id=repository.get("registryId", ""),
            uri=repository.get("repositoryUri", ""),
            image_tag_mutability=repository.get("imageTagMutability"),
            scan_on_push=scanning.get("scanOnPush"),
            encryption_type=encryption.get("encryptionType"),
            kms_key=encryption.get("kmsKey"),
        )


def _api_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


class EcrGateway:
    """
    Gateway to the ECR API.

    The underlying client is created once by connect() and shared by all
    reconcilers until close(); it holds no per-object state.
    """

    def __init__(
        self,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        max_attempts: int = 3,
    ):
        self.region = region
        self.profile = profile
        self.endpoint_url = endpoint_url
        self.max_attempts = max_attempts
        self._client: Any = None
        self._exit_stack: Optional[AsyncExitStack] = None

    async def connect(self) -> None:
        """Create the shared ECR client."""
        session = aioboto3.Session(region_name=self.region, profile_name=self.profile)
        self._exit_stack = AsyncExitStack()
        self._client = await self._exit_stack.enter_async_context(
            session.client(
                "ecr",
                endpoint_url=self.endpoint_url,
                config=BotoConfig(
                    retries={"max_attempts": self.max_attempts, "mode": "standard"}
                ),
            )
        )
        logger.info(
            f"Connected ECR client (region={self.region or 'default'}, "
            f"endpoint={self.endpoint_url or 'aws'})"
        )

    async def close(self) -> None:
        """Close the shared ECR client."""
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None
            self._client = None
            logger.info("Closed ECR client")

    async def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        if self._client is None:
            raise RuntimeError("ECR client not connected. Call connect() first.")
        try:
            return await getattr(self._client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(operation, e) from e

    # ==================== Repositories ====================

    async def create_repository(
        self,
        name: str,
        image_tag_mutability: ImageTagMutability,
        scanning: Optional[ImageScanningConfiguration] = None,
        encryption: Optional[EncryptionConfiguration] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> RepositoryDescription:
        kwargs: Dict[str, Any] = {
            "repositoryName": name,
            "imageTagMutability": image_tag_mutability.value,
        }
        if scanning is not None:
            kwargs["imageScanningConfiguration"] = scanning.to_api()
        if encryption is not None:
            kwargs["encryptionConfiguration"] = encryption.to_api()
        if tags:
            kwargs["tags"] = _api_tags(tags)

        response = await self._call("create_repository", **kwargs)
        return RepositoryDescription.from_api(response["repository"])

    async def describe_repository(self, name: str) -> RepositoryDescription:
        response = await self._call("describe_repositories", repositoryNames=[name])
        repositories = response.get("repositories", [])
        if not repositories:
            raise RemoteNotFoundError(
                f"describe_repositories returned no repository named {name}",
                "RepositoryNotFoundException",
            )
        return RepositoryDescription.from_api(repositories[0])

    async def put_image_tag_mutability(
        self, name: str, image_tag_mutability: ImageTagMutability
    ) -> None:
        await self._call(
            "put_image_tag_mutability",
            repositoryName=name,
            imageTagMutability=image_tag_mutability.value,
        )

    async def put_image_scanning_configuration(
        self, name: str, scanning: ImageScanningConfiguration
    ) -> None:
        await self._call(
            "put_image_scanning_configuration",
            repositoryName=name,
            imageScanningConfiguration=scanning.to_api(),
        )

    async def update_tags(self, arn: str, tags: Dict[str, str]) -> None:
        """
        Replace the full tag set of a repository.

        Keys that are no longer desired are untagged, then the desired set
        is written, so no stale tags survive.
        """
        response = await self._call("list_tags_for_resource", resourceArn=arn)
        current = {tag["Key"]: tag.get("Value", "") for tag in response.get("tags", [])}

        stale = sorted(key for key in current if key not in tags)
        if stale:
            await self._call("untag_resource", resourceArn=arn, tagKeys=stale)
        if tags:
            await self._call("tag_resource", resourceArn=arn, tags=_api_tags(tags))

    async def delete_repository(
        self, name: str, force: bool = True
    ) -> RepositoryDescription:
        response = await self._call(
            "delete_repository", repositoryName=name, force=force
        )
        return RepositoryDescription.from_api(response.get("repository", {}))

    # ==================== Policies ====================

    async def put_lifecycle_policy(self, name: str, policy_text: str) -> None:
        await self._call(
            "put_lifecycle_policy",
            repositoryName=name,
            lifecyclePolicyText=policy_text,
        )

    async def delete_lifecycle_policy(self, name: str) -> None:
        await self._call("delete_lifecycle_policy", repositoryName=name)

    async def set_repository_policy(
        self, name: str, policy_text: str, force: bool = False
    ) -> None:
        await self._call(
            "set_repository_policy",
            repositoryName=name,
            policyText=policy_text,
            force=force,
        )

    async def delete_repository_policy(self, name: str) -> None:
        await self._call("delete_repository_policy", repositoryName=name)
