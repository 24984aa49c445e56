"""
Policy Reconcilers - Converge policies that hang off an ECR repository.

RepositoryLifecycle and RepositoryPolicy objects share one state machine:

- the policy is only applied once the referenced Repository object exists
  in the same namespace,
- after the first successful apply the object gets a finalizer and an
  owner reference to its Repository,
- on deletion the remote policy is removed before the finalizer is
  released, so the local object can never disappear while the remote
  policy is still in place.

Subclasses only supply the kind, the finalizer name and the remote
apply/delete calls.
"""

import logging
from abc import abstractmethod
from typing import List

from gateway import GatewayError, RemoteNotFoundError
from plugins.reconcilers.base import ReconcilerContext, ReconcilerPlugin, ReconcileResult
from resources import (
    KIND_REPOSITORY,
    KIND_REPOSITORY_LIFECYCLE,
    KIND_REPOSITORY_POLICY,
    LifecyclePolicySpec,
    RepositoryPolicySpec,
    Resource,
    ResourceKey,
)

logger = logging.getLogger(__name__)

LIFECYCLE_FINALIZER = "repositorylifecycles.ecr-operator.io/finalizer"
POLICY_FINALIZER = "repositorypolicies.ecr-operator.io/finalizer"


class RepositoryPolicyReconcilerBase(ReconcilerPlugin):
    """Shared reconcile/finalize protocol for repository-scoped policies."""

    kind: str = ""
    finalizer: str = ""
    artifact: str = "policy"

    @property
    def resource_types(self) -> List[str]:
        return [self.kind]

    @abstractmethod
    async def apply_policy(self, resource: Resource, ctx: ReconcilerContext) -> None:
        """Write the policy document to ECR verbatim."""
        pass

    @abstractmethod
    async def delete_policy(self, resource: Resource, ctx: ReconcilerContext) -> None:
        """Remove the policy from ECR."""
        pass

    async def reconcile(
        self, request: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        resource = await ctx.get_resource(self.kind, request.namespace, request.name)
        if resource is None:
            # Removal only happens after finalization, nothing left to do
            logger.info(f"{request} already deleted. Skipping.")
            return ReconcileResult.done("already deleted")

        if resource.is_being_deleted:
            return await self._finalize(resource, ctx)

        repository_name = resource.spec.get("repositoryName", "")
        repository = await ctx.get_resource(
            KIND_REPOSITORY, resource.namespace, repository_name
        )
        if repository is None:
            message = (
                f"Repository {resource.namespace}/{repository_name} referenced by "
                f"{resource.key} not found"
            )
            logger.warning(f"{message}, requeueing")
            return ctx.retry(message)

        try:
            await self.apply_policy(resource, ctx)
        except GatewayError as e:
            logger.error(f"Could not set ECR {self.artifact} for {resource.key}: {e}")
            return ctx.retry(str(e))

        logger.info(f"Set ECR {self.artifact} on {repository_name} for {resource.key}")

        if not resource.has_finalizer(self.finalizer):
            resource.add_finalizer(self.finalizer)
            resource.set_owner_reference(repository)
            await ctx.update_resource(resource)
            logger.info(f"Added finalizer and owner reference to {resource.key}")

        return ReconcileResult.done("applied")

    async def _finalize(
        self, resource: Resource, ctx: ReconcilerContext
    ) -> ReconcileResult:
        if not resource.has_finalizer(self.finalizer):
            return ReconcileResult.done("nothing to finalize")

        try:
            await self.delete_policy(resource, ctx)
            logger.info(f"Deleted ECR {self.artifact} for {resource.key}")
        except RemoteNotFoundError:
            logger.info(
                f"ECR {self.artifact} for {resource.key} already deleted. Skipping."
            )
        except GatewayError as e:
            # Keep the finalizer so the object stays around for the retry
            logger.error(f"Failed to delete ECR {self.artifact} for {resource.key}: {e}")
            return ctx.retry(str(e))

        resource.remove_finalizer(self.finalizer)
        await ctx.update_resource(resource)
        logger.info(f"Finalized {resource.key}")
        return ReconcileResult.done("finalized")


class LifecyclePolicyReconciler(RepositoryPolicyReconcilerBase):
    """Reconciler for RepositoryLifecycle objects (image retention rules)."""

    kind = KIND_REPOSITORY_LIFECYCLE
    finalizer = LIFECYCLE_FINALIZER
    artifact = "lifecycle policy"

    @property
    def name(self) -> str:
        return "repository-lifecycle"

    async def apply_policy(self, resource: Resource, ctx: ReconcilerContext) -> None:
        spec = LifecyclePolicySpec.from_dict(resource.spec)
        await ctx.gateway.put_lifecycle_policy(
            spec.repository_name, spec.lifecycle_policy_text
        )

    async def delete_policy(self, resource: Resource, ctx: ReconcilerContext) -> None:
        spec = LifecyclePolicySpec.from_dict(resource.spec)
        await ctx.gateway.delete_lifecycle_policy(spec.repository_name)


class RepositoryPolicyReconciler(RepositoryPolicyReconcilerBase):
    """Reconciler for RepositoryPolicy objects (repository access policy)."""

    kind = KIND_REPOSITORY_POLICY
    finalizer = POLICY_FINALIZER
    artifact = "repository policy"

    @property
    def name(self) -> str:
        return "repository-policy"

    async def apply_policy(self, resource: Resource, ctx: ReconcilerContext) -> None:
        spec = RepositoryPolicySpec.from_dict(resource.spec)
        await ctx.gateway.set_repository_policy(
            spec.repository_name, spec.policy_text, force=spec.force
        )

    async def delete_policy(self, resource: Resource, ctx: ReconcilerContext) -> None:
        spec = RepositoryPolicySpec.from_dict(resource.spec)
        await ctx.gateway.delete_repository_policy(spec.repository_name)
