"""
Repository Reconciler - Converges Repository objects with ECR repositories.

The object name is the join key to the remote repository, so a name may
be declared in only one namespace. Deleting the object triggers a forced
remote delete on the next invocation unless another Repository still
declares that name; there is no finalizer, so only the name from the
request is available at that point.
"""

import logging
from typing import List

from gateway import (
    RemoteAlreadyExistsError,
    RemoteNotFoundError,
    RepositoryDescription,
    TransientRemoteError,
)
from plugins.reconcilers.base import ReconcilerContext, ReconcilerPlugin, ReconcileResult
from resources import (
    KIND_REPOSITORY,
    ImageScanningConfiguration,
    RepositorySpec,
    RepositoryStatus,
    Resource,
    ResourceKey,
)

logger = logging.getLogger(__name__)


class RepositoryReconciler(ReconcilerPlugin):
    """Reconciler for the Repository kind."""

    @property
    def name(self) -> str:
        return "repository"

    @property
    def resource_types(self) -> List[str]:
        return [KIND_REPOSITORY]

    async def reconcile(
        self, request: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        repository = await ctx.get_resource(
            KIND_REPOSITORY, request.namespace, request.name
        )
        if repository is None:
            return await self._delete(request, ctx)

        spec = RepositorySpec.from_dict(repository.spec)

        try:
            described = await ctx.gateway.describe_repository(repository.name)
        except RemoteNotFoundError:
            return await self._create(repository, spec, ctx)
        except TransientRemoteError as e:
            logger.error(f"Could not describe ECR repository {request}: {e}")
            return ctx.retry(str(e))

        return await self._converge(repository, spec, described, ctx)

    async def _delete(
        self, request: ResourceKey, ctx: ReconcilerContext
    ) -> ReconcileResult:
        claimants = [
            r.namespace
            for r in await ctx.list_resources(KIND_REPOSITORY)
            if r.name == request.name
        ]
        if claimants:
            logger.warning(
                f"ECR repository {request.name} is still declared in namespace(s) "
                f"{', '.join(sorted(claimants))}. Keeping it."
            )
            return ReconcileResult.done("still declared")

        try:
            deleted = await ctx.gateway.delete_repository(request.name, force=True)
        except RemoteNotFoundError:
            logger.info(f"ECR repository for {request} already deleted. Skipping.")
            return ReconcileResult.done("already deleted")
        except TransientRemoteError as e:
            logger.error(f"Could not delete ECR repository for {request}: {e}")
            return ctx.retry(str(e))

        logger.info(f"Deleted ECR repository {deleted.uri or request.name}")
        return ReconcileResult.done("deleted")

    async def _create(
        self, repository: Resource, spec: RepositorySpec, ctx: ReconcilerContext
    ) -> ReconcileResult:
        try:
            created = await ctx.gateway.create_repository(
                repository.name,
                spec.image_tag_mutability,
                scanning=spec.image_scanning_configuration,
                encryption=spec.encryption_configuration,
                tags=repository.labels,
            )
        except RemoteAlreadyExistsError:
            # A duplicate event raced us; the next invocation converges it
            logger.info(f"ECR repository for {repository.key} already exists. Skipping.")
            return ReconcileResult.done("already exists")
        except TransientRemoteError as e:
            logger.error(f"Could not create ECR repository for {repository.key}: {e}")
            return ctx.retry(str(e))

        logger.info(f"Created ECR repository {created.name} ({created.uri})")

        repository.status = self._status_from(created).to_dict()
        await ctx.update_status(repository)
        return ReconcileResult.done("created")

    async def _converge(
        self,
        repository: Resource,
        spec: RepositorySpec,
        described: RepositoryDescription,
        ctx: ReconcilerContext,
    ) -> ReconcileResult:
        name = repository.name
        # An omitted scanning block means scanning is off, matching what
        # ECR applies at creation time
        scanning = spec.image_scanning_configuration or ImageScanningConfiguration(
            scan_on_push=False
        )

        try:
            await ctx.gateway.put_image_tag_mutability(name, spec.image_tag_mutability)
            logger.info(
                f"Updated image tag mutability of {name} to "
                f"{spec.image_tag_mutability.value}"
            )

            await ctx.gateway.put_image_scanning_configuration(name, scanning)
            logger.info(f"Updated scan on push of {name} to {scanning.scan_on_push}")

            await ctx.gateway.update_tags(described.arn, repository.labels)
            logger.info(f"Updated tags of {name}: {sorted(repository.labels)}")
        except RemoteNotFoundError as e:
            # Deleted out of band between describe and update; recreate next time
            logger.warning(f"ECR repository {name} disappeared during update: {e}")
            return ctx.retry(str(e))
        except TransientRemoteError as e:
            logger.error(f"Could not update ECR repository {name}: {e}")
            return ctx.retry(str(e))

        self._warn_on_encryption_drift(repository, spec, described)

        # Backfill status lost to an already-exists race or a failed write
        status = self._status_from(described).to_dict()
        if repository.status != status:
            repository.status = status
            await ctx.update_status(repository)
            logger.info(f"Refreshed status of {repository.key}")

        return ReconcileResult.done("converged")

    @staticmethod
    def _status_from(described: RepositoryDescription) -> RepositoryStatus:
        return RepositoryStatus(
            repository_arn=described.arn,
            registry_id=described.registry_id,
            repository_uri=described.uri,
        )

    @staticmethod
    def _warn_on_encryption_drift(
        repository: Resource, spec: RepositorySpec, described: RepositoryDescription
    ) -> None:
        """
        ECR cannot change the encryption of an existing repository, so a
        difference here is permanent until the repository is recreated.
        """
        desired = spec.encryption_configuration
        if desired is None or described.encryption_type is None:
            return

        # kmsKey is not compared: ECR reports the key ARN even when an alias
        # was requested
        if desired.encryption_type.value != described.encryption_type:
            logger.warning(
                f"Encryption configuration of {repository.key} differs from ECR "
                f"({described.encryption_type}); it cannot be changed after creation"
            )
