"""
Reconciler plugins package.

Reconciler plugins own the reconciliation logic for one or more resource
kinds. Built-ins cover Repository, RepositoryLifecycle and RepositoryPolicy;
more can be discovered via Python entry points
(group: 'ecr_operator.reconcilers').
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)
from plugins.reconcilers.policy import (
    LifecyclePolicyReconciler,
    RepositoryPolicyReconciler,
)
from plugins.reconcilers.repository import RepositoryReconciler

__all__ = [
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileResult",
    "RepositoryReconciler",
    "LifecyclePolicyReconciler",
    "RepositoryPolicyReconciler",
]
