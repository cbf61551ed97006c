"""deployctl - Dependency-aware declarative deployments for Kubernetes."""

__version__ = "0.1.0"

from .applier import ClusterApplier, ResourceApplier
from .cluster import ClusterConnection
from .config import Settings, get_settings
from .exceptions import (
    ClusterError,
    CycleError,
    DeployctlError,
    FatalApplyError,
    ParseError,
    PermanentError,
    TransientError,
    ValidationError,
)
from .loop import ReconcileLoop, reconcile_concurrently
from .manifest import load
from .models import (
    Action,
    ClusterConfig,
    DestroyResult,
    ManifestSet,
    ObservedState,
    PassStatus,
    ReadinessRequirement,
    ReadinessResult,
    ReconcileResult,
    ReconciliationPlan,
    Resource,
    ResourceId,
    ResourceKind,
    ResourceOutcome,
    ResourcePhase,
    ResourceStatus,
)
from .readiness import ReadinessGate
from .reconciler import Reconciler, RetryPolicy
from .resolver import order, reverse_order
from .state import ClusterStateReader, StateReader

__all__ = [
    # Manifest model
    "load",
    "ManifestSet",
    "Resource",
    "ResourceId",
    "ResourceKind",
    "ReadinessRequirement",
    # Dependency resolution
    "order",
    "reverse_order",
    # Cluster boundary
    "ClusterConnection",
    "ClusterConfig",
    "StateReader",
    "ClusterStateReader",
    "ResourceApplier",
    "ClusterApplier",
    "ObservedState",
    # Reconciliation
    "Reconciler",
    "RetryPolicy",
    "ReadinessGate",
    "ReconcileLoop",
    "reconcile_concurrently",
    "Action",
    "PassStatus",
    "ReadinessResult",
    "ReconcileResult",
    "ReconciliationPlan",
    "ResourceOutcome",
    "ResourcePhase",
    "ResourceStatus",
    "DestroyResult",
    # Configuration
    "Settings",
    "get_settings",
    # Errors
    "DeployctlError",
    "ParseError",
    "ValidationError",
    "CycleError",
    "ClusterError",
    "TransientError",
    "PermanentError",
    "FatalApplyError",
]
