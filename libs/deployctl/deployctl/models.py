"""Desired-state and observed-state models for deployctl."""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "deployctl"
SPEC_HASH_ANNOTATION = "deployctl.io/spec-hash"
DEPENDS_ON_ANNOTATION = "deployctl.io/depends-on"
WAIT_READY_ANNOTATION = "deployctl.io/wait-ready"


class ResourceKind(str, Enum):
    """Supported resource kinds, declared in apply rank order."""

    NAMESPACE = "Namespace"
    CONFIG_MAP = "ConfigMap"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"

    @property
    def rank(self) -> int:
        """Position used to break ties between unrelated resources."""
        return list(ResourceKind).index(self)

    @property
    def namespaced(self) -> bool:
        return self is not ResourceKind.NAMESPACE


class ResourceId(BaseModel):
    """Identity of a resource within a manifest set."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str
    namespace: str = ""

    def sort_key(self) -> tuple[int, str, str]:
        return (self.kind.rank, self.name, self.namespace)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.value}/{self.namespace}/{self.name}"
        return f"{self.kind.value}/{self.name}"


class ReadinessRequirement(BaseModel):
    """Declares that dependents must wait for this resource to become ready."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    critical: bool = True  # A timeout aborts the pass when True


class Resource(BaseModel):
    """A single desired-state unit."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str = Field(min_length=1)
    namespace: str = ""
    spec: dict[str, Any] = Field(default_factory=dict)
    depends_on: frozenset[ResourceId] = Field(default_factory=frozenset)
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    readiness: Optional[ReadinessRequirement] = None

    @property
    def id(self) -> ResourceId:
        return ResourceId(kind=self.kind, name=self.name, namespace=self.namespace)

    @property
    def spec_hash(self) -> str:
        """Stable digest of everything the orchestrator writes to the cluster."""
        payload = {
            "kind": self.kind.value,
            "spec": self.spec,
            "labels": self.labels,
            "annotations": self.annotations,
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        return str(self.id)


class ManifestSet(BaseModel):
    """
    A deployment unit: a named, order-irrelevant collection of resources.

    Instances are produced by ``deployctl.manifest.load`` which enforces the
    identity, dangling-reference and acyclicity invariants.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    resources: tuple[Resource, ...] = ()

    def ids(self) -> set[ResourceId]:
        return {r.id for r in self.resources}

    def get(self, resource_id: ResourceId) -> Optional[Resource]:
        for resource in self.resources:
            if resource.id == resource_id:
                return resource
        return None


class ObservedState(BaseModel):
    """Snapshot of a resource's live condition in the cluster."""

    resource_id: ResourceId
    exists: bool
    generation: Optional[str] = None
    ready: bool = False
    last_transition: Optional[datetime] = None
    spec_hash: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def absent(cls, resource_id: ResourceId) -> "ObservedState":
        return cls(resource_id=resource_id, exists=False, message="not found")


class Action(str, Enum):
    """Change required to bring a resource to its desired state."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class PlanStep(BaseModel):
    """One entry of a reconciliation plan."""

    resource: Resource
    action: Action
    reason: str = ""


class ReconciliationPlan(BaseModel):
    """Ordered list of actions a pass takes. Never persisted."""

    manifest: str
    steps: list[PlanStep] = Field(default_factory=list)

    @property
    def changes(self) -> list[PlanStep]:
        return [s for s in self.steps if s.action != Action.SKIP]


class ResourcePhase(str, Enum):
    """Lifecycle of a resource within one reconciliation pass."""

    PENDING = "pending"
    APPLYING = "applying"
    READY = "ready"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[ResourcePhase, set[ResourcePhase]] = {
    ResourcePhase.PENDING: {ResourcePhase.APPLYING, ResourcePhase.FAILED},
    ResourcePhase.APPLYING: {
        ResourcePhase.APPLYING,
        ResourcePhase.READY,
        ResourcePhase.FAILED,
    },
    ResourcePhase.READY: set(),
    ResourcePhase.FAILED: set(),
}


class ReadinessResult(str, Enum):
    """Outcome of waiting on a readiness gate."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ResourceOutcome(BaseModel):
    """Progress of a single resource during a pass."""

    resource_id: ResourceId
    phase: ResourcePhase = ResourcePhase.PENDING
    action: Optional[Action] = None
    attempts: int = 0
    readiness: Optional[ReadinessResult] = None
    error: Optional[str] = None

    def transition(self, phase: ResourcePhase) -> None:
        """
        Move to a new phase.

        Raises:
            ValueError: If the transition is not allowed
        """
        if phase not in _ALLOWED_TRANSITIONS[self.phase]:
            raise ValueError(
                f"Illegal phase transition for {self.resource_id}: "
                f"{self.phase.value} -> {phase.value}"
            )
        self.phase = phase


class PassStatus(str, Enum):
    """Overall result of a reconciliation pass."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReconcileResult(BaseModel):
    """Summary of one reconciliation pass."""

    manifest: str
    status: PassStatus = PassStatus.RUNNING
    outcomes: list[ResourceOutcome] = Field(default_factory=list)
    plan: ReconciliationPlan
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def _count(self, action: Action) -> int:
        return sum(
            1
            for o in self.outcomes
            if o.action == action and o.phase == ResourcePhase.READY
        )

    @property
    def created(self) -> int:
        return self._count(Action.CREATE)

    @property
    def updated(self) -> int:
        return self._count(Action.UPDATE)

    @property
    def skipped(self) -> int:
        return self._count(Action.SKIP)

    @property
    def failed_resource(self) -> Optional[ResourceId]:
        for outcome in self.outcomes:
            if outcome.phase == ResourcePhase.FAILED:
                return outcome.resource_id
        return None

    def outcome(self, resource_id: ResourceId) -> Optional[ResourceOutcome]:
        for outcome in self.outcomes:
            if outcome.resource_id == resource_id:
                return outcome
        return None


class ResourceStatus(BaseModel):
    """Per-resource report produced by ``Reconciler.status``."""

    resource_id: ResourceId
    exists: bool
    in_sync: bool
    ready: bool
    generation: Optional[str] = None
    last_transition: Optional[datetime] = None
    message: Optional[str] = None


class DestroyOutcome(str, Enum):
    DELETED = "deleted"
    ABSENT = "absent"
    ERROR = "error"


class DestroyResult(BaseModel):
    """Summary of a best-effort teardown."""

    manifest: str
    outcomes: list[tuple[ResourceId, DestroyOutcome, Optional[str]]] = Field(
        default_factory=list
    )

    @property
    def errors(self) -> list[tuple[ResourceId, str]]:
        return [
            (rid, message or "")
            for rid, outcome, message in self.outcomes
            if outcome == DestroyOutcome.ERROR
        ]


class ClusterConfig(BaseModel):
    """Cluster connection configuration."""

    name: str = "default"
    kubeconfig_path: Optional[str] = None
    kubeconfig_data: Optional[str] = None  # Base64 encoded kubeconfig
    context: Optional[str] = None  # Specific context to use
    field_manager: str = MANAGED_BY_VALUE
    request_timeout_seconds: float = 30.0
