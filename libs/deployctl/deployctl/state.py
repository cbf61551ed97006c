"""Reading live resource state from the cluster."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from .cluster import ClusterConnection
from .exceptions import classify_api_error
from .models import SPEC_HASH_ANNOTATION, ObservedState, Resource, ResourceKind

logger = logging.getLogger(__name__)


class StateReader(ABC):
    """Read-only view of the cluster used by the reconciler."""

    @abstractmethod
    def observe(self, resource: Resource) -> ObservedState:
        """
        Observe the live state of a resource.

        Returns:
            ObservedState, or ``ObservedState.absent`` when the resource
            does not exist

        Raises:
            TransientError: On network, timeout or throttling failures
            PermanentError: If the cluster rejects the read
        """
        pass


class ClusterStateReader(StateReader):
    """Observes Namespaces, ConfigMaps, Deployments and Services."""

    def __init__(self, cluster: ClusterConnection):
        """
        Initialize state reader.

        Args:
            cluster: Cluster connection
        """
        self.cluster = cluster
        self.core_v1 = cluster.core_v1
        self.apps_v1 = cluster.apps_v1

    def observe(self, resource: Resource) -> ObservedState:
        rid = resource.id
        try:
            obj = self._read(resource)
        except ApiException as e:
            if e.status == 404:
                return ObservedState.absent(rid)
            raise classify_api_error(e, f"observe {rid}") from e
        except (Urllib3HTTPError, OSError) as e:
            raise classify_api_error(e, f"observe {rid}") from e

        metadata = obj.metadata
        annotations = metadata.annotations or {}
        if metadata.generation is not None:
            generation = str(metadata.generation)
        else:
            generation = metadata.resource_version

        ready, last_transition, message = _evaluate(resource.kind, obj)

        observed = ObservedState(
            resource_id=rid,
            exists=True,
            generation=generation,
            ready=ready,
            last_transition=last_transition or metadata.creation_timestamp,
            spec_hash=annotations.get(SPEC_HASH_ANNOTATION),
            message=message,
        )
        logger.debug(f"Observed {rid}: ready={observed.ready} generation={generation}")
        return observed

    def _read(self, resource: Resource) -> Any:
        timeout = self.cluster.request_timeout
        if resource.kind == ResourceKind.NAMESPACE:
            return self.core_v1.read_namespace(resource.name, _request_timeout=timeout)
        if resource.kind == ResourceKind.CONFIG_MAP:
            return self.core_v1.read_namespaced_config_map(
                resource.name, resource.namespace, _request_timeout=timeout
            )
        if resource.kind == ResourceKind.SERVICE:
            return self.core_v1.read_namespaced_service(
                resource.name, resource.namespace, _request_timeout=timeout
            )
        return self.apps_v1.read_namespaced_deployment(
            resource.name, resource.namespace, _request_timeout=timeout
        )


def _evaluate(kind: ResourceKind, obj: Any) -> tuple[bool, Optional[datetime], Optional[str]]:
    if kind == ResourceKind.NAMESPACE:
        phase = obj.status.phase if obj.status else None
        if phase == "Active":
            return True, None, None
        return False, None, f"Namespace phase is {phase}"
    if kind == ResourceKind.DEPLOYMENT:
        return deployment_readiness(obj)
    # ConfigMaps and Services are usable as soon as they exist
    return True, None, None


def deployment_readiness(deployment: Any) -> tuple[bool, Optional[datetime], Optional[str]]:
    """
    Decide whether a deployment's rollout is complete.

    The rollout is complete when the controller has observed the latest
    generation and every desired replica is updated, ready and available.

    Returns:
        (ready, last condition transition, message)
    """
    spec = deployment.spec
    status = deployment.status
    desired = spec.replicas if spec and spec.replicas is not None else 1

    if status is None:
        return False, None, "Deployment has no status yet"

    conditions = status.conditions or []
    transitions = [c.last_transition_time for c in conditions if c.last_transition_time]
    last_transition = max(transitions) if transitions else None

    for condition in conditions:
        if condition.type == "Progressing" and condition.reason == "ProgressDeadlineExceeded":
            return False, last_transition, f"Rollout stalled: {condition.message}"

    generation = deployment.metadata.generation
    if generation is not None and (status.observed_generation or 0) < generation:
        return False, last_transition, "Waiting for controller to observe latest generation"

    updated = status.updated_replicas or 0
    ready = status.ready_replicas or 0
    available = status.available_replicas or 0

    if updated < desired:
        return False, last_transition, f"{updated}/{desired} replicas updated"
    if ready < desired:
        return False, last_transition, f"{ready}/{desired} replicas ready"
    if available < desired:
        return False, last_transition, f"{available}/{desired} replicas available"

    for condition in conditions:
        if condition.type == "Available" and condition.status == "False":
            return False, last_transition, condition.message or "Deployment unavailable"

    return True, last_transition, f"{ready}/{desired} replicas ready"
