"""Writing desired state to the cluster."""

import logging
from abc import ABC, abstractmethod
from typing import Any

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from .cluster import ClusterConnection
from .exceptions import classify_api_error
from .models import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SPEC_HASH_ANNOTATION,
    Action,
    Resource,
    ResourceKind,
)

logger = logging.getLogger(__name__)

_API_VERSIONS = {
    ResourceKind.NAMESPACE: "v1",
    ResourceKind.CONFIG_MAP: "v1",
    ResourceKind.DEPLOYMENT: "apps/v1",
    ResourceKind.SERVICE: "v1",
}


class ResourceApplier(ABC):
    """Mutating half of the cluster boundary."""

    @abstractmethod
    def apply(self, resource: Resource, action: Action) -> None:
        """
        Create or update a resource.

        Raises:
            TransientError: On network, timeout or throttling failures
            PermanentError: If the cluster rejects the object
        """
        pass

    @abstractmethod
    def delete(self, resource: Resource) -> bool:
        """
        Delete a resource.

        Returns:
            True if deleted, False if it did not exist
        """
        pass


def build_body(resource: Resource) -> dict[str, Any]:
    """
    Render the Kubernetes object for a resource.

    The spec hash annotation and managed-by label are stamped on every object
    so later passes can tell whether the live object matches the manifest.
    """
    metadata: dict[str, Any] = {
        "name": resource.name,
        "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE, **resource.labels},
        "annotations": {**resource.annotations, SPEC_HASH_ANNOTATION: resource.spec_hash},
    }
    if resource.kind.namespaced:
        metadata["namespace"] = resource.namespace

    body: dict[str, Any] = {
        "apiVersion": _API_VERSIONS[resource.kind],
        "kind": resource.kind.value,
        "metadata": metadata,
    }
    if resource.kind == ResourceKind.CONFIG_MAP:
        # ConfigMaps carry data/binaryData/immutable at the top level
        body.update(resource.spec)
    elif resource.spec or resource.kind != ResourceKind.NAMESPACE:
        body["spec"] = resource.spec
    return body


class ClusterApplier(ResourceApplier):
    """Applies resources with the Kubernetes API."""

    def __init__(self, cluster: ClusterConnection):
        """
        Initialize applier.

        Args:
            cluster: Cluster connection
        """
        self.cluster = cluster
        self.core_v1 = cluster.core_v1
        self.apps_v1 = cluster.apps_v1

    def apply(self, resource: Resource, action: Action) -> None:
        if action == Action.SKIP:
            return

        rid = resource.id
        body = build_body(resource)
        try:
            if action == Action.CREATE:
                try:
                    self._create(resource, body)
                except ApiException as e:
                    if e.status != 409:
                        raise
                    # Created by someone else since it was observed
                    logger.info(f"{rid} already exists, patching instead")
                    self._patch(resource, body)
            else:
                self._patch(resource, body)
        except (ApiException, Urllib3HTTPError, OSError) as e:
            raise classify_api_error(e, f"{action.value} {rid}") from e

        logger.info(f"Applied {action.value} to {rid}")

    def delete(self, resource: Resource) -> bool:
        rid = resource.id
        try:
            self._delete(resource)
        except ApiException as e:
            if e.status == 404:
                return False
            raise classify_api_error(e, f"delete {rid}") from e
        except (Urllib3HTTPError, OSError) as e:
            raise classify_api_error(e, f"delete {rid}") from e

        logger.info(f"Deleted {rid}")
        return True

    def _create(self, resource: Resource, body: dict[str, Any]) -> Any:
        kwargs = {
            "body": body,
            "field_manager": self.cluster.field_manager,
            "_request_timeout": self.cluster.request_timeout,
        }
        if resource.kind == ResourceKind.NAMESPACE:
            return self.core_v1.create_namespace(**kwargs)
        if resource.kind == ResourceKind.CONFIG_MAP:
            return self.core_v1.create_namespaced_config_map(
                namespace=resource.namespace, **kwargs
            )
        if resource.kind == ResourceKind.SERVICE:
            return self.core_v1.create_namespaced_service(
                namespace=resource.namespace, **kwargs
            )
        return self.apps_v1.create_namespaced_deployment(
            namespace=resource.namespace, **kwargs
        )

    def _patch(self, resource: Resource, body: dict[str, Any]) -> Any:
        kwargs = {
            "name": resource.name,
            "body": body,
            "field_manager": self.cluster.field_manager,
            "_request_timeout": self.cluster.request_timeout,
        }
        if resource.kind == ResourceKind.NAMESPACE:
            return self.core_v1.patch_namespace(**kwargs)
        if resource.kind == ResourceKind.CONFIG_MAP:
            return self.core_v1.patch_namespaced_config_map(
                namespace=resource.namespace, **kwargs
            )
        if resource.kind == ResourceKind.SERVICE:
            return self.core_v1.patch_namespaced_service(
                namespace=resource.namespace, **kwargs
            )
        return self.apps_v1.patch_namespaced_deployment(
            namespace=resource.namespace, **kwargs
        )

    def _delete(self, resource: Resource) -> Any:
        kwargs = {
            "propagation_policy": "Background",
            "_request_timeout": self.cluster.request_timeout,
        }
        if resource.kind == ResourceKind.NAMESPACE:
            return self.core_v1.delete_namespace(resource.name, **kwargs)
        if resource.kind == ResourceKind.CONFIG_MAP:
            return self.core_v1.delete_namespaced_config_map(
                resource.name, resource.namespace, **kwargs
            )
        if resource.kind == ResourceKind.SERVICE:
            return self.core_v1.delete_namespaced_service(
                resource.name, resource.namespace, **kwargs
            )
        return self.apps_v1.delete_namespaced_deployment(
            resource.name, resource.namespace, **kwargs
        )
