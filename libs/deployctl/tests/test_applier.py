"""Tests for ClusterApplier."""

import pytest
from kubernetes.client.exceptions import ApiException

from deployctl import Action, ClusterApplier, PermanentError, Resource, TransientError
from deployctl.applier import build_body
from deployctl.models import MANAGED_BY_LABEL, SPEC_HASH_ANNOTATION


@pytest.fixture
def deployment():
    return Resource(
        kind="Deployment",
        name="eshop-api",
        namespace="eshop",
        labels={"app": "eshop-api"},
        annotations={"owner": "platform"},
        spec={"replicas": 2, "template": {"spec": {"containers": [{"name": "api", "image": "acr/eshop-api:1.0"}]}}},
    )


class TestBuildBody:
    """Test cases for build_body()."""

    def test_deployment_body(self, deployment):
        """Labels, annotations and the spec hash are stamped on the object."""
        body = build_body(deployment)

        assert body["apiVersion"] == "apps/v1"
        assert body["kind"] == "Deployment"
        assert body["metadata"]["name"] == "eshop-api"
        assert body["metadata"]["namespace"] == "eshop"
        assert body["metadata"]["labels"][MANAGED_BY_LABEL] == "deployctl"
        assert body["metadata"]["labels"]["app"] == "eshop-api"
        assert body["metadata"]["annotations"]["owner"] == "platform"
        assert body["metadata"]["annotations"][SPEC_HASH_ANNOTATION] == deployment.spec_hash
        assert body["spec"]["replicas"] == 2

    def test_config_map_body(self):
        """ConfigMap payload sits at the top level."""
        config_map = Resource(
            kind="ConfigMap", name="api-config", namespace="eshop", spec={"data": {"k": "v"}}
        )

        body = build_body(config_map)

        assert body["data"] == {"k": "v"}
        assert "spec" not in body

    def test_namespace_body(self):
        """Namespaces have no namespace and no empty spec."""
        body = build_body(Resource(kind="Namespace", name="eshop"))

        assert "namespace" not in body["metadata"]
        assert "spec" not in body
        assert body["apiVersion"] == "v1"

    def test_spec_hash_tracks_changes(self, deployment):
        """Changing the image changes the hash; reordering keys does not."""
        changed = deployment.model_copy(
            update={"spec": {"replicas": 2, "template": {"spec": {"containers": [{"name": "api", "image": "acr/eshop-api:1.1"}]}}}}
        )
        reordered = deployment.model_copy(
            update={"spec": {"template": {"spec": {"containers": [{"image": "acr/eshop-api:1.0", "name": "api"}]}}, "replicas": 2}}
        )

        assert changed.spec_hash != deployment.spec_hash
        assert reordered.spec_hash == deployment.spec_hash


class TestClusterApplier:
    """Test cases for ClusterApplier."""

    def test_create_deployment(self, mock_cluster_connection, deployment):
        """Create goes through the apps API with the field manager."""
        applier = ClusterApplier(mock_cluster_connection)
        applier.apply(deployment, Action.CREATE)

        mock_cluster_connection.apps_v1.create_namespaced_deployment.assert_called_once()
        call_args = mock_cluster_connection.apps_v1.create_namespaced_deployment.call_args
        assert call_args.kwargs["namespace"] == "eshop"
        assert call_args.kwargs["field_manager"] == "deployctl"
        assert call_args.kwargs["body"]["metadata"]["name"] == "eshop-api"

    def test_update_patches(self, mock_cluster_connection, deployment):
        """Update patches the existing object."""
        applier = ClusterApplier(mock_cluster_connection)
        applier.apply(deployment, Action.UPDATE)

        mock_cluster_connection.apps_v1.create_namespaced_deployment.assert_not_called()
        call_args = mock_cluster_connection.apps_v1.patch_namespaced_deployment.call_args
        assert call_args.kwargs["name"] == "eshop-api"
        assert call_args.kwargs["namespace"] == "eshop"

    def test_skip_does_nothing(self, mock_cluster_connection, deployment):
        applier = ClusterApplier(mock_cluster_connection)
        applier.apply(deployment, Action.SKIP)

        assert mock_cluster_connection.apps_v1.method_calls == []

    def test_create_conflict_falls_back_to_patch(self, mock_cluster_connection, deployment):
        """An object created concurrently is patched instead."""
        mock_cluster_connection.apps_v1.create_namespaced_deployment.side_effect = ApiException(status=409)

        applier = ClusterApplier(mock_cluster_connection)
        applier.apply(deployment, Action.CREATE)

        mock_cluster_connection.apps_v1.patch_namespaced_deployment.assert_called_once()

    def test_create_namespace(self, mock_cluster_connection):
        applier = ClusterApplier(mock_cluster_connection)
        applier.apply(Resource(kind="Namespace", name="eshop"), Action.CREATE)

        call_args = mock_cluster_connection.core_v1.create_namespace.call_args
        assert call_args.kwargs["body"]["metadata"]["name"] == "eshop"

    def test_update_config_map_and_service(self, mock_cluster_connection):
        applier = ClusterApplier(mock_cluster_connection)
        applier.apply(Resource(kind="ConfigMap", name="cfg", namespace="eshop"), Action.UPDATE)
        applier.apply(Resource(kind="Service", name="api", namespace="eshop"), Action.UPDATE)

        mock_cluster_connection.core_v1.patch_namespaced_config_map.assert_called_once()
        mock_cluster_connection.core_v1.patch_namespaced_service.assert_called_once()

    def test_rejected_spec_is_permanent(self, mock_cluster_connection, deployment):
        mock_cluster_connection.apps_v1.create_namespaced_deployment.side_effect = ApiException(
            status=422, reason="Unprocessable Entity"
        )

        with pytest.raises(PermanentError, match="create Deployment/eshop/eshop-api"):
            ClusterApplier(mock_cluster_connection).apply(deployment, Action.CREATE)

    def test_throttled_is_transient(self, mock_cluster_connection, deployment):
        mock_cluster_connection.apps_v1.patch_namespaced_deployment.side_effect = ApiException(status=429)

        with pytest.raises(TransientError):
            ClusterApplier(mock_cluster_connection).apply(deployment, Action.UPDATE)

    def test_delete(self, mock_cluster_connection, deployment):
        """Test deleting a deployment successfully."""
        applier = ClusterApplier(mock_cluster_connection)
        assert applier.delete(deployment) is True

        call_args = mock_cluster_connection.apps_v1.delete_namespaced_deployment.call_args
        assert call_args.args == ("eshop-api", "eshop")
        assert call_args.kwargs["propagation_policy"] == "Background"

    def test_delete_not_found(self, mock_cluster_connection, deployment):
        """Test deleting a non-existent deployment."""
        mock_cluster_connection.apps_v1.delete_namespaced_deployment.side_effect = ApiException(status=404)

        assert ClusterApplier(mock_cluster_connection).delete(deployment) is False

    def test_delete_namespace(self, mock_cluster_connection):
        applier = ClusterApplier(mock_cluster_connection)
        applier.delete(Resource(kind="Namespace", name="eshop"))

        mock_cluster_connection.core_v1.delete_namespace.assert_called_once()
