"""Kubernetes client bootstrap."""

import base64
import logging
import tempfile
from pathlib import Path
from typing import Optional

from kubernetes import client, config
from kubernetes.client import ApiClient, AppsV1Api, CoreV1Api
from kubernetes.client.exceptions import ApiException

from .models import ClusterConfig

logger = logging.getLogger(__name__)


class ClusterConnection:
    """Represents a connection to a single Kubernetes cluster."""

    def __init__(self, cluster_config: ClusterConfig):
        """
        Initialize cluster connection.

        Args:
            cluster_config: Cluster configuration

        Raises:
            ValueError: If kubeconfig is invalid
        """
        self.config = cluster_config
        self._api_client: Optional[ApiClient] = None
        self._core_v1: Optional[CoreV1Api] = None
        self._apps_v1: Optional[AppsV1Api] = None
        self._temp_kubeconfig: Optional[Path] = None

        self._initialize_client()

    def _initialize_client(self):
        """Initialize Kubernetes API client."""
        client_config = client.Configuration()
        try:
            if self.config.kubeconfig_data:
                # Decode base64 kubeconfig and write to temp file
                kubeconfig_content = base64.b64decode(self.config.kubeconfig_data)
                with tempfile.NamedTemporaryFile(mode="wb", delete=False) as f:
                    f.write(kubeconfig_content)
                    self._temp_kubeconfig = Path(f.name)
                config.load_kube_config(
                    config_file=str(self._temp_kubeconfig),
                    context=self.config.context,
                    client_configuration=client_config,
                )
            elif self.config.kubeconfig_path:
                config.load_kube_config(
                    config_file=str(Path(self.config.kubeconfig_path).expanduser()),
                    context=self.config.context,
                    client_configuration=client_config,
                )
            else:
                # Try in-cluster config (for when running inside K8s)
                config.load_incluster_config(client_configuration=client_config)

            self._api_client = ApiClient(configuration=client_config)
            self._core_v1 = CoreV1Api(self._api_client)
            self._apps_v1 = AppsV1Api(self._api_client)

        except Exception as e:
            self._cleanup_temp_kubeconfig()
            raise ValueError(f"Failed to initialize cluster connection: {e}") from e

        logger.info(
            f"Connected to cluster {self.config.name} "
            f"(context: {self.config.context or 'current'})"
        )

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance."""
        if not self._core_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._core_v1

    @property
    def apps_v1(self) -> AppsV1Api:
        """Get AppsV1Api instance."""
        if not self._apps_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._apps_v1

    @property
    def api_client(self) -> ApiClient:
        """Get ApiClient instance."""
        if not self._api_client:
            raise RuntimeError("Cluster connection not initialized")
        return self._api_client

    @property
    def request_timeout(self) -> float:
        return self.config.request_timeout_seconds

    @property
    def field_manager(self) -> str:
        return self.config.field_manager

    def is_healthy(self) -> bool:
        """
        Check if cluster connection is healthy.

        Returns:
            True if cluster is reachable and healthy
        """
        try:
            self.core_v1.get_api_resources(_request_timeout=self.request_timeout)
            return True
        except ApiException:
            return False

    def close(self):
        """Close the cluster connection and clean up resources."""
        if self._api_client:
            self._api_client.close()
            self._api_client = None

        self._cleanup_temp_kubeconfig()
        self._core_v1 = None
        self._apps_v1 = None

    def _cleanup_temp_kubeconfig(self):
        if self._temp_kubeconfig and self._temp_kubeconfig.exists():
            self._temp_kubeconfig.unlink()
        self._temp_kubeconfig = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
