#!/usr/bin/env python3
"""
Workload Cluster Access

Builds Kubernetes clients for workload clusters from the kubeconfig secrets
stored in the management cluster, and wraps the handful of node and pod
calls the drain needs.
"""

import base64
import logging
from typing import List, Optional
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from management_client import REQUEST_ERRORS, request_error_reason
from models import Cluster, KUBECONFIG_SECRET_KEY

logger = logging.getLogger(__name__)

# Seconds before a single workload cluster API request is abandoned
REMOTE_REQUEST_TIMEOUT = 10


class RemoteClusterError(Exception):
    """Base class for failures to reach a workload cluster."""

    # Whether repeating the lookup without an external change can succeed
    retryable = False


class KubeconfigNotFoundError(RemoteClusterError):
    """The kubeconfig secret does not exist."""


class InvalidKubeconfigError(RemoteClusterError):
    """The kubeconfig secret exists but can't be turned into a client."""


class RemoteClusterUnavailableError(RemoteClusterError):
    """The kubeconfig secret could not be read because of an API failure."""

    retryable = True


class RemoteClusterClient:
    """
    Node and pod operations against one workload cluster.

    Lookups return None when the object is gone. Other failures are raised
    as ApiException, or as a urllib3 HTTPError when the cluster doesn't
    answer within the request timeout.

    Calls taking a timeout use the smaller of it and the client's own
    request timeout, so callers working against a deadline can shorten
    individual requests.
    """

    def __init__(self, api_client: client.ApiClient, name: str = "",
                 request_timeout: float = REMOTE_REQUEST_TIMEOUT):
        self.name = name
        self.api_client = api_client
        self.request_timeout = request_timeout
        self.core_v1 = client.CoreV1Api(api_client)

    def _timeout(self, timeout: Optional[float]) -> float:
        if timeout is None:
            return self.request_timeout
        return min(self.request_timeout, timeout)

    def close(self):
        """Release the connection pool of the underlying ApiClient."""
        self.api_client.close()

    def get_node(self, node_name: str) -> Optional[client.V1Node]:
        """Read a node, or None if it doesn't exist."""
        try:
            return self.core_v1.read_node(name=node_name, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def cordon_node(self, node: client.V1Node) -> bool:
        """
        Mark a node unschedulable.

        Returns:
            True if the node was patched, False if it was already cordoned
        """
        if node.spec is not None and node.spec.unschedulable:
            return False
        self.core_v1.patch_node(
            name=node.metadata.name,
            body={"spec": {"unschedulable": True}},
            _request_timeout=self.request_timeout
        )
        return True

    def list_pods_on_node(self, node_name: str, timeout: Optional[float] = None) -> List[client.V1Pod]:
        """List the pods bound to a node, across all namespaces."""
        pods = self.core_v1.list_pod_for_all_namespaces(
            field_selector=f"spec.nodeName={node_name}",
            _request_timeout=self._timeout(timeout)
        )
        return pods.items

    def get_pod(self, namespace: str, name: str, timeout: Optional[float] = None) -> Optional[client.V1Pod]:
        """Read a pod, or None if it doesn't exist."""
        try:
            return self.core_v1.read_namespaced_pod(
                name=name, namespace=namespace, _request_timeout=self._timeout(timeout))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def evict_pod(self, pod: client.V1Pod, grace_period_seconds: Optional[int] = None,
                  timeout: Optional[float] = None) -> bool:
        """
        Evict a pod through the Eviction API, honoring disruption budgets.

        Returns:
            True if the eviction was accepted, False if the pod was already gone

        Raises:
            ApiException: 429 when a PodDisruptionBudget refuses the eviction
        """
        body = client.V1Eviction(
            metadata=client.V1ObjectMeta(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace
            ),
            delete_options=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds)
        )
        try:
            self.core_v1.create_namespaced_pod_eviction(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                body=body,
                _request_timeout=self._timeout(timeout)
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    def delete_pod(self, pod: client.V1Pod, grace_period_seconds: Optional[int] = None,
                   timeout: Optional[float] = None) -> bool:
        """
        Delete a pod directly, bypassing disruption budgets.

        Returns:
            True if deleted, False if the pod was already gone
        """
        try:
            self.core_v1.delete_namespaced_pod(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                grace_period_seconds=grace_period_seconds,
                _request_timeout=self._timeout(timeout)
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True


class RemoteClusterClientFactory:
    """Creates RemoteClusterClients from workload cluster kubeconfig secrets."""

    def __init__(self, management_client, request_timeout: float = REMOTE_REQUEST_TIMEOUT):
        self.management_client = management_client
        self.request_timeout = request_timeout

    def get_kubeconfig(self, cluster: Cluster) -> bytes:
        """
        Fetch the raw kubeconfig of a workload cluster.

        The kubeconfig lives in the "<infrastructure-ref-name>-kubeconfig"
        secret under the "value" key.
        """
        try:
            secret_key = cluster.kubeconfig_secret_key()
        except ValueError as e:
            raise InvalidKubeconfigError(str(e)) from e

        try:
            secret = self.management_client.get_secret(secret_key)
        except REQUEST_ERRORS as e:
            if isinstance(e, ApiException) and e.status == 404:
                raise KubeconfigNotFoundError(
                    f"kubeconfig secret {secret_key} for cluster {cluster.key} not found") from e
            raise RemoteClusterUnavailableError(
                f"failed to fetch kubeconfig secret {secret_key} for cluster {cluster.key}: "
                f"{request_error_reason(e)}") from e

        data = secret.data or {}
        value = data.get(KUBECONFIG_SECRET_KEY)
        if not value:
            raise InvalidKubeconfigError(
                f"error retrieving kubeconfig data from {secret_key}: "
                f"secret {KUBECONFIG_SECRET_KEY!r} key is missing")

        try:
            return base64.b64decode(value)
        except ValueError as e:
            raise InvalidKubeconfigError(f"kubeconfig in {secret_key} is not valid base64: {e}") from e

    def remote_client_for(self, cluster: Cluster) -> RemoteClusterClient:
        """
        Build a client for the workload cluster of a Cluster.

        The caller owns the returned client and must close() it when done.

        Raises:
            KubeconfigNotFoundError: the kubeconfig secret is missing
            InvalidKubeconfigError: the secret is malformed or yields no client
            RemoteClusterUnavailableError: the secret could not be read
        """
        kubeconfig = self.get_kubeconfig(cluster)

        try:
            kubeconfig_dict = yaml.safe_load(kubeconfig)
        except yaml.YAMLError as e:
            raise InvalidKubeconfigError(f"failed to parse kubeconfig of cluster {cluster.key}: {e}") from e
        if not isinstance(kubeconfig_dict, dict):
            raise InvalidKubeconfigError(f"kubeconfig of cluster {cluster.key} is not a mapping")

        try:
            api_client = config.new_client_from_config_dict(config_dict=kubeconfig_dict)
        except Exception as e:
            raise InvalidKubeconfigError(
                f"failed to create a client for cluster {cluster.key}: {e}") from e

        return RemoteClusterClient(api_client, name=str(cluster.key), request_timeout=self.request_timeout)
