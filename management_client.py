#!/usr/bin/env python3
"""
Management Cluster Client

Reads and deletes the management-cluster objects the drain controller works
with: KubeVirt VirtualMachineInstances, Cluster API Clusters and the
kubeconfig Secrets of workload clusters.
"""

import logging
from typing import Optional, Iterator, Dict, Any
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from models import (
    VirtualMachineInstance, Cluster, ObjectKey,
    VMI_GROUP, VMI_VERSION, VMI_PLURAL,
    CLUSTER_GROUP, CLUSTER_VERSION, CLUSTER_PLURAL,
)

logger = logging.getLogger(__name__)

FOREGROUND_PROPAGATION = "Foreground"

# A request fails either with an error response from the API server, or with
# no response at all (connect/read timeouts, refused or reset connections)
REQUEST_ERRORS = (ApiException, HTTPError)


def request_error_reason(e: Exception) -> str:
    """Short description of a failed API request for log and error messages."""
    if isinstance(e, ApiException):
        return f"{e.status} {e.reason}"
    return f"{type(e).__name__}: {e}"


class ManagementClient:
    """
    Kubernetes API access to the management cluster.

    Lookups that can legitimately miss (VMIs) return None on 404; everything
    else raises, either an ApiException or a urllib3 HTTPError when no
    response arrives, so callers can classify it.
    """

    def __init__(self, use_in_cluster_config: bool = False, kubeconfig: Optional[str] = None,
                 api_client: Optional[client.ApiClient] = None):
        """
        Initialize the management cluster client.

        Args:
            use_in_cluster_config: If True, use in-cluster config, otherwise use kubeconfig
            kubeconfig: Optional kubeconfig path (defaults to $KUBECONFIG or ~/.kube/config)
            api_client: Pre-built ApiClient; skips config loading when given
        """
        if api_client is None:
            try:
                if use_in_cluster_config:
                    config.load_incluster_config()
                    logger.info("Using in-cluster Kubernetes config")
                else:
                    config.load_kube_config(config_file=kubeconfig)
                    logger.info("Using local kubeconfig")
            except Exception as e:
                logger.error(f"Failed to initialize Kubernetes client: {e}")
                raise
            api_client = client.ApiClient()

        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    def get_vmi(self, key: ObjectKey) -> Optional[VirtualMachineInstance]:
        """
        Read a VirtualMachineInstance.

        Returns:
            The VMI, or None if it no longer exists
        """
        try:
            vmi_obj = self.custom_api.get_namespaced_custom_object(
                group=VMI_GROUP,
                version=VMI_VERSION,
                namespace=key.namespace,
                plural=VMI_PLURAL,
                name=key.name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return VirtualMachineInstance.from_dict(vmi_obj)

    def delete_vmi(self, vmi: VirtualMachineInstance,
                   propagation_policy: str = FOREGROUND_PROPAGATION) -> bool:
        """
        Delete a VirtualMachineInstance.

        Args:
            vmi: VMI to delete
            propagation_policy: Deletion propagation, foreground by default so
                dependents are removed before the VMI itself

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            self.custom_api.delete_namespaced_custom_object(
                group=VMI_GROUP,
                version=VMI_VERSION,
                namespace=vmi.namespace,
                plural=VMI_PLURAL,
                name=vmi.name,
                propagation_policy=propagation_policy
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"VMI {vmi.key} already deleted")
                return False
            raise
        logger.info(f"Deleted VMI {vmi.key} (propagationPolicy={propagation_policy})")
        return True

    def get_cluster(self, key: ObjectKey) -> Cluster:
        """Read a Cluster API Cluster. Raises ApiException, including on 404."""
        cluster_obj = self.custom_api.get_namespaced_custom_object(
            group=CLUSTER_GROUP,
            version=CLUSTER_VERSION,
            namespace=key.namespace,
            plural=CLUSTER_PLURAL,
            name=key.name
        )
        return Cluster.from_dict(cluster_obj)

    def get_secret(self, key: ObjectKey) -> client.V1Secret:
        """Read a Secret. Raises ApiException, including on 404."""
        return self.core_v1.read_namespaced_secret(name=key.name, namespace=key.namespace)

    def watch_vmis(self, w: watch.Watch, label_selector: str, namespace: Optional[str] = None,
                   timeout_seconds: int = 60) -> Iterator[Dict[str, Any]]:
        """
        Stream VMI watch events carrying the given label selector.

        Args:
            w: Watch used for the stream, so the caller can stop it
            label_selector: Only VMIs matching this selector are streamed
            namespace: Restrict to one namespace; all namespaces when None
            timeout_seconds: Server-side watch timeout
        """
        if namespace:
            return w.stream(
                self.custom_api.list_namespaced_custom_object,
                group=VMI_GROUP,
                version=VMI_VERSION,
                namespace=namespace,
                plural=VMI_PLURAL,
                label_selector=label_selector,
                timeout_seconds=timeout_seconds
            )
        return w.stream(
            self.custom_api.list_cluster_custom_object,
            group=VMI_GROUP,
            version=VMI_VERSION,
            plural=VMI_PLURAL,
            label_selector=label_selector,
            timeout_seconds=timeout_seconds
        )
