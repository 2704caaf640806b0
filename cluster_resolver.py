#!/usr/bin/env python3
"""
Maps a VirtualMachineInstance to the Cluster API Cluster that owns it.
"""

import logging

from management_client import REQUEST_ERRORS, request_error_reason
from models import (
    VirtualMachineInstance, Cluster, ObjectKey,
    CLUSTER_NAME_LABEL, KUBEVIRT_MACHINE_NAMESPACE_LABEL,
)

logger = logging.getLogger(__name__)


class ClusterResolutionError(Exception):
    """The owning Cluster of a VMI could not be determined."""


class ClusterResolver:
    """Resolves the owning Cluster from the labels on a VMI."""

    def __init__(self, management_client):
        self.management_client = management_client

    def resolve_cluster(self, vmi: VirtualMachineInstance) -> Cluster:
        """
        Look up the Cluster a VMI belongs to.

        Args:
            vmi: VMI carrying the cluster namespace and cluster name labels

        Returns:
            The owning Cluster

        Raises:
            ClusterResolutionError: if a label is missing or the Cluster can't be read
        """
        cluster_namespace = vmi.labels.get(KUBEVIRT_MACHINE_NAMESPACE_LABEL)
        if not cluster_namespace:
            raise ClusterResolutionError(
                f"can't find the cluster namespace from the VMI {vmi.key}; "
                f"missing {KUBEVIRT_MACHINE_NAMESPACE_LABEL} label")

        cluster_name = vmi.labels.get(CLUSTER_NAME_LABEL)
        if not cluster_name:
            raise ClusterResolutionError(
                f"can't find the cluster name from the VMI {vmi.key}; "
                f"missing {CLUSTER_NAME_LABEL} label")

        key = ObjectKey(cluster_namespace, cluster_name)
        try:
            return self.management_client.get_cluster(key)
        except REQUEST_ERRORS as e:
            raise ClusterResolutionError(f"can't find the cluster {key}: {request_error_reason(e)}") from e
