#!/usr/bin/env python3
"""
Resource models for the VMI eviction drain controller.

Thin dataclass views over the management-cluster objects the controller
reads: KubeVirt VirtualMachineInstances and Cluster API Clusters.
The API returns custom objects as plain dicts; these models pick out the
fields the controller actually consumes.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional

# KubeVirt VirtualMachineInstance CRD
VMI_GROUP = "kubevirt.io"
VMI_VERSION = "v1"
VMI_PLURAL = "virtualmachineinstances"

# Cluster API Cluster CRD
CLUSTER_GROUP = "cluster.x-k8s.io"
CLUSTER_VERSION = "v1beta1"
CLUSTER_PLURAL = "clusters"

# Labels set on VMIs by the KubeVirt infrastructure provider
CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
KUBEVIRT_MACHINE_NAMESPACE_LABEL = "capk.cluster.x-k8s.io/kubevirt-machine-namespace"
KUBEVIRT_MACHINE_NAME_LABEL = "capk.cluster.x-k8s.io/kubevirt-machine-name"

KUBECONFIG_SECRET_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_KEY = "value"


@dataclass(frozen=True)
class ObjectKey:
    """Namespace/name identity of a namespaced object."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class VirtualMachineInstance:
    """The fields of a KubeVirt VMI used to decide whether to drain."""
    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)

    # Set by KubeVirt when the guest must move off its current node
    evacuation_node_name: str = ""

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)

    @property
    def marked_for_evacuation(self) -> bool:
        return bool(self.evacuation_node_name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VirtualMachineInstance':
        """Create a VMI from a custom object returned by the API."""
        metadata = data.get("metadata") or {}
        status = data.get("status") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            labels=dict(metadata.get("labels") or {}),
            evacuation_node_name=status.get("evacuationNodeName") or ""
        )


@dataclass
class InfrastructureRef:
    """Reference from a Cluster to its infrastructure object."""
    name: str
    namespace: str = ""


@dataclass
class Cluster:
    """The fields of a Cluster API Cluster needed to reach the workload cluster."""
    name: str
    namespace: str
    infrastructure_ref: Optional[InfrastructureRef] = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)

    def kubeconfig_secret_key(self) -> ObjectKey:
        """
        Key of the secret holding the workload cluster kubeconfig.

        The secret is named after the infrastructure ref with a "-kubeconfig"
        suffix, in the ref's namespace (defaulting to the Cluster's own).

        Raises:
            ValueError: if the Cluster has no infrastructure ref
        """
        ref = self.infrastructure_ref
        if ref is None or not ref.name:
            raise ValueError(f"Cluster {self.key} has no spec.infrastructureRef")
        return ObjectKey(ref.namespace or self.namespace, ref.name + KUBECONFIG_SECRET_SUFFIX)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Cluster':
        """Create a Cluster from a custom object returned by the API."""
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        ref_data = spec.get("infrastructureRef")

        ref = None
        if ref_data:
            ref = InfrastructureRef(
                name=ref_data.get("name", ""),
                namespace=ref_data.get("namespace", "")
            )

        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            infrastructure_ref=ref
        )
