#!/usr/bin/env python3
"""
Node Drainer

Cordons a workload cluster node and evicts its pods, the way `kubectl drain`
does: DaemonSet and mirror pods stay, everything else is evicted through the
Eviction API (or deleted) and then waited on until it is gone.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from kubernetes import client
from kubernetes.client.rest import ApiException

from management_client import REQUEST_ERRORS, request_error_reason

logger = logging.getLogger(__name__)

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
UNREACHABLE_TAINT = "node.kubernetes.io/unreachable"


class DrainError(Exception):
    """A drain attempt did not complete."""


class CordonError(DrainError):
    """The node could not be marked unschedulable."""


class PodFilterError(DrainError):
    """Some pods on the node can't be removed with the given options."""


class DrainTimeoutError(DrainError):
    """Pods were still on the node when the drain timeout expired."""


class DrainCancelledError(DrainError):
    """The drain was interrupted by shutdown."""


@dataclass
class DrainOptions:
    """Knobs for a single drain attempt. Durations are in seconds."""
    force: bool = False  # remove pods without a controller, and pods blocked by a PDB
    ignore_all_daemonsets: bool = False
    delete_emptydir_data: bool = False
    disable_eviction: bool = False  # delete pods instead of using the Eviction API
    grace_period_seconds: int = -1  # negative: use each pod's own grace period
    timeout: float = 0  # 0: wait forever
    skip_wait_for_delete_timeout: int = 0  # 0: always wait for terminating pods
    poll_interval: float = 1.0
    eviction_retry_interval: float = 5.0


def is_node_unreachable(node: Optional[client.V1Node]) -> bool:
    """
    Check whether a node has stopped reporting to the control plane.

    A node is unreachable when its Ready condition is Unknown or it carries
    the node.kubernetes.io/unreachable taint.
    """
    if node is None:
        return False

    status = node.status
    for condition in (status.conditions if status else None) or []:
        if condition.type == "Ready" and condition.status == "Unknown":
            return True

    spec = node.spec
    for taint in (spec.taints if spec else None) or []:
        if taint.key == UNREACHABLE_TAINT:
            return True

    return False


def _pod_ref(pod: client.V1Pod) -> str:
    return f"{pod.metadata.namespace}/{pod.metadata.name}"


def _controller_of(pod: client.V1Pod) -> Optional[client.V1OwnerReference]:
    for owner in pod.metadata.owner_references or []:
        if owner.controller:
            return owner
    return None


def _is_finished(pod: client.V1Pod) -> bool:
    return pod.status is not None and pod.status.phase in ("Succeeded", "Failed")


def _has_emptydir(pod: client.V1Pod) -> bool:
    volumes = (pod.spec.volumes if pod.spec else None) or []
    return any(volume.empty_dir is not None for volume in volumes)


def _deletion_stuck(pod: client.V1Pod, skip_wait_for_delete_timeout: int) -> bool:
    """True if the pod has been terminating for longer than the tolerance."""
    deleted_at = pod.metadata.deletion_timestamp
    if skip_wait_for_delete_timeout <= 0 or deleted_at is None:
        return False
    if deleted_at.tzinfo is None:
        deleted_at = deleted_at.replace(tzinfo=timezone.utc)
    elapsed = (datetime.now(timezone.utc) - deleted_at).total_seconds()
    return elapsed > skip_wait_for_delete_timeout


class NodeDrainer(ABC):
    """Capability to cordon and drain a node of one workload cluster."""

    @abstractmethod
    def cordon(self, node: client.V1Node):
        """Mark the node unschedulable. Raises CordonError."""
        pass

    @abstractmethod
    def drain(self, node_name: str, options: DrainOptions):
        """Remove evictable pods from the node. Raises DrainError."""
        pass


class KubeNodeDrainer(NodeDrainer):
    """
    Drains nodes through a RemoteClusterClient.

    Each call works from the pods currently bound to the node, so a drain
    interrupted by a timeout resumes cleanly on the next call.
    """

    def __init__(self, remote_client, log: Optional[logging.LoggerAdapter] = None,
                 stop_event: Optional[threading.Event] = None):
        """
        Args:
            remote_client: RemoteClusterClient of the workload cluster
            log: Logger carrying the caller's context; module logger by default
            stop_event: Set on shutdown to abort waits
        """
        self.remote_client = remote_client
        self.log = log or logger
        self.stop_event = stop_event or threading.Event()

    def cordon(self, node: client.V1Node):
        node_name = node.metadata.name
        try:
            changed = self.remote_client.cordon_node(node)
        except REQUEST_ERRORS as e:
            raise CordonError(f"unable to cordon node {node_name}: {request_error_reason(e)}") from e

        if changed:
            self.log.info(f"Cordoned node {node_name}")
        else:
            self.log.debug(f"Node {node_name} already cordoned")

    def drain(self, node_name: str, options: DrainOptions):
        deadline = time.monotonic() + options.timeout if options.timeout > 0 else None

        try:
            pods = self.remote_client.list_pods_on_node(node_name, timeout=self._time_left(deadline))
        except REQUEST_ERRORS as e:
            raise DrainError(f"unable to list pods on node {node_name}: {request_error_reason(e)}") from e

        to_remove, errors = self.filter_pods(pods, options)
        if errors:
            raise PodFilterError(f"cannot drain node {node_name}: " + "; ".join(errors))

        if not to_remove:
            return

        for pod in to_remove:
            if self._expired(deadline):
                raise DrainTimeoutError(
                    f"drain of node {node_name} did not complete within {options.timeout}s")
            self._remove_pod(pod, options, deadline)

        self._wait_for_delete(node_name, to_remove, options, deadline)

    def filter_pods(self, pods: List[client.V1Pod],
                    options: DrainOptions) -> Tuple[List[client.V1Pod], List[str]]:
        """
        Split the pods of a node into those to remove and those blocking the drain.

        Returns:
            (pods to evict or delete, error messages for pods that can't be removed)
        """
        to_remove = []
        errors = []

        for pod in pods:
            ref = _pod_ref(pod)

            if _deletion_stuck(pod, options.skip_wait_for_delete_timeout):
                self.log.warning(f"Skipping pod {ref}, terminating for more than "
                                 f"{options.skip_wait_for_delete_timeout}s")
                continue

            controller = _controller_of(pod)
            if controller is not None and controller.kind == "DaemonSet":
                if options.ignore_all_daemonsets:
                    self.log.debug(f"Ignoring DaemonSet-managed pod {ref}")
                else:
                    errors.append(f"pod {ref} is managed by DaemonSet {controller.name}")
                continue

            annotations = pod.metadata.annotations or {}
            if MIRROR_POD_ANNOTATION in annotations:
                self.log.debug(f"Ignoring mirror pod {ref}")
                continue

            if _is_finished(pod):
                to_remove.append(pod)
                continue

            if _has_emptydir(pod) and not options.delete_emptydir_data:
                errors.append(f"pod {ref} has local storage (emptyDir)")
                continue

            if controller is None:
                if not options.force:
                    errors.append(f"pod {ref} is not managed by a controller")
                    continue
                self.log.warning(f"Deleting pod {ref}, not managed by a controller")

            to_remove.append(pod)

        return to_remove, errors

    def _grace_period(self, options: DrainOptions) -> Optional[int]:
        return options.grace_period_seconds if options.grace_period_seconds >= 0 else None

    def _remove_pod(self, pod: client.V1Pod, options: DrainOptions, deadline: Optional[float]):
        """Evict (or delete) one pod, retrying evictions refused by a disruption budget."""
        ref = _pod_ref(pod)
        grace_period = self._grace_period(options)

        while True:
            self._check_cancelled()
            try:
                if options.disable_eviction:
                    removed = self.remote_client.delete_pod(
                        pod, grace_period, timeout=self._time_left(deadline))
                    evicted = False
                else:
                    removed = self.remote_client.evict_pod(
                        pod, grace_period, timeout=self._time_left(deadline))
                    evicted = True
                break
            except REQUEST_ERRORS as e:
                too_many_requests = isinstance(e, ApiException) and e.status == 429
                if not too_many_requests or options.disable_eviction:
                    raise DrainError(f"error when removing pod {ref}: {request_error_reason(e)}") from e

            if options.force:
                self.log.warning(f"Eviction of pod {ref} refused by a disruption budget, deleting it")
                try:
                    removed = self.remote_client.delete_pod(
                        pod, grace_period, timeout=self._time_left(deadline))
                except REQUEST_ERRORS as e:
                    raise DrainError(f"error when deleting pod {ref}: {request_error_reason(e)}") from e
                evicted = False
                break

            self.log.info(f"Eviction of pod {ref} refused by a disruption budget, "
                          f"retrying in {options.eviction_retry_interval}s")
            if not self._pause(options.eviction_retry_interval, deadline):
                raise DrainTimeoutError(f"timed out evicting pod {ref}")

        if removed:
            verb = "Evicted" if evicted else "Deleted"
            self.log.info(f"{verb} pod {ref} from Node")

    def _wait_for_delete(self, node_name: str, pods: List[client.V1Pod],
                         options: DrainOptions, deadline: Optional[float]):
        """Wait until every pod is gone or replaced by a new pod of the same name."""
        pending = list(pods)
        while True:
            remaining = []
            for i, pod in enumerate(pending):
                if self._expired(deadline):
                    # Pods not checked yet in this sweep count as pending
                    remaining.extend(pending[i:])
                    self._raise_wait_timeout(node_name, remaining, options)
                try:
                    current = self.remote_client.get_pod(
                        pod.metadata.namespace, pod.metadata.name, timeout=self._time_left(deadline))
                except REQUEST_ERRORS as e:
                    raise DrainError(f"error when waiting for pod {_pod_ref(pod)}: "
                                     f"{request_error_reason(e)}") from e
                if current is None or current.metadata.uid != pod.metadata.uid:
                    continue
                if _deletion_stuck(current, options.skip_wait_for_delete_timeout):
                    self.log.warning(f"Not waiting for stuck pod {_pod_ref(pod)}")
                    continue
                remaining.append(pod)

            if not remaining:
                return

            pending = remaining
            if not self._pause(options.poll_interval, deadline):
                self._raise_wait_timeout(node_name, pending, options)

    def _raise_wait_timeout(self, node_name: str, pending: List[client.V1Pod], options: DrainOptions):
        names = ", ".join(_pod_ref(pod) for pod in pending)
        raise DrainTimeoutError(
            f"drain of node {node_name} did not complete within {options.timeout}s, "
            f"pending pods: {names}")

    def _expired(self, deadline: Optional[float]) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    def _time_left(self, deadline: Optional[float]) -> Optional[float]:
        """Seconds left before the deadline, used to cap each request; None without a deadline."""
        if deadline is None:
            return None
        # urllib3 rejects a zero timeout
        return max(deadline - time.monotonic(), 0.001)

    def _pause(self, interval: float, deadline: Optional[float]) -> bool:
        """
        Sleep for interval, bounded by the deadline.

        Returns:
            False if the deadline has passed

        Raises:
            DrainCancelledError: if shutdown was requested
        """
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            interval = min(interval, remaining)
        if self.stop_event.wait(interval):
            raise DrainCancelledError("drain cancelled by shutdown")
        return True

    def _check_cancelled(self):
        if self.stop_event.is_set():
            raise DrainCancelledError("drain cancelled by shutdown")
