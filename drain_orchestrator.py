#!/usr/bin/env python3
"""
Node Drain Orchestrator

Drives one drain attempt of a workload cluster node and classifies the
result into "done", "retry later" and "failed" so the reconciler can decide
between deleting the VMI, requeueing at a fixed cadence, or backing off.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from kubernetes import client

from management_client import REQUEST_ERRORS, request_error_reason
from node_drainer import (
    NodeDrainer, KubeNodeDrainer, DrainOptions, DrainError, CordonError,
    is_node_unreachable,
)

logger = logging.getLogger(__name__)

# If a pod is not evicted within this many seconds, the drain is retried on a
# later reconcile so other VMIs get a worker in the meantime.
DRAIN_TIMEOUT = 20

# Pods on an unreachable node that stay terminating this long are ignored
UNREACHABLE_SKIP_WAIT_TIMEOUT = 60 * 5

DRAIN_RETRY_DELAY = 20


class DrainStatus(Enum):
    """Outcome classes of a drain attempt."""
    SUCCESS = "success"
    RETRY = "retry"
    FATAL = "fatal"


@dataclass
class DrainOutcome:
    """Result of a drain attempt: Success, RetryAfter(seconds) or Fatal(error)."""
    status: DrainStatus
    retry_after: float = 0
    error: Optional[Exception] = None

    @property
    def done(self) -> bool:
        return self.status == DrainStatus.SUCCESS

    @classmethod
    def success(cls) -> 'DrainOutcome':
        return cls(DrainStatus.SUCCESS)

    @classmethod
    def retry(cls, after: float) -> 'DrainOutcome':
        return cls(DrainStatus.RETRY, retry_after=after)

    @classmethod
    def fatal(cls, error: Exception) -> 'DrainOutcome':
        return cls(DrainStatus.FATAL, error=error)


DrainerFactory = Callable[..., NodeDrainer]


class DrainOrchestrator:
    """Cordons and drains a node, bounding the time spent per attempt."""

    def __init__(self, drainer_factory: Optional[DrainerFactory] = None,
                 stop_event: Optional[threading.Event] = None):
        """
        Args:
            drainer_factory: Called as factory(remote_client, log) to get a NodeDrainer;
                builds a KubeNodeDrainer by default
            stop_event: Shared shutdown signal handed to the default drainers
        """
        self.stop_event = stop_event or threading.Event()
        self.drainer_factory = drainer_factory or self._kube_drainer

    def _kube_drainer(self, remote_client, log) -> NodeDrainer:
        return KubeNodeDrainer(remote_client, log=log, stop_event=self.stop_event)

    def drain_options(self, node: client.V1Node) -> DrainOptions:
        """Drain options for a node, relaxed when the node is unreachable."""
        options = DrainOptions(
            force=True,
            ignore_all_daemonsets=True,
            delete_emptydir_data=True,
            grace_period_seconds=-1,
            timeout=DRAIN_TIMEOUT
        )
        if is_node_unreachable(node):
            # Evictions on an unreachable node are never confirmed by the kubelet
            options.skip_wait_for_delete_timeout = UNREACHABLE_SKIP_WAIT_TIMEOUT
        return options

    def drain(self, remote_client, node_name: str, log=None) -> DrainOutcome:
        """
        Ensure a workload cluster node is cordoned and drained.

        Args:
            remote_client: RemoteClusterClient of the workload cluster
            node_name: Node to drain
            log: Logger carrying the caller's context

        Returns:
            success when drained or the node is gone, retry(20) when the drain
            did not finish in time, fatal when the node can't be read or cordoned
        """
        log = log or logger

        try:
            node = remote_client.get_node(node_name)
        except REQUEST_ERRORS as e:
            reason = request_error_reason(e)
            log.error(f"Unable to get node {node_name}: {reason}")
            return DrainOutcome.fatal(DrainError(f"unable to get node {node_name}: {reason}"))

        if node is None:
            # An admin deleting the node directly ends up here
            log.info(f"Could not find node {node_name}, it may have already been deleted")
            return DrainOutcome.success()

        options = self.drain_options(node)
        if options.skip_wait_for_delete_timeout:
            log.info(f"Node {node_name} is unreachable, ignoring pods terminating for more than "
                     f"{options.skip_wait_for_delete_timeout}s")

        drainer = self.drainer_factory(remote_client, log)

        try:
            drainer.cordon(node)
        except CordonError as e:
            log.error(f"Cordon failed: {e}")
            return DrainOutcome.fatal(e)

        try:
            drainer.drain(node_name, options)
        except DrainError as e:
            log.warning(f"Drain of node {node_name} failed, retry in {DRAIN_RETRY_DELAY}s: {e}")
            return DrainOutcome.retry(DRAIN_RETRY_DELAY)

        log.info(f"Drain of node {node_name} successful")
        return DrainOutcome.success()
