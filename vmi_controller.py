#!/usr/bin/env python3
"""
VMI Eviction Controller

Watches KubeVirt VirtualMachineInstances owned by KubeVirt machines. When
KubeVirt marks one for eviction (status.evacuationNodeName), the controller
drains the matching node in the workload cluster and only then deletes the
VMI in the management cluster, with foreground propagation.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional
from kubernetes import watch
from kubernetes.client.rest import ApiException

import metrics
from management_client import REQUEST_ERRORS, request_error_reason
from models import ObjectKey, VirtualMachineInstance, KUBEVIRT_MACHINE_NAME_LABEL
from cluster_resolver import ClusterResolver, ClusterResolutionError
from remote_cluster import RemoteClusterClientFactory, RemoteClusterError
from drain_orchestrator import DrainOrchestrator, DrainStatus
from workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

DELETE_RETRY_DELAY = 20


class ReconcileLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the VMI, cluster and node being reconciled."""

    def process(self, msg, kwargs):
        context = " ".join(f"{k}={v}" for k, v in self.extra.items() if v)
        return f"[{context}] {msg}", kwargs


@dataclass
class ReconcileResult:
    """What the worker should do with the key after a reconcile."""
    outcome: str = "noop"  # noop, requeue, error, deleted
    requeue_after: float = 0
    error: Optional[Exception] = None


class VMIEvictionReconciler:
    """
    Drives a VMI marked for eviction to "drained and deleted".

    Every step reads current state before acting, so running it again for
    the same VMI, or concurrently for different VMIs, is safe.
    """

    def __init__(self, management_client, cluster_resolver: Optional[ClusterResolver] = None,
                 client_factory: Optional[RemoteClusterClientFactory] = None,
                 orchestrator: Optional[DrainOrchestrator] = None,
                 stop_event: Optional[threading.Event] = None):
        self.management_client = management_client
        self.cluster_resolver = cluster_resolver or ClusterResolver(management_client)
        self.client_factory = client_factory or RemoteClusterClientFactory(management_client)
        self.orchestrator = orchestrator or DrainOrchestrator(stop_event=stop_event)

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Reconcile one VMI.

        Args:
            key: namespace/name of the VMI

        Returns:
            ReconcileResult telling the worker whether and when to requeue
        """
        log = ReconcileLogAdapter(logger, {"vmi": str(key)})

        try:
            vmi = self.management_client.get_vmi(key)
        except REQUEST_ERRORS as e:
            log.error(f"Failed to read VMI {key}: {request_error_reason(e)}")
            return ReconcileResult("error", error=e)

        if vmi is None:
            log.debug(f"Can't find VMI {key}; it was already deleted")
            return ReconcileResult("noop")

        # KubeVirt sets evacuationNodeName on guest node eviction
        if not vmi.marked_for_evacuation:
            log.debug(f"VMI {key} is not marked for eviction, nothing to do")
            return ReconcileResult("noop")
        node_name = vmi.evacuation_node_name
        log.extra["node"] = node_name

        try:
            cluster = self.cluster_resolver.resolve_cluster(vmi)
        except ClusterResolutionError as e:
            log.error(f"Can't get the cluster of the VMI: {e}")
            return ReconcileResult("error", error=e)
        log.extra["cluster"] = str(cluster.key)

        try:
            remote_client = self.client_factory.remote_client_for(cluster)
        except RemoteClusterError as e:
            if e.retryable:
                log.error(f"Error getting a workload cluster client: {e}")
                return ReconcileResult("error", error=e)
            # A broken kubeconfig secret only changes through an external fix,
            # which triggers a new event
            log.error(f"Error getting a workload cluster client, won't retry: {e}")
            return ReconcileResult("noop")

        try:
            outcome = self.orchestrator.drain(remote_client, node_name, log=log)
        finally:
            remote_client.close()
        metrics.node_drain_total.labels(outcome=outcome.status.value).inc()

        if outcome.status == DrainStatus.FATAL:
            return ReconcileResult("error", error=outcome.error)
        if outcome.status == DrainStatus.RETRY:
            return ReconcileResult("requeue", requeue_after=outcome.retry_after)

        return self._delete_vmi(vmi, log)

    def _delete_vmi(self, vmi: VirtualMachineInstance, log) -> ReconcileResult:
        """Delete the drained VMI, dependents first."""
        try:
            self.management_client.delete_vmi(vmi)
        except REQUEST_ERRORS as e:
            log.error(f"Failed to delete VMI {vmi.key}, retry in {DELETE_RETRY_DELAY}s: "
                      f"{request_error_reason(e)}")
            return ReconcileResult("error", requeue_after=DELETE_RETRY_DELAY, error=e)

        log.info(f"Node drained, VMI {vmi.key} deleted")
        return ReconcileResult("deleted")


class VMIController:
    """
    Feeds VMI watch events into a work queue and runs reconcile workers.

    The queue guarantees a VMI is reconciled by at most one worker at a time;
    distinct VMIs are reconciled concurrently.
    """

    def __init__(self, management_client, reconciler: Optional[VMIEvictionReconciler] = None,
                 namespace: Optional[str] = None, watch_label: str = KUBEVIRT_MACHINE_NAME_LABEL,
                 workers: int = 1, stop_event: Optional[threading.Event] = None):
        """
        Initialize the VMI controller.

        Args:
            management_client: ManagementClient of the management cluster
            reconciler: Reconciler to run per VMI; built from management_client by default
            namespace: Watch only this namespace; all namespaces when None
            watch_label: Only VMIs carrying this label are reconciled
            workers: Number of reconcile worker threads
            stop_event: Set on shutdown; shared with in-flight drains
        """
        self.management_client = management_client
        self.namespace = namespace
        self.watch_label = watch_label
        self.workers = max(1, workers)
        self.stop_event = stop_event or threading.Event()
        self.reconciler = reconciler or VMIEvictionReconciler(
            management_client, stop_event=self.stop_event)

        self.queue = RateLimitingQueue(name="vmi-eviction")
        self._watch: Optional[watch.Watch] = None
        self._threads: List[threading.Thread] = []
        self.controller_running = False

    @property
    def ready(self) -> bool:
        return self.controller_running and all(t.is_alive() for t in self._threads)

    def enqueue(self, event: dict):
        """Queue the VMI of a watch event."""
        event_type = event.get("type", "")
        vmi_obj = event.get("object")
        if not vmi_obj or event_type not in ("ADDED", "MODIFIED"):
            return

        metadata = vmi_obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            return
        self.queue.add(ObjectKey(metadata.get("namespace", ""), name))
        metrics.workqueue_depth.set(len(self.queue))

    def _watch_loop(self):
        """Stream VMI events into the queue, restarting the watch as needed."""
        scope = f"namespace '{self.namespace}'" if self.namespace else "all namespaces"
        logger.info(f"VMI watch started for {scope} (label {self.watch_label})")

        while not self.stop_event.is_set():
            self._watch = watch.Watch()
            try:
                stream = self.management_client.watch_vmis(
                    self._watch, label_selector=self.watch_label, namespace=self.namespace)
                for event in stream:
                    if self.stop_event.is_set():
                        break
                    self.enqueue(event)
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Watch resource version too old, restarting watch")
                    continue
                logger.error(f"API exception in VMI watch: {e}")
                self.stop_event.wait(5)
            except Exception as e:
                logger.error(f"Unexpected error in VMI watch: {e}", exc_info=True)
                self.stop_event.wait(5)

        logger.info("VMI watch stopped")

    def _worker_loop(self):
        while self.process_next_item():
            pass

    def process_next_item(self, timeout: Optional[float] = None) -> bool:
        """
        Reconcile one queued VMI.

        Returns:
            False once the queue is shut down
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return not self.queue.shutting_down

        start = time.monotonic()
        try:
            result = self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Unexpected error reconciling VMI {key}: {e}", exc_info=True)
            result = ReconcileResult("error", error=e)
        finally:
            metrics.reconcile_duration.observe(time.monotonic() - start)

        try:
            self.handle_result(key, result)
        finally:
            self.queue.done(key)
            metrics.workqueue_depth.set(len(self.queue))
        return True

    def handle_result(self, key: ObjectKey, result: ReconcileResult):
        """Requeue a key according to its reconcile result."""
        metrics.reconcile_total.labels(result=result.outcome).inc()

        if result.error is not None:
            logger.debug(f"Reconcile of VMI {key} failed "
                         f"(previous failures: {self.queue.num_requeues(key)}): {result.error}")
            if result.requeue_after > 0:
                self.queue.add_after(key, result.requeue_after)
            else:
                self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        if result.requeue_after > 0:
            self.queue.add_after(key, result.requeue_after)

    def start(self):
        """Start the watch and worker threads."""
        if self.controller_running:
            logger.warning("VMI controller already running")
            return

        self.controller_running = True
        self.stop_event.clear()

        watcher = threading.Thread(target=self._watch_loop, daemon=True, name="vmi-watch")
        self._threads = [watcher]
        for i in range(self.workers):
            self._threads.append(threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"vmi-worker-{i}"
            ))

        for thread in self._threads:
            thread.start()
        logger.info(f"VMI controller started with {self.workers} worker(s)")

    def stop(self):
        """Stop the watch and workers; in-flight drains abort promptly."""
        if not self.controller_running:
            return

        logger.info("Stopping VMI controller...")
        self.controller_running = False
        self.stop_event.set()
        if self._watch is not None:
            self._watch.stop()
        self.queue.shut_down()

        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=10)
        logger.info("VMI controller stopped")
