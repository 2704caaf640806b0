#!/usr/bin/env python3
"""
Unit tests for the node drainer.
"""

import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ReadTimeoutError

from node_drainer import (
    KubeNodeDrainer, DrainOptions, DrainError, CordonError, PodFilterError,
    DrainTimeoutError, DrainCancelledError, is_node_unreachable,
)


def make_pod(name, owner_kind="ReplicaSet", phase="Running", emptydir=False,
             mirror=False, deleted_ago=None, uid=None):
    owners = None
    if owner_kind:
        owners = [client.V1OwnerReference(api_version="apps/v1", kind=owner_kind,
                                          name=f"{name}-owner", uid="owner-uid", controller=True)]
    annotations = {"kubernetes.io/config.mirror": "hash"} if mirror else None
    deletion_timestamp = None
    if deleted_ago is not None:
        deletion_timestamp = datetime.now(timezone.utc) - timedelta(seconds=deleted_ago)
    volumes = None
    if emptydir:
        volumes = [client.V1Volume(name="scratch", empty_dir=client.V1EmptyDirVolumeSource())]

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace="apps",
            uid=uid or f"{name}-uid",
            owner_references=owners,
            annotations=annotations,
            deletion_timestamp=deletion_timestamp
        ),
        spec=client.V1PodSpec(containers=[client.V1Container(name="main")], volumes=volumes),
        status=client.V1PodStatus(phase=phase)
    )


def make_node(name="node-7", ready="True", taints=None, unschedulable=None):
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1NodeSpec(taints=taints, unschedulable=unschedulable),
        status=client.V1NodeStatus(conditions=[client.V1NodeCondition(type="Ready", status=ready)])
    )


def drain_options(**overrides):
    options = DrainOptions(force=True, ignore_all_daemonsets=True, delete_emptydir_data=True,
                           timeout=1, poll_interval=0.01, eviction_retry_interval=0.01)
    for key, value in overrides.items():
        setattr(options, key, value)
    return options


class TestIsNodeUnreachable(unittest.TestCase):
    """Test cases for is_node_unreachable."""

    def test_ready_node(self):
        self.assertFalse(is_node_unreachable(make_node()))

    def test_ready_unknown(self):
        self.assertTrue(is_node_unreachable(make_node(ready="Unknown")))

    def test_not_ready_is_not_unreachable(self):
        self.assertFalse(is_node_unreachable(make_node(ready="False")))

    def test_unreachable_taint(self):
        taint = client.V1Taint(key="node.kubernetes.io/unreachable", effect="NoExecute")
        self.assertTrue(is_node_unreachable(make_node(taints=[taint])))

    def test_none(self):
        self.assertFalse(is_node_unreachable(None))


class TestKubeNodeDrainer(unittest.TestCase):
    """Test cases for KubeNodeDrainer against a fake workload cluster."""

    def setUp(self):
        self.remote = MagicMock()
        self.remote.get_pod.return_value = None
        self.remote.evict_pod.return_value = True
        self.remote.delete_pod.return_value = True
        self.drainer = KubeNodeDrainer(self.remote)

    def evicted_names(self):
        return [c.args[0].metadata.name for c in self.remote.evict_pod.call_args_list]

    def deleted_names(self):
        return [c.args[0].metadata.name for c in self.remote.delete_pod.call_args_list]

    def test_cordon(self):
        node = make_node()
        self.drainer.cordon(node)
        self.remote.cordon_node.assert_called_once_with(node)

    def test_cordon_failure(self):
        self.remote.cordon_node.side_effect = ApiException(status=403, reason="Forbidden")
        with self.assertRaises(CordonError):
            self.drainer.cordon(make_node())

    def test_drain_evicts_pods_and_waits(self):
        self.remote.list_pods_on_node.return_value = [make_pod("web-1"), make_pod("web-2")]

        self.drainer.drain("node-7", drain_options())

        self.assertEqual(self.remote.list_pods_on_node.call_args.args, ("node-7",))
        self.assertEqual(self.evicted_names(), ["web-1", "web-2"])
        self.assertEqual(self.remote.get_pod.call_count, 2)

    def test_drain_uses_pod_grace_period_by_default(self):
        self.remote.list_pods_on_node.return_value = [make_pod("web-1")]

        self.drainer.drain("node-7", drain_options(grace_period_seconds=-1))

        self.remote.evict_pod.assert_called_once()
        self.assertIsNone(self.remote.evict_pod.call_args.args[1])

    def test_drain_skips_daemonset_and_mirror_pods(self):
        self.remote.list_pods_on_node.return_value = [
            make_pod("ds-pod", owner_kind="DaemonSet"),
            make_pod("static-pod", owner_kind=None, mirror=True),
            make_pod("web-1"),
        ]

        self.drainer.drain("node-7", drain_options())

        self.assertEqual(self.evicted_names(), ["web-1"])

    def test_drain_empty_node(self):
        self.remote.list_pods_on_node.return_value = [make_pod("ds-pod", owner_kind="DaemonSet")]

        self.drainer.drain("node-7", drain_options())

        self.remote.evict_pod.assert_not_called()
        self.remote.get_pod.assert_not_called()

    def test_daemonset_pods_block_without_ignore(self):
        self.remote.list_pods_on_node.return_value = [make_pod("ds-pod", owner_kind="DaemonSet")]

        with self.assertRaises(PodFilterError) as ctx:
            self.drainer.drain("node-7", drain_options(ignore_all_daemonsets=False))
        self.assertIn("apps/ds-pod", str(ctx.exception))
        self.remote.evict_pod.assert_not_called()

    def test_unmanaged_pod_requires_force(self):
        self.remote.list_pods_on_node.return_value = [make_pod("bare", owner_kind=None)]

        with self.assertRaises(PodFilterError):
            self.drainer.drain("node-7", drain_options(force=False))

        self.drainer.drain("node-7", drain_options(force=True))
        self.assertEqual(self.evicted_names(), ["bare"])

    def test_emptydir_requires_delete_emptydir_data(self):
        self.remote.list_pods_on_node.return_value = [make_pod("cache", emptydir=True)]

        with self.assertRaises(PodFilterError):
            self.drainer.drain("node-7", drain_options(delete_emptydir_data=False))

        self.drainer.drain("node-7", drain_options())
        self.assertEqual(self.evicted_names(), ["cache"])

    def test_finished_pods_are_always_removable(self):
        self.remote.list_pods_on_node.return_value = [
            make_pod("job-done", owner_kind=None, phase="Succeeded", emptydir=True)
        ]

        self.drainer.drain("node-7", drain_options(force=False, delete_emptydir_data=False))

        self.assertEqual(self.evicted_names(), ["job-done"])

    def test_stuck_terminating_pods_skipped(self):
        self.remote.list_pods_on_node.return_value = [make_pod("stuck", deleted_ago=600)]

        self.drainer.drain("node-7", drain_options(skip_wait_for_delete_timeout=300))

        self.remote.evict_pod.assert_not_called()

    def test_recently_terminating_pods_not_skipped(self):
        self.remote.list_pods_on_node.return_value = [make_pod("leaving", deleted_ago=10)]

        self.drainer.drain("node-7", drain_options(skip_wait_for_delete_timeout=300))

        self.assertEqual(self.evicted_names(), ["leaving"])

    def test_disruption_budget_with_force_deletes_pod(self):
        self.remote.list_pods_on_node.return_value = [make_pod("guarded")]
        self.remote.evict_pod.side_effect = ApiException(status=429, reason="Too Many Requests")

        self.drainer.drain("node-7", drain_options(force=True))

        self.assertEqual(self.deleted_names(), ["guarded"])

    def test_disruption_budget_without_force_retries_until_timeout(self):
        self.remote.list_pods_on_node.return_value = [make_pod("guarded")]
        self.remote.evict_pod.side_effect = ApiException(status=429, reason="Too Many Requests")

        with self.assertRaises(DrainTimeoutError):
            self.drainer.drain("node-7", drain_options(force=False, timeout=0.05))

        self.assertGreater(self.remote.evict_pod.call_count, 1)
        self.remote.delete_pod.assert_not_called()

    def test_disruption_budget_eventually_allows_eviction(self):
        self.remote.list_pods_on_node.return_value = [make_pod("guarded")]
        self.remote.evict_pod.side_effect = [ApiException(status=429), True]

        self.drainer.drain("node-7", drain_options(force=False))

        self.assertEqual(self.remote.evict_pod.call_count, 2)

    def test_disable_eviction_deletes_pods(self):
        self.remote.list_pods_on_node.return_value = [make_pod("web-1")]

        self.drainer.drain("node-7", drain_options(disable_eviction=True))

        self.remote.evict_pod.assert_not_called()
        self.assertEqual(self.deleted_names(), ["web-1"])

    def test_eviction_error(self):
        self.remote.list_pods_on_node.return_value = [make_pod("web-1")]
        self.remote.evict_pod.side_effect = ApiException(status=500, reason="Internal Error")

        with self.assertRaises(DrainError):
            self.drainer.drain("node-7", drain_options())

    def test_list_pods_error(self):
        self.remote.list_pods_on_node.side_effect = ApiException(status=500, reason="Internal Error")

        with self.assertRaises(DrainError):
            self.drainer.drain("node-7", drain_options())

    def test_list_pods_timeout(self):
        self.remote.list_pods_on_node.side_effect = ReadTimeoutError(None, None, "Read timed out.")

        with self.assertRaises(DrainError) as ctx:
            self.drainer.drain("node-7", drain_options())
        self.assertIn("ReadTimeoutError", str(ctx.exception))

    def test_eviction_connection_failure(self):
        self.remote.list_pods_on_node.return_value = [make_pod("web-1")]
        self.remote.evict_pod.side_effect = MaxRetryError(None, "/api/v1", reason="Connection refused")

        with self.assertRaises(DrainError):
            self.drainer.drain("node-7", drain_options())
        self.remote.delete_pod.assert_not_called()

    def test_cordon_timeout(self):
        self.remote.cordon_node.side_effect = ReadTimeoutError(None, None, "Read timed out.")
        with self.assertRaises(CordonError):
            self.drainer.cordon(make_node())

    def test_requests_capped_by_drain_deadline(self):
        self.remote.list_pods_on_node.return_value = [make_pod("web-1")]

        self.drainer.drain("node-7", drain_options(timeout=1))

        for mock in (self.remote.list_pods_on_node, self.remote.evict_pod, self.remote.get_pod):
            timeout = mock.call_args.kwargs["timeout"]
            self.assertGreater(timeout, 0)
            self.assertLessEqual(timeout, 1)

    def test_slow_pod_lookups_stop_at_deadline(self):
        """The wait for deletion checks the deadline before every pod lookup."""
        pods = [make_pod(f"web-{i}") for i in range(5)]
        self.remote.list_pods_on_node.return_value = pods

        def slow_get_pod(namespace, name, timeout=None):
            time.sleep(0.2)
            return next(pod for pod in pods if pod.metadata.name == name)
        self.remote.get_pod.side_effect = slow_get_pod

        start = time.monotonic()
        with self.assertRaises(DrainTimeoutError) as ctx:
            self.drainer.drain("node-7", drain_options(timeout=0.3))
        elapsed = time.monotonic() - start

        self.assertLess(elapsed, 0.8)
        self.assertLess(self.remote.get_pod.call_count, 5)
        self.assertIn("apps/web-4", str(ctx.exception))


    def test_timeout_when_pod_never_leaves(self):
        pod = make_pod("sticky")
        self.remote.list_pods_on_node.return_value = [pod]
        self.remote.get_pod.return_value = pod

        with self.assertRaises(DrainTimeoutError) as ctx:
            self.drainer.drain("node-7", drain_options(timeout=0.05))
        self.assertIn("apps/sticky", str(ctx.exception))

    def test_replaced_pod_counts_as_gone(self):
        """A pod recreated under the same name has a new UID and is not waited on."""
        self.remote.list_pods_on_node.return_value = [make_pod("web-0")]
        self.remote.get_pod.return_value = make_pod("web-0", uid="new-uid")

        self.drainer.drain("node-7", drain_options(timeout=0.05))

    def test_waits_until_pod_is_gone(self):
        pod = make_pod("web-1")
        self.remote.list_pods_on_node.return_value = [pod]
        self.remote.get_pod.side_effect = [pod, pod, None]

        self.drainer.drain("node-7", drain_options())

        self.assertEqual(self.remote.get_pod.call_count, 3)

    def test_cancelled_by_stop_event(self):
        stop_event = threading.Event()
        stop_event.set()
        drainer = KubeNodeDrainer(self.remote, stop_event=stop_event)
        self.remote.list_pods_on_node.return_value = [make_pod("web-1")]

        with self.assertRaises(DrainCancelledError):
            drainer.drain("node-7", drain_options())


if __name__ == '__main__':
    unittest.main()
