#!/usr/bin/env python3
"""
Prometheus metrics for the VMI eviction drain controller.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

registry = CollectorRegistry()

reconcile_total = Counter(
    'vmi_drain_reconcile_total',
    'VMI reconciles by result (noop, requeue, error, deleted)',
    ['result'],
    registry=registry
)

node_drain_total = Counter(
    'vmi_drain_node_drain_total',
    'Workload cluster node drain attempts by outcome (success, retry, fatal)',
    ['outcome'],
    registry=registry
)

reconcile_duration = Histogram(
    'vmi_drain_reconcile_duration_seconds',
    'Time spent in a single VMI reconcile',
    buckets=(0.05, 0.1, 0.5, 1, 2.5, 5, 10, 20, 30, 60),
    registry=registry
)

workqueue_depth = Gauge(
    'vmi_drain_workqueue_depth',
    'VMI keys waiting in the work queue',
    registry=registry
)
