#!/usr/bin/env python3
"""
VMI Eviction Drain Manager

Process entry point: builds the management cluster client, starts the VMI
eviction controller and serves health probes and Prometheus metrics.
"""

import argparse
import logging
import signal
import sys
from typing import Optional
from flask import Flask, Response, jsonify
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

import metrics
from models import KUBEVIRT_MACHINE_NAME_LABEL
from management_client import ManagementClient
from vmi_controller import VMIController

logger = logging.getLogger(__name__)

app = Flask(__name__)


class ManagerState:
    def __init__(self):
        self.controller: Optional[VMIController] = None


state = ManagerState()


@app.route('/healthz', methods=['GET'])
def healthz():
    """Liveness probe."""
    return jsonify({"status": "ok"})


@app.route('/readyz', methods=['GET'])
def readyz():
    """Readiness probe: ready once the watch and workers are running."""
    if state.controller is None or not state.controller.ready:
        return jsonify({"status": "not ready"}), 503
    return jsonify({"status": "ok"})


@app.route('/metrics', methods=['GET'])
def serve_metrics():
    """Prometheus scrape endpoint."""
    return Response(generate_latest(metrics.registry), mimetype=CONTENT_TYPE_LATEST)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='KubeVirt VMI eviction drain controller')
    parser.add_argument('--namespace', type=str, default=None,
                        help='Only watch VMIs in this namespace (default: all namespaces)')
    parser.add_argument('--in-cluster', action='store_true', help='Use in-cluster config')
    parser.add_argument('--kubeconfig', type=str, default=None,
                        help='Management cluster kubeconfig (default: $KUBECONFIG or ~/.kube/config)')
    parser.add_argument('--workers', type=int, default=1, help='Number of reconcile workers')
    parser.add_argument('--watch-label', type=str, default=KUBEVIRT_MACHINE_NAME_LABEL,
                        help='Only reconcile VMIs carrying this label')
    parser.add_argument('--host', type=str, default='0.0.0.0', help='Host to bind probes and metrics to')
    parser.add_argument('--health-port', type=int, default=9440, help='Port for probes and metrics')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Log level')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    management_client = ManagementClient(
        use_in_cluster_config=args.in_cluster,
        kubeconfig=args.kubeconfig
    )

    controller = VMIController(
        management_client,
        namespace=args.namespace,
        watch_label=args.watch_label,
        workers=args.workers
    )
    state.controller = controller

    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        controller.stop()
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    controller.start()

    logger.info(f"Serving probes and metrics on {args.host}:{args.health_port}")
    app.run(host=args.host, port=args.health_port)


if __name__ == "__main__":
    main()
