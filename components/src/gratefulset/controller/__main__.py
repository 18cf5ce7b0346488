# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
GratefulSet controller

Usage:
    python -m gratefulset.controller --watch-namespace storage

Dry run with the in-memory substrate:
    python -m gratefulset.controller --environment virtual \\
        --virtual-manifest ./gratefulsets.json
"""

import asyncio
import json
import logging
import signal

import uvloop
from prometheus_client import start_http_server

from gratefulset.controller.argparse_config import (
    create_controller_parser,
    validate_controller_args,
)
from gratefulset.controller.controller import GratefulSetController
from gratefulset.controller.kubernetes_connector import KubernetesConnector
from gratefulset.controller.reconciler import Reconciler, ReconcilerSettings
from gratefulset.controller.status import ControllerMetrics
from gratefulset.controller.virtual_connector import VirtualConnector, VirtualScaleTrait
from gratefulset.controller.work_queue import KeyedWorkQueue
from gratefulset.runtime.logging import configure_gratefulset_logging

logger = logging.getLogger(__name__)


def load_virtual_manifest(connector: VirtualConnector, path: str) -> None:
    if not path:
        logger.warning("Virtual environment started without --virtual-manifest")
        return
    with open(path) as f:
        objects = json.load(f)
    if isinstance(objects, dict):
        objects = objects.get("items", [objects])
    for obj in objects:
        key = connector.apply_workload(obj)
        logger.info(f"Seeded virtual GratefulSet {key}")


async def async_main(args) -> None:
    settings = ReconcilerSettings(
        gate_image=args.gate_image,
        gate_ledger_source=args.gate_ledger_source,
        poll_interval=args.poll_interval,
        settle_timeout=args.settle_timeout,
        trait_timeout=args.trait_timeout,
        ledger_retries=args.ledger_retries,
        stuck_after=args.stuck_after,
    )
    metrics = ControllerMetrics()

    background = []
    if args.environment == "virtual":
        connector = VirtualConnector()
        load_virtual_manifest(connector, args.virtual_manifest)
        virtual_trait = VirtualScaleTrait(connector)
        reconciler = Reconciler(
            connector, settings, trait_factory=lambda _: virtual_trait, metrics=metrics
        )
        background.append(asyncio.create_task(connector.simulate(args.poll_interval)))
    else:
        connector = KubernetesConnector(
            watch_namespace=args.watch_namespace, api_timeout=args.api_timeout
        )
        reconciler = Reconciler(connector, settings, metrics=metrics)

    if args.metrics_port != 0:
        try:
            start_http_server(args.metrics_port)
            logger.info(f"Started Prometheus metrics server on port {args.metrics_port}")
        except Exception as e:
            logger.error(f"Failed to start Prometheus metrics server: {e}")

    controller = GratefulSetController(
        connector,
        reconciler,
        queue=KeyedWorkQueue(backoff_base=args.backoff_base, backoff_max=args.backoff_max),
        workers=args.workers,
        resync_period=args.resync_period,
        metrics=metrics,
    )

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(controller.run())

    def signal_handler():
        logger.info("Shutdown requested")
        run_task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await run_task
    except asyncio.CancelledError:
        pass
    finally:
        for task in background:
            task.cancel()
        logger.info("GratefulSet controller stopped")


def main():
    parser = create_controller_parser()
    args = parser.parse_args()
    configure_gratefulset_logging(args.log_level)
    validate_controller_args(args)

    logger.info("=" * 60)
    logger.info("Starting GratefulSet controller")
    logger.info("=" * 60)
    logger.info(f"Environment: {args.environment}")
    logger.info(f"Namespace: {args.watch_namespace or 'all'}")
    logger.info(f"Workers: {args.workers}")
    logger.info(f"Gate image: {args.gate_image} (ledger source: {args.gate_ledger_source})")
    logger.info("=" * 60)

    uvloop.run(async_main(args))


if __name__ == "__main__":
    main()
