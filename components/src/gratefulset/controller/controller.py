# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Event loop wiring: watches and resyncs feed a keyed queue drained by workers."""

import asyncio
import logging
from typing import Optional

from gratefulset.controller.models import WorkloadKey
from gratefulset.controller.reconciler import Reconciler
from gratefulset.controller.status import ControllerMetrics
from gratefulset.controller.substrate import SubstrateConnector
from gratefulset.controller.utils.exceptions import (
    ConflictError,
    GratefulSetError,
    InvariantViolation,
    NotFoundError,
    TraitInvocationError,
    TransientSubstrateError,
    WorkloadSpecError,
)
from gratefulset.controller.work_queue import KeyedWorkQueue

logger = logging.getLogger(__name__)


class GratefulSetController:
    def __init__(
        self,
        connector: SubstrateConnector,
        reconciler: Reconciler,
        queue: Optional[KeyedWorkQueue] = None,
        workers: int = 4,
        resync_period: float = 300.0,
        metrics: Optional[ControllerMetrics] = None,
    ):
        self.connector = connector
        self.reconciler = reconciler
        self.queue = queue if queue is not None else KeyedWorkQueue()
        self.workers = max(1, workers)
        self.resync_period = resync_period
        self.metrics = metrics
        self._tasks: list[asyncio.Task] = []

    def enqueue(self, key: WorkloadKey) -> None:
        self.queue.add(key)

    async def resync(self) -> None:
        """Enqueue every known GratefulSet."""
        try:
            keys = await self.connector.list_workloads()
        except GratefulSetError as e:
            logger.warning(f"Resync listing failed: {e}")
            return
        for key in keys:
            self.queue.add(key)
        logger.debug(f"Resync enqueued {len(keys)} GratefulSets")

    async def _resync_loop(self) -> None:
        while True:
            await self.resync()
            await asyncio.sleep(self.resync_period)

    async def process(self, key: WorkloadKey) -> str:
        """Run one pass for `key` and requeue it according to the outcome."""
        try:
            result = await self.reconciler.reconcile(key)
        except ConflictError as e:
            logger.info(f"{key}: {e}, recomputing")
            self.queue.add(key)
            return "conflict"
        except InvariantViolation:
            # Reported on the status already; the next event re-evaluates.
            self.queue.forget(key)
            return "invariant_violation"
        except WorkloadSpecError as e:
            logger.warning(str(e))
            self.queue.forget(key)
            return "invalid_spec"
        except (TransientSubstrateError, TraitInvocationError, NotFoundError) as e:
            delay = self.queue.add_rate_limited(key)
            logger.warning(
                f"{key}: {e}; retry {self.queue.failures(key)} in {delay:.1f}s"
            )
            return "retry"
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.exception(f"{key}: unexpected reconcile failure, retry in {delay:.1f}s: {e}")
            return "error"

        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        logger.debug(f"{key}: {result.action}")
        return "success"

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            try:
                outcome = await self.process(key)
                if self.metrics is not None:
                    self.metrics.observe_outcome(key, outcome)
            finally:
                self.queue.done(key)

    async def _watch_loop(self) -> None:
        while True:
            try:
                await self.connector.watch(self.enqueue)
            except GratefulSetError as e:
                logger.warning(f"Watch failed: {e}; restarting")
                await asyncio.sleep(1.0)

    async def run(self) -> None:
        """Run until cancelled."""
        self._tasks = [
            asyncio.create_task(self._watch_loop(), name="gratefulset-watch"),
            asyncio.create_task(self._resync_loop(), name="gratefulset-resync"),
        ] + [
            asyncio.create_task(self._worker(i), name=f"gratefulset-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"GratefulSet controller running with {self.workers} workers")
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    async def stop(self) -> None:
        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
