# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""How one reconcile outcome decides when a key is processed again."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import converge, gratefulset_manifest

from gratefulset.controller.controller import GratefulSetController
from gratefulset.controller.models import WorkloadKey
from gratefulset.controller.reconciler import ReconcileResult
from gratefulset.controller.utils.exceptions import (
    ConflictError,
    InvariantViolation,
    TraitInvocationError,
    TransientSubstrateError,
    WorkloadSpecError,
)
from gratefulset.controller.work_queue import KeyedWorkQueue

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.controller,
]

KEY = WorkloadKey(namespace="storage", name="db")


def no_jitter(low, high):
    return 0.0


@pytest.fixture
def queue():
    return KeyedWorkQueue(backoff_base=30.0, backoff_max=60.0, rand=no_jitter)


def controller_with(queue, outcome):
    reconciler = MagicMock()
    if isinstance(outcome, Exception):
        reconciler.reconcile = AsyncMock(side_effect=outcome)
    else:
        reconciler.reconcile = AsyncMock(return_value=outcome)
    return GratefulSetController(MagicMock(), reconciler, queue=queue)


def test_keeps_the_configured_queue_even_when_empty():
    queue = KeyedWorkQueue(backoff_base=5.0, backoff_max=42.0)

    controller = GratefulSetController(MagicMock(), MagicMock(), queue=queue)

    assert len(queue) == 0
    assert controller.queue is queue


@pytest.mark.asyncio
async def test_conflict_requeues_immediately(queue):
    controller = controller_with(queue, ConflictError("ConfigMap", "db-locks"))

    assert await controller.process(KEY) == "conflict"
    assert KEY in queue
    assert queue.failures(KEY) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        TransientSubstrateError("list pools", "HTTP 503"),
        TraitInvocationError("scale-down", 2, "refused"),
    ],
)
async def test_retryable_errors_back_off(queue, error):
    controller = controller_with(queue, error)

    assert await controller.process(KEY) == "retry"
    assert queue.failures(KEY) == 1
    # Not immediately runnable; a timer re-adds it.
    assert KEY not in queue
    queue.shutdown()


@pytest.mark.asyncio
async def test_unexpected_errors_back_off_too(queue):
    controller = controller_with(queue, RuntimeError("boom"))

    assert await controller.process(KEY) == "error"
    assert queue.failures(KEY) == 1
    queue.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,outcome",
    [
        (InvariantViolation("ordinal 1 holds a lock but no pool owns it", ordinal=1), "invariant_violation"),
        (WorkloadSpecError("storage/db", ["spec.stsSpec.template.spec is required"]), "invalid_spec"),
    ],
)
async def test_blocking_errors_wait_for_the_next_event(queue, error, outcome):
    queue.add_rate_limited(KEY)
    controller = controller_with(queue, error)

    assert await controller.process(KEY) == outcome
    assert queue.failures(KEY) == 0
    queue.shutdown()


@pytest.mark.asyncio
async def test_success_resets_backoff_and_honours_requeue(queue):
    queue.add_rate_limited(KEY)
    controller = controller_with(
        queue, ReconcileResult(key=KEY, action="wait", requeue_after=0.0)
    )

    assert await controller.process(KEY) == "success"
    assert queue.failures(KEY) == 0
    assert KEY in queue
    queue.shutdown()


@pytest.mark.asyncio
async def test_resync_enqueues_every_workload(queue):
    connector = MagicMock()
    connector.list_workloads = AsyncMock(
        return_value=[KEY, WorkloadKey(namespace="storage", name="cache")]
    )
    controller = GratefulSetController(connector, MagicMock(), queue=queue)

    await controller.resync()

    assert len(queue) == 2


@pytest.mark.asyncio
async def test_resync_survives_a_failed_listing(queue):
    connector = MagicMock()
    connector.list_workloads = AsyncMock(side_effect=TransientSubstrateError("list", "timeout"))
    controller = GratefulSetController(connector, MagicMock(), queue=queue)

    await controller.resync()

    assert len(queue) == 0


@pytest.mark.asyncio
async def test_watch_events_drive_the_workload_to_convergence(
    connector, reconciler, trait
):
    key = connector.apply_workload(gratefulset_manifest(replicas=2))
    controller = GratefulSetController(connector, reconciler, queue=KeyedWorkQueue())

    controller.enqueue(key)
    while len(controller.queue):
        connector.settle()
        key = await controller.queue.get()
        try:
            assert await controller.process(key) == "success"
        finally:
            controller.queue.done(key)
    controller.queue.shutdown()

    # The queue drained once no pass asked for an immediate requeue; finish
    # whatever was left waiting on timers.
    await converge(reconciler, connector, key)
    assert connector.pool_replicas(key) == {"db-1": 2}
    assert trait.scaled_up == [0, 1]
