# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import pytest

from gratefulset.controller.defaults import TRANSITION_REPLICAS_ANNOTATION
from gratefulset.controller.models import (
    LedgerDocument,
    LogicalWorkload,
    PodObservation,
    PoolObservation,
    StepKind,
    StepState,
)
from gratefulset.controller.pool_model import PoolSet
from gratefulset.controller.pool_template import fingerprint
from gratefulset.controller.transition_manager import PoolTransitionManager

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.controller,
]

GATE = "registry.local/gratefulset:test"
OLD_SPEC = {"replicas": 3, "serviceName": "db", "template": {"spec": {"containers": []}}}
NEW_SPEC = {**OLD_SPEC, "serviceName": "db-headless"}


def workload(spec=NEW_SPEC):
    return LogicalWorkload(namespace="storage", name="db", sts_spec=spec)


def pool(pool_id, base, count, spec=OLD_SPEC, transition=None, pods=None):
    name = f"db-{pool_id}"
    if pods is None:
        pods = {k: PodObservation(name=f"{name}-{k}", local_ordinal=k, ready=True) for k in range(count)}
    return PoolObservation(
        name=name,
        pool_id=pool_id,
        ordinal_base=base,
        ordinal_count=count,
        fingerprint=fingerprint(spec),
        transition_replicas=transition,
        pods=pods,
    )


@pytest.fixture
def manager():
    return PoolTransitionManager(GATE)


def test_fingerprint_change_needs_successor(manager):
    pools = PoolSet([pool(1, 0, 3)])

    assert manager.needs_successor(pools, workload())
    assert not manager.needs_successor(pools, workload(OLD_SPEC))


def test_successor_starts_empty_past_every_ordinal(manager):
    manifest = manager.successor_manifest(PoolSet([pool(1, 0, 3)]), workload())

    assert manifest["metadata"]["name"] == "db-2"
    assert manifest["spec"]["replicas"] == 0
    assert manifest["metadata"]["annotations"][TRANSITION_REPLICAS_ANNOTATION] == "3"


def test_second_change_mid_migration_keeps_the_target(manager):
    # db-1 has given up one ordinal and db-2 has not admitted its replacement yet.
    pools = PoolSet(
        [pool(1, 0, 2), pool(2, 3, 0, spec=NEW_SPEC, transition=3)]
    )
    third = {**NEW_SPEC, "serviceName": "db-v3"}

    manifest = manager.successor_manifest(pools, workload(third))

    assert manifest["metadata"]["name"] == "db-3"
    assert manifest["metadata"]["annotations"][TRANSITION_REPLICAS_ANNOTATION] == "3"


def test_at_capacity_retires_from_the_oldest_pool(manager):
    pools = PoolSet(
        [pool(1, 0, 1), pool(2, 3, 1, spec=NEW_SPEC), pool(3, 5, 1, spec=NEW_SPEC, transition=3)]
    )
    plan = manager.plan(pools, workload())

    step = manager.next_step(plan, pools, LedgerDocument(permits={0: True, 3: True, 5: True}))

    assert plan.oldest.name == "db-1"
    assert step.kind == StepKind.SCALE_DOWN
    assert step.state == StepState.INITIATED
    assert step.ordinal == 0


def test_below_capacity_admits_into_the_successor(manager):
    pools = PoolSet([pool(1, 0, 2), pool(2, 3, 0, spec=NEW_SPEC, transition=3)])
    plan = manager.plan(pools, workload())

    step = manager.next_step(plan, pools, LedgerDocument(permits={0: True, 1: True}))

    assert step.kind == StepKind.SCALE_UP
    assert step.pool.name == "db-2"
    assert step.ordinal == 3


def test_foreign_successor_migrates_at_desired_size(manager):
    pools = PoolSet([pool(1, 0, 3), pool(2, 3, 0, spec=NEW_SPEC)])
    assert manager.plan(pools, workload()).target_total == 3


def test_no_plan_for_a_single_pool(manager):
    assert manager.plan(PoolSet([pool(1, 0, 3)]), workload()) is None


def test_emptied_predecessor_still_fills_the_successor(manager):
    pools = PoolSet([pool(1, 0, 0), pool(2, 3, 2, spec=NEW_SPEC, transition=3)])
    plan = manager.plan(pools, workload())

    step = manager.next_step(plan, pools, LedgerDocument(permits={3: True, 4: True}))

    assert plan.draining == ()
    assert step.kind == StepKind.SCALE_UP
    assert step.ordinal == 5


def test_migration_ends_once_the_successor_is_full(manager):
    pools = PoolSet([pool(1, 0, 0), pool(2, 3, 3, spec=NEW_SPEC, transition=3)])
    plan = manager.plan(pools, workload())

    assert manager.next_step(plan, pools, LedgerDocument(permits={3: True, 4: True, 5: True})) is None


def test_retired_pool_is_deleted_only_once_its_pods_are_gone(manager):
    lingering = pool(1, 0, 0, pods={0: PodObservation(name="db-1-0", local_ordinal=0)})
    gone = pool(2, 1, 0)
    active = pool(3, 2, 3, spec=NEW_SPEC)

    assert [p.name for p in manager.deletable(PoolSet([lingering, gone, active]))] == ["db-2"]
