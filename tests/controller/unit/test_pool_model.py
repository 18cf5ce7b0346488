# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import pytest

from gratefulset.controller.models import LedgerDocument, PodObservation, PoolObservation
from gratefulset.controller.pool_model import PoolRole, PoolSet
from gratefulset.controller.utils.exceptions import InvariantViolation

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.controller,
]


def make_pool(pool_id, base, count, ready=None, fingerprint="fp"):
    name = f"db-{pool_id}"
    ready = count if ready is None else ready
    pods = {
        k: PodObservation(name=f"{name}-{k}", local_ordinal=k, ready=k < ready)
        for k in range(count)
    }
    return PoolObservation(
        name=name,
        pool_id=pool_id,
        ordinal_base=base,
        ordinal_count=count,
        fingerprint=fingerprint,
        resource_version="1",
        pods=pods,
    )


def permits(*ordinals, revoked=()):
    doc = LedgerDocument(permits={o: True for o in ordinals})
    for o in revoked:
        doc.permits[o] = False
    return doc


class TestRoles:
    def test_newest_pool_is_active(self):
        pools = PoolSet([make_pool(2, 3, 1), make_pool(1, 0, 2), make_pool(3, 4, 0)])

        assert pools.active.name == "db-3"
        assert [p.name for p in pools.draining] == ["db-1", "db-2"]
        assert pools.retired == []
        assert pools.role(pools.get("db-1")) == PoolRole.DRAINING

    def test_empty_old_pool_is_retired(self):
        pools = PoolSet([make_pool(1, 0, 0), make_pool(2, 3, 3)])

        assert pools.role(pools.get("db-1")) == PoolRole.RETIRED
        assert pools.total == 3

    def test_next_identity_never_reuses_ordinals(self):
        pools = PoolSet([make_pool(1, 0, 0), make_pool(2, 3, 2)])

        assert pools.next_pool_id == 3
        assert pools.next_ordinal_base == 5

    def test_next_base_skips_past_an_empty_active_pool(self):
        pools = PoolSet([make_pool(1, 0, 3), make_pool(2, 7, 0)])
        assert pools.next_ordinal_base == 7

    def test_logical_ordinals_map_to_owner(self):
        pools = PoolSet([make_pool(1, 0, 2), make_pool(2, 5, 2)])

        assert pools.owner_of(1).name == "db-1"
        assert pools.owner_of(6).name == "db-2"
        assert pools.owner_of(3) is None
        assert pools.get("db-2").pod_name(6) == "db-2-1"

    def test_ready_total_ignores_pods_beyond_replicas(self):
        pool = make_pool(1, 0, 3)
        pool.ordinal_count = 2
        assert PoolSet([pool]).ready_total == 2


class TestRetiring:
    def test_revoked_in_range_ordinal_is_retiring(self):
        pools = PoolSet([make_pool(1, 0, 3)])
        pool, ordinal = pools.retiring(permits(0, 1, revoked=[2]))

        assert pool.name == "db-1"
        assert ordinal == 2

    def test_revoked_out_of_range_ordinal_is_history(self):
        pools = PoolSet([make_pool(1, 0, 2)])
        assert pools.retiring(permits(0, 1, revoked=[2])) is None


class TestValidate:
    def test_consistent_state_passes(self):
        pools = PoolSet([make_pool(1, 0, 2), make_pool(2, 3, 1)])
        pools.validate(permits(0, 1, 3, revoked=[2]))

    def test_permit_without_owner_is_a_violation(self):
        pools = PoolSet([make_pool(1, 0, 1)])

        with pytest.raises(InvariantViolation) as excinfo:
            pools.validate(permits(0, 1, 2))
        assert excinfo.value.ordinal == 1

    def test_revoked_ordinal_below_top_is_a_violation(self):
        pools = PoolSet([make_pool(1, 0, 3)])

        with pytest.raises(InvariantViolation, match="not the highest"):
            pools.validate(permits(0, 2, revoked=[1]))

    def test_two_retirements_in_flight_is_a_violation(self):
        pools = PoolSet([make_pool(1, 0, 2), make_pool(2, 2, 2)])

        with pytest.raises(InvariantViolation, match="Several retirements"):
            pools.validate(permits(0, 2, revoked=[1, 3]))

    def test_overlapping_ranges_are_a_violation(self):
        pools = PoolSet([make_pool(1, 0, 3), make_pool(2, 2, 2)])

        with pytest.raises(InvariantViolation, match="same range"):
            pools.validate(permits())

    def test_duplicate_pool_ids_are_a_violation(self):
        a = make_pool(1, 0, 1)
        b = make_pool(1, 5, 1)
        b.name = "db-1-copy"

        with pytest.raises(InvariantViolation, match="Duplicate"):
            PoolSet([a, b]).validate(permits())
