# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""The pools realizing one GratefulSet, as observed in a single pass.

Pools are ordered by id. The newest pool is active and is the only one that
may grow. Older pools holding ordinals are draining; older pools at zero are
retired and get deleted once their pods are gone.
"""

from enum import Enum
from typing import Optional

from gratefulset.controller.models import LedgerDocument, PoolObservation
from gratefulset.controller.utils.exceptions import InvariantViolation


class PoolRole(str, Enum):
    ACTIVE = "active"
    DRAINING = "draining"
    RETIRED = "retired"


class PoolSet:
    def __init__(self, pools: list[PoolObservation]):
        self.pools = sorted(pools, key=lambda p: p.pool_id)

    def __len__(self) -> int:
        return len(self.pools)

    @property
    def active(self) -> Optional[PoolObservation]:
        return self.pools[-1] if self.pools else None

    @property
    def draining(self) -> list[PoolObservation]:
        """Older pools still holding ordinals, oldest first."""
        return [p for p in self.pools[:-1] if p.ordinal_count > 0]

    @property
    def retired(self) -> list[PoolObservation]:
        return [p for p in self.pools[:-1] if p.ordinal_count == 0]

    def role(self, pool: PoolObservation) -> PoolRole:
        if pool is self.active:
            return PoolRole.ACTIVE
        return PoolRole.DRAINING if pool.ordinal_count > 0 else PoolRole.RETIRED

    @property
    def total(self) -> int:
        return sum(p.ordinal_count for p in self.pools)

    @property
    def ready_total(self) -> int:
        return sum(p.ready_count for p in self.pools)

    @property
    def next_pool_id(self) -> int:
        return max((p.pool_id for p in self.pools), default=0) + 1

    @property
    def next_ordinal_base(self) -> int:
        return max(
            (max(p.ordinal_end, p.ordinal_base) for p in self.pools), default=0
        )

    def get(self, name: str) -> Optional[PoolObservation]:
        for pool in self.pools:
            if pool.name == name:
                return pool
        return None

    def owner_of(self, ordinal: int) -> Optional[PoolObservation]:
        for pool in self.pools:
            if pool.owns(ordinal):
                return pool
        return None

    def owns(self, ordinal: int) -> bool:
        return self.owner_of(ordinal) is not None

    def retiring(self, ledger: LedgerDocument) -> Optional[tuple[PoolObservation, int]]:
        """The ordinal whose retirement is in flight: revoked but still in a range."""
        for ordinal in sorted(ledger.permits, reverse=True):
            if ledger.is_revoked(ordinal):
                pool = self.owner_of(ordinal)
                if pool is not None:
                    return pool, ordinal
        return None

    def validate(self, ledger: LedgerDocument) -> None:
        """Raise InvariantViolation if the pools and the ledger contradict each other."""
        ids = [p.pool_id for p in self.pools]
        if len(ids) != len(set(ids)):
            raise InvariantViolation(f"Duplicate pool ids observed: {sorted(ids)}")

        occupied = [p for p in self.pools if p.ordinal_count > 0]
        for i, a in enumerate(occupied):
            for b in occupied[i + 1 :]:
                if a.ordinal_base < b.ordinal_end and b.ordinal_base < a.ordinal_end:
                    raise InvariantViolation(
                        f"Pools {a.name} [{a.ordinal_base},{a.ordinal_end}) and "
                        f"{b.name} [{b.ordinal_base},{b.ordinal_end}) both hold ordinals "
                        "in the same range; more than one pool is accepting ordinals"
                    )

        for ordinal in sorted(ledger.permits):
            if ledger.is_permitted(ordinal) and not self.owns(ordinal):
                raise InvariantViolation(
                    f"Ordinal {ordinal} holds a lock but no pool owns it; "
                    "replicas were reduced outside the controller",
                    ordinal=ordinal,
                )

        revoked_in_range = []
        for ordinal in sorted(ledger.permits):
            pool = self.owner_of(ordinal)
            if ledger.is_revoked(ordinal) and pool is not None:
                if ordinal != pool.top_ordinal:
                    raise InvariantViolation(
                        f"Ordinal {ordinal} is revoked but is not the highest "
                        f"ordinal of pool {pool.name}",
                        ordinal=ordinal,
                    )
                revoked_in_range.append(ordinal)
        if len(revoked_in_range) > 1:
            raise InvariantViolation(
                f"Several retirements in flight at once: ordinals {revoked_in_range}"
            )
