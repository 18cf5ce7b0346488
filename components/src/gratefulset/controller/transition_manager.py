# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Moving a workload to a new pool when an immutable field changes.

A successor pool is created empty and annotated with the total ordinal count
at that moment. Migration then alternates one retirement from the oldest
draining pool with one admission into the successor, so the total never
exceeds the annotated count and every freed ordinal is fully settled before
its replacement is admitted.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from gratefulset.controller.actions import ScaleStep
from gratefulset.controller.models import LedgerDocument, LogicalWorkload, PoolObservation
from gratefulset.controller.pool_model import PoolSet
from gratefulset.controller.pool_template import fingerprint, render_pool
from gratefulset.controller.scale_coordinator import scale_down_step, scale_up_step

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionPlan:
    successor: PoolObservation
    draining: tuple[PoolObservation, ...]
    target_total: int

    @property
    def oldest(self) -> PoolObservation:
        return self.draining[0]


class PoolTransitionManager:
    def __init__(self, gate_image: str, ledger_source: str = "api"):
        self.gate_image = gate_image
        self.ledger_source = ledger_source

    def needs_successor(self, pools: PoolSet, workload: LogicalWorkload) -> bool:
        active = pools.active
        return active is not None and active.fingerprint != fingerprint(workload.sts_spec)

    def plan(self, pools: PoolSet, workload: LogicalWorkload) -> Optional[TransitionPlan]:
        """The migration in progress, if any older pool is still around."""
        if len(pools) < 2:
            return None
        draining = pools.draining
        target = pools.active.transition_replicas
        if target is None:
            # Successor made by someone else: migrate at the desired size.
            target = workload.replicas
        return TransitionPlan(
            successor=pools.active, draining=tuple(draining), target_total=target
        )

    def first_pool(self, workload: LogicalWorkload) -> dict[str, Any]:
        return render_pool(
            workload, 1, 0, 0, self.gate_image, ledger_source=self.ledger_source
        )

    def successor_manifest(
        self, pools: PoolSet, workload: LogicalWorkload
    ) -> dict[str, Any]:
        """Manifest of an empty pool taking over from the current active one."""
        in_flight = self.plan(pools, workload)
        # A half-finished migration keeps its size; never admit past it.
        target = max(pools.total, in_flight.target_total) if in_flight else pools.total
        logger.info(
            f"{workload.key}: structural change on pool {pools.active.name}, "
            f"preparing pool {pools.next_pool_id} to take over {target} ordinals"
        )
        return render_pool(
            workload,
            pools.next_pool_id,
            pools.next_ordinal_base,
            0,
            self.gate_image,
            transition_replicas=target,
            ledger_source=self.ledger_source,
        )

    def next_step(
        self,
        plan: TransitionPlan,
        pools: PoolSet,
        ledger: LedgerDocument,
    ) -> Optional[ScaleStep]:
        """Retire from the oldest pool while at capacity, admit otherwise.

        None once every older pool is empty and the successor holds the
        transition size.
        """
        if pools.total < plan.target_total:
            return scale_up_step(plan.successor)
        if plan.draining:
            victim = plan.oldest
            return scale_down_step(victim, victim.top_ordinal, ledger)
        return None

    def deletable(self, pools: PoolSet) -> list[PoolObservation]:
        """Retired pools whose pods are all gone."""
        return [p for p in pools.retired if not p.pods]
