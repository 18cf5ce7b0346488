# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""One reconcile pass: observe, validate, plan one action, apply it, report.

Planning is a pure function of the observed snapshot. Nothing is remembered
between passes; every in-flight sequence is recovered from the pools and the
ledger, so a pass may be cancelled or the process restarted at any point.

Priorities, highest first:
    1. create the ledger, then the first pool
    2. finish a retirement already in flight
    3. roll the active pool to a changed (mutable) template
    4. finish an admission already in flight
    5. wait out any native rolling update
    6. create a successor pool on a structural change
    7. advance the migration until the successor holds the transition size
    8. delete retired pools once their pods are gone
    9. scale the active pool toward the desired replica count
    10. prune stale ledger entries
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from gratefulset.controller.actions import (
    Action,
    AdvanceStep,
    CreateLedger,
    CreatePool,
    DeletePool,
    NoOp,
    PruneLedger,
    UpdatePoolTemplate,
    Wait,
)
from gratefulset.controller.defaults import ControllerDefaults
from gratefulset.controller.lock_ledger import LockLedger
from gratefulset.controller.models import (
    Condition,
    GratefulSetStatus,
    ObservedState,
    ScaleTraits,
    WorkloadKey,
    utc_now,
)
from gratefulset.controller.pool_model import PoolSet
from gratefulset.controller.pool_template import retemplate_pool, template_hash
from gratefulset.controller.scale_coordinator import (
    CoordinatorSettings,
    ScaleCoordinator,
    StepOutcome,
    pending_scale_up,
    scale_down_step,
    scale_up_step,
)
from gratefulset.controller.status import ControllerMetrics, build_status
from gratefulset.controller.substrate import SubstrateConnector
from gratefulset.controller.traits import ScaleTrait, build_scale_trait
from gratefulset.controller.transition_manager import PoolTransitionManager
from gratefulset.controller.utils.exceptions import (
    GratefulSetError,
    InvariantViolation,
    WorkloadSpecError,
)

logger = logging.getLogger(__name__)

TraitFactory = Callable[[ScaleTraits], ScaleTrait]


@dataclass
class ReconcilerSettings:
    gate_image: str = ControllerDefaults.gate_image
    gate_ledger_source: str = ControllerDefaults.gate_ledger_source
    poll_interval: float = ControllerDefaults.poll_interval
    settle_timeout: float = ControllerDefaults.settle_timeout
    trait_timeout: float = ControllerDefaults.trait_timeout
    ledger_retries: int = ControllerDefaults.ledger_retries
    stuck_after: float = ControllerDefaults.stuck_after

    @property
    def coordinator(self) -> CoordinatorSettings:
        return CoordinatorSettings(
            poll_interval=self.poll_interval,
            settle_timeout=self.settle_timeout,
            trait_timeout=self.trait_timeout,
        )


@dataclass
class ReconcileResult:
    key: WorkloadKey
    action: str
    requeue_after: Optional[float] = None
    status: Optional[GratefulSetStatus] = None


class Reconciler:
    def __init__(
        self,
        connector: SubstrateConnector,
        settings: Optional[ReconcilerSettings] = None,
        trait_factory: Optional[TraitFactory] = None,
        metrics: Optional[ControllerMetrics] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.connector = connector
        self.settings = settings or ReconcilerSettings()
        self.trait_factory = trait_factory or (
            lambda traits: build_scale_trait(traits, self.settings.trait_timeout)
        )
        self.metrics = metrics
        self.clock = clock
        self.transitions = PoolTransitionManager(
            self.settings.gate_image, self.settings.gate_ledger_source
        )

    async def observe(self, key: WorkloadKey) -> Optional[ObservedState]:
        workload = await self.connector.get_workload(key)
        if workload is None:
            return None
        pools = await self.connector.list_pools(key)
        ledger = await self.connector.read_ledger(key)
        return ObservedState(workload=workload, pools=pools, ledger=ledger)

    def plan(self, observed: ObservedState) -> Action:
        """Decide the single next action for an observed snapshot.

        Raises InvariantViolation when the snapshot must not be acted on.
        """
        workload = observed.workload
        ledger = observed.ledger
        if ledger is None:
            return CreateLedger()

        pools = PoolSet(observed.pools)
        pools.validate(ledger)

        active = pools.active
        if active is None:
            manifest = self.transitions.first_pool(workload)
            return CreatePool(
                name=manifest["metadata"]["name"], manifest=manifest, reason="first pool"
            )

        retiring = pools.retiring(ledger)
        if retiring is not None:
            pool, ordinal = retiring
            return AdvanceStep(scale_down_step(pool, ordinal, ledger))

        structural = self.transitions.needs_successor(pools, workload)
        desired_hash = template_hash(
            workload.sts_spec,
            self.settings.gate_image,
            self.settings.gate_ledger_source,
        )
        if not structural and active.template_hash != desired_hash:
            return UpdatePoolTemplate(
                pool=active,
                manifest=retemplate_pool(
                    active.manifest,
                    workload,
                    active.ordinal_base,
                    self.settings.gate_image,
                    self.settings.gate_ledger_source,
                ),
            )

        migration = self.transitions.plan(pools, workload)
        pending = pending_scale_up(active, ledger)
        if pending is not None:
            limit = migration.target_total if migration else workload.replicas
            if pools.total > limit:
                # The desired count dropped under an unfinished admission.
                return AdvanceStep(scale_down_step(active, active.top_ordinal, ledger))
            return AdvanceStep(pending)

        rolling = [p.name for p in pools.pools if not p.rollout_complete]
        if rolling:
            return Wait(
                f"rollout in progress for {', '.join(rolling)}",
                self.settings.poll_interval,
            )

        if structural:
            manifest = self.transitions.successor_manifest(pools, workload)
            return CreatePool(
                name=manifest["metadata"]["name"],
                manifest=manifest,
                reason=f"immutable fields of {active.name} changed",
            )

        if migration is not None:
            step = self.transitions.next_step(migration, pools, ledger)
            if step is not None:
                return AdvanceStep(step)

        for pool in self.transitions.deletable(pools):
            return DeletePool(pool=pool)
        if pools.retired:
            return Wait(
                "waiting for pods of retired pools to terminate",
                self.settings.poll_interval,
            )

        if pools.total > workload.replicas:
            return AdvanceStep(scale_down_step(active, active.top_ordinal, ledger))
        if pools.total < workload.replicas:
            return AdvanceStep(scale_up_step(active))

        stale = sorted(
            o
            for o in set(ledger.permits) | set(ledger.records)
            if not pools.owns(o) and not ledger.is_permitted(o)
        )
        if stale:
            return PruneLedger(ordinals=tuple(stale))
        return NoOp()

    def coordinator_for(self, observed: ObservedState) -> ScaleCoordinator:
        workload = observed.workload
        return ScaleCoordinator(
            self.connector,
            self.ledger_for(workload.key),
            self.trait_factory(workload.traits),
            workload,
            self.settings.coordinator,
        )

    def ledger_for(self, key: WorkloadKey) -> LockLedger:
        return LockLedger(
            self.connector, key, retries=self.settings.ledger_retries, clock=self.clock
        )

    async def apply(
        self, action: Action, observed: ObservedState
    ) -> tuple[Optional[StepOutcome], Optional[float]]:
        """Carry out `action`; returns the step outcome and the requeue delay."""
        key = observed.workload.key
        if isinstance(action, CreateLedger):
            await self.ledger_for(key).ensure(observed.workload.uid)
            return None, 0.0
        if isinstance(action, CreatePool):
            logger.info(f"{key}: creating pool {action.name} ({action.reason})")
            await self.connector.create_pool(key, action.manifest)
            return None, 0.0
        if isinstance(action, UpdatePoolTemplate):
            logger.info(f"{key}: rolling pool {action.pool.name} to the current template")
            await self.connector.replace_pool(
                key, action.manifest, action.pool.resource_version
            )
            return None, self.settings.poll_interval
        if isinstance(action, DeletePool):
            logger.info(f"{key}: deleting retired pool {action.pool.name}")
            await self.connector.delete_pool(
                key, action.pool.name, action.pool.resource_version
            )
            return None, 0.0
        if isinstance(action, PruneLedger):
            stale = set(action.ordinals)
            await self.ledger_for(key).prune(
                lambda o: o not in stale, current=observed.ledger
            )
            return None, None
        if isinstance(action, AdvanceStep):
            outcome = await self.coordinator_for(observed).advance(
                action.step, observed.ledger
            )
            return outcome, outcome.requeue_after
        if isinstance(action, Wait):
            return None, action.delay
        return None, None

    async def reconcile(self, key: WorkloadKey) -> ReconcileResult:
        try:
            observed = await self.observe(key)
        except WorkloadSpecError as e:
            await self.publish(key, invalid_spec_status(e))
            raise
        if observed is None:
            logger.info(f"{key}: GratefulSet is gone, owned objects are garbage collected")
            if self.metrics is not None:
                self.metrics.forget(key)
            return ReconcileResult(key=key, action="deleted")

        workload = observed.workload
        pools = PoolSet(observed.pools)
        try:
            action = self.plan(observed)
        except InvariantViolation as e:
            logger.warning(f"{key}: {e}; no action until the state changes")
            await self.publish(
                key,
                build_status(
                    workload,
                    pools,
                    violation=str(e),
                    stuck_after=self.settings.stuck_after,
                ),
            )
            raise

        step = None
        if isinstance(action, AdvanceStep):
            step = action.step.to_status(self.clock())

        logger.debug(f"{key}: planned {action.describe()}")
        try:
            outcome, requeue_after = await self.apply(action, observed)
        except GratefulSetError as e:
            await self.publish(
                key,
                build_status(
                    workload,
                    pools,
                    step=step,
                    progressing=True,
                    error=str(e),
                    stuck_after=self.settings.stuck_after,
                ),
            )
            raise

        if step is not None and outcome is not None and outcome.message:
            step.message = outcome.message
        status = build_status(
            workload,
            pools,
            step=step,
            progressing=not isinstance(action, NoOp),
            stuck_after=self.settings.stuck_after,
        )
        await self.publish(key, status)
        return ReconcileResult(
            key=key,
            action=action.describe(),
            requeue_after=requeue_after,
            status=status,
        )

    async def publish(self, key: WorkloadKey, status: GratefulSetStatus) -> None:
        if self.metrics is not None:
            self.metrics.observe_status(key, status)
        try:
            await self.connector.update_status(key, status)
        except GratefulSetError as e:
            # Status is informational; the next pass rewrites it.
            logger.warning(f"{key}: could not publish status: {e}")


def invalid_spec_status(error: WorkloadSpecError) -> GratefulSetStatus:
    return GratefulSetStatus(
        conditions=[
            Condition(
                type="InvariantViolated",
                status="True",
                reason="InvalidSpec",
                message="; ".join(error.errors),
            ),
            Condition(type="Progressing", status="False", reason="Blocked"),
        ]
    )
