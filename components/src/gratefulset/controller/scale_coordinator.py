# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Per-ordinal scale-down and scale-up sequences.

Scale-down: revoke the lock, invoke the scale-down trait, wait for the pod to
leave service, then decrement the pool. Scale-up: increment the pool, grant
the new pod's lock, wait for it to become ready, then invoke the scale-up
trait. The current state of either sequence is inferred from the ledger and
the pools alone, so a controller restart resumes it where it stopped.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from gratefulset.controller.actions import ScaleStep
from gratefulset.controller.lock_ledger import LockLedger
from gratefulset.controller.models import (
    LedgerDocument,
    LogicalWorkload,
    PodObservation,
    PoolObservation,
    ReplicaTarget,
    StepKind,
    StepState,
)
from gratefulset.controller.substrate import SubstrateConnector
from gratefulset.controller.traits import ScaleTrait
from gratefulset.controller.utils.exceptions import (
    NotFoundError,
    TraitInvocationError,
)
from gratefulset.controller.utils.polling import poll_until

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorSettings:
    poll_interval: float = 2.0
    settle_timeout: float = 20.0
    trait_timeout: float = 30.0


@dataclass
class StepOutcome:
    step: ScaleStep
    mutated: bool
    requeue_after: Optional[float] = None
    message: str = ""


def is_settled(pool: PoolObservation, ordinal: int) -> bool:
    """True once `ordinal` has left service and the rest of the pool is steady."""
    pod = pool.pod_for(ordinal)
    if pod is not None and pod.ready and not pod.terminating:
        return False
    if pod is not None and pod.admission_denied:
        return True
    return pool.ready_count == pool.ordinal_count - 1


def needs_recycle(pod: Optional[PodObservation], revoked_at: Optional[datetime]) -> bool:
    """The app exited after its lock was revoked but its pod was never recreated.

    The kubelet restarts containers in place without re-running init
    containers, so the admission gate only sees the revoked lock once the pod
    itself is replaced.
    """
    if pod is None or revoked_at is None or pod.terminating or pod.admission_denied:
        return False
    return pod.last_exit_at is not None and pod.last_exit_at >= revoked_at


def never_served(
    pod: Optional[PodObservation], ledger: LedgerDocument, ordinal: int
) -> bool:
    """The ordinal's application never started, so there is nothing to drain."""
    if ledger.record(ordinal).scale_up_invoked_at is not None:
        return False
    return pod is None or not pod.ready


def scale_down_step(
    pool: PoolObservation, ordinal: int, ledger: LedgerDocument
) -> ScaleStep:
    """Where the retirement of `ordinal` stands, from the ledger alone."""
    record = ledger.record(ordinal)
    if not ledger.is_revoked(ordinal):
        return ScaleStep(StepKind.SCALE_DOWN, StepState.INITIATED, pool, ordinal)
    if record.scale_down_invoked_at is None:
        return ScaleStep(
            StepKind.SCALE_DOWN,
            StepState.LOCK_REVOKED,
            pool,
            ordinal,
            since=record.revoked_at,
        )
    pod = pool.pod_for(ordinal)
    state = (
        StepState.TRAIT_INVOKED
        if pod is not None and pod.ready
        else StepState.AWAITING_SETTLE
    )
    return ScaleStep(StepKind.SCALE_DOWN, state, pool, ordinal, since=record.revoked_at)


def scale_up_step(pool: PoolObservation) -> ScaleStep:
    """First step of admitting the next ordinal of `pool`."""
    return ScaleStep(StepKind.SCALE_UP, StepState.INITIATED, pool, pool.ordinal_end)


def pending_scale_up(
    pool: PoolObservation, ledger: LedgerDocument
) -> Optional[ScaleStep]:
    """The admission of `pool`'s top ordinal, if it has not finished."""
    top = pool.top_ordinal
    if top is None or ledger.is_revoked(top):
        return None
    if not ledger.is_permitted(top):
        return ScaleStep(StepKind.SCALE_UP, StepState.REPLICAS_INCREMENTED, pool, top)
    record = ledger.record(top)
    if record.scale_up_invoked_at is not None:
        return None
    pod = pool.pod_for(top)
    state = (
        StepState.LOCK_GRANTED
        if pod is not None and pod.ready
        else StepState.AWAITING_READY
    )
    return ScaleStep(StepKind.SCALE_UP, state, pool, top, since=record.granted_at)


class ScaleCoordinator:
    def __init__(
        self,
        connector: SubstrateConnector,
        ledger: LockLedger,
        trait: ScaleTrait,
        workload: LogicalWorkload,
        settings: Optional[CoordinatorSettings] = None,
    ):
        self.connector = connector
        self.ledger = ledger
        self.trait = trait
        self.workload = workload
        self.settings = settings or CoordinatorSettings()

    async def advance(self, step: ScaleStep, ledger: LedgerDocument) -> StepOutcome:
        """Perform the single mutation `step` calls for, or wait for it to be due."""
        logger.info(f"{self.workload.key}: {step.describe()}")
        if step.kind == StepKind.SCALE_DOWN:
            return await self._advance_scale_down(step, ledger)
        return await self._advance_scale_up(step, ledger)

    async def _advance_scale_down(
        self, step: ScaleStep, ledger: LedgerDocument
    ) -> StepOutcome:
        if step.state == StepState.INITIATED:
            await self.ledger.revoke(step.ordinal, current=ledger)
            return StepOutcome(step, mutated=True, requeue_after=0.0)

        if step.state == StepState.LOCK_REVOKED:
            if never_served(step.pool.pod_for(step.ordinal), ledger, step.ordinal):
                logger.info(
                    f"{self.workload.key}: ordinal {step.ordinal} never served, "
                    "skipping the scale-down trait"
                )
            else:
                await self._invoke(step, self.trait.scale_down, tolerate_timeout=True)
            await self.ledger.mark_scale_down_invoked(step.ordinal)
            return StepOutcome(step, mutated=True, requeue_after=0.0)

        revoked_at = ledger.record(step.ordinal).revoked_at
        pool = await self._fetch_pool(step.pool.name)
        pod = pool.pod_for(step.ordinal)
        if needs_recycle(pod, revoked_at):
            logger.info(
                f"{self.workload.key}: pod {pod.name} exited after scale-down "
                "but was not recreated; deleting it so its admission is re-checked"
            )
            await self.connector.delete_pod(self.workload.key, pod.name, pod.uid)
            return StepOutcome(
                step, mutated=True, requeue_after=self.settings.poll_interval
            )

        async def settled() -> Optional[PoolObservation]:
            fresh = await self._fetch_pool(step.pool.name)
            return fresh if is_settled(fresh, step.ordinal) else None

        settled_pool = await poll_until(
            settled, self.settings.settle_timeout, self.settings.poll_interval
        )
        if settled_pool is None:
            return StepOutcome(
                step,
                mutated=False,
                requeue_after=self.settings.poll_interval,
                message=f"waiting for ordinal {step.ordinal} to leave service",
            )

        await self._set_replicas(settled_pool, settled_pool.ordinal_count - 1)
        return StepOutcome(step, mutated=True, requeue_after=0.0)

    async def _advance_scale_up(
        self, step: ScaleStep, ledger: LedgerDocument
    ) -> StepOutcome:
        if step.state == StepState.INITIATED:
            # Left behind by an earlier retirement of the same ordinal.
            if step.ordinal in ledger.permits or step.ordinal in ledger.records:
                await self.ledger.clear(step.ordinal, current=ledger)
                return StepOutcome(step, mutated=True, requeue_after=0.0)
            await self._set_replicas(step.pool, step.pool.ordinal_count + 1)
            return StepOutcome(step, mutated=True, requeue_after=0.0)

        if step.state == StepState.REPLICAS_INCREMENTED:

            async def created() -> Optional[PodObservation]:
                fresh = await self._fetch_pool(step.pool.name)
                pod = fresh.pod_for(step.ordinal)
                return pod if pod is not None and not pod.terminating else None

            pod = await poll_until(
                created, self.settings.settle_timeout, self.settings.poll_interval
            )
            if pod is None:
                return StepOutcome(
                    step,
                    mutated=False,
                    requeue_after=self.settings.poll_interval,
                    message=f"waiting for the pod of ordinal {step.ordinal}",
                )
            await self.ledger.grant(step.ordinal, current=ledger)
            return StepOutcome(step, mutated=True, requeue_after=0.0)

        async def ready() -> Optional[PodObservation]:
            fresh = await self._fetch_pool(step.pool.name)
            pod = fresh.pod_for(step.ordinal)
            return pod if pod is not None and pod.ready and not pod.terminating else None

        pod = await poll_until(
            ready, self.settings.settle_timeout, self.settings.poll_interval
        )
        if pod is None:
            return StepOutcome(
                step,
                mutated=False,
                requeue_after=self.settings.poll_interval,
                message=f"waiting for ordinal {step.ordinal} to become ready",
            )
        await self._invoke(step, self.trait.scale_up)
        await self.ledger.mark_scale_up_invoked(step.ordinal)
        return StepOutcome(step, mutated=True)

    def target_for(self, pool: PoolObservation, ordinal: int) -> ReplicaTarget:
        pod_name = pool.pod_name(ordinal)
        service = self.workload.service_name
        host = (
            f"{pod_name}.{service}.{self.workload.namespace}.svc"
            if service
            else pod_name
        )
        return ReplicaTarget(
            workload=self.workload.key,
            ordinal=ordinal,
            pool=pool.name,
            pod_name=pod_name,
            host=host,
        )

    async def _invoke(
        self, step: ScaleStep, call, tolerate_timeout: bool = False
    ) -> bool:
        """Call the trait; False when it timed out and `tolerate_timeout` is set."""
        target = self.target_for(step.pool, step.ordinal)
        direction = "scale-down" if step.kind == StepKind.SCALE_DOWN else "scale-up"
        try:
            await asyncio.wait_for(call(target), timeout=self.settings.trait_timeout)
        except asyncio.TimeoutError as e:
            if tolerate_timeout:
                logger.warning(
                    f"{self.workload.key}: {self.trait.name} {direction} trait gave "
                    f"no answer for ordinal {step.ordinal} within "
                    f"{self.settings.trait_timeout}s; waiting for the pod to leave service"
                )
                return False
            raise TraitInvocationError(
                direction,
                step.ordinal,
                f"no answer within {self.settings.trait_timeout}s",
            ) from e
        logger.info(
            f"{self.workload.key}: {self.trait.name} {direction} trait accepted "
            f"ordinal {step.ordinal}"
        )
        return True

    async def _fetch_pool(self, name: str) -> PoolObservation:
        for pool in await self.connector.list_pools(self.workload.key):
            if pool.name == name:
                return pool
        raise NotFoundError("StatefulSet", f"{self.workload.namespace}/{name}")

    async def _set_replicas(self, pool: PoolObservation, replicas: int) -> None:
        manifest = copy.deepcopy(pool.manifest)
        manifest.setdefault("spec", {})["replicas"] = replicas
        logger.info(
            f"{self.workload.key}: pool {pool.name} replicas "
            f"{pool.ordinal_count} -> {replicas}"
        )
        await self.connector.replace_pool(
            self.workload.key, manifest, pool.resource_version
        )
