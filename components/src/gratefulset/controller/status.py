# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

from gratefulset.controller.models import (
    Condition,
    GratefulSetStatus,
    LogicalWorkload,
    PoolStatus,
    StepStatus,
    WorkloadKey,
)
from gratefulset.controller.pool_model import PoolSet

logger = logging.getLogger(__name__)


def build_status(
    workload: LogicalWorkload,
    pools: Optional[PoolSet],
    step: Optional[StepStatus] = None,
    progressing: bool = False,
    violation: Optional[str] = None,
    error: Optional[str] = None,
    stuck_after: float = 600.0,
) -> GratefulSetStatus:
    """Status subresource content for one pass."""
    pool_statuses = []
    if pools is not None:
        for pool in pools.pools:
            pool_statuses.append(
                PoolStatus(
                    name=pool.name,
                    pool_id=pool.pool_id,
                    ordinal_base=pool.ordinal_base,
                    replicas=pool.ordinal_count,
                    ready_replicas=pool.ready_count,
                    role=pools.role(pool).value,
                )
            )

    conditions = []
    if violation is not None:
        conditions.append(
            Condition(
                type="InvariantViolated",
                status="True",
                reason="InvariantViolation",
                message=violation,
            )
        )
    else:
        conditions.append(
            Condition(type="InvariantViolated", status="False", reason="Consistent")
        )

    if progressing or step is not None:
        message = step.message if step is not None and step.message else ""
        if error:
            message = error
        conditions.append(
            Condition(
                type="Progressing",
                status="True",
                reason=step.state.value if step is not None else "Reconciling",
                message=message,
            )
        )
    else:
        conditions.append(
            Condition(
                type="Progressing",
                status="False",
                reason="Blocked" if violation else "Converged",
            )
        )

    stalled = (
        step is not None
        and step.elapsed_seconds is not None
        and step.elapsed_seconds > stuck_after
    )
    conditions.append(
        Condition(
            type="Stalled",
            status="True" if stalled else "False",
            reason="StepTimeout" if stalled else "",
            message=(
                f"{step.kind.value} of ordinal {step.ordinal} has been in "
                f"{step.state.value} for {step.elapsed_seconds:.0f}s"
                if stalled
                else ""
            ),
        )
    )

    return GratefulSetStatus(
        replicas=pools.total if pools is not None else 0,
        ready_replicas=pools.ready_total if pools is not None else 0,
        desired_replicas=workload.replicas,
        observed_generation=workload.generation,
        pools=pool_statuses,
        current_step=step,
        conditions=conditions,
    )


class ControllerMetrics:
    """Container for all GratefulSet controller Prometheus metrics."""

    def __init__(
        self, prefix: str = "gratefulset", registry: CollectorRegistry = REGISTRY
    ):
        labels = ["namespace", "name"]
        self.desired_replicas = Gauge(
            f"{prefix}:desired_replicas",
            "Replicas requested by the GratefulSet spec",
            labels,
            registry=registry,
        )
        self.replicas = Gauge(
            f"{prefix}:replicas",
            "Ordinals held across all pools",
            labels,
            registry=registry,
        )
        self.ready_replicas = Gauge(
            f"{prefix}:ready_replicas",
            "Ready pods across all pools",
            labels,
            registry=registry,
        )
        self.pools = Gauge(
            f"{prefix}:pools", "Number of pools backing the workload", labels, registry=registry
        )
        self.step_elapsed_seconds = Gauge(
            f"{prefix}:step_elapsed_seconds",
            "Time spent in the current scale step",
            labels,
            registry=registry,
        )
        self.reconcile_total = Counter(
            f"{prefix}:reconcile_total",
            "Reconcile passes by outcome",
            labels + ["outcome"],
            registry=registry,
        )

    def observe_status(self, key: WorkloadKey, status: GratefulSetStatus) -> None:
        labels = (key.namespace, key.name)
        self.desired_replicas.labels(*labels).set(status.desired_replicas)
        self.replicas.labels(*labels).set(status.replicas)
        self.ready_replicas.labels(*labels).set(status.ready_replicas)
        self.pools.labels(*labels).set(len(status.pools))
        elapsed = 0.0
        if status.current_step is not None and status.current_step.elapsed_seconds:
            elapsed = status.current_step.elapsed_seconds
        self.step_elapsed_seconds.labels(*labels).set(elapsed)

    def observe_outcome(self, key: WorkloadKey, outcome: str) -> None:
        self.reconcile_total.labels(key.namespace, key.name, outcome).inc()

    def forget(self, key: WorkloadKey) -> None:
        """Drop the series of a deleted workload."""
        for gauge in (
            self.desired_replicas,
            self.replicas,
            self.ready_replicas,
            self.pools,
            self.step_elapsed_seconds,
        ):
            try:
                gauge.remove(key.namespace, key.name)
            except KeyError:
                pass
