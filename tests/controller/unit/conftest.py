# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures: an in-memory cluster, a deterministic clock and a reconciler."""

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from gratefulset.controller.reconciler import Reconciler, ReconcilerSettings
from gratefulset.controller.status import ControllerMetrics
from gratefulset.controller.virtual_connector import VirtualConnector, VirtualScaleTrait

CONVERGED = "no-op: converged"


class TickingClock:
    """Every reading is one second after the previous one."""

    def __init__(self, start=datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def gratefulset_manifest(
    name="db", replicas=3, image="db:1", service="db", namespace="storage"
):
    return {
        "apiVersion": "pikach.us/v1",
        "kind": "GratefulSet",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "stsSpec": {
                "replicas": replicas,
                "serviceName": service,
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {"containers": [{"name": name, "image": image}]},
                },
            }
        },
    }


async def converge(reconciler, connector, key, max_passes=200, check=None):
    """Alternate cluster settling and reconcile passes until nothing is left to do."""
    actions = []
    for _ in range(max_passes):
        connector.settle()
        if check is not None:
            check()
        result = await reconciler.reconcile(key)
        actions.append(result.action)
        if result.action == CONVERGED:
            return actions
    raise AssertionError(f"{key} did not converge; last actions: {actions[-10:]}")


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def connector(clock):
    return VirtualConnector(clock=clock)


@pytest.fixture
def trait(connector):
    return VirtualScaleTrait(connector)


@pytest.fixture
def settings():
    # A zero settle timeout makes every wait a single check.
    return ReconcilerSettings(
        gate_image="registry.local/gratefulset:test",
        poll_interval=0.01,
        settle_timeout=0.0,
        trait_timeout=1.0,
        ledger_retries=3,
        stuck_after=600.0,
    )


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return ControllerMetrics(registry=registry)


@pytest.fixture
def reconciler(connector, settings, trait, metrics, clock):
    return Reconciler(
        connector, settings, trait_factory=lambda _: trait, metrics=metrics, clock=clock
    )
