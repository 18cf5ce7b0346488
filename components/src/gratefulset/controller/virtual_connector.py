# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""In-memory substrate for dry runs and tests.

Holds GratefulSets, pool StatefulSets, pods and ledgers, with the same
optimistic-concurrency rules as the API server. `settle()` plays the part of
the StatefulSet controller and of the admission gate: it deletes pods above
a pool's replica count, creates missing pods, and lets a pod become ready
only if the ledger permits its logical ordinal at the moment it starts.
"""

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from gratefulset.controller.defaults import (
    FINGERPRINT_ANNOTATION,
    ORDINAL_BASE_ANNOTATION,
    POOL_ID_ANNOTATION,
    TEMPLATE_HASH_ANNOTATION,
    TRANSITION_REPLICAS_ANNOTATION,
)
from gratefulset.controller.lock_ledger import decode_ledger, encode_ledger
from gratefulset.controller.models import (
    GratefulSetStatus,
    LedgerDocument,
    LogicalWorkload,
    PodObservation,
    PoolObservation,
    ReplicaTarget,
    WorkloadKey,
    utc_now,
)
from gratefulset.controller.substrate import SubstrateConnector
from gratefulset.controller.traits import ScaleTrait
from gratefulset.controller.utils.exceptions import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class VirtualPod:
    name: str
    local_ordinal: int
    template_hash: str
    uid: str = field(default_factory=lambda: str(uuid.uuid4()))
    ready: bool = False
    admission_denied: bool = False
    last_exit_at: Optional[datetime] = None
    # Ledger decision seen by the gate when this pod last started
    admitted: bool = False

    def observe(self) -> PodObservation:
        return PodObservation(
            name=self.name,
            local_ordinal=self.local_ordinal,
            uid=self.uid,
            ready=self.ready,
            admission_denied=self.admission_denied,
            last_exit_at=self.last_exit_at,
        )


@dataclass
class VirtualPool:
    manifest: dict[str, Any]
    resource_version: str
    pods: dict[int, VirtualPod] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.manifest["metadata"]["name"]

    @property
    def annotations(self) -> dict[str, str]:
        return self.manifest["metadata"].get("annotations") or {}

    @property
    def replicas(self) -> int:
        value = self.manifest.get("spec", {}).get("replicas")
        return 1 if value is None else int(value)

    @property
    def ordinal_base(self) -> int:
        return int(self.annotations.get(ORDINAL_BASE_ANNOTATION, 0))


class VirtualConnector(SubstrateConnector):
    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self.workloads: dict[WorkloadKey, dict[str, Any]] = {}
        self.pools: dict[WorkloadKey, dict[str, VirtualPool]] = {}
        self.ledgers: dict[WorkloadKey, tuple[dict[str, str], dict[str, str], str]] = {}
        self.statuses: dict[WorkloadKey, GratefulSetStatus] = {}
        # Pods that will not turn ready even when admitted, by pod name
        self.unready: set[str] = set()
        # operation name -> exceptions raised by the next calls, in order
        self.failures: dict[str, list[Exception]] = {}
        # Every mutating call, as (operation, detail), for assertions
        self.journal: list[tuple[str, str]] = []
        self._version = 0
        self._listeners: list[Callable[[WorkloadKey], None]] = []

    # Test and simulation helpers

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _notify(self, key: WorkloadKey) -> None:
        for listener in self._listeners:
            listener(key)

    def _maybe_fail(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def inject_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([error] * times)

    def apply_workload(self, obj: dict[str, Any]) -> WorkloadKey:
        """Create or update a GratefulSet, bumping its generation like the API would."""
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        key = WorkloadKey(namespace=metadata["namespace"], name=metadata["name"])
        previous = self.workloads.get(key)
        if previous is None:
            metadata.setdefault("uid", str(uuid.uuid4()))
            metadata["generation"] = 1
        else:
            metadata["uid"] = previous["metadata"].get("uid")
            metadata["generation"] = previous["metadata"].get("generation", 1) + 1
        self.workloads[key] = obj
        self._notify(key)
        return key

    def set_replicas(self, key: WorkloadKey, replicas: int) -> None:
        obj = copy.deepcopy(self.workloads[key])
        obj["spec"]["stsSpec"]["replicas"] = replicas
        self.apply_workload(obj)

    def delete_workload(self, key: WorkloadKey) -> None:
        self.workloads.pop(key, None)
        self.pools.pop(key, None)
        self.ledgers.pop(key, None)
        self.statuses.pop(key, None)
        self._notify(key)

    def ledger_data(self, key: WorkloadKey) -> dict[str, str]:
        return dict(self.ledgers[key][0]) if key in self.ledgers else {}

    def pool_replicas(self, key: WorkloadKey) -> dict[str, int]:
        return {name: pool.replicas for name, pool in self.pools.get(key, {}).items()}

    def exit_app(self, key: WorkloadKey, pool_name: str, local_ordinal: int) -> None:
        """The application container exits and the kubelet restarts it in place."""
        pod = self.pools[key][pool_name].pods[local_ordinal]
        pod.last_exit_at = self.clock()
        pod.ready = pod.admitted and pod.name not in self.unready
        self._notify(key)

    def shrink_pool_externally(self, key: WorkloadKey, pool_name: str, replicas: int) -> None:
        """Someone other than the controller edits a pool's replica count."""
        pool = self.pools[key][pool_name]
        pool.manifest["spec"]["replicas"] = replicas
        pool.resource_version = self._next_version()
        self._notify(key)

    def _permitted(self, key: WorkloadKey, ordinal: int) -> bool:
        stored = self.ledgers.get(key)
        if stored is None:
            return False
        return decode_ledger(stored[0], stored[1], stored[2]).is_permitted(ordinal)

    def _start_pod(self, key: WorkloadKey, pool: VirtualPool, pod: VirtualPod) -> None:
        pod.admitted = self._permitted(key, pool.ordinal_base + pod.local_ordinal)
        pod.admission_denied = not pod.admitted
        pod.ready = pod.admitted and pod.name not in self.unready
        pod.last_exit_at = None

    def settle(self) -> None:
        """Run the StatefulSet controller and the admission gates to a fixed point."""
        for key, pools in self.pools.items():
            changed = False
            for pool in pools.values():
                desired_hash = pool.annotations.get(TEMPLATE_HASH_ANNOTATION, "")
                for k in [k for k in pool.pods if k >= pool.replicas]:
                    del pool.pods[k]
                    changed = True
                for k in range(pool.replicas):
                    pod = pool.pods.get(k)
                    if pod is None or pod.template_hash != desired_hash:
                        pod = VirtualPod(
                            name=f"{pool.name}-{k}",
                            local_ordinal=k,
                            template_hash=desired_hash,
                        )
                        pool.pods[k] = pod
                        self._start_pod(key, pool, pod)
                        changed = True
                    elif pod.admission_denied:
                        # The gate crash-loops until the lock is granted.
                        self._start_pod(key, pool, pod)
                        changed = changed or pod.admitted
                    elif pod.admitted and not pod.ready and pod.name not in self.unready:
                        pod.ready = True
                        changed = True
            if changed:
                self._notify(key)

    async def simulate(self, interval: float) -> None:
        """Settle forever; used by the virtual environment."""
        while True:
            self.settle()
            await asyncio.sleep(interval)

    # SubstrateConnector

    async def list_workloads(self) -> list[WorkloadKey]:
        return list(self.workloads)

    async def get_workload(self, key: WorkloadKey) -> Optional[LogicalWorkload]:
        self._maybe_fail("get_workload")
        obj = self.workloads.get(key)
        return LogicalWorkload.from_object(obj) if obj is not None else None

    async def list_pools(self, key: WorkloadKey) -> list[PoolObservation]:
        self._maybe_fail("list_pools")
        observed = []
        for pool in self.pools.get(key, {}).values():
            annotations = pool.annotations
            transition = annotations.get(TRANSITION_REPLICAS_ANNOTATION)
            observed.append(
                PoolObservation(
                    name=pool.name,
                    pool_id=int(annotations[POOL_ID_ANNOTATION]),
                    ordinal_base=pool.ordinal_base,
                    ordinal_count=pool.replicas,
                    fingerprint=annotations.get(FINGERPRINT_ANNOTATION, ""),
                    template_hash=annotations.get(TEMPLATE_HASH_ANNOTATION, ""),
                    transition_replicas=int(transition) if transition else None,
                    resource_version=pool.resource_version,
                    rollout_complete=all(
                        p.template_hash == annotations.get(TEMPLATE_HASH_ANNOTATION, "")
                        for p in pool.pods.values()
                    ),
                    pods={k: p.observe() for k, p in pool.pods.items()},
                    manifest=copy.deepcopy(pool.manifest),
                )
            )
        return observed

    async def create_pool(self, key: WorkloadKey, manifest: dict[str, Any]) -> None:
        self._maybe_fail("create_pool")
        pools = self.pools.setdefault(key, {})
        name = manifest["metadata"]["name"]
        if name in pools:
            raise ConflictError("StatefulSet", name)
        pools[name] = VirtualPool(
            manifest=copy.deepcopy(manifest), resource_version=self._next_version()
        )
        self.journal.append(("create_pool", name))
        self._notify(key)

    async def replace_pool(
        self, key: WorkloadKey, manifest: dict[str, Any], resource_version: str
    ) -> None:
        self._maybe_fail("replace_pool")
        name = manifest["metadata"]["name"]
        pool = self.pools.get(key, {}).get(name)
        if pool is None:
            raise NotFoundError("StatefulSet", name)
        if pool.resource_version != resource_version:
            raise ConflictError("StatefulSet", name)
        old_replicas = pool.replicas
        pool.manifest = copy.deepcopy(manifest)
        pool.resource_version = self._next_version()
        self.journal.append(("replace_pool", f"{name} {old_replicas}->{pool.replicas}"))
        self._notify(key)

    async def delete_pool(
        self, key: WorkloadKey, name: str, resource_version: Optional[str]
    ) -> None:
        self._maybe_fail("delete_pool")
        pool = self.pools.get(key, {}).get(name)
        if pool is None:
            return
        if resource_version is not None and pool.resource_version != resource_version:
            raise ConflictError("StatefulSet", name)
        del self.pools[key][name]
        self.journal.append(("delete_pool", name))
        self._notify(key)

    async def delete_pod(self, key: WorkloadKey, name: str, uid: Optional[str]) -> None:
        self._maybe_fail("delete_pod")
        for pool in self.pools.get(key, {}).values():
            for k, pod in list(pool.pods.items()):
                if pod.name != name:
                    continue
                if uid is not None and pod.uid != uid:
                    raise ConflictError("Pod", name)
                del pool.pods[k]
                self.journal.append(("delete_pod", name))
                self._notify(key)
                return

    async def read_ledger(self, key: WorkloadKey) -> Optional[LedgerDocument]:
        self._maybe_fail("read_ledger")
        stored = self.ledgers.get(key)
        if stored is None:
            return None
        return decode_ledger(*stored)

    async def create_ledger(
        self, key: WorkloadKey, document: LedgerDocument, owner_uid: Optional[str]
    ) -> LedgerDocument:
        self._maybe_fail("create_ledger")
        if key in self.ledgers:
            raise ConflictError("ConfigMap", key.ledger_name)
        data, annotations = encode_ledger(document)
        self.ledgers[key] = (data, annotations, self._next_version())
        self.journal.append(("create_ledger", key.ledger_name))
        self._notify(key)
        return decode_ledger(*self.ledgers[key])

    async def write_ledger(
        self, key: WorkloadKey, document: LedgerDocument
    ) -> LedgerDocument:
        self._maybe_fail("write_ledger")
        stored = self.ledgers.get(key)
        if stored is None:
            raise NotFoundError("ConfigMap", key.ledger_name)
        if stored[2] != document.resource_version:
            raise ConflictError("ConfigMap", key.ledger_name)
        data, annotations = encode_ledger(document)
        self.ledgers[key] = (data, annotations, self._next_version())
        self.journal.append(("write_ledger", ",".join(f"{k}={v}" for k, v in data.items())))
        self._notify(key)
        return decode_ledger(*self.ledgers[key])

    async def update_status(self, key: WorkloadKey, status: GratefulSetStatus) -> None:
        if key not in self.workloads:
            raise NotFoundError("GratefulSet", str(key))
        self.statuses[key] = status

    async def watch(self, notify: Callable[[WorkloadKey], None]) -> None:
        self._listeners.append(notify)
        try:
            await asyncio.Event().wait()
        finally:
            self._listeners.remove(notify)


class VirtualScaleTrait(ScaleTrait):
    """Stands in for an application that exits once asked to release an ordinal."""

    name = "virtual"

    def __init__(self, connector: VirtualConnector):
        self.connector = connector
        self.scaled_up: list[int] = []
        self.scaled_down: list[int] = []

    async def scale_up(self, target: ReplicaTarget) -> None:
        self.scaled_up.append(target.ordinal)

    async def scale_down(self, target: ReplicaTarget) -> None:
        self.scaled_down.append(target.ordinal)
        pool = self.connector.pools.get(target.workload, {}).get(target.pool)
        if pool is None:
            return
        for k, pod in pool.pods.items():
            if pod.name == target.pod_name:
                self.connector.exit_app(target.workload, target.pool, k)
                return
