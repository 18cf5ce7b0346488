# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Data structures shared by the reconciler, the coordinators and the connectors."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from gratefulset.controller.defaults import LEDGER_SUFFIX
from gratefulset.controller.utils.exceptions import WorkloadSpecError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TraitType(str, Enum):
    """Scale trait implementations selectable from a GratefulSet spec"""

    NOOP = "noop"
    HTTP = "http"


class TraitConfig(CamelModel):
    type: TraitType = TraitType.NOOP

    # HTTP trait options
    port: Optional[int] = None
    path: str = "/"
    method: str = "POST"
    scheme: str = "http"
    timeout_seconds: Optional[float] = None
    # Extra response codes treated as "accepted" (e.g. 404 once the endpoint is gone)
    accept_statuses: list[int] = Field(default_factory=list)


class ScaleTraits(CamelModel):
    scale_up: TraitConfig = Field(default_factory=TraitConfig)
    scale_down: TraitConfig = Field(default_factory=TraitConfig)


class WorkloadKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "WorkloadKey":
        namespace, _, name = key.partition("/")
        if not namespace or not name:
            raise ValueError(f"Workload key must be '<namespace>/<name>', got {key!r}")
        return cls(namespace=namespace, name=name)

    @property
    def ledger_name(self) -> str:
        return f"{self.name}{LEDGER_SUFFIX}"


class GratefulSetSpec(CamelModel):
    sts_spec: dict[str, Any]
    traits: ScaleTraits = Field(default_factory=ScaleTraits)


class LogicalWorkload(BaseModel):
    """Desired state of one GratefulSet, immutable for the duration of a pass."""

    namespace: str
    name: str
    uid: Optional[str] = None
    generation: int = 0
    sts_spec: dict[str, Any]
    traits: ScaleTraits = Field(default_factory=ScaleTraits)

    @property
    def key(self) -> WorkloadKey:
        return WorkloadKey(namespace=self.namespace, name=self.name)

    @property
    def replicas(self) -> int:
        # StatefulSet semantics: an unset replica count means one.
        value = self.sts_spec.get("replicas")
        return 1 if value is None else int(value)

    @property
    def service_name(self) -> Optional[str]:
        return self.sts_spec.get("serviceName")

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "LogicalWorkload":
        """Build from a GratefulSet custom object as returned by the API."""
        metadata = obj.get("metadata") or {}
        key = f"{metadata.get('namespace')}/{metadata.get('name')}"
        errors = []
        if not metadata.get("name") or not metadata.get("namespace"):
            errors.append("metadata.name and metadata.namespace are required")
        try:
            spec = GratefulSetSpec.model_validate(obj.get("spec") or {})
        except ValidationError as e:
            errors.extend(
                f"spec.{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            spec = None
        if spec is not None:
            replicas = spec.sts_spec.get("replicas")
            if replicas is not None and (not isinstance(replicas, int) or replicas < 0):
                errors.append("spec.stsSpec.replicas must be a non-negative integer")
            if not (spec.sts_spec.get("template") or {}).get("spec"):
                errors.append("spec.stsSpec.template.spec is required")
        if errors:
            raise WorkloadSpecError(key, errors)

        return cls(
            namespace=metadata["namespace"],
            name=metadata["name"],
            uid=metadata.get("uid"),
            generation=int(metadata.get("generation") or 0),
            sts_spec=spec.sts_spec,
            traits=spec.traits,
        )


class PodObservation(BaseModel):
    name: str
    local_ordinal: int
    uid: Optional[str] = None
    ready: bool = False
    terminating: bool = False
    # The admission gate exited with GATE_DENIED_EXIT_CODE on its last run
    admission_denied: bool = False
    # When the application container last terminated, if it ever did
    last_exit_at: Optional[datetime] = None


class PoolObservation(BaseModel):
    """One StatefulSet backing a GratefulSet, plus its pods."""

    name: str
    pool_id: int
    ordinal_base: int
    ordinal_count: int
    fingerprint: str
    template_hash: str = ""
    transition_replicas: Optional[int] = None
    resource_version: Optional[str] = None
    rollout_complete: bool = True
    pods: dict[int, PodObservation] = Field(default_factory=dict)
    manifest: dict[str, Any] = Field(default_factory=dict)

    @property
    def ordinal_end(self) -> int:
        return self.ordinal_base + self.ordinal_count

    @property
    def top_ordinal(self) -> Optional[int]:
        if self.ordinal_count == 0:
            return None
        return self.ordinal_end - 1

    @property
    def ready_count(self) -> int:
        return sum(
            1
            for k, p in self.pods.items()
            if k < self.ordinal_count and p.ready and not p.terminating
        )

    def owns(self, ordinal: int) -> bool:
        return self.ordinal_base <= ordinal < self.ordinal_end

    def pod_for(self, ordinal: int) -> Optional[PodObservation]:
        return self.pods.get(ordinal - self.ordinal_base)

    def pod_name(self, ordinal: int) -> str:
        return f"{self.name}-{ordinal - self.ordinal_base}"


class LedgerRecord(CamelModel):
    """Bookkeeping for one ordinal, stored next to the permits."""

    granted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    scale_down_invoked_at: Optional[datetime] = None
    scale_up_invoked_at: Optional[datetime] = None


class LedgerDocument(BaseModel):
    """Decoded lock ledger: ordinal -> permitted, plus per-ordinal records."""

    permits: dict[int, bool] = Field(default_factory=dict)
    records: dict[int, LedgerRecord] = Field(default_factory=dict)
    resource_version: Optional[str] = None

    def is_permitted(self, ordinal: int) -> bool:
        return self.permits.get(ordinal) is True

    def is_revoked(self, ordinal: int) -> bool:
        return self.permits.get(ordinal) is False

    def record(self, ordinal: int) -> LedgerRecord:
        return self.records.get(ordinal) or LedgerRecord()


class ObservedState(BaseModel):
    """Everything one reconcile pass is allowed to look at."""

    workload: LogicalWorkload
    pools: list[PoolObservation] = Field(default_factory=list)
    ledger: Optional[LedgerDocument] = None


class ReplicaTarget(BaseModel):
    """Context handed to a scale trait so it can act idempotently."""

    workload: WorkloadKey
    ordinal: int
    pool: str
    pod_name: str
    host: str


class StepKind(str, Enum):
    SCALE_DOWN = "ScaleDown"
    SCALE_UP = "ScaleUp"


class StepState(str, Enum):
    # scale-down
    INITIATED = "Initiated"
    LOCK_REVOKED = "LockRevoked"
    TRAIT_INVOKED = "TraitInvoked"
    AWAITING_SETTLE = "AwaitingSettle"
    # scale-up
    REPLICAS_INCREMENTED = "ReplicasIncremented"
    LOCK_GRANTED = "LockGranted"
    AWAITING_READY = "AwaitingReady"
    DONE = "Done"


class StepStatus(CamelModel):
    kind: StepKind
    ordinal: int
    pool: str
    state: StepState
    since: Optional[datetime] = None
    elapsed_seconds: Optional[float] = None
    message: str = ""


class PoolStatus(CamelModel):
    name: str
    pool_id: int
    ordinal_base: int
    replicas: int
    ready_replicas: int
    role: str


class Condition(CamelModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""


class GratefulSetStatus(CamelModel):
    replicas: int = 0
    ready_replicas: int = 0
    desired_replicas: int = 0
    observed_generation: int = 0
    pools: list[PoolStatus] = Field(default_factory=list)
    current_step: Optional[StepStatus] = None
    conditions: list[Condition] = Field(default_factory=list)

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
