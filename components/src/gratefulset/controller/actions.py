# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""What a single reconcile pass decided to do.

Each pass plans exactly one action from an observed snapshot. A ScaleStep is
one state of the scale-down or scale-up sequence for a single ordinal; the
ScaleCoordinator knows how to advance it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from gratefulset.controller.models import (
    PoolObservation,
    StepKind,
    StepState,
    StepStatus,
)


@dataclass(frozen=True)
class ScaleStep:
    kind: StepKind
    state: StepState
    pool: PoolObservation
    ordinal: int
    since: Optional[datetime] = None

    def describe(self) -> str:
        return f"{self.kind.value} ordinal {self.ordinal} of {self.pool.name}: {self.state.value}"

    def to_status(self, now: datetime, message: str = "") -> StepStatus:
        elapsed = (now - self.since).total_seconds() if self.since else None
        return StepStatus(
            kind=self.kind,
            ordinal=self.ordinal,
            pool=self.pool.name,
            state=self.state,
            since=self.since,
            elapsed_seconds=elapsed,
            message=message,
        )


@dataclass(frozen=True)
class Action:
    def describe(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class CreateLedger(Action):
    pass


@dataclass(frozen=True)
class CreatePool(Action):
    name: str
    manifest: dict[str, Any] = field(hash=False, compare=False)
    reason: str = ""

    def describe(self) -> str:
        return f"create pool {self.name} ({self.reason})"


@dataclass(frozen=True)
class UpdatePoolTemplate(Action):
    pool: PoolObservation = field(hash=False)
    manifest: dict[str, Any] = field(hash=False, compare=False)

    def describe(self) -> str:
        return f"roll pool {self.pool.name} to the current template"


@dataclass(frozen=True)
class DeletePool(Action):
    pool: PoolObservation = field(hash=False)

    def describe(self) -> str:
        return f"delete retired pool {self.pool.name}"


@dataclass(frozen=True)
class PruneLedger(Action):
    ordinals: tuple[int, ...]

    def describe(self) -> str:
        return f"prune ledger entries {list(self.ordinals)}"


@dataclass(frozen=True)
class AdvanceStep(Action):
    step: ScaleStep = field(hash=False)

    def describe(self) -> str:
        return self.step.describe()


@dataclass(frozen=True)
class Wait(Action):
    reason: str
    delay: float

    def describe(self) -> str:
        return f"wait: {self.reason}"


@dataclass(frozen=True)
class NoOp(Action):
    reason: str = "converged"

    def describe(self) -> str:
        return f"no-op: {self.reason}"
