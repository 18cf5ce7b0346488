# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Exception hierarchy for the GratefulSet controller.

The work queue decides how to requeue a key from the exception type alone:

    GratefulSetError
    ├── TransientSubstrateError   retry with backoff
    ├── ConflictError             re-read and recompute immediately
    ├── NotFoundError             object vanished; next event re-drives the key
    ├── TraitInvocationError      retry the same state-machine step with backoff
    ├── InvariantViolation        stop acting on the key until state changes
    └── WorkloadSpecError         the GratefulSet spec cannot be parsed
"""

from typing import Optional


class GratefulSetError(Exception):
    """Base class for all controller errors."""

    pass


class TransientSubstrateError(GratefulSetError):
    """The Kubernetes API was unreachable, timed out or answered 5xx/429."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed transiently: {reason}")


class ConflictError(GratefulSetError):
    """An optimistic-concurrency write lost against a newer resourceVersion."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name} was modified concurrently")


class NotFoundError(GratefulSetError):
    """The object addressed by a read or write does not exist."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name} not found")


class TraitInvocationError(GratefulSetError):
    """A scale-up or scale-down trait call failed or timed out."""

    def __init__(self, trait: str, ordinal: int, reason: str):
        self.trait = trait
        self.ordinal = ordinal
        self.reason = reason
        super().__init__(f"{trait} trait for ordinal {ordinal} failed: {reason}")


class InvariantViolation(GratefulSetError):
    """Observed pools and ledger contradict the data-model invariants.

    Acting on such a state could delete data, so the reconciler reports it and
    waits for an operator.
    """

    def __init__(self, message: str, ordinal: Optional[int] = None):
        self.ordinal = ordinal
        super().__init__(message)


class WorkloadSpecError(GratefulSetError):
    """The GratefulSet spec is missing required fields or is malformed."""

    def __init__(self, key: str, errors: list[str]):
        self.key = key
        self.errors = errors
        super().__init__(f"Invalid GratefulSet {key}: " + "; ".join(errors))
