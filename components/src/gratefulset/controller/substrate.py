# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from gratefulset.controller.models import (
    GratefulSetStatus,
    LedgerDocument,
    LogicalWorkload,
    PoolObservation,
    WorkloadKey,
)


class SubstrateConnector(ABC):
    """Everything the controller reads from and writes to the orchestrator.

    Writes that carry a `resource_version` are compare-and-swap: a stale
    version raises ConflictError. Transport failures raise
    TransientSubstrateError.
    """

    @abstractmethod
    async def list_workloads(self) -> list[WorkloadKey]:
        """List the keys of every GratefulSet in scope"""
        pass

    @abstractmethod
    async def get_workload(self, key: WorkloadKey) -> Optional[LogicalWorkload]:
        """Fetch and parse a GratefulSet, None if it no longer exists"""
        pass

    @abstractmethod
    async def list_pools(self, key: WorkloadKey) -> list[PoolObservation]:
        """List the pools (StatefulSets and their pods) owned by a GratefulSet"""
        pass

    @abstractmethod
    async def create_pool(self, key: WorkloadKey, manifest: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def replace_pool(
        self, key: WorkloadKey, manifest: dict[str, Any], resource_version: str
    ) -> None:
        pass

    @abstractmethod
    async def delete_pool(
        self, key: WorkloadKey, name: str, resource_version: Optional[str]
    ) -> None:
        pass

    @abstractmethod
    async def delete_pod(self, key: WorkloadKey, name: str, uid: Optional[str]) -> None:
        """Delete one pod, only if it still has `uid`"""
        pass

    @abstractmethod
    async def read_ledger(self, key: WorkloadKey) -> Optional[LedgerDocument]:
        pass

    @abstractmethod
    async def create_ledger(
        self, key: WorkloadKey, document: LedgerDocument, owner_uid: Optional[str]
    ) -> LedgerDocument:
        pass

    @abstractmethod
    async def write_ledger(
        self, key: WorkloadKey, document: LedgerDocument
    ) -> LedgerDocument:
        """Replace the ledger, conditional on `document.resource_version`"""
        pass

    @abstractmethod
    async def update_status(self, key: WorkloadKey, status: GratefulSetStatus) -> None:
        pass

    @abstractmethod
    async def watch(self, notify: Callable[[WorkloadKey], None]) -> None:
        """Call `notify` for every change touching a GratefulSet; runs until cancelled"""
        pass
