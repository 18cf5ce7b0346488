# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Lock ledger: which ordinals may become ready.

The ledger lives in a ConfigMap named `<workload>-locks`. Its `data` maps a
stringified logical ordinal to "true" (permitted) or "false" (revoked, a
retirement is in flight); a missing key was never granted. Per-ordinal
timestamps live as JSON in the `gratefulset.pikach.us/records` annotation.

The admission gate in every pod reads the ledger at start-up only. The
controller is the sole writer, and every write is a compare-and-swap on the
ConfigMap's resourceVersion.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from gratefulset.controller.defaults import (
    LEDGER_PERMITTED,
    LEDGER_RECORDS_ANNOTATION,
    LEDGER_REVOKED,
)
from gratefulset.controller.models import (
    LedgerDocument,
    LedgerRecord,
    WorkloadKey,
    utc_now,
)
from gratefulset.controller.substrate import SubstrateConnector
from gratefulset.controller.utils.exceptions import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def encode_ledger(document: LedgerDocument) -> tuple[dict[str, str], dict[str, str]]:
    """Split a ledger into ConfigMap `data` and `metadata.annotations`."""
    data = {
        str(ordinal): LEDGER_PERMITTED if permitted else LEDGER_REVOKED
        for ordinal, permitted in sorted(document.permits.items())
    }
    records = {
        str(ordinal): record.model_dump(mode="json", by_alias=True, exclude_none=True)
        for ordinal, record in sorted(document.records.items())
    }
    records = {k: v for k, v in records.items() if v}
    annotations = {LEDGER_RECORDS_ANNOTATION: json.dumps(records, sort_keys=True)}
    return data, annotations


def decode_ledger(
    data: Optional[dict[str, str]],
    annotations: Optional[dict[str, str]],
    resource_version: Optional[str],
) -> LedgerDocument:
    """Inverse of encode_ledger. Keys that are not ordinals are ignored."""
    permits: dict[int, bool] = {}
    for key, value in (data or {}).items():
        if not key.isdigit():
            logger.warning(f"Ignoring non-ordinal ledger key {key!r}")
            continue
        permits[int(key)] = str(value).strip().lower() == LEDGER_PERMITTED

    records: dict[int, LedgerRecord] = {}
    raw_records = (annotations or {}).get(LEDGER_RECORDS_ANNOTATION)
    if raw_records:
        try:
            parsed: dict[str, Any] = json.loads(raw_records)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable ledger records: {e}")
            parsed = {}
        for key, value in parsed.items():
            if key.isdigit() and isinstance(value, dict):
                records[int(key)] = LedgerRecord.model_validate(value)

    return LedgerDocument(
        permits=permits, records=records, resource_version=resource_version
    )


# A mutation edits the document in place and returns False when it had
# nothing to do, which makes every ledger operation idempotent.
Mutation = Callable[[LedgerDocument], bool]


class LockLedger:
    def __init__(
        self,
        connector: SubstrateConnector,
        key: WorkloadKey,
        retries: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.connector = connector
        self.key = key
        self.retries = max(1, retries)
        self.clock = clock

    async def snapshot(self) -> LedgerDocument:
        document = await self.connector.read_ledger(self.key)
        if document is None:
            raise NotFoundError("ConfigMap", f"{self.key.namespace}/{self.key.ledger_name}")
        return document

    async def is_permitted(self, ordinal: int) -> bool:
        return (await self.snapshot()).is_permitted(ordinal)

    async def ensure(self, owner_uid: Optional[str] = None) -> LedgerDocument:
        """Create an empty ledger unless one exists already."""
        document = await self.connector.read_ledger(self.key)
        if document is not None:
            return document
        logger.info(f"Creating lock ledger {self.key.ledger_name} for {self.key}")
        return await self.connector.create_ledger(self.key, LedgerDocument(), owner_uid)

    async def grant(
        self, ordinal: int, current: Optional[LedgerDocument] = None
    ) -> LedgerDocument:
        def mutation(doc: LedgerDocument) -> bool:
            if doc.is_permitted(ordinal):
                return False
            doc.permits[ordinal] = True
            # A fresh admission starts a fresh record.
            doc.records[ordinal] = LedgerRecord(granted_at=self.clock())
            return True

        return await self._mutate(f"grant {ordinal}", mutation, current)

    async def revoke(
        self, ordinal: int, current: Optional[LedgerDocument] = None
    ) -> LedgerDocument:
        def mutation(doc: LedgerDocument) -> bool:
            if doc.is_revoked(ordinal):
                return False
            doc.permits[ordinal] = False
            record = doc.record(ordinal).model_copy()
            record.revoked_at = self.clock()
            record.scale_down_invoked_at = None
            doc.records[ordinal] = record
            return True

        return await self._mutate(f"revoke {ordinal}", mutation, current)

    async def clear(
        self, ordinal: int, current: Optional[LedgerDocument] = None
    ) -> LedgerDocument:
        """Forget an ordinal entirely, so it may be admitted afresh."""

        def mutation(doc: LedgerDocument) -> bool:
            if ordinal not in doc.permits and ordinal not in doc.records:
                return False
            doc.permits.pop(ordinal, None)
            doc.records.pop(ordinal, None)
            return True

        return await self._mutate(f"clear {ordinal}", mutation, current)

    async def mark_scale_down_invoked(
        self, ordinal: int, current: Optional[LedgerDocument] = None
    ) -> LedgerDocument:
        def mutation(doc: LedgerDocument) -> bool:
            # A re-grant raced us; the retirement is no longer in flight.
            if not doc.is_revoked(ordinal):
                return False
            record = doc.record(ordinal).model_copy()
            if record.scale_down_invoked_at is not None:
                return False
            record.scale_down_invoked_at = self.clock()
            doc.records[ordinal] = record
            return True

        return await self._mutate(f"record scale-down {ordinal}", mutation, current)

    async def mark_scale_up_invoked(
        self, ordinal: int, current: Optional[LedgerDocument] = None
    ) -> LedgerDocument:
        def mutation(doc: LedgerDocument) -> bool:
            if not doc.is_permitted(ordinal):
                return False
            record = doc.record(ordinal).model_copy()
            if record.scale_up_invoked_at is not None:
                return False
            record.scale_up_invoked_at = self.clock()
            doc.records[ordinal] = record
            return True

        return await self._mutate(f"record scale-up {ordinal}", mutation, current)

    async def prune(
        self, keep: Callable[[int], bool], current: Optional[LedgerDocument] = None
    ) -> LedgerDocument:
        """Drop revoked entries and records for ordinals `keep` rejects."""

        def mutation(doc: LedgerDocument) -> bool:
            stale = [
                o
                for o in set(doc.permits) | set(doc.records)
                if not keep(o) and not doc.is_permitted(o)
            ]
            for o in stale:
                doc.permits.pop(o, None)
                doc.records.pop(o, None)
            return bool(stale)

        return await self._mutate("prune", mutation, current)

    async def _mutate(
        self,
        description: str,
        mutation: Mutation,
        current: Optional[LedgerDocument],
    ) -> LedgerDocument:
        document = current if current is not None else await self.snapshot()
        for attempt in range(self.retries):
            updated = document.model_copy(deep=True)
            if not mutation(updated):
                return document
            try:
                written = await self.connector.write_ledger(self.key, updated)
                logger.info(f"Ledger {self.key}: {description}")
                return written
            except ConflictError:
                logger.info(
                    f"Ledger {self.key}: conflict on {description} "
                    f"(attempt {attempt + 1}/{self.retries}), re-reading"
                )
                document = await self.snapshot()
        raise ConflictError("ConfigMap", f"{self.key.namespace}/{self.key.ledger_name}")
