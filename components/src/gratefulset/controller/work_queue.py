# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Keyed work queue with per-key serialization and rate-limited requeues.

A key is queued at most once. A key handed to a worker is not handed out
again until the worker calls `done`; if it was re-added meanwhile it goes
back on the queue at that point, so an event is never lost and never
processed concurrently with itself.
"""

import asyncio
import logging
import random
from typing import Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class KeyedWorkQueue(Generic[K]):
    def __init__(
        self,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        jitter: float = 0.2,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter = jitter
        self._rand = rand
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._failures: dict[K, int] = {}
        self._timers: dict[K, tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    def __contains__(self, key: K) -> bool:
        return key in self._dirty

    @property
    def processing(self) -> frozenset:
        return frozenset(self._processing)

    def add(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)

    def add_after(self, key: K, delay: float) -> None:
        """Add `key` once `delay` seconds have passed; the earliest request wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing[0] <= when:
                return
            existing[1].cancel()
        handle = loop.call_at(when, self._fire, key)
        self._timers[key] = (when, handle)

    def add_rate_limited(self, key: K) -> float:
        """Requeue after a failure with exponential backoff; returns the delay used."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self.backoff_for(failures)
        self.add_after(key, delay)
        return delay

    def backoff_for(self, failures: int) -> float:
        delay = min(self.backoff_max, self.backoff_base * (2 ** (failures - 1)))
        jitter_range = delay * self.jitter
        delay += self._rand(-jitter_range, jitter_range)
        return max(0.0, min(delay, self.backoff_max))

    def failures(self, key: K) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: K) -> None:
        """Reset the failure count of `key` after a successful pass."""
        self._failures.pop(key, None)

    async def get(self) -> K:
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: K) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)
