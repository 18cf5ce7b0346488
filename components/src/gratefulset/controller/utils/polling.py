# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


async def poll_until(
    condition: Callable[[], Awaitable[Optional[T]]],
    timeout: float,
    interval: float,
) -> Optional[T]:
    """Await `condition` every `interval` seconds until it returns something truthy.

    Returns that value, or None once `timeout` has elapsed. The condition is
    always evaluated at least once, so a zero timeout is a single check.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, timeout)
    while True:
        result = await condition()
        if result:
            return result
        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(interval, remaining))
