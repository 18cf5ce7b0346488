# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Scale traits: how the application is told an ordinal joins or leaves.

A trait returns once the application has accepted the request and raises
TraitInvocationError otherwise. Traits may be invoked more than once for the
same target (a pass can be interrupted between the call and the ledger
record), so implementations must be idempotent.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from gratefulset.controller.models import (
    ReplicaTarget,
    ScaleTraits,
    TraitConfig,
    TraitType,
)
from gratefulset.controller.utils.exceptions import TraitInvocationError

logger = logging.getLogger(__name__)


class ScaleTrait(ABC):
    name = "abstract"

    @abstractmethod
    async def scale_up(self, target: ReplicaTarget) -> None:
        """Announce that `target` is ready and admitted"""
        pass

    @abstractmethod
    async def scale_down(self, target: ReplicaTarget) -> None:
        """Ask the application to release `target`"""
        pass


class NoopScaleTrait(ScaleTrait):
    name = "noop"

    async def scale_up(self, target: ReplicaTarget) -> None:
        logger.debug(f"noop scale-up for {target.workload} ordinal {target.ordinal}")

    async def scale_down(self, target: ReplicaTarget) -> None:
        logger.debug(
            f"noop scale-down for {target.workload} ordinal {target.ordinal}"
        )


class HttpScaleTrait(ScaleTrait):
    """Calls an endpoint on the target pod itself.

    A direction configured as `noop` is accepted without a request.
    """

    name = "http"

    def __init__(
        self,
        scale_up_config: Optional[TraitConfig] = None,
        scale_down_config: Optional[TraitConfig] = None,
        default_timeout: float = 30.0,
    ):
        self.scale_up_config = scale_up_config
        self.scale_down_config = scale_down_config
        self.default_timeout = default_timeout

    def url_for(self, config: TraitConfig, target: ReplicaTarget) -> str:
        path = config.path if config.path.startswith("/") else f"/{config.path}"
        port = f":{config.port}" if config.port else ""
        return f"{config.scheme}://{target.host}{port}{path}"

    async def scale_up(self, target: ReplicaTarget) -> None:
        await self._call("scale-up", self.scale_up_config, target)

    async def scale_down(self, target: ReplicaTarget) -> None:
        await self._call("scale-down", self.scale_down_config, target)

    async def _call(
        self, direction: str, config: Optional[TraitConfig], target: ReplicaTarget
    ) -> None:
        if config is None or config.type == TraitType.NOOP:
            return
        url = self.url_for(config, target)
        timeout = config.timeout_seconds or self.default_timeout
        payload = {
            "namespace": target.workload.namespace,
            "name": target.workload.name,
            "ordinal": target.ordinal,
            "pod": target.pod_name,
        }
        logger.info(f"Invoking {direction} trait {config.method} {url}")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    config.method,
                    url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=timeout),
                ) as response:
                    status = response.status
                    body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TraitInvocationError(
                direction, target.ordinal, f"{type(e).__name__}: {e}"
            ) from e

        if 200 <= status < 300 or status in config.accept_statuses:
            return
        raise TraitInvocationError(
            direction, target.ordinal, f"{url} answered {status}: {body[:200]}"
        )


SCALE_TRAITS: dict[TraitType, type[ScaleTrait]] = {
    TraitType.NOOP: NoopScaleTrait,
    TraitType.HTTP: HttpScaleTrait,
}


def build_scale_trait(traits: ScaleTraits, default_timeout: float = 30.0) -> ScaleTrait:
    """Pick the trait implementation for a workload's `traits` config."""
    types = {traits.scale_up.type, traits.scale_down.type}
    if types == {TraitType.NOOP}:
        return SCALE_TRAITS[TraitType.NOOP]()
    unknown = types - set(SCALE_TRAITS)
    if unknown:
        raise ValueError(f"Unsupported scale trait types: {sorted(unknown)}")
    return SCALE_TRAITS[TraitType.HTTP](
        scale_up_config=traits.scale_up,
        scale_down_config=traits.scale_down,
        default_timeout=default_timeout,
    )
