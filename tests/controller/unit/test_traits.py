# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for scale trait selection and the HTTP trait."""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from gratefulset.controller.models import (
    ReplicaTarget,
    ScaleTraits,
    TraitConfig,
    TraitType,
    WorkloadKey,
)
from gratefulset.controller.traits import (
    HttpScaleTrait,
    NoopScaleTrait,
    build_scale_trait,
)
from gratefulset.controller.utils.exceptions import TraitInvocationError

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.controller,
]

TARGET = ReplicaTarget(
    workload=WorkloadKey(namespace="storage", name="db"),
    ordinal=4,
    pool="db-2",
    pod_name="db-2-1",
    host="db-2-1.db.storage.svc",
)


def mock_session(status=200, body="ok", error=None):
    """aiohttp.ClientSession stand-in answering every request with `status`."""
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body)

    request_ctx = MagicMock()
    request_ctx.__aenter__ = AsyncMock(return_value=response)
    request_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    if error is not None:
        session.request = MagicMock(side_effect=error)
    else:
        session.request = MagicMock(return_value=request_ctx)

    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    return session_ctx, session


def http_config(**overrides):
    return TraitConfig(type=TraitType.HTTP, port=8080, path="drain", **overrides)


def test_all_noop_traits_build_the_noop_trait():
    assert isinstance(build_scale_trait(ScaleTraits()), NoopScaleTrait)


def test_any_http_direction_builds_the_http_trait():
    traits = ScaleTraits(scale_down=http_config())
    trait = build_scale_trait(traits, default_timeout=7.0)

    assert isinstance(trait, HttpScaleTrait)
    assert trait.default_timeout == 7.0


def test_traits_parse_from_camel_case():
    traits = ScaleTraits.model_validate(
        {"scaleDown": {"type": "http", "port": 9000, "timeoutSeconds": 3, "acceptStatuses": [404]}}
    )
    assert traits.scale_down.port == 9000
    assert traits.scale_down.timeout_seconds == 3
    assert traits.scale_down.accept_statuses == [404]
    assert traits.scale_up.type == TraitType.NOOP


def test_url_targets_the_pod():
    trait = HttpScaleTrait(scale_down_config=http_config())
    assert trait.url_for(http_config(), TARGET) == "http://db-2-1.db.storage.svc:8080/drain"


@pytest.mark.asyncio
async def test_scale_down_posts_the_ordinal():
    session_ctx, session = mock_session()
    trait = HttpScaleTrait(scale_down_config=http_config())

    with patch("gratefulset.controller.traits.aiohttp.ClientSession", return_value=session_ctx):
        await trait.scale_down(TARGET)

    method, url = session.request.call_args.args
    assert method == "POST"
    assert url.endswith(":8080/drain")
    assert session.request.call_args.kwargs["json"] == {
        "namespace": "storage",
        "name": "db",
        "ordinal": 4,
        "pod": "db-2-1",
    }


@pytest.mark.asyncio
async def test_noop_direction_sends_nothing():
    session_ctx, session = mock_session()
    trait = HttpScaleTrait(scale_down_config=http_config())

    with patch("gratefulset.controller.traits.aiohttp.ClientSession", return_value=session_ctx):
        await trait.scale_up(TARGET)

    session.request.assert_not_called()


@pytest.mark.asyncio
async def test_error_status_raises():
    session_ctx, _ = mock_session(status=503, body="busy")
    trait = HttpScaleTrait(scale_down_config=http_config())

    with patch("gratefulset.controller.traits.aiohttp.ClientSession", return_value=session_ctx):
        with pytest.raises(TraitInvocationError, match="503"):
            await trait.scale_down(TARGET)


@pytest.mark.asyncio
async def test_accepted_status_is_success():
    session_ctx, _ = mock_session(status=404)
    trait = HttpScaleTrait(scale_down_config=http_config(accept_statuses=[404]))

    with patch("gratefulset.controller.traits.aiohttp.ClientSession", return_value=session_ctx):
        await trait.scale_down(TARGET)


@pytest.mark.asyncio
async def test_connection_error_raises():
    session_ctx, _ = mock_session(error=aiohttp.ClientConnectionError("refused"))
    trait = HttpScaleTrait(scale_down_config=http_config())

    with patch("gratefulset.controller.traits.aiohttp.ClientSession", return_value=session_ctx):
        with pytest.raises(TraitInvocationError, match="ClientConnectionError"):
            await trait.scale_down(TARGET)
