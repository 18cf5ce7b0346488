# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for controller argument parsing and validation."""

import os
from unittest.mock import patch

import pytest

from gratefulset.controller.argparse_config import (
    create_controller_parser,
    validate_controller_args,
)
from gratefulset.controller.defaults import ControllerDefaults

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.controller,
]


def test_defaults():
    args = create_controller_parser().parse_args([])

    assert args.environment == "kubernetes"
    assert args.workers == ControllerDefaults.workers
    assert args.settle_timeout == ControllerDefaults.settle_timeout
    assert args.gate_ledger_source == "api"
    validate_controller_args(args)


def test_flags_override_defaults():
    args = create_controller_parser().parse_args(
        ["--watch-namespace", "storage", "--workers", "8", "--stuck-after", "120"]
    )

    assert args.watch_namespace == "storage"
    assert args.workers == 8
    assert args.stuck_after == 120.0


def test_environment_variables_are_fallbacks():
    with patch.dict(os.environ, {"GS_WORKERS": "2", "GS_ENVIRONMENT": "virtual"}):
        args = create_controller_parser().parse_args([])

    assert args.workers == 2
    assert args.environment == "virtual"


def test_flag_beats_environment():
    with patch.dict(os.environ, {"GS_WORKERS": "2"}):
        args = create_controller_parser().parse_args(["--workers", "6"])
    assert args.workers == 6


def test_invalid_environment_is_rejected():
    with pytest.raises(SystemExit):
        create_controller_parser().parse_args(["--environment", "mesos"])


def test_gate_ledger_source_from_environment():
    with patch.dict(os.environ, {"GS_GATE_LEDGER_SOURCE": "file"}):
        args = create_controller_parser().parse_args([])
    assert args.gate_ledger_source == "file"

    with pytest.raises(SystemExit):
        create_controller_parser().parse_args(["--gate-ledger-source", "nfs"])


@pytest.mark.parametrize(
    "argv,match",
    [
        (["--workers", "0"], "--workers"),
        (["--poll-interval", "0"], "--poll-interval"),
        (["--settle-timeout", "-1"], "--settle-timeout"),
        (["--backoff-base", "10", "--backoff-max", "5"], "--backoff-base"),
        (["--ledger-retries", "0"], "--ledger-retries"),
        (["--metrics-port", "70000"], "--metrics-port"),
        (["--gate-image", ""], "--gate-image"),
    ],
)
def test_validation_rejects_inconsistent_settings(argv, match):
    args = create_controller_parser().parse_args(argv)
    with pytest.raises(ValueError, match=match):
        validate_controller_args(args)
