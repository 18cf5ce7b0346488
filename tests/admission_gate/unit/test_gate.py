# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for the admission gate's ledger lookup and exit codes."""

import os
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException

from gratefulset.admission_gate.gate import (
    GATE_ADMITTED_EXIT_CODE,
    ApiLedgerSource,
    FileLedgerSource,
    check_admission,
    create_gate_parser,
    logical_ordinal,
    run_gate,
)
from gratefulset.controller.defaults import GATE_DENIED_EXIT_CODE, GATE_ERROR_EXIT_CODE

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.admission_gate,
]


def api_source(data=None, error=None):
    core = MagicMock()
    if error is not None:
        core.read_namespaced_config_map.side_effect = error
    else:
        core.read_namespaced_config_map.return_value = MagicMock(data=data)
    return ApiLedgerSource("db-locks", "storage", api_timeout=2.0, core=core), core


@pytest.mark.parametrize(
    "pod_name,base,expected",
    [("db-1-0", 0, 0), ("db-2-1", 3, 4), ("my-db-12-10", 100, 110)],
)
def test_logical_ordinal(pod_name, base, expected):
    assert logical_ordinal(pod_name, base) == expected


def test_logical_ordinal_needs_a_suffix():
    with pytest.raises(ValueError):
        logical_ordinal("db", 0)


class TestApiSource:
    def test_permitted_ordinal_is_admitted(self):
        source, core = api_source({"4": "true"})

        assert check_admission(source, 4) == GATE_ADMITTED_EXIT_CODE
        core.read_namespaced_config_map.assert_called_once_with(
            "db-locks", "storage", _request_timeout=2.0
        )

    def test_revoked_ordinal_is_denied(self):
        source, _ = api_source({"4": "false"})
        assert check_admission(source, 4) == GATE_DENIED_EXIT_CODE

    def test_missing_entry_is_denied(self):
        source, _ = api_source({"0": "true"})
        assert check_admission(source, 4) == GATE_DENIED_EXIT_CODE

    def test_empty_configmap_is_denied(self):
        source, _ = api_source(None)
        assert check_admission(source, 0) == GATE_DENIED_EXIT_CODE

    def test_missing_ledger_is_denied(self):
        source, _ = api_source(error=ApiException(status=404, reason="Not Found"))
        assert check_admission(source, 0) == GATE_DENIED_EXIT_CODE

    @pytest.mark.parametrize(
        "error",
        [ApiException(status=503, reason="Unavailable"), ConnectionError("refused")],
    )
    def test_unreadable_ledger_is_an_error(self, error):
        source, _ = api_source(error=error)
        assert check_admission(source, 0) == GATE_ERROR_EXIT_CODE


class TestFileSource:
    def test_reads_one_file_per_ordinal(self, tmp_path):
        (tmp_path / "3").write_text("true")
        (tmp_path / "4").write_text("false")
        source = FileLedgerSource(str(tmp_path))

        assert check_admission(source, 3) == GATE_ADMITTED_EXIT_CODE
        assert check_admission(source, 4) == GATE_DENIED_EXIT_CODE
        assert check_admission(source, 5) == GATE_DENIED_EXIT_CODE

    def test_unmounted_volume_is_an_error(self, tmp_path):
        source = FileLedgerSource(str(tmp_path / "missing"))
        assert check_admission(source, 0) == GATE_ERROR_EXIT_CODE


class TestRunGate:
    def test_file_mode_end_to_end(self, tmp_path):
        (tmp_path / "5").write_text("true\n")
        args = create_gate_parser().parse_args(
            [
                "--ledger-source", "file",
                "--lock-dir", str(tmp_path),
                "--pod-name", "db-2-2",
                "--ordinal-base", "3",
            ]
        )
        assert run_gate(args) == GATE_ADMITTED_EXIT_CODE

    def test_environment_configures_the_gate(self, tmp_path):
        env = {
            "GS_LEDGER_SOURCE": "file",
            "GS_LOCK_DIR": str(tmp_path),
            "GS_POD_NAME": "db-1-0",
            "GS_ORDINAL_BASE": "0",
        }
        with patch.dict(os.environ, env):
            args = create_gate_parser().parse_args([])

        assert args.ordinal_base == 0
        assert run_gate(args) == GATE_DENIED_EXIT_CODE

    def test_bad_pod_name_is_an_error(self, tmp_path):
        args = create_gate_parser().parse_args(
            ["--ledger-source", "file", "--lock-dir", str(tmp_path), "--pod-name", "db"]
        )
        assert run_gate(args) == GATE_ERROR_EXIT_CODE

    def test_api_mode_needs_a_ledger_name(self):
        args = create_gate_parser().parse_args(["--pod-name", "db-1-0", "--ledger-name", ""])
        assert run_gate(args) == GATE_ERROR_EXIT_CODE
