# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Admission gate run as the first init container of every pool pod.

The gate turns the pod's name into its logical ordinal and looks it up in the
lock ledger. It exits 0 when the ordinal is permitted, GATE_DENIED_EXIT_CODE
when it is not (so the pod never reaches ready), and GATE_ERROR_EXIT_CODE when
the ledger cannot be read.
"""

import argparse
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from gratefulset.common.configuration.utils import add_argument
from gratefulset.controller.defaults import (
    GATE_DENIED_EXIT_CODE,
    GATE_ERROR_EXIT_CODE,
    LEDGER_PERMITTED,
    ControllerDefaults,
    GateDefaults,
)

logger = logging.getLogger(__name__)

GATE_ADMITTED_EXIT_CODE = 0


class LedgerReadError(Exception):
    """The ledger could not be read; the gate must not guess."""

    pass


def logical_ordinal(pod_name: str, ordinal_base: int) -> int:
    """`<pool>-<k>` plus the pool's ordinal base."""
    match = re.search(r"-(\d+)$", pod_name)
    if match is None:
        raise ValueError(f"Pod name {pod_name!r} carries no ordinal suffix")
    return ordinal_base + int(match.group(1))


class LedgerSource(ABC):
    @abstractmethod
    def entry(self, ordinal: int) -> Optional[str]:
        """Raw ledger value for `ordinal`, None when it has no entry"""
        pass


class ApiLedgerSource(LedgerSource):
    """Reads the ledger ConfigMap through the API, so it sees the latest write."""

    def __init__(
        self,
        name: str,
        namespace: str,
        api_timeout: float = ControllerDefaults.api_timeout,
        core: Optional[client.CoreV1Api] = None,
    ):
        self.name = name
        self.namespace = namespace
        self.api_timeout = api_timeout
        if core is None:
            config.load_incluster_config()
            core = client.CoreV1Api()
        self.core = core

    def entry(self, ordinal: int) -> Optional[str]:
        try:
            cm = self.core.read_namespaced_config_map(
                self.name, self.namespace, _request_timeout=self.api_timeout
            )
        except ApiException as e:
            if e.status == 404:
                # No ledger yet means nothing was ever granted.
                return None
            raise LedgerReadError(f"HTTP {e.status}: {e.reason}") from e
        except Exception as e:
            raise LedgerReadError(f"{type(e).__name__}: {e}") from e
        return (cm.data or {}).get(str(ordinal))


class FileLedgerSource(LedgerSource):
    """Reads a ConfigMap volume: one file per ordinal key."""

    def __init__(self, lock_dir: str = GateDefaults.lock_dir):
        self.lock_dir = lock_dir

    def entry(self, ordinal: int) -> Optional[str]:
        if not os.path.isdir(self.lock_dir):
            raise LedgerReadError(f"Lock directory {self.lock_dir} is not mounted")
        path = os.path.join(self.lock_dir, str(ordinal))
        if not os.path.exists(path):
            return None
        try:
            with open(path) as f:
                return f.read()
        except OSError as e:
            raise LedgerReadError(f"{path}: {e}") from e


def check_admission(source: LedgerSource, ordinal: int) -> int:
    """Exit code for a pod holding logical `ordinal`."""
    try:
        value = source.entry(ordinal)
    except LedgerReadError as e:
        logger.error(f"Cannot read the lock ledger for ordinal {ordinal}: {e}")
        return GATE_ERROR_EXIT_CODE
    if value is not None and value.strip().lower() == LEDGER_PERMITTED:
        logger.info(f"Lock for ordinal {ordinal} acquired")
        return GATE_ADMITTED_EXIT_CODE
    state = "revoked" if value is not None else "never granted"
    logger.warning(f"Ordinal {ordinal} holds no lock ({state}); refusing to start")
    return GATE_DENIED_EXIT_CODE


def create_gate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="GratefulSet admission gate - start a pod only if its ordinal holds a lock"
    )
    add_argument(
        parser,
        flag_name="--ledger-source",
        env_var="GS_LEDGER_SOURCE",
        default=GateDefaults.ledger_source,
        help="Where to read the ledger: api (ConfigMap via the API) or file (mounted volume)",
        choices=["api", "file"],
    )
    add_argument(
        parser,
        flag_name="--ledger-name",
        env_var="GS_LEDGER_NAME",
        default="",
        help="Name of the lock ledger ConfigMap",
    )
    add_argument(
        parser,
        flag_name="--lock-dir",
        env_var="GS_LOCK_DIR",
        default=GateDefaults.lock_dir,
        help="Mount point of the ledger ConfigMap when --ledger-source=file",
    )
    add_argument(
        parser,
        flag_name="--ordinal-base",
        env_var="GS_ORDINAL_BASE",
        default=0,
        help="Logical ordinal of this pool's pod 0",
        arg_type=int,
    )
    add_argument(
        parser,
        flag_name="--pod-name",
        env_var="GS_POD_NAME",
        default=os.environ.get("HOSTNAME", ""),
        help="Name of this pod",
    )
    add_argument(
        parser,
        flag_name="--pod-namespace",
        env_var="GS_POD_NAMESPACE",
        default="default",
        help="Namespace of this pod and of the ledger",
    )
    add_argument(
        parser,
        flag_name="--api-timeout",
        env_var="GS_API_TIMEOUT",
        default=ControllerDefaults.api_timeout,
        help="Timeout in seconds for the ledger read",
        arg_type=float,
    )
    return parser


def build_source(args: argparse.Namespace) -> LedgerSource:
    if args.ledger_source == "file":
        return FileLedgerSource(args.lock_dir)
    if not args.ledger_name:
        raise ValueError("--ledger-name is required when --ledger-source=api")
    return ApiLedgerSource(args.ledger_name, args.pod_namespace, args.api_timeout)


def run_gate(args: argparse.Namespace) -> int:
    try:
        ordinal = logical_ordinal(args.pod_name, args.ordinal_base)
        source = build_source(args)
    except (ValueError, config.ConfigException) as e:
        logger.error(f"Admission gate misconfigured: {e}")
        return GATE_ERROR_EXIT_CODE
    return check_admission(source, ordinal)
