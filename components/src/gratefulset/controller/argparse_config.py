# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Argument parsing for the GratefulSet controller."""

import argparse

from gratefulset.common.configuration.utils import add_argument
from gratefulset.controller.defaults import ControllerDefaults


def create_controller_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the controller.

    Every flag falls back to a GS_* environment variable.

    Returns:
        argparse.ArgumentParser: Configured argument parser
    """
    parser = argparse.ArgumentParser(
        description="GratefulSet controller - graceful scale-down for stateful workloads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Watch every namespace the service account can see
  python -m gratefulset.controller

  # One namespace, more workers
  python -m gratefulset.controller --watch-namespace storage --workers 8

  # Dry run against the in-memory substrate
  python -m gratefulset.controller --environment virtual \\
    --virtual-manifest ./gratefulsets.json
        """,
    )
    add_argument(
        parser,
        flag_name="--environment",
        env_var="GS_ENVIRONMENT",
        default=ControllerDefaults.environment,
        help="Substrate: kubernetes (real cluster) or virtual (in-memory dry run)",
        choices=["kubernetes", "virtual"],
    )
    add_argument(
        parser,
        flag_name="--watch-namespace",
        env_var="GS_WATCH_NAMESPACE",
        default=ControllerDefaults.watch_namespace,
        help="Only manage GratefulSets in this namespace (empty: all namespaces)",
    )
    add_argument(
        parser,
        flag_name="--virtual-manifest",
        env_var="GS_VIRTUAL_MANIFEST",
        default=ControllerDefaults.virtual_manifest,
        help="JSON file with a list of GratefulSet objects to seed the virtual environment",
    )
    add_argument(
        parser,
        flag_name="--workers",
        env_var="GS_WORKERS",
        default=ControllerDefaults.workers,
        help="Number of GratefulSets reconciled concurrently",
        arg_type=int,
    )
    add_argument(
        parser,
        flag_name="--resync-period",
        env_var="GS_RESYNC_PERIOD",
        default=ControllerDefaults.resync_period,
        help="Seconds between full re-listings of GratefulSets",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--poll-interval",
        env_var="GS_POLL_INTERVAL",
        default=ControllerDefaults.poll_interval,
        help="Seconds between checks while waiting for pods to settle",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--settle-timeout",
        env_var="GS_SETTLE_TIMEOUT",
        default=ControllerDefaults.settle_timeout,
        help="Longest a single pass waits for a pod to settle before requeueing",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--trait-timeout",
        env_var="GS_TRAIT_TIMEOUT",
        default=ControllerDefaults.trait_timeout,
        help="Timeout in seconds for one scale trait invocation",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--api-timeout",
        env_var="GS_API_TIMEOUT",
        default=ControllerDefaults.api_timeout,
        help="Timeout in seconds for one Kubernetes API request",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--ledger-retries",
        env_var="GS_LEDGER_RETRIES",
        default=ControllerDefaults.ledger_retries,
        help="Compare-and-swap attempts per lock ledger mutation",
        arg_type=int,
    )
    add_argument(
        parser,
        flag_name="--backoff-base",
        env_var="GS_BACKOFF_BASE",
        default=ControllerDefaults.backoff_base,
        help="First retry delay in seconds after a failed pass",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--backoff-max",
        env_var="GS_BACKOFF_MAX",
        default=ControllerDefaults.backoff_max,
        help="Ceiling in seconds for the retry delay",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--stuck-after",
        env_var="GS_STUCK_AFTER",
        default=ControllerDefaults.stuck_after,
        help="Seconds a scale step may take before the workload reports Stalled",
        arg_type=float,
    )
    add_argument(
        parser,
        flag_name="--gate-image",
        env_var="GS_GATE_IMAGE",
        default=ControllerDefaults.gate_image,
        help="Image running the admission gate init container",
    )
    add_argument(
        parser,
        flag_name="--gate-ledger-source",
        env_var="GS_GATE_LEDGER_SOURCE",
        default=ControllerDefaults.gate_ledger_source,
        help="How the admission gate reads the ledger: api (needs RBAC to get the "
        "ConfigMap, sees grants immediately) or file (mounted ConfigMap, no RBAC, "
        "sees grants after the kubelet syncs the volume)",
        choices=["api", "file"],
    )
    add_argument(
        parser,
        flag_name="--metrics-port",
        env_var="GS_METRICS_PORT",
        default=ControllerDefaults.metrics_port,
        help="Prometheus port (0 disables the metrics server)",
        arg_type=int,
    )
    add_argument(
        parser,
        flag_name="--log-level",
        env_var="GS_LOG",
        default=ControllerDefaults.log_level,
        help="Log level",
        choices=["trace", "debug", "info", "warn", "warning", "error"],
    )
    return parser


def validate_controller_args(args: argparse.Namespace) -> None:
    """Reject inconsistent controller settings.

    Raises:
        ValueError: If argument constraints are violated
    """
    if args.workers < 1:
        raise ValueError(f"--workers must be at least 1, got {args.workers}")
    for flag in (
        "resync_period",
        "poll_interval",
        "trait_timeout",
        "api_timeout",
        "backoff_base",
        "backoff_max",
        "stuck_after",
    ):
        if getattr(args, flag) <= 0:
            raise ValueError(f"--{flag.replace('_', '-')} must be positive")
    if args.settle_timeout < 0:
        raise ValueError("--settle-timeout must not be negative")
    if args.backoff_base > args.backoff_max:
        raise ValueError(
            f"--backoff-base ({args.backoff_base}s) must not exceed "
            f"--backoff-max ({args.backoff_max}s)"
        )
    if args.ledger_retries < 1:
        raise ValueError("--ledger-retries must be at least 1")
    if not 0 <= args.metrics_port <= 65535:
        raise ValueError(f"--metrics-port out of range: {args.metrics_port}")
    if not args.gate_image:
        raise ValueError("--gate-image must not be empty")
