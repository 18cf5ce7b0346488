# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
GratefulSet controller - StatefulSets that scale down gracefully.

A GratefulSet is realized by one or more pool StatefulSets plus a lock ledger
ConfigMap. Every pod runs an admission gate that refuses to start unless the
ledger permits its ordinal, which lets the controller retire replicas one at a
time: revoke the lock, ask the application to release the ordinal, wait for
the pod to leave service, and only then shrink the pool.

Usage:
    python -m gratefulset.controller --watch-namespace storage
"""

__all__ = [
    "GratefulSetController",
    "KubernetesConnector",
    "Reconciler",
    "VirtualConnector",
]

from gratefulset.controller.controller import GratefulSetController
from gratefulset.controller.kubernetes_connector import KubernetesConnector
from gratefulset.controller.reconciler import Reconciler
from gratefulset.controller.virtual_connector import VirtualConnector
