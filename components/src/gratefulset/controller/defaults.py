# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

# Custom resource coordinates
GROUP = "pikach.us"
VERSION = "v1"
KIND = "GratefulSet"
PLURAL = "gratefulsets"

# Labels and annotations stamped on everything the controller owns
OWNER_LABEL = "owner.pikach.us"
POOL_LABEL = "gratefulset.pikach.us/pool"
ANNOTATION_PREFIX = "gratefulset.pikach.us/"
POOL_ID_ANNOTATION = ANNOTATION_PREFIX + "pool-id"
ORDINAL_BASE_ANNOTATION = ANNOTATION_PREFIX + "ordinal-base"
FINGERPRINT_ANNOTATION = ANNOTATION_PREFIX + "fingerprint"
TEMPLATE_HASH_ANNOTATION = ANNOTATION_PREFIX + "template-hash"
TRANSITION_REPLICAS_ANNOTATION = ANNOTATION_PREFIX + "transition-replicas"
LEDGER_RECORDS_ANNOTATION = ANNOTATION_PREFIX + "records"

FIELD_MANAGER = "gratefulset-controller"

# Admission gate contract
GATE_CONTAINER_NAME = "gratefulset-admission-gate"
GATE_DENIED_EXIT_CODE = 3
GATE_ERROR_EXIT_CODE = 4
LEDGER_SUFFIX = "-locks"
LEDGER_PERMITTED = "true"
LEDGER_REVOKED = "false"
LEDGER_VOLUME_NAME = "gratefulset-ledger"

# StatefulSet spec fields Kubernetes lets us change in place. Every other field
# is folded into the pool fingerprint.
MUTABLE_STS_FIELDS = frozenset(
    {
        "replicas",
        "template",
        "updateStrategy",
        "minReadySeconds",
        "persistentVolumeClaimRetentionPolicy",
        "revisionHistoryLimit",
        "ordinals",
    }
)


class ControllerDefaults:
    environment = "kubernetes"
    watch_namespace = ""
    virtual_manifest = ""
    workers = 4
    resync_period = 300.0
    poll_interval = 2.0
    settle_timeout = 20.0
    trait_timeout = 30.0
    api_timeout = 15.0
    ledger_retries = 5
    backoff_base = 1.0
    backoff_max = 300.0
    stuck_after = 600.0
    gate_image = "ghcr.io/pikachu/gratefulset:latest"
    gate_ledger_source = "api"
    metrics_port = 0
    log_level = "info"


class GateDefaults:
    ledger_source = "api"
    lock_dir = "/locks"
