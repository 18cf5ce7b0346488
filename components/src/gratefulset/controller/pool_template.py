# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Rendering of pool StatefulSets from a GratefulSet spec.

A pool's name, fingerprint and ordinal base never change after creation. The
fingerprint covers every StatefulSet field Kubernetes refuses to update in
place; a change there needs a new pool. The template hash covers the rest
(sans replicas) and is passed down as an ordinary rolling update.
"""

import copy
import hashlib
import json
from typing import Any, Optional

from gratefulset.controller.defaults import (
    FINGERPRINT_ANNOTATION,
    GATE_CONTAINER_NAME,
    GROUP,
    KIND,
    LEDGER_VOLUME_NAME,
    MUTABLE_STS_FIELDS,
    ORDINAL_BASE_ANNOTATION,
    OWNER_LABEL,
    POOL_ID_ANNOTATION,
    POOL_LABEL,
    TEMPLATE_HASH_ANNOTATION,
    TRANSITION_REPLICAS_ANNOTATION,
    VERSION,
    GateDefaults,
)
from gratefulset.controller.models import LogicalWorkload


def _digest(obj: Any, length: int) -> str:
    canonical = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:length]


def immutable_fields(sts_spec: dict[str, Any]) -> dict[str, Any]:
    return {
        k: v
        for k, v in sts_spec.items()
        if k not in MUTABLE_STS_FIELDS and v is not None
    }


def fingerprint(sts_spec: dict[str, Any]) -> str:
    """Hash of the structural (in-place immutable) StatefulSet fields."""
    return _digest(immutable_fields(sts_spec), 10)


def template_hash(
    sts_spec: dict[str, Any], gate_image: str, ledger_source: str = "api"
) -> str:
    """Hash of the fields a running pool may roll to, excluding replicas."""
    mutable = {
        k: v
        for k, v in sts_spec.items()
        if k in MUTABLE_STS_FIELDS and k != "replicas" and v is not None
    }
    return _digest(
        {"spec": mutable, "gate": gate_image, "ledgerSource": ledger_source}, 16
    )


def pool_name(workload: LogicalWorkload, pool_id: int) -> str:
    return f"{workload.name}-{pool_id}"


def gate_container(
    workload: LogicalWorkload,
    ordinal_base: int,
    gate_image: str,
    ledger_source: str = "api",
) -> dict[str, Any]:
    """Init container that refuses to start a pod whose ordinal holds no lock.

    With the api source the pod's service account must be allowed to get
    the ledger ConfigMap; the file source reads it from a mounted volume.
    """

    def field_env(name: str, path: str) -> dict[str, Any]:
        return {"name": name, "valueFrom": {"fieldRef": {"fieldPath": path}}}

    container = {
        "name": GATE_CONTAINER_NAME,
        "image": gate_image,
        "command": ["python", "-m", "gratefulset.admission_gate"],
        "env": [
            {"name": "GS_LEDGER_SOURCE", "value": ledger_source},
            {"name": "GS_LEDGER_NAME", "value": workload.key.ledger_name},
            {"name": "GS_ORDINAL_BASE", "value": str(ordinal_base)},
            field_env("GS_POD_NAME", "metadata.name"),
            field_env("GS_POD_NAMESPACE", "metadata.namespace"),
        ],
    }
    if ledger_source == "file":
        container["env"].append(
            {"name": "GS_LOCK_DIR", "value": GateDefaults.lock_dir}
        )
        container["volumeMounts"] = [
            {
                "name": LEDGER_VOLUME_NAME,
                "mountPath": GateDefaults.lock_dir,
                "readOnly": True,
            }
        ]
    return container


def with_lock(
    sts_spec: dict[str, Any],
    workload: LogicalWorkload,
    name: str,
    ordinal_base: int,
    gate_image: str,
    ledger_source: str = "api",
) -> dict[str, Any]:
    """Copy of `sts_spec` wired to the pool's labels and the admission gate."""
    spec = copy.deepcopy(sts_spec)
    # Pod names always count from zero; the ordinal base is ours to assign.
    spec.pop("ordinals", None)

    selector = spec.setdefault("selector", {})
    selector.setdefault("matchLabels", {})[POOL_LABEL] = name

    template = spec.setdefault("template", {})
    labels = template.setdefault("metadata", {}).setdefault("labels", {})
    labels[POOL_LABEL] = name
    labels[OWNER_LABEL] = workload.name

    pod_spec = template.setdefault("spec", {})
    inits = [
        c
        for c in pod_spec.get("initContainers") or []
        if c.get("name") != GATE_CONTAINER_NAME
    ]
    pod_spec["initContainers"] = [
        gate_container(workload, ordinal_base, gate_image, ledger_source)
    ] + inits
    volumes = [
        v for v in pod_spec.get("volumes") or [] if v.get("name") != LEDGER_VOLUME_NAME
    ]
    if ledger_source == "file":
        volumes.append(
            {
                "name": LEDGER_VOLUME_NAME,
                "configMap": {"name": workload.key.ledger_name, "optional": True},
            }
        )
    if volumes:
        pod_spec["volumes"] = volumes
    return spec


def render_pool(
    workload: LogicalWorkload,
    pool_id: int,
    ordinal_base: int,
    replicas: int,
    gate_image: str,
    transition_replicas: Optional[int] = None,
    ledger_source: str = "api",
) -> dict[str, Any]:
    """Full StatefulSet manifest for a pool of `workload`."""
    name = pool_name(workload, pool_id)
    spec = with_lock(
        workload.sts_spec, workload, name, ordinal_base, gate_image, ledger_source
    )
    spec["replicas"] = replicas

    annotations = {
        POOL_ID_ANNOTATION: str(pool_id),
        ORDINAL_BASE_ANNOTATION: str(ordinal_base),
        FINGERPRINT_ANNOTATION: fingerprint(workload.sts_spec),
        TEMPLATE_HASH_ANNOTATION: template_hash(
            workload.sts_spec, gate_image, ledger_source
        ),
    }
    if transition_replicas is not None:
        annotations[TRANSITION_REPLICAS_ANNOTATION] = str(transition_replicas)

    metadata: dict[str, Any] = {
        "name": name,
        "namespace": workload.namespace,
        "labels": {OWNER_LABEL: workload.name, POOL_LABEL: name},
        "annotations": annotations,
    }
    if workload.uid:
        metadata["ownerReferences"] = [
            {
                "apiVersion": f"{GROUP}/{VERSION}",
                "kind": KIND,
                "name": workload.name,
                "uid": workload.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": metadata,
        "spec": spec,
    }


def retemplate_pool(
    manifest: dict[str, Any],
    workload: LogicalWorkload,
    ordinal_base: int,
    gate_image: str,
    ledger_source: str = "api",
) -> dict[str, Any]:
    """Move an existing pool manifest to the workload's current mutable fields.

    Replicas, identity annotations and everything immutable are kept from
    `manifest`.
    """
    updated = copy.deepcopy(manifest)
    name = updated["metadata"]["name"]
    desired = with_lock(
        workload.sts_spec, workload, name, ordinal_base, gate_image, ledger_source
    )
    spec = updated.setdefault("spec", {})
    for field in MUTABLE_STS_FIELDS - {"replicas"}:
        if field in desired:
            spec[field] = desired[field]
        else:
            spec.pop(field, None)
    annotations = updated["metadata"].setdefault("annotations", {})
    annotations[TEMPLATE_HASH_ANNOTATION] = template_hash(
        workload.sts_spec, gate_image, ledger_source
    )
    return updated
