# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import copy

import pytest

from gratefulset.controller.defaults import (
    FINGERPRINT_ANNOTATION,
    GATE_CONTAINER_NAME,
    LEDGER_VOLUME_NAME,
    ORDINAL_BASE_ANNOTATION,
    OWNER_LABEL,
    POOL_ID_ANNOTATION,
    POOL_LABEL,
    TEMPLATE_HASH_ANNOTATION,
    TRANSITION_REPLICAS_ANNOTATION,
)
from gratefulset.controller.models import LogicalWorkload
from gratefulset.controller.pool_template import (
    fingerprint,
    render_pool,
    retemplate_pool,
    template_hash,
)

pytestmark = [
    pytest.mark.pre_merge,
    pytest.mark.unit,
    pytest.mark.controller,
]

GATE = "registry.local/gratefulset:test"


def sts_spec(**overrides):
    spec = {
        "replicas": 3,
        "serviceName": "db",
        "selector": {"matchLabels": {"app": "db"}},
        "template": {
            "metadata": {"labels": {"app": "db"}},
            "spec": {
                "initContainers": [{"name": "migrate", "image": "db:1"}],
                "containers": [{"name": "db", "image": "db:1"}],
            },
        },
    }
    spec.update(overrides)
    return spec


def workload(spec=None):
    return LogicalWorkload(
        namespace="storage", name="db", uid="uid-1", sts_spec=spec or sts_spec()
    )


class TestHashes:
    def test_fingerprint_ignores_mutable_fields(self):
        changed = sts_spec(replicas=9, minReadySeconds=5)
        changed["template"]["spec"]["containers"][0]["image"] = "db:2"

        assert fingerprint(changed) == fingerprint(sts_spec())

    def test_fingerprint_tracks_immutable_fields(self):
        assert fingerprint(sts_spec(serviceName="db-v2")) != fingerprint(sts_spec())
        assert fingerprint(
            sts_spec(volumeClaimTemplates=[{"metadata": {"name": "data"}}])
        ) != fingerprint(sts_spec())

    def test_template_hash_ignores_replicas_but_not_template(self):
        base = template_hash(sts_spec(), GATE)
        assert template_hash(sts_spec(replicas=1), GATE) == base

        changed = sts_spec()
        changed["template"]["spec"]["containers"][0]["image"] = "db:2"
        assert template_hash(changed, GATE) != base
        assert template_hash(sts_spec(), "other-gate") != base

    def test_hashes_do_not_depend_on_key_order(self):
        reordered = dict(reversed(list(sts_spec().items())))
        assert fingerprint(reordered) == fingerprint(sts_spec())
        assert template_hash(reordered, GATE) == template_hash(sts_spec(), GATE)


class TestRenderPool:
    def test_identity_annotations(self):
        manifest = render_pool(workload(), 2, 3, 0, GATE, transition_replicas=3)
        annotations = manifest["metadata"]["annotations"]

        assert manifest["metadata"]["name"] == "db-2"
        assert manifest["spec"]["replicas"] == 0
        assert annotations[POOL_ID_ANNOTATION] == "2"
        assert annotations[ORDINAL_BASE_ANNOTATION] == "3"
        assert annotations[FINGERPRINT_ANNOTATION] == fingerprint(sts_spec())
        assert annotations[TEMPLATE_HASH_ANNOTATION] == template_hash(sts_spec(), GATE)
        assert annotations[TRANSITION_REPLICAS_ANNOTATION] == "3"

    def test_gate_runs_first_and_gets_its_ordinal_base(self):
        manifest = render_pool(workload(), 1, 4, 2, GATE)
        inits = manifest["spec"]["template"]["spec"]["initContainers"]

        assert [c["name"] for c in inits] == [GATE_CONTAINER_NAME, "migrate"]
        env = {e["name"]: e.get("value") for e in inits[0]["env"]}
        assert env["GS_LEDGER_NAME"] == "db-locks"
        assert env["GS_LEDGER_SOURCE"] == "api"
        assert env["GS_ORDINAL_BASE"] == "4"
        assert inits[0]["image"] == GATE
        assert "volumeMounts" not in inits[0]
        assert "volumes" not in manifest["spec"]["template"]["spec"]

    def test_file_source_mounts_the_ledger_into_the_gate(self):
        manifest = render_pool(workload(), 1, 0, 2, GATE, ledger_source="file")
        pod_spec = manifest["spec"]["template"]["spec"]
        gate = pod_spec["initContainers"][0]

        env = {e["name"]: e.get("value") for e in gate["env"]}
        assert env["GS_LEDGER_SOURCE"] == "file"
        mount = gate["volumeMounts"][0]
        assert mount["name"] == LEDGER_VOLUME_NAME
        assert env["GS_LOCK_DIR"] == mount["mountPath"]
        volume = next(v for v in pod_spec["volumes"] if v["name"] == LEDGER_VOLUME_NAME)
        assert volume["configMap"]["name"] == "db-locks"

    def test_switching_the_ledger_source_rolls_the_template(self):
        assert template_hash(sts_spec(), GATE, "file") != template_hash(sts_spec(), GATE)

    def test_pool_labels_and_owner_reference(self):
        manifest = render_pool(workload(), 1, 0, 0, GATE)

        assert manifest["spec"]["selector"]["matchLabels"][POOL_LABEL] == "db-1"
        labels = manifest["spec"]["template"]["metadata"]["labels"]
        assert labels[POOL_LABEL] == "db-1"
        assert labels[OWNER_LABEL] == "db"
        owner = manifest["metadata"]["ownerReferences"][0]
        assert owner["kind"] == "GratefulSet"
        assert owner["uid"] == "uid-1"

    def test_user_ordinals_are_dropped(self):
        manifest = render_pool(
            workload(sts_spec(ordinals={"start": 5})), 1, 0, 0, GATE
        )
        assert "ordinals" not in manifest["spec"]

    def test_workload_spec_is_not_mutated(self):
        wl = workload()
        before = copy.deepcopy(wl.sts_spec)
        render_pool(wl, 1, 0, 3, GATE)
        assert wl.sts_spec == before


def test_retemplate_keeps_replicas_and_identity():
    manifest = render_pool(workload(), 1, 0, 3, GATE)
    changed = sts_spec(replicas=1)
    changed["template"]["spec"]["containers"][0]["image"] = "db:2"

    updated = retemplate_pool(manifest, workload(changed), 0, GATE)

    assert updated["spec"]["replicas"] == 3
    assert updated["metadata"]["name"] == "db-1"
    assert updated["spec"]["template"]["spec"]["containers"][0]["image"] == "db:2"
    annotations = updated["metadata"]["annotations"]
    assert annotations[TEMPLATE_HASH_ANNOTATION] == template_hash(changed, GATE)
    assert annotations[FINGERPRINT_ANNOTATION] == manifest["metadata"]["annotations"][
        FINGERPRINT_ANNOTATION
    ]
