# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Substrate connector backed by the Kubernetes API.

The official client is synchronous, so every call runs in a worker thread
with a request timeout. Objects are handled as plain camelCase dicts (the
API's own wire shape) rather than the client's model classes.
"""

import asyncio
import logging
import re
import threading
import time
from datetime import datetime
from typing import Any, Callable, Optional

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from gratefulset.controller.defaults import (
    FIELD_MANAGER,
    FINGERPRINT_ANNOTATION,
    GATE_CONTAINER_NAME,
    GATE_DENIED_EXIT_CODE,
    GROUP,
    KIND,
    ORDINAL_BASE_ANNOTATION,
    OWNER_LABEL,
    PLURAL,
    POOL_ID_ANNOTATION,
    POOL_LABEL,
    TEMPLATE_HASH_ANNOTATION,
    TRANSITION_REPLICAS_ANNOTATION,
    VERSION,
)
from gratefulset.controller.lock_ledger import decode_ledger, encode_ledger
from gratefulset.controller.models import (
    GratefulSetStatus,
    LedgerDocument,
    LogicalWorkload,
    PodObservation,
    PoolObservation,
    WorkloadKey,
)
from gratefulset.controller.substrate import SubstrateConnector
from gratefulset.controller.utils.exceptions import (
    ConflictError,
    GratefulSetError,
    NotFoundError,
    TransientSubstrateError,
)

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 300
WATCH_RESTART_DELAY = 5.0


def translate_api_exception(
    e: ApiException, operation: str, kind: str, name: str
) -> GratefulSetError:
    if e.status in (409, 412):
        return ConflictError(kind, name)
    if e.status == 404:
        return NotFoundError(kind, name)
    return TransientSubstrateError(operation, f"HTTP {e.status}: {e.reason}")


def parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparsable timestamp {value!r}")
        return None


def local_ordinal(pod: dict[str, Any], pool_name: str) -> Optional[int]:
    """A pod's index inside its StatefulSet."""
    metadata = pod.get("metadata") or {}
    index = (metadata.get("labels") or {}).get("apps.kubernetes.io/pod-index")
    if index is not None and str(index).isdigit():
        return int(index)
    match = re.fullmatch(re.escape(pool_name) + r"-(\d+)", metadata.get("name", ""))
    return int(match.group(1)) if match else None


def _terminated_exit_codes(status: dict[str, Any]) -> list[int]:
    codes = []
    for field in ("state", "lastState"):
        terminated = (status.get(field) or {}).get("terminated")
        if terminated and terminated.get("exitCode") is not None:
            codes.append(int(terminated["exitCode"]))
    return codes


def parse_pod(pod: dict[str, Any], pool_name: str) -> Optional[PodObservation]:
    ordinal = local_ordinal(pod, pool_name)
    if ordinal is None:
        return None
    metadata = pod.get("metadata") or {}
    status = pod.get("status") or {}

    ready = any(
        c.get("type") == "Ready" and c.get("status") == "True"
        for c in status.get("conditions") or []
    )

    denied = False
    gate_succeeded = False
    for init in status.get("initContainerStatuses") or []:
        if init.get("name") != GATE_CONTAINER_NAME:
            continue
        terminated = (init.get("state") or {}).get("terminated")
        gate_succeeded = bool(terminated and terminated.get("exitCode") == 0)
        denied = not gate_succeeded and GATE_DENIED_EXIT_CODE in _terminated_exit_codes(
            init
        )

    last_exit = None
    for container in status.get("containerStatuses") or []:
        terminated = (container.get("lastState") or {}).get("terminated")
        if terminated:
            finished = parse_time(terminated.get("finishedAt"))
            if finished is not None and (last_exit is None or finished > last_exit):
                last_exit = finished

    return PodObservation(
        name=metadata.get("name", ""),
        local_ordinal=ordinal,
        uid=metadata.get("uid"),
        ready=ready,
        terminating=metadata.get("deletionTimestamp") is not None,
        admission_denied=denied,
        last_exit_at=last_exit,
    )


def rollout_complete(manifest: dict[str, Any]) -> bool:
    """Whether the StatefulSet controller has caught up with the pool's spec."""
    metadata = manifest.get("metadata") or {}
    spec = manifest.get("spec") or {}
    status = manifest.get("status") or {}
    if (status.get("observedGeneration") or 0) < (metadata.get("generation") or 0):
        return False
    if (spec.get("updateStrategy") or {}).get("type") == "OnDelete":
        return True
    update_revision = status.get("updateRevision")
    return not update_revision or update_revision == status.get("currentRevision")


def parse_pool(
    manifest: dict[str, Any], pods: list[dict[str, Any]]
) -> Optional[PoolObservation]:
    metadata = manifest.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    name = metadata.get("name", "")
    try:
        pool_id = int(annotations[POOL_ID_ANNOTATION])
        ordinal_base = int(annotations[ORDINAL_BASE_ANNOTATION])
    except (KeyError, ValueError):
        logger.warning(f"StatefulSet {name} carries no pool identity, ignoring it")
        return None
    transition = annotations.get(TRANSITION_REPLICAS_ANNOTATION)

    observed = {}
    for pod in pods:
        if ((pod.get("metadata") or {}).get("labels") or {}).get(POOL_LABEL) != name:
            continue
        parsed = parse_pod(pod, name)
        if parsed is not None:
            observed[parsed.local_ordinal] = parsed

    replicas = (manifest.get("spec") or {}).get("replicas")
    return PoolObservation(
        name=name,
        pool_id=pool_id,
        ordinal_base=ordinal_base,
        ordinal_count=1 if replicas is None else int(replicas),
        fingerprint=annotations.get(FINGERPRINT_ANNOTATION, ""),
        template_hash=annotations.get(TEMPLATE_HASH_ANNOTATION, ""),
        transition_replicas=int(transition) if transition and transition.isdigit() else None,
        resource_version=metadata.get("resourceVersion"),
        rollout_complete=rollout_complete(manifest),
        pods=observed,
        manifest=manifest,
    )


def writable(manifest: dict[str, Any], resource_version: Optional[str]) -> dict[str, Any]:
    """Strip server-populated fields before a replace."""
    body = {k: v for k, v in manifest.items() if k != "status"}
    metadata = {
        k: v for k, v in (body.get("metadata") or {}).items() if k != "managedFields"
    }
    if resource_version is not None:
        metadata["resourceVersion"] = resource_version
    body["metadata"] = metadata
    return body


class KubernetesConnector(SubstrateConnector):
    def __init__(
        self,
        watch_namespace: str = "",
        api_timeout: float = 15.0,
        api_client: Optional[client.ApiClient] = None,
    ):
        if api_client is None:
            try:
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config")
            except config.ConfigException:
                config.load_kube_config()
                logger.info("Loaded kubeconfig for Kubernetes client")
            api_client = client.ApiClient()
        self.api_client = api_client
        self.custom = client.CustomObjectsApi(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.core = client.CoreV1Api(api_client)
        self.watch_namespace = watch_namespace
        self.api_timeout = api_timeout

    def to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    async def _call(
        self, operation: str, kind: str, name: str, fn: Callable, *args, **kwargs
    ) -> Any:
        kwargs.setdefault("_request_timeout", self.api_timeout)
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, operation, kind, name) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientSubstrateError(operation, f"{type(e).__name__}: {e}") from e

    async def list_workloads(self) -> list[WorkloadKey]:
        if self.watch_namespace:
            result = await self._call(
                "list GratefulSets",
                KIND,
                self.watch_namespace,
                self.custom.list_namespaced_custom_object,
                GROUP,
                VERSION,
                self.watch_namespace,
                PLURAL,
            )
        else:
            result = await self._call(
                "list GratefulSets",
                KIND,
                "*",
                self.custom.list_cluster_custom_object,
                GROUP,
                VERSION,
                PLURAL,
            )
        keys = []
        for item in result.get("items", []):
            metadata = item.get("metadata") or {}
            keys.append(
                WorkloadKey(namespace=metadata["namespace"], name=metadata["name"])
            )
        return keys

    async def get_workload(self, key: WorkloadKey) -> Optional[LogicalWorkload]:
        try:
            obj = await self._call(
                "get GratefulSet",
                KIND,
                str(key),
                self.custom.get_namespaced_custom_object,
                GROUP,
                VERSION,
                key.namespace,
                PLURAL,
                key.name,
            )
        except NotFoundError:
            return None
        return LogicalWorkload.from_object(obj)

    async def list_pools(self, key: WorkloadKey) -> list[PoolObservation]:
        selector = f"{OWNER_LABEL}={key.name}"
        sts_list = await self._call(
            "list StatefulSets",
            "StatefulSet",
            str(key),
            self.apps.list_namespaced_stateful_set,
            key.namespace,
            label_selector=selector,
        )
        pod_list = await self._call(
            "list Pods",
            "Pod",
            str(key),
            self.core.list_namespaced_pod,
            key.namespace,
            label_selector=selector,
        )
        pods = [self.to_dict(p) for p in pod_list.items]
        pools = []
        for sts in sts_list.items:
            pool = parse_pool(self.to_dict(sts), pods)
            if pool is not None:
                pools.append(pool)
        return pools

    async def create_pool(self, key: WorkloadKey, manifest: dict[str, Any]) -> None:
        await self._call(
            "create StatefulSet",
            "StatefulSet",
            manifest["metadata"]["name"],
            self.apps.create_namespaced_stateful_set,
            key.namespace,
            manifest,
            field_manager=FIELD_MANAGER,
        )

    async def replace_pool(
        self, key: WorkloadKey, manifest: dict[str, Any], resource_version: str
    ) -> None:
        name = manifest["metadata"]["name"]
        await self._call(
            "replace StatefulSet",
            "StatefulSet",
            name,
            self.apps.replace_namespaced_stateful_set,
            name,
            key.namespace,
            writable(manifest, resource_version),
            field_manager=FIELD_MANAGER,
        )

    async def delete_pool(
        self, key: WorkloadKey, name: str, resource_version: Optional[str]
    ) -> None:
        options = client.V1DeleteOptions(
            propagation_policy="Background",
            preconditions=client.V1Preconditions(resource_version=resource_version),
        )
        try:
            await self._call(
                "delete StatefulSet",
                "StatefulSet",
                name,
                self.apps.delete_namespaced_stateful_set,
                name,
                key.namespace,
                body=options,
            )
        except NotFoundError:
            logger.info(f"StatefulSet {key.namespace}/{name} already gone")

    async def delete_pod(self, key: WorkloadKey, name: str, uid: Optional[str]) -> None:
        options = client.V1DeleteOptions(preconditions=client.V1Preconditions(uid=uid))
        try:
            await self._call(
                "delete Pod",
                "Pod",
                name,
                self.core.delete_namespaced_pod,
                name,
                key.namespace,
                body=options,
            )
        except NotFoundError:
            logger.info(f"Pod {key.namespace}/{name} already gone")

    async def _read_config_map(self, key: WorkloadKey) -> Optional[dict[str, Any]]:
        try:
            cm = await self._call(
                "read ConfigMap",
                "ConfigMap",
                key.ledger_name,
                self.core.read_namespaced_config_map,
                key.ledger_name,
                key.namespace,
            )
        except NotFoundError:
            return None
        return self.to_dict(cm)

    async def read_ledger(self, key: WorkloadKey) -> Optional[LedgerDocument]:
        cm = await self._read_config_map(key)
        if cm is None:
            return None
        metadata = cm.get("metadata") or {}
        return decode_ledger(
            cm.get("data"), metadata.get("annotations"), metadata.get("resourceVersion")
        )

    async def create_ledger(
        self, key: WorkloadKey, document: LedgerDocument, owner_uid: Optional[str]
    ) -> LedgerDocument:
        data, annotations = encode_ledger(document)
        metadata: dict[str, Any] = {
            "name": key.ledger_name,
            "namespace": key.namespace,
            "labels": {OWNER_LABEL: key.name},
            "annotations": annotations,
        }
        if owner_uid:
            metadata["ownerReferences"] = [
                {
                    "apiVersion": f"{GROUP}/{VERSION}",
                    "kind": KIND,
                    "name": key.name,
                    "uid": owner_uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ]
        body = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}
        created = await self._call(
            "create ConfigMap",
            "ConfigMap",
            key.ledger_name,
            self.core.create_namespaced_config_map,
            key.namespace,
            body,
            field_manager=FIELD_MANAGER,
        )
        created = self.to_dict(created)
        return decode_ledger(
            created.get("data"),
            created["metadata"].get("annotations"),
            created["metadata"].get("resourceVersion"),
        )

    async def write_ledger(
        self, key: WorkloadKey, document: LedgerDocument
    ) -> LedgerDocument:
        current = await self._read_config_map(key)
        if current is None:
            raise NotFoundError("ConfigMap", f"{key.namespace}/{key.ledger_name}")
        data, annotations = encode_ledger(document)
        metadata = dict(current.get("metadata") or {})
        metadata.pop("managedFields", None)
        metadata["annotations"] = {**(metadata.get("annotations") or {}), **annotations}
        # The replace is conditional on the version the document was read at.
        metadata["resourceVersion"] = document.resource_version
        body = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data}
        written = await self._call(
            "replace ConfigMap",
            "ConfigMap",
            key.ledger_name,
            self.core.replace_namespaced_config_map,
            key.ledger_name,
            key.namespace,
            body,
            field_manager=FIELD_MANAGER,
        )
        written = self.to_dict(written)
        return decode_ledger(
            written.get("data"),
            written["metadata"].get("annotations"),
            written["metadata"].get("resourceVersion"),
        )

    async def update_status(self, key: WorkloadKey, status: GratefulSetStatus) -> None:
        await self._call(
            "patch GratefulSet status",
            KIND,
            str(key),
            self.custom.patch_namespaced_custom_object_status,
            GROUP,
            VERSION,
            key.namespace,
            PLURAL,
            key.name,
            {"status": status.to_api()},
        )

    async def watch(self, notify: Callable[[WorkloadKey], None]) -> None:
        loop = asyncio.get_running_loop()
        stop = threading.Event()

        def emit(key: WorkloadKey) -> None:
            loop.call_soon_threadsafe(notify, key)

        threads = [
            threading.Thread(
                target=self._stream_loop,
                args=(kind, fn, args, kwargs, key_fn, emit, stop),
                name=f"watch-{kind}",
                daemon=True,
            )
            for kind, fn, args, kwargs, key_fn in self._watch_targets()
        ]
        for thread in threads:
            thread.start()
        try:
            await asyncio.Event().wait()
        finally:
            stop.set()

    def _watch_targets(self) -> list[tuple]:
        ns = self.watch_namespace
        owned = {"label_selector": OWNER_LABEL}
        if ns:
            gs = (
                self.custom.list_namespaced_custom_object,
                (GROUP, VERSION, ns, PLURAL),
            )
            sts = (self.apps.list_namespaced_stateful_set, (ns,))
            pods = (self.core.list_namespaced_pod, (ns,))
            cms = (self.core.list_namespaced_config_map, (ns,))
        else:
            gs = (self.custom.list_cluster_custom_object, (GROUP, VERSION, PLURAL))
            sts = (self.apps.list_stateful_set_for_all_namespaces, ())
            pods = (self.core.list_pod_for_all_namespaces, ())
            cms = (self.core.list_config_map_for_all_namespaces, ())

        generations: dict[str, int] = {}

        def gratefulset_key(event_type: str, obj: dict[str, Any]) -> Optional[WorkloadKey]:
            metadata = obj.get("metadata") or {}
            key = WorkloadKey(namespace=metadata["namespace"], name=metadata["name"])
            generation = int(metadata.get("generation") or 0)
            # Our own status writes bump the resourceVersion but not the generation.
            if event_type == "MODIFIED" and generations.get(str(key)) == generation:
                return None
            if event_type == "DELETED":
                generations.pop(str(key), None)
            else:
                generations[str(key)] = generation
            return key

        def owned_key(event_type: str, obj: dict[str, Any]) -> Optional[WorkloadKey]:
            metadata = obj.get("metadata") or {}
            owner = (metadata.get("labels") or {}).get(OWNER_LABEL)
            if not owner:
                return None
            return WorkloadKey(namespace=metadata["namespace"], name=owner)

        return [
            (KIND, gs[0], gs[1], {}, gratefulset_key),
            ("StatefulSet", sts[0], sts[1], owned, owned_key),
            ("Pod", pods[0], pods[1], owned, owned_key),
            ("ConfigMap", cms[0], cms[1], owned, owned_key),
        ]

    def _stream_loop(
        self,
        kind: str,
        fn: Callable,
        args: tuple,
        kwargs: dict[str, Any],
        key_fn: Callable[[str, dict[str, Any]], Optional[WorkloadKey]],
        emit: Callable[[WorkloadKey], None],
        stop: threading.Event,
    ) -> None:
        while not stop.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(
                    fn, *args, timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs
                ):
                    if stop.is_set():
                        w.stop()
                        break
                    obj = self.to_dict(event["object"])
                    if event["type"] == "ERROR":
                        logger.warning(f"{kind} watch error: {obj.get('message')}")
                        break
                    key = key_fn(event["type"], obj)
                    if key is not None:
                        emit(key)
            except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
                logger.warning(
                    f"{kind} watch interrupted ({type(e).__name__}: {e}), "
                    f"restarting in {WATCH_RESTART_DELAY}s"
                )
                time.sleep(WATCH_RESTART_DELAY)
