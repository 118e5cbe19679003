"""Restoring startup groups to their recorded replica counts."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from envscaledown.kube import (
    ORIGINAL_REPLICAS_ANNOTATION,
    POLL_INTERVAL,
    TIMEOUT,
    UPDATED_AT_ANNOTATION,
    Backoff,
    KubeError,
    retry_on_conflict,
)
from envscaledown.startup import K8sResource

logger = logging.getLogger(__name__)

_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _parse_replicas(raw: str) -> int:
    if not _INTEGER.fullmatch(raw):
        raise ValueError(f"parsing an int from {raw}: invalid syntax")
    value = int(raw)
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"parsing an int from {raw}: value out of range")
    return value


def _accessors(client: Any, resource_type: str):
    if resource_type == "deployment":
        return client.get_deployment, client.update_deployment
    if resource_type == "statefulset":
        return client.get_stateful_set, client.update_stateful_set
    return None


def _restore_replicas(client: Any, resource: K8sResource, backoff: Backoff) -> None:
    accessors = _accessors(client, resource.resource_type)
    if accessors is None:
        return
    get, update = accessors

    def attempt() -> None:
        try:
            result = get(resource.namespace, resource.name)
        except KubeError as exc:
            raise type(exc)(f"getting {resource.resource_type} {resource.name}: {exc}") from exc
        meta = result.setdefault("metadata", {})
        annotations = meta.get("annotations") or {}
        raw = annotations.get(ORIGINAL_REPLICAS_ANNOTATION)
        if raw is None:
            logger.warning(
                "NumReplicas Annotation key not set. The resource might have been created after "
                "the scaledown or was already scaled to zero. Skipping",
                extra={
                    "key": ORIGINAL_REPLICAS_ANNOTATION,
                    "type": resource.resource_type,
                    "resource": resource.name,
                    "namespace": resource.namespace,
                },
            )
            return
        replicas = _parse_replicas(raw)
        result.setdefault("spec", {})["replicas"] = replicas
        del annotations[ORIGINAL_REPLICAS_ANNOTATION]
        annotations[UPDATED_AT_ANNOTATION] = _rfc3339_now()
        meta["annotations"] = annotations
        update(result)

    try:
        retry_on_conflict(backoff, attempt)
    except (KubeError, ValueError) as exc:
        raise type(exc)(
            f"failed to update {resource.resource_type} {resource.name} "
            f"in Namespace {resource.namespace}: {exc}"
        ) from exc
    logger.debug(
        "Workload scaled up",
        extra={resource.resource_type: resource.name, "namespace": resource.namespace},
    )


def scale_up_group(
    client: Any,
    order: Mapping[int, list[K8sResource]] | None,
    group: int,
    backoff: Backoff | None = None,
    wait_for_pods: bool = True,
    timeout: float = TIMEOUT,
    interval: float = POLL_INTERVAL,
) -> None:
    """Scale every workload in the group back to the replica count recorded at scale down."""
    resources = (order or {}).get(group)
    if resources is None:
        raise LookupError(f"scaleUpGroup {group} not found in the startUpOrder map")
    backoff = backoff or Backoff()

    for resource in resources:
        _restore_replicas(client, resource, backoff)

    if wait_for_pods:
        try:
            wait_for_pods_ready(client, resources, timeout, interval)
        except (KubeError, ValueError, TimeoutError) as exc:
            raise type(exc)(f"waiting for pods to be ready: {exc}") from exc


def _is_ready(obj: Mapping[str, Any]) -> bool:
    replicas = (obj.get("spec") or {}).get("replicas", 1)
    status = obj.get("status") or {}
    generation = (obj.get("metadata") or {}).get("generation", 0)
    counts_match = all(
        status.get(key, 0) == replicas
        for key in ("availableReplicas", "updatedReplicas", "readyReplicas")
    )
    return counts_match and status.get("observedGeneration", 0) >= generation


def wait_for_pods_ready(
    client: Any,
    resources: list[K8sResource],
    timeout: float = TIMEOUT,
    interval: float = POLL_INTERVAL,
) -> None:
    """Poll every interval until every workload is updated and ready; TimeoutError after timeout."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining < interval:
            time.sleep(max(remaining, 0.0))
            raise TimeoutError("context deadline exceeded")
        time.sleep(interval)

        if pods_updated_and_ready(resources):
            return

        for resource in resources:
            accessors = _accessors(client, resource.resource_type)
            if accessors is None:
                raise ValueError(
                    "expected 'deployment' or 'statefulset' type, "
                    f"but got '{resource.resource_type}'"
                )
            get = accessors[0]
            logger.debug(
                "Checking if pods are updated and ready",
                extra={
                    "type": resource.resource_type,
                    "resource": resource.name,
                    "namespace": resource.namespace,
                },
            )
            try:
                obj = get(resource.namespace, resource.name)
            except KubeError as exc:
                raise KubeError(
                    f"getting {resource.resource_type} {resource.name} "
                    f"in Namespace {resource.namespace}: {exc}"
                ) from exc
            if _is_ready(obj):
                resource.pods_updated_and_ready = True
                logger.debug(
                    "Workload ready",
                    extra={
                        "type": resource.resource_type,
                        "resource": resource.name,
                        "namespace": resource.namespace,
                    },
                )


def pods_updated_and_ready(resources: Iterable[K8sResource]) -> bool:
    """True once every resource has been seen updated and ready."""
    return all(resource.pods_updated_and_ready for resource in resources)