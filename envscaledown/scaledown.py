"""Scaling startup groups to zero and clearing out the remaining pods."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from envscaledown.kube import (
    APP_NAME,
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


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _accessors(client: Any, resource_type: str):
    if resource_type == "deployment":
        return client.get_deployment, client.update_deployment
    if resource_type == "statefulset":
        return client.get_stateful_set, client.update_stateful_set
    return None


def _scale_to_zero(client: Any, resource: K8sResource, backoff: Backoff) -> None:
    accessors = _accessors(client, resource.resource_type)
    if accessors is None:
        return
    get, update = accessors

    def attempt() -> None:
        result = get(resource.namespace, resource.name)
        meta = result.setdefault("metadata", {})
        spec = result.setdefault("spec", {})
        if spec.get("replicas") == 0:
            logger.warning(
                "The workload has already been scaled to zero. Skipping",
                extra={
                    "type": resource.resource_type,
                    "resource": resource.name,
                    "namespace": resource.namespace,
                },
            )
            return
        annotations = meta.get("annotations") or {}
        meta["annotations"] = annotations
        spec["replicas"] = 0
        annotations[ORIGINAL_REPLICAS_ANNOTATION] = str(resource.replica_count)
        annotations[UPDATED_AT_ANNOTATION] = _rfc3339_now()
        update(result)

    try:
        retry_on_conflict(backoff, attempt)
    except KubeError as exc:
        raise KubeError(
            f"failed to update {resource.resource_type} {resource.name} "
            f"in Namespace {resource.namespace}: {exc}"
        ) from exc
    logger.debug(
        "Workload scaled down",
        extra={resource.resource_type: resource.name, "namespace": resource.namespace},
    )


def scale_down_group(
    client: Any,
    order: Mapping[int, list[K8sResource]] | None,
    group: int,
    backoff: Backoff | None = None,
    wait_for_pods: bool = True,
    timeout: float = TIMEOUT,
    interval: float = POLL_INTERVAL,
) -> None:
    """Scale every workload in the group to zero, recording its replica count."""
    resources = (order or {}).get(group)
    if resources is None:
        raise LookupError(f"scaleDownGroup {group} not found in the startUpOrder map")
    backoff = backoff or Backoff()

    for resource in resources:
        _scale_to_zero(client, resource, backoff)

    if wait_for_pods:
        try:
            wait_for_pod_termination(client, resources, timeout, interval)
        except (KubeError, TimeoutError) as exc:
            raise type(exc)(f"waiting for pods to terminate: {exc}") from exc


def wait_for_pod_termination(
    client: Any,
    resources: list[K8sResource],
    timeout: float = TIMEOUT,
    interval: float = POLL_INTERVAL,
) -> None:
    """Poll every interval until no resource has pods left; TimeoutError after timeout."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining < interval:
            time.sleep(max(remaining, 0.0))
            raise TimeoutError("context deadline exceeded")
        time.sleep(interval)

        if not pods_still_running(resources):
            return

        for resource in resources:
            logger.debug(
                "Finding non-terminated pods",
                extra={
                    "type": resource.resource_type,
                    "resource": resource.name,
                    "namespace": resource.namespace,
                    "selector": resource.selector,
                },
            )
            try:
                pods = client.list_pods(resource.namespace, resource.selector)
            except KubeError as exc:
                raise KubeError(f"listing pods: {exc}") from exc
            if not pods:
                logger.debug(
                    "Pods have been terminated",
                    extra={"resource": resource.name, "namespace": resource.namespace},
                )
                resource.pods_terminated = True
                continue
            logger.debug(
                "Pods still running",
                extra={
                    "resource": resource.name,
                    "namespace": resource.namespace,
                    "podCount": len(pods),
                },
            )


def pods_still_running(resources: Iterable[K8sResource]) -> bool:
    """True while any resource has not yet been seen without pods."""
    return any(not resource.pods_terminated for resource in resources)


def terminate_standalone_pods(client: Any) -> None:
    """Delete every pod left in the cluster except those of this app."""
    try:
        pods = client.list_pods("", "")
    except KubeError as exc:
        raise KubeError(f"listing pods: {exc}") from exc

    for pod in pods:
        meta = pod.get("metadata") or {}
        if (meta.get("labels") or {}).get("app") == APP_NAME:
            logger.debug(
                "Pod has matching app label and so is likely running this app, skipping",
                extra={"appLabel": APP_NAME},
            )
            continue
        name = meta.get("name", "")
        namespace = meta.get("namespace", "")
        logger.debug("Terminating remaining pod", extra={"pod": name, "namespace": namespace})
        try:
            client.delete_pod(namespace, name)
        except KubeError as exc:
            raise KubeError(f"deleting pod {name} in Namespace {namespace}: {exc}") from exc