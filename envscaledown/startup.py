"""Grouping deployments and statefulsets into ordered startup groups."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from envscaledown.kube import DEFAULT_STARTUP_GROUP, STARTUP_ORDER_ANNOTATION, KubeError

logger = logging.getLogger(__name__)

_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class K8sResource:
    """A scalable workload and the progress of waiting on its pods."""

    name: str
    resource_type: str = ""
    namespace: str = ""
    replica_count: int = 0
    selector: str = ""
    pods_terminated: bool = False
    pods_updated_and_ready: bool = False


def selector_to_string(selector: Mapping[str, Any] | None) -> str:
    """Render a LabelSelector as the label-selector query string the API accepts."""
    if not selector:
        return ""
    requirements: list[tuple[str, str]] = []
    for key, value in (selector.get("matchLabels") or {}).items():
        if not key:
            raise ValueError("convert label selector to a string format: empty label key")
        requirements.append((key, f"{key}={value}"))

    for expression in selector.get("matchExpressions") or []:
        key = expression.get("key", "")
        operator = expression.get("operator")
        values = expression.get("values") or []
        if not key:
            raise ValueError("convert label selector to a string format: empty label key")
        if operator in ("In", "NotIn"):
            if not values:
                raise ValueError(
                    "convert label selector to a string format: "
                    "for 'in', 'notin' operators, values set can't be empty"
                )
            joined = ",".join(sorted(set(values)))
            requirements.append((key, f"{key} {operator.lower()} ({joined})"))
        elif operator in ("Exists", "DoesNotExist"):
            if values:
                raise ValueError(
                    "convert label selector to a string format: "
                    "values set must be empty for exists and does not exist"
                )
            requirements.append((key, key if operator == "Exists" else f"!{key}"))
        else:
            raise ValueError(
                f'convert label selector to a string format: "{operator}" '
                "is not a valid label selector operator"
            )

    requirements.sort(key=lambda requirement: requirement[0])
    return ",".join(text for _, text in requirements)


def _resource(item: Mapping[str, Any], resource_type: str) -> K8sResource:
    meta = item.get("metadata") or {}
    spec = item.get("spec") or {}
    return K8sResource(
        name=meta.get("name", ""),
        resource_type=resource_type,
        namespace=meta.get("namespace", ""),
        replica_count=spec.get("replicas", 1),
        selector=selector_to_string(spec.get("selector")),
    )


def _group_for(item: Mapping[str, Any], resource: K8sResource) -> int:
    annotations = (item.get("metadata") or {}).get("annotations") or {}
    raw = annotations.get(STARTUP_ORDER_ANNOTATION)
    if raw is None:
        return DEFAULT_STARTUP_GROUP
    if not _INTEGER.fullmatch(raw):
        logger.warning(
            "Unable to parse the int from the startup order key. Assigning to default group",
            extra={
                resource.resource_type: resource.name,
                "namespace": resource.namespace,
                "originalOrder": raw,
                "key": STARTUP_ORDER_ANNOTATION,
            },
        )
        return DEFAULT_STARTUP_GROUP
    group = int(raw)
    if group < 0 or group >= DEFAULT_STARTUP_GROUP:
        logger.warning(
            "startUpOrder number can only be from 0 to 99. Assigning to default group",
            extra={
                resource.resource_type: resource.name,
                "namespace": resource.namespace,
                "originalOrder": group,
                "defaultGroup": DEFAULT_STARTUP_GROUP,
            },
        )
        return DEFAULT_STARTUP_GROUP
    return group


def build_startup_order(client: Any) -> dict[int, list[K8sResource]]:
    """Map each startup group number to the deployments and statefulsets in it."""
    orders: dict[int, list[K8sResource]] = {}
    kinds = (
        ("deployment", "deployments", client.list_deployments),
        ("statefulset", "statefulsets", client.list_stateful_sets),
    )
    for resource_type, plural, lister in kinds:
        try:
            items = lister("")
        except KubeError as exc:
            raise KubeError(f"listing K8s {plural}: {exc}") from exc
        for item in items:
            resource = _resource(item, resource_type)
            orders.setdefault(_group_for(item, resource), []).append(resource)

    logger.debug("Completed building startUpOrder", extra={"orders": orders})
    return orders