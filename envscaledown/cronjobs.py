"""Suspending and resuming CronJobs around a scaling run."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from envscaledown.config import ScaleAction
from envscaledown.kube import (
    APP_NAME,
    CRONJOB_WAS_DISABLED_ANNOTATION,
    UPDATED_AT_ANNOTATION,
    Backoff,
    KubeError,
    retry_on_conflict,
)

logger = logging.getLogger(__name__)


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def update_cron_jobs(client: Any, action: ScaleAction | str, backoff: Backoff | None = None) -> None:
    """Suspend (ScaleDown) or resume (ScaleUp) every CronJob except the one running this app.

    CronJobs that were already suspended before a scale down are marked so that the
    following scale up leaves them suspended.
    """
    action = ScaleAction(action)
    backoff = backoff or Backoff()
    try:
        cron_jobs = client.list_cron_jobs("")
    except KubeError as exc:
        raise KubeError(f"listing CronJobs: {exc}") from exc

    for cron_job in cron_jobs:
        meta = cron_job.get("metadata") or {}
        name = meta.get("name", "")
        namespace = meta.get("namespace", "")

        def update() -> None:
            result = client.get_cron_job(namespace, name)
            result_meta = result.setdefault("metadata", {})
            if (result_meta.get("labels") or {}).get("app") == APP_NAME:
                logger.debug(
                    "Skipping CronJob as it matches the app label which manages this app",
                    extra={"CronJob": name, "namespace": namespace},
                )
                return
            annotations = result_meta.get("annotations") or {}
            result_meta["annotations"] = annotations
            spec = result.setdefault("spec", {})

            if action is ScaleAction.SCALE_UP:
                if annotations.get(CRONJOB_WAS_DISABLED_ANNOTATION) == "yes":
                    logger.warning(
                        "CronJob was previously disabled. Skipping",
                        extra={"CronJob": name, "namespace": namespace},
                    )
                    return
                spec["suspend"] = False
            else:
                if spec.get("suspend"):
                    logger.warning(
                        "CronJob is already suspended. Setting annotation for scaleup run "
                        "so it isn't enabled at scaleup",
                        extra={"CronJob": name, "namespace": namespace},
                    )
                    annotations[CRONJOB_WAS_DISABLED_ANNOTATION] = "yes"
                spec["suspend"] = True

            annotations[UPDATED_AT_ANNOTATION] = _rfc3339_now()
            client.update_cron_job(result)

        try:
            retry_on_conflict(backoff, update)
        except KubeError as exc:
            raise KubeError(
                f"updating CronJob {name} in namespace {namespace}: {exc}"
            ) from exc