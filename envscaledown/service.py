"""Running a whole scale up or scale down of the environment."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from envscaledown.config import Config, ScaleAction
from envscaledown.cronjobs import update_cron_jobs
from envscaledown.kube import APP_NAME, POLL_INTERVAL, TIMEOUT, Backoff
from envscaledown.scaledown import scale_down_group, terminate_standalone_pods
from envscaledown.scaleup import scale_up_group
from envscaledown.startup import K8sResource, build_startup_order

logger = logging.getLogger(__name__)


@contextmanager
def _step(prefix: str) -> Iterator[None]:
    """Prefix the message of any error raised inside the block, keeping its type."""
    try:
        yield
    except Exception as exc:
        try:
            wrapped = type(exc)(f"{prefix}: {exc}")
        except TypeError:
            wrapped = RuntimeError(f"{prefix}: {exc}")
        raise wrapped from exc


class Service:
    """Scales the workloads of a cluster down or up in startup-group order."""

    def __init__(
        self,
        config: Config,
        *,
        backoff: Backoff | None = None,
        wait_for_pods: bool = True,
        timeout: float = TIMEOUT,
        interval: float = POLL_INTERVAL,
    ) -> None:
        self.config = config
        self.backoff = backoff or Backoff()
        self.wait_for_pods = wait_for_pods
        self.timeout = timeout
        self.interval = interval
        self.startup_order: dict[int, list[K8sResource]] = {}

    def run(self) -> None:
        """Carry out the configured action."""
        action = self.config.action
        if action == ScaleAction.SCALE_UP:
            with _step("scaling environment up"):
                self.scale_up()
        elif action == ScaleAction.SCALE_DOWN:
            with _step("scaling environment down"):
                self.scale_down()
        else:
            raise ValueError("invalid ScaleAction detected. Must be 'ScaleUp' or 'ScaleDown'")

    def _scale_groups(self, scale_group, direction: str, reverse: bool) -> None:
        with _step("building startup order"):
            self.startup_order = build_startup_order(self.config.client)
        groups = sorted(self.startup_order, reverse=reverse)
        logger.debug(f"Scale {direction} order", extra={"order": groups})
        for group in groups:
            logger.info(f"Scaling {direction} group", extra={"group": group})
            with _step(f"scaling {direction} group {group}"):
                scale_group(
                    self.config.client,
                    self.startup_order,
                    group,
                    self.backoff,
                    self.wait_for_pods,
                    self.timeout,
                    self.interval,
                )

    def scale_up(self) -> None:
        """Restore groups from the lowest number up, then resume CronJobs."""
        logger.info("Scaling environment up")
        self._scale_groups(scale_up_group, "up", reverse=False)
        if self.config.suspend_cron_job:
            logger.info(
                "Enabling all CronJobs except for the ones which manage this app "
                "or were previously disabled",
                extra={"AppLabel": APP_NAME},
            )
            with _step("re-enabling CronJobs"):
                update_cron_jobs(self.config.client, ScaleAction.SCALE_UP, self.backoff)

    def scale_down(self) -> None:
        """Suspend CronJobs, scale groups from the highest number down, then delete leftover pods."""
        logger.info("Scaling environment down")
        if self.config.suspend_cron_job:
            logger.info(
                "Suspending all CronJobs except for the ones which manage this app",
                extra={"AppLabel": APP_NAME},
            )
            with _step("suspending CronJobs"):
                update_cron_jobs(self.config.client, ScaleAction.SCALE_DOWN, self.backoff)
        self._scale_groups(scale_down_group, "down", reverse=True)
        logger.info("Terminating standalone pods")
        with _step("terminating standalone pods"):
            terminate_standalone_pods(self.config.client)