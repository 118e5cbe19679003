"""Command entry point: scale the environment and report failures."""

from __future__ import annotations

import argparse
import logging
import sys

from envscaledown.config import ScaleAction, load_config, setup_logging
from envscaledown.newrelic import new_relic_client_from_env, update_alert_policies
from envscaledown.service import Service
from envscaledown.slack import notify, slack_notifier_from_env

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Scale the cluster according to SCALE_ACTION; returns the process exit status."""
    parser = argparse.ArgumentParser(
        prog="envscaledown",
        description=(
            "Scale Kubernetes workloads down or up in startup-group order. "
            "Configured through SCALE_ACTION, SUSPEND_CRONJOB, KUBE_CONTEXT, LOG_LEVEL, "
            "SLACK_* and NEW_RELIC_* environment variables."
        ),
    )
    parser.parse_args(argv)

    setup_logging()
    notifier = slack_notifier_from_env()

    def fail(stage: str, exc: Exception, status: int) -> int:
        logger.error(stage, extra={"error": str(exc)})
        notify(notifier, f"error whilst {stage}: {exc}")
        return status

    try:
        new_relic = new_relic_client_from_env()
    except Exception as exc:
        return fail("creating New Relic client", exc, 1)

    try:
        config = load_config()
    except Exception as exc:
        return fail("creating config", exc, 2)

    if new_relic is not None and config.action is ScaleAction.SCALE_DOWN:
        try:
            update_alert_policies(new_relic, ScaleAction.SCALE_DOWN)
        except Exception as exc:
            return fail("updating New Relic", exc, 3)

    try:
        service = Service(config)
    except Exception as exc:
        return fail("creating service", exc, 4)

    try:
        service.run()
    except Exception as exc:
        return fail("running", exc, 5)

    if new_relic is not None and config.action is ScaleAction.SCALE_UP:
        try:
            update_alert_policies(new_relic, ScaleAction.SCALE_UP)
        except Exception as exc:
            return fail("updating New Relic", exc, 6)

    return 0


if __name__ == "__main__":
    sys.exit(main())