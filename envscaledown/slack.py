"""Slack notifications for failed scaling runs."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

import requests

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
HEADLINE = "A problem has occurred whilst scaling the environment cloud infrastructure"


@dataclass
class SlackNotifier:
    """Posts failure reports to one Slack channel."""

    token: str = field(repr=False)
    channel_id: str
    environment: str
    scale_action: str = ""
    api_url: str = SLACK_POST_MESSAGE_URL
    timeout: float = 30.0

    def post_message(self, message: str) -> None:
        """Send the failure report; raises on transport or API errors."""
        fields = [
            ("Environment", self.environment),
            ("Scaling Type", self.scale_action),
            ("Error", message),
        ]
        payload = {
            "channel": self.channel_id,
            "text": HEADLINE,
            "attachments": [
                {
                    "text": "Details",
                    "fields": [{"title": t, "value": v, "short": False} for t, v in fields],
                }
            ],
        }
        response = requests.post(
            self.api_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        body = response.json()
        if not body.get("ok"):
            raise RuntimeError(f"slack API error: {body.get('error', 'unknown error')}")


def slack_notifier_from_env(environ: Mapping[str, str] | None = None) -> SlackNotifier | None:
    """Build a notifier from SLACK_API_TOKEN, SLACK_CHANNEL_ID and ENVIRONMENT, or None."""
    environ = os.environ if environ is None else environ
    token = environ.get("SLACK_API_TOKEN", "")
    channel_id = environ.get("SLACK_CHANNEL_ID", "")
    environment = environ.get("ENVIRONMENT", "")
    if token and channel_id and environment:
        return SlackNotifier(token, channel_id, environment, environ.get("SCALE_ACTION", ""))
    logger.warning(
        "SLACK_API_TOKEN and/or SLACK_CHANNEL_ID and/or ENVIRONMENT envar(s) not set. "
        "Disabling Slack notifications"
    )
    return None


def notify(notifier: SlackNotifier | None, message: str) -> None:
    """Post message when a notifier is configured; failures are logged, not raised."""
    if notifier is None:
        return
    try:
        notifier.post_message(message)
    except (requests.RequestException, RuntimeError, ValueError) as exc:
        logger.error("sending Slack message", extra={"error": str(exc)})