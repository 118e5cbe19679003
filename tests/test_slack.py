import json
import logging

import pytest
import requests
import responses

from envscaledown.slack import HEADLINE, SlackNotifier, notify, slack_notifier_from_env

API_URL = "https://slack.example.com/api/chat.postMessage"


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


def _notifier():
    return SlackNotifier(
        token="token",
        channel_id="C123",
        environment="staging",
        scale_action="ScaleDown",
        api_url=API_URL,
    )


def test_from_env_builds_notifier():
    notifier = slack_notifier_from_env(
        {
            "SLACK_API_TOKEN": "token",
            "SLACK_CHANNEL_ID": "C123",
            "ENVIRONMENT": "staging",
            "SCALE_ACTION": "ScaleUp",
        }
    )
    assert notifier.channel_id == "C123"
    assert notifier.environment == "staging"
    assert notifier.scale_action == "ScaleUp"
    assert notifier.token == "token"


@pytest.mark.parametrize("missing", ["SLACK_API_TOKEN", "SLACK_CHANNEL_ID", "ENVIRONMENT"])
def test_from_env_disabled_when_setting_missing(missing):
    environ = {"SLACK_API_TOKEN": "token", "SLACK_CHANNEL_ID": "C123", "ENVIRONMENT": "staging"}
    del environ[missing]
    assert slack_notifier_from_env(environ) is None


def test_token_not_in_repr():
    assert "token" not in repr(_notifier()).replace("token=", "")


def test_post_message_payload(rsps):
    rsps.add(responses.POST, API_URL, json={"ok": True})
    notifier = _notifier()
    notifier.post_message("boom")
    request = rsps.calls[0].request
    body = json.loads(request.body)
    assert request.headers["Authorization"] == "Bearer token"
    assert body["channel"] == notifier.channel_id
    assert body["text"] == HEADLINE
    attachment = body["attachments"][0]
    assert attachment["text"] == "Details"
    assert [(f["title"], f["value"]) for f in attachment["fields"]] == [
        ("Environment", notifier.environment),
        ("Scaling Type", notifier.scale_action),
        ("Error", "boom"),
    ]


def test_post_message_api_error(rsps):
    rsps.add(responses.POST, API_URL, json={"ok": False, "error": "channel_not_found"})
    with pytest.raises(RuntimeError, match="channel_not_found"):
        _notifier().post_message("boom")


def test_post_message_http_error(rsps):
    rsps.add(responses.POST, API_URL, status=500)
    with pytest.raises((requests.RequestException, RuntimeError), match="500"):
        _notifier().post_message("boom")


def test_notify_logs_failures(rsps, caplog):
    rsps.add(responses.POST, API_URL, json={"ok": False, "error": "invalid_auth"})
    with caplog.at_level(logging.ERROR, logger="envscaledown.slack"):
        notify(_notifier(), "boom")
    assert len(rsps.calls) == 1
    assert [r.getMessage() for r in caplog.records] == ["sending Slack message"]


def test_notify_without_notifier_sends_nothing(rsps, caplog):
    with caplog.at_level(logging.DEBUG, logger="envscaledown.slack"):
        result = notify(None, "boom")
    assert result is None
    assert len(rsps.calls) == 0
    assert [r.getMessage() for r in caplog.records] == []


def test_notify_posts_message(rsps):
    rsps.add(responses.POST, API_URL, json={"ok": True})
    notifier = _notifier()
    notify(notifier, "disk full")
    fields = json.loads(rsps.calls[0].request.body)["attachments"][0]["fields"]
    assert fields[0]["value"] == notifier.environment
    assert fields[-1]["value"] == "disk full"