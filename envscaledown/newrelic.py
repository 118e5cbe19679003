"""Suspending and re-enabling New Relic NRQL alert conditions around a scaling run."""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Iterable, Mapping

import requests

from envscaledown.config import ScaleAction

logger = logging.getLogger(__name__)

_REST_BASE_URLS = {
    "us": "https://api.newrelic.com/v2",
    "eu": "https://api.eu.newrelic.com/v2",
}

_INTEGER = re.compile(r"[+-]?[0-9]+")


class NewRelicClient:
    """Client for the NRQL alert conditions of a set of alert policies."""

    def __init__(
        self,
        api_key: str,
        policy_ids: Iterable[int],
        region: str = "eu",
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if region.lower() not in _REST_BASE_URLS:
            raise ValueError(f"creating New Relic client: invalid region {region!r}")
        self.base_url = _REST_BASE_URLS[region.lower()]
        self.policy_ids = list(policy_ids)
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"X-Api-Key": api_key, "Accept": "application/json"})

    def list_nrql_conditions(self, policy_id: int) -> list[dict[str, Any]]:
        """Return every NRQL condition in the policy, following pagination."""
        url: str | None = f"{self.base_url}/alerts_nrql_conditions.json"
        params: dict[str, Any] | None = {"policy_id": policy_id}
        conditions: list[dict[str, Any]] = []
        while url:
            response = self._session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            conditions.extend(response.json().get("nrql_conditions") or [])
            url, params = response.links.get("next", {}).get("url"), None
        return conditions

    def update_nrql_condition(self, condition: Mapping[str, Any]) -> dict[str, Any]:
        """Store the condition and return it as the server saved it."""
        response = self._session.put(
            f"{self.base_url}/alerts_nrql_conditions/{condition['id']}.json",
            json={"nrql_condition": dict(condition)},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json().get("nrql_condition") or {}


def new_relic_client_from_env(environ: Mapping[str, str] | None = None) -> NewRelicClient | None:
    """Build a client from NEW_RELIC_* settings; None when alerts are not to be touched."""
    environ = os.environ if environ is None else environ
    api_key = environ.get("NEW_RELIC_API_KEY", "")
    if not api_key:
        logger.warning("NEW_RELIC_API_KEY not set. Will not disable any New Relic alert policies")
        return None
    region = environ.get("NEW_RELIC_REGION", "") or "eu"
    ids = environ.get("NEW_RELIC_ALERT_POLICIES", "")
    if not ids:
        logger.warning(
            "NEW_RELIC_ALERT_POLICIES envar not set. Will not disable any New Relic alert policies"
        )
        return None

    policy_ids = []
    for policy in ids.split(","):
        if not _INTEGER.fullmatch(policy):
            raise ValueError(f"unable to parse New Relic alert policy ID {policy} into an int")
        policy_ids.append(int(policy))
    return NewRelicClient(api_key, policy_ids, region)


def update_alert_policies(client: NewRelicClient, action: ScaleAction | str) -> None:
    """Enable (ScaleUp) or disable (ScaleDown) every NRQL condition in the client's policies."""
    try:
        action = ScaleAction(action)
    except ValueError:
        raise ValueError("invalid Action: must be 'ScaleUp' or 'ScaleDown'") from None
    enabled = action is ScaleAction.SCALE_UP
    verb = "Enabling" if enabled else "Suspending"

    for policy_id in client.policy_ids:
        logger.info(
            f"{verb} New Relic alert policy",
            extra={"action": action.value, "policyID": policy_id},
        )
        try:
            conditions = client.list_nrql_conditions(policy_id)
        except requests.RequestException as exc:
            raise RuntimeError(f"listing nrql conditions in policyID {policy_id}: {exc}") from exc
        logger.debug(
            "Found NRQL alert conditions", extra={"policyID": policy_id, "count": len(conditions)}
        )
        for condition in conditions:
            logger.debug(f"{verb} alert condition", extra={"condition": condition.get("name")})
            try:
                client.update_nrql_condition(dict(condition, enabled=enabled))
            except requests.RequestException as exc:
                raise RuntimeError(
                    f"updating ({action.value}) New Relic alert condition {condition.get('id')} "
                    f"in policy {policy_id}: {exc}"
                ) from exc