"""Runtime configuration read from the environment, and logging setup."""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

from envscaledown.kube import KubeError, client_from_environment

logger = logging.getLogger(__name__)


class ScaleAction(str, Enum):
    """Which way the environment is being scaled."""

    SCALE_UP = "ScaleUp"
    SCALE_DOWN = "ScaleDown"


@dataclass
class Config:
    """The cluster client, the action and whether CronJobs are suspended."""

    client: Any
    action: ScaleAction
    suspend_cron_job: bool = True


_BOOLS = {
    **dict.fromkeys(("1", "t", "T", "TRUE", "true", "True"), True),
    **dict.fromkeys(("0", "f", "F", "FALSE", "false", "False"), False),
}


def parse_bool(value: str) -> bool:
    """Parse the boolean spellings accepted by the SUSPEND_CRONJOB setting."""
    try:
        return _BOOLS[value]
    except KeyError:
        raise ValueError(f"invalid boolean value: {value!r}") from None


def load_config(
    environ: Mapping[str, str] | None = None,
    client_factory: Callable[[Mapping[str, str]], Any] | None = None,
) -> Config:
    """Read SCALE_ACTION and SUSPEND_CRONJOB and build the Kubernetes client."""
    environ = os.environ if environ is None else environ
    try:
        action = ScaleAction(environ.get("SCALE_ACTION", ""))
    except ValueError:
        raise ValueError(
            "validating ScaleAction: invalid Action: must be 'ScaleUp' or 'ScaleDown'. "
            "Ensure SCALE_ACTION envar is set correctly"
        ) from None

    suspend = True
    raw_suspend = environ.get("SUSPEND_CRONJOB", "")
    if raw_suspend:
        try:
            suspend = parse_bool(raw_suspend)
        except ValueError:
            logger.warning("Problem parsing SUSPEND_CRONJOB into a boolean. Defaulting to true")

    try:
        client = (client_factory or client_from_environment)(environ)
    except KubeError as exc:
        raise KubeError(f"creating k8s client: {exc}") from exc
    return Config(client=client, action=action, suspend_cron_job=suspend)


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_STANDARD = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "level": "WARN" if record.levelno == logging.WARNING else record.levelname,
            "msg": record.getMessage(),
        }
        payload.update((k, v) for k, v in vars(record).items() if k not in _STANDARD)
        return json.dumps(payload, default=str)


def setup_logging(environ: Mapping[str, str] | None = None) -> int:
    """Send JSON log lines to stdout at the LOG_LEVEL level; returns the level chosen."""
    environ = os.environ if environ is None else environ
    level = _LEVELS.get(environ.get("LOG_LEVEL", "").lower(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)
    return level