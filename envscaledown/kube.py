"""A small Kubernetes API client covering the resources the scaler touches."""

from __future__ import annotations

import base64
import logging
import os
import random
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

import requests
import yaml

logger = logging.getLogger(__name__)

STARTUP_ORDER_ANNOTATION = "eks-env-scaledown/startup-order"
ORIGINAL_REPLICAS_ANNOTATION = "eks-env-scaledown/original-replicas"
UPDATED_AT_ANNOTATION = "eks-env-scaledown/updated-at"
CRONJOB_WAS_DISABLED_ANNOTATION = "eks-env-scaledown/cronjob-was-disabled"
DEFAULT_STARTUP_GROUP = 100
APP_NAME = "eks-env-scaledown"

TIMEOUT = 15 * 60.0
POLL_INTERVAL = 2.0

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

T = TypeVar("T")


class KubeError(Exception):
    """A request to the Kubernetes API failed."""


class ConflictError(KubeError):
    """The object was modified concurrently (HTTP 409)."""


class NotFoundError(KubeError):
    """The requested object does not exist (HTTP 404)."""


@dataclass(frozen=True)
class Backoff:
    """Retry schedule: first delay, growth factor, jitter and number of attempts."""

    duration: float = 0.01
    factor: float = 1.0
    jitter: float = 0.1
    steps: int = 5

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError("Backoff needs at least one step")

    def _delays(self):
        duration = self.duration
        for _ in range(self.steps - 1):
            yield duration + random.random() * self.jitter * duration
            duration *= self.factor or 1


def retry_on_conflict(backoff: Backoff, fn: Callable[[], T]) -> T:
    """Call fn, retrying on ConflictError per backoff; other errors propagate at once."""
    delays = backoff._delays()
    while True:
        try:
            return fn()
        except ConflictError:
            delay = next(delays, None)
            if delay is None:
                raise
            time.sleep(delay)


_APPS = "/apis/apps/v1"
_BATCH = "/apis/batch/v1"
_CORE = "/api/v1"


def _path(api: str, plural: str, namespace: str, name: str = "") -> str:
    path = f"{api}/namespaces/{namespace}/{plural}" if namespace else f"{api}/{plural}"
    return f"{path}/{name}" if name else path


class KubeClient:
    """Talks to a Kubernetes API server; objects are plain JSON dictionaries."""

    def __init__(
        self,
        server: str,
        *,
        token: str | None = None,
        verify: bool | str = True,
        cert: str | tuple[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.server = server.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self.session.cert = cert
        self.session.auth = auth

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self.session.request(
                method, self.server + path, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise KubeError(f"{method} {path}: {exc}") from exc
        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except ValueError:
                message = response.text
            error = {404: NotFoundError, 409: ConflictError}.get(response.status_code, KubeError)
            raise error(f"{method} {path}: {response.status_code}: {message}")
        return response.json() if response.content else {}

    def _list(self, path: str, params: Mapping[str, str] | None = None) -> list[dict]:
        return list(self._request("GET", path, params=params).get("items") or [])

    def _update(self, api: str, plural: str, obj: dict) -> dict:
        meta = obj["metadata"]
        return self._request(
            "PUT", _path(api, plural, meta.get("namespace", ""), meta["name"]), json=obj
        )

    def list_deployments(self, namespace: str = "") -> list[dict]:
        return self._list(_path(_APPS, "deployments", namespace))

    def get_deployment(self, namespace: str, name: str) -> dict:
        return self._request("GET", _path(_APPS, "deployments", namespace, name))

    def update_deployment(self, obj: dict) -> dict:
        return self._update(_APPS, "deployments", obj)

    def list_stateful_sets(self, namespace: str = "") -> list[dict]:
        return self._list(_path(_APPS, "statefulsets", namespace))

    def get_stateful_set(self, namespace: str, name: str) -> dict:
        return self._request("GET", _path(_APPS, "statefulsets", namespace, name))

    def update_stateful_set(self, obj: dict) -> dict:
        return self._update(_APPS, "statefulsets", obj)

    def list_cron_jobs(self, namespace: str = "") -> list[dict]:
        return self._list(_path(_BATCH, "cronjobs", namespace))

    def get_cron_job(self, namespace: str, name: str) -> dict:
        return self._request("GET", _path(_BATCH, "cronjobs", namespace, name))

    def update_cron_job(self, obj: dict) -> dict:
        return self._update(_BATCH, "cronjobs", obj)

    def list_pods(self, namespace: str = "", label_selector: str = "") -> list[dict]:
        params = {"labelSelector": label_selector} if label_selector else None
        return self._list(_path(_CORE, "pods", namespace), params)

    def delete_pod(self, namespace: str, name: str) -> None:
        self._request("DELETE", _path(_CORE, "pods", namespace, name))


def _named(entries: Any, name: str | None, kind: str) -> dict:
    for entry in entries or []:
        if entry.get("name") == name:
            return entry.get(kind) or {}
    raise KubeError(f'{kind} "{name}" does not exist in kubeconfig')


def _file(base_dir: Path, section: dict, key: str, suffix: str) -> str | None:
    """Path of a file given inline as base64 (key-data) or as a path (key)."""
    encoded = section.get(f"{key}-data")
    if encoded:
        try:
            data = base64.b64decode(encoded)
        except ValueError as exc:
            raise KubeError(f"decoding kubeconfig {key} data: {exc}") from exc
        with tempfile.NamedTemporaryFile(prefix="kubeconfig-", suffix=suffix, delete=False) as fh:
            fh.write(data)
        return fh.name
    if section.get(key):
        return str(base_dir / Path(section[key]).expanduser())
    return None


def load_kubeconfig(path: str | os.PathLike, context: str | None = None) -> KubeClient:
    """Build a client from a kubeconfig file, using the given context or the current one."""
    path = Path(path)
    try:
        document = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise KubeError(f"loading kubeconfig {path}: {exc}") from exc

    context_name = context or document.get("current-context")
    if not context_name:
        raise KubeError("no context selected in kubeconfig")
    ctx = _named(document.get("contexts"), context_name, "context")
    cluster = _named(document.get("clusters"), ctx.get("cluster"), "cluster")
    user = _named(document.get("users"), ctx.get("user"), "user") if ctx.get("user") else {}
    if not cluster.get("server"):
        raise KubeError(f'cluster "{ctx.get("cluster")}" has no server')

    base_dir = path.parent
    verify: bool | str = True
    if cluster.get("insecure-skip-tls-verify"):
        verify = False
    else:
        verify = _file(base_dir, cluster, "certificate-authority", ".ca.crt") or True

    cert_file = _file(base_dir, user, "client-certificate", ".crt")
    key_file = _file(base_dir, user, "client-key", ".key")
    auth = (user["username"], user.get("password", "")) if user.get("username") else None
    return KubeClient(
        cluster["server"],
        token=user.get("token"),
        verify=verify,
        cert=(cert_file, key_file) if cert_file and key_file else cert_file,
        auth=auth,
    )


def in_cluster_client() -> KubeClient:
    """Build a client from the service account mounted into a pod."""
    host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "")
    if not host or not port:
        raise KubeError(
            "unable to load in-cluster configuration, "
            "KUBERNETES_SERVICE_HOST and KUBERNETES_SERVICE_PORT must be defined"
        )
    try:
        token = (SERVICE_ACCOUNT_DIR / "token").read_text().strip()
    except OSError as exc:
        raise KubeError(f"reading service account token: {exc}") from exc
    ca_file = SERVICE_ACCOUNT_DIR / "ca.crt"
    if ":" in host:
        host = f"[{host}]"
    return KubeClient(
        f"https://{host}:{port}", token=token, verify=str(ca_file) if ca_file.exists() else True
    )


def client_from_environment(environ: Mapping[str, str] | None = None) -> KubeClient:
    """Use KUBE_CONTEXT from ~/.kube/config when set, otherwise the in-cluster service account."""
    environ = os.environ if environ is None else environ
    context = environ.get("KUBE_CONTEXT", "")
    if context:
        logger.info("Using local kubeconfig context", extra={"context": context})
        home = environ.get("HOME") or str(Path.home())
        try:
            return load_kubeconfig(Path(home) / ".kube" / "config", context)
        except KubeError as exc:
            raise KubeError(f"building K8s client config from the local host: {exc}") from exc
    try:
        return in_cluster_client()
    except KubeError as exc:
        raise KubeError(f"building K8s client config from the cluster: {exc}") from exc