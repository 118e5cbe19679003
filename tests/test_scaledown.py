import copy
from datetime import datetime

import pytest

from envscaledown.kube import (
    APP_NAME,
    ORIGINAL_REPLICAS_ANNOTATION,
    UPDATED_AT_ANNOTATION,
    Backoff,
    KubeError,
    NotFoundError,
)
from envscaledown.scaledown import (
    pods_still_running,
    scale_down_group,
    terminate_standalone_pods,
    wait_for_pod_termination,
)
from envscaledown.startup import K8sResource

FAST = Backoff(duration=0.01, factor=1.0, jitter=0.1, steps=1)


class FakeKube:
    def __init__(self, *objects):
        self.store = {}
        for kind, obj in objects:
            meta = obj["metadata"]
            self.store[(kind, meta["namespace"], meta["name"])] = copy.deepcopy(obj)
        self.failures = {}
        self.pod_lists = 0

    def _check(self, verb, kind):
        if (verb, kind) in self.failures:
            raise self.failures[(verb, kind)]

    def _get(self, kind, namespace, name):
        self._check("get", kind)
        try:
            return copy.deepcopy(self.store[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(name) from None

    def _update(self, kind, obj):
        self._check("update", kind)
        meta = obj["metadata"]
        self.store[(kind, meta["namespace"], meta["name"])] = copy.deepcopy(obj)
        return obj

    def get_deployment(self, namespace, name):
        return self._get("deployments", namespace, name)

    def update_deployment(self, obj):
        return self._update("deployments", obj)

    def get_stateful_set(self, namespace, name):
        return self._get("statefulsets", namespace, name)

    def update_stateful_set(self, obj):
        return self._update("statefulsets", obj)

    def list_pods(self, namespace="", label_selector=""):
        self._check("list", "pods")
        self.pod_lists += 1
        wanted = dict(part.split("=", 1) for part in label_selector.split(",") if part)
        pods = []
        for (kind, ns, _), obj in self.store.items():
            if kind != "pods" or (namespace and ns != namespace):
                continue
            labels = obj["metadata"].get("labels") or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                pods.append(copy.deepcopy(obj))
        return pods

    def delete_pod(self, namespace, name):
        self._check("delete", "pods")
        del self.store[("pods", namespace, name)]


def workload(replicas):
    return {"metadata": {"name": "nginx", "namespace": "web"}, "spec": {"replicas": replicas}}


def pod(name, namespace, labels=None):
    meta = {"name": name, "namespace": namespace}
    if labels:
        meta["labels"] = labels
    return ("pods", {"metadata": meta})


KINDS = [
    ("deployment", "deployments", "get_deployment"),
    ("statefulset", "statefulsets", "get_stateful_set"),
]


def order_for(resource_type, replicas):
    return {
        2: [
            K8sResource(
                name="nginx", namespace="web", resource_type=resource_type, replica_count=replicas
            )
        ]
    }


@pytest.mark.parametrize("resource_type, kind, getter", KINDS)
def test_normal_scaledown(resource_type, kind, getter):
    client = FakeKube((kind, workload(3)))
    scale_down_group(client, order_for(resource_type, 3), 2, FAST, wait_for_pods=False)
    result = getattr(client, getter)("web", "nginx")
    assert result["spec"]["replicas"] == 0
    annotations = result["metadata"]["annotations"]
    assert annotations[ORIGINAL_REPLICAS_ANNOTATION] == "3"
    assert datetime.fromisoformat(annotations[UPDATED_AT_ANNOTATION]).tzinfo is not None


@pytest.mark.parametrize("resource_type, kind, getter", KINDS)
def test_zero_replicas_skipped(resource_type, kind, getter):
    client = FakeKube((kind, workload(0)))
    scale_down_group(client, order_for(resource_type, 0), 2, FAST, wait_for_pods=False)
    result = getattr(client, getter)("web", "nginx")
    annotations = result["metadata"].get("annotations") or {}
    assert UPDATED_AT_ANNOTATION not in annotations
    assert ORIGINAL_REPLICAS_ANNOTATION not in annotations


@pytest.mark.parametrize("resource_type, kind, getter", KINDS)
def test_group_not_present(resource_type, kind, getter):
    client = FakeKube((kind, workload(3)))
    with pytest.raises(LookupError, match="scaleDownGroup 0 not found"):
        scale_down_group(client, None, 0, FAST, wait_for_pods=False)


@pytest.mark.parametrize("resource_type, kind, getter", KINDS)
def test_server_error(resource_type, kind, getter):
    client = FakeKube((kind, workload(3)))
    client.failures[("get", kind)] = KubeError("server side error")
    with pytest.raises(KubeError, match="server side error"):
        scale_down_group(client, order_for(resource_type, 3), 2, FAST, wait_for_pods=False)


def test_scaledown_waits_for_pods():
    client = FakeKube(("deployments", workload(3)))
    order = order_for("deployment", 3)
    order[2][0].selector = "app=nginx"
    scale_down_group(client, order, 2, FAST, wait_for_pods=True, timeout=1.0, interval=0.01)
    assert order[2][0].pods_terminated is True


def test_terminate_standalone_pods():
    client = FakeKube(pod("pod-1", "web"), pod("pod-2", "database"), pod("pod-3", "database"))
    assert len(client.list_pods()) == 3
    terminate_standalone_pods(client)
    assert client.list_pods() == []


def test_terminate_standalone_pods_keeps_own_pod():
    client = FakeKube(pod("ignore-pod", "app1", {"app": APP_NAME}), pod("pod-2", "database"))
    terminate_standalone_pods(client)
    remaining = client.list_pods()
    assert [p["metadata"]["name"] for p in remaining] == ["ignore-pod"]


def test_terminate_standalone_pods_delete_error():
    client = FakeKube(pod("pod-1", "web"))
    client.failures[("delete", "pods")] = KubeError("server side error")
    with pytest.raises(KubeError, match="deleting pod pod-1 in Namespace web"):
        terminate_standalone_pods(client)


def test_pods_still_running_none():
    assert pods_still_running([]) is False


def test_pods_still_running_some():
    resources = [
        K8sResource(name="pod-1", namespace="web"),
        K8sResource(name="pod-2", namespace="database"),
    ]
    assert pods_still_running(resources) is True


def test_pods_still_running_all_terminated():
    resources = [K8sResource(name="pod-1", namespace="web", pods_terminated=True)]
    assert pods_still_running(resources) is False


class DisappearingPods(FakeKube):
    def __init__(self, lists_before_gone):
        super().__init__(pod("pod-1", "web", {"app": "nginx"}))
        self.lists_before_gone = lists_before_gone

    def list_pods(self, namespace="", label_selector=""):
        pods = super().list_pods(namespace, label_selector)
        return pods if self.pod_lists <= self.lists_before_gone else []


def test_wait_for_pod_termination():
    client = DisappearingPods(3)
    resource = K8sResource(
        name="pod-1", namespace="web", resource_type="deployment", selector="app=nginx"
    )
    wait_for_pod_termination(client, [resource], timeout=2.0, interval=0.01)
    assert resource.pods_terminated is True
    assert client.pod_lists == 4


def test_wait_for_pod_termination_times_out():
    client = DisappearingPods(10_000)
    resource = K8sResource(
        name="pod-1", namespace="web", resource_type="deployment", selector="app=nginx"
    )
    with pytest.raises(TimeoutError):
        wait_for_pod_termination(client, [resource], timeout=0.05, interval=0.01)
    assert resource.pods_terminated is False


def test_wait_for_pod_termination_list_error():
    client = FakeKube()
    client.failures[("list", "pods")] = KubeError("server side error")
    resource = K8sResource(name="pod-1", namespace="web", selector="app=nginx")
    with pytest.raises(KubeError, match="listing pods"):
        wait_for_pod_termination(client, [resource], timeout=1.0, interval=0.01)