# envscaledown

Scales every Deployment and StatefulSet in a Kubernetes cluster down to zero
replicas, and later brings them back up, in an order you choose. It is meant
to run on a schedule (for example as a CronJob inside the cluster) so that
non-production environments cost nothing outside working hours.

## What it does

**Scale down** (`SCALE_ACTION=ScaleDown`)

1. If New Relic is configured, disables every NRQL alert condition in the
   listed alert policies.
2. Unless `SUSPEND_CRONJOB` is false, suspends every CronJob in the cluster
   except those labelled `app=eks-env-scaledown` (the job running this tool).
   CronJobs that were already suspended get the annotation
   `eks-env-scaledown/cronjob-was-disabled: "yes"` so that the next scale up
   leaves them suspended.
3. Groups Deployments and StatefulSets by the `eks-env-scaledown/startup-order`
   annotation. Valid groups are 0 to 99; a missing, non-integer or
   out-of-range value puts the workload in group 100.
4. Scales the groups from the highest number to the lowest. Each workload's
   replica count is stored in the `eks-env-scaledown/original-replicas`
   annotation before it is set to zero; workloads already at zero are left
   alone. After each group it waits until no pods match the workloads'
   label selectors.
5. Deletes every remaining pod in the cluster, except pods labelled
   `app=eks-env-scaledown`.

**Scale up** (`SCALE_ACTION=ScaleUp`)

1. Scales the groups from the lowest number to the highest, restoring the
   replica count from `eks-env-scaledown/original-replicas` and removing that
   annotation. Workloads without it are skipped. After each group it waits
   until every workload's available, updated and ready replica counts equal
   its desired count and its observed generation has caught up.
2. Unless `SUSPEND_CRONJOB` is false, resumes all CronJobs except this tool's
   own and those marked as already disabled.
3. If New Relic is configured, re-enables the NRQL alert conditions.

Every change stamps `eks-env-scaledown/updated-at` with an RFC 3339 timestamp.
Updates are retried when the API server reports a conflict. Waiting for pods
polls every 2 seconds and gives up after 15 minutes.

## Installation

```
pip install envscaledown
```

## Usage

```
SCALE_ACTION=ScaleDown envscaledown
SCALE_ACTION=ScaleUp envscaledown
```

Inside a cluster, the pod's service account is used (this needs
`KUBERNETES_SERVICE_HOST` and `KUBERNETES_SERVICE_PORT`, which Kubernetes
sets). To run against another cluster, set `KUBE_CONTEXT` to a context in
`~/.kube/config`:

```
SCALE_ACTION=ScaleDown KUBE_CONTEXT=docker-desktop envscaledown
```

The command takes no arguments other than `--help`.

## Configuration

All configuration comes from environment variables.

| Variable                    | Meaning                                                              |
|-----------------------------|----------------------------------------------------------------------|
| `SCALE_ACTION`              | `ScaleUp` or `ScaleDown` (required)                                  |
| `SUSPEND_CRONJOB`           | Whether to suspend/resume CronJobs; defaults to `true`               |
| `KUBE_CONTEXT`              | Local kubeconfig context; unset means in-cluster configuration       |
| `LOG_LEVEL`                 | `debug`, `info`, `warn`/`warning` or `error`; defaults to `info`     |
| `SLACK_API_TOKEN`           | Slack token for failure notifications                                |
| `SLACK_CHANNEL_ID`          | Slack channel to notify                                              |
| `ENVIRONMENT`               | Environment name shown in Slack messages                             |
| `NEW_RELIC_API_KEY`         | New Relic API key                                                    |
| `NEW_RELIC_REGION`          | `eu` or `us`; defaults to `eu`                                       |
| `NEW_RELIC_ALERT_POLICIES`  | Comma-separated alert policy IDs to disable during scale down        |

`SUSPEND_CRONJOB` accepts `1`, `t`, `true`, `0`, `f`, `false` and their
capitalised forms; anything else logs a warning and counts as `true`.

Slack messages are sent only when something fails, and only if the token,
channel and environment are all set. New Relic is used only when both the API
key and the policy list are set.

Logs are written to standard output as JSON lines.

## Exit codes

| Code | Failure                                 |
|------|-----------------------------------------|
| 0    | Success                                 |
| 1    | Creating the New Relic client           |
| 2    | Loading configuration                   |
| 3    | Disabling New Relic alert conditions    |
| 4    | Creating the service                    |
| 5    | Scaling the environment                 |
| 6    | Re-enabling New Relic alert conditions  |

## Startup order example

```yaml
metadata:
  annotations:
    eks-env-scaledown/startup-order: "0"
```

Workloads in group 0 start first and stop last; workloads without the
annotation start last and stop first.

## Using it from Python

```python
from pathlib import Path

from envscaledown.config import Config, ScaleAction
from envscaledown.kube import Backoff, load_kubeconfig
from envscaledown.service import Service

client = load_kubeconfig(Path.home() / ".kube" / "config", "docker-desktop")
service = Service(
    Config(client=client, action=ScaleAction.SCALE_DOWN, suspend_cron_job=True),
    backoff=Backoff(steps=5),
    wait_for_pods=True,
    timeout=900.0,
    interval=2.0,
)
service.run()
```

The modules:

- `envscaledown.kube`: `KubeClient` (a small API client working on plain JSON
  dictionaries), `load_kubeconfig`, `in_cluster_client`,
  `client_from_environment`, `Backoff`, `retry_on_conflict`, and the errors
  `KubeError`, `ConflictError` and `NotFoundError`.
- `envscaledown.config`: `ScaleAction`, `Config`, `load_config`, `parse_bool`,
  `setup_logging`.
- `envscaledown.startup`: `K8sResource`, `build_startup_order`,
  `selector_to_string`.
- `envscaledown.cronjobs`: `update_cron_jobs`.
- `envscaledown.scaledown`: `scale_down_group`, `wait_for_pod_termination`,
  `pods_still_running`, `terminate_standalone_pods`.
- `envscaledown.scaleup`: `scale_up_group`, `wait_for_pods_ready`,
  `pods_updated_and_ready`.
- `envscaledown.service`: `Service` with `run`, `scale_up` and `scale_down`.
- `envscaledown.slack`: `SlackNotifier`, `slack_notifier_from_env`, `notify`.
- `envscaledown.newrelic`: `NewRelicClient`, `new_relic_client_from_env`,
  `update_alert_policies`.
- `envscaledown.cli`: `main`, the `envscaledown` command.

A missing group raises `LookupError`, a wait that runs out of time raises
`TimeoutError`, and API failures raise `KubeError` or one of its subclasses.

## Limitations

- Only Deployments, StatefulSets, CronJobs and pods are handled. Other
  workloads, such as DaemonSets or Jobs started outside a CronJob, are not
  scaled.
- Kubeconfig authentication is limited to bearer tokens, client certificates
  and username/password. Contexts that rely on `exec` credential plugins or
  auth providers cannot be used; no external program is ever started.
- There is no dry-run mode: every run changes the cluster.