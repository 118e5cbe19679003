"""Scale a Kubernetes environment's Deployments and StatefulSets to zero and back up in startup-group order."""

__version__ = "0.1.0"