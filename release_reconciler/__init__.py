"""
release-reconciler applies a desired helm release state to a cluster.

A release definition is reconciled by reading the deployed revision, computing
the drift and installing or upgrading a new revision when anything changed:

```python
from release_reconciler.backend import HelmBackend
from release_reconciler.reconciler import Reconciler

reconciler = Reconciler(HelmBackend())
report = await reconciler.reconcile({
    "name": "prometheus-adapter",
    "namespace": "prometheus",
    "chartRef": "prometheus-community/prometheus-adapter",
    "atomic": True,
})
```
"""

__all__ = [
    "applier",
    "backend",
    "cluster",
    "config",
    "descriptor",
    "diff",
    "exceptions",
    "manifest",
    "reconciler",
    "values",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
