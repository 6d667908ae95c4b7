"""kit-deployer: deploy manifests to one or more clusters.

The deployment engine diffs desired manifests against live cluster state,
orders work into dependency waves, waits for resources to become available
and reports status to webhooks once per run.
"""

__version__ = "0.1.0"
