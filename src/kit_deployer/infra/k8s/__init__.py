"""Cluster infrastructure abstraction layer.

This module provides the resource client contract consumed by the
deployment engine and its kubectl-backed implementation.

Example:
    from kit_deployer.infra.k8s import KubectlClient, run_sync

    client = KubectlClient(kubeconfig="clusters/staging.yaml")
    items = run_sync(client.list(["Deployment", "Service"]))
"""

from .client import CommandResult, Resource, ResourceClient
from .kubectl_client import JSONStreamDecoder, KubectlClient
from .utils import run_sync

__all__ = [
    # Client classes
    "ResourceClient",
    "KubectlClient",
    # Data types
    "CommandResult",
    "Resource",
    "JSONStreamDecoder",
    # Utilities
    "run_sync",
]
