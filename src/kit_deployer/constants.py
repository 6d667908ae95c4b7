"""Deployment constants.

This module centralizes annotation keys, supported resource kinds and the
default timings used throughout the deployment process.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DeploymentConstants:
    """Constants for manifest deployment.

    All attributes are class-level and immutable.
    """

    # Annotation keys persisted on (or read from) deployed resources
    DEPENDENCY_SELECTOR_KEY: str = "kit-deployer/dependency-selector"
    LAST_APPLIED_CONFIGURATION_KEY: str = "kit-deployer/last-applied-configuration"
    LAST_APPLIED_CONFIGURATION_HASH_KEY: str = (
        "kit-deployer/last-applied-configuration-sha1"
    )
    COMMIT_KEY: str = "kit-deployer/commit"
    SERVICE_NAME_KEY: str = "kit-deployer/service-name"

    # Kinds the orchestrator lists, diffs and tracks
    SUPPORTED_KINDS: tuple[str, ...] = (
        "Deployment",
        "Service",
        "Secret",
        "Job",
        "DaemonSet",
        "PersistentVolumeClaim",
    )

    # Kinds that can satisfy a dependency selector
    DEPENDENCY_KINDS: tuple[str, ...] = ("Deployment", "Service", "Secret", "Job")

    # Kinds that cannot be updated in place and are deleted then created
    REPLACE_ONLY_KINDS: tuple[str, ...] = ("Job", "DaemonSet")

    # Kinds deployed under a content-hash suffixed name
    HASH_SUFFIXED_KINDS: tuple[str, ...] = ("Job",)

    # Kinds never deleted when they have no matching manifest
    DELETE_UNSAFE_KINDS: tuple[str, ...] = ("Job",)

    # Cluster-level status events use this kind
    CLUSTER_KIND: str = "Cluster"
    CLUSTER_CONFIG_KIND: str = "Config"

    # Timings (seconds)
    DEPENDENCY_WAIT: float = 3
    DEPENDENCY_TIMEOUT: float = 10 * 60
    AVAILABLE_TIMEOUT: float = 10 * 60
    KEEP_ALIVE_INTERVAL: float = 30
    WEBHOOK_TIMEOUT: float = 10

    # Webhook payload identifiers
    WEBHOOK_PAYLOAD_NAME: str = "kubernetes-deploy"
    WEBHOOK_PROVIDER: str = "CodeShip/Kubernetes"

    GITHUB_API_URL: str = "https://api.github.com"

    # Manifests are discovered with this glob below <dir>/<cluster>/
    MANIFEST_GLOB: str = "**/*.yaml"


DEFAULT_CONSTANTS = DeploymentConstants()
