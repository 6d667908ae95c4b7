"""Data types shared by the deployment engine."""

from __future__ import annotations

import copy
import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from kit_deployer.constants import DEFAULT_CONSTANTS
from kit_deployer.infra.k8s.client import Resource

# Progress and status callbacks passed in by callers
InfoCallback = Callable[[str], None]
StatusCallback = Callable[["StatusEvent"], None]


class DeploymentAction(str, Enum):
    """What the orchestrator does with a manifest."""

    CREATE = "Create"
    APPLY = "Apply"
    RECREATE = "Recreate"
    DELETE = "Delete"
    SKIP = "Skip"


class Phase(str, Enum):
    """Lifecycle phase reported in a status event."""

    STARTED = "STARTED"
    COMPLETED = "COMPLETED"


class Status(str, Enum):
    """Outcome reported in a status event."""

    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


def canonical_json(content: Any) -> str:
    """Serialize content deterministically (sorted keys, compact)."""
    return json.dumps(content, sort_keys=True, separators=(",", ":"))


def content_hash(serialized: str) -> str:
    """SHA-1 hex digest of a serialized configuration."""
    return hashlib.sha1(serialized.encode("utf-8")).hexdigest()


@dataclass
class Manifest:
    """Desired-state declaration for one resource.

    Attributes:
        content: Parsed manifest document
        path: File the manifest was loaded from, if any
    """

    content: dict[str, Any]
    path: Path | None = None

    @property
    def kind(self) -> str:
        return str(self.content.get("kind") or "")

    @property
    def metadata(self) -> dict[str, Any]:
        return self.content.get("metadata") or {}

    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or "")

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def dependency_selector(self) -> str | None:
        return self.annotations.get(DEFAULT_CONSTANTS.DEPENDENCY_SELECTOR_KEY) or None

    def serialize(self) -> str:
        """Canonical serialization of the manifest as loaded."""
        return canonical_json(self.content)

    def content_hash(self) -> str:
        """Content hash of the canonical serialization."""
        return content_hash(self.serialize())

    def copy(self) -> Manifest:
        """Deep copy, so annotations can be added without touching the original."""
        return Manifest(content=copy.deepcopy(self.content), path=self.path)


@dataclass
class StatusEvent:
    """A status change for a resource or a whole cluster.

    Cluster-level events use ``kind == "Cluster"`` and leave ``cluster``
    unset; ``name`` is then the cluster name.
    """

    name: str
    kind: str
    phase: Phase
    status: Status
    manifest: dict[str, Any] = field(default_factory=dict)
    cluster: str | None = None

    @property
    def is_cluster(self) -> bool:
        return self.kind == DEFAULT_CONSTANTS.CLUSTER_KIND

    @property
    def service_name(self) -> str:
        """Name used for notifications: the service-name annotation or the name."""
        metadata = self.manifest.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        return (
            annotations.get(DEFAULT_CONSTANTS.SERVICE_NAME_KEY)
            or metadata.get("name")
            or self.name
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster": self.cluster,
            "name": self.name,
            "kind": self.kind,
            "phase": self.phase.value,
            "status": self.status.value,
            "manifest": self.manifest,
        }


@dataclass
class DeploymentPlan:
    """The decision taken for one desired manifest.

    Attributes:
        manifest: Desired manifest as loaded
        applied_name: Name the resource is deployed under
        action: Decided action (SKIP when nothing changed)
        serialized: Canonical serialization of the desired manifest
        config_hash: Content hash of ``serialized``
        existing: Matching live resource, if any
        differences: Human-readable differences against the live resource
        reason: Why the manifest is skipped, if it is
    """

    manifest: Manifest
    applied_name: str
    action: DeploymentAction
    serialized: str
    config_hash: str
    existing: Resource | None = None
    differences: list[str] = field(default_factory=list)
    reason: str | None = None

    @property
    def kind(self) -> str:
        return self.manifest.kind

    @property
    def has_dependencies(self) -> bool:
        return self.manifest.dependency_selector is not None


@dataclass
class ClusterResult:
    """Outcome of deploying one cluster."""

    cluster: str
    plans: list[DeploymentPlan] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[BaseException | str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors
