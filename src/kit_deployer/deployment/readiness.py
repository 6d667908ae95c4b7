"""Readiness tracking for just-deployed resources.

A resource is "available" once its kind-specific condition holds on an
observed state. Conditions per kind:

- Deployment: observedGeneration >= generation and
  availableReplicas >= replicas (all four must be populated)
- Job: succeeded >= 1
- DaemonSet: desiredNumberScheduled >= currentNumberScheduled
- Service, Secret, PersistentVolumeClaim: the first observed state
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger

from kit_deployer.constants import DEFAULT_CONSTANTS, DeploymentConstants
from kit_deployer.errors import (
    ReadinessTimeout,
    TransientRequestError,
    UnsupportedResourceKind,
)
from kit_deployer.infra.k8s.client import Resource, ResourceClient

from .models import InfoCallback
from .polling import KeepAlive


def _int_field(section: Any, key: str) -> int | None:
    if not isinstance(section, dict):
        return None
    value = section.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ReadinessTracker:
    """Watches resources until they become available.

    Each call to ``available()`` is an independent wait with its own
    subscription, timeout and optional keep-alive. Once the condition holds
    the wait is over; later observations are not consulted.
    """

    def __init__(
        self,
        client: ResourceClient,
        *,
        timeout: float = DEFAULT_CONSTANTS.AVAILABLE_TIMEOUT,
        keep_alive: bool = False,
        keep_alive_interval: float = DEFAULT_CONSTANTS.KEEP_ALIVE_INTERVAL,
        on_info: InfoCallback | None = None,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
    ) -> None:
        """Initialize the tracker.

        Args:
            client: Resource client for the cluster
            timeout: Seconds before a wait fails with ReadinessTimeout
            keep_alive: Report periodically while waiting
            keep_alive_interval: Seconds between keep-alive messages
            on_info: Callback receiving progress messages
            constants: Deployment constants
        """
        self.client = client
        self.timeout = timeout
        self.keep_alive = keep_alive
        self.keep_alive_interval = keep_alive_interval
        self.constants = constants
        self._on_info = on_info or logger.info
        self._conditions: dict[str, Callable[[str, Resource], bool]] = {
            "Deployment": self._deployment_available,
            "Job": self._job_available,
            "DaemonSet": self._daemonset_available,
        }

    def canonical_kind(self, kind: str) -> str | None:
        """Map a kind to its supported spelling, or None if unsupported."""
        for supported in self.constants.SUPPORTED_KINDS:
            if supported.lower() == kind.lower():
                return supported
        return None

    async def available(self, kind: str, name: str) -> Resource:
        """Wait until the resource is available.

        Args:
            kind: Resource kind
            name: Resource name

        Returns:
            The observed state that satisfied the condition

        Raises:
            UnsupportedResourceKind: Immediately, for unsupported kinds
            ReadinessTimeout: If the condition does not hold in time
            TransientRequestError: If the subscription fails or ends early
        """
        canonical = self.canonical_kind(kind)
        if canonical is None:
            raise UnsupportedResourceKind(kind, name)

        keep_alive: KeepAlive | None = None
        if self.keep_alive:
            keep_alive = KeepAlive(
                f"Still waiting for {kind}:{name} to be available...",
                self.keep_alive_interval,
                self._on_info,
            )
            keep_alive.start()

        stream = self.client.watch(canonical, name)
        try:
            async with asyncio.timeout(self.timeout):
                async for snapshot in stream:
                    if self.is_available(canonical, name, snapshot):
                        self._on_info(f"{kind}:{name} is available")
                        return snapshot
            raise TransientRequestError(
                f"Watch for {kind}:{name} ended before it was available"
            )
        except TimeoutError:
            raise ReadinessTimeout(kind, name, self.timeout) from None
        finally:
            if keep_alive is not None:
                keep_alive.stop()
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def is_available(self, kind: str, name: str, snapshot: Resource) -> bool:
        """Evaluate one observed state, reporting progress as a side effect."""
        condition = self._conditions.get(kind)
        if condition is None:
            # Service, Secret, PersistentVolumeClaim
            return True
        return condition(f"{kind}:{name}", snapshot)

    def _deployment_available(self, label: str, snapshot: Resource) -> bool:
        generation = _int_field(snapshot.get("metadata"), "generation")
        status = snapshot.get("status")
        observed_generation = _int_field(status, "observedGeneration")
        available_replicas = _int_field(status, "availableReplicas")
        replicas = _int_field(status, "replicas")

        if generation is not None and observed_generation is not None:
            self._on_info(
                f"{label} has {observed_generation}/{generation} observed generation"
            )
        if available_replicas is not None and replicas is not None:
            self._on_info(
                f"{label} has {available_replicas}/{replicas} replicas available"
            )
        if (
            generation is None
            or observed_generation is None
            or available_replicas is None
            or replicas is None
        ):
            return False
        return observed_generation >= generation and available_replicas >= replicas

    def _job_available(self, label: str, snapshot: Resource) -> bool:
        succeeded = _int_field(snapshot.get("status"), "succeeded")
        if succeeded is None:
            return False
        self._on_info(f"{label} has {succeeded}/1 succeeded")
        return succeeded >= 1

    def _daemonset_available(self, label: str, snapshot: Resource) -> bool:
        status = snapshot.get("status")
        desired = _int_field(status, "desiredNumberScheduled")
        current = _int_field(status, "currentNumberScheduled")
        if desired is None or current is None:
            return False
        self._on_info(f"{label} has {current}/{desired} scheduled")
        # desired >= current, not current >= desired
        return desired >= current
