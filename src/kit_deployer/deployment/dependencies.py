"""Dependency resolution for manifests.

A manifest declares its dependencies with a label selector in the
``kit-deployer/dependency-selector`` annotation. Before such a manifest is
deployed, every live resource matching the selector must be available.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from kit_deployer.constants import DEFAULT_CONSTANTS, DeploymentConstants
from kit_deployer.errors import DependencyTimeout, TransientRequestError
from kit_deployer.infra.k8s.client import Resource, ResourceClient

from .models import InfoCallback, Manifest
from .polling import poll_until


class DependencyResolver:
    """Waits for the dependencies of manifests to become available.

    Polls are single-flight per selector: every waiter for the same selector
    string shares one polling loop and its eventual result. The cache lives
    as long as the resolver, so use one resolver per cluster run.

    Example:
        ```python
        resolver = DependencyResolver(client, wait=3, timeout=600)
        await resolver.ready(manifest, check_availability=True)
        ```
    """

    def __init__(
        self,
        client: ResourceClient,
        *,
        wait: float = DEFAULT_CONSTANTS.DEPENDENCY_WAIT,
        timeout: float = DEFAULT_CONSTANTS.DEPENDENCY_TIMEOUT,
        on_info: InfoCallback | None = None,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
    ) -> None:
        """Initialize the resolver.

        Args:
            client: Resource client for the cluster
            wait: Seconds between polls of an unsatisfied selector
            timeout: Seconds before a selector wait fails
            on_info: Callback receiving progress messages
            constants: Deployment constants
        """
        self.client = client
        self.wait = wait
        self.timeout = timeout
        self.constants = constants
        self._on_info = on_info or logger.info
        self._pending: dict[str, asyncio.Task[list[Resource]]] = {}

    def find(self, manifest: Manifest) -> str | None:
        """Return the manifest's dependency selector, or None if it has none."""
        return manifest.annotations.get(self.constants.DEPENDENCY_SELECTOR_KEY) or None

    async def ready(
        self,
        manifest: Manifest,
        check_availability: bool = True,
    ) -> list[list[Resource]]:
        """Wait until the manifest's dependencies are available.

        Args:
            manifest: Manifest about to be deployed
            check_availability: When False only report detected dependencies
                (dry-run discovery) without querying the cluster

        Returns:
            One list of matched resources per awaited selector (empty when
            nothing was awaited)

        Raises:
            DependencyTimeout: If the selector is not satisfied in time
        """
        selector = self.find(manifest)
        if not selector:
            return []

        self._on_info(f"Dependency detected for {manifest.name} <= {selector}")
        if not check_availability:
            return []

        resources = await self.available(selector)
        self._on_info(f"Dependency available for {manifest.name} <= {selector}")
        return [resources]

    async def available(self, selector: str) -> list[Resource]:
        """Wait until every resource matching ``selector`` is available.

        The first caller starts the poll; later callers join it. Cancelling
        one waiter leaves the shared poll running for the others.
        """
        task = self._pending.get(selector)
        if task is None:
            task = asyncio.ensure_future(self.check(selector))
            self._pending[selector] = task
        return await asyncio.shield(task)

    async def check(self, selector: str) -> list[Resource]:
        """Poll the cluster until all resources matching ``selector`` pass.

        List failures are retried like unavailable resources; only the hard
        timeout ends the wait.
        """

        async def _list() -> list[Resource]:
            return await self.client.list(self.constants.DEPENDENCY_KINDS, selector)

        def _all_available(resources: list[Resource]) -> bool:
            for resource in resources:
                if not self.is_available(resource):
                    name = (resource.get("metadata") or {}).get("name", "?")
                    logger.debug(f"Dependency {name} not available yet")
                    return False
            return True

        return await poll_until(
            _list,
            _all_available,
            interval=self.wait,
            timeout=self.timeout,
            timeout_error=lambda: DependencyTimeout(selector, self.timeout),
            retry_on=(TransientRequestError,),
        )

    @staticmethod
    def is_available(resource: Resource) -> bool:
        """Whether a single dependency resource counts as available."""
        status = resource.get("status")
        if not isinstance(status, dict):
            status = {}
        kind = resource.get("kind")
        if kind == "Deployment":
            return status.get("availableReplicas") == status.get("replicas")
        if kind == "Job":
            return bool(status.get("succeeded"))
        return True
