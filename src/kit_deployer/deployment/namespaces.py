"""Namespace bootstrapping for a cluster."""

from __future__ import annotations

import asyncio

from loguru import logger

from kit_deployer.errors import KitDeployerError
from kit_deployer.infra.k8s.client import ResourceClient

from .models import InfoCallback, Manifest


class NamespaceDeployer:
    """Creates the namespaces a cluster's manifests need, if missing.

    Existing namespaces are never modified or deleted.
    """

    def __init__(
        self,
        client: ResourceClient,
        cluster_name: str,
        namespaces: list[Manifest],
        *,
        dry_run: bool = True,
        on_info: InfoCallback | None = None,
        on_error: InfoCallback | None = None,
    ) -> None:
        self.client = client
        self.cluster_name = cluster_name
        self.namespaces = namespaces
        self.dry_run = dry_run
        self._on_info = on_info or logger.info
        self._on_error = on_error or logger.error

    async def deploy(self) -> list[str]:
        """Create every namespace that does not exist yet.

        Returns:
            Names of the namespaces created (or that would be, in dry-run)

        Raises:
            KitDeployerError: If any namespace could not be created
        """
        if not self.namespaces:
            return []

        self._on_info("Getting list of namespaces")
        live = await self.client.list(["Namespace"])
        self._on_info(f"Found {len(live)} namespaces")
        existing = {
            (item.get("kind"), (item.get("metadata") or {}).get("name"))
            for item in live
        }

        missing = [ns for ns in self.namespaces if (ns.kind, ns.name) not in existing]
        for namespace in missing:
            self._on_info(f"Create {namespace.name} namespace")
        if self.dry_run or not missing:
            return [ns.name for ns in missing]

        results = await asyncio.gather(
            *(self._create(namespace) for namespace in missing),
            return_exceptions=True,
        )
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            self._on_error(f"{len(errors)} errors occurred")
            raise KitDeployerError(
                f"Unable to create namespaces for {self.cluster_name}",
                details="\n".join(str(error) for error in errors),
            )
        return [ns.name for ns in missing]

    async def _create(self, namespace: Manifest) -> None:
        if namespace.path is None:
            raise KitDeployerError(f"Namespace {namespace.name} has no manifest file")
        try:
            self._on_info(await self.client.create(namespace.path))
        except KitDeployerError as e:
            self._on_error(f"Error running kubectl create('{namespace.path}') {e}")
            raise
