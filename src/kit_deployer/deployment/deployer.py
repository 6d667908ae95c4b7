"""Multi-cluster deployment entry point."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
from loguru import logger

from kit_deployer.constants import DEFAULT_CONSTANTS, DeploymentConstants
from kit_deployer.errors import DeploymentFailedError, KitDeployerError
from kit_deployer.infra.github import GitHubClient
from kit_deployer.infra.k8s.client import ResourceClient
from kit_deployer.infra.k8s.kubectl_client import KubectlClient
from kit_deployer.runtime.config.config_data import DeployerSettings
from kit_deployer.runtime.config.config_loader import (
    ClusterConfig,
    load_cluster_configs,
    load_manifests,
)

from .models import ClusterResult, Phase, Status, StatusCallback, StatusEvent
from .namespaces import NamespaceDeployer
from .notifications import NotificationAggregator, WebhookNotifier
from .orchestrator import DeploymentOrchestrator


class Deployer:
    """Deploys manifests to every configured cluster concurrently.

    One resource client and orchestrator is created per cluster; the revision
    client and the notification aggregator are shared by the whole run.

    Example:
        ```python
        deployer = Deployer(settings)
        results = await deployer.deploy("clusters/*.yaml", Path("manifests"))
        ```
    """

    def __init__(
        self,
        settings: DeployerSettings,
        *,
        on_status: StatusCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
    ) -> None:
        """Initialize the deployer.

        Args:
            settings: Run configuration
            on_status: Optional callback receiving every status event
            http_client: Optional client used for webhooks and GitHub
            constants: Deployment constants
        """
        self.settings = settings
        self.constants = constants
        self._on_status = on_status
        self._http_client = http_client

    def client_for(self, cluster: ClusterConfig) -> ResourceClient:
        """Create the resource client for a cluster."""
        return KubectlClient(
            kubeconfig=str(cluster.path), binary=self.settings.kubectl_binary
        )

    async def deploy(
        self,
        configs_pattern: str,
        manifests_dir: Path,
        namespaces_dir: Path | None = None,
    ) -> list[ClusterResult]:
        """Deploy to every cluster whose config matches ``configs_pattern``.

        Args:
            configs_pattern: Glob matching cluster config files
            manifests_dir: Directory holding one manifest directory per cluster
            namespaces_dir: Directory holding one namespace directory per cluster

        Returns:
            One ClusterResult per cluster

        Raises:
            ConfigValidationError: If the cluster configs are missing or invalid
            DeploymentFailedError: If any error was collected during the run
        """
        # Validate every config before touching any cluster
        clusters = load_cluster_configs(configs_pattern)

        webhooks = self.settings.available.webhooks
        notifier: WebhookNotifier | None = None
        aggregator: NotificationAggregator | None = None
        if webhooks:
            notifier = WebhookNotifier(
                webhooks,
                is_rollback=self.settings.is_rollback,
                http_client=self._http_client,
                constants=self.constants,
            )
            aggregator = NotificationAggregator(notifier)
            # Settlement must wait for clusters still creating namespaces
            aggregator.expect(cluster.name for cluster in clusters)

        github: GitHubClient | None = None
        if self.settings.check_revisions:
            github = GitHubClient(
                self.settings.github.token,
                base_url=self.constants.GITHUB_API_URL,
                http_client=self._http_client,
            )

        errors: list[BaseException | str] = []

        def on_status(event: StatusEvent) -> None:
            if aggregator is not None:
                try:
                    aggregator.change(event)
                except Exception as e:
                    logger.error(f"Unable to record status of {event.name}: {e}")
                    errors.append(e)
            if self._on_status is not None:
                self._on_status(event)

        try:
            results = await asyncio.gather(
                *(
                    self.deploy_cluster(
                        cluster, manifests_dir, namespaces_dir, github, on_status
                    )
                    for cluster in clusters
                )
            )
            for result in results:
                errors.extend(result.errors)

            if aggregator is not None:
                logger.info("Waiting for notifications to be delivered")
                available = self.settings.available
                if available.enabled and available.required:
                    try:
                        await aggregator.settled()
                    except KitDeployerError as e:
                        logger.error(str(e))
                        errors.append(e)
                else:
                    failures = await aggregator.drain()
                    if failures:
                        logger.warning(
                            f"{len(failures)} notifications could not be delivered"
                        )
        finally:
            if github is not None:
                await github.aclose()
            if notifier is not None:
                await notifier.aclose()

        if errors:
            raise DeploymentFailedError(errors)
        logger.info(f"Deployment finished for {len(results)} clusters")
        return list(results)

    async def deploy_cluster(
        self,
        cluster: ClusterConfig,
        manifests_dir: Path,
        namespaces_dir: Path | None,
        github: GitHubClient | None,
        on_status: StatusCallback,
    ) -> ClusterResult:
        """Create the cluster's namespaces, then deploy its manifests."""
        client = self.client_for(cluster)
        prefix = f"{cluster.name} -"

        try:
            namespaces = NamespaceDeployer(
                client,
                cluster.name,
                load_manifests(namespaces_dir, cluster.name),
                dry_run=self.settings.dry_run,
                on_info=lambda message: logger.info(f"{prefix} {message}"),
                on_error=lambda message: logger.error(f"{prefix} {message}"),
            )
            await namespaces.deploy()
            manifests = load_manifests(manifests_dir, cluster.name)
        except KitDeployerError as e:
            logger.error(f"{prefix} {e}")
            on_status(
                StatusEvent(
                    name=cluster.name,
                    kind=self.constants.CLUSTER_KIND,
                    phase=Phase.COMPLETED,
                    status=Status.FAILURE,
                    manifest=cluster.content,
                )
            )
            return ClusterResult(cluster=cluster.name, errors=[e])

        orchestrator = DeploymentOrchestrator(
            client,
            cluster.name,
            self.settings,
            revisions=github,
            cluster_manifest=cluster.content,
            on_status=on_status,
            constants=self.constants,
        )
        return await orchestrator.deploy(manifests)
