"""Per-cluster deployment orchestration.

The orchestrator turns a cluster's desired manifests into cluster changes:

1. List live resources of the supported kinds (optionally by selector)
2. Plan each manifest: Create, Apply, Recreate or Skip, by comparing its
   content hash with the hash recorded on the live resource
3. Skip manifests whose live resource reflects a newer revision
4. Deploy manifests without dependencies (and delete orphans) concurrently
5. Once that wave has settled, deploy manifests with dependencies, each
   gated on its dependency selector
6. Optionally wait for every mutated resource to become available

Failures are collected per manifest and never abort sibling manifests.
"""

from __future__ import annotations

import asyncio
import difflib
import json
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from kit_deployer.constants import DEFAULT_CONSTANTS, DeploymentConstants
from kit_deployer.errors import KitDeployerError
from kit_deployer.infra.github import Commit, GitHubClient, committer_date
from kit_deployer.infra.k8s.client import Resource, ResourceClient
from kit_deployer.runtime.config.config_data import DeployerSettings

from .dependencies import DependencyResolver
from .models import (
    ClusterResult,
    DeploymentAction,
    DeploymentPlan,
    InfoCallback,
    Manifest,
    Phase,
    Status,
    StatusCallback,
    StatusEvent,
)
from .readiness import ReadinessTracker

ResourceKey = tuple[str, str]


def resource_key(resource: Resource) -> ResourceKey:
    """Index key of a live resource: (kind, name)."""
    metadata = resource.get("metadata") or {}
    return str(resource.get("kind") or ""), str(metadata.get("name") or "")


class DeploymentOrchestrator:
    """Deploys one cluster's manifests.

    Attributes:
        client: Resource client bound to the cluster
        cluster_name: Name used in logs and status events
        settings: Run configuration
        resolver: Dependency resolver (single-flight cache for this run)
        tracker: Readiness tracker
    """

    def __init__(
        self,
        client: ResourceClient,
        cluster_name: str,
        settings: DeployerSettings | None = None,
        *,
        revisions: GitHubClient | None = None,
        cluster_manifest: dict[str, Any] | None = None,
        on_info: InfoCallback | None = None,
        on_warning: InfoCallback | None = None,
        on_error: InfoCallback | None = None,
        on_status: StatusCallback | None = None,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: Resource client bound to the cluster
            cluster_name: Cluster name
            settings: Run configuration (defaults to a dry run)
            revisions: Revision metadata client for the commit-ordering guard
            cluster_manifest: Cluster config document attached to cluster events
            on_info: Callback for progress messages
            on_warning: Callback for warnings
            on_error: Callback for error messages
            on_status: Callback receiving every status event
            constants: Deployment constants
        """
        self.client = client
        self.cluster_name = cluster_name
        self.settings = settings or DeployerSettings()
        self.revisions = revisions
        self.cluster_manifest = cluster_manifest or {
            "kind": constants.CLUSTER_CONFIG_KIND,
            "metadata": {"name": cluster_name},
        }
        self.constants = constants
        self._on_info = on_info or logger.info
        self._on_warning = on_warning or logger.warning
        self._on_error = on_error or logger.error
        self._on_status = on_status

        self.resolver = DependencyResolver(
            client,
            wait=self.settings.dependency.wait,
            timeout=self.settings.dependency.timeout,
            on_info=self._info,
            constants=constants,
        )
        self.tracker = ReadinessTracker(
            client,
            timeout=self.settings.available.timeout,
            keep_alive=self.settings.available.keep_alive,
            keep_alive_interval=self.settings.available.keep_alive_interval,
            on_info=self._info,
            constants=constants,
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    def _info(self, message: str) -> None:
        self._on_info(f"{self.cluster_name} - {message}")

    def _warning(self, message: str) -> None:
        self._on_warning(f"{self.cluster_name} - {message}")

    def _error(self, message: str) -> None:
        self._on_error(f"{self.cluster_name} - {message}")

    def _emit(self, event: StatusEvent) -> None:
        if self._on_status is not None:
            self._on_status(event)

    def _emit_cluster(self, phase: Phase, status: Status) -> None:
        self._emit(
            StatusEvent(
                name=self.cluster_name,
                kind=self.constants.CLUSTER_KIND,
                phase=phase,
                status=status,
                manifest=self.cluster_manifest,
            )
        )

    def _emit_manifest(self, manifest: Manifest, phase: Phase, status: Status) -> None:
        self._emit(
            StatusEvent(
                cluster=self.cluster_name,
                name=manifest.name,
                kind=manifest.kind,
                phase=phase,
                status=status,
                manifest=manifest.content,
            )
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def deploy(self, manifests: Sequence[Manifest]) -> ClusterResult:
        """Deploy the cluster's manifests.

        Args:
            manifests: Desired manifests, loaded once for this run

        Returns:
            ClusterResult with the plans, deletions and collected errors
        """
        result = ClusterResult(cluster=self.cluster_name)
        self._emit_cluster(Phase.STARTED, Status.IN_PROGRESS)

        try:
            existing = await self.list_existing()
            plans, orphans = self.plan(manifests, existing)
            result.plans = plans
            eligible = [plan for plan in plans if plan.action != DeploymentAction.SKIP]
            deploying_commit = await self._deploying_commit(eligible)
            self.apply_commit_guard(eligible, deploying_commit)
        except KitDeployerError as e:
            self._error(str(e))
            result.errors.append(e)
            self._emit_cluster(Phase.COMPLETED, Status.FAILURE)
            return result

        eligible = [plan for plan in plans if plan.action != DeploymentAction.SKIP]
        commit_annotation = self._commit_annotation(deploying_commit)
        readiness_waits: list[asyncio.Task[None]] = []

        with tempfile.TemporaryDirectory(
            prefix=f"kit-deployer-{self.cluster_name}-"
        ) as workdir:
            execute = _Execution(
                self, result, Path(workdir), commit_annotation, readiness_waits
            )
            first_wave = [plan for plan in eligible if not plan.has_dependencies]
            second_wave = [plan for plan in eligible if plan.has_dependencies]

            await self._settle(
                result,
                [execute.run(plan) for plan in first_wave]
                + [execute.delete_orphan(resource) for resource in orphans.values()],
            )
            # Manifests with dependencies start once the first wave has settled
            await self._settle(result, [execute.run(plan) for plan in second_wave])
            await self._settle(result, readiness_waits)

        if self.settings.dry_run:
            self._info("This was a dry run and no changes were deployed")

        if result.errors:
            self._emit_cluster(Phase.COMPLETED, Status.FAILURE)
        elif self.settings.available.enabled:
            # Completion is only accurate when availability is tracked
            self._emit_cluster(Phase.COMPLETED, Status.SUCCESS)
        return result

    async def list_existing(self) -> list[Resource]:
        """List live resources of the supported kinds."""
        kinds = ",".join(kind.lower() for kind in self.constants.SUPPORTED_KINDS)
        if self.settings.selector:
            self._info(
                f"Getting list of {kinds} matching '{self.settings.selector}'"
            )
        else:
            self._info(f"Getting list of {kinds}")
        existing = await self.client.list(
            self.constants.SUPPORTED_KINDS, self.settings.selector
        )
        self._info(f"Found {len(existing)} resources")
        return existing

    def plan(
        self,
        manifests: Sequence[Manifest],
        existing: Sequence[Resource],
    ) -> tuple[list[DeploymentPlan], dict[ResourceKey, Resource]]:
        """Decide the action for every manifest.

        Returns:
            The plans (unsupported kinds are skipped) and the live resources
            no manifest matched, keyed by (kind, name)
        """
        index = {resource_key(resource): resource for resource in existing}
        orphans = dict(index)
        plans = [self.plan_manifest(manifest, index, orphans) for manifest in manifests]
        return plans, orphans

    def plan_manifest(
        self,
        manifest: Manifest,
        index: dict[ResourceKey, Resource],
        orphans: dict[ResourceKey, Resource] | None = None,
    ) -> DeploymentPlan:
        """Plan a single manifest against the indexed live resources."""
        serialized = manifest.serialize()
        config_hash = manifest.content_hash()

        # Replace-only kinds get a unique name per content so a change is a
        # new resource rather than an update of a live one
        applied_name = manifest.name
        if manifest.kind in self.constants.HASH_SUFFIXED_KINDS:
            applied_name = f"{manifest.name}-{config_hash}"

        plan = DeploymentPlan(
            manifest=manifest,
            applied_name=applied_name,
            action=DeploymentAction.SKIP,
            serialized=serialized,
            config_hash=config_hash,
        )

        supported = {kind.lower() for kind in self.constants.SUPPORTED_KINDS}
        if manifest.kind.lower() not in supported:
            plan.reason = f"{manifest.kind} is unsupported"
            self._warning(f"Skipping {applied_name} because {plan.reason}")
            return plan

        key = (manifest.kind, applied_name)
        found = index.get(key)
        if orphans is not None:
            orphans.pop(key, None)

        if found is None:
            plan.action = DeploymentAction.CREATE
            return plan

        plan.existing = found
        plan.differences = self.differences(found, manifest, config_hash)
        if self.settings.diff and plan.differences:
            self._info(
                f"Differences for {applied_name}:\n" + "\n".join(plan.differences)
            )

        if not plan.differences and not self.settings.force:
            plan.reason = "no changes"
            return plan

        if manifest.kind in self.constants.REPLACE_ONLY_KINDS:
            plan.action = DeploymentAction.RECREATE
        else:
            plan.action = DeploymentAction.APPLY
        return plan

    def differences(
        self,
        existing: Resource,
        manifest: Manifest,
        config_hash: str,
    ) -> list[str]:
        """Differences between a live resource's last-applied config and a manifest.

        The recorded hash decides whether anything changed; the recorded
        configuration only renders the diff. A resource without either
        annotation always differs.
        """
        annotations = (existing.get("metadata") or {}).get("annotations") or {}
        recorded_hash = annotations.get(self.constants.LAST_APPLIED_CONFIGURATION_HASH_KEY)
        recorded_config = annotations.get(self.constants.LAST_APPLIED_CONFIGURATION_KEY)

        previous: Any = None
        if recorded_config is not None:
            try:
                previous = json.loads(recorded_config)
            except json.JSONDecodeError:
                previous = None

        if recorded_hash is not None:
            changed = recorded_hash != config_hash
        elif previous is not None:
            changed = previous != manifest.content
        else:
            changed = True
        if not changed:
            return []

        lines = list(
            difflib.unified_diff(
                _render(previous).splitlines(),
                _render(manifest.content).splitlines(),
                fromfile="last-applied",
                tofile="desired",
                lineterm="",
            )
        )
        return lines or [
            f"{self.constants.LAST_APPLIED_CONFIGURATION_HASH_KEY} differs"
        ]

    def apply_commit_guard(
        self,
        plans: Sequence[DeploymentPlan],
        deploying_commit: Commit | None,
    ) -> None:
        """Skip plans whose live resource was deployed from a newer revision."""
        deploying_date = committer_date(deploying_commit)
        if deploying_date is None:
            return
        for plan in plans:
            live_date = committer_date(self._live_commit(plan.existing))
            if live_date is not None and live_date > deploying_date:
                plan.action = DeploymentAction.SKIP
                plan.reason = "cluster has newer commit"
                self._warning(
                    f"Skipping {plan.applied_name} because cluster has newer commit"
                )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _live_commit(self, existing: Resource | None) -> Commit | None:
        if not existing:
            return None
        annotations = (existing.get("metadata") or {}).get("annotations") or {}
        raw = annotations.get(self.constants.COMMIT_KEY)
        if not raw:
            return None
        try:
            commit = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return commit if isinstance(commit, dict) else None

    async def _deploying_commit(
        self,
        eligible: Sequence[DeploymentPlan],
    ) -> Commit | None:
        settings = self.settings
        # check_revisions guarantees sha, user and repo are set
        if not eligible or self.revisions is None or not settings.check_revisions:
            return None
        return await self.revisions.get_commit(
            settings.github.user, settings.github.repo, settings.sha
        )

    def _commit_annotation(self, commit: Commit | None) -> str:
        """Serialized revision metadata stored on every deployed resource."""
        if commit is None:
            return json.dumps({"sha": self.settings.sha})
        details = commit.get("commit") or {}
        return json.dumps(
            {
                "sha": commit.get("sha", self.settings.sha),
                "html_url": commit.get("html_url"),
                "commit": {
                    "committer": details.get("committer"),
                    "author": details.get("author"),
                },
            }
        )

    async def _settle(self, result: ClusterResult, aws: Sequence[Any]) -> None:
        """Wait for every operation; unexpected exceptions become errors."""
        if not aws:
            return
        outcomes = await asyncio.gather(*aws, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                self._error(f"Unexpected error: {outcome!r}")
                result.errors.append(outcome)


class _Execution:
    """Carries out plans for one orchestrator run."""

    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        result: ClusterResult,
        workdir: Path,
        commit_annotation: str,
        readiness_waits: list[asyncio.Task[None]],
    ) -> None:
        self.orchestrator = orchestrator
        self.result = result
        self.workdir = workdir
        self.commit_annotation = commit_annotation
        self.readiness_waits = readiness_waits

    @property
    def settings(self) -> DeployerSettings:
        return self.orchestrator.settings

    def _fail(self, manifest: Manifest, error: BaseException, message: str) -> None:
        self.orchestrator._error(message)
        self.result.errors.append(error)
        self.orchestrator._emit_manifest(manifest, Phase.COMPLETED, Status.FAILURE)

    def prepare(self, plan: DeploymentPlan) -> Manifest:
        """Copy the manifest with its applied name and our annotations."""
        constants = self.orchestrator.constants
        manifest = plan.manifest.copy()
        if not isinstance(manifest.content.get("metadata"), dict):
            manifest.content["metadata"] = {}
        metadata = manifest.content["metadata"]
        if not isinstance(metadata.get("annotations"), dict):
            metadata["annotations"] = {}
        metadata["name"] = plan.applied_name

        annotations = metadata["annotations"]
        annotations[constants.LAST_APPLIED_CONFIGURATION_KEY] = plan.serialized
        annotations[constants.LAST_APPLIED_CONFIGURATION_HASH_KEY] = plan.config_hash
        annotations[constants.COMMIT_KEY] = self.commit_annotation
        return manifest

    def write(self, manifest: Manifest) -> Path:
        path = self.workdir / f"{manifest.kind.lower()}-{manifest.name}.json"
        path.write_text(json.dumps(manifest.content), encoding="utf-8")
        return path

    async def run(self, plan: DeploymentPlan) -> None:
        orchestrator = self.orchestrator
        manifest = self.prepare(plan)

        try:
            # Dry runs only report dependencies, they never wait on them
            await orchestrator.resolver.ready(
                manifest, check_availability=not self.settings.dry_run
            )
        except KitDeployerError as e:
            self._fail(manifest, e, f"Dependencies of {plan.applied_name} failed: {e}")
            return

        method = plan.action.value.lower()
        orchestrator._info(f"{plan.action.value} {plan.applied_name}")
        if self.settings.dry_run:
            return

        path = self.write(manifest)
        try:
            output = await getattr(orchestrator.client, method)(path)
        except KitDeployerError as e:
            details = f" {e.details}" if e.details else ""
            self._fail(
                manifest, e, f"Error running kubectl.{method}('{path}') {e}{details}"
            )
            return

        if output:
            orchestrator._info(output)
        orchestrator._emit_manifest(manifest, Phase.STARTED, Status.IN_PROGRESS)

        if self.settings.available.enabled:
            wait = asyncio.ensure_future(self.track(manifest))
            self.readiness_waits.append(wait)
            if self.settings.available.required:
                await wait

    async def track(self, manifest: Manifest) -> None:
        orchestrator = self.orchestrator
        try:
            await orchestrator.tracker.available(manifest.kind, manifest.name)
        except KitDeployerError as e:
            self._fail(manifest, e, str(e))
            return
        except Exception as e:
            self._fail(manifest, e, f"Unexpected error tracking {manifest.name}: {e!r}")
            return
        orchestrator._emit_manifest(manifest, Phase.COMPLETED, Status.SUCCESS)

    async def delete_orphan(self, resource: Resource) -> None:
        orchestrator = self.orchestrator
        kind, name = resource_key(resource)
        if kind in orchestrator.constants.DELETE_UNSAFE_KINDS:
            orchestrator._info(f"Not deleting {kind} {name}, deleting it is unsafe")
            return

        orchestrator._info(f"Delete {name}")
        if self.settings.dry_run:
            return
        try:
            output = await orchestrator.client.delete_by_name(kind, name)
        except KitDeployerError as e:
            orchestrator._error(
                f"Error running kubectl.deleteByName('{kind}', '{name}') {e}"
            )
            self.result.errors.append(e)
            return
        if output:
            orchestrator._info(output)
        self.result.deleted.append(f"{kind}/{name}")


def _render(content: Any) -> str:
    if content is None:
        return ""
    return yaml.safe_dump(content, default_flow_style=False, sort_keys=True)
