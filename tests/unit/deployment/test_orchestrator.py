"""Unit tests for DeploymentOrchestrator."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from kit_deployer.deployment.models import (
    DeploymentAction,
    Manifest,
    Phase,
    Status,
    content_hash,
)
from kit_deployer.deployment.orchestrator import DeploymentOrchestrator
from kit_deployer.errors import TransientRequestError
from kit_deployer.runtime.config.config_data import (
    AvailableSettings,
    DependencySettings,
    DeployerSettings,
    GitHubSettings,
)

CONFIG_KEY = "kit-deployer/last-applied-configuration"
HASH_KEY = "kit-deployer/last-applied-configuration-sha1"
COMMIT_KEY = "kit-deployer/commit"
SELECTOR_KEY = "kit-deployer/dependency-selector"


def make_settings(**kwargs) -> DeployerSettings:
    values = {
        "dry_run": False,
        "sha": "abc123",
        "github": GitHubSettings(enabled=False),
        "dependency": DependencySettings(wait=0.01, timeout=0.5),
        "available": AvailableSettings(enabled=False, timeout=0.5),
    }
    values.update(kwargs)
    return DeployerSettings(**values)


def deployment(name: str, image: str = "nginx:1", **annotations: str) -> Manifest:
    metadata: dict = {"name": name}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return Manifest(
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": metadata,
            "spec": {"template": {"spec": {"containers": [{"image": image}]}}},
        }
    )


def live_copy(manifest: Manifest, **extra_annotations: str) -> dict:
    """A live resource recorded from ``manifest`` by a previous run."""
    live = manifest.copy().content
    live["metadata"]["annotations"] = {
        CONFIG_KEY: manifest.serialize(),
        HASH_KEY: manifest.content_hash(),
        **extra_annotations,
    }
    return live


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def warnings() -> list[str]:
    return []


@pytest.fixture
def errors() -> list[str]:
    return []


@pytest.fixture
def make_orchestrator(fake_client, events, info_messages, warnings, errors):
    def _make(settings: DeployerSettings | None = None, **kwargs) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(
            fake_client,
            "staging",
            settings or make_settings(),
            on_info=info_messages.append,
            on_warning=warnings.append,
            on_error=errors.append,
            on_status=events.append,
            **kwargs,
        )

    return _make


def summarize(events: list) -> list[tuple[str, str, str]]:
    return [(event.name, event.phase.value, event.status.value) for event in events]


class TestPlanning:
    """Action selection."""

    async def test_unchanged_manifest_is_skipped(
        self, make_orchestrator, fake_client
    ) -> None:
        web = deployment("web")
        fake_client.resources = [live_copy(web)]

        result = await make_orchestrator().deploy([web])

        assert result.plans[0].action == DeploymentAction.SKIP
        assert result.plans[0].reason == "no changes"
        assert fake_client.methods() == ["list"]
        assert result.success

    async def test_force_applies_unchanged_manifest(
        self, make_orchestrator, fake_client
    ) -> None:
        web = deployment("web")
        fake_client.resources = [live_copy(web)]

        result = await make_orchestrator(make_settings(force=True)).deploy([web])

        assert result.plans[0].action == DeploymentAction.APPLY
        assert ("apply", "Deployment", "web") in fake_client.calls

    async def test_changed_deployment_is_applied(
        self, make_orchestrator, fake_client, info_messages
    ) -> None:
        fake_client.resources = [live_copy(deployment("web", image="nginx:1"))]

        orchestrator = make_orchestrator(make_settings(diff=True))
        result = await orchestrator.deploy([deployment("web", image="nginx:2")])

        assert result.plans[0].action == DeploymentAction.APPLY
        assert any("+" in line and "nginx:2" in line for line in result.plans[0].differences)
        assert any(m.startswith("staging - Differences for web") for m in info_messages)

    async def test_changed_daemonset_is_recreated(
        self, make_orchestrator, fake_client
    ) -> None:
        old = Manifest({"kind": "DaemonSet", "metadata": {"name": "agent"}, "spec": {"v": 1}})
        new = Manifest({"kind": "DaemonSet", "metadata": {"name": "agent"}, "spec": {"v": 2}})
        fake_client.resources = [live_copy(old)]

        result = await make_orchestrator().deploy([new])

        assert result.plans[0].action == DeploymentAction.RECREATE
        assert fake_client.methods() == ["list", "delete", "create"]

    async def test_unknown_live_resource_always_differs(
        self, make_orchestrator, fake_client, resource_factory
    ) -> None:
        fake_client.resources = [resource_factory("Service", "api")]
        api = Manifest({"kind": "Service", "metadata": {"name": "api"}})

        result = await make_orchestrator().deploy([api])

        assert result.plans[0].action == DeploymentAction.APPLY

    async def test_recorded_configuration_without_hash_is_compared(
        self, make_orchestrator
    ) -> None:
        web = deployment("web")
        live = {
            "kind": "Deployment",
            "metadata": {"name": "web", "annotations": {CONFIG_KEY: web.serialize()}},
        }

        assert make_orchestrator().differences(live, web, web.content_hash()) == []

    async def test_unsupported_kind_is_skipped_with_warning(
        self, make_orchestrator, fake_client, warnings
    ) -> None:
        config_map = Manifest({"kind": "ConfigMap", "metadata": {"name": "settings"}})

        result = await make_orchestrator().deploy([config_map])

        assert result.plans[0].action == DeploymentAction.SKIP
        assert warnings == [
            "staging - Skipping settings because ConfigMap is unsupported"
        ]
        assert fake_client.methods() == ["list"]


class TestCreate:
    """New resources and annotations."""

    async def test_new_resource_is_created_with_annotations(
        self, make_orchestrator, fake_client
    ) -> None:
        web = deployment("web")

        await make_orchestrator().deploy([web])

        assert fake_client.calls[-1] == ("create", "Deployment", "web")
        annotations = fake_client.applied[0]["metadata"]["annotations"]
        assert annotations[CONFIG_KEY] == web.serialize()
        assert annotations[HASH_KEY] == content_hash(web.serialize())
        assert json.loads(annotations[COMMIT_KEY]) == {"sha": "abc123"}
        # The loaded manifest is left untouched
        assert "annotations" not in web.metadata

    async def test_job_gets_hash_suffixed_name_and_is_tracked(
        self, make_orchestrator, fake_client, resource_factory, events
    ) -> None:
        job = Manifest(
            {
                "kind": "Job",
                "metadata": {"name": "ls-job"},
                "spec": {"template": {"spec": {"containers": [{"command": ["ls"]}]}}},
            }
        )
        applied_name = f"ls-job-{job.content_hash()}"
        fake_client.watch_states[("Job", applied_name)] = [
            resource_factory("Job", applied_name, status={"active": 1}),
            resource_factory("Job", applied_name, status={"succeeded": 1}),
        ]
        settings = make_settings(available=AvailableSettings(enabled=True, timeout=0.5))

        result = await make_orchestrator(settings).deploy([job])

        assert result.success
        assert result.plans[0].applied_name == applied_name
        assert ("create", "Job", applied_name) in fake_client.calls
        assert summarize(events) == [
            ("staging", "STARTED", "IN_PROGRESS"),
            (applied_name, "STARTED", "IN_PROGRESS"),
            (applied_name, "COMPLETED", "SUCCESS"),
            ("staging", "COMPLETED", "SUCCESS"),
        ]
        assert events[1].cluster == "staging"

    async def test_readiness_timeout_is_collected(
        self, make_orchestrator, fake_client, events
    ) -> None:
        settings = make_settings(
            available=AvailableSettings(enabled=True, required=True, timeout=0.05)
        )

        result = await make_orchestrator(settings).deploy([deployment("web")])

        assert not result.success
        assert str(result.errors[0]) == "Timeout waiting for Deployment:web"
        assert summarize(events)[-2:] == [
            ("web", "COMPLETED", "FAILURE"),
            ("staging", "COMPLETED", "FAILURE"),
        ]

    async def test_unexpected_watch_error_fails_manifest_once(
        self, make_orchestrator, fake_client, events
    ) -> None:
        fake_client.failures["watch"] = UnicodeDecodeError(
            "utf-8", b"\xc3", 0, 1, "unexpected end of data"
        )
        settings = make_settings(
            available=AvailableSettings(enabled=True, required=True, timeout=0.5)
        )

        result = await make_orchestrator(settings).deploy([deployment("web")])

        assert len(result.errors) == 1
        assert isinstance(result.errors[0], UnicodeDecodeError)
        assert summarize(events)[-2:] == [
            ("web", "COMPLETED", "FAILURE"),
            ("staging", "COMPLETED", "FAILURE"),
        ]


class TestOrphans:
    """Deletion of live resources with no manifest."""

    async def test_orphans_are_deleted_except_jobs(
        self, make_orchestrator, fake_client, resource_factory, info_messages
    ) -> None:
        fake_client.resources = [
            resource_factory("Deployment", "old-web"),
            resource_factory("Job", "old-job"),
        ]

        result = await make_orchestrator().deploy([])

        assert ("delete_by_name", "Deployment", "old-web") in fake_client.calls
        assert ("delete_by_name", "Job", "old-job") not in fake_client.calls
        assert result.deleted == ["Deployment/old-web"]
        assert any("old-job" in m and "Not deleting" in m for m in info_messages)

    async def test_listing_uses_selector(self, make_orchestrator, fake_client) -> None:
        await make_orchestrator(make_settings(selector="team=web")).deploy([])

        assert fake_client.calls[0] == (
            "list",
            ("Deployment", "Service", "Secret", "Job", "DaemonSet", "PersistentVolumeClaim"),
            "team=web",
        )


class TestWaves:
    """Ordering of manifests with dependencies."""

    async def test_dependent_manifest_waits_for_first_wave(
        self, make_orchestrator, fake_client, resource_factory
    ) -> None:
        db = deployment("db")
        web = deployment("web", **{SELECTOR_KEY: "app=db"})
        fake_client.selector_results["app=db"] = [
            [resource_factory("Deployment", "db", status={"availableReplicas": 1, "replicas": 1})]
        ]

        result = await make_orchestrator().deploy([web, db])

        mutations = [call for call in fake_client.calls if call[0] == "create"]
        assert mutations == [("create", "Deployment", "db"), ("create", "Deployment", "web")]
        assert result.success

    async def test_dependency_timeout_fails_only_that_manifest(
        self, make_orchestrator, fake_client, resource_factory, events
    ) -> None:
        fake_client.selector_results["app=db"] = [
            [resource_factory("Deployment", "db", status={"availableReplicas": 0, "replicas": 1})]
        ]
        settings = make_settings(dependency=DependencySettings(wait=0.01, timeout=0.05))

        result = await make_orchestrator(settings).deploy(
            [deployment("web", **{SELECTOR_KEY: "app=db"}), deployment("cache")]
        )

        assert ("create", "Deployment", "cache") in fake_client.calls
        assert ("create", "Deployment", "web") not in fake_client.calls
        assert len(result.errors) == 1
        assert ("web", "COMPLETED", "FAILURE") in summarize(events)


class TestFailures:
    """Error collection."""

    async def test_mutation_failure_does_not_abort_siblings(
        self, make_orchestrator, fake_client, errors
    ) -> None:
        fake_client.failures["apply"] = TransientRequestError("apply failed")
        web = deployment("web")
        fake_client.resources = [live_copy(deployment("web", image="old"))]

        result = await make_orchestrator().deploy([web, deployment("cache")])

        assert ("create", "Deployment", "cache") in fake_client.calls
        assert len(result.errors) == 1
        assert errors[0].startswith("staging - Error running kubectl.apply(")

    async def test_listing_failure_fails_cluster(
        self, make_orchestrator, fake_client, events
    ) -> None:
        fake_client.failures["list"] = TransientRequestError("unreachable")

        result = await make_orchestrator().deploy([deployment("web")])

        assert not result.success
        assert summarize(events) == [
            ("staging", "STARTED", "IN_PROGRESS"),
            ("staging", "COMPLETED", "FAILURE"),
        ]


class TestDryRun:
    """Dry runs plan without mutating."""

    async def test_dry_run_reports_without_mutations(
        self, make_orchestrator, fake_client, resource_factory, info_messages
    ) -> None:
        fake_client.resources = [resource_factory("Service", "old-api")]
        web = deployment("web", **{SELECTOR_KEY: "app=db"})

        result = await make_orchestrator(make_settings(dry_run=True)).deploy([web])

        assert fake_client.methods() == ["list"]
        assert result.plans[0].action == DeploymentAction.CREATE
        assert "staging - Dependency detected for web <= app=db" in info_messages
        assert "staging - Create web" in info_messages
        assert "staging - Delete old-api" in info_messages
        assert result.deleted == []


class TestCommitGuard:
    """Newer revisions on the cluster are not overwritten."""

    @pytest.fixture
    def revisions(self) -> MagicMock:
        revisions = MagicMock()
        revisions.get_commit = AsyncMock(
            return_value={
                "sha": "abc123",
                "commit": {"committer": {"date": "2024-01-01T00:00:00Z"}},
            }
        )
        return revisions

    @pytest.fixture
    def github_settings(self) -> DeployerSettings:
        return make_settings(
            github=GitHubSettings(enabled=True, token="t", user="acme", repo="web")
        )

    async def test_newer_live_revision_is_skipped(
        self, make_orchestrator, fake_client, revisions, github_settings, warnings
    ) -> None:
        newer = json.dumps({"commit": {"committer": {"date": "2024-06-01T00:00:00Z"}}})
        fake_client.resources = [live_copy(deployment("web", image="new"), **{COMMIT_KEY: newer})]

        orchestrator = make_orchestrator(github_settings, revisions=revisions)
        result = await orchestrator.deploy([deployment("web", image="old")])

        assert result.plans[0].action == DeploymentAction.SKIP
        assert result.plans[0].reason == "cluster has newer commit"
        assert warnings == ["staging - Skipping web because cluster has newer commit"]
        revisions.get_commit.assert_awaited_once_with("acme", "web", "abc123")

    async def test_older_live_revision_is_applied(
        self, make_orchestrator, fake_client, revisions, github_settings
    ) -> None:
        older = json.dumps({"commit": {"committer": {"date": "2023-06-01T00:00:00Z"}}})
        fake_client.resources = [live_copy(deployment("web", image="old"), **{COMMIT_KEY: older})]

        orchestrator = make_orchestrator(github_settings, revisions=revisions)
        result = await orchestrator.deploy([deployment("web", image="new")])

        assert result.plans[0].action == DeploymentAction.APPLY
        recorded = json.loads(fake_client.applied[0]["metadata"]["annotations"][COMMIT_KEY])
        assert recorded["sha"] == "abc123"
        assert recorded["commit"]["committer"]["date"] == "2024-01-01T00:00:00Z"

    async def test_incomplete_github_settings_skip_lookup(
        self, make_orchestrator, fake_client, revisions
    ) -> None:
        # Only dry runs accept GitHub settings without a repo
        settings = make_settings(
            dry_run=True,
            github=GitHubSettings(enabled=True, token="t", user="acme", repo=None),
        )

        orchestrator = make_orchestrator(settings, revisions=revisions)
        result = await orchestrator.deploy([deployment("web")])

        assert result.success
        assert result.plans[0].action == DeploymentAction.CREATE
        revisions.get_commit.assert_not_awaited()
        assert fake_client.applied == []
