"""Deployer settings models.

Pydantic models describing every option that shapes a deployment run.
Defaults mirror ``DeploymentConstants``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kit_deployer.constants import DEFAULT_CONSTANTS


class AvailableSettings(BaseModel):
    """Availability tracking and notification options."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(
        default=False,
        description="Wait for each mutated resource to become available",
    )
    webhooks: list[str] = Field(
        default_factory=list,
        description="URLs notified with per-service deployment status",
    )
    keep_alive: bool = Field(
        default=False,
        description="Periodically log while waiting for availability",
    )
    keep_alive_interval: float = Field(
        default=DEFAULT_CONSTANTS.KEEP_ALIVE_INTERVAL, gt=0
    )
    required: bool = Field(
        default=False,
        description="Deployment only succeeds once resources are available",
    )
    timeout: float = Field(default=DEFAULT_CONSTANTS.AVAILABLE_TIMEOUT, gt=0)


class DependencySettings(BaseModel):
    """Dependency polling options."""

    model_config = ConfigDict(extra="forbid")

    wait: float = Field(default=DEFAULT_CONSTANTS.DEPENDENCY_WAIT, gt=0)
    timeout: float = Field(default=DEFAULT_CONSTANTS.DEPENDENCY_TIMEOUT, gt=0)


class GitHubSettings(BaseModel):
    """Revision metadata lookup options."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    token: str | None = None
    user: str | None = None
    repo: str | None = None


class DeployerSettings(BaseModel):
    """Top-level run configuration."""

    model_config = ConfigDict(extra="forbid")

    api_version: str = "v1"
    sha: str | None = Field(default=None, description="Revision being deployed")
    selector: str | None = Field(
        default=None,
        description="Label selector restricting which live resources are managed",
    )
    dry_run: bool = True
    is_rollback: bool = False
    diff: bool = False
    force: bool = False
    kubectl_binary: str = "kubectl"

    available: AvailableSettings = Field(default_factory=AvailableSettings)
    dependency: DependencySettings = Field(default_factory=DependencySettings)
    github: GitHubSettings = Field(default_factory=GitHubSettings)

    @model_validator(mode="after")
    def _check_github(self) -> DeployerSettings:
        # Dry runs never compare revisions against the cluster
        if self.github.enabled and not self.dry_run:
            missing = [
                name
                for name, value in (
                    ("github.token", self.github.token),
                    ("github.user", self.github.user),
                    ("github.repo", self.github.repo),
                    ("sha", self.sha),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"Revision checks are enabled but {', '.join(missing)} "
                    "not set"
                )
        return self

    @property
    def check_revisions(self) -> bool:
        """Whether the commit-ordering guard should consult GitHub."""
        return bool(
            self.github.enabled
            and self.sha
            and self.github.user
            and self.github.repo
        )
