"""Exception hierarchy for kit-deployer.

Every error carries a short ``message`` and optional ``details`` so the CLI
can render both consistently.
"""

from __future__ import annotations

from collections.abc import Sequence


class KitDeployerError(Exception):
    """Base class for all deployment errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class TransientRequestError(KitDeployerError):
    """Raised when the cluster tool fails (process or network error)."""

    def __init__(
        self,
        message: str,
        details: str | None = None,
        returncode: int | None = None,
    ):
        super().__init__(message, details)
        self.returncode = returncode


class ReadinessTimeout(KitDeployerError):
    """Raised when a resource does not become available in time."""

    def __init__(self, kind: str, name: str, timeout: float):
        super().__init__(f"Timeout waiting for {kind}:{name}")
        self.kind = kind
        self.name = name
        self.timeout = timeout


class DependencyTimeout(KitDeployerError):
    """Raised when a dependency selector is never satisfied in time."""

    def __init__(self, selector: str, timeout: float):
        super().__init__(f"Timeout waiting for {selector}")
        self.selector = selector
        self.timeout = timeout


class UnsupportedResourceKind(KitDeployerError):
    """Raised for manifests whose kind is outside the supported set."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"Unsupported resource {kind}:{name}")
        self.kind = kind
        self.name = name


class ConfigValidationError(KitDeployerError):
    """Raised when the run configuration is malformed."""


class NotificationDeliveryError(KitDeployerError):
    """Raised when one or more webhook deliveries failed."""

    def __init__(self, failures: Sequence[str]):
        super().__init__(
            f"{len(failures)} notification(s) failed to deliver",
            details="\n".join(failures),
        )
        self.failures = list(failures)


class RevisionLookupError(KitDeployerError):
    """Raised when revision metadata cannot be fetched."""


class DeploymentFailedError(KitDeployerError):
    """Aggregate of every error collected during a deployment run."""

    def __init__(self, errors: Sequence[BaseException | str]):
        self.errors = list(errors)
        super().__init__(
            f"{len(self.errors)} errors occurred",
            details="\n".join(str(error) for error in self.errors),
        )
