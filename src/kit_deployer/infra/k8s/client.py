"""Abstract resource client interface.

Defines the contract for cluster operations consumed by the deployment
engine. Implementations wrap an external cluster-management tool; the
engine only ever talks to this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CommandResult:
    """Result of a command execution."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


# A resource as returned by the cluster (parsed JSON object)
Resource = dict[str, Any]


# =============================================================================
# Abstract Client
# =============================================================================


class ResourceClient(ABC):
    """Abstract base class for cluster resource operations.

    All methods are async. Failures raise ``TransientRequestError``; callers
    decide whether to retry.
    """

    # =========================================================================
    # Read Operations
    # =========================================================================

    @abstractmethod
    async def get(self, kind: str, name: str) -> Resource:
        """Get a single resource.

        Args:
            kind: Resource kind (e.g. "Deployment")
            name: Resource name

        Returns:
            The resource as a dictionary
        """
        ...

    @abstractmethod
    async def list(
        self,
        kinds: Sequence[str],
        selector: str | None = None,
    ) -> list[Resource]:
        """List resources of the given kinds.

        Args:
            kinds: Resource kinds to list
            selector: Optional label selector

        Returns:
            List of matching resources (the ``items`` of the listing)
        """
        ...

    # =========================================================================
    # Mutations
    # =========================================================================

    @abstractmethod
    async def create(self, manifest_path: Path) -> str:
        """Create the resource described by a manifest file.

        Returns:
            Tool output describing the change
        """
        ...

    @abstractmethod
    async def apply(self, manifest_path: Path) -> str:
        """Apply (update in place) the resource described by a manifest file."""
        ...

    async def recreate(self, manifest_path: Path) -> str:
        """Delete then create the resource described by a manifest file."""
        await self.delete(manifest_path)
        return await self.create(manifest_path)

    @abstractmethod
    async def delete(self, manifest_path: Path) -> str:
        """Delete the resource described by a manifest file."""
        ...

    @abstractmethod
    async def delete_by_name(self, kind: str, name: str) -> str:
        """Delete a resource by kind and name."""
        ...

    # =========================================================================
    # Change Notifications
    # =========================================================================

    @abstractmethod
    def watch(self, kind: str, name: str) -> AsyncIterator[Resource]:
        """Stream successive observed states of a resource.

        The stream ends when the consumer stops iterating (``aclose()``) and
        raises ``TransientRequestError`` if the subscription fails.
        """
        ...
