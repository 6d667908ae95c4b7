"""Shared fixtures for kit-deployer tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import pytest
import yaml

from kit_deployer.errors import TransientRequestError
from kit_deployer.infra.k8s.client import Resource, ResourceClient


class FakeResourceClient(ResourceClient):
    """In-memory ResourceClient recording every call.

    - ``resources`` is what ``list()`` returns, filtered by kind
    - ``selector_results`` queues responses per selector; the last one repeats
    - ``watch_states`` are yielded by ``watch()``, after which the stream
      stays open (``hold_watch``) or ends
    - ``failures`` maps a method name to the error it raises
    """

    def __init__(self) -> None:
        self.resources: list[Resource] = []
        self.selector_results: dict[str, list[list[Resource] | Exception]] = {}
        self.watch_states: dict[tuple[str, str], list[Resource]] = {}
        self.hold_watch = True
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.applied: list[dict[str, Any]] = []
        self.closed_watches: list[tuple[str, str]] = []

    def _check(self, method: str) -> None:
        if method in self.failures:
            raise self.failures[method]

    def methods(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def get(self, kind: str, name: str) -> Resource:
        self.calls.append(("get", kind, name))
        self._check("get")
        for resource in self.resources:
            if resource["kind"] == kind and resource["metadata"]["name"] == name:
                return resource
        raise TransientRequestError(f"{kind}:{name} not found")

    async def list(
        self,
        kinds: Sequence[str],
        selector: str | None = None,
    ) -> list[Resource]:
        self.calls.append(("list", tuple(kinds), selector))
        self._check("list")
        if selector is not None and selector in self.selector_results:
            queue = self.selector_results[selector]
            response = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(response, Exception):
                raise response
            return response
        return [resource for resource in self.resources if resource["kind"] in kinds]

    async def _mutate(self, method: str, manifest_path: Path) -> str:
        content = yaml.safe_load(manifest_path.read_text())
        name = content["metadata"]["name"]
        self.calls.append((method, content["kind"], name))
        self._check(method)
        if method != "delete":
            self.applied.append(content)
        return f"{content['kind'].lower()}/{name} {method}d"

    async def create(self, manifest_path: Path) -> str:
        return await self._mutate("create", manifest_path)

    async def apply(self, manifest_path: Path) -> str:
        return await self._mutate("apply", manifest_path)

    async def delete(self, manifest_path: Path) -> str:
        return await self._mutate("delete", manifest_path)

    async def delete_by_name(self, kind: str, name: str) -> str:
        self.calls.append(("delete_by_name", kind, name))
        self._check("delete_by_name")
        return f"{kind.lower()}/{name} deleted"

    async def watch(self, kind: str, name: str) -> AsyncIterator[Resource]:
        self.calls.append(("watch", kind, name))
        try:
            self._check("watch")
            for state in self.watch_states.get((kind, name), []):
                yield state
            if self.hold_watch:
                await asyncio.Event().wait()
        finally:
            self.closed_watches.append((kind, name))


def make_resource(
    kind: str,
    name: str,
    *,
    annotations: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    status: dict[str, Any] | None = None,
    generation: int | None = None,
    **extra: Any,
) -> Resource:
    """Build a resource document."""
    metadata: dict[str, Any] = {"name": name}
    if annotations is not None:
        metadata["annotations"] = annotations
    if labels is not None:
        metadata["labels"] = labels
    if generation is not None:
        metadata["generation"] = generation
    resource: Resource = {"apiVersion": "v1", "kind": kind, "metadata": metadata}
    if status is not None:
        resource["status"] = status
    resource.update(extra)
    return resource


@pytest.fixture
def fake_client() -> FakeResourceClient:
    """Create an empty in-memory resource client."""
    return FakeResourceClient()


@pytest.fixture
def client_factory():
    """Expose the fake client class, for tests needing several clients."""
    return FakeResourceClient


@pytest.fixture
def resource_factory():
    """Expose ``make_resource`` to tests."""
    return make_resource


@pytest.fixture
def info_messages() -> list[str]:
    """Collects messages passed to on_info callbacks."""
    return []
