"""Kubectl-based implementation of ResourceClient.

Uses subprocess calls to kubectl for all operations.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import subprocess
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

from loguru import logger

from kit_deployer.errors import TransientRequestError

from .client import CommandResult, Resource, ResourceClient


class KubectlClient(ResourceClient):
    """Resource client using kubectl subprocess calls.

    One-shot commands run through ``asyncio.to_thread()`` so blocking
    subprocess calls do not block the event loop. Watches use an asyncio
    subprocess so the stream can be read incrementally and killed on stop.
    """

    def __init__(
        self,
        *,
        kubeconfig: Path | str | None = None,
        endpoint: str | None = None,
        binary: str = "kubectl",
    ) -> None:
        """Initialize the kubectl client.

        Args:
            kubeconfig: Path to a kubeconfig file (preferred over endpoint)
            endpoint: API server address used when no kubeconfig is given
            binary: kubectl executable
        """
        self.binary = binary
        self.kubeconfig = str(kubeconfig) if kubeconfig else ""
        self.endpoint = endpoint or ""

    def _base_args(self) -> list[str]:
        # Prefer configuration file over endpoint if both are defined
        if self.kubeconfig:
            return ["--kubeconfig", self.kubeconfig]
        if self.endpoint:
            return ["-s", self.endpoint]
        return []

    async def _run_kubectl(self, args: list[str]) -> CommandResult:
        """Run a kubectl command asynchronously.

        Args:
            args: Command arguments (without 'kubectl' prefix)

        Returns:
            CommandResult with execution results
        """
        cmd = [self.binary, *self._base_args(), *args]

        def _run() -> CommandResult:
            try:
                result = subprocess.run(cmd, capture_output=True, text=True)
            except OSError as e:
                return CommandResult(success=False, stderr=str(e), returncode=127)
            return CommandResult(
                success=result.returncode == 0,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
                returncode=result.returncode,
            )

        logger.debug(f"Running {' '.join(cmd)}")
        return await asyncio.to_thread(_run)

    async def _run_checked(self, args: list[str]) -> str:
        """Run a kubectl command and return stdout, raising on failure."""
        result = await self._run_kubectl(args)
        if not result.success:
            raise TransientRequestError(
                f"kubectl {' '.join(args)} failed",
                details=result.stderr.strip() or None,
                returncode=result.returncode,
            )
        return result.stdout

    async def _get_json(self, args: list[str]) -> Resource:
        stdout = await self._run_checked(["get", "--output=json", *args])
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise TransientRequestError(
                f"kubectl get {' '.join(args)} returned invalid JSON",
                details=str(e),
            ) from e

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def get(self, kind: str, name: str) -> Resource:
        """Get a single resource."""
        return await self._get_json([kind.lower(), name])

    async def list(
        self,
        kinds: Sequence[str],
        selector: str | None = None,
    ) -> list[Resource]:
        """List resources of the given kinds, optionally by label selector."""
        args = [",".join(kind.lower() for kind in kinds)]
        if selector:
            args.extend(["-l", selector])
        result = await self._get_json(args)
        return list(result.get("items") or [])

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create(self, manifest_path: Path) -> str:
        """Create the resource described by a manifest file."""
        return (await self._run_checked(["create", "-f", str(manifest_path)])).strip()

    async def apply(self, manifest_path: Path) -> str:
        """Apply the resource described by a manifest file."""
        return (await self._run_checked(["apply", "-f", str(manifest_path)])).strip()

    async def delete(self, manifest_path: Path) -> str:
        """Delete the resource described by a manifest file."""
        return (await self._run_checked(["delete", "-f", str(manifest_path)])).strip()

    async def delete_by_name(self, kind: str, name: str) -> str:
        """Delete a resource by kind and name."""
        return (await self._run_checked(["delete", kind.lower(), name])).strip()

    # =========================================================================
    # Change Notifications
    # =========================================================================

    async def watch(self, kind: str, name: str) -> AsyncIterator[Resource]:
        """Stream observed states via ``kubectl get --watch --output=json``.

        kubectl writes one JSON object per change with no delimiter, and a
        single object may arrive split across several reads, so the stream
        is buffered until a complete object can be decoded.
        """
        cmd = [
            self.binary,
            *self._base_args(),
            "get",
            "--watch",
            "--output=json",
            kind.lower(),
            name,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransientRequestError(
                f"Unable to watch {kind}:{name}", details=str(e)
            ) from e

        assert process.stdout is not None
        assert process.stderr is not None
        decoder = JSONStreamDecoder()
        # Multibyte characters may straddle two reads
        text = codecs.getincrementaldecoder("utf-8")()
        try:
            while True:
                chunk = await process.stdout.read(65536)
                try:
                    data = text.decode(chunk, final=not chunk)
                except UnicodeDecodeError as e:
                    raise TransientRequestError(
                        f"Unable to decode watch output for {kind}:{name}",
                        details=str(e),
                    ) from e
                for snapshot in decoder.feed(data):
                    yield snapshot
                if not chunk:
                    break

            stderr = (await process.stderr.read()).decode("utf-8").strip()
            returncode = await process.wait()
            raise TransientRequestError(
                f"Watch for {kind}:{name} closed",
                details=stderr or None,
                returncode=returncode,
            )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()


class JSONStreamDecoder:
    """Incrementally decodes a stream of concatenated JSON objects."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = json.JSONDecoder()

    def feed(self, data: str) -> list[Resource]:
        """Add data to the buffer and return every complete object in it."""
        self._buffer += data
        objects: list[Resource] = []
        while True:
            text = self._buffer.lstrip()
            if not text:
                self._buffer = ""
                break
            try:
                obj, end = self._decoder.raw_decode(text)
            except json.JSONDecodeError:
                # Incomplete object, wait for more data
                self._buffer = text
                break
            objects.append(obj)
            self._buffer = text[end:]
        return objects
