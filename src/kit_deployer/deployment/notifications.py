"""Deployment status notifications.

``NotificationAggregator`` consumes status events from every cluster of a
run and, once all clusters have completed, notifies each service's final
status exactly once through a ``WebhookNotifier``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from typing import Any

import httpx
from loguru import logger

from kit_deployer.constants import DEFAULT_CONSTANTS, DeploymentConstants
from kit_deployer.errors import ConfigValidationError, NotificationDeliveryError

from .models import Phase, Status, StatusEvent


class WebhookNotifier:
    """POSTs deployment status payloads to webhook URLs.

    Each configured URL is suffixed with ``/<service-name>``.
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        is_rollback: bool = False,
        http_client: httpx.AsyncClient | None = None,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
    ) -> None:
        """Initialize the notifier.

        Args:
            urls: Webhook base URLs
            is_rollback: Whether this run is a rollback (reported in payloads)
            http_client: Optional preconfigured client (owned by the caller)
            constants: Deployment constants

        Raises:
            ConfigValidationError: If no URL is given
        """
        if not urls:
            raise ConfigValidationError("Must provide at least 1 webhook url")
        self.urls = [url.rstrip("/") for url in urls]
        self.is_rollback = is_rollback
        self.constants = constants
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(constants.WEBHOOK_TIMEOUT)
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def payload(self, phase: Phase, status: Status) -> dict[str, Any]:
        """Build the JSON body for one notification."""
        return {
            "name": self.constants.WEBHOOK_PAYLOAD_NAME,
            "url": None,
            "provider": self.constants.WEBHOOK_PROVIDER,
            "build": {
                "full_url": None,
                "number": None,
                "queue_id": None,
                "phase": phase.value,
                "status": status.value,
                "url": None,
                "scm": {"url": None, "branch": None, "commit": None},
                "parameters": {
                    "REVERT": "true" if self.is_rollback else "false",
                    "hash": None,
                    "jobID": None,
                    "CHEFNODE": None,
                    "BRANCH": None,
                },
                "log": None,
                "artifacts": {},
            },
        }

    async def send(self, name: str, phase: Phase, status: Status) -> list[str]:
        """Notify every URL about a service's status.

        Delivery failures are logged and returned rather than raised.

        Returns:
            One description per failed delivery
        """
        payload = self.payload(phase, status)
        results = await asyncio.gather(
            *(self._post(f"{url}/{name}", name, payload) for url in self.urls)
        )
        return [failure for failure in results if failure]

    async def _post(self, url: str, name: str, payload: dict[str, Any]) -> str | None:
        build = payload["build"]
        label = f"{name} with status {build['phase']}/{build['status']}"
        logger.info(f"Sending payload to {url} for {label}")
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send payload to {url} for {label}: {e}")
            return f"{url}: {e}"
        logger.info(f"Successfully sent payload to {url} for {label}")
        return None


class NotificationAggregator:
    """Aggregates status events across clusters into webhook notifications.

    Rules:
    - The first status seen for a service is sent immediately.
    - Later statuses replace the recorded one unless it is a FAILURE, so a
      success from one cluster never masks a failure from another.
    - When no cluster is in flight any more, the recorded status of every
      service is sent, once.

    Example:
        ```python
        aggregator = NotificationAggregator(WebhookNotifier(urls))
        orchestrator = DeploymentOrchestrator(..., on_status=aggregator.change)
        ...
        await aggregator.settled()
        ```
    """

    def __init__(self, notifier: WebhookNotifier) -> None:
        self.notifier = notifier
        self._clusters: set[str] = set()
        self._statuses: dict[str, StatusEvent] = {}
        self._sends: set[asyncio.Task[list[str]]] = set()
        self._failures: list[str] = []
        self._flush_task: asyncio.Task[None] | None = None
        self._done: asyncio.Event | None = None

    @property
    def statuses(self) -> dict[str, StatusEvent]:
        """Latest recorded status per service name."""
        return dict(self._statuses)

    @property
    def clusters_in_flight(self) -> set[str]:
        return set(self._clusters)

    @property
    def flushed(self) -> bool:
        return self._flush_task is not None

    def expect(self, clusters: Iterable[str]) -> None:
        """Register clusters as in flight before any of them reports."""
        self._clusters.update(clusters)

    def _done_event(self) -> asyncio.Event:
        if self._done is None:
            self._done = asyncio.Event()
        return self._done

    def change(self, event: StatusEvent) -> None:
        """Record a status event. Must be called from the running event loop."""
        if event.is_cluster:
            if event.phase == Phase.STARTED:
                self._clusters.add(event.name)
            else:
                self._clusters.discard(event.name)
            # All clusters have completed
            if not self._clusters and self._flush_task is None:
                self._done_event()
                self._flush_task = asyncio.create_task(self._flush())
            return

        name = event.service_name
        recorded = self._statuses.get(name)
        if recorded is None:
            # Always send the first status received for a service
            self._statuses[name] = event
            self._schedule_send(name, event)
        elif recorded.status != Status.FAILURE:
            self._statuses[name] = event

    def _schedule_send(self, name: str, event: StatusEvent) -> None:
        task = asyncio.create_task(self.notifier.send(name, event.phase, event.status))
        self._sends.add(task)
        task.add_done_callback(self._send_done)

    def _send_done(self, task: asyncio.Task[list[str]]) -> None:
        self._sends.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error(f"Notification failed: {task.exception()}")
            self._failures.append(str(task.exception()))
        else:
            self._failures.extend(task.result())

    async def _flush(self) -> None:
        try:
            # Let immediate sends finish so the final status is delivered last
            if self._sends:
                await asyncio.gather(*self._sends, return_exceptions=True)
            results = await asyncio.gather(
                *(
                    self.notifier.send(name, event.phase, event.status)
                    for name, event in self._statuses.items()
                ),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    logger.error(f"Notification failed: {result}")
                    self._failures.append(str(result))
                else:
                    self._failures.extend(result)
        finally:
            self._done_event().set()

    async def settled(self) -> None:
        """Wait until the final flush has been delivered.

        Raises:
            NotificationDeliveryError: If any delivery failed
        """
        await self._done_event().wait()
        if self._failures:
            raise NotificationDeliveryError(self._failures)

    async def drain(self) -> list[str]:
        """Wait for scheduled deliveries without requiring a flush.

        Returns:
            One description per failed delivery so far
        """
        pending: list[asyncio.Future[Any]] = list(self._sends)
        if self._flush_task is not None:
            pending.append(self._flush_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return list(self._failures)
