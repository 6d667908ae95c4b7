"""Utility functions for the cluster infrastructure layer.

Provides helpers for running the async deployment engine from synchronous
CLI commands.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a blocking sync context.

    Args:
        coro: The coroutine to execute

    Returns:
        The result of the coroutine

    Example:
        from kit_deployer.infra.k8s import run_sync

        run_sync(deployer.deploy("clusters/*.yaml", Path("manifests")))
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop, create a new one
        return asyncio.run(coro)

    # Already inside an event loop: run on a fresh loop in a worker thread
    import concurrent.futures

    with concurrent.futures.ThreadPoolExecutor() as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result()
