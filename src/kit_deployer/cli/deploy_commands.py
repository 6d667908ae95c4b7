"""The ``deploy`` command."""

import sys
from pathlib import Path
from typing import Any

import typer
from loguru import logger

from kit_deployer.deployment.deployer import Deployer
from kit_deployer.deployment.models import DeploymentAction
from kit_deployer.infra.k8s.utils import run_sync
from kit_deployer.runtime.config.config_loader import settings_from_env

from .console import console, with_error_handling


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Route loguru output to stderr at the requested level."""
    level = "DEBUG" if verbose else "WARNING" if quiet else "INFO"
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def build_overrides(
    *,
    sha: str | None = None,
    selector: str | None = None,
    dry_run: bool | None = None,
    diff: bool | None = None,
    force: bool | None = None,
    rollback: bool | None = None,
    available: bool | None = None,
    required: bool | None = None,
    keep_alive: bool | None = None,
    webhooks: list[str] | None = None,
    github: bool | None = None,
) -> dict[str, Any]:
    """Nested settings values for the options that were given."""
    top = {
        "sha": sha,
        "selector": selector,
        "dry_run": dry_run,
        "diff": diff,
        "force": force,
        "is_rollback": rollback,
    }
    nested = {
        "available": {
            "enabled": available,
            "required": required,
            "keep_alive": keep_alive,
            "webhooks": webhooks or None,
        },
        "github": {"enabled": github},
    }
    overrides: dict[str, Any] = {k: v for k, v in top.items() if v is not None}
    for section, values in nested.items():
        given = {k: v for k, v in values.items() if v is not None}
        if given:
            overrides[section] = given
    return overrides


@with_error_handling
def deploy(
    configs: str = typer.Option(
        ..., "--configs", "-c", help="Glob matching cluster config files"
    ),
    manifests: Path = typer.Option(
        ..., "--manifests", "-m", help="Directory with one manifest directory per cluster"
    ),
    namespaces: Path | None = typer.Option(
        None, "--namespaces", "-n", help="Directory with one namespace directory per cluster"
    ),
    sha: str | None = typer.Option(None, "--sha", help="Revision being deployed"),
    selector: str | None = typer.Option(
        None, "--selector", "-l", help="Only manage live resources matching this selector"
    ),
    dry_run: bool | None = typer.Option(
        None, "--dry-run/--no-dry-run", help="Report changes without applying them"
    ),
    diff: bool | None = typer.Option(
        None, "--diff", help="Show differences against live resources"
    ),
    force: bool | None = typer.Option(
        None, "--force", help="Deploy manifests even when nothing changed"
    ),
    rollback: bool | None = typer.Option(
        None, "--rollback", help="Report this run as a rollback"
    ),
    available: bool | None = typer.Option(
        None, "--available", help="Wait for deployed resources to become available"
    ),
    required: bool | None = typer.Option(
        None, "--required", help="Fail unless resources become available"
    ),
    webhook: list[str] | None = typer.Option(
        None, "--webhook", help="Webhook URL notified with deployment status"
    ),
    keep_alive: bool | None = typer.Option(
        None, "--keep-alive", help="Log periodically while waiting"
    ),
    github: bool | None = typer.Option(
        None, "--github/--no-github", help="Compare revisions using GitHub"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log warnings"),
) -> None:
    """
    🚀 Deploy manifests to every cluster matching --configs.

    Runs as a dry run unless --no-dry-run is given.
    """
    configure_logging(verbose=verbose, quiet=quiet)

    settings = settings_from_env(
        build_overrides(
            sha=sha,
            selector=selector,
            dry_run=dry_run,
            diff=diff,
            force=force,
            rollback=rollback,
            available=available,
            required=required,
            keep_alive=keep_alive,
            webhooks=webhook,
            github=github,
        )
    )

    mode = "DRY RUN" if settings.dry_run else "LIVE"
    console.print_header(f"Deploying manifests ({mode})")

    results = run_sync(
        Deployer(settings).deploy(configs, manifests, namespaces)
    )

    for result in results:
        changed = [plan for plan in result.plans if plan.action != DeploymentAction.SKIP]
        console.ok(
            f"{result.cluster}: {len(changed)} changed, "
            f"{len(result.plans) - len(changed)} skipped, "
            f"{len(result.deleted)} deleted"
        )
    if settings.dry_run:
        console.info("This was a dry run and no changes were deployed")
