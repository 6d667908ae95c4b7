"""Loading of settings, cluster configs and manifests."""

import glob
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from kit_deployer.constants import DEFAULT_CONSTANTS
from kit_deployer.deployment.models import Manifest
from kit_deployer.errors import ConfigValidationError
from kit_deployer.runtime.config.config_data import DeployerSettings
from kit_deployer.runtime.config.config_utils import env_overrides, parse_string_list

ENV_PREFIX = "KIT_DEPLOYER_"


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def settings_from_env(
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> DeployerSettings:
    """Build settings from ``KIT_DEPLOYER_*`` variables, then explicit overrides.

    Args:
        overrides: Nested values taking precedence over the environment
            (typically CLI flags)
        environ: Environment to read instead of ``os.environ``

    Returns:
        Validated DeployerSettings

    Raises:
        ConfigValidationError: If the combined values fail validation
    """
    values = env_overrides(ENV_PREFIX, environ)
    available = values.get("available")
    if isinstance(available, dict) and isinstance(available.get("webhooks"), str):
        available["webhooks"] = parse_string_list(available["webhooks"])
    logger.debug(f"Settings from environment: {sorted(values)}")

    values = _merge(values, overrides or {})
    try:
        return DeployerSettings.model_validate(values)
    except ValidationError as e:
        raise ConfigValidationError("Invalid deployer settings", details=str(e)) from e


@dataclass
class ClusterConfig:
    """A cluster config file (a kubeconfig with ``kind: Config``).

    Attributes:
        name: Cluster name from ``metadata.name``
        path: Location of the file, passed to kubectl as ``--kubeconfig``
        content: Parsed document
    """

    name: str
    path: Path
    content: dict[str, Any]


def load_cluster_config(path: Path) -> ClusterConfig:
    """Load and validate one cluster config file.

    Raises:
        ConfigValidationError: If the file is unreadable, is not a
            ``kind: Config`` document, or has no ``metadata.name``
    """
    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"Unable to read cluster config {path}", str(e)) from e

    if not isinstance(content, dict):
        raise ConfigValidationError(f"Cluster config {path} is not a mapping")
    if content.get("kind") != DEFAULT_CONSTANTS.CLUSTER_CONFIG_KIND:
        raise ConfigValidationError(
            f"Cluster config {path} must have kind "
            f"{DEFAULT_CONSTANTS.CLUSTER_CONFIG_KIND}, got {content.get('kind')!r}"
        )
    name = (content.get("metadata") or {}).get("name")
    if not name:
        raise ConfigValidationError(f"Cluster config {path} has no metadata.name")
    return ClusterConfig(name=str(name), path=path, content=content)


def load_cluster_configs(pattern: str) -> list[ClusterConfig]:
    """Load every cluster config matching a glob pattern.

    All files are validated before any is returned, so a single bad config
    stops the run before anything is deployed.

    Raises:
        ConfigValidationError: If nothing matches or any config is invalid
    """
    paths = sorted(Path(match) for match in glob.glob(pattern, recursive=True))
    if not paths:
        raise ConfigValidationError(f"No cluster configs found matching {pattern}")

    configs = [load_cluster_config(path) for path in paths]
    names = [config.name for config in configs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigValidationError(
            f"Duplicate cluster names: {', '.join(duplicates)}"
        )
    logger.info(f"Loaded {len(configs)} cluster configs")
    return configs


def load_manifests(directory: Path | None, cluster_name: str) -> list[Manifest]:
    """Load the manifests of one cluster from ``<directory>/<cluster_name>/``.

    Files are read in sorted order; empty documents are skipped. A missing
    directory yields no manifests.

    Raises:
        ConfigValidationError: If a file cannot be parsed or is not a mapping
    """
    if directory is None:
        return []
    cluster_dir = directory / cluster_name
    if not cluster_dir.is_dir():
        logger.debug(f"No manifest directory {cluster_dir}")
        return []

    manifests: list[Manifest] = []
    for path in sorted(cluster_dir.glob(DEFAULT_CONSTANTS.MANIFEST_GLOB)):
        if not path.is_file():
            continue
        try:
            content = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Unable to read manifest {path}", str(e)) from e
        if content is None:
            continue
        if not isinstance(content, dict):
            raise ConfigValidationError(f"Manifest {path} is not a mapping")
        manifests.append(Manifest(content=content, path=path))
    return manifests
