from .config_data import (
    AvailableSettings,
    DependencySettings,
    DeployerSettings,
    GitHubSettings,
)
from .config_loader import (
    ClusterConfig,
    load_cluster_config,
    load_cluster_configs,
    load_manifests,
    settings_from_env,
)

__all__ = [
    "AvailableSettings",
    "DependencySettings",
    "DeployerSettings",
    "GitHubSettings",
    "ClusterConfig",
    "load_cluster_config",
    "load_cluster_configs",
    "load_manifests",
    "settings_from_env",
]
