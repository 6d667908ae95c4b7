"""Deployment engine.

Plans and applies manifests per cluster, resolves dependencies between
them, tracks readiness and reports status to webhooks. Import from the
submodules, e.g. ``kit_deployer.deployment.orchestrator``.
"""
