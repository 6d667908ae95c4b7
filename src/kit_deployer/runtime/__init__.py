"""Runtime configuration for deployment runs."""
