"""Infrastructure adapters: cluster tooling and revision metadata."""
