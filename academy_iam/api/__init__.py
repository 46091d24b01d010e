"""HTTP API blueprints (JSON only)."""
