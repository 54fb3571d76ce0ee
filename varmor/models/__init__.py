"""Policy and profile models package."""
