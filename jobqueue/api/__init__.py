"""Admin HTTP API module."""
