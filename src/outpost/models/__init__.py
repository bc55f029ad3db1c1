"""Pydantic models and value types for bundles and deployments."""
