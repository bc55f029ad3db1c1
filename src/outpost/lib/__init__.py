"""Shared helpers: error hierarchy and logging setup."""
