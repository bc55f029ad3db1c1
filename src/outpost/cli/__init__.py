"""Command line interface for Outpost."""
