"""Settings loading, validation, and defaults for Outpost deployments.

Main components:
- SettingsLoader: Load and validate outpost.yaml with environment overrides
- Environment variable substitution (${VAR_NAME} and ${VAR_NAME:-default})
- Default values in outpost.config.defaults

Import the loader from outpost.config.loader; this package module stays empty
so that models can import the defaults without pulling in the loader.
"""
