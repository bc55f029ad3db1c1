"""Settings loader for Outpost deployments.

This module provides the SettingsLoader class for loading, merging, and
validating deployment settings from YAML files and environment variables.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from outpost.config.defaults import DEFAULT_SETTINGS_FILES
from outpost.config.env_loader import substitute_env_vars
from outpost.config.validator import flatten_pydantic_errors
from outpost.lib.errors import ConfigError
from outpost.models.deployment import DeploymentSettings

logger = logging.getLogger(__name__)

# Environment variable to settings path mapping
ENV_VAR_MAP: dict[str, str] = {
    "container_name": "OUTPOST_CONTAINER_NAME",
    "image": "OUTPOST_IMAGE",
    "ports.data": "OUTPOST_DATA_PORT",
    "ports.api": "OUTPOST_API_PORT",
    "config_dir": "OUTPOST_CONFIG_DIR",
    "state_dir": "OUTPOST_STATE_DIR",
    "log_path": "OUTPOST_LOG_PATH",
    "allow_destructive_cleanup": "OUTPOST_ALLOW_DESTRUCTIVE_CLEANUP",
    "health.verify_tls": "OUTPOST_VERIFY_TLS",
}

_INT_FIELDS = {"ports.data", "ports.api"}
_BOOL_FIELDS = {"allow_destructive_cleanup", "health.verify_tls"}


def _parse_env_value(field_path: str, value: str) -> Any:
    """Parse environment variable value to the type of its field.

    Raises:
        ValueError: If an integer field holds a non-integer
    """
    if field_path in _INT_FIELDS:
        return int(value)
    if field_path in _BOOL_FIELDS:
        return value.lower() in ("true", "1", "yes", "on")
    return value


def _set_path(target: dict[str, Any], field_path: str, value: Any) -> None:
    """Set a dotted field path in a nested dict, creating levels as needed."""
    *parents, leaf = field_path.split(".")
    node = target
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[leaf] = value


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> None:
    """Deep merge override dict into base dict (in-place).

    For nested dicts, merging is recursive.
    For other types, override completely replaces base.
    """
    for key, override_value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(override_value, Mapping)
        ):
            _deep_merge(base[key], override_value)
        else:
            base[key] = override_value


class SettingsLoader:
    """Loads and validates deployment settings.

    Precedence (highest to lowest):
    1. Explicit overrides (CLI options)
    2. OUTPOST_* environment variables
    3. Settings file (outpost.yaml)
    4. Model defaults
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        """Initialize the loader.

        Args:
            env: Environment mapping (defaults to os.environ)
        """
        self._env = os.environ if env is None else env

    def find_settings_file(self, directory: Path | None = None) -> Path | None:
        """Return the first default settings file present in a directory."""
        base = directory or Path.cwd()
        for name in DEFAULT_SETTINGS_FILES:
            candidate = base / name
            if candidate.is_file():
                return candidate
        return None

    def read_file(self, path: Path) -> dict[str, Any]:
        """Parse a YAML settings file with environment variable substitution.

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        try:
            raw_text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(
                "settings_file",
                f"Settings file not found or unreadable at {path}: {e}",
            ) from e

        substituted = substitute_env_vars(raw_text, self._env)
        try:
            content = yaml.safe_load(substituted)
        except yaml.YAMLError as e:
            raise ConfigError(
                "yaml_parse",
                f"Failed to parse YAML file {path}: {str(e)}",
            ) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError(
                "settings_file",
                f"Settings file {path} must contain a mapping at the top level",
            )
        return content

    def env_overrides(self) -> dict[str, Any]:
        """Collect OUTPOST_* environment overrides as a nested dict.

        Raises:
            ConfigError: If an override cannot be parsed
        """
        overrides: dict[str, Any] = {}
        for field_path, env_name in ENV_VAR_MAP.items():
            if env_name not in self._env:
                continue
            try:
                value = _parse_env_value(field_path, self._env[env_name])
            except ValueError as e:
                raise ConfigError(
                    field_path,
                    f"Invalid value for {env_name}: {self._env[env_name]!r}",
                ) from e
            _set_path(overrides, field_path, value)
        return overrides

    def load(
        self,
        path: Path | str | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> DeploymentSettings:
        """Load deployment settings.

        Args:
            path: Settings file; when omitted, outpost.yaml in the working
                directory is used if present
            overrides: Nested values taking precedence over everything else

        Returns:
            Validated DeploymentSettings

        Raises:
            ConfigError: If reading, parsing, or validation fails
        """
        settings_path = Path(path) if path else self.find_settings_file()

        merged: dict[str, Any] = {}
        if settings_path is not None:
            logger.debug(f"Loading settings from {settings_path}")
            merged = self.read_file(settings_path)

        _deep_merge(merged, self.env_overrides())
        if overrides:
            _deep_merge(merged, overrides)

        try:
            return DeploymentSettings(**merged)
        except PydanticValidationError as e:
            error_text = "\n".join(flatten_pydantic_errors(e))
            source = settings_path or "environment"
            raise ConfigError(
                "settings_validation",
                f"Invalid deployment settings in {source}:\n{error_text}",
            ) from e
