"""Environment variable substitution for settings files."""

import os
import re
from collections.abc import Mapping

from outpost.lib.errors import ConfigError

# ${NAME} or ${NAME:-default}
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def get_env_var(name: str, default: str | None = None) -> str | None:
    """Return an environment variable or a default."""
    return os.environ.get(name, default)


def substitute_env_vars(text: str, env: Mapping[str, str] | None = None) -> str:
    """Replace ``${VAR}`` references in text with environment values.

    Args:
        text: Raw text to substitute
        env: Mapping to read from (defaults to os.environ)

    Returns:
        Text with all references replaced

    Raises:
        ConfigError: If a referenced variable is unset and has no default
    """
    source = os.environ if env is None else env

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        if name in source:
            return source[name]
        if default is not None:
            return default
        raise ConfigError(
            name,
            f"Environment variable '{name}' is not set and has no default",
        )

    return _ENV_PATTERN.sub(_replace, text)
