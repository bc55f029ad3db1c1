"""Outpost - Provision a self-hosted relay server from a transfer bundle.

Outpost packages the relay container image with its configuration on a
builder host, then deploys it on a separate host: it checks ports, patches
the configuration for the server address, starts exactly one container, and
verifies the management API before reporting success.
"""

from outpost.lib.errors import ConfigError, DeploymentError, OutpostError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigError",
    "DeploymentError",
    "OutpostError",
]
