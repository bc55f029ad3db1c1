"""Default configuration values for Outpost deployments."""

# Relay image and instance name
DEFAULT_IMAGE = "quay.io/outline/shadowbox:stable"
DEFAULT_CONTAINER_NAME = "shadowbox"

# Ports held exclusively by the instance
DEFAULT_DATA_PORT = 8080
DEFAULT_API_PORT = 8081

# Host layout on the deployer
DEFAULT_PATHS: dict[str, str] = {
    "config_dir": "/opt/outline/config",
    "state_dir": "/root/shadowbox/persisted-state",
    "log_path": "deploy_shadowbox_logs.txt",
    "config_file": "shadowbox_config.json",
    "cert_file": "shadowbox.crt",
    "key_file": "shadowbox.key",
    "access_file": "access.txt",
    "record_file": "deployments.json",
}

# Member names inside the transfer bundle
BUNDLE_MEMBERS: dict[str, str] = {
    "image_archive": "outline_server_image.tar",
    "config": "shadowbox_config.json",
    "certificate": "shadowbox.crt",
    "private_key": "shadowbox.key",
    "access_descriptor": "access.txt",
    "manifest": "bundle_manifest.json",
}
DEFAULT_BUNDLE_NAME = "outline_docker_bundle.zip"

# Paths inside the relay container
CONTAINER_PATHS: dict[str, str] = {
    "config_file": "/opt/outline/shadowbox_config.json",
    "state_dir": "/root/shadowbox/persisted-state",
    "cert_file": "/opt/outline/shadowbox.crt",
    "key_file": "/opt/outline/shadowbox.key",
}

# Container startup polling
STARTUP_DEFAULTS: dict[str, int | float] = {
    "attempts": 60,
    "interval": 1.0,  # seconds
}

# Management API polling
HEALTH_DEFAULTS: dict[str, int | float] = {
    "settle_delay": 10.0,  # seconds
    "attempts": 3,
    "interval": 5.0,  # seconds
    "connect_timeout": 5.0,  # seconds
    "timeout": 10.0,  # seconds
}

# Settings file looked up in the working directory
DEFAULT_SETTINGS_FILES = ("outpost.yaml", "outpost.yml")
