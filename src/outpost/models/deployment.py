"""Pydantic models for deployment settings and results.

This module defines the settings schema for provisioning the relay service,
plus the value types exchanged between the supervisor, health verifier and
orchestrator.
"""

from enum import Enum
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from outpost.config.defaults import (
    DEFAULT_API_PORT,
    DEFAULT_CONTAINER_NAME,
    DEFAULT_DATA_PORT,
    DEFAULT_IMAGE,
    DEFAULT_PATHS,
    HEALTH_DEFAULTS,
    STARTUP_DEFAULTS,
)

Port = Annotated[int, Field(ge=1, le=65535)]


class Protocol(str, Enum):
    """Transport protocol of a published port."""

    TCP = "tcp"
    UDP = "udp"


class InstanceState(str, Enum):
    """Lifecycle states of the named service instance."""

    ABSENT = "absent"
    CREATING = "creating"
    RUNNING = "running"
    VERIFIED = "verified"
    FAILED = "failed"


class MountMode(str, Enum):
    """Bind mount access mode."""

    READ_WRITE = "rw"
    READ_ONLY = "ro"


class PortBinding(BaseModel):
    """A host port published by the instance."""

    model_config = ConfigDict(frozen=True)

    port: Port
    protocol: Protocol = Protocol.TCP

    @property
    def spec(self) -> str:
        """Docker port key, e.g. ``8080/udp``."""
        return f"{self.port}/{self.protocol.value}"


class Mount(BaseModel):
    """A host path bind-mounted into the instance."""

    model_config = ConfigDict(frozen=True)

    host_path: Path
    container_path: str
    mode: MountMode = MountMode.READ_WRITE


class PortPair(BaseModel):
    """The two ports a deployment holds exclusively."""

    model_config = ConfigDict(frozen=True)

    data: Port = DEFAULT_DATA_PORT
    api: Port = DEFAULT_API_PORT

    @model_validator(mode="after")
    def validate_distinct(self) -> "PortPair":
        """Data and API ports must differ."""
        if self.data == self.api:
            raise ValueError(f"data and api ports must differ (both {self.data})")
        return self

    def as_set(self) -> set[int]:
        """Return both ports as a set."""
        return {self.data, self.api}

    def bindings(self) -> list[PortBinding]:
        """Published bindings: data port on tcp and udp, API port on tcp."""
        return [
            PortBinding(port=self.data, protocol=Protocol.TCP),
            PortBinding(port=self.data, protocol=Protocol.UDP),
            PortBinding(port=self.api, protocol=Protocol.TCP),
        ]


class StartupSettings(BaseModel):
    """Polling for the container to reach the running state."""

    model_config = ConfigDict(extra="forbid")

    attempts: int = Field(default=STARTUP_DEFAULTS["attempts"], ge=1)
    interval: float = Field(default=STARTUP_DEFAULTS["interval"], ge=0)


class HealthSettings(BaseModel):
    """Polling of the management API.

    Attributes:
        settle_delay: Seconds to wait before the first probe
        attempts: Maximum number of probes
        interval: Seconds between probes
        connect_timeout: Per-probe connect timeout
        timeout: Per-probe read timeout
        verify_tls: Verify the server certificate (self-signed by default)
    """

    model_config = ConfigDict(extra="forbid")

    settle_delay: float = Field(default=HEALTH_DEFAULTS["settle_delay"], ge=0)
    attempts: int = Field(default=HEALTH_DEFAULTS["attempts"], ge=1)
    interval: float = Field(default=HEALTH_DEFAULTS["interval"], ge=0)
    connect_timeout: float = Field(default=HEALTH_DEFAULTS["connect_timeout"], gt=0)
    timeout: float = Field(default=HEALTH_DEFAULTS["timeout"], gt=0)
    verify_tls: bool = Field(default=False)


class DeploymentSettings(BaseModel):
    """Main settings model for provisioning the relay service.

    Attributes:
        container_name: Name of the single service instance
        image: Image reference provided by the bundle
        ports: Data and API ports
        config_dir: Directory receiving the configuration file
        state_dir: Persisted state directory mounted into the instance
        log_path: Where instance logs are retained after a failure
        error_marker: Case-insensitive text that marks a log line as an error
        restart_policy: Docker restart policy name for the instance
        allow_destructive_cleanup: Remove stale instances without confirmation
        startup: Startup polling settings
        health: Management API polling settings
    """

    model_config = ConfigDict(extra="forbid")

    container_name: str = Field(default=DEFAULT_CONTAINER_NAME)
    image: str = Field(default=DEFAULT_IMAGE)
    ports: PortPair = Field(default_factory=PortPair)
    config_dir: Path = Field(default=Path(DEFAULT_PATHS["config_dir"]))
    state_dir: Path = Field(default=Path(DEFAULT_PATHS["state_dir"]))
    log_path: Path = Field(default=Path(DEFAULT_PATHS["log_path"]))
    error_marker: str = Field(default="error", min_length=1)
    restart_policy: str = Field(default="always")
    allow_destructive_cleanup: bool = Field(default=False)
    startup: StartupSettings = Field(default_factory=StartupSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)

    @field_validator("container_name")
    @classmethod
    def validate_container_name(cls, v: str) -> str:
        """Validate Docker container name characters."""
        if not v or not (v[0].isalnum() and all(c.isalnum() or c in "_.-" for c in v)):
            raise ValueError(
                f"Invalid container name: {v!r}. "
                "Use letters, digits, '_', '.', '-' and start with a letter or digit."
            )
        return v

    @property
    def config_file(self) -> Path:
        return self.config_dir / DEFAULT_PATHS["config_file"]

    @property
    def cert_file(self) -> Path:
        return self.state_dir / DEFAULT_PATHS["cert_file"]

    @property
    def key_file(self) -> Path:
        return self.state_dir / DEFAULT_PATHS["key_file"]

    @property
    def access_file(self) -> Path:
        return self.config_dir / DEFAULT_PATHS["access_file"]

    @property
    def record_file(self) -> Path:
        return self.config_dir / DEFAULT_PATHS["record_file"]


class DeploymentReport(BaseModel):
    """Result of a successful deployment.

    Attributes:
        server_ip: Address the service was configured for
        api_url: Verified management API URL
        container_name: Instance name
        container_id: Runtime identifier of the instance
        image: Deployed image reference
    """

    model_config = ConfigDict(extra="forbid")

    server_ip: str = Field(..., description="Server address")
    api_url: str = Field(..., description="Verified management API URL")
    container_name: str = Field(..., description="Instance name")
    container_id: str = Field(..., description="Runtime identifier")
    image: str = Field(..., description="Deployed image reference")
