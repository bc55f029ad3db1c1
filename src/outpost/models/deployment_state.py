"""Models for the on-disk record of deployed instances."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class DeploymentRecord(BaseModel):
    """Persisted record of one deployed instance."""

    model_config = ConfigDict(extra="forbid")

    container_name: str = Field(..., description="Instance name")
    container_id: str = Field(..., description="Runtime identifier")
    image: str = Field(..., description="Deployed image reference")
    server_ip: str = Field(..., description="Address the service was configured for")
    api_url: str | None = Field(default=None, description="Management API URL")
    status: str = Field(..., description="Deployment status")
    created_at: datetime | None = Field(
        default=None, description="Initial deployment timestamp"
    )
    updated_at: datetime | None = Field(
        default=None, description="Last update timestamp"
    )
    config_hash: str = Field(..., description="Settings hash at deployment time")


class DeploymentState(BaseModel):
    """Top-level record file stored on disk."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="Record file version")
    deployments: dict[str, DeploymentRecord] = Field(
        default_factory=dict, description="Deployments keyed by container name"
    )
