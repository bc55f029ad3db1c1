"""Models for bundle contents: the service configuration and access descriptor.

The configuration document is the JSON file the relay reads at startup. The
access descriptor is handed to the external management client.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

PLACEHOLDER_CERT_SHA256 = "placeholder-cert-sha256"
ACCESS_KEYS_SUFFIX = "access-keys"


def _api_path_prefix(api_url: str) -> str:
    """Extract the secret API prefix from an apiUrl path.

    A trailing ``access-keys`` segment is dropped so both the bare server URL
    and the full probe URL yield the same prefix.
    """
    segments = [s for s in urlsplit(api_url).path.split("/") if s]
    if segments and segments[-1] == ACCESS_KEYS_SUFFIX:
        segments = segments[:-1]
    return "/".join(segments)


class ConfigDocument(BaseModel):
    """Relay configuration document.

    Unknown keys are preserved so that patching never drops settings written
    by the relay itself.

    Attributes:
        api_url: Management API URL (``apiUrl``)
        port: Port number advertised in the document
        hostname: Hostname advertised to clients
        cert_sha256: Hex SHA-256 fingerprint of the TLS certificate
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_url: str = Field(..., alias="apiUrl", description="Management API URL")
    port: int | None = Field(default=None, description="Advertised port")
    hostname: str | None = Field(default=None, description="Advertised hostname")
    cert_sha256: str | None = Field(
        default=None, alias="certSha256", description="Certificate fingerprint"
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Require an absolute URL with a host segment."""
        parts = urlsplit(v)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"apiUrl must be an absolute URL, got {v!r}")
        return v

    @property
    def api_prefix(self) -> str:
        """Secret path prefix of the management API."""
        return _api_path_prefix(self.api_url)

    def to_json(self) -> str:
        """Serialize using the on-disk key names."""
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(payload, indent=2) + "\n"


class AccessDescriptor(BaseModel):
    """Connection details for the management client (``access.txt``)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_url: str = Field(..., alias="apiUrl", description="Management API URL")
    cert_sha256: str | None = Field(
        default=None, alias="certSha256", description="Certificate fingerprint"
    )

    @property
    def api_prefix(self) -> str:
        """Secret path prefix of the management API."""
        return _api_path_prefix(self.api_url)

    def to_json(self) -> str:
        """Serialize using the on-disk key names."""
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(payload, indent=2) + "\n"


@dataclass(frozen=True)
class ArtifactBundle:
    """Packaged artifacts moved from the builder host to the deployer host.

    Members are optional at construction so that an unpacked bundle with
    missing files can still be described; the orchestrator validates
    completeness before any side effect.

    Attributes:
        image_ref: Image reference the archive provides
        image_archive: Path to the saved image tarball
        config: Parsed relay configuration
        certificate: PEM certificate bytes
        private_key: Optional PEM private key bytes
        access_descriptor: Parsed access descriptor
        workdir: Directory the bundle was unpacked into, removed after success
    """

    image_ref: str
    image_archive: Path | None = None
    config: ConfigDocument | None = None
    certificate: bytes | None = None
    private_key: bytes | None = None
    access_descriptor: AccessDescriptor | None = None
    workdir: Path | None = None

    def missing_members(self) -> list[str]:
        """Return the names of required members that are absent."""
        missing: list[str] = []
        if self.image_archive is None or not self.image_archive.exists():
            missing.append("image_archive")
        if self.config is None:
            missing.append("config")
        if not self.certificate:
            missing.append("certificate")
        if self.access_descriptor is None:
            missing.append("access_descriptor")
        return missing

    def describe(self) -> dict[str, Any]:
        """Summarize the bundle for display."""
        return {
            "image": self.image_ref,
            "image_archive": str(self.image_archive) if self.image_archive else None,
            "api_url": self.config.api_url if self.config else None,
            "has_private_key": self.private_key is not None,
        }
