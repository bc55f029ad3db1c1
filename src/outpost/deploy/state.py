"""Deployment record helpers."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from outpost.lib.errors import DeploymentError
from outpost.models.deployment import DeploymentReport, DeploymentSettings
from outpost.models.deployment_state import DeploymentRecord, DeploymentState

STATE_VERSION = "1.0"


def compute_config_hash(settings: DeploymentSettings) -> str:
    """Compute a deterministic hash of the deployment settings."""
    payload = json.dumps(settings.model_dump(mode="json"), sort_keys=True)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def load_state(state_path: Path) -> DeploymentState:
    """Load the deployment record file, or an empty state if there is none."""
    if not state_path.exists():
        return DeploymentState(version=STATE_VERSION)

    try:
        content = state_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to read deployment record at {state_path}: {exc}",
        ) from exc
    if not content.strip():
        return DeploymentState(version=STATE_VERSION)

    try:
        return DeploymentState.model_validate_json(content)
    except ValidationError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Invalid deployment record format in {state_path}: {exc}",
        ) from exc


def save_state(state_path: Path, state: DeploymentState) -> None:
    """Write the deployment record file, readable only by its owner."""
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
        state_path.write_text(payload, encoding="utf-8")
        state_path.chmod(0o600)
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to write deployment record to {state_path}: {exc}",
        ) from exc


def get_deployment_record(state_path: Path, name: str) -> DeploymentRecord | None:
    """Return the record for a container name, if any."""
    return load_state(state_path).deployments.get(name)


def update_deployment_record(
    state_path: Path, name: str, record: DeploymentRecord
) -> DeploymentRecord:
    """Insert or replace the record for a container name and persist it."""
    state = load_state(state_path)
    existing = state.deployments.get(name)
    now = datetime.now(timezone.utc)

    created_at = record.created_at or (existing.created_at if existing else None) or now
    updated_record = record.model_copy(
        update={"created_at": created_at, "updated_at": now}
    )
    state.deployments[name] = updated_record
    save_state(state_path, state)
    return updated_record


def remove_deployment_record(state_path: Path, name: str) -> bool:
    """Drop the record for a container name. Returns True if one existed."""
    state = load_state(state_path)
    if state.deployments.pop(name, None) is None:
        return False
    save_state(state_path, state)
    return True


def record_from_report(
    report: DeploymentReport, settings: DeploymentSettings
) -> DeploymentRecord:
    """Build a record for a verified deployment."""
    return DeploymentRecord(
        container_name=report.container_name,
        container_id=report.container_id,
        image=report.image,
        server_ip=report.server_ip,
        api_url=report.api_url,
        status="verified",
        config_hash=compute_config_hash(settings),
    )
