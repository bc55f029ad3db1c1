"""Lifecycle management of the named relay container.

This module wraps the Docker SDK operations the deployment needs: loading
the bundled image, creating exactly one instance per name, waiting for it to
run, collecting logs, and removing it again.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from outpost.deploy.retry import RetryPolicy
from outpost.lib.errors import (
    BindFailureError,
    ContainerRuntimeError,
    DockerNotAvailableError,
    ImageNotLoadedError,
    StartupTimeoutError,
)
from outpost.models.deployment import InstanceState, Mount, PortBinding

if TYPE_CHECKING:
    from docker.models.containers import Container

logger = logging.getLogger(__name__)

# Runtime messages that mean a published port could not be bound
_BIND_FAILURE_MARKERS = (
    "port is already allocated",
    "address already in use",
    "bind for",
)


@dataclass
class InstanceHandle:
    """Reference to one created instance.

    Attributes:
        name: Container name (the registry key)
        container_id: Runtime identifier, unique per created instance
        image: Image reference the instance runs
        state: Current lifecycle state
    """

    name: str
    container_id: str
    image: str
    state: InstanceState = InstanceState.CREATING

    @property
    def short_id(self) -> str:
        return self.container_id[:12]


class ContainerSupervisor:
    """Supervises the single named service instance through the Docker SDK.

    Instances are tracked in an explicit registry keyed by name. State changes
    follow ``VALID_TRANSITIONS``; removal is allowed from every state.

    Example:
        >>> supervisor = ContainerSupervisor()
        >>> supervisor.ensure_absent("shadowbox")
        >>> handle = supervisor.start("shadowbox", image, ports, mounts, env)
        >>> supervisor.await_running(handle, RetryPolicy(max_attempts=60, delay=1))
    """

    VALID_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
        InstanceState.ABSENT: {InstanceState.CREATING},
        InstanceState.CREATING: {
            InstanceState.RUNNING,
            InstanceState.FAILED,
            InstanceState.ABSENT,
        },
        InstanceState.RUNNING: {
            InstanceState.VERIFIED,
            InstanceState.FAILED,
            InstanceState.ABSENT,
        },
        InstanceState.VERIFIED: {InstanceState.ABSENT},
        InstanceState.FAILED: {InstanceState.ABSENT},
    }

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        """Initialize the supervisor.

        Args:
            client: Docker client; connects using the environment when omitted

        Raises:
            DockerNotAvailableError: If the Docker daemon is not available
        """
        if client is None:
            try:
                client = docker.from_env()  # type: ignore[attr-defined]
            except DockerException as e:
                raise DockerNotAvailableError(operation="init") from e
        self.client = client
        self._instances: dict[str, InstanceHandle] = {}

    @property
    def instances(self) -> Mapping[str, InstanceHandle]:
        """Read-only view of the instance registry."""
        return dict(self._instances)

    def _transition(self, handle: InstanceHandle, to_state: InstanceState) -> None:
        if to_state not in self.VALID_TRANSITIONS[handle.state]:
            raise ContainerRuntimeError(
                operation="state",
                message=(
                    f"Invalid state transition for {handle.name}: "
                    f"{handle.state.value} -> {to_state.value}"
                ),
            )
        logger.debug(
            f"Instance {handle.name} ({handle.short_id}): "
            f"{handle.state.value} -> {to_state.value}"
        )
        handle.state = to_state
        if to_state == InstanceState.ABSENT:
            if self._instances.get(handle.name) is handle:
                del self._instances[handle.name]
        else:
            self._instances[handle.name] = handle

    def _find(self, name: str) -> Container | None:
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None
        except DockerException as e:
            raise ContainerRuntimeError(
                operation="inspect",
                message=f"Failed to inspect container {name}: {e}",
            ) from e

    def exists(self, name: str) -> bool:
        """Return True if a container with this name exists, running or not."""
        return self._find(name) is not None

    def status(self, name: str) -> str | None:
        """Return the runtime status of a named container, or None if absent."""
        container = self._find(name)
        return container.status if container is not None else None

    def load_image(self, archive: Path, image_ref: str) -> list[str]:
        """Load an image archive and confirm the reference resolves.

        Returns:
            Tags carried by the loaded images

        Raises:
            ImageNotLoadedError: If loading fails or the reference is unknown
        """
        logger.info(f"Loading image archive {archive}")
        try:
            with open(archive, "rb") as f:
                loaded = self.client.images.load(f)
        except OSError as e:
            raise ImageNotLoadedError(image_ref, f"cannot read {archive}: {e}") from e
        except DockerException as e:
            raise ImageNotLoadedError(image_ref, str(e)) from e

        tags = [tag for image in loaded for tag in image.tags]
        logger.debug(f"Archive provided: {', '.join(tags) or 'untagged images'}")
        try:
            self.require_image(image_ref)
        except ImageNotLoadedError as e:
            if tags:
                raise ImageNotLoadedError(
                    image_ref, f"archive provides {', '.join(tags)}"
                ) from e
            raise
        return tags

    def require_image(self, image_ref: str) -> None:
        """Raise ImageNotLoadedError unless the runtime knows the image."""
        try:
            self.client.images.get(image_ref)
        except ImageNotFound as e:
            raise ImageNotLoadedError(image_ref) from e
        except DockerException as e:
            raise ImageNotLoadedError(image_ref, str(e)) from e
        logger.info(f"Image {image_ref} is available")

    def ensure_absent(self, name: str) -> bool:
        """Force-remove any instance named ``name``.

        Idempotent: succeeds trivially when nothing exists.

        Returns:
            True if an instance was removed

        Raises:
            ContainerRuntimeError: If the runtime refuses the removal
        """
        known = self._instances.get(name)
        container = self._find(name)
        if container is None:
            if known is not None:
                self._transition(known, InstanceState.ABSENT)
            logger.debug(f"No existing {name} container found")
            return False

        logger.info(f"Removing existing container {name} ({container.short_id})")
        self._force_remove(container, name)
        if known is not None:
            self._transition(known, InstanceState.ABSENT)
        return True

    def start(
        self,
        name: str,
        image: str,
        ports: Iterable[PortBinding],
        mounts: Iterable[Mount],
        env: Mapping[str, str],
        restart_policy: str | None = "always",
    ) -> InstanceHandle:
        """Create and start exactly one instance.

        The container is created from a locally available image only; the
        runtime is never asked to pull.

        Raises:
            ContainerRuntimeError: If an instance with this name already exists
                or the runtime fails
            ImageNotLoadedError: If the image reference is unresolvable
            BindFailureError: If a published port cannot be bound
        """
        if name in self._instances or self.exists(name):
            raise ContainerRuntimeError(
                operation="start",
                message=f"Container {name} already exists; remove it first",
            )

        port_map: dict[str, int] = {b.spec: b.port for b in ports}
        volumes = {
            str(m.host_path): {"bind": m.container_path, "mode": m.mode.value}
            for m in mounts
        }
        create_kwargs: dict[str, object] = {
            "name": name,
            "ports": port_map,
            "volumes": volumes,
            "environment": dict(env),
        }
        if restart_policy:
            create_kwargs["restart_policy"] = {"Name": restart_policy}

        logger.info(f"Creating container {name} from {image}")
        try:
            container = self.client.containers.create(image, **create_kwargs)
        except ImageNotFound as e:
            raise ImageNotLoadedError(image) from e
        except DockerException as e:
            raise ContainerRuntimeError(
                operation="start",
                message=f"Failed to create container {name}: {e}",
            ) from e

        try:
            container.start()
        except DockerException as e:
            self._force_remove(container, name)
            if isinstance(e, APIError) and any(
                marker in str(e).lower() for marker in _BIND_FAILURE_MARKERS
            ):
                raise BindFailureError(name, str(e)) from e
            raise ContainerRuntimeError(
                operation="start",
                message=f"Failed to start container {name}: {e}",
            ) from e

        handle = InstanceHandle(
            name=name,
            container_id=container.id or "",
            image=image,
            state=InstanceState.ABSENT,
        )
        self._transition(handle, InstanceState.CREATING)
        return handle

    def await_running(self, handle: InstanceHandle, policy: RetryPolicy) -> None:
        """Poll until the instance reports running.

        The instance is left in place on timeout; the caller decides whether
        to roll back.

        Raises:
            StartupTimeoutError: If the attempts are exhausted
        """
        last_status: str | None = None
        for attempt in policy.attempts():
            container = self._find(handle.container_id)
            last_status = container.status if container is not None else "removed"
            if last_status == "running":
                logger.info(f"Container {handle.name} is running")
                self._transition(handle, InstanceState.RUNNING)
                return
            logger.debug(
                f"Container {handle.name} status {last_status} "
                f"(check {attempt}/{policy.max_attempts})"
            )

        self._transition(handle, InstanceState.FAILED)
        raise StartupTimeoutError(handle.name, policy.max_attempts, last_status)

    def mark_verified(self, handle: InstanceHandle) -> None:
        """Record that the running instance passed verification."""
        self._transition(handle, InstanceState.VERIFIED)

    def mark_failed(self, handle: InstanceHandle) -> None:
        """Record that the instance failed a post-start check."""
        if handle.state != InstanceState.FAILED:
            self._transition(handle, InstanceState.FAILED)

    def fetch_logs(self, handle: InstanceHandle) -> bytes:
        """Return the instance logs, or empty bytes when unavailable."""
        container = None
        try:
            container = self._find(handle.container_id)
        except ContainerRuntimeError as e:
            logger.warning(f"Logs unavailable for {handle.name}: {e.message}")
        if container is None:
            logger.warning(f"Logs unavailable for {handle.name}: container not found")
            return b""
        try:
            logs = container.logs(stdout=True, stderr=True)
        except DockerException as e:
            logger.warning(f"Logs unavailable for {handle.name}: {e}")
            return b""
        return logs if isinstance(logs, bytes) else b""

    def remove(self, handle: InstanceHandle) -> None:
        """Force stop and remove the instance.

        Raises:
            ContainerRuntimeError: If the runtime refuses the removal
        """
        if handle.state == InstanceState.ABSENT:
            return
        container = self._find(handle.container_id)
        if container is not None:
            logger.info(f"Removing container {handle.name} ({handle.short_id})")
            self._force_remove(container, handle.name)
        self._transition(handle, InstanceState.ABSENT)

    def _force_remove(self, container: Container, name: str) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            logger.debug(f"Container {name} disappeared before removal")
        except DockerException as e:
            raise ContainerRuntimeError(
                operation="remove",
                message=f"Failed to remove container {name}: {e}",
            ) from e
