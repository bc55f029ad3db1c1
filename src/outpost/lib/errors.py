"""Custom exception hierarchy for Outpost configuration and deployments."""

from __future__ import annotations

from pathlib import Path


class OutpostError(Exception):
    """Base exception for all Outpost errors.

    All Outpost-specific exceptions inherit from this class, enabling
    centralized exception handling at the CLI boundary.
    """

    pass


class ConfigError(OutpostError):
    """Exception raised for configuration errors.

    This exception is raised when settings loading or parsing fails.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class DeploymentError(OutpostError):
    """Exception raised when a deployment step fails.

    Every failure inside the provisioning workflow is a DeploymentError. The
    orchestrator attaches ``log_path`` when container logs were captured
    before the instance was rolled back.

    Attributes:
        operation: Workflow step that failed (e.g. "ports", "start")
        message: Human-readable error message
        log_path: Location of retained instance logs, if any
    """

    def __init__(self, operation: str, message: str) -> None:
        """Initialize DeploymentError with operation and message.

        Args:
            operation: Name of the failed operation
            message: Descriptive error message
        """
        self.operation = operation
        self.message = message
        self.log_path: Path | None = None
        super().__init__(f"Deployment {operation} failed: {message}")


class DockerNotAvailableError(DeploymentError):
    """Error raised when the Docker daemon cannot be reached."""

    def __init__(self, operation: str = "init") -> None:
        """Create an error with guidance for starting Docker."""
        super().__init__(
            operation=operation,
            message=(
                "Docker is not available. Ensure the Docker daemon is running "
                "and the current user may access it (try 'docker info')."
            ),
        )


class IncompleteBundleError(DeploymentError):
    """Error raised when a bundle lacks required members.

    Attributes:
        missing: Names of the missing bundle members
    """

    def __init__(self, missing: list[str]) -> None:
        """Create an error listing the missing members."""
        self.missing = missing
        super().__init__(
            operation="bundle",
            message=f"Bundle is missing required members: {', '.join(missing)}",
        )


class MalformedConfigError(DeploymentError):
    """Error raised when a configuration document cannot be used."""

    def __init__(self, message: str) -> None:
        """Create a malformed configuration error."""
        super().__init__(operation="patch", message=message)


class PortConflictError(DeploymentError):
    """Error raised when a requested port is already held by another process.

    Attributes:
        port: The conflicting port number
        owner: Description of the process holding the port
    """

    def __init__(self, port: int, owner: str) -> None:
        """Create a port conflict error."""
        self.port = port
        self.owner = owner
        super().__init__(
            operation="ports",
            message=f"Port {port} is already in use by {owner}",
        )


class PersistenceError(DeploymentError):
    """Error raised when configuration or certificate material cannot be placed."""

    def __init__(self, path: Path | str, reason: str) -> None:
        """Create a persistence error for a target path."""
        self.path = Path(path)
        super().__init__(
            operation="persist",
            message=f"Failed to write {path}: {reason}",
        )


class ImageNotLoadedError(DeploymentError):
    """Error raised when the service image reference cannot be resolved.

    Attributes:
        image: The unresolved image reference
    """

    def __init__(self, image: str, detail: str | None = None) -> None:
        """Create an image-not-loaded error."""
        self.image = image
        message = f"Image {image} is not available to the container runtime"
        if detail:
            message += f": {detail}"
        super().__init__(operation="image", message=message)


class BindFailureError(DeploymentError):
    """Error raised when the runtime cannot bind a published port."""

    def __init__(self, name: str, detail: str) -> None:
        """Create a bind failure error for a container."""
        self.name = name
        super().__init__(
            operation="start",
            message=f"Container {name} could not bind its ports: {detail}",
        )


class StartupTimeoutError(DeploymentError):
    """Error raised when an instance does not reach the running state in time.

    Attributes:
        name: Container name
        last_status: Last status reported by the runtime
    """

    def __init__(self, name: str, attempts: int, last_status: str | None) -> None:
        """Create a startup timeout error."""
        self.name = name
        self.last_status = last_status
        super().__init__(
            operation="startup",
            message=(
                f"Container {name} was not running after {attempts} checks "
                f"(last status: {last_status or 'unknown'})"
            ),
        )


class UnhealthyInstanceError(DeploymentError):
    """Error raised when the instance logs report errors after startup.

    Attributes:
        lines: Log lines that matched the error marker
    """

    def __init__(self, name: str, lines: list[str]) -> None:
        """Create an unhealthy instance error."""
        self.name = name
        self.lines = lines
        preview = "; ".join(lines[:3])
        super().__init__(
            operation="logs",
            message=f"Errors found in logs of container {name}: {preview}",
        )


class VerificationError(DeploymentError):
    """Error raised when the management API probe fails after all attempts.

    Attributes:
        url: Probed URL
        attempts: Number of attempts made
        last_status: Last HTTP status code, or None when no response arrived
        last_body: Last response body, or the last connection error text
    """

    def __init__(
        self,
        url: str,
        attempts: int,
        last_status: int | None,
        last_body: str | None,
    ) -> None:
        """Create a verification error."""
        self.url = url
        self.attempts = attempts
        self.last_status = last_status
        self.last_body = last_body
        status = last_status if last_status is not None else "no response"
        super().__init__(
            operation="verify",
            message=(
                f"Management API at {url} failed after {attempts} attempts "
                f"(last status: {status})"
            ),
        )


class ContainerRuntimeError(DeploymentError):
    """Generic container runtime failure reported by the supervisor."""

    pass


class CleanupNotAuthorizedError(DeploymentError):
    """Error raised when stale state exists and its removal was not authorized."""

    def __init__(self, name: str) -> None:
        """Create an error explaining how to authorize cleanup."""
        self.name = name
        super().__init__(
            operation="cleanup",
            message=(
                f"An existing container named {name} must be removed first. "
                "Confirm the removal or pass --yes to allow destructive cleanup."
            ),
        )
