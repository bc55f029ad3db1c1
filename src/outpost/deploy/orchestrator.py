"""Provisioning workflow for the relay service.

The orchestrator turns an unpacked bundle into a running, verified instance.
Each step either completes or raises a DeploymentError; completed steps that
own a resource push an undo action, and any failure unwinds those actions in
reverse order before the original error is re-raised.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from outpost.config.defaults import CONTAINER_PATHS
from outpost.deploy.bundle import compute_cert_sha256
from outpost.deploy.health import HealthVerifier, ProbeResult
from outpost.deploy.patcher import ConfigPatcher
from outpost.deploy.ports import PortGuard
from outpost.deploy.retry import RetryPolicy
from outpost.deploy.supervisor import ContainerSupervisor, InstanceHandle
from outpost.lib.errors import (
    CleanupNotAuthorizedError,
    DeploymentError,
    IncompleteBundleError,
    PersistenceError,
    UnhealthyInstanceError,
)
from outpost.models.bundle import ArtifactBundle, ConfigDocument
from outpost.models.deployment import (
    DeploymentReport,
    DeploymentSettings,
    InstanceState,
    Mount,
    MountMode,
    PortPair,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]


@dataclass
class DeploymentAttempt:
    """Ephemeral record of one ``deploy`` call.

    Attributes:
        bundle: Bundle being deployed
        server_ip: Address of this host
        ports: Ports held by the deployment
        load_image: Load the bundle's image archive, or require the image
            to be present already
        handle: Instance handle once the container exists
        verification: Probe result once the API answered
        error_log: Failure messages collected during the attempt
        undo: Undo actions pushed by completed steps, unwound in reverse
    """

    bundle: ArtifactBundle
    server_ip: str
    ports: PortPair
    load_image: bool = True
    handle: InstanceHandle | None = None
    verification: ProbeResult | None = None
    error_log: list[str] = field(default_factory=list)
    undo: list[tuple[str, Callable[[], None]]] = field(default_factory=list)

    @property
    def instance_state(self) -> InstanceState:
        return self.handle.state if self.handle else InstanceState.ABSENT


def _write_private(path: Path, data: bytes) -> None:
    """Atomically write a file readable only by its owner.

    Raises:
        PersistenceError: On any write or permission failure
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(path.parent, 0o700)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise PersistenceError(path, e.strerror or str(e)) from e


def error_lines(logs: bytes, marker: str) -> list[str]:
    """Return log lines containing the marker, case-insensitively."""
    needle = marker.lower()
    text = logs.decode("utf-8", errors="replace")
    return [line.strip() for line in text.splitlines() if needle in line.lower()]


class DeploymentOrchestrator:
    """Sequences bundle validation, container start, and verification.

    Example:
        >>> orchestrator = DeploymentOrchestrator(settings)
        >>> report = orchestrator.deploy(bundle, server_ip="203.0.113.7")
        >>> print(report.api_url)
    """

    def __init__(
        self,
        settings: DeploymentSettings,
        supervisor: ContainerSupervisor | None = None,
        port_guard: PortGuard | None = None,
        patcher: ConfigPatcher | None = None,
        verifier: HealthVerifier | None = None,
        startup_policy: RetryPolicy | None = None,
        confirm: ConfirmCallback | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Deployment settings
            supervisor: Container supervisor (connects to Docker when omitted)
            port_guard: Port checker
            patcher: Configuration patcher
            verifier: Management API verifier (built from settings when omitted)
            startup_policy: Polling for the running state (from settings when omitted)
            confirm: Asked before removing a stale instance when destructive
                cleanup is not pre-authorized; receives the instance name
        """
        self.settings = settings
        self.supervisor = supervisor or ContainerSupervisor()
        self.port_guard = port_guard or PortGuard()
        self.patcher = patcher or ConfigPatcher()
        health = settings.health
        self.verifier = verifier or HealthVerifier(
            policy=RetryPolicy(max_attempts=health.attempts, delay=health.interval),
            settle_delay=health.settle_delay,
            connect_timeout=health.connect_timeout,
            timeout=health.timeout,
            verify_tls=health.verify_tls,
        )
        self.startup_policy = startup_policy or RetryPolicy(
            max_attempts=settings.startup.attempts,
            delay=settings.startup.interval,
        )
        self.confirm = confirm

    def deploy(
        self,
        bundle: ArtifactBundle,
        server_ip: str,
        ports: PortPair | None = None,
        load_image: bool = True,
    ) -> DeploymentReport:
        """Provision a verified instance from a bundle.

        Args:
            bundle: Unpacked bundle
            server_ip: Address clients use to reach this host
            ports: Data and API ports (settings' ports when omitted)
            load_image: Load the bundle's image archive; when False the image
                must already be known to the runtime and no archive is needed

        Returns:
            DeploymentReport of the verified instance

        Raises:
            DeploymentError: The first failure; everything started before it
                has been rolled back and ``log_path`` is set when instance logs
                were retained
        """
        attempt = DeploymentAttempt(
            bundle=bundle,
            server_ip=server_ip,
            ports=ports or self.settings.ports,
            load_image=load_image,
        )
        try:
            report = self._run(attempt)
        except DeploymentError as e:
            attempt.error_log.append(str(e))
            logger.error(f"Deployment failed at step '{e.operation}': {e.message}")
            if attempt.handle is not None:
                self.supervisor.mark_failed(attempt.handle)
                e.log_path = self._retain_logs(attempt.handle)
            self._rollback(attempt)
            raise

        self._discard_bundle(bundle)
        return report

    def _run(self, attempt: DeploymentAttempt) -> DeploymentReport:
        settings = self.settings
        bundle = attempt.bundle

        missing = bundle.missing_members()
        if not attempt.load_image:
            missing = [member for member in missing if member != "image_archive"]
        if missing or bundle.config is None or bundle.certificate is None:
            raise IncompleteBundleError(missing)
        certificate = bundle.certificate
        if bundle.private_key is None:
            logger.info("No private key in bundle; deploying in certificate-only mode")

        self.port_guard.check_free(attempt.ports.as_set())

        cert_sha256 = self._fingerprint(bundle, certificate)
        config = self.patcher.patch(
            bundle.config, attempt.server_ip, attempt.ports.api, cert_sha256
        )
        logger.info(f"Configuration points at {config.api_url}")

        self._persist(bundle, config, certificate)

        if attempt.load_image and bundle.image_archive is not None:
            self.supervisor.load_image(bundle.image_archive, bundle.image_ref)
        else:
            self.supervisor.require_image(bundle.image_ref)

        self._clear_stale_instance(settings.container_name)

        handle = self.supervisor.start(
            settings.container_name,
            bundle.image_ref,
            attempt.ports.bindings(),
            self._mounts(bundle),
            self._environment(bundle),
            restart_policy=settings.restart_policy,
        )
        attempt.handle = handle
        attempt.undo.append(("remove container", lambda: self.supervisor.remove(handle)))

        self.supervisor.await_running(handle, self.startup_policy)

        logs = self.supervisor.fetch_logs(handle)
        matches = error_lines(logs, settings.error_marker)
        if matches:
            raise UnhealthyInstanceError(handle.name, matches)
        logger.info("No errors found in container logs")

        base_url, prefix = self._probe_target(config, attempt.server_ip, attempt.ports.api)
        attempt.verification = self.verifier.verify(base_url, prefix)
        self.supervisor.mark_verified(handle)

        api_url = attempt.verification.url.rsplit("/", 1)[0]
        logger.info(f"Relay deployed; management API at {api_url}")
        return DeploymentReport(
            server_ip=attempt.server_ip,
            api_url=api_url,
            container_name=handle.name,
            container_id=handle.container_id,
            image=handle.image,
        )

    @staticmethod
    def _fingerprint(bundle: ArtifactBundle, certificate: bytes) -> str | None:
        if bundle.access_descriptor is not None and bundle.access_descriptor.cert_sha256:
            return bundle.access_descriptor.cert_sha256
        try:
            return compute_cert_sha256(certificate)
        except ValueError:
            logger.warning("Certificate could not be decoded; fingerprint left unchanged")
            return None

    def _clear_stale_instance(self, name: str) -> None:
        if not self.supervisor.exists(name):
            self.supervisor.ensure_absent(name)
            return
        authorized = self.settings.allow_destructive_cleanup or (
            self.confirm is not None and self.confirm(name)
        )
        if not authorized:
            raise CleanupNotAuthorizedError(name)
        self.supervisor.ensure_absent(name)

    def _persist(
        self, bundle: ArtifactBundle, config: ConfigDocument, certificate: bytes
    ) -> None:
        settings = self.settings
        _write_private(settings.config_file, config.to_json().encode("utf-8"))
        _write_private(settings.cert_file, certificate)
        if bundle.private_key is not None:
            _write_private(settings.key_file, bundle.private_key)
        if bundle.access_descriptor is not None:
            access = bundle.access_descriptor.model_copy(
                update={"api_url": config.api_url}
            )
            _write_private(settings.access_file, access.to_json().encode("utf-8"))
        logger.info(
            f"Placed configuration in {settings.config_dir} and certificates in "
            f"{settings.state_dir}"
        )

    def _mounts(self, bundle: ArtifactBundle) -> list[Mount]:
        settings = self.settings
        mounts = [
            Mount(host_path=settings.config_file, container_path=CONTAINER_PATHS["config_file"]),
            Mount(host_path=settings.state_dir, container_path=CONTAINER_PATHS["state_dir"]),
            Mount(
                host_path=settings.cert_file,
                container_path=CONTAINER_PATHS["cert_file"],
                mode=MountMode.READ_ONLY,
            ),
        ]
        if bundle.private_key is not None:
            mounts.append(
                Mount(
                    host_path=settings.key_file,
                    container_path=CONTAINER_PATHS["key_file"],
                    mode=MountMode.READ_ONLY,
                )
            )
        return mounts

    @staticmethod
    def _environment(bundle: ArtifactBundle) -> dict[str, str]:
        env = {"SB_CERTIFICATE_FILE": CONTAINER_PATHS["cert_file"]}
        if bundle.private_key is not None:
            env["SB_PRIVATE_KEY_FILE"] = CONTAINER_PATHS["key_file"]
        return env

    @staticmethod
    def _probe_target(config: ConfigDocument, server_ip: str, api_port: int) -> tuple[str, str]:
        """Split the patched apiUrl into base URL and secret prefix."""
        parts = urlsplit(config.api_url)
        netloc = parts.netloc or f"{server_ip}:{api_port}"
        base_url = urlunsplit((parts.scheme or "https", netloc, "", "", ""))
        return base_url, config.api_prefix

    def _retain_logs(self, handle: InstanceHandle) -> Path | None:
        """Write instance logs to the configured location before removal."""
        logs = self.supervisor.fetch_logs(handle)
        log_path = self.settings.log_path
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_bytes(logs)
        except OSError as e:
            logger.warning(f"Could not save container logs to {log_path}: {e}")
            return None
        logger.info(f"Container logs saved to {log_path}")
        return log_path

    def _rollback(self, attempt: DeploymentAttempt) -> None:
        while attempt.undo:
            description, action = attempt.undo.pop()
            logger.info(f"Rolling back: {description}")
            try:
                action()
            except DeploymentError as e:
                attempt.error_log.append(str(e))
                logger.error(f"Rollback step '{description}' failed: {e.message}")

    @staticmethod
    def _discard_bundle(bundle: ArtifactBundle) -> None:
        """Remove the unpacked image archive and working directory."""
        if bundle.image_archive is not None:
            bundle.image_archive.unlink(missing_ok=True)
        if bundle.workdir is not None:
            shutil.rmtree(bundle.workdir, ignore_errors=True)
            logger.info(f"Removed temporary bundle files in {bundle.workdir}")
