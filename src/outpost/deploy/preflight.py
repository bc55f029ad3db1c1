"""Pre-export check of the relay image on the builder host.

Before an image is saved into a bundle it is started once with the bundle's
own configuration and certificate, verified through the management API, and
removed again. The check runs the normal deployment workflow against a
throwaway instance whose files live in a temporary directory.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from outpost.deploy.health import HealthVerifier
from outpost.deploy.orchestrator import DeploymentOrchestrator
from outpost.deploy.ports import PortGuard
from outpost.deploy.retry import RetryPolicy
from outpost.deploy.supervisor import ContainerSupervisor
from outpost.models.bundle import AccessDescriptor, ArtifactBundle, ConfigDocument
from outpost.models.deployment import DeploymentReport, DeploymentSettings

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


class ImagePreflight:
    """Starts and verifies a candidate image before it is exported.

    Instances are callable with ``(image_ref, config)`` so they can be passed
    as ``BundleBuilder.build(preflight=...)``.

    Example:
        >>> check = ImagePreflight(settings, certificate, private_key)
        >>> builder.build(..., preflight=check)
    """

    def __init__(
        self,
        settings: DeploymentSettings,
        certificate: bytes,
        private_key: bytes | None = None,
        supervisor: ContainerSupervisor | None = None,
        port_guard: PortGuard | None = None,
        verifier: HealthVerifier | None = None,
        startup_policy: RetryPolicy | None = None,
        server_ip: str = LOOPBACK,
    ) -> None:
        self.settings = settings
        self.certificate = certificate
        self.private_key = private_key
        self.supervisor = supervisor
        self.port_guard = port_guard
        self.verifier = verifier
        self.startup_policy = startup_policy
        self.server_ip = server_ip

    def __call__(self, image_ref: str, config: ConfigDocument) -> DeploymentReport:
        """Run the image once and verify it.

        Raises:
            DeploymentError: If the temporary instance fails any deployment
                step; it has been removed and its logs retained
        """
        workdir = Path(tempfile.mkdtemp(prefix="outpost-preflight-"))
        settings = self.settings.model_copy(
            update={
                "container_name": f"{self.settings.container_name}_temp",
                "config_dir": workdir / "config",
                "state_dir": workdir / "persisted-state",
                "restart_policy": "no",
                "allow_destructive_cleanup": True,
            }
        )
        supervisor = self.supervisor or ContainerSupervisor()
        bundle = ArtifactBundle(
            image_ref=image_ref,
            config=config,
            certificate=self.certificate,
            private_key=self.private_key,
            access_descriptor=AccessDescriptor(
                api_url=config.api_url, cert_sha256=config.cert_sha256
            ),
        )
        orchestrator = DeploymentOrchestrator(
            settings,
            supervisor=supervisor,
            port_guard=self.port_guard,
            verifier=self.verifier,
            startup_policy=self.startup_policy,
        )

        logger.info(f"Starting temporary instance {settings.container_name}")
        try:
            report = orchestrator.deploy(bundle, self.server_ip, load_image=False)
            supervisor.ensure_absent(settings.container_name)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        logger.info(f"Image {image_ref} verified at {report.api_url}")
        return report
