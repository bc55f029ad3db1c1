"""Outpost deployment engine.

This package provides bundle packaging, port checks, configuration patching,
container supervision, API verification, and the orchestrator that sequences
them into a single rollback-safe deployment.
"""

from outpost.deploy.bundle import (
    BundleBuilder,
    BundleManifest,
    compute_cert_sha256,
    unpack_bundle,
)
from outpost.deploy.certs import generate_self_signed_cert
from outpost.deploy.health import HealthVerifier, ProbeResult
from outpost.deploy.orchestrator import DeploymentOrchestrator
from outpost.deploy.patcher import ConfigPatcher
from outpost.deploy.ports import PortGuard
from outpost.deploy.preflight import ImagePreflight
from outpost.deploy.retry import RetryPolicy
from outpost.deploy.supervisor import ContainerSupervisor, InstanceHandle

__all__ = [
    "BundleBuilder",
    "BundleManifest",
    "ConfigPatcher",
    "ContainerSupervisor",
    "DeploymentOrchestrator",
    "HealthVerifier",
    "ImagePreflight",
    "InstanceHandle",
    "PortGuard",
    "ProbeResult",
    "RetryPolicy",
    "compute_cert_sha256",
    "generate_self_signed_cert",
    "unpack_bundle",
]
