"""Packaging and unpacking of transfer bundles.

The builder host saves the relay image, fingerprints the certificate and zips
everything the deployer needs. The deployer unpacks the zip into an
``ArtifactBundle``; completeness is checked later by the orchestrator.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import secrets
import shutil
import ssl
import string
import tempfile
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import docker
from docker.errors import DockerException, ImageNotFound

from outpost.config.defaults import BUNDLE_MEMBERS, DEFAULT_API_PORT
from outpost.deploy.patcher import PLACEHOLDER_FINGERPRINTS, parse_config_document
from outpost.lib.errors import (
    DeploymentError,
    DockerNotAvailableError,
    ImageNotLoadedError,
    PersistenceError,
)
from outpost.models.bundle import (
    PLACEHOLDER_CERT_SHA256,
    AccessDescriptor,
    ArtifactBundle,
    ConfigDocument,
)

if TYPE_CHECKING:
    from docker.models.images import Image

logger = logging.getLogger(__name__)

# Receives the image reference and configuration; raises to abort a build
PreflightCheck = Callable[[str, ConfigDocument], None]

_PREFIX_ALPHABET = string.ascii_letters + string.digits


def generate_api_prefix(length: int = 16) -> str:
    """Generate a random alphanumeric secret for the management API path."""
    return "".join(secrets.choice(_PREFIX_ALPHABET) for _ in range(length))


def compute_cert_sha256(certificate: bytes) -> str:
    """Return the hex SHA-256 fingerprint of a certificate's DER encoding.

    Args:
        certificate: PEM or DER encoded certificate

    Raises:
        ValueError: If a PEM certificate cannot be decoded
    """
    if b"-----BEGIN CERTIFICATE-----" in certificate:
        der = ssl.PEM_cert_to_DER_cert(certificate.decode("ascii"))
    else:
        der = certificate
    return hashlib.sha256(der).hexdigest()


def default_config(
    public_ip: str,
    hostname: str,
    api_port: int = DEFAULT_API_PORT,
    api_prefix: str | None = None,
) -> ConfigDocument:
    """Build a configuration document for a server that did not write one."""
    prefix = api_prefix or generate_api_prefix()
    return ConfigDocument(
        api_url=f"https://{public_ip}:{api_port}/{prefix}",
        cert_sha256=PLACEHOLDER_CERT_SHA256,
        hostname=hostname,
        port=api_port,
    )


def build_access_descriptor(config: ConfigDocument, cert_sha256: str) -> AccessDescriptor:
    """Describe how the management client reaches the server."""
    return AccessDescriptor(api_url=config.api_url, cert_sha256=cert_sha256)


def _safe_member_path(dest: Path, member: str) -> Path:
    """Resolve a zip member under dest, rejecting traversal."""
    pure = PurePosixPath(member)
    if pure.is_absolute() or ".." in pure.parts:
        raise DeploymentError(
            operation="bundle",
            message=f"Refusing to extract unsafe bundle member: {member}",
        )
    return dest.joinpath(*pure.parts)


def _read_optional(path: Path) -> bytes | None:
    return path.read_bytes() if path.is_file() else None


def _read_manifest_image(path: Path) -> str | None:
    """Return the image reference recorded by the builder, if any."""
    if not path.is_file():
        return None
    try:
        manifest = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise DeploymentError(
            operation="bundle",
            message=f"Bundle manifest {path.name} is not valid JSON: {e}",
        ) from e
    image = manifest.get("image") if isinstance(manifest, dict) else None
    if image is not None and not (isinstance(image, str) and image):
        raise DeploymentError(
            operation="bundle",
            message=f"Bundle manifest {path.name} has an invalid image reference",
        )
    return image


def load_bundle_dir(directory: Path, default_image: str) -> ArtifactBundle:
    """Describe the bundle members present in a directory.

    Missing members are left as None. The image reference comes from the
    bundle manifest; bundles without one are assumed to carry default_image.

    Raises:
        MalformedConfigError: If the configuration or access file is not valid
        DeploymentError: If the bundle manifest is not valid
    """
    config_bytes = _read_optional(directory / BUNDLE_MEMBERS["config"])
    access_bytes = _read_optional(directory / BUNDLE_MEMBERS["access_descriptor"])
    archive = directory / BUNDLE_MEMBERS["image_archive"]

    image_ref = _read_manifest_image(directory / BUNDLE_MEMBERS["manifest"])
    if image_ref is None:
        logger.info(f"Bundle has no manifest; assuming image {default_image}")
        image_ref = default_image

    access = None
    if access_bytes is not None:
        access_doc = parse_config_document(access_bytes)
        access = AccessDescriptor(
            api_url=access_doc.api_url, cert_sha256=access_doc.cert_sha256
        )

    return ArtifactBundle(
        image_ref=image_ref,
        image_archive=archive if archive.is_file() else None,
        config=parse_config_document(config_bytes) if config_bytes is not None else None,
        certificate=_read_optional(directory / BUNDLE_MEMBERS["certificate"]),
        private_key=_read_optional(directory / BUNDLE_MEMBERS["private_key"]),
        access_descriptor=access,
        workdir=directory,
    )


def unpack_bundle(zip_path: Path, dest: Path, default_image: str) -> ArtifactBundle:
    """Extract a bundle zip into dest and describe its contents.

    Members are flattened to their file names, matching how bundles are built.

    Raises:
        DeploymentError: If the zip is missing, corrupt, unsafe, or holds two
            members with the same file name
    """
    if not zip_path.is_file():
        raise DeploymentError(
            operation="bundle",
            message=f"Bundle {zip_path} not found. Transfer it to this host first.",
        )

    dest.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(zip_path) as archive:
            members = [info for info in archive.infolist() if not info.is_dir()]
            seen: dict[str, str] = {}
            for info in members:
                _safe_member_path(dest, info.filename)
                name = PurePosixPath(info.filename).name
                if name in seen:
                    raise DeploymentError(
                        operation="bundle",
                        message=(
                            f"Bundle members {seen[name]} and {info.filename} "
                            f"would both extract to {name}"
                        ),
                    )
                seen[name] = info.filename

            for info in members:
                target = dest / PurePosixPath(info.filename).name
                with archive.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                logger.debug(f"Extracted {info.filename} -> {target}")
    except zipfile.BadZipFile as e:
        raise DeploymentError(
            operation="bundle",
            message=f"Failed to unzip {zip_path}: {e}",
        ) from e

    logger.info(f"Unpacked bundle {zip_path} into {dest}")
    return load_bundle_dir(dest, default_image)


@dataclass(frozen=True)
class BundleManifest:
    """Summary of a built bundle.

    Attributes:
        path: Written zip file
        image_ref: Image saved into the bundle
        cert_sha256: Certificate fingerprint
        api_url: Management API URL from the configuration
        members: File names inside the zip
    """

    path: Path
    image_ref: str
    cert_sha256: str
    api_url: str
    members: tuple[str, ...]


class BundleBuilder:
    """Packages the relay image and its configuration for transfer.

    Example:
        >>> builder = BundleBuilder()
        >>> manifest = builder.build(
        ...     output=Path("outline_docker_bundle.zip"),
        ...     image_ref="quay.io/outline/shadowbox:stable",
        ...     config=config,
        ...     certificate=Path("shadowbox.crt").read_bytes(),
        ... )
    """

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        """Initialize the builder.

        Raises:
            DockerNotAvailableError: If the Docker daemon is not available
        """
        if client is None:
            try:
                client = docker.from_env()  # type: ignore[attr-defined]
            except DockerException as e:
                raise DockerNotAvailableError(operation="bundle") from e
        self.client = client

    def build(
        self,
        output: Path,
        image_ref: str,
        config: ConfigDocument,
        certificate: bytes,
        private_key: bytes | None = None,
        pull: bool = True,
        preflight: PreflightCheck | None = None,
    ) -> BundleManifest:
        """Write a bundle zip.

        Args:
            output: Zip file to create (replaced if present)
            image_ref: Image to save into the bundle
            config: Relay configuration; a placeholder fingerprint is filled in
            certificate: PEM certificate
            private_key: Optional PEM private key
            pull: Pull the image before saving
            preflight: Called with the image reference and the final
                configuration before the image is exported; raising aborts
                the build

        Returns:
            BundleManifest describing the written bundle

        Raises:
            DeploymentError: If pulling, checking, saving, or writing fails
        """
        try:
            cert_sha256 = compute_cert_sha256(certificate)
        except ValueError as e:
            raise DeploymentError(
                operation="bundle",
                message=f"Certificate could not be decoded: {e}",
            ) from e
        logger.info(f"Computed certSha256: {cert_sha256}")

        if (config.cert_sha256 or "") in PLACEHOLDER_FINGERPRINTS:
            config = config.model_copy(update={"cert_sha256": cert_sha256})
        access = build_access_descriptor(config, cert_sha256)

        image = self._resolve_image(image_ref, pull)
        saved_ref = self._archive_tag(image, image_ref)

        if preflight is not None:
            logger.info(f"Checking image {saved_ref} before export")
            preflight(saved_ref, config)

        output.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix="outpost-bundle-"))
        try:
            archive_path = staging / BUNDLE_MEMBERS["image_archive"]
            logger.info(f"Exporting image {saved_ref}")
            try:
                with open(archive_path, "wb") as f:
                    for chunk in image.save(named=saved_ref):
                        f.write(chunk)
            except DockerException as e:
                raise DeploymentError(
                    operation="bundle",
                    message=f"Failed to export image {saved_ref}: {e}",
                ) from e

            manifest = {"image": saved_ref, "certSha256": cert_sha256}
            files: dict[str, bytes | Path] = {
                BUNDLE_MEMBERS["image_archive"]: archive_path,
                BUNDLE_MEMBERS["config"]: config.to_json().encode("utf-8"),
                BUNDLE_MEMBERS["certificate"]: certificate,
                BUNDLE_MEMBERS["access_descriptor"]: access.to_json().encode("utf-8"),
                BUNDLE_MEMBERS["manifest"]: (
                    json.dumps(manifest, indent=2) + "\n"
                ).encode("utf-8"),
            }
            if private_key is not None:
                files[BUNDLE_MEMBERS["private_key"]] = private_key

            self._write_zip(output, files)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Bundle created as {output}")
        return BundleManifest(
            path=output,
            image_ref=saved_ref,
            cert_sha256=cert_sha256,
            api_url=config.api_url,
            members=tuple(files),
        )

    @staticmethod
    def _archive_tag(image: Image, image_ref: str) -> str:
        """Pick the tag the archive is saved under.

        The requested reference wins; ``docker save`` would otherwise name
        the archive after whichever tag the image lists first.
        """
        tags = list(image.tags)
        candidates = [image_ref]
        if ":" not in image_ref.rsplit("/", 1)[-1] and "@" not in image_ref:
            candidates.append(f"{image_ref}:latest")
        for candidate in candidates:
            if candidate in tags:
                return candidate
        if not tags:
            raise ImageNotLoadedError(image_ref, "image has no tag to export it under")
        logger.warning(f"{image_ref} is not a tag of the image; exporting as {tags[0]}")
        return tags[0]

    def _resolve_image(self, image_ref: str, pull: bool) -> Image:
        if pull:
            logger.info(f"Pulling image {image_ref}")
            try:
                self.client.images.pull(image_ref)
            except DockerException as e:
                raise DeploymentError(
                    operation="bundle",
                    message=f"Failed to pull image {image_ref}: {e}",
                ) from e
        try:
            return self.client.images.get(image_ref)
        except ImageNotFound as e:
            raise ImageNotLoadedError(image_ref) from e
        except DockerException as e:
            raise ImageNotLoadedError(image_ref, str(e)) from e

    @staticmethod
    def _write_zip(output: Path, files: dict[str, bytes | Path]) -> None:
        tmp_output = output.with_name(output.name + ".part")
        try:
            with zipfile.ZipFile(tmp_output, "w", zipfile.ZIP_DEFLATED) as archive:
                for name, content in files.items():
                    if isinstance(content, Path):
                        archive.write(content, arcname=name)
                    else:
                        archive.writestr(name, content)
            os.chmod(tmp_output, 0o600)
            os.replace(tmp_output, output)
        except OSError as e:
            tmp_output.unlink(missing_ok=True)
            raise PersistenceError(output, str(e)) from e
