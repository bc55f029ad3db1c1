"""CLI commands for packaging transfer bundles.

Implements 'outpost bundle build', run on a host that can reach the image
registry. The resulting zip is copied to the server and passed to
'outpost deploy run'.
"""

from __future__ import annotations

import sys
from pathlib import Path
from urllib.parse import urlsplit

import click

from outpost.cli.commands.deploy import handle_deployment_errors, load_settings
from outpost.config.defaults import DEFAULT_API_PORT, DEFAULT_BUNDLE_NAME, DEFAULT_IMAGE
from outpost.deploy.patcher import WILDCARD_HOSTS
from outpost.lib.errors import ConfigError
from outpost.lib.logging_config import get_logger, setup_logging
from outpost.models.bundle import PLACEHOLDER_CERT_SHA256, ConfigDocument

logger = get_logger(__name__)


@click.group(name="bundle")
def bundle() -> None:
    """Package the relay image and configuration for transfer."""


def _resolve_config(
    config_path: str | None,
    api_url: str | None,
    public_ip: str | None,
    api_port: int,
) -> ConfigDocument:
    """Pick the configuration source: file, explicit URL, or a fresh default."""
    from outpost.deploy.bundle import default_config
    from outpost.deploy.patcher import parse_config_document

    if config_path:
        config = parse_config_document(Path(config_path).read_bytes())
        if api_url:
            config = config.model_copy(update={"api_url": api_url})
        return config
    if api_url:
        return parse_config_document(
            {"apiUrl": api_url, "certSha256": PLACEHOLDER_CERT_SHA256}
        )
    if public_ip:
        logger.info(f"Generating configuration for {public_ip}")
        return default_config(public_ip, hostname=public_ip, api_port=api_port)
    raise ConfigError(
        field="config",
        message="Provide --config, --api-url, or --public-ip to describe the server",
    )


def _certificate_host(config: ConfigDocument, public_ip: str | None) -> str:
    """Pick the name a generated certificate is issued for."""
    host = urlsplit(config.api_url).hostname or ""
    if host in WILDCARD_HOSTS:
        return public_ip or "localhost"
    return host


def _resolve_tls(
    cert_path: str | None,
    key_path: str | None,
    generate_cert: bool,
    config: ConfigDocument,
    public_ip: str | None,
) -> tuple[bytes, bytes | None]:
    """Read or generate the certificate and optional private key."""
    if generate_cert:
        if cert_path or key_path:
            raise ConfigError(
                field="cert",
                message="--generate-cert cannot be combined with --cert or --key",
            )
        from outpost.deploy.certs import generate_self_signed_cert

        return generate_self_signed_cert(_certificate_host(config, public_ip))
    if not cert_path:
        raise ConfigError(
            field="cert",
            message="Provide --cert with an existing certificate, or --generate-cert",
        )
    certificate = Path(cert_path).read_bytes()
    private_key = Path(key_path).read_bytes() if key_path else None
    return certificate, private_key


@bundle.command()
@click.option(
    "--cert",
    "cert_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="PEM certificate for the management API",
)
@click.option(
    "--key",
    "key_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="PEM private key (omit for certificate-only mode)",
)
@click.option(
    "--generate-cert",
    is_flag=True,
    help="Generate a self-signed certificate and key instead of --cert/--key",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Existing relay configuration (shadowbox_config.json)",
)
@click.option(
    "--api-url",
    default=None,
    help="Management API URL to write into the configuration",
)
@click.option(
    "--public-ip",
    default=None,
    help="Generate a configuration for this address when none is given",
)
@click.option(
    "--api-port",
    type=int,
    default=DEFAULT_API_PORT,
    show_default=True,
    help="Management API port for a generated configuration",
)
@click.option(
    "--image",
    default=DEFAULT_IMAGE,
    show_default=True,
    help="Relay image to package",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    default=DEFAULT_BUNDLE_NAME,
    show_default=True,
    help="Bundle zip to write",
)
@click.option(
    "--pull/--no-pull",
    default=True,
    help="Pull the image before saving it",
)
@click.option(
    "--verify/--no-verify",
    default=False,
    help="Run and verify the image on this host before exporting it",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose debug logging",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Suppress progress output",
)
def build(
    cert_path: str | None,
    key_path: str | None,
    generate_cert: bool,
    config_path: str | None,
    api_url: str | None,
    public_ip: str | None,
    api_port: int,
    image: str,
    output: str,
    pull: bool,
    verify: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Build a transfer bundle.

    Example:

        outpost bundle build --cert shadowbox.crt --public-ip 203.0.113.7

        outpost bundle build --cert shadowbox.crt --key shadowbox.key \\
            --config shadowbox_config.json --no-pull

        outpost bundle build --generate-cert --public-ip 203.0.113.7 --verify
    """
    if not quiet:
        setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        config = _resolve_config(config_path, api_url, public_ip, api_port)
        certificate, private_key = _resolve_tls(
            cert_path, key_path, generate_cert, config, public_ip
        )

        from outpost.deploy.bundle import BundleBuilder

        if not quiet:
            click.echo("Connecting to Docker...")
        builder = BundleBuilder()
        preflight = None
        if verify:
            from outpost.deploy.preflight import ImagePreflight
            from outpost.deploy.supervisor import ContainerSupervisor

            preflight = ImagePreflight(
                load_settings(None),
                certificate,
                private_key,
                supervisor=ContainerSupervisor(builder.client),
            )
        manifest = builder.build(
            output=Path(output),
            image_ref=image,
            config=config,
            certificate=certificate,
            private_key=private_key,
            pull=pull,
            preflight=preflight,
        )

        if quiet:
            click.echo(str(manifest.path))
            sys.exit(0)

        click.echo()
        click.secho("Bundle Created!", fg="green", bold=True)
        click.echo(f"  File:        {manifest.path}")
        click.echo(f"  Image:       {manifest.image_ref}")
        click.echo(f"  API URL:     {manifest.api_url}")
        click.echo(f"  certSha256:  {manifest.cert_sha256}")
        click.echo(f"  Members:     {', '.join(manifest.members)}")
        if private_key is None:
            click.secho(
                "  No private key included; the server runs in certificate-only mode",
                fg="yellow",
            )
        click.echo()
        click.secho("  Next steps:", bold=True)
        click.echo(f"    Copy {manifest.path.name} to the server, then run:")
        click.echo(f"    outpost deploy run {manifest.path.name} --server-ip <address>")
        click.echo()
