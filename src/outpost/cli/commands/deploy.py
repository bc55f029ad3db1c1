"""CLI commands for deploying the relay server.

Implements the 'outpost deploy' command group for provisioning an instance
from a transfer bundle, inspecting it, and removing it again.
"""

from __future__ import annotations

import shutil
import sys
import tempfile
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from outpost.config.loader import SettingsLoader
from outpost.deploy.state import (
    get_deployment_record,
    record_from_report,
    update_deployment_record,
)
from outpost.lib.errors import ConfigError, DeploymentError
from outpost.lib.logging_config import get_logger, setup_logging
from outpost.models.deployment import DeploymentReport, DeploymentSettings

if TYPE_CHECKING:
    from outpost.models.bundle import ArtifactBundle

logger = get_logger(__name__)


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in deployment commands.

    Exit codes:
        2: Configuration error
        3: Deployment/execution error
    """
    try:
        yield
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(2)
    except DeploymentError as e:
        logger.error(f"Deployment error: {e}")
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        if e.log_path is not None:
            click.echo(f"  Container logs saved to {e.log_path}", err=True)
        sys.exit(3)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)


def load_settings(
    config_path: str | None, overrides: dict[str, Any] | None = None
) -> DeploymentSettings:
    """Load settings from a file, the environment, and CLI overrides."""
    return SettingsLoader().load(config_path, overrides=overrides)


@click.group(name="deploy", invoke_without_command=True)
@click.pass_context
def deploy(ctx: click.Context) -> None:
    """Provision and manage the relay server on this host.

    Subcommands:

        run     Deploy a transfer bundle
        status  Show the deployed instance
        destroy Remove the deployed instance

    Example:

        outpost deploy run outline_docker_bundle.zip --server-ip 203.0.113.7
    """
    ctx.ensure_object(dict)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@deploy.command()
@click.argument(
    "bundle_path",
    type=click.Path(dir_okay=False),
    default="outline_docker_bundle.zip",
    required=False,
)
@click.option(
    "--server-ip",
    required=True,
    help="Public address clients use to reach this server",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Settings file (default: outpost.yaml if present)",
)
@click.option("--data-port", type=int, default=None, help="Relay data port")
@click.option("--api-port", type=int, default=None, help="Management API port")
@click.option(
    "--yes",
    "-y",
    is_flag=True,
    help="Replace an existing instance without asking",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without executing",
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
def run(
    bundle_path: str,
    server_ip: str,
    config_path: str | None,
    data_port: int | None,
    api_port: int | None,
    yes: bool,
    dry_run: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Deploy the relay server from a transfer bundle.

    BUNDLE_PATH is the zip produced by 'outpost bundle build'.

    Example:

        outpost deploy run --server-ip 203.0.113.7

        outpost deploy run bundle.zip --server-ip 203.0.113.7 --yes
    """
    if not quiet:
        setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        overrides: dict[str, Any] = {}
        ports: dict[str, int] = {}
        if data_port is not None:
            ports["data"] = data_port
        if api_port is not None:
            ports["api"] = api_port
        if ports:
            overrides["ports"] = ports
        if yes:
            overrides["allow_destructive_cleanup"] = True
        settings = load_settings(config_path, overrides)

        from outpost.deploy.bundle import unpack_bundle

        workdir = Path(tempfile.mkdtemp(prefix="outpost-deploy-"))
        try:
            bundle = unpack_bundle(Path(bundle_path), workdir, settings.image)

            if not quiet:
                click.echo()
                click.secho("Deploy Configuration:", bold=True)
                click.echo(f"  Bundle:    {bundle_path}")
                click.echo(f"  Image:     {bundle.image_ref}")
                click.echo(f"  Container: {settings.container_name}")
                click.echo(f"  Server:    {server_ip}")
                click.echo(
                    f"  Ports:     {settings.ports.data} (data), "
                    f"{settings.ports.api} (api)"
                )
                click.echo()

            if dry_run:
                missing = bundle.missing_members()
                click.secho("[DRY RUN] Would deploy bundle:", fg="yellow")
                for key, value in bundle.describe().items():
                    click.echo(f"  {key}: {value}")
                if missing:
                    click.secho(
                        f"  Missing members: {', '.join(missing)}", fg="red"
                    )
                click.secho("[DRY RUN] No container was started", fg="yellow")
                sys.exit(0)

            report = _deploy_bundle(settings, bundle, server_ip, quiet)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        record = update_deployment_record(
            settings.record_file,
            settings.container_name,
            record_from_report(report, settings),
        )

        if quiet:
            click.echo(report.api_url)
            sys.exit(0)

        _display_deploy_success(report, settings)
        logger.debug(f"Recorded deployment at {record.updated_at}")


def _deploy_bundle(
    settings: DeploymentSettings, bundle: ArtifactBundle, server_ip: str, quiet: bool
) -> DeploymentReport:
    from outpost.deploy.orchestrator import DeploymentOrchestrator

    def confirm(name: str) -> bool:
        if quiet or not sys.stdin.isatty():
            return False
        return click.confirm(
            f"An existing '{name}' container will be removed. Continue?",
            default=False,
        )

    if not quiet:
        click.echo("Connecting to Docker...")
    orchestrator = DeploymentOrchestrator(settings, confirm=confirm)
    return orchestrator.deploy(bundle, server_ip=server_ip)


def _display_deploy_success(
    report: DeploymentReport, settings: DeploymentSettings
) -> None:
    click.echo()
    click.secho("=" * 60, fg="green")
    click.secho("  Deployment Successful!", fg="green", bold=True)
    click.secho("=" * 60, fg="green")
    click.echo()
    click.echo(f"  Container: {report.container_name} ({report.container_id[:12]})")
    click.echo(f"  Image:     {report.image}")
    click.echo(f"  API:       {report.api_url}")
    click.echo()
    if settings.access_file.exists():
        click.secho("  Paste this into the management client:", bold=True)
        for line in settings.access_file.read_text(encoding="utf-8").splitlines():
            click.echo(f"    {line}")
        click.echo()


@deploy.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Settings file (default: outpost.yaml if present)",
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
def status(config_path: str | None, verbose: bool, quiet: bool) -> None:
    """Show the recorded deployment and live container status."""
    if not quiet:
        setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        settings = load_settings(config_path)
        record = get_deployment_record(settings.record_file, settings.container_name)
        if record is None:
            raise ConfigError(
                field="deployment_state",
                message="No deployment record found. Run `outpost deploy run` first.",
            )

        from outpost.deploy.supervisor import ContainerSupervisor

        live_status = ContainerSupervisor().status(settings.container_name)

        if quiet:
            click.echo(live_status or "absent")
            sys.exit(0)

        click.echo()
        click.secho("Deployment Status", bold=True)
        click.echo(f"  Container: {record.container_name}")
        click.echo(f"  Image:     {record.image}")
        click.echo(f"  Recorded:  {record.status}")
        click.echo(f"  Runtime:   {live_status or 'absent'}")
        if record.api_url:
            click.echo(f"  API:       {record.api_url}")
        if record.updated_at:
            click.echo(f"  Updated:   {record.updated_at.isoformat()}")
        click.echo()


@deploy.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Settings file (default: outpost.yaml if present)",
)
@click.option(
    "--force",
    is_flag=True,
    help="Skip confirmation prompt",
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
def destroy(config_path: str | None, force: bool, verbose: bool, quiet: bool) -> None:
    """Stop and remove the deployed relay container."""
    if not quiet:
        setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        settings = load_settings(config_path)
        name = settings.container_name

        if not force:
            confirm = click.confirm(f"Destroy container '{name}'?", default=False)
            if not confirm:
                click.secho("Destroy aborted.", fg="yellow")
                sys.exit(0)

        from outpost.deploy.supervisor import ContainerSupervisor

        removed = ContainerSupervisor().ensure_absent(name)

        record = get_deployment_record(settings.record_file, name)
        if record is not None:
            update_deployment_record(
                settings.record_file,
                name,
                record.model_copy(update={"status": "deleted"}),
            )

        if quiet:
            click.echo("deleted" if removed else "absent")
            sys.exit(0)

        click.echo()
        if removed:
            click.secho("Deployment Destroyed", fg="green", bold=True)
        else:
            click.secho(f"No container named '{name}' was running", fg="yellow")
        click.echo()
