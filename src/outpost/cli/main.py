"""Entry point for the ``outpost`` command."""

from __future__ import annotations

import click

from outpost import __version__
from outpost.cli.commands.bundle import bundle
from outpost.cli.commands.deploy import deploy


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, prog_name="outpost")
def main() -> None:
    """Outpost - package and provision a self-hosted relay server.

    Build a bundle on a host with registry access, copy it to the server,
    then deploy it there.

    Example:

        outpost bundle build --cert shadowbox.crt --public-ip 203.0.113.7

        outpost deploy run outline_docker_bundle.zip --server-ip 203.0.113.7
    """


main.add_command(deploy)
main.add_command(bundle)


if __name__ == "__main__":
    main()
