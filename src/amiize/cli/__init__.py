"""
amiize CLI: register a disk image as an EC2 AMI.

The main Click group is defined here; subcommands live in their own
modules and are attached via register functions.

Entry point: amiize.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="amiize")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
@click.option("-q", "--quiet", is_flag=True, help="Only log warnings and errors.")
def main(verbose: bool, quiet: bool):
    """amiize: turn a raw disk image into a registered AMI.

    \b
    Launches a worker instance, writes the image to an EBS volume,
    snapshots it and registers the snapshot as an image.
    """
    configure_logging(verbose=verbose, quiet=quiet)


# ---------------------------------------------------------------------------
# Register all commands from modular files
# ---------------------------------------------------------------------------

from .register import register_register_commands
from .doctor import register_doctor_commands

register_register_commands(main)
register_doctor_commands(main)
