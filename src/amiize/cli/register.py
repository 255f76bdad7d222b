"""Registration commands: register, find."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..config import RegistrationConfig, load_defaults
from ..errors import (
    AmiizeError,
    ImageAlreadyExists,
    ProviderQueryFailure,
    ValidationFailure,
)
from ..models import RegistrationResult
from ..preflight import check_tools
from ..providers import EC2Session, ImageRegistrar
from . import _common
from ._common import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_USAGE,
    console,
    install_signal_handlers,
)


def _print_result(result: RegistrationResult) -> None:
    image = result.image
    visibility = (
        "[green]visible[/]" if image.visible
        else "[yellow]not visible yet, check the EC2 console[/]"
    )
    console.print()
    console.print(
        Panel(
            f"[bold]{image.name}[/]: [cyan]{image.image}[/] in {result.region}\n"
            f"snapshot {image.snapshot}, {image.volume_size_gib} GiB {image.volume_type}, "
            f"{image.architecture}\n"
            f"{visibility}",
            title="Registered image",
            border_style="green",
        )
    )
    _print_leaks(result.leaked)


def _print_leaks(leaked) -> None:
    if not leaked:
        return
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Kind", style="bold")
    table.add_column("Id", style="cyan")
    for handle in leaked:
        table.add_row(handle.kind.name.lower(), handle.id)
    console.print(
        "\n[bold yellow]These resources could not be cleaned up; "
        "check your account and remove them manually:[/]"
    )
    console.print(table)


def register_register_commands(main: click.Group) -> None:
    """Register the register and find commands on the main CLI group."""

    @main.command()
    @click.option("--image", "image", required=True, type=click.Path(dir_okay=False, path_type=Path),
                  help="The image file to create the AMI from.")
    @click.option("--region", help="The region to upload to.")
    @click.option("--worker-ami", help="Existing AMI ID used to launch the worker instance.")
    @click.option("--ssh-keypair", help="EC2 key pair name used to connect to the worker.")
    @click.option("--instance-type", help="Instance type launched for the worker.")
    @click.option("--name", help="The name under which to register the image.")
    @click.option("--arch", help="Machine architecture of the image, e.g. x86_64.")
    @click.option("--description", help="Description of the image (defaults to name).")
    @click.option("--subnet-id", help="Subnet to launch the worker in, if there is no default VPC.")
    @click.option("--user-data", help="Worker user data, base64 with no line wrapping.")
    @click.option("--volume-size", type=int, help="Root volume size in GiB (defaults to image size).")
    @click.option("--security-group-name", "security_group",
                  help="Security group allowing SSH from this host (defaults to 'default').")
    @click.option("--ssh-identity", type=click.Path(dir_okay=False, path_type=Path),
                  help="Private key for SSH; the ssh agent is used if omitted.")
    @click.option("--ssh-user", help="Login user on the worker (defaults to ec2-user).")
    @click.option("--max-attempts", type=int, help="Registration attempts before giving up (default 2).")
    @click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
                  help="YAML file with option defaults (default ~/.amiize/config.yaml).")
    def register(config_path: Optional[Path], **options):
        """Register a partitioned OS image as an AMI.

        \b
        Only registers with HVM virtualization and GP2 EBS volumes. The
        image must be partitioned with a bootloader, support SR-IOV and
        ENA networking, and fit in the memory of the worker instance type.

        Example:

            amiize register --image build/os-x86_64.img --region us-west-2
                --worker-ami ami-0f2176987ee50226e --ssh-keypair mykey
                --instance-type m5.xlarge --name os-20190718-01 --arch x86_64
        """
        tools = check_tools()
        if not tools.all_ok:
            for check in tools.missing:
                hint = f" ({check.install_cmd})" if check.install_cmd else ""
                console.print(f"[bold red]** Can't find executable '{check.name}'[/]{hint}")
            sys.exit(EXIT_USAGE)

        try:
            config = RegistrationConfig.build(load_defaults(config_path), **options)
        except ValidationFailure as exc:
            console.print(f"[bold red]ERROR:[/] {exc}")
            sys.exit(EXIT_USAGE)

        orchestrator = _common.build_orchestrator(config)
        install_signal_handlers()
        try:
            result = orchestrator.run()
        except ImageAlreadyExists as exc:
            console.print(f"[bold yellow]Warning![/] {exc}")
            sys.exit(EXIT_FAILURE)
        except AmiizeError as exc:
            console.print(f"[bold red]ERROR![/] {exc}")
            _print_leaks(orchestrator.guard.leaked)
            sys.exit(EXIT_FAILURE)
        except KeyboardInterrupt:
            console.print("\n[bold yellow]Interrupted.[/]")
            _print_leaks(orchestrator.guard.leaked)
            sys.exit(EXIT_INTERRUPTED)

        _print_result(result)

    @main.command()
    @click.option("--name", required=True, help="Image name to look up.")
    @click.option("--region", required=True, help="Region to search.")
    def find(name: str, region: str):
        """Look up one of your images by name and print its ID."""
        registrar = ImageRegistrar(EC2Session(region))
        try:
            handle = registrar.find_by_name(name)
        except ProviderQueryFailure as exc:
            console.print(f"[bold red]ERROR:[/] {exc}")
            sys.exit(EXIT_FAILURE)
        if handle is None:
            console.print(f"[dim]No image named {name} in {region}.[/]")
            sys.exit(EXIT_FAILURE)
        console.print(handle.id)
