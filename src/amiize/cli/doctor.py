"""Environment diagnostics: doctor."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from ..config import default_config_path, load_defaults
from ..preflight import check_tools
from ._common import EXIT_FAILURE, console


def register_doctor_commands(main: click.Group) -> None:
    """Register the doctor command on the main CLI group."""

    @main.command()
    @click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
                  help="YAML file with option defaults.")
    def doctor(config_path: Optional[Path]):
        """Check local tools and show the configured defaults."""
        result = check_tools()

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Tool", style="bold")
        table.add_column("Status")
        table.add_column("Detail", style="dim")
        for check in result.checks:
            if check.installed:
                table.add_row(check.name, "[bold green]OK[/]", check.version)
            else:
                table.add_row(check.name, "[bold red]MISSING[/]", check.install_cmd)
        console.print()
        console.print(table)

        path = config_path or default_config_path()
        defaults = load_defaults(path)
        console.print(f"\n[dim]Defaults file:[/] {path}")
        for key, value in sorted(defaults.items()):
            console.print(f"  [cyan]{key}[/] = {value}")
        console.print()

        if not result.all_ok:
            sys.exit(EXIT_FAILURE)
