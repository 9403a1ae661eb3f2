"""``matrixforge versions`` — list the statically supported server versions."""

from __future__ import annotations

import json

import typer
from rich.console import Console

from matrixforge.monitor.renderer import ForgeRenderer
from matrixforge.versions import SUPPORTED_VERSIONS

console = Console()


def versions_cmd(
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print descriptors as JSON (the --descriptors input format).",
    ),
) -> None:
    """List supported versions and their pinned artifact hashes."""
    if as_json:
        payload = [d.model_dump(by_alias=True) for d in SUPPORTED_VERSIONS]
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    console.print(ForgeRenderer(console=console).versions_table(SUPPORTED_VERSIONS))