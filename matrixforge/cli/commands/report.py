"""``matrixforge report`` — print the report sink and verify its hash chain."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from matrixforge.config import ForgeSettings
from matrixforge.core.errors import ReportIntegrityError
from matrixforge.core.report_sink import ReportSink
from matrixforge.monitor.renderer import ForgeRenderer

console = Console()


def report_cmd(
    path: Optional[Path] = typer.Option(
        None, "--path", "-p", help="Report sink (JSON Lines). Defaults to MATRIXFORGE_REPORT_PATH."
    ),
    run_id: Optional[str] = typer.Option(None, "--run-id", "-r", help="Only show one run."),
    verify: bool = typer.Option(
        True, "--verify/--no-verify", help="Verify the hash chain before displaying."
    ),
) -> None:
    """Show report records; exit 1 if the hash chain is broken."""
    sink = ReportSink(path or ForgeSettings().report_path)
    if not sink.path.exists():
        console.print(f"[bold red]Report not found:[/bold red] {sink.path}")
        raise typer.Exit(code=1)

    renderer = ForgeRenderer(console=console)
    if verify:
        try:
            renderer.print_chain_verification(sink.verify_chain())
        except ReportIntegrityError as exc:
            renderer.print_chain_verification(False, str(exc))
            raise typer.Exit(code=1) from exc

    records = sink.records_for(run_id) if run_id else sink.read_records()
    if not records:
        console.print("[dim]No records.[/dim]")
        return
    console.print(renderer.report_table(records))
