"""``matrixforge fuzz`` and ``matrixforge campaign`` — differential fuzz runs.

``fuzz`` runs a single invocation::

    matrixforge fuzz --mode scripted
    matrixforge fuzz --mode api --compare --num-ops 1000 --iterations 10
    matrixforge fuzz --mode api --num-ops 1000 --concurrency 5 --iterations 10

``campaign`` runs the full phase sequence (scripted check, oracle-compared,
concurrent) once.  Exit status: 0 iff zero recorded failures, 1 when any
divergence/client error/timeout was recorded, 2 when the scripted check
failed or the invocation is invalid.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from matrixforge.config import ForgeSettings
from matrixforge.core.errors import ScriptedCheckFailed
from matrixforge.core.report_sink import ReportSink
from matrixforge.fuzz.clients import load_factory
from matrixforge.fuzz.orchestrator import FuzzOrchestrator
from matrixforge.models.config import FuzzConfig
from matrixforge.models.fuzz import FuzzInvocation, FuzzSummary
from matrixforge.monitor.renderer import ForgeRenderer

console = Console()

DEFAULT_FACTORY = "matrixforge.fuzz.oracle:InMemoryKeyValueStore"


class InvocationMode(str, Enum):
    scripted = "scripted"
    api = "api"


def _orchestrator(
    settings: ForgeSettings,
    client: str,
    oracle: str,
    label: str,
    report: Path | None,
    **overrides: object,
) -> FuzzOrchestrator:
    try:
        client_factory = load_factory(client)
        oracle_factory = load_factory(oracle)
        config = FuzzConfig.from_settings(settings, **overrides)
    except (ValueError, ValidationError) as exc:
        console.print(f"[bold red]Invalid fuzz configuration:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc
    return FuzzOrchestrator(
        client_factory,
        oracle_factory=oracle_factory,
        config=config,
        sink=ReportSink(report or settings.report_path),
        version=label,
    )


def _finish(summary: FuzzSummary) -> None:
    renderer = ForgeRenderer(console=console)
    if summary.records:
        console.print(renderer.fuzz_table(summary))
    console.print(renderer.fuzz_panel(summary))
    raise typer.Exit(code=summary.exit_code)


def _aborted(orchestrator: FuzzOrchestrator, exc: ScriptedCheckFailed) -> None:
    console.print(
        Panel(f"[bold red]Scripted check failed:[/bold red] {exc}", border_style="red")
    )
    _finish(orchestrator.summary())


def fuzz_cmd(
    mode: InvocationMode = typer.Option(
        InvocationMode.api, "--mode", "-m", help="scripted or api."
    ),
    compare: bool = typer.Option(
        False, "--compare", help="Compare every operation against the oracle."
    ),
    num_ops: Optional[int] = typer.Option(None, "--num-ops", "-n", min=1, help="Operations per session."),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, help="Parallel sessions per iteration."
    ),
    iterations: int = typer.Option(1, "--iterations", "-i", min=0, help="Iterations to run."),
    seed: Optional[int] = typer.Option(None, "--seed", help="Base seed (random if omitted)."),
    client: str = typer.Option(DEFAULT_FACTORY, "--client", help="Client factory 'module:attr'."),
    oracle: str = typer.Option(DEFAULT_FACTORY, "--oracle", help="Oracle factory 'module:attr'."),
    label: str = typer.Option("", "--label", "-l", help="Server version under test (for reports)."),
    report: Optional[Path] = typer.Option(None, "--report", help="Report sink (JSON Lines)."),
) -> None:
    """Run one fuzz invocation against the client under test."""
    settings = ForgeSettings()
    if concurrency is None:
        concurrency = 1 if compare else settings.fuzz_concurrency
    try:
        invocation = FuzzInvocation(
            mode=mode.value,
            compare=compare,
            num_ops=num_ops or settings.fuzz_num_ops,
            concurrency=concurrency,
            iterations=iterations,
        )
    except ValidationError as exc:
        console.print(f"[bold red]Invalid invocation:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc

    orchestrator = _orchestrator(settings, client, oracle, label, report, seed=seed)
    console.print(
        f"[bold]Run ID:[/bold] [cyan]{orchestrator.run_id}[/cyan]  "
        f"[bold]Seed:[/bold] {orchestrator.base_seed}"
    )
    try:
        summary = orchestrator.run_invocation(invocation)
    except ScriptedCheckFailed as exc:
        _aborted(orchestrator, exc)
        return
    _finish(summary)


def campaign_cmd(
    iterations: Optional[int] = typer.Option(
        None, "--iterations", "-i", min=0, help="Iterations per randomized phase."
    ),
    num_ops: Optional[int] = typer.Option(None, "--num-ops", "-n", min=1, help="Operations per session."),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, help="Parallel sessions in the concurrent phase."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds before a concurrent iteration is cancelled."
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Base seed (random if omitted)."),
    client: str = typer.Option(DEFAULT_FACTORY, "--client", help="Client factory 'module:attr'."),
    oracle: str = typer.Option(DEFAULT_FACTORY, "--oracle", help="Oracle factory 'module:attr'."),
    label: str = typer.Option("", "--label", "-l", help="Server version under test (for reports)."),
    report: Optional[Path] = typer.Option(None, "--report", help="Report sink (JSON Lines)."),
) -> None:
    """Scripted check, then oracle-compared and concurrent phases, then summary."""
    settings = ForgeSettings()
    orchestrator = _orchestrator(
        settings,
        client,
        oracle,
        label,
        report,
        iterations=iterations,
        num_ops=num_ops,
        concurrency=concurrency,
        session_timeout_seconds=timeout,
        seed=seed,
    )
    console.print(
        f"[bold]Run ID:[/bold] [cyan]{orchestrator.run_id}[/cyan]  "
        f"[bold]Seed:[/bold] {orchestrator.base_seed}  "
        f"[bold]Iterations:[/bold] {orchestrator.config.iterations}"
    )
    try:
        summary = orchestrator.run()
    except ScriptedCheckFailed as exc:
        _aborted(orchestrator, exc)
        return
    _finish(summary)
