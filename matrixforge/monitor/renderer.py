"""Rich terminal renderer for build matrices, fuzz summaries and reports.

Color scheme
------------
- green     : succeeded / passed
- red       : failed
- yellow    : timeout
- bold red  : aborted
"""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from matrixforge.models.fuzz import FailureKind, FuzzSummary, RunOutcome
from matrixforge.models.image import TestShellEnvironment
from matrixforge.models.reports import ReportRecord
from matrixforge.models.results import BuildStatus, VersionBuildResult
from matrixforge.models.versioning import VersionDescriptor

_STATUS_ICONS: dict[str, str] = {
    BuildStatus.SUCCEEDED.value: "[green]SUCCEEDED[/green]",
    BuildStatus.FAILED.value: "[bold red]FAILED[/bold red]",
    RunOutcome.PASSED.value: "[green]PASSED[/green]",
    RunOutcome.FAILED.value: "[bold red]FAILED[/bold red]",
    "timeout": "[yellow]TIMEOUT[/yellow]",
    "aborted": "[bold red]ABORTED[/bold red]",
}


def _status(value: str) -> str:
    return _STATUS_ICONS.get(value, value.upper())


class ForgeRenderer:
    """Renders Matrixforge results as Rich tables and panels.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Versions and builds
    # ------------------------------------------------------------------

    def versions_table(self, descriptors: Sequence[VersionDescriptor]) -> Table:
        table = Table(title="Supported Versions", show_lines=False)
        table.add_column("Version", style="cyan")
        table.add_column("API", justify="right")
        table.add_column("Client sha256", style="dim")
        table.add_column("Server sha256", style="dim")
        for d in descriptors:
            table.add_row(
                d.version,
                str(d.api_version),
                d.client_artifact_hash[:20] + "...",
                d.server_artifact_hash[:20] + "...",
            )
        return table

    def matrix_table(self, results: Sequence[VersionBuildResult]) -> Table:
        """Per-version success/failure table."""
        table = Table(title="Version Matrix", show_lines=False)
        table.add_column("Version", style="cyan")
        table.add_column("Status")
        table.add_column("Image")
        table.add_column("Failed stage")
        table.add_column("Error", max_width=60)
        table.add_column("Duration", justify="right")
        for r in results:
            table.add_row(
                r.version,
                _status(r.status.value),
                r.image.tag if r.image else "-",
                r.failed_stage.value if r.failed_stage else "-",
                f"{r.error_type}: {r.error_message}" if r.error_type else "",
                f"{r.duration_ms}ms",
            )
        return table

    def shell_panel(self, shell: TestShellEnvironment) -> Panel:
        lines = [f"# {shell.version} ({shell.image_tag})"]
        lines += shell.export_lines()
        lines += shell.setup_commands
        lines.append(f"pip install {shell.oracle_requirement}")
        return Panel("\n".join(lines), title=f"Test shell {shell.version}", border_style="cyan")

    # ------------------------------------------------------------------
    # Fuzz
    # ------------------------------------------------------------------

    def fuzz_table(self, summary: FuzzSummary) -> Table:
        table = Table(title=f"Fuzz Iterations {summary.version}".strip())
        table.add_column("Mode", style="cyan")
        table.add_column("Iter", justify="right")
        table.add_column("Ops", justify="right")
        table.add_column("Conc", justify="right")
        table.add_column("Outcome")
        table.add_column("Failures", justify="right")
        table.add_column("Duration", justify="right")
        for record in summary.records:
            table.add_row(
                record.mode.value,
                str(record.iteration),
                str(record.num_ops),
                str(record.concurrency),
                _status(record.outcome.value),
                str(len(record.failures)),
                f"{record.duration_ms}ms",
            )
        return table

    def fuzz_panel(self, summary: FuzzSummary) -> Panel:
        """Summary panel with enumerated failures and reproduction context."""
        text = Text()
        if summary.aborted:
            text.append("ABORTED: ", style="bold red")
            text.append(summary.abort_reason + "\n")
        scripted = {True: "passed", False: "failed", None: "not run"}[summary.scripted_passed]
        text.append(f"Scripted check: {scripted}\n")
        text.append(f"Iterations: {len(summary.records)}  Sessions: {summary.session_count}\n")
        if summary.base_seed is not None:
            text.append(f"Base seed: {summary.base_seed}\n")
        text.append(
            f"Divergences: {summary.count(FailureKind.DIVERGENCE)}  "
            f"Client errors: {summary.count(FailureKind.CLIENT_ERROR)}  "
            f"Timeouts: {summary.count(FailureKind.TIMEOUT)}\n"
        )
        for failure in summary.failures:
            text.append(f"- {failure.kind.value}: ", style="red")
            text.append(f"{failure.detail}\n  reproduce: {failure.reproduce_hint()}\n")
        style = "green" if summary.passed else "red"
        return Panel(text, title=f"Fuzz Summary (exit {summary.exit_code})", border_style=style)

    # ------------------------------------------------------------------
    # Report sink
    # ------------------------------------------------------------------

    def report_table(self, records: Sequence[ReportRecord]) -> Table:
        table = Table(title="Report Records")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Kind", style="cyan")
        table.add_column("Run")
        table.add_column("Version")
        table.add_column("Status")
        table.add_column("Hash", style="dim")
        for index, record in enumerate(records, start=1):
            table.add_row(
                str(index),
                record.kind.value,
                record.run_id,
                record.version,
                _status(record.status),
                record.record_hash[:12],
            )
        return table

    def print_chain_verification(self, valid: bool, detail: str = "") -> None:
        if valid:
            self.console.print(
                Panel("[green]Hash chain verified.[/green]", border_style="green")
            )
        else:
            self.console.print(
                Panel(
                    f"[bold red]Hash chain BROKEN[/bold red]\n{detail}".rstrip(),
                    border_style="red",
                )
            )
