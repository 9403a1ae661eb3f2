"""Main Typer application — imports and registers all CLI commands.

Entry point: ``matrixforge`` (configured via pyproject.toml project.scripts).

Commands: versions, build, shell-env, fuzz, campaign, report.
"""

from __future__ import annotations

from typing import Optional

import typer

from matrixforge.cli.commands.build import build_cmd, shell_env_cmd
from matrixforge.cli.commands.fuzz import campaign_cmd, fuzz_cmd
from matrixforge.cli.commands.report import report_cmd
from matrixforge.cli.commands.versions import versions_cmd
from matrixforge.config import ForgeSettings, configure_logging

app = typer.Typer(
    name="matrixforge",
    help="Matrixforge: reproducible versioned database images and differential client fuzzing.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (defaults to MATRIXFORGE_LOG_LEVEL).",
    ),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(log_level or ForgeSettings().log_level)


# Register subcommands
app.command(name="versions", help="List supported server versions.")(versions_cmd)
app.command(name="build", help="Build runtime images for the version matrix.")(build_cmd)
app.command(name="shell-env", help="Print the test-shell environment for a version.")(
    shell_env_cmd
)
app.command(name="fuzz", help="Run one fuzz invocation (scripted or api).")(fuzz_cmd)
app.command(name="campaign", help="Run the full fuzz campaign.")(campaign_cmd)
app.command(name="report", help="Show and verify the report sink.")(report_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
