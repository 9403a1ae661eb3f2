"""``matrixforge build`` and ``matrixforge shell-env`` — build version images.

Builds every selected version in parallel, prints a per-version
success/failure table and exits non-zero if any version failed.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from matrixforge.config import ForgeSettings
from matrixforge.core.artifact_store import ContentAddressedStore
from matrixforge.core.blueprint import ImageBlueprint
from matrixforge.core.fetcher import ArtifactFetcher
from matrixforge.core.matrix import VersionMatrixDriver
from matrixforge.core.report_sink import ReportSink
from matrixforge.models.config import BuildConfig
from matrixforge.models.versioning import VersionDescriptor
from matrixforge.monitor.renderer import ForgeRenderer
from matrixforge.versions import SUPPORTED_VERSIONS, get_version, load_descriptors

console = Console()


def make_blueprint(config: BuildConfig) -> ImageBlueprint:
    """Wire the fetcher, cache and stages for *config*."""
    fetcher = ArtifactFetcher(
        ContentAddressedStore(config.cache_path),
        timeout=config.fetch_timeout_seconds,
        attempts=config.fetch_attempts,
    )
    return ImageBlueprint(config, fetcher)


def select_descriptors(
    versions: list[str] | None, descriptors_file: Path | None
) -> list[VersionDescriptor]:
    """Resolve the descriptors to build from ``--descriptors`` and ``--version``."""
    if descriptors_file is not None:
        try:
            raw = json.loads(descriptors_file.read_text(encoding="utf-8"))
            available = load_descriptors(raw if isinstance(raw, list) else [raw])
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            console.print(f"[bold red]Invalid descriptors file:[/bold red] {exc}")
            raise typer.Exit(code=2) from exc
    else:
        available = list(SUPPORTED_VERSIONS)

    if not versions:
        return available
    by_version = {d.version: d for d in available}
    selected = []
    for version in versions:
        if version in by_version:
            selected.append(by_version[version])
            continue
        try:
            selected.append(get_version(version))
        except KeyError as exc:
            console.print(f"[bold red]{exc.args[0]}[/bold red]")
            raise typer.Exit(code=2) from exc
    return selected


def _config(
    settings: ForgeSettings,
    images_dir: Path | None,
    base_root: Path | None,
    workers: int | None,
) -> BuildConfig:
    config = BuildConfig.from_settings(settings)
    updates: dict[str, object] = {}
    if images_dir is not None:
        updates["images_path"] = images_dir
    if base_root is not None:
        updates["base_root"] = base_root
    if workers is not None:
        updates["max_parallel_builds"] = workers
    return config.model_copy(update=updates) if updates else config


def build_cmd(
    version: Optional[list[str]] = typer.Option(
        None,
        "--version",
        "-v",
        help="Version to build (repeatable). Defaults to every supported version.",
    ),
    descriptors: Optional[Path] = typer.Option(
        None,
        "--descriptors",
        "-d",
        help="JSON file with version descriptors (camelCase input format).",
    ),
    images_dir: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Directory images are published to.",
    ),
    base_root: Optional[Path] = typer.Option(
        None,
        "--base-root",
        help="Pre-built base root filesystem merged as the first layer.",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Maximum number of parallel builds.",
    ),
    report: Optional[Path] = typer.Option(
        None,
        "--report",
        help="Report sink (JSON Lines). Defaults to MATRIXFORGE_REPORT_PATH.",
    ),
) -> None:
    """Build the runtime image for each selected version."""
    settings = ForgeSettings()
    config = _config(settings, images_dir, base_root, workers)
    selected = select_descriptors(version, descriptors)

    driver = VersionMatrixDriver(
        make_blueprint(config),
        max_workers=config.max_parallel_builds,
        sink=ReportSink(report or settings.report_path),
    )
    console.print(f"[bold]Run ID:[/bold] [cyan]{driver.run_id}[/cyan]")
    results = driver.build_all(selected)

    renderer = ForgeRenderer(console=console)
    console.print(renderer.matrix_table(results))
    for result in results:
        if result.image is not None and result.image.published_path is not None:
            console.print(f"[dim]{result.version}: {result.image.published_path}[/dim]")

    if any(not r.succeeded for r in results):
        raise typer.Exit(code=1)


def shell_env_cmd(
    version: str = typer.Argument(..., help="Version whose test shell to describe."),
    descriptors: Optional[Path] = typer.Option(
        None,
        "--descriptors",
        "-d",
        help="JSON file with version descriptors (camelCase input format).",
    ),
    base_root: Optional[Path] = typer.Option(
        None,
        "--base-root",
        help="Pre-built base root filesystem merged as the first layer.",
    ),
) -> None:
    """Build *version* (cache-backed) and print its test-shell environment.

    The output is ``export`` lines suitable for ``eval``.
    """
    settings = ForgeSettings()
    config = _config(settings, None, base_root, None)
    (descriptor,) = select_descriptors([version], descriptors)

    driver = VersionMatrixDriver(make_blueprint(config), max_workers=1)
    result = driver.build_one(descriptor)
    if result.shell_environment is None:
        console.print(
            f"[bold red]Build failed at {result.failed_stage.value if result.failed_stage else '?'}:"
            f"[/bold red] {result.error_type}: {result.error_message}"
        )
        raise typer.Exit(code=1)

    shell = result.shell_environment
    for line in shell.export_lines():
        typer.echo(line)
    for command in shell.setup_commands:
        typer.echo(command)
    typer.echo(f"# pip install {shell.oracle_requirement}")
