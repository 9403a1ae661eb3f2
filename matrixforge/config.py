"""Runtime configuration — env-driven via pydantic-settings.

Reads from a ``.env`` file and ``MATRIXFORGE_*`` environment variables.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console
from rich.logging import RichHandler


class ForgeSettings(BaseSettings):
    """Settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export MATRIXFORGE_LOG_LEVEL=DEBUG
        export MATRIXFORGE_CACHE_PATH=/var/cache/matrixforge
        export MATRIXFORGE_FUZZ_ITERATIONS=400

    Or via .env file::

        MATRIXFORGE_MAX_PARALLEL_BUILDS=2
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MATRIXFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"

    # Storage paths
    cache_path: Path = Path(".matrixforge/cache")
    scratch_path: Path = Path(".matrixforge/scratch")
    images_path: Path = Path(".matrixforge/images")
    report_path: Path = Path(".matrixforge/reports.jsonl")
    base_root: Path | None = None

    # Fetching
    release_url_base: str = "https://github.com/apple/foundationdb/releases/download"
    fetch_timeout_seconds: float = 60.0
    fetch_attempts: int = 3

    # Builds
    max_parallel_builds: int = 4

    # Fuzzing budgets (short validation run defaults)
    fuzz_iterations: int = 10
    fuzz_num_ops: int = 1000
    fuzz_concurrency: int = 5
    fuzz_session_timeout_seconds: float = 300.0
    fuzz_seed: int | None = None


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route ``matrixforge`` loggers through a Rich handler at *level*."""
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root = logging.getLogger("matrixforge")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
    root.propagate = False
