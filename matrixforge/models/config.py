"""Per-invocation build and fuzz configuration models.

These are frozen snapshots derived from ``ForgeSettings`` (or built directly
in tests) so that one invocation never observes settings changing under it.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from matrixforge.models.image import ServiceAccount

if TYPE_CHECKING:
    from matrixforge.config import ForgeSettings


class BuildConfig(BaseModel):
    """Configuration for the image build pipeline."""

    model_config = ConfigDict(frozen=True)

    cache_path: Path = Path(".matrixforge/cache")
    scratch_path: Path = Path(".matrixforge/scratch")
    images_path: Path | None = Path(".matrixforge/images")
    release_url_base: str = "https://github.com/apple/foundationdb/releases/download"
    fetch_timeout_seconds: float = 60.0
    fetch_attempts: int = Field(default=3, ge=1)
    max_parallel_builds: int = Field(default=4, ge=1)
    interpreter: str = "/lib64/ld-linux-x86-64.so.2"
    library_search_path: str = "/opt/fdb/client-lib:/lib64"
    systemd_prefix: str = "/usr"
    base_root: Path | None = None  # pre-built base system (coreutils, systemd, ...)
    listen_port: int = 4500
    service_account: ServiceAccount = ServiceAccount()
    runner: ServiceAccount = ServiceAccount(user="runner", group="docker", uid=1001, gid=121)

    @classmethod
    def from_settings(cls, settings: ForgeSettings) -> BuildConfig:
        return cls(
            cache_path=settings.cache_path,
            scratch_path=settings.scratch_path,
            images_path=settings.images_path,
            release_url_base=settings.release_url_base,
            fetch_timeout_seconds=settings.fetch_timeout_seconds,
            fetch_attempts=settings.fetch_attempts,
            max_parallel_builds=settings.max_parallel_builds,
            base_root=settings.base_root,
        )


class FuzzConfig(BaseModel):
    """Budgets for one fuzz run.  Tunable per invocation, never hard-coded.

    A short validation run and a long scheduled run use the same engine
    with different ``iterations``.
    """

    model_config = ConfigDict(frozen=True)

    iterations: int = Field(default=10, ge=0)
    num_ops: int = Field(default=1000, ge=1)
    concurrency: int = Field(default=5, ge=1)
    session_timeout_seconds: float = Field(default=300.0, gt=0)
    seed: int | None = None
    key_space: int = Field(default=64, ge=1)

    @classmethod
    def from_settings(cls, settings: ForgeSettings, **overrides: object) -> FuzzConfig:
        values: dict[str, object] = {
            "iterations": settings.fuzz_iterations,
            "num_ops": settings.fuzz_num_ops,
            "concurrency": settings.fuzz_concurrency,
            "session_timeout_seconds": settings.fuzz_session_timeout_seconds,
            "seed": settings.fuzz_seed,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
