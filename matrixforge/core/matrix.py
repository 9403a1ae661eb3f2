"""Version Matrix Driver — build every version, isolating failures per version.

A failure in one version's build is captured in that version's
``VersionBuildResult`` and never aborts its siblings.  Builds run in
parallel; the only state they share is the artifact cache, which is keyed
by (name, version, hash) and written atomically.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

from matrixforge.core.blueprint import ImageBlueprint
from matrixforge.core.report_sink import ReportSink
from matrixforge.models.reports import RecordKind
from matrixforge.models.results import BuildStage, BuildStatus, VersionBuildResult
from matrixforge.models.versioning import VersionDescriptor

logger = logging.getLogger(__name__)


class VersionMatrixDriver:
    """Runs the per-version build for a list of descriptors.

    Parameters
    ----------
    blueprint:
        The per-version recipe.
    max_workers:
        Upper bound on concurrent builds.
    sink:
        Optional report sink; one record is appended per image build.
    run_id:
        Identifier tying this matrix run's records together.
    """

    def __init__(
        self,
        blueprint: ImageBlueprint,
        *,
        max_workers: int = 4,
        sink: ReportSink | None = None,
        run_id: str | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._blueprint = blueprint
        self._max_workers = max_workers
        self._sink = sink
        self.run_id = run_id or f"mf-build-{uuid.uuid4().hex[:12]}"

    def build_all(self, descriptors: Sequence[VersionDescriptor]) -> list[VersionBuildResult]:
        """Build every descriptor; results keep input order.

        Raises ``ValueError`` if a version appears more than once.
        """
        seen: set[str] = set()
        for descriptor in descriptors:
            if descriptor.version in seen:
                raise ValueError(f"Duplicate version in build matrix: {descriptor.version}")
            seen.add(descriptor.version)

        if not descriptors:
            return []

        workers = min(self._max_workers, len(descriptors))
        logger.info("Building %d version(s) with %d worker(s)", len(descriptors), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="matrixforge-build") as pool:
            results = list(pool.map(self.build_one, descriptors))

        failed = [r.version for r in results if not r.succeeded]
        if failed:
            logger.error("Build failed for version(s): %s", ", ".join(failed))
        return results

    def build_one(self, descriptor: VersionDescriptor) -> VersionBuildResult:
        """Build a single version, converting any build error into a result."""
        current: list[BuildStage] = []
        started = time.monotonic()

        def on_stage(stage: BuildStage) -> None:
            current.append(stage)
            logger.debug("%s: %s", descriptor.version, stage.value)

        try:
            image, shell = self._blueprint.build(descriptor, on_stage=on_stage)
        except Exception as exc:  # one version never discards its siblings
            failed_stage = current[-1] if current else BuildStage.FETCH
            result = VersionBuildResult(
                version=descriptor.version,
                status=BuildStatus.FAILED,
                failed_stage=failed_stage,
                error_type=type(exc).__name__,
                error_message=str(exc),
                duration_ms=_elapsed_ms(started),
            )
            logger.error(
                "Version %s failed at %s: %s: %s",
                descriptor.version,
                failed_stage.value,
                type(exc).__name__,
                exc,
            )
        else:
            result = VersionBuildResult(
                version=descriptor.version,
                status=BuildStatus.SUCCEEDED,
                image=image,
                shell_environment=shell,
                duration_ms=_elapsed_ms(started),
            )

        self._report(result)
        return result

    def _report(self, result: VersionBuildResult) -> None:
        if self._sink is None:
            return
        detail: dict[str, object] = {}
        if result.image is not None:
            detail = {
                "image": result.image.name,
                "digest": result.image.digest,
                "overwrites": len(result.image.overwrites),
                "published_path": str(result.image.published_path or ""),
            }
        else:
            detail = {
                "failed_stage": result.failed_stage.value if result.failed_stage else "",
                "error_type": result.error_type,
                "error_message": result.error_message,
            }
        self._sink.record(
            RecordKind.IMAGE_BUILD,
            result.status.value,
            run_id=self.run_id,
            version=result.version,
            duration_ms=result.duration_ms,
            detail=detail,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
