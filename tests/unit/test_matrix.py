"""Tests for the Version Matrix Driver — isolation, ordering, reporting."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from matrixforge.core.blueprint import ImageBlueprint
from matrixforge.core.fetcher import ArtifactFetcher
from matrixforge.core.matrix import VersionMatrixDriver
from matrixforge.core.report_sink import ReportSink
from matrixforge.core.templates import TemplateRenderer
from matrixforge.models.config import BuildConfig
from matrixforge.models.reports import RecordKind
from matrixforge.models.results import BuildStage, BuildStatus
from matrixforge.models.versioning import VersionDescriptor


class TestBuildAll:
    def test_failure_isolated_per_version(
        self, blueprint: ImageBlueprint, fake_release: Callable[..., VersionDescriptor]
    ):
        broken = fake_release("6.3.24", tamper="fdbserver.x86_64")
        healthy = fake_release("7.1.12")

        results = VersionMatrixDriver(blueprint, max_workers=2).build_all([broken, healthy])

        assert [r.version for r in results] == ["6.3.24", "7.1.12"]
        failed, ok = results
        assert failed.status == BuildStatus.FAILED
        assert failed.failed_stage == BuildStage.FETCH
        assert failed.error_type == "HashMismatch"
        assert failed.image is None
        assert ok.succeeded
        assert ok.image is not None and ok.image.version == "7.1.12"
        assert ok.shell_environment is not None

    def test_results_keep_input_order(
        self, blueprint: ImageBlueprint, fake_release: Callable[..., VersionDescriptor]
    ):
        descriptors = [fake_release(v) for v in ("7.1.12", "6.3.24", "7.0.0")]
        results = VersionMatrixDriver(blueprint, max_workers=3).build_all(descriptors)
        assert [r.version for r in results] == ["7.1.12", "6.3.24", "7.0.0"]
        assert all(r.succeeded for r in results)

    def test_assembly_failure_attributed_to_stage(
        self, blueprint: ImageBlueprint, fake_release: Callable[..., VersionDescriptor]
    ):
        # The rendered passwd no longer defines the service account chown needs.
        descriptor = fake_release(template_params={"service_user": "daemon"})
        result = VersionMatrixDriver(blueprint).build_one(descriptor)
        assert result.status == BuildStatus.FAILED
        assert result.failed_stage == BuildStage.ASSEMBLE
        assert result.error_type == "PostPlacementFailure"

    def test_render_failure_attributed_to_stage(
        self,
        tmp_path: Path,
        build_config: BuildConfig,
        fetcher: ArtifactFetcher,
        fake_release: Callable[..., VersionDescriptor],
    ):
        blueprint = ImageBlueprint(build_config, fetcher, renderer=TemplateRenderer(tmp_path))
        result = VersionMatrixDriver(blueprint).build_one(fake_release())
        assert result.failed_stage == BuildStage.RENDER
        assert result.error_type == "TemplateNotFound"

    def test_unexpected_error_isolated(
        self,
        build_config: BuildConfig,
        fetcher: ArtifactFetcher,
        fake_release: Callable[..., VersionDescriptor],
    ):
        class CrashingBlueprint(ImageBlueprint):
            def build(self, descriptor, *, on_stage=None):
                if descriptor.version == "6.3.24":
                    on_stage(BuildStage.PATCH)
                    raise LookupError("patch tool crashed")
                return super().build(descriptor, on_stage=on_stage)

        blueprint = CrashingBlueprint(build_config, fetcher)
        descriptors = [fake_release("6.3.24"), fake_release("7.1.12")]
        crashed, ok = VersionMatrixDriver(blueprint, max_workers=2).build_all(descriptors)

        assert crashed.status == BuildStatus.FAILED
        assert crashed.failed_stage == BuildStage.PATCH
        assert crashed.error_type == "LookupError"
        assert ok.succeeded

    def test_duplicate_versions_rejected(
        self, blueprint: ImageBlueprint, fake_release: Callable[..., VersionDescriptor]
    ):
        descriptor = fake_release()
        with pytest.raises(ValueError, match="Duplicate version"):
            VersionMatrixDriver(blueprint).build_all([descriptor, descriptor])

    def test_empty_matrix(self, blueprint: ImageBlueprint):
        assert VersionMatrixDriver(blueprint).build_all([]) == []

    def test_max_workers_validated(self, blueprint: ImageBlueprint):
        with pytest.raises(ValueError):
            VersionMatrixDriver(blueprint, max_workers=0)


class TestReporting:
    def test_one_record_per_build(
        self,
        blueprint: ImageBlueprint,
        fake_release: Callable[..., VersionDescriptor],
        sink: ReportSink,
    ):
        driver = VersionMatrixDriver(blueprint, sink=sink, run_id="mf-build-test")
        driver.build_all([fake_release("6.3.24", tamper="fdbcli.x86_64"), fake_release("7.1.12")])

        records = sink.records_for("mf-build-test")
        assert [r.kind for r in records] == [RecordKind.IMAGE_BUILD] * 2
        by_version = {r.version: r for r in records}
        assert by_version["6.3.24"].status == "failed"
        assert by_version["6.3.24"].detail["failed_stage"] == "fetch"
        assert by_version["7.1.12"].status == "succeeded"
        assert len(by_version["7.1.12"].detail["digest"]) == 64
        assert sink.verify_chain() is True
