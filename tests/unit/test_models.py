"""Tests for the pydantic models: aliases, validation and derived properties."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from matrixforge.models.fuzz import (
    FailureKind,
    FuzzFailure,
    FuzzInvocation,
    FuzzMode,
    FuzzRunRecord,
    FuzzSummary,
    RunOutcome,
    SessionOutcome,
)
from matrixforge.models.image import (
    Image,
    LayerOverwrite,
    ManifestEntry,
    TestShellEnvironment,
)
from matrixforge.models.versioning import VersionDescriptor

HEX = "ab" * 32

CAMEL = {
    "version": "7.1.12",
    "clientArtifactHash": HEX,
    "serverArtifactHash": HEX,
    "monitorArtifactHash": HEX,
    "cliArtifactHash": HEX,
    "templateParams": {"port": "4600"},
}


class TestVersionDescriptor:
    def test_camel_case_input(self):
        descriptor = VersionDescriptor.model_validate(CAMEL)
        assert descriptor.client_artifact_hash == HEX
        assert descriptor.template_params == {"port": "4600"}

    def test_snake_case_input(self):
        descriptor = VersionDescriptor(
            version="6.3.24",
            client_artifact_hash=HEX,
            server_artifact_hash=HEX,
            monitor_artifact_hash=HEX,
            cli_artifact_hash=HEX,
        )
        assert descriptor.template_params == {}

    def test_dump_by_alias_roundtrips(self):
        descriptor = VersionDescriptor.model_validate(CAMEL)
        dumped = descriptor.model_dump(by_alias=True)
        assert "clientArtifactHash" in dumped
        assert VersionDescriptor.model_validate(dumped) == descriptor

    def test_derived_values(self):
        descriptor = VersionDescriptor.model_validate(CAMEL)
        assert descriptor.slug == "7_1_12"
        assert descriptor.api_version == 710
        assert descriptor.params() == {"port": "4600", "version": "7.1.12"}

    def test_version_param_cannot_be_overridden(self):
        descriptor = VersionDescriptor.model_validate({**CAMEL, "templateParams": {"version": "9.9.9"}})
        assert descriptor.params()["version"] == "7.1.12"

    @pytest.mark.parametrize("version", ["7.1", "v7.1.12", "7.1.12-rc1", ""])
    def test_rejects_bad_version(self, version):
        with pytest.raises(ValidationError):
            VersionDescriptor.model_validate({**CAMEL, "version": version})

    def test_rejects_bad_hash(self):
        with pytest.raises(ValidationError):
            VersionDescriptor.model_validate({**CAMEL, "cliArtifactHash": "md5-abc"})


class TestImage:
    def _image(self) -> Image:
        return Image(
            name="fdb-7_1_12",
            version="7.1.12",
            digest=HEX,
            init_command=["/lib/systemd/systemd"],
            manifest={"/etc/fdb": ManifestEntry(kind="directory", layer="fdb-config", mode=0o755)},
            overwrites=[LayerOverwrite(path="/etc/passwd", previous_layer="base", layer="accounts")],
        )

    def test_tag(self):
        assert self._image().tag == f"fdb-7_1_12:{HEX[:12]}"

    def test_owner_of(self):
        image = self._image()
        assert image.owner_of("/etc/fdb") == "fdb-config"
        with pytest.raises(KeyError):
            image.owner_of("/nonexistent")

    def test_overwrites_of(self):
        image = self._image()
        assert [o.layer for o in image.overwrites_of("/etc/passwd")] == ["accounts"]
        assert image.overwrites_of("/etc/group") == []


class TestShellExports:
    def test_sorted_exports(self):
        shell = TestShellEnvironment(
            version="7.1.12",
            image_tag="fdb-7_1_12:abc",
            variables={"FDB_CLUSTER_FILE": "/etc/fdb/fdb.cluster", "API_VERSION": "710"},
        )
        assert shell.export_lines() == [
            "export API_VERSION=710",
            "export FDB_CLUSTER_FILE=/etc/fdb/fdb.cluster",
        ]


class TestFuzzInvocation:
    def test_compare_requires_single_client(self):
        with pytest.raises(ValidationError, match="concurrency=1"):
            FuzzInvocation(mode="api", compare=True, concurrency=5)

    def test_unknown_mode(self):
        with pytest.raises(ValidationError):
            FuzzInvocation(mode="native")

    def test_zero_iterations_allowed(self):
        assert FuzzInvocation(iterations=0).iterations == 0


def _record(iteration: int, *failures: FuzzFailure) -> FuzzRunRecord:
    return FuzzRunRecord(
        mode=FuzzMode.CONCURRENT_NO_ORACLE,
        iteration=iteration,
        num_ops=10,
        concurrency=2,
        seed=iteration,
        outcome=RunOutcome.FAILED if failures else RunOutcome.PASSED,
        sessions=[
            SessionOutcome(session=s, seed=s, namespace=f"n/{s}/", status="passed") for s in range(2)
        ],
        failures=list(failures),
    )


def _failure(kind: FailureKind) -> FuzzFailure:
    return FuzzFailure(kind=kind, mode=FuzzMode.CONCURRENT_NO_ORACLE, iteration=2, seed=5, num_ops=10)


class TestFuzzSummary:
    def test_clean_run(self):
        summary = FuzzSummary(scripted_passed=True, records=[_record(1), _record(2)])
        assert summary.passed
        assert summary.exit_code == 0
        assert summary.session_count == 4

    def test_any_failure_fails(self):
        summary = FuzzSummary(
            records=[_record(1), _record(2, _failure(FailureKind.TIMEOUT), _failure(FailureKind.CLIENT_ERROR))]
        )
        assert not summary.passed
        assert summary.exit_code == 1
        assert summary.count(FailureKind.TIMEOUT) == 1
        assert summary.count(FailureKind.DIVERGENCE) == 0
        assert len(summary.failures) == 2

    def test_abort_exit_code(self):
        summary = FuzzSummary(scripted_passed=False, aborted=True, abort_reason="diverged")
        assert summary.exit_code == 2
        assert not summary.passed

    def test_records_for(self):
        summary = FuzzSummary(records=[_record(1)])
        assert summary.records_for(FuzzMode.CONCURRENT_NO_ORACLE) == summary.records
        assert summary.records_for(FuzzMode.ORACLE_COMPARED) == []

    def test_reproduce_hint(self):
        hint = _failure(FailureKind.TIMEOUT).reproduce_hint()
        assert hint == "mode=concurrent_no_oracle iteration=2 session=0 seed=5 num_ops=10"
