"""Matrixforge data models — all Pydantic v2, all frozen (immutable)."""

from matrixforge.models.artifacts import (
    ARTIFACT_MODES,
    ArtifactKind,
    ArtifactRef,
    ArtifactSpec,
    FetchedArtifact,
)
from matrixforge.models.config import BuildConfig, FuzzConfig
from matrixforge.models.fuzz import (
    VALID_PHASE_TRANSITIONS,
    FailureKind,
    FuzzFailure,
    FuzzInvocation,
    FuzzMode,
    FuzzPhase,
    FuzzRunRecord,
    FuzzSummary,
    Operation,
    OperationResult,
    OpKind,
    RunOutcome,
    SessionOutcome,
)
from matrixforge.models.image import (
    Image,
    LayerOverwrite,
    ManifestEntry,
    ServiceAccount,
    TestShellEnvironment,
)
from matrixforge.models.paths import (
    DirectoryNode,
    FileNode,
    Node,
    PathEntry,
    PathTree,
    PlacementPolicy,
    SymlinkNode,
    VersionStyle,
)
from matrixforge.models.placement import (
    ChangeMode,
    ChangeOwner,
    EnableService,
    MakeDirectory,
    PostPlacementOp,
    PostPlacementScript,
    Symlink,
    Touch,
)
from matrixforge.models.reports import RecordKind, ReportRecord
from matrixforge.models.results import (
    BUILD_STAGE_ORDER,
    BuildPlan,
    BuildStage,
    BuildStatus,
    VersionBuildResult,
)
from matrixforge.models.templates import TemplateSpec
from matrixforge.models.versioning import VersionDescriptor

__all__ = [
    # artifacts
    "ARTIFACT_MODES",
    "ArtifactKind",
    "ArtifactRef",
    "ArtifactSpec",
    "FetchedArtifact",
    # config
    "BuildConfig",
    "FuzzConfig",
    # fuzz
    "VALID_PHASE_TRANSITIONS",
    "FailureKind",
    "FuzzFailure",
    "FuzzInvocation",
    "FuzzMode",
    "FuzzPhase",
    "FuzzRunRecord",
    "FuzzSummary",
    "Operation",
    "OperationResult",
    "OpKind",
    "RunOutcome",
    "SessionOutcome",
    # image
    "Image",
    "LayerOverwrite",
    "ManifestEntry",
    "ServiceAccount",
    "TestShellEnvironment",
    # paths
    "DirectoryNode",
    "FileNode",
    "Node",
    "PathEntry",
    "PathTree",
    "PlacementPolicy",
    "SymlinkNode",
    "VersionStyle",
    # placement
    "ChangeMode",
    "ChangeOwner",
    "EnableService",
    "MakeDirectory",
    "PostPlacementOp",
    "PostPlacementScript",
    "Symlink",
    "Touch",
    # reports
    "RecordKind",
    "ReportRecord",
    # results
    "BUILD_STAGE_ORDER",
    "BuildPlan",
    "BuildStage",
    "BuildStatus",
    "VersionBuildResult",
    # templates
    "TemplateSpec",
    # versioning
    "VersionDescriptor",
]
