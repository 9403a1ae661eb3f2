"""Per-version build results returned by the Version Matrix Driver."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict

from matrixforge.models.artifacts import ArtifactSpec
from matrixforge.models.image import Image, TestShellEnvironment
from matrixforge.models.placement import PostPlacementScript


class BuildStage(str, Enum):
    """Stages of one version build, in strict execution order."""

    FETCH = "fetch"
    PATCH = "patch"
    RENDER = "render"
    COMPOSE = "compose"
    ASSEMBLE = "assemble"


BUILD_STAGE_ORDER: tuple[BuildStage, ...] = (
    BuildStage.FETCH,
    BuildStage.PATCH,
    BuildStage.RENDER,
    BuildStage.COMPOSE,
    BuildStage.ASSEMBLE,
)


class BuildStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class VersionBuildResult(BaseModel):
    """Outcome of building one version.  Failures are data, not exceptions."""

    model_config = ConfigDict(frozen=True)

    version: str
    status: BuildStatus
    image: Image | None = None
    shell_environment: TestShellEnvironment | None = None
    failed_stage: BuildStage | None = None
    error_type: str = ""
    error_message: str = ""
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCEEDED


class BuildPlan(BaseModel):
    """What a version build will do, computed without any I/O."""

    model_config = ConfigDict(frozen=True)

    version: str
    image_name: str
    artifacts: list[ArtifactSpec]
    templates: dict[str, str]  # image path -> template source
    layers: list[str]
    post_placement: PostPlacementScript
    init_command: list[str]
