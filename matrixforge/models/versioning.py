"""Version descriptor model — one immutable value per supported server version.

A descriptor carries everything version-specific (artifact hashes, template
parameters) and is passed explicitly through every build stage, so a build is
a pure function of its descriptor and the shared (version, hash)-keyed cache.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from matrixforge.core.hasher import normalize_sha256

_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")


class VersionDescriptor(BaseModel):
    """Identifies one supported server version and its pinned inputs.

    Accepts both snake_case and the camelCase input format::

        {"version": "7.1.12", "clientArtifactHash": "sha256-...",
         "serverArtifactHash": "...", "monitorArtifactHash": "...",
         "cliArtifactHash": "...", "templateParams": {}}
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: str
    client_artifact_hash: str = Field(alias="clientArtifactHash")
    server_artifact_hash: str = Field(alias="serverArtifactHash")
    monitor_artifact_hash: str = Field(alias="monitorArtifactHash")
    cli_artifact_hash: str = Field(alias="cliArtifactHash")
    template_params: dict[str, str] = Field(default_factory=dict, alias="templateParams")

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not _VERSION_RE.match(value):
            raise ValueError(f"version must look like X.Y.Z, got {value!r}")
        return value

    @field_validator(
        "client_artifact_hash",
        "server_artifact_hash",
        "monitor_artifact_hash",
        "cli_artifact_hash",
    )
    @classmethod
    def _check_hash(cls, value: str) -> str:
        normalize_sha256(value)
        return value

    @property
    def slug(self) -> str:
        """Image-name friendly version, e.g. ``7_1_12``."""
        return self.version.replace(".", "_")

    @property
    def api_version(self) -> int:
        """Client API version selector, e.g. ``710`` for 7.1.x."""
        major, minor, _ = self.version.split(".")
        return int(major) * 100 + int(minor) * 10

    def params(self) -> dict[str, str]:
        """Template parameters with ``version`` always bound to this version."""
        merged = dict(self.template_params)
        merged["version"] = self.version
        return merged
