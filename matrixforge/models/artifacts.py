"""Content-addressed artifact models (immutable)."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, computed_field

from matrixforge.core.hasher import normalize_sha256


class ArtifactKind(str, Enum):
    """What an upstream artifact is, which decides its file mode."""

    LIBRARY = "library"
    EXECUTABLE = "executable"


ARTIFACT_MODES: dict[ArtifactKind, int] = {
    ArtifactKind.LIBRARY: 0o555,
    ArtifactKind.EXECUTABLE: 0o755,
}


class ArtifactSpec(BaseModel):
    """An immutable upstream binary identified by (name, version, hash).

    ``expected_hash`` may use any notation ``normalize_sha256`` accepts;
    ``sha256`` is the normalized hex digest used for keys and comparisons.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    url: str
    expected_hash: str
    filename: str
    kind: ArtifactKind = ArtifactKind.EXECUTABLE
    patch: bool = True

    @computed_field  # type: ignore[prop-decorator]
    @property
    def sha256(self) -> str:
        return normalize_sha256(self.expected_hash)

    @property
    def cache_key(self) -> tuple[str, str, str]:
        """Cache identity.  Never keyed by name alone."""
        return (self.name, self.version, self.sha256)

    @property
    def mode(self) -> int:
        return ARTIFACT_MODES[self.kind]


class FetchedArtifact(BaseModel):
    """Metadata for a verified artifact.  The bytes travel alongside it."""

    model_config = ConfigDict(frozen=True)

    spec: ArtifactSpec
    content_address: str  # "sha256:<hex>" of the fetched (unpatched) bytes
    size_bytes: int
    from_cache: bool = False


class ArtifactRef(BaseModel):
    """A reference to an artifact as placed in an image."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    content_address: str
    size_bytes: int = 0
