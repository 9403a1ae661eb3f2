"""Image and test-shell models — the terminal artifacts of a version build."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ManifestEntry(BaseModel):
    """Final state of one path in an assembled image."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["file", "symlink", "directory"]
    layer: str  # the layer (or "post-placement") that last wrote this path
    mode: int = 0o644
    uid: int = 0
    gid: int = 0
    digest: str = ""  # sha256 hex for files
    target: str = ""  # symlink target
    size_bytes: int = 0


class LayerOverwrite(BaseModel):
    """Audit record of a last-writer-wins replacement during the merge."""

    model_config = ConfigDict(frozen=True)

    path: str
    previous_layer: str
    layer: str
    protected: bool = False


class ServiceAccount(BaseModel):
    """The account the database service runs as.

    The assembled configuration files are owned by this account, so the
    ids in the merged ``/etc/passwd`` and ``/etc/group`` must match.
    """

    model_config = ConfigDict(frozen=True)

    user: str = "fdb"
    group: str = "fdb"
    uid: int = 4059
    gid: int = 4059


class Image(BaseModel):
    """A bootable filesystem assembled from ordered layers.

    ``digest`` is the SHA-256 of the canonical manifest, so two builds of
    the same descriptor produce the same digest.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    digest: str
    init_command: list[str]
    environment: dict[str, str] = Field(default_factory=dict)
    enabled_services: list[str] = Field(default_factory=list)
    layers: list[str] = Field(default_factory=list)
    manifest: dict[str, ManifestEntry] = Field(default_factory=dict)
    overwrites: list[LayerOverwrite] = Field(default_factory=list)
    listen_ports: list[int] = Field(default_factory=list)
    cluster_file_path: str = ""
    published_path: Path | None = None

    @property
    def tag(self) -> str:
        return f"{self.name}:{self.digest[:12]}"

    def owner_of(self, path: str) -> str:
        """Return the layer that last wrote *path*.

        Raises ``KeyError`` if the path is not in the image.
        """
        return self.manifest[path].layer

    def overwrites_of(self, path: str) -> list[LayerOverwrite]:
        return [o for o in self.overwrites if o.path == path]


class TestShellEnvironment(BaseModel):
    """Environment of the per-version shell the client test suite runs in."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(frozen=True)

    version: str
    image_tag: str
    variables: dict[str, str] = Field(default_factory=dict)
    oracle_requirement: str = ""
    setup_commands: list[str] = Field(default_factory=list)

    def export_lines(self) -> list[str]:
        """Render ``export KEY=value`` lines in sorted order."""
        return [f"export {key}={value}" for key, value in sorted(self.variables.items())]
