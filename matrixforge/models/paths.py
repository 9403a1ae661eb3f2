"""Composed path tree models.

A ``PathTree`` maps absolute POSIX paths to nodes.  Within one tree every
path is unique; across trees the Image Assembler applies last-writer-wins.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from matrixforge.core.hasher import sha256_hex


class FileNode(BaseModel):
    """A regular file with literal content."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["file"] = "file"
    data: bytes
    mode: int = 0o644

    @property
    def digest(self) -> str:
        return sha256_hex(self.data)


class SymlinkNode(BaseModel):
    """A symbolic link.  ``target`` may be relative to the link's directory."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["symlink"] = "symlink"
    target: str


class DirectoryNode(BaseModel):
    """An explicit (possibly empty) directory."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["directory"] = "directory"
    mode: int = 0o755


Node = Annotated[Union[FileNode, SymlinkNode, DirectoryNode], Field(discriminator="kind")]


class VersionStyle(str, Enum):
    """How a version qualifies a path.

    - ``SUFFIX``: ``/opt/fdb/client-lib/libfdb_c.so`` -> ``libfdb_c.so.7.1.12``
    - ``DIRECTORY``: ``/opt/fdb/server/fdbserver`` -> ``server/7.1.12/fdbserver``
    """

    SUFFIX = "suffix"
    DIRECTORY = "directory"


class PlacementPolicy(str, Enum):
    """Placement policy for versioned entries in one ``compose`` call.

    - ``UNVERSIONED``: the versioned file plus a stable unversioned symlink.
      Used for the client library consumed at runtime (one active version).
    - ``VERSIONED_ONLY``: only the version-qualified path.  Used for binaries
      a supervisor selects explicitly by version.
    """

    UNVERSIONED = "unversioned"
    VERSIONED_ONLY = "versioned_only"


class PathEntry(BaseModel):
    """One requested placement, before policy expansion."""

    model_config = ConfigDict(frozen=True)

    path: str
    node: Node
    version: str | None = None
    version_style: VersionStyle = VersionStyle.SUFFIX


class PathTree(BaseModel):
    """A validated mapping of absolute paths to nodes (pre-merge)."""

    model_config = ConfigDict(frozen=True)

    name: str
    nodes: dict[str, Node] = Field(default_factory=dict)

    def __contains__(self, path: object) -> bool:
        return path in self.nodes

    def paths(self) -> list[str]:
        """Return all paths in sorted order."""
        return sorted(self.nodes)

    def get(self, path: str) -> FileNode | SymlinkNode | DirectoryNode | None:
        return self.nodes.get(path)
