"""Post-placement operations run once after the layer merge.

They cover what cannot be expressed as static files: directories with
specific permission bits, ownership of runtime-writable directories, and
which services the init system starts.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class MakeDirectory(BaseModel):
    """``mkdir -p -m MODE PATH``."""

    model_config = ConfigDict(frozen=True)

    op: Literal["mkdir"] = "mkdir"
    path: str
    mode: int = 0o755


class ChangeOwner(BaseModel):
    """``chown [-R] USER:GROUP PATH``; names resolve via the merged /etc files."""

    model_config = ConfigDict(frozen=True)

    op: Literal["chown"] = "chown"
    path: str
    user: str
    group: str
    recursive: bool = False


class ChangeMode(BaseModel):
    """``chmod MODE PATH``."""

    model_config = ConfigDict(frozen=True)

    op: Literal["chmod"] = "chmod"
    path: str
    mode: int


class Symlink(BaseModel):
    """``ln -s TARGET PATH``.  Fails if PATH already exists."""

    model_config = ConfigDict(frozen=True)

    op: Literal["symlink"] = "symlink"
    path: str
    target: str


class Touch(BaseModel):
    """Create an empty file if it does not exist."""

    model_config = ConfigDict(frozen=True)

    op: Literal["touch"] = "touch"
    path: str
    mode: int = 0o644


class EnableService(BaseModel):
    """``systemctl enable UNIT`` — wire the unit into its ``WantedBy`` target."""

    model_config = ConfigDict(frozen=True)

    op: Literal["enable"] = "enable"
    unit: str


PostPlacementOp = Annotated[
    Union[MakeDirectory, ChangeOwner, ChangeMode, Symlink, Touch, EnableService],
    Field(discriminator="op"),
]


class PostPlacementScript(BaseModel):
    """Ordered post-placement operations for one image."""

    model_config = ConfigDict(frozen=True)

    operations: list[PostPlacementOp] = Field(default_factory=list)
