"""Template source model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class TemplateSpec(BaseModel):
    """A template file and the placeholders it requires."""

    model_config = ConfigDict(frozen=True)

    source: Path
    required_params: frozenset[str] = Field(default_factory=frozenset)
