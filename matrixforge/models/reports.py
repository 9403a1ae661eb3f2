"""Structured report records — one JSON line per completed unit of work."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RecordKind(str, Enum):
    IMAGE_BUILD = "image_build"
    SCRIPTED_CHECK = "scripted_check"
    FUZZ_ITERATION = "fuzz_iteration"
    FUZZ_SUMMARY = "fuzz_summary"


class ReportRecord(BaseModel):
    """A single line in the append-only report sink.

    ``previous_hash`` and ``record_hash`` are filled in by the sink when the
    record is appended; together they chain every line to its predecessor.
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: RecordKind
    run_id: str = ""
    version: str = ""
    status: str  # "passed" | "failed" | "succeeded" | "aborted"
    duration_ms: int = 0
    detail: dict[str, Any] = Field(default_factory=dict)
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    previous_hash: str = ""
    record_hash: str = ""
