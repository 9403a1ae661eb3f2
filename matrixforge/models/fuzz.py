"""Fuzz orchestration models — operations, run records and summaries.

A ``FuzzRunRecord`` is created per iteration, frozen once the iteration
completes, and aggregated into a ``FuzzSummary`` when the run ends.  The
summary replaces pass/fail tallies that would otherwise live only in exit
codes and printed text.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


class FuzzPhase(str, Enum):
    """Orchestrator state machine for one version."""

    IDLE = "idle"
    SCRIPTED_CHECK = "scripted_check"
    ORACLE_COMPARED = "oracle_compared"
    CONCURRENT_NO_ORACLE = "concurrent_no_oracle"
    SUMMARIZED = "summarized"
    ABORTED = "aborted"


# Valid phase transitions, enforced by FuzzOrchestrator.
# A single invocation may enter a randomized phase straight from IDLE.
VALID_PHASE_TRANSITIONS: dict[FuzzPhase, set[FuzzPhase]] = {
    FuzzPhase.IDLE: {
        FuzzPhase.SCRIPTED_CHECK,
        FuzzPhase.ORACLE_COMPARED,
        FuzzPhase.CONCURRENT_NO_ORACLE,
    },
    FuzzPhase.SCRIPTED_CHECK: {
        FuzzPhase.ORACLE_COMPARED,
        FuzzPhase.CONCURRENT_NO_ORACLE,
        FuzzPhase.SUMMARIZED,
        FuzzPhase.ABORTED,
    },
    FuzzPhase.ORACLE_COMPARED: {FuzzPhase.CONCURRENT_NO_ORACLE, FuzzPhase.SUMMARIZED},
    FuzzPhase.CONCURRENT_NO_ORACLE: {FuzzPhase.SUMMARIZED},
    FuzzPhase.SUMMARIZED: set(),  # terminal
    FuzzPhase.ABORTED: set(),  # terminal
}


class FuzzMode(str, Enum):
    """Mode a record or failure was produced in."""

    SCRIPTED = "scripted"
    ORACLE_COMPARED = "oracle_compared"
    CONCURRENT_NO_ORACLE = "concurrent_no_oracle"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class OpKind(str, Enum):
    SET = "set"
    GET = "get"
    CLEAR = "clear"
    CLEAR_RANGE = "clear_range"
    GET_RANGE = "get_range"
    ADD = "add"  # atomic little-endian integer add


class Operation(BaseModel):
    """One key-value operation.  Keys are relative to the session namespace."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    kind: OpKind
    key: bytes
    value: bytes | None = None
    end_key: bytes | None = None
    limit: int = 0


class OperationResult(BaseModel):
    """Observable result of one operation, compared across client and oracle."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    index: int
    kind: OpKind
    value: bytes | None = None
    items: list[tuple[bytes, bytes]] | None = None
    error: str = ""


# ---------------------------------------------------------------------------
# Failures and records
# ---------------------------------------------------------------------------


class FailureKind(str, Enum):
    DIVERGENCE = "divergence"
    CLIENT_ERROR = "client_error"
    TIMEOUT = "timeout"


class FuzzFailure(BaseModel):
    """A recorded (non-fatal) failure with enough context to reproduce it."""

    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    mode: FuzzMode
    iteration: int
    session: int = 0
    seed: int
    num_ops: int
    op_index: int | None = None
    detail: str = ""

    def reproduce_hint(self) -> str:
        return (
            f"mode={self.mode.value} iteration={self.iteration} "
            f"session={self.session} seed={self.seed} num_ops={self.num_ops}"
        )


class SessionOutcome(BaseModel):
    """Outcome of one simulated client session within an iteration."""

    model_config = ConfigDict(frozen=True)

    session: int
    seed: int
    namespace: str
    status: Literal["passed", "failed", "timeout"]
    ops_executed: int = 0
    error: str = ""


class RunOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class FuzzRunRecord(BaseModel):
    """One completed iteration: (mode, iteration, op count, concurrency, outcome)."""

    model_config = ConfigDict(frozen=True)

    version: str = ""
    mode: FuzzMode
    iteration: int
    num_ops: int
    concurrency: int
    seed: int
    outcome: RunOutcome
    sessions: list[SessionOutcome] = Field(default_factory=list)
    failures: list[FuzzFailure] = Field(default_factory=list)
    duration_ms: int = 0


class FuzzSummary(BaseModel):
    """Aggregate of a fuzz run.  Exit status is failure iff anything was recorded."""

    model_config = ConfigDict(frozen=True)

    version: str = ""
    scripted_passed: bool | None = None  # None when the scripted check did not run
    aborted: bool = False
    abort_reason: str = ""
    base_seed: int | None = None
    records: list[FuzzRunRecord] = Field(default_factory=list)

    @property
    def failures(self) -> list[FuzzFailure]:
        return [f for record in self.records for f in record.failures]

    @property
    def passed(self) -> bool:
        return not self.aborted and not self.failures

    @property
    def exit_code(self) -> int:
        """0 iff zero recorded failures; 2 when the harness itself is broken."""
        if self.aborted:
            return 2
        return 0 if not self.failures else 1

    @property
    def session_count(self) -> int:
        return sum(len(record.sessions) for record in self.records)

    def count(self, kind: FailureKind) -> int:
        return sum(1 for f in self.failures if f.kind == kind)

    def records_for(self, mode: FuzzMode) -> list[FuzzRunRecord]:
        return [r for r in self.records if r.mode == mode]


class FuzzInvocation(BaseModel):
    """CLI-level contract: ``{mode, compare, num_ops, concurrency, iterations}``."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["scripted", "api"] = "api"
    compare: bool = False
    num_ops: int = Field(default=1000, ge=1)
    concurrency: int = Field(default=1, ge=1)
    iterations: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def _check_compare(self) -> FuzzInvocation:
        if self.compare and self.concurrency > 1:
            raise ValueError("oracle comparison runs a single client; use concurrency=1")
        return self
