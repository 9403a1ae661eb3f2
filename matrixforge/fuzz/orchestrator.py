"""Fuzz Orchestrator — drive a client through scripted, compared and concurrent runs.

Phase state machine (transitions validated against ``VALID_PHASE_TRANSITIONS``)::

    IDLE -> SCRIPTED_CHECK -> ORACLE_COMPARED -> CONCURRENT_NO_ORACLE -> SUMMARIZED
                  |
                  +-> ABORTED

The scripted check is a smoke test of the harness: if it fails nothing
else is meaningful, so ``ScriptedCheckFailed`` aborts the run.  Randomized
iterations never fail fast; divergences, client errors and timeouts are
recorded as ``FuzzFailure`` data and aggregated into the ``FuzzSummary``.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from collections.abc import Sequence

from matrixforge.core.errors import InvalidPhaseTransition, ScriptedCheckFailed
from matrixforge.core.hasher import canonical_json_bytes, sha256_hex
from matrixforge.core.report_sink import ReportSink
from matrixforge.fuzz.clients import ClientFactory, KeyValueClient
from matrixforge.fuzz.operations import SCRIPTED_OPERATIONS, OperationGenerator
from matrixforge.fuzz.oracle import InMemoryKeyValueStore
from matrixforge.models.config import FuzzConfig
from matrixforge.models.fuzz import (
    VALID_PHASE_TRANSITIONS,
    FailureKind,
    FuzzFailure,
    FuzzInvocation,
    FuzzMode,
    FuzzPhase,
    FuzzRunRecord,
    FuzzSummary,
    OperationResult,
    RunOutcome,
    SessionOutcome,
)
from matrixforge.models.reports import RecordKind

logger = logging.getLogger(__name__)

SCRIPTED_NAMESPACE = b"scripted/"


def iteration_namespace(mode: FuzzMode, iteration: int, session: int = 0) -> bytes:
    """Key prefix owned by one session of one iteration (disjoint across both)."""
    return f"{mode.value}/{iteration:04d}/{session:02d}/".encode("ascii")


def first_divergence(
    expected: Sequence[OperationResult], actual: Sequence[OperationResult]
) -> int | None:
    """Index of the first operation whose results differ, or ``None``."""
    for index, (want, got) in enumerate(zip(expected, actual)):
        if (want.kind, want.value, want.items, want.error) != (
            got.kind,
            got.value,
            got.items,
            got.error,
        ):
            return index
    if len(expected) != len(actual):
        return min(len(expected), len(actual))
    return None


def _describe(results: Sequence[OperationResult], index: int) -> str:
    if index >= len(results):
        return "<missing>"
    result = results[index]
    if result.items is not None:
        return repr(result.items)[:200]
    return repr(result.value)[:200]


class FuzzOrchestrator:
    """Runs fuzz phases for one server version against a client under test.

    Parameters
    ----------
    client_factory:
        Zero-argument callable returning a fresh client session.
    oracle_factory:
        Zero-argument callable returning the oracle for oracle-compared
        mode.  Defaults to the in-memory reference model.
    config:
        Iteration, op-count, concurrency and timeout budgets.
    sink:
        Optional report sink; one record per scripted check, iteration and
        summary.
    version:
        Server version under test (for records only).
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        oracle_factory: ClientFactory = InMemoryKeyValueStore,
        config: FuzzConfig | None = None,
        sink: ReportSink | None = None,
        version: str = "",
        run_id: str | None = None,
        generator: OperationGenerator | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._oracle_factory = oracle_factory
        self.config = config or FuzzConfig()
        self._sink = sink
        self.version = version
        self.run_id = run_id or f"mf-fuzz-{uuid.uuid4().hex[:12]}"
        self._generator = generator or OperationGenerator(key_space=self.config.key_space)
        self.base_seed = (
            self.config.seed if self.config.seed is not None else random.SystemRandom().randrange(1 << 32)
        )

        self._phase = FuzzPhase.IDLE
        self._records: list[FuzzRunRecord] = []
        self._scripted_passed: bool | None = None
        self._abort_reason = ""

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def phase(self) -> FuzzPhase:
        return self._phase

    @property
    def records(self) -> list[FuzzRunRecord]:
        return list(self._records)

    def _transition(self, target: FuzzPhase) -> None:
        allowed = VALID_PHASE_TRANSITIONS[self._phase]
        if target not in allowed:
            raise InvalidPhaseTransition(
                f"Invalid phase transition {self._phase.value} -> {target.value}. "
                f"Allowed: {sorted(p.value for p in allowed)}"
            )
        logger.debug("Fuzz phase %s -> %s", self._phase.value, target.value)
        self._phase = target

    def iteration_seed(self, mode: FuzzMode, iteration: int, session: int = 0) -> int:
        """Seed for one session, derived from the base seed."""
        material = canonical_json_bytes([self.base_seed, mode.value, iteration, session])
        return int(sha256_hex(material)[:16], 16)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def run_scripted_check(self) -> None:
        """Run the fixed script against a fresh client and the reference model.

        Raises ``ScriptedCheckFailed`` on any mismatch or client error; the
        orchestrator is then ``ABORTED``.
        """
        self._transition(FuzzPhase.SCRIPTED_CHECK)
        started = time.monotonic()
        expected = InMemoryKeyValueStore().run(SCRIPTED_OPERATIONS, namespace=SCRIPTED_NAMESPACE)

        try:
            client = self._client_factory()
            client.clear(SCRIPTED_NAMESPACE)
            actual = client.run(SCRIPTED_OPERATIONS, namespace=SCRIPTED_NAMESPACE)
        except Exception as exc:  # the client under test may raise anything
            self._abort(f"Scripted check client error: {type(exc).__name__}: {exc}", started)
            raise ScriptedCheckFailed(self._abort_reason) from exc

        index = first_divergence(expected, actual)
        if index is not None:
            self._abort(
                f"Scripted check diverged at op {index}: expected "
                f"{_describe(expected, index)}, got {_describe(actual, index)}",
                started,
                op_index=index,
            )
            raise ScriptedCheckFailed(self._abort_reason, op_index=index)

        self._scripted_passed = True
        logger.info("Scripted check passed (%d ops)", len(SCRIPTED_OPERATIONS))
        self._report(
            RecordKind.SCRIPTED_CHECK,
            "passed",
            started,
            {"num_ops": len(SCRIPTED_OPERATIONS)},
        )

    def _abort(self, reason: str, started: float, *, op_index: int | None = None) -> None:
        self._scripted_passed = False
        self._abort_reason = reason
        self._transition(FuzzPhase.ABORTED)
        logger.error(reason)
        self._report(
            RecordKind.SCRIPTED_CHECK,
            "failed",
            started,
            {"reason": reason, "op_index": op_index},
        )
        self._report_summary(self._summary())

    def run_oracle_compared(
        self, iterations: int | None = None, *, num_ops: int | None = None
    ) -> list[FuzzRunRecord]:
        """Compare the client with the oracle for *iterations* seeded sequences."""
        self._transition(FuzzPhase.ORACLE_COMPARED)
        iterations = self.config.iterations if iterations is None else iterations
        num_ops = num_ops or self.config.num_ops
        client = self._client_factory()
        oracle = self._oracle_factory()

        records = []
        for iteration in range(1, iterations + 1):
            records.append(self._compared_iteration(client, oracle, iteration, num_ops))
        return records

    def _compared_iteration(
        self, client: KeyValueClient, oracle: KeyValueClient, iteration: int, num_ops: int
    ) -> FuzzRunRecord:
        mode = FuzzMode.ORACLE_COMPARED
        started = time.monotonic()
        namespace = iteration_namespace(mode, iteration)
        seed = self.iteration_seed(mode, iteration)
        ops = self._generator.generate(seed, num_ops)
        failures: list[FuzzFailure] = []

        oracle.clear(namespace)
        expected = oracle.run(ops, namespace=namespace)
        try:
            client.clear(namespace)
            actual = client.run(ops, namespace=namespace)
        except Exception as exc:  # recorded, never propagated
            actual = None
            failures.append(
                FuzzFailure(
                    kind=FailureKind.CLIENT_ERROR,
                    mode=mode,
                    iteration=iteration,
                    seed=seed,
                    num_ops=num_ops,
                    detail=f"{type(exc).__name__}: {exc}",
                )
            )

        if actual is not None:
            index = first_divergence(expected, actual)
            if index is not None:
                failures.append(
                    FuzzFailure(
                        kind=FailureKind.DIVERGENCE,
                        mode=mode,
                        iteration=iteration,
                        seed=seed,
                        num_ops=num_ops,
                        op_index=index,
                        detail=(
                            f"op {index} ({ops[index].kind.value if index < len(ops) else '?'}): "
                            f"expected {_describe(expected, index)}, got {_describe(actual, index)}"
                        ),
                    )
                )

        session = SessionOutcome(
            session=0,
            seed=seed,
            namespace=namespace.decode("ascii"),
            status="failed" if failures else "passed",
            ops_executed=len(actual) if actual is not None else 0,
            error=failures[0].detail if failures else "",
        )
        return self._finish_iteration(mode, iteration, num_ops, 1, seed, [session], failures, started)

    def run_concurrent(
        self,
        iterations: int | None = None,
        *,
        num_ops: int | None = None,
        concurrency: int | None = None,
    ) -> list[FuzzRunRecord]:
        """Run *concurrency* independent sessions per iteration, no oracle."""
        self._transition(FuzzPhase.CONCURRENT_NO_ORACLE)
        iterations = self.config.iterations if iterations is None else iterations
        num_ops = num_ops or self.config.num_ops
        concurrency = concurrency or self.config.concurrency
        return [
            self._concurrent_iteration(iteration, num_ops, concurrency)
            for iteration in range(1, iterations + 1)
        ]

    def _run_session(self, iteration: int, session: int, num_ops: int) -> SessionOutcome:
        mode = FuzzMode.CONCURRENT_NO_ORACLE
        namespace = iteration_namespace(mode, iteration, session)
        seed = self.iteration_seed(mode, iteration, session)
        ops = self._generator.generate(seed, num_ops)
        try:
            client = self._client_factory()
            client.clear(namespace)
            results = client.run(ops, namespace=namespace)
        except Exception as exc:  # recorded per session
            return SessionOutcome(
                session=session,
                seed=seed,
                namespace=namespace.decode("ascii"),
                status="failed",
                error=f"{type(exc).__name__}: {exc}",
            )
        if len(results) != len(ops):
            return SessionOutcome(
                session=session,
                seed=seed,
                namespace=namespace.decode("ascii"),
                status="failed",
                ops_executed=len(results),
                error=f"Client returned {len(results)} results for {len(ops)} operations",
            )
        return SessionOutcome(
            session=session,
            seed=seed,
            namespace=namespace.decode("ascii"),
            status="passed",
            ops_executed=len(results),
        )

    def _concurrent_iteration(self, iteration: int, num_ops: int, concurrency: int) -> FuzzRunRecord:
        mode = FuzzMode.CONCURRENT_NO_ORACLE
        started = time.monotonic()
        timeout = self.config.session_timeout_seconds

        # Daemon threads: a hung session must not keep the process alive at exit.
        slots: list[SessionOutcome | None] = [None] * concurrency
        finished = [threading.Event() for _ in range(concurrency)]

        def worker(session: int) -> None:
            try:
                slots[session] = self._run_session(iteration, session, num_ops)
            finally:
                finished[session].set()

        for session in range(concurrency):
            threading.Thread(
                target=worker,
                args=(session,),
                name=f"matrixforge-fuzz-{iteration:04d}-{session:02d}",
                daemon=True,
            ).start()

        deadline = started + timeout
        for event in finished:
            event.wait(max(0.0, deadline - time.monotonic()))

        sessions: list[SessionOutcome] = []
        failures: list[FuzzFailure] = []
        timed_out = 0
        for session in range(concurrency):
            hung = not finished[session].is_set()
            outcome = None if hung else slots[session]
            if outcome is None:
                timed_out += hung
                outcome = SessionOutcome(
                    session=session,
                    seed=self.iteration_seed(mode, iteration, session),
                    namespace=iteration_namespace(mode, iteration, session).decode("ascii"),
                    status="timeout" if hung else "failed",
                    error=f"Session did not finish within {timeout}s"
                    if hung
                    else "Session thread exited without a result",
                )
            sessions.append(outcome)
            if outcome.status != "passed":
                failures.append(
                    FuzzFailure(
                        kind=FailureKind.TIMEOUT
                        if outcome.status == "timeout"
                        else FailureKind.CLIENT_ERROR,
                        mode=mode,
                        iteration=iteration,
                        session=session,
                        seed=outcome.seed,
                        num_ops=num_ops,
                        detail=outcome.error,
                    )
                )

        if timed_out:
            logger.warning(
                "Iteration %d abandoned %d of %d hung session(s)",
                iteration,
                timed_out,
                concurrency,
            )
        return self._finish_iteration(
            mode, iteration, num_ops, concurrency, self.iteration_seed(mode, iteration), sessions, failures, started
        )

    def _finish_iteration(
        self,
        mode: FuzzMode,
        iteration: int,
        num_ops: int,
        concurrency: int,
        seed: int,
        sessions: list[SessionOutcome],
        failures: list[FuzzFailure],
        started: float,
    ) -> FuzzRunRecord:
        record = FuzzRunRecord(
            version=self.version,
            mode=mode,
            iteration=iteration,
            num_ops=num_ops,
            concurrency=concurrency,
            seed=seed,
            outcome=RunOutcome.FAILED if failures else RunOutcome.PASSED,
            sessions=sessions,
            failures=failures,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._records.append(record)
        for failure in failures:
            logger.warning("Fuzz failure (%s): %s [%s]", failure.kind.value, failure.detail, failure.reproduce_hint())
        if self._sink is not None:
            self._sink.record(
                RecordKind.FUZZ_ITERATION,
                record.outcome.value,
                run_id=self.run_id,
                version=self.version,
                duration_ms=record.duration_ms,
                detail=record.model_dump(mode="json", exclude={"version", "duration_ms"}),
            )
        return record

    # ------------------------------------------------------------------
    # Summary and entry points
    # ------------------------------------------------------------------

    def _summary(self) -> FuzzSummary:
        return FuzzSummary(
            version=self.version,
            scripted_passed=self._scripted_passed,
            aborted=self._phase == FuzzPhase.ABORTED,
            abort_reason=self._abort_reason,
            base_seed=self.base_seed,
            records=list(self._records),
        )

    def summarize(self) -> FuzzSummary:
        """Aggregate every recorded iteration and move to ``SUMMARIZED``."""
        self._transition(FuzzPhase.SUMMARIZED)
        summary = self._summary()
        logger.info(
            "Fuzz summary for %s: %d iteration(s), %d failure(s)",
            self.version or "client",
            len(summary.records),
            len(summary.failures),
        )
        self._report_summary(summary)
        return summary

    def summary(self) -> FuzzSummary:
        """Current aggregate without changing phase (e.g. after an abort)."""
        return self._summary()

    def run(self) -> FuzzSummary:
        """Full campaign: scripted check, oracle-compared, concurrent, summary.

        Raises ``ScriptedCheckFailed`` (after recording the abort) when the
        scripted check fails; no randomized iteration runs in that case.
        """
        self.run_scripted_check()
        self.run_oracle_compared()
        self.run_concurrent()
        return self.summarize()

    def run_invocation(self, invocation: FuzzInvocation) -> FuzzSummary:
        """Run one CLI-level invocation ``{mode, compare, num_ops, concurrency, iterations}``."""
        if invocation.mode == "scripted":
            self.run_scripted_check()
        elif invocation.compare:
            self.run_oracle_compared(invocation.iterations, num_ops=invocation.num_ops)
        else:
            self.run_concurrent(
                invocation.iterations,
                num_ops=invocation.num_ops,
                concurrency=invocation.concurrency,
            )
        return self.summarize()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _report(self, kind: RecordKind, status: str, started: float, detail: dict[str, object]) -> None:
        if self._sink is None:
            return
        self._sink.record(
            kind,
            status,
            run_id=self.run_id,
            version=self.version,
            duration_ms=int((time.monotonic() - started) * 1000),
            detail=detail,
        )

    def _report_summary(self, summary: FuzzSummary) -> None:
        if self._sink is None:
            return
        status = "aborted" if summary.aborted else ("passed" if summary.passed else "failed")
        self._sink.record(
            RecordKind.FUZZ_SUMMARY,
            status,
            run_id=self.run_id,
            version=self.version,
            detail={
                "base_seed": self.base_seed,
                "iterations": len(summary.records),
                "sessions": summary.session_count,
                "divergences": summary.count(FailureKind.DIVERGENCE),
                "client_errors": summary.count(FailureKind.CLIENT_ERROR),
                "timeouts": summary.count(FailureKind.TIMEOUT),
                "exit_code": summary.exit_code,
                "abort_reason": summary.abort_reason,
            },
        )
