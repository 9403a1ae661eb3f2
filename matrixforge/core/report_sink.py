"""Append-only, hash-chained report sink backed by a JSON Lines file.

One line per completed unit of work: image build, scripted check, fuzz
iteration, fuzz summary.  Each record carries the hash of the record before
it, so any edit, deletion or reordering of earlier lines is detected by
``verify_chain``.

Design:
- Append-only: only ``append()`` writes; there is no update or delete.
- Hash-chained: ``previous_hash`` links to the prior line's ``record_hash``.
- Appends from parallel builds and fuzz sessions are serialized by a lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from matrixforge.core.errors import ReportIntegrityError
from matrixforge.core.hasher import canonical_json_bytes, compute_record_hash, sha256_hex
from matrixforge.models.reports import RecordKind, ReportRecord

logger = logging.getLogger(__name__)


class ReportSink:
    """Append-only JSON Lines report with a tamper-evident hash chain.

    Parameters
    ----------
    path:
        Path to the ``.jsonl`` file.  Created (with parents) on first append.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._last_hash: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, record: ReportRecord) -> ReportRecord:
        """Seal *record* onto the end of the chain and persist it.

        Returns the record with ``previous_hash`` and ``record_hash`` set.
        """
        with self._lock:
            previous_hash = self._latest_hash()
            record_dict = record.model_dump(mode="json")
            record_dict["previous_hash"] = previous_hash
            record_dict["record_hash"] = ""
            record_hash = compute_record_hash(record_dict)

            sealed = record.model_copy(
                update={"previous_hash": previous_hash, "record_hash": record_hash}
            )
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(sealed.model_dump_json() + "\n")
            self._last_hash = record_hash

        logger.debug("Report %s %s %s", sealed.kind.value, sealed.version, sealed.status)
        return sealed

    def record(
        self,
        kind: RecordKind,
        status: str,
        *,
        run_id: str = "",
        version: str = "",
        duration_ms: int = 0,
        detail: dict[str, Any] | None = None,
    ) -> ReportRecord:
        """Convenience wrapper: build a ``ReportRecord`` and append it."""
        return self.append(
            ReportRecord(
                kind=kind,
                status=status,
                run_id=run_id,
                version=version,
                duration_ms=duration_ms,
                detail=detail or {},
            )
        )

    def _latest_hash(self) -> str:
        if self._last_hash is None:
            records = self.read_records()
            self._last_hash = records[-1].record_hash if records else ""
        return self._last_hash

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def read_records(self) -> list[ReportRecord]:
        """Return every record in file order.

        Raises ``ReportIntegrityError`` for a line that is not a valid record.
        """
        if not self._path.exists():
            return []
        records = []
        with self._path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(ReportRecord.model_validate_json(line))
                except ValidationError as exc:
                    raise ReportIntegrityError(
                        f"{self._path}:{lineno} is not a valid report record: {exc}"
                    ) from exc
        return records

    def records_for(self, run_id: str) -> list[ReportRecord]:
        return [r for r in self.read_records() if r.run_id == run_id]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self) -> bool:
        """Walk every record, recompute its hash and check the links.

        Returns True if the chain is valid, raises ``ReportIntegrityError``
        otherwise.
        """
        prev_hash = ""
        for record in self.read_records():
            if record.previous_hash != prev_hash:
                raise ReportIntegrityError(
                    f"Chain broken at record {record.record_id}: "
                    f"expected previous_hash={prev_hash!r}, got {record.previous_hash!r}"
                )
            expected_hash = compute_record_hash(record.model_dump(mode="json"))
            if record.record_hash != expected_hash:
                raise ReportIntegrityError(
                    f"Tampered record {record.record_id}: "
                    f"expected hash={expected_hash!r}, got {record.record_hash!r}"
                )
            prev_hash = record.record_hash
        return True

    def export_anchor(self) -> dict[str, Any]:
        """Export the current chain head for storage outside the sink.

        Comparing a previously exported anchor with ``read_records()``
        detects truncation of the file back to an earlier, valid prefix.
        """
        records = self.read_records()
        payload: dict[str, Any] = {
            "record_count": len(records),
            "root_hash": records[-1].record_hash if records else "",
            "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        }
        payload["anchor_hash"] = sha256_hex(canonical_json_bytes(payload))
        return payload

    def verify_against_anchor(self, anchor: dict[str, Any]) -> bool:
        """Check that the chain still contains the anchored head."""
        self.verify_chain()
        records = self.read_records()
        count = int(anchor.get("record_count", 0))
        if len(records) < count:
            raise ReportIntegrityError(
                f"Sink has {len(records)} records, anchor recorded {count}"
            )
        if count and records[count - 1].record_hash != anchor.get("root_hash"):
            raise ReportIntegrityError(
                f"Record {count} hash differs from anchored root_hash {anchor.get('root_hash')!r}"
            )
        return True
