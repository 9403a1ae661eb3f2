"""In-memory reference key-value model.

Used as the expected-results model for the scripted check, as the default
oracle in oracle-compared mode, and as a stand-in client for self-tests.
Keys are stored with their session namespace prefixed; results report keys
relative to the namespace so client and oracle results compare directly.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence

from matrixforge.models.fuzz import Operation, OperationResult, OpKind


def apply_add(existing: bytes | None, param: bytes) -> bytes:
    """Little-endian add of *param* to *existing*, wrapping at ``len(param)`` bytes.

    A missing or shorter value is zero-extended; a longer one is truncated.
    """
    width = len(param)
    current = (existing or b"")[:width].ljust(width, b"\x00")
    total = int.from_bytes(current, "little") + int.from_bytes(param, "little")
    return (total % (1 << (8 * width))).to_bytes(width, "little") if width else b""


class InMemoryKeyValueStore:
    """Thread-safe ordered key-value store implementing ``KeyValueClient``."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    def clear(self, namespace: bytes) -> None:
        with self._lock:
            for key in [k for k in self._data if k.startswith(namespace)]:
                del self._data[key]

    def snapshot(self, namespace: bytes = b"") -> dict[bytes, bytes]:
        """Return a copy of the namespace's contents with relative keys."""
        with self._lock:
            return {
                k[len(namespace) :]: v for k, v in self._data.items() if k.startswith(namespace)
            }

    def run(self, ops: Sequence[Operation], *, namespace: bytes = b"") -> list[OperationResult]:
        return [self._apply(index, op, namespace) for index, op in enumerate(ops)]

    def _apply(self, index: int, op: Operation, namespace: bytes) -> OperationResult:
        key = namespace + op.key
        with self._lock:
            if op.kind == OpKind.SET:
                self._data[key] = op.value or b""
                return OperationResult(index=index, kind=op.kind)
            if op.kind == OpKind.GET:
                return OperationResult(index=index, kind=op.kind, value=self._data.get(key))
            if op.kind == OpKind.CLEAR:
                self._data.pop(key, None)
                return OperationResult(index=index, kind=op.kind)
            if op.kind == OpKind.ADD:
                self._data[key] = apply_add(self._data.get(key), op.value or b"")
                return OperationResult(index=index, kind=op.kind)

            end = namespace + (op.end_key or b"")
            in_range = sorted(k for k in self._data if key <= k < end)
            if op.kind == OpKind.CLEAR_RANGE:
                for k in in_range:
                    del self._data[k]
                return OperationResult(index=index, kind=op.kind)
            if op.limit > 0:
                in_range = in_range[: op.limit]
            items = [(k[len(namespace) :], self._data[k]) for k in in_range]
            return OperationResult(index=index, kind=op.kind, items=items)
