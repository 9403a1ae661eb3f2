"""Operation sequences for the fuzz loop.

``SCRIPTED_OPERATIONS`` is the fixed smoke script: it touches every
operation kind once in a known order.  ``OperationGenerator`` produces
seeded random sequences; the same (seed, num_ops) always yields the same
sequence, which is what makes every recorded failure reproducible.
"""

from __future__ import annotations

import random

from matrixforge.models.fuzz import Operation, OpKind

ADD_WIDTH = 8

SCRIPTED_OPERATIONS: tuple[Operation, ...] = (
    Operation(kind=OpKind.GET, key=b"hello"),
    Operation(kind=OpKind.SET, key=b"hello", value=b"world"),
    Operation(kind=OpKind.GET, key=b"hello"),
    Operation(kind=OpKind.SET, key=b"a", value=b"1"),
    Operation(kind=OpKind.SET, key=b"b", value=b"2"),
    Operation(kind=OpKind.SET, key=b"c", value=b"3"),
    Operation(kind=OpKind.GET_RANGE, key=b"a", end_key=b"c"),
    Operation(kind=OpKind.GET_RANGE, key=b"", end_key=b"\xff", limit=2),
    Operation(kind=OpKind.ADD, key=b"counter", value=(5).to_bytes(ADD_WIDTH, "little")),
    Operation(kind=OpKind.ADD, key=b"counter", value=(7).to_bytes(ADD_WIDTH, "little")),
    Operation(kind=OpKind.GET, key=b"counter"),
    Operation(kind=OpKind.CLEAR, key=b"hello"),
    Operation(kind=OpKind.GET, key=b"hello"),
    Operation(kind=OpKind.CLEAR_RANGE, key=b"a", end_key=b"c"),
    Operation(kind=OpKind.GET_RANGE, key=b"", end_key=b"\xff"),
)

DEFAULT_WEIGHTS: dict[OpKind, int] = {
    OpKind.SET: 30,
    OpKind.GET: 25,
    OpKind.CLEAR: 10,
    OpKind.CLEAR_RANGE: 5,
    OpKind.GET_RANGE: 15,
    OpKind.ADD: 15,
}


class OperationGenerator:
    """Seeded random operation sequences over a small key space.

    A small key space makes operations collide on the same keys, which is
    where client and oracle behaviour can differ.

    Parameters
    ----------
    key_space:
        Number of distinct keys (``k0000`` .. ``k{key_space-1}``).
    value_size:
        Maximum length of generated values.
    weights:
        Relative frequency of each operation kind.
    """

    def __init__(
        self,
        key_space: int = 64,
        value_size: int = 16,
        weights: dict[OpKind, int] | None = None,
    ) -> None:
        if key_space < 1:
            raise ValueError("key_space must be >= 1")
        self.key_space = key_space
        self.value_size = value_size
        self.weights = dict(weights or DEFAULT_WEIGHTS)

    def _key(self, rng: random.Random) -> bytes:
        return b"k%04d" % rng.randrange(self.key_space)

    def generate(self, seed: int, num_ops: int) -> list[Operation]:
        rng = random.Random(seed)
        kinds = list(self.weights)
        weights = [self.weights[k] for k in kinds]
        ops: list[Operation] = []
        for _ in range(num_ops):
            kind = rng.choices(kinds, weights)[0]
            if kind == OpKind.SET:
                value = rng.randbytes(rng.randint(0, self.value_size))
                ops.append(Operation(kind=kind, key=self._key(rng), value=value))
            elif kind == OpKind.ADD:
                delta = rng.randrange(1 << 16)
                ops.append(
                    Operation(kind=kind, key=self._key(rng), value=delta.to_bytes(ADD_WIDTH, "little"))
                )
            elif kind in (OpKind.CLEAR_RANGE, OpKind.GET_RANGE):
                begin, end = sorted((self._key(rng), self._key(rng)))
                limit = rng.randint(0, 10) if kind == OpKind.GET_RANGE else 0
                ops.append(Operation(kind=kind, key=begin, end_key=end, limit=limit))
            else:
                ops.append(Operation(kind=kind, key=self._key(rng)))
        return ops
