"""Tests for operation generation — determinism and shape of generated ops."""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from matrixforge.fuzz.operations import ADD_WIDTH, SCRIPTED_OPERATIONS, OperationGenerator
from matrixforge.models.fuzz import OpKind


class TestScriptedOperations:
    def test_covers_every_kind(self):
        assert {op.kind for op in SCRIPTED_OPERATIONS} == set(OpKind)


class TestOperationGenerator:
    @given(seed=st.integers(min_value=0, max_value=2**64 - 1), num_ops=st.integers(0, 200))
    def test_same_seed_same_sequence(self, seed: int, num_ops: int):
        generator = OperationGenerator()
        assert generator.generate(seed, num_ops) == generator.generate(seed, num_ops)

    def test_length(self):
        assert len(OperationGenerator().generate(1, 1000)) == 1000

    def test_different_seeds_differ(self):
        generator = OperationGenerator()
        assert generator.generate(1, 50) != generator.generate(2, 50)

    def test_keys_within_key_space(self):
        ops = OperationGenerator(key_space=4).generate(7, 500)
        keys = {op.key for op in ops} | {op.end_key for op in ops if op.end_key is not None}
        assert keys <= {b"k0000", b"k0001", b"k0002", b"k0003"}

    def test_shapes(self):
        for op in OperationGenerator().generate(3, 500):
            if op.kind == OpKind.ADD:
                assert op.value is not None and len(op.value) == ADD_WIDTH
            if op.kind in (OpKind.GET_RANGE, OpKind.CLEAR_RANGE):
                assert op.end_key is not None and op.key <= op.end_key
            if op.kind == OpKind.SET:
                assert op.value is not None and len(op.value) <= 16

    def test_weights_restrict_kinds(self):
        ops = OperationGenerator(weights={OpKind.GET: 1}).generate(0, 100)
        assert {op.kind for op in ops} == {OpKind.GET}
