"""
Tests for the Z3-backed constraint store.
"""

import pytest
import z3

from symir.errors import ErrorKind, EvalError
from symir.ir.program import BinOp
from symir.z3model.constraints import ConstraintStore, UnaryRelation
from symir.z3model.values import AbstractByte, PrimVal, PrimValKind


def _symbolic(store, kind):
    return PrimVal.abstract(store.new_abstract_bytes(kind.num_bytes))


class TestAbstractBytes:

    def test_fresh_bytes_are_numbered(self, store):
        cells = store.new_abstract_bytes(3)
        assert cells == [AbstractByte(0), AbstractByte(1), AbstractByte(2)]
        assert store.num_abstract_bytes == 3
        assert str(store.variables[2]) == "sb2"

    def test_to_expr_is_little_endian(self, store):
        val = PrimVal.abstract(store.new_abstract_bytes(2))
        expr = store.to_expr(val, PrimValKind.U16)
        assert expr.size() == 16
        solver = z3.Solver()
        solver.add(expr == 0x1234, store.variables[0] == 0x34)
        assert solver.check() == z3.sat

    def test_to_expr_width_mismatch(self, store):
        val = PrimVal.abstract(store.new_abstract_bytes(1))
        with pytest.raises(EvalError) as exc:
            store.to_expr(val, PrimValKind.U32)
        assert exc.value.kind == ErrorKind.TYPE_ERROR


class TestDerivedValues:

    def test_constant_expressions_collapse(self, store):
        result = store.from_expr(z3.BitVecVal(3, 8) + z3.BitVecVal(4, 8), PrimValKind.U8)
        assert result == PrimVal.bytes(7)
        assert store.definitions == []

    def test_binary_constraint_binds_fresh_bytes(self, store):
        x = _symbolic(store, PrimValKind.U8)
        result = store.add_binary_constraint(BinOp.ADD, x, PrimVal.bytes(1), PrimValKind.U8)
        assert result.is_abstract()
        assert len(store.definitions) == 1
        store.push_path_constraint(store.to_expr(result, PrimValKind.U8) == 0)
        assert store.get_satisfying_assignment(1) == b"\xff"

    def test_comparison_yields_bool(self, store):
        x = _symbolic(store, PrimValKind.U8)
        result = store.add_binary_constraint(BinOp.LT, x, PrimVal.bytes(10), PrimValKind.U8)
        assert len(result.cells) == 1
        store.push_path_constraint(store.truthy(result))
        assert store.get_satisfying_assignment(1)[0] < 10

    def test_signed_comparison(self, store):
        x = _symbolic(store, PrimValKind.I8)
        result = store.add_binary_constraint(BinOp.LT, x, PrimVal.from_i128(0), PrimValKind.I8)
        store.push_path_constraint(store.truthy(result))
        assert store.get_satisfying_assignment(1)[0] >= 0x80

    def test_overflow_constraint(self, store):
        x = _symbolic(store, PrimValKind.U8)
        _, overflowed = store.add_overflow_constraint(BinOp.ADD, x, PrimVal.bytes(250), PrimValKind.U8)
        store.push_path_constraint(store.truthy(overflowed))
        assert store.get_satisfying_assignment(1)[0] >= 6

    def test_signed_overflow_constraint(self, store):
        x = _symbolic(store, PrimValKind.I8)
        _, overflowed = store.add_overflow_constraint(BinOp.SUB, x, PrimVal.from_i128(1), PrimValKind.I8)
        store.push_path_constraint(store.truthy(overflowed))
        assert store.get_satisfying_assignment(1) == b"\x80"

    def test_select_constraint(self, store):
        cond = _symbolic(store, PrimValKind.BOOL)
        result = store.add_select_constraint(cond, PrimVal.bytes(7), PrimVal.bytes(9), PrimValKind.U8)
        store.push_path_constraint(store.to_expr(result, PrimValKind.U8) == 7)
        assert store.get_satisfying_assignment(1) != b"\x00"

    @pytest.mark.parametrize("relation,value,expected", [
        (UnaryRelation.CTPOP, 0b1011, 3),
        (UnaryRelation.CTLZ, 0b0001_0000, 3),
        (UnaryRelation.CTTZ, 0b0001_0000, 4),
        (UnaryRelation.CTLZ, 0, 8),
        (UnaryRelation.CTTZ, 0, 8),
    ])
    def test_bit_count_relations(self, store, relation, value, expected):
        x = _symbolic(store, PrimValKind.U8)
        result = store.add_unary_intrinsic_constraint(relation, x, PrimValKind.U8)
        store.push_path_constraint(store.variables[0] == value)
        assert store.witness(result, PrimValKind.U8) == expected


class TestSolving:

    def test_feasibility(self, store):
        x = _symbolic(store, PrimValKind.U8)
        assert store.is_feasible(store.condition_eq(x, 5, PrimValKind.U8))
        store.push_path_constraint(store.condition_ne(x, 5, PrimValKind.U8))
        assert not store.is_feasible(store.condition_eq(x, 5, PrimValKind.U8))

    def test_unsat_assignment_is_infeasible(self, store):
        x = _symbolic(store, PrimValKind.U8)
        store.push_path_constraint(store.condition_eq(x, 1, PrimValKind.U8))
        store.push_path_constraint(store.condition_eq(x, 2, PrimValKind.U8))
        with pytest.raises(EvalError) as exc:
            store.get_satisfying_assignment(1)
        assert exc.value.kind == ErrorKind.INFEASIBLE_PATH

    def test_derived_bytes_are_not_input(self, store):
        x = _symbolic(store, PrimValKind.U8)
        total = store.add_binary_constraint(BinOp.ADD, x, PrimVal.bytes(1), PrimValKind.U8)
        assert store.num_abstract_bytes == 1
        assert len(store.variables) == 2
        store.push_path_constraint(store.condition_eq(total, 42, PrimValKind.U8))
        assert store.get_satisfying_assignment(2) == b"\x29\x00"

    def test_input_bytes_after_derived_bytes(self, store):
        x = _symbolic(store, PrimValKind.U8)
        store.add_binary_constraint(BinOp.MUL, x, PrimVal.bytes(3), PrimValKind.U8)
        y = _symbolic(store, PrimValKind.U8)
        store.push_path_constraint(store.condition_eq(x, 7, PrimValKind.U8))
        store.push_path_constraint(store.condition_eq(y, 9, PrimValKind.U8))
        assert store.input_indices == [0, 2]
        assert store.get_satisfying_assignment(2) == b"\x07\x09"

    def test_witness_of_unsat_constraints(self, store):
        x = _symbolic(store, PrimValKind.U8)
        store.push_path_constraint(store.condition_eq(x, 1, PrimValKind.U8))
        store.push_path_constraint(store.condition_eq(x, 2, PrimValKind.U8))
        with pytest.raises(EvalError) as exc:
            store.witness(x, PrimValKind.U8)
        assert exc.value.kind == ErrorKind.INFEASIBLE_PATH

    def test_assignment_pads_missing_bytes(self, store):
        store.new_abstract_bytes(1)
        assert store.get_satisfying_assignment(3)[1:] == b"\x00\x00"

    def test_empty_assignment(self, store):
        assert store.get_satisfying_assignment(0) == b""

    def test_copies_are_independent(self, store):
        x = _symbolic(store, PrimValKind.U8)
        other = store.copy()
        other.push_path_constraint(other.condition_eq(x, 1, PrimValKind.U8))
        assert store.path_constraints == []
        assert len(other.path_constraints) == 1
        other.new_abstract_bytes(2)
        assert store.num_abstract_bytes == 1
