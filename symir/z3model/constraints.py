"""
Z3-backed constraint store.

Every symbolic byte is an 8-bit Z3 bitvector `sb<index>`. Operations on
abstract values are not evaluated; instead the store records the relation
between the operands and a block of fresh bytes standing for the result:

    Concat(result bytes, high byte first) == <operation on operands>

Bytes are either input bytes (created by `new_abstract_bytes`, e.g. the
root buffer or a `mksym` target) or derived bytes bound to an operation
result. Only input bytes appear in a satisfying assignment.

Two kinds of constraints are kept:
- definitions: relations binding derived bytes to the expressions they stand for
- path constraints: branch conditions, append-only and never retracted

A satisfying assignment for the root input is a model of both.
"""

import logging
from enum import Enum
from typing import Optional, Sequence

import z3

from ..errors import EvalError
from ..ir.program import BinOp
from .values import AbstractByte, PrimVal, PrimValKind, truncate

logger = logging.getLogger(__name__)


class UnaryRelation(Enum):
    """Named unary relations over bitvectors."""
    CTPOP = "ctpop"
    CTLZ = "ctlz"
    CTTZ = "cttz"


class ConstraintStore:
    """
    Symbolic byte variables plus the constraints relating them.

    The store is owned by exactly one execution state; forks take a copy().
    Z3 expressions are immutable, so copies share them and only the lists
    are duplicated.
    """

    def __init__(self, solver_timeout_ms: Optional[int] = 5000):
        self.solver_timeout_ms = solver_timeout_ms
        self.variables: list[z3.BitVecRef] = []
        self.input_indices: list[int] = []
        self.definitions: list[z3.BoolRef] = []
        self.path_constraints: list[z3.BoolRef] = []

    def copy(self) -> 'ConstraintStore':
        other = ConstraintStore(self.solver_timeout_ms)
        other.variables = list(self.variables)
        other.input_indices = list(self.input_indices)
        other.definitions = list(self.definitions)
        other.path_constraints = list(self.path_constraints)
        return other

    @property
    def num_abstract_bytes(self) -> int:
        """Number of input bytes; derived bytes are not counted."""
        return len(self.input_indices)

    def _fresh_bytes(self, n: int) -> list[AbstractByte]:
        cells = []
        for _ in range(n):
            index = len(self.variables)
            self.variables.append(z3.BitVec(f"sb{index}", 8))
            cells.append(AbstractByte(index))
        return cells

    def new_abstract_bytes(self, n: int) -> list[AbstractByte]:
        """Create n fresh, unconstrained symbolic input bytes."""
        cells = self._fresh_bytes(n)
        self.input_indices.extend(c.index for c in cells)
        return cells

    # Conversions between PrimVal and Z3

    def cell_expr(self, cell) -> z3.BitVecRef:
        if isinstance(cell, AbstractByte):
            return self.variables[cell.index]
        return z3.BitVecVal(cell, 8)

    def to_expr(self, val: PrimVal, kind: PrimValKind) -> z3.BitVecRef:
        """Bitvector of `kind`'s width for a concrete or abstract value."""
        if val.is_bytes():
            return z3.BitVecVal(truncate(val.payload, kind.bits), kind.bits)
        if val.is_abstract():
            cells = val.cells
            if len(cells) != kind.num_bytes:
                raise EvalError.type_error(
                    f"abstract value has {len(cells)} bytes, {kind.label} needs {kind.num_bytes}"
                )
            if len(cells) == 1:
                return self.cell_expr(cells[0])
            return z3.Concat(*[self.cell_expr(c) for c in reversed(cells)])
        if val.is_ptr():
            raise EvalError.read_pointer_as_bytes()
        raise EvalError.read_undef_bytes()

    def _operand_expr(self, val: PrimVal, bits: int) -> z3.BitVecRef:
        """Bitvector of an operand whose width may differ from the result (shift amounts)."""
        if val.is_bytes():
            return z3.BitVecVal(truncate(val.payload, bits), bits)
        if not val.is_abstract():
            return self.to_expr(val, PrimValKind.U8)
        expr = self.to_expr(val, PrimValKind.from_int_size(len(val.cells), False))
        width = expr.size()
        if width < bits:
            return z3.ZeroExt(bits - width, expr)
        if width > bits:
            return z3.Extract(bits - 1, 0, expr)
        return expr

    def from_expr(self, expr: z3.ExprRef, kind: PrimValKind) -> PrimVal:
        """
        Bind `expr` to a derived value of `kind`.

        Boolean expressions become 0/1 bytes. If the expression simplifies
        to a constant, a concrete value is returned and nothing is recorded.
        """
        if z3.is_bool(expr):
            expr = z3.If(expr, z3.BitVecVal(1, kind.bits), z3.BitVecVal(0, kind.bits))
        expr = z3.simplify(expr)
        if z3.is_bv_value(expr):
            return PrimVal.from_bits(expr.as_long(), kind)
        cells = self._fresh_bytes(kind.num_bytes)
        result = PrimVal.abstract(cells)
        self.definitions.append(self.to_expr(result, kind) == expr)
        return result

    # Derived values

    def add_binary_constraint(self, op: BinOp, lhs: PrimVal, rhs: PrimVal,
                              kind: PrimValKind, rhs_kind: Optional[PrimValKind] = None) -> PrimVal:
        """
        Derived value for `lhs op rhs` on operands of `kind`.

        Comparisons yield a bool. For shifts `rhs_kind` may differ from `kind`;
        the amount is masked to the operand width.
        """
        bits = kind.bits
        a = self.to_expr(lhs, kind)
        if op.is_shift():
            if rhs.is_bytes():
                b = z3.BitVecVal(truncate(rhs.payload, 128) & (bits - 1), bits)
            else:
                b = self._operand_expr(rhs, bits) & z3.BitVecVal(bits - 1, bits)
        else:
            b = self.to_expr(rhs, rhs_kind or kind)
        signed = kind.is_signed_int()

        if op == BinOp.ADD:
            expr = a + b
        elif op == BinOp.SUB:
            expr = a - b
        elif op == BinOp.MUL:
            expr = a * b
        elif op == BinOp.DIV:
            expr = a / b if signed else z3.UDiv(a, b)
        elif op == BinOp.REM:
            expr = z3.SRem(a, b) if signed else z3.URem(a, b)
        elif op == BinOp.BIT_XOR:
            expr = a ^ b
        elif op == BinOp.BIT_AND:
            expr = a & b
        elif op == BinOp.BIT_OR:
            expr = a | b
        elif op == BinOp.SHL:
            expr = a << b
        elif op == BinOp.SHR:
            expr = a >> b if signed else z3.LShR(a, b)
        elif op == BinOp.EQ:
            return self.from_expr(a == b, PrimValKind.BOOL)
        elif op == BinOp.NE:
            return self.from_expr(a != b, PrimValKind.BOOL)
        elif op == BinOp.LT:
            return self.from_expr(a < b if signed else z3.ULT(a, b), PrimValKind.BOOL)
        elif op == BinOp.LE:
            return self.from_expr(a <= b if signed else z3.ULE(a, b), PrimValKind.BOOL)
        elif op == BinOp.GT:
            return self.from_expr(a > b if signed else z3.UGT(a, b), PrimValKind.BOOL)
        elif op == BinOp.GE:
            return self.from_expr(a >= b if signed else z3.UGE(a, b), PrimValKind.BOOL)
        else:
            raise EvalError.unimplemented(f"symbolic binary operation {op.value}")

        logger.debug(f"[CONSTRAINT] {op.value} on {kind.label}")
        return self.from_expr(expr, kind)

    def add_overflow_constraint(self, op: BinOp, lhs: PrimVal, rhs: PrimVal,
                                kind: PrimValKind) -> tuple[PrimVal, PrimVal]:
        """
        Wrapped result and overflow flag of add/sub/mul.

        The flag compares the wrapped result against the exact result computed
        at double width (sign- or zero-extended per kind).
        """
        bits = kind.bits
        a = self.to_expr(lhs, kind)
        b = self.to_expr(rhs, kind)
        extend = z3.SignExt if kind.is_signed_int() else z3.ZeroExt
        wide_a = extend(bits, a)
        wide_b = extend(bits, b)

        if op == BinOp.ADD:
            wrapped, exact = a + b, wide_a + wide_b
        elif op == BinOp.SUB:
            wrapped, exact = a - b, wide_a - wide_b
        elif op == BinOp.MUL:
            wrapped, exact = a * b, wide_a * wide_b
        else:
            raise EvalError.unimplemented(f"overflow check for {op.value}")

        overflow = extend(bits, wrapped) != exact
        return self.from_expr(wrapped, kind), self.from_expr(overflow, PrimValKind.BOOL)

    def add_select_constraint(self, cond: PrimVal, then_val: PrimVal, else_val: PrimVal,
                              kind: PrimValKind) -> PrimVal:
        """`then_val` if cond holds, else `else_val`."""
        expr = z3.If(self.truthy(cond), self.to_expr(then_val, kind), self.to_expr(else_val, kind))
        return self.from_expr(expr, kind)

    def add_unary_intrinsic_constraint(self, relation: UnaryRelation, operand: PrimVal,
                                       kind: PrimValKind) -> PrimVal:
        x = self.to_expr(operand, kind)
        bits = kind.bits

        def bit_set(i):
            return z3.Extract(i, i, x) == 1

        if relation == UnaryRelation.CTPOP:
            expr = z3.Sum([z3.ZeroExt(bits - 1, z3.Extract(i, i, x)) for i in range(bits)])
        elif relation == UnaryRelation.CTLZ:
            # Highest set bit wins, so it is applied last
            expr = z3.BitVecVal(bits, bits)
            for i in range(bits):
                expr = z3.If(bit_set(i), z3.BitVecVal(bits - 1 - i, bits), expr)
        else:
            expr = z3.BitVecVal(bits, bits)
            for i in reversed(range(bits)):
                expr = z3.If(bit_set(i), z3.BitVecVal(i, bits), expr)

        logger.debug(f"[CONSTRAINT] {relation.value} on {kind.label}")
        return self.from_expr(expr, kind)

    # Conditions

    def truthy(self, val: PrimVal) -> z3.BoolRef:
        """Z3 condition that a bool value is true."""
        return self.to_expr(val, PrimValKind.BOOL) != 0

    def condition_eq(self, val: PrimVal, constant: int, kind: PrimValKind) -> z3.BoolRef:
        return self.to_expr(val, kind) == z3.BitVecVal(truncate(constant, kind.bits), kind.bits)

    def condition_ne(self, val: PrimVal, constant: int, kind: PrimValKind) -> z3.BoolRef:
        return z3.Not(self.condition_eq(val, constant, kind))

    def push_path_constraint(self, constraint: z3.BoolRef):
        logger.debug(f"[PATH] {constraint}")
        self.path_constraints.append(constraint)

    # Solving

    def _solver(self, extra: Sequence[z3.BoolRef] = ()) -> z3.Solver:
        solver = z3.Solver()
        if self.solver_timeout_ms is not None:
            solver.set("timeout", int(self.solver_timeout_ms))
        solver.add(*self.definitions)
        solver.add(*self.path_constraints)
        solver.add(*extra)
        return solver

    def is_feasible(self, *extra: z3.BoolRef) -> bool:
        """
        True if the constraints plus `extra` may be satisfiable.

        UNKNOWN (e.g. a solver timeout) counts as feasible.
        """
        result = self._solver(extra).check()
        if result == z3.unknown:
            logger.warning("[SOLVER] feasibility check returned unknown, keeping path")
            return True
        return result == z3.sat

    def _model(self) -> z3.ModelRef:
        solver = self._solver()
        result = solver.check()
        if result == z3.unsat:
            raise EvalError.infeasible_path("path constraints are unsatisfiable")
        if result == z3.unknown:
            logger.warning(f"[SOLVER] satisfying assignment unknown: {solver.reason_unknown()}")
            raise EvalError.infeasible_path("solver could not decide the path constraints")
        return solver.model()

    def get_satisfying_assignment(self, length: int) -> bytes:
        """
        Concrete values of the first `length` input bytes in a model of every
        constraint. Positions past the last input byte are zero.
        """
        if length == 0:
            return b""
        model = self._model()
        values = []
        for index in self.input_indices[:length]:
            values.append(model.eval(self.variables[index], model_completion=True).as_long())
        values.extend([0] * (length - len(values)))
        return bytes(values)

    def witness(self, val: PrimVal, kind: PrimValKind) -> int:
        """Value of `val` in a model of every constraint."""
        model = self._model()
        return model.eval(self.to_expr(val, kind), model_completion=True).as_long()
