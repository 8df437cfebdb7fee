"""
Binary and unary operators on primitive values.

Concrete operands are evaluated directly with Python integers and wrapped
to the operand width. If either operand is abstract, the operation is
handed to the constraint store. Undef operands propagate to an Undef
result without recording anything.
"""

import math
from typing import Optional

from ..errors import ErrorKind, EvalError
from ..ir.program import BinOp, UnOp
from ..z3model.constraints import ConstraintStore
from ..z3model.values import PrimVal, PrimValKind, sign_extend, truncate


def _int_value(val: PrimVal, kind: PrimValKind) -> int:
    """Mathematical value of a concrete integer of `kind`."""
    bits = truncate(val.to_u128(), kind.bits)
    if kind.is_signed_int():
        return sign_extend(bits, kind.bits)
    return bits


def _float_value(val: PrimVal, kind: PrimValKind) -> float:
    return val.to_f32() if kind == PrimValKind.F32 else val.to_f64()


def _float_result(value: float, kind: PrimValKind) -> PrimVal:
    return PrimVal.from_f32(value) if kind == PrimValKind.F32 else PrimVal.from_f64(value)


def _trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero."""
    q = abs(a) // abs(b)
    return -q if (a < 0) != (b < 0) else q


def _compare(op: BinOp, a, b) -> bool:
    if op == BinOp.EQ:
        return a == b
    if op == BinOp.NE:
        return a != b
    if op == BinOp.LT:
        return a < b
    if op == BinOp.LE:
        return a <= b
    if op == BinOp.GT:
        return a > b
    return a >= b


def _float_div(a: float, b: float) -> float:
    if b == 0.0:
        if a == 0.0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def _float_binary_op(op: BinOp, a: float, b: float, kind: PrimValKind) -> PrimVal:
    if op.is_comparison():
        return PrimVal.from_bool(_compare(op, a, b))
    if op == BinOp.ADD:
        result = a + b
    elif op == BinOp.SUB:
        result = a - b
    elif op == BinOp.MUL:
        result = a * b
    elif op == BinOp.DIV:
        result = _float_div(a, b)
    elif op == BinOp.REM:
        result = math.nan if b == 0.0 or math.isinf(a) else math.fmod(a, b)
    else:
        raise EvalError.unimplemented(f"{op.value} on {kind.label}")
    return _float_result(result, kind)


def _int_binary_op(op: BinOp, a: int, b: int, kind: PrimValKind) -> PrimVal:
    bits = kind.bits
    if op.is_comparison():
        return PrimVal.from_bool(_compare(op, a, b))
    if op == BinOp.ADD:
        result = a + b
    elif op == BinOp.SUB:
        result = a - b
    elif op == BinOp.MUL:
        result = a * b
    elif op in (BinOp.DIV, BinOp.REM):
        if b == 0:
            raise EvalError(ErrorKind.DIVISION_BY_ZERO, "attempt to divide by zero")
        quotient = _trunc_div(a, b)
        result = quotient if op == BinOp.DIV else a - b * quotient
    elif op == BinOp.BIT_XOR:
        result = a ^ b
    elif op == BinOp.BIT_AND:
        result = a & b
    elif op == BinOp.BIT_OR:
        result = a | b
    elif op == BinOp.SHL:
        result = a << (b & (bits - 1))
    else:
        result = a >> (b & (bits - 1))
    return PrimVal.from_bits(result, kind)


def _pointer_binary_op(op: BinOp, lhs: PrimVal, rhs: PrimVal) -> PrimVal:
    if op not in (BinOp.EQ, BinOp.NE):
        raise EvalError(ErrorKind.INVALID_POINTER_MATH, f"{op.value} on pointers")
    if not (lhs.is_ptr() and rhs.is_ptr()):
        raise EvalError.read_pointer_as_bytes()
    a, b = lhs.payload, rhs.payload
    if a.alloc_id != b.alloc_id:
        equal = False
    elif a.has_concrete_offset() and b.has_concrete_offset():
        equal = a.offset == b.offset
    else:
        raise EvalError.unimplemented("comparison of pointers with symbolic offsets")
    return PrimVal.from_bool(equal if op == BinOp.EQ else not equal)


def binary_op(ctx: ConstraintStore, op: BinOp, lhs: PrimVal, rhs: PrimVal,
              kind: PrimValKind, rhs_kind: Optional[PrimValKind] = None) -> PrimVal:
    """
    Evaluate `lhs op rhs` for operands of `kind`.

    `rhs_kind` is the kind of the shift amount for shifts; other operators
    take both operands at `kind`.
    """
    if lhs.is_undef() or rhs.is_undef():
        return PrimVal.undef()
    if lhs.is_ptr() or rhs.is_ptr():
        return _pointer_binary_op(op, lhs, rhs)

    if kind.is_float():
        if lhs.is_abstract() or rhs.is_abstract():
            raise EvalError.unimplemented(f"symbolic {kind.label} arithmetic")
        return _float_binary_op(op, _float_value(lhs, kind), _float_value(rhs, kind), kind)

    if lhs.is_abstract() or rhs.is_abstract():
        if op in (BinOp.DIV, BinOp.REM) and rhs.is_bytes() and truncate(rhs.payload, kind.bits) == 0:
            raise EvalError(ErrorKind.DIVISION_BY_ZERO, "attempt to divide by zero")
        return ctx.add_binary_constraint(op, lhs, rhs, kind, rhs_kind)

    if op.is_shift():
        amount = truncate(rhs.to_u128(), (rhs_kind or kind).bits)
        return _int_binary_op(op, _int_value(lhs, kind), amount, kind)
    return _int_binary_op(op, _int_value(lhs, kind), _int_value(rhs, kind), kind)


def overflowing_op(ctx: ConstraintStore, op: BinOp, lhs: PrimVal, rhs: PrimVal,
                   kind: PrimValKind, rhs_kind: Optional[PrimValKind] = None) -> tuple[PrimVal, PrimVal]:
    """Wrapped result of add/sub/mul/shl/shr and whether it overflowed."""
    if lhs.is_undef() or rhs.is_undef():
        return PrimVal.undef(), PrimVal.undef()
    if lhs.is_ptr() or rhs.is_ptr():
        raise EvalError(ErrorKind.INVALID_POINTER_MATH, f"checked {op.value} on pointers")
    if op not in (BinOp.ADD, BinOp.SUB, BinOp.MUL, BinOp.SHL, BinOp.SHR):
        raise EvalError.unimplemented(f"checked {op.value}")
    bits = kind.bits

    if op.is_shift():
        result = binary_op(ctx, op, lhs, rhs, kind, rhs_kind)
        if rhs.is_abstract():
            raise EvalError.unimplemented("overflow check of a symbolic shift amount")
        amount = truncate(rhs.to_u128(), (rhs_kind or kind).bits)
        return result, PrimVal.from_bool(amount >= bits)

    if lhs.is_abstract() or rhs.is_abstract():
        return ctx.add_overflow_constraint(op, lhs, rhs, kind)

    a, b = _int_value(lhs, kind), _int_value(rhs, kind)
    if op == BinOp.ADD:
        exact = a + b
    elif op == BinOp.SUB:
        exact = a - b
    else:
        exact = a * b
    result = PrimVal.from_bits(exact, kind)
    return result, PrimVal.from_bool(_int_value(result, kind) != exact)


def unary_op(ctx: ConstraintStore, op: UnOp, val: PrimVal, kind: PrimValKind) -> PrimVal:
    if val.is_undef():
        return PrimVal.undef()
    if val.is_ptr():
        raise EvalError.read_pointer_as_bytes()

    if kind.is_float():
        if op != UnOp.NEG:
            raise EvalError.unimplemented(f"{op.value} on {kind.label}")
        if val.is_abstract():
            raise EvalError.unimplemented(f"symbolic {kind.label} arithmetic")
        # Negation flips the sign bit only, NaN payloads included
        return PrimVal.bytes(val.payload ^ (1 << (kind.bits - 1)))

    if op == UnOp.NOT:
        mask = 1 if kind == PrimValKind.BOOL else (1 << kind.bits) - 1
        return binary_op(ctx, BinOp.BIT_XOR, val, PrimVal.from_bits(mask, kind), kind)
    return binary_op(ctx, BinOp.SUB, PrimVal.from_u128(0), val, kind)
