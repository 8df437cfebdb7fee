"""
Primitive casts for concrete and symbolic values.

Dispatch is on the value's tag first, then on the (source, destination)
type categories. Each table below lists every supported pair; anything
missing falls through to one explicit "unimplemented cast" error.

Concrete int -> float conversion goes through Z3's IEEE-754 model so the
result is the correctly rounded (round-nearest-even) value for every source
width, including 128-bit integers beyond the range of a Python float.
"""

import logging

import z3

from ..errors import EvalError
from ..ir.types import IntTy, TypeCategory, Ty, ty_to_primval_kind
from ..z3model.constraints import ConstraintStore
from ..z3model.values import POINTER_SIZE, PrimVal, PrimValKind, sign_extend, truncate

logger = logging.getLogger(__name__)

_INT_LIKE = (TypeCategory.INT, TypeCategory.CHAR, TypeCategory.BOOL)
_POINTERS = (TypeCategory.RAW_PTR, TypeCategory.REF, TypeCategory.FN_PTR)


def unimplemented_cast(src_ty: Ty, dest_ty: Ty) -> EvalError:
    return EvalError.unimplemented(f"{src_ty.name} to {dest_ty.name} cast")


def _is_pointer_sized_int(ty: Ty) -> bool:
    return isinstance(ty, IntTy) and ty.pointer_sized


def _src_int_value(val: PrimVal, src_ty: Ty) -> int:
    """Mathematical value of a concrete int/char/bool source."""
    kind = ty_to_primval_kind(src_ty)
    bits = truncate(val.payload, kind.bits)
    if kind.is_signed_int():
        return sign_extend(bits, kind.bits)
    return bits


def _int_to_int(value: int, dest_ty: Ty) -> PrimVal:
    return PrimVal.from_bits(value, ty_to_primval_kind(dest_ty))


def _int_to_char(value: int, dest_ty: Ty) -> PrimVal:
    if not 0 <= value <= 0xFF:
        raise EvalError.invalid_char(truncate(value, 128))
    return PrimVal.from_u128(value)


def _int_to_float(value: int, src_ty: Ty, dest_ty: Ty) -> PrimVal:
    src_kind = ty_to_primval_kind(src_ty)
    sort = z3.Float32() if dest_ty.bits == 32 else z3.Float64()
    bv = z3.BitVecVal(truncate(value, src_kind.bits), src_kind.bits)
    if src_kind.is_signed_int():
        fp = z3.fpToFP(z3.RNE(), bv, sort)
    else:
        fp = z3.fpToFPUnsigned(z3.RNE(), bv, sort)
    return PrimVal.from_u128(z3.simplify(z3.fpToIEEEBV(fp)).as_long())


def _int_to_raw_ptr(value: int, dest_ty: Ty) -> PrimVal:
    return PrimVal.from_u128(truncate(value, POINTER_SIZE * 8))


def _cast_concrete(val: PrimVal, src_ty: Ty, dest_ty: Ty) -> PrimVal:
    src_cat, dest_cat = src_ty.category, dest_ty.category
    if src_cat == TypeCategory.FLOAT:
        raise unimplemented_cast(src_ty, dest_ty)
    if src_cat in _INT_LIKE:
        value = _src_int_value(val, src_ty)
        if dest_cat == TypeCategory.INT:
            return _int_to_int(value, dest_ty)
        if dest_cat == TypeCategory.CHAR:
            return _int_to_char(value, dest_ty)
        if dest_cat == TypeCategory.FLOAT and src_cat == TypeCategory.INT:
            return _int_to_float(value, src_ty, dest_ty)
        if dest_cat == TypeCategory.RAW_PTR and src_cat == TypeCategory.INT:
            return _int_to_raw_ptr(value, dest_ty)
    if src_cat in _POINTERS and dest_cat in _POINTERS + (TypeCategory.INT,):
        # Integer-valued pointer (e.g. null)
        if dest_cat == TypeCategory.INT:
            return _int_to_int(truncate(val.payload, POINTER_SIZE * 8), dest_ty)
        return PrimVal.from_u128(truncate(val.payload, POINTER_SIZE * 8))
    raise unimplemented_cast(src_ty, dest_ty)


def _cast_pointer(val: PrimVal, src_ty: Ty, dest_ty: Ty) -> PrimVal:
    dest_cat = dest_ty.category
    if dest_cat in (TypeCategory.RAW_PTR, TypeCategory.FN_PTR):
        return val
    if dest_cat == TypeCategory.INT:
        if _is_pointer_sized_int(dest_ty):
            return val
        raise EvalError.read_pointer_as_bytes()
    raise unimplemented_cast(src_ty, dest_ty)


def _cast_abstract(ctx: ConstraintStore, val: PrimVal, src_ty: Ty, dest_ty: Ty) -> PrimVal:
    src_cat, dest_cat = src_ty.category, dest_ty.category
    int_or_char = (TypeCategory.INT, TypeCategory.CHAR)

    if src_cat in int_or_char and dest_cat in int_or_char:
        src_kind = ty_to_primval_kind(src_ty)
        dest_kind = ty_to_primval_kind(dest_ty)
        cells = val.cells
        if dest_kind.num_bytes < src_kind.num_bytes:
            cells = cells[:dest_kind.num_bytes]
        elif dest_kind.num_bytes > src_kind.num_bytes:
            if src_kind.is_signed_int():
                raise EvalError.unimplemented("sign extension of symbolic integer")
            cells = cells + (0,) * (dest_kind.num_bytes - src_kind.num_bytes)
        result = PrimVal.from_cells(cells, dest_kind)
        if result.is_bytes() and dest_cat == TypeCategory.CHAR:
            return _int_to_char(_src_int_value(result, dest_ty), dest_ty)
        return result

    if src_cat == TypeCategory.BOOL and dest_cat == TypeCategory.INT:
        dest_kind = ty_to_primval_kind(dest_ty)
        return ctx.add_select_constraint(
            val, PrimVal.from_bits(1, dest_kind), PrimVal.from_bits(0, dest_kind), dest_kind
        )

    raise unimplemented_cast(src_ty, dest_ty)


def cast_primval(ctx: ConstraintStore, val: PrimVal, src_ty: Ty, dest_ty: Ty) -> PrimVal:
    """
    Reinterpret `val` of type `src_ty` as `dest_ty`.

    `ctx` is the constraint store of the executing state; it is only
    consulted for abstract operands that need a derived value.
    """
    logger.debug(f"[CAST] {val!r}: {src_ty.name} -> {dest_ty.name}")
    if val.is_undef():
        return val
    if val.is_ptr():
        return _cast_pointer(val, src_ty, dest_ty)
    if val.is_abstract():
        return _cast_abstract(ctx, val, src_ty, dest_ty)
    return _cast_concrete(val, src_ty, dest_ty)
