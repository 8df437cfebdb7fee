"""
Intrinsic catalogue and evaluator.

Every intrinsic the executor understands is a member of `Intrinsic`.
`Intrinsic.parse` maps an IR callee name onto a member (stripping atomic
memory-ordering suffixes) and rejects everything else, so an unknown name
can never fall through silently. `IntrinsicEvaluator` holds one handler per
member in a dispatch table.

Each handler works for concrete operands directly and for abstract operands
through the constraint store. The modeled machine is single-threaded:
atomics are ordinary reads and writes.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import z3

from ..errors import ErrorKind, EvalError
from ..ir.program import BinOp
from ..ir.types import (
    STR_REF, RawPtrTy, RefTy, SliceTy, StrTy, StructTy, TupleTy, Ty,
    align_up, ty_to_primval_kind, type_id_hash,
)
from ..z3model.constraints import UnaryRelation
from ..z3model.values import MemoryPointer, PrimVal, PrimValKind, Value, truncate
from .operators import binary_op, overflowing_op

logger = logging.getLogger(__name__)


class Intrinsic(Enum):
    """Supported intrinsics; values are the IR names."""
    # Overflow arithmetic
    ADD_WITH_OVERFLOW = "add_with_overflow"
    SUB_WITH_OVERFLOW = "sub_with_overflow"
    MUL_WITH_OVERFLOW = "mul_with_overflow"
    OVERFLOWING_ADD = "overflowing_add"
    OVERFLOWING_SUB = "overflowing_sub"
    OVERFLOWING_MUL = "overflowing_mul"

    # Plain arithmetic
    EXACT_DIV = "exact_div"
    FADD_FAST = "fadd_fast"
    FSUB_FAST = "fsub_fast"
    FMUL_FAST = "fmul_fast"
    FDIV_FAST = "fdiv_fast"
    FREM_FAST = "frem_fast"

    # Bit manipulation
    CTPOP = "ctpop"
    CTLZ = "ctlz"
    CTTZ = "cttz"
    CTLZ_NONZERO = "ctlz_nonzero"
    CTTZ_NONZERO = "cttz_nonzero"
    BSWAP = "bswap"

    # Atomics and volatile access
    ATOMIC_LOAD = "atomic_load"
    VOLATILE_LOAD = "volatile_load"
    ATOMIC_STORE = "atomic_store"
    VOLATILE_STORE = "volatile_store"
    ATOMIC_XCHG = "atomic_xchg"
    ATOMIC_CXCHG = "atomic_cxchg"
    ATOMIC_OR = "atomic_or"
    ATOMIC_XOR = "atomic_xor"
    ATOMIC_AND = "atomic_and"
    ATOMIC_XADD = "atomic_xadd"
    ATOMIC_XSUB = "atomic_xsub"
    ATOMIC_FENCE_ACQ = "atomic_fence_acq"

    # Pointer arithmetic
    OFFSET = "offset"
    ARITH_OFFSET = "arith_offset"
    ALIGN_OFFSET = "align_offset"

    ASSUME = "assume"

    # Bulk memory
    COPY = "copy"
    COPY_NONOVERLAPPING = "copy_nonoverlapping"
    WRITE_BYTES = "write_bytes"
    INIT = "init"
    UNINIT = "uninit"
    MOVE_VAL_INIT = "move_val_init"
    TRANSMUTE = "transmute"

    # Reflection and layout
    SIZE_OF = "size_of"
    MIN_ALIGN_OF = "min_align_of"
    PREF_ALIGN_OF = "pref_align_of"
    SIZE_OF_VAL = "size_of_val"
    MIN_ALIGN_OF_VAL = "min_align_of_val"
    ALIGN_OF_VAL = "align_of_val"
    TYPE_NAME = "type_name"
    TYPE_ID = "type_id"
    NEEDS_DROP = "needs_drop"

    # Float math
    SINF32 = "sinf32"
    SINF64 = "sinf64"
    COSF32 = "cosf32"
    COSF64 = "cosf64"
    FABSF32 = "fabsf32"
    FABSF64 = "fabsf64"
    SQRTF32 = "sqrtf32"
    SQRTF64 = "sqrtf64"
    EXPF32 = "expf32"
    EXPF64 = "expf64"
    EXP2F32 = "exp2f32"
    EXP2F64 = "exp2f64"
    LOGF32 = "logf32"
    LOGF64 = "logf64"
    LOG10F32 = "log10f32"
    LOG10F64 = "log10f64"
    LOG2F32 = "log2f32"
    LOG2F64 = "log2f64"
    FLOORF32 = "floorf32"
    FLOORF64 = "floorf64"
    CEILF32 = "ceilf32"
    CEILF64 = "ceilf64"
    TRUNCF32 = "truncf32"
    TRUNCF64 = "truncf64"
    POWF32 = "powf32"
    POWF64 = "powf64"
    POWIF32 = "powif32"
    POWIF64 = "powif64"
    FMAF32 = "fmaf32"
    FMAF64 = "fmaf64"

    # Hints
    LIKELY = "likely"
    UNLIKELY = "unlikely"
    FORGET = "forget"

    BREAKPOINT = "breakpoint"

    @staticmethod
    def parse(name: str) -> 'Intrinsic':
        """Member for an IR callee name; unknown names are unimplemented."""
        if name == Intrinsic.ATOMIC_FENCE_ACQ.value:
            return Intrinsic.ATOMIC_FENCE_ACQ
        if name.startswith("atomic_"):
            parts = name.split("_")
            op = parts[1]
            if all(suffix in _ATOMIC_ORDERINGS for suffix in parts[2:]) and op in _ATOMIC_OPS:
                return _ATOMIC_OPS[op]
            raise EvalError.unimplemented(f"unimplemented intrinsic: {name}")
        try:
            return Intrinsic(name)
        except ValueError:
            raise EvalError.unimplemented(f"unimplemented intrinsic: {name}") from None


_ATOMIC_ORDERINGS = frozenset({"acq", "rel", "acqrel", "relaxed", "unordered", "seqcst", "failrelaxed", "failacq"})

_ATOMIC_OPS = {
    "load": Intrinsic.ATOMIC_LOAD,
    "store": Intrinsic.ATOMIC_STORE,
    "xchg": Intrinsic.ATOMIC_XCHG,
    "cxchg": Intrinsic.ATOMIC_CXCHG,
    "cxchgweak": Intrinsic.ATOMIC_CXCHG,
    "or": Intrinsic.ATOMIC_OR,
    "xor": Intrinsic.ATOMIC_XOR,
    "and": Intrinsic.ATOMIC_AND,
    "xadd": Intrinsic.ATOMIC_XADD,
    "xsub": Intrinsic.ATOMIC_XSUB,
}

_OVERFLOW_OPS = {
    Intrinsic.ADD_WITH_OVERFLOW: BinOp.ADD,
    Intrinsic.SUB_WITH_OVERFLOW: BinOp.SUB,
    Intrinsic.MUL_WITH_OVERFLOW: BinOp.MUL,
    Intrinsic.OVERFLOWING_ADD: BinOp.ADD,
    Intrinsic.OVERFLOWING_SUB: BinOp.SUB,
    Intrinsic.OVERFLOWING_MUL: BinOp.MUL,
}

_ARITH_OPS = {
    Intrinsic.EXACT_DIV: BinOp.DIV,
    Intrinsic.FADD_FAST: BinOp.ADD,
    Intrinsic.FSUB_FAST: BinOp.SUB,
    Intrinsic.FMUL_FAST: BinOp.MUL,
    Intrinsic.FDIV_FAST: BinOp.DIV,
    Intrinsic.FREM_FAST: BinOp.REM,
}

_FETCH_OPS = {
    Intrinsic.ATOMIC_OR: BinOp.BIT_OR,
    Intrinsic.ATOMIC_XOR: BinOp.BIT_XOR,
    Intrinsic.ATOMIC_AND: BinOp.BIT_AND,
    Intrinsic.ATOMIC_XADD: BinOp.ADD,
    Intrinsic.ATOMIC_XSUB: BinOp.SUB,
}

_BIT_COUNTS = {
    Intrinsic.CTPOP: UnaryRelation.CTPOP,
    Intrinsic.CTLZ: UnaryRelation.CTLZ,
    Intrinsic.CTTZ: UnaryRelation.CTTZ,
    Intrinsic.CTLZ_NONZERO: UnaryRelation.CTLZ,
    Intrinsic.CTTZ_NONZERO: UnaryRelation.CTTZ,
}

_FIXED_ARITY = {
    **{intrinsic: 2 for intrinsic in _OVERFLOW_OPS},
    **{intrinsic: 2 for intrinsic in _ARITH_OPS},
    **{intrinsic: 1 for intrinsic in _BIT_COUNTS},
    **{intrinsic: 2 for intrinsic in _FETCH_OPS},
    Intrinsic.BSWAP: 1,
    Intrinsic.ATOMIC_LOAD: 1,
    Intrinsic.VOLATILE_LOAD: 1,
    Intrinsic.ATOMIC_STORE: 2,
    Intrinsic.VOLATILE_STORE: 2,
    Intrinsic.ATOMIC_XCHG: 2,
    Intrinsic.ATOMIC_CXCHG: 3,
    Intrinsic.ATOMIC_FENCE_ACQ: 0,
    Intrinsic.OFFSET: 2,
    Intrinsic.ARITH_OFFSET: 2,
    Intrinsic.ALIGN_OFFSET: 2,
    Intrinsic.ASSUME: 1,
    Intrinsic.COPY: 3,
    Intrinsic.COPY_NONOVERLAPPING: 3,
    Intrinsic.WRITE_BYTES: 3,
    Intrinsic.INIT: 0,
    Intrinsic.UNINIT: 0,
    Intrinsic.MOVE_VAL_INIT: 2,
    Intrinsic.TRANSMUTE: 1,
    Intrinsic.SIZE_OF: 0,
    Intrinsic.MIN_ALIGN_OF: 0,
    Intrinsic.PREF_ALIGN_OF: 0,
    Intrinsic.SIZE_OF_VAL: 1,
    Intrinsic.MIN_ALIGN_OF_VAL: 1,
    Intrinsic.ALIGN_OF_VAL: 1,
    Intrinsic.TYPE_NAME: 0,
    Intrinsic.TYPE_ID: 0,
    Intrinsic.NEEDS_DROP: 0,
    Intrinsic.LIKELY: 1,
    Intrinsic.UNLIKELY: 1,
    Intrinsic.FORGET: 1,
    Intrinsic.BREAKPOINT: 0,
}


def intrinsic_arity(intrinsic: Intrinsic) -> int:
    """Number of value arguments `intrinsic` takes."""
    if intrinsic in _FIXED_ARITY:
        return _FIXED_ARITY[intrinsic]
    base = intrinsic.value[:-3]
    if base == "fma":
        return 3
    if base in ("pow", "powi"):
        return 2
    return 1


# Float math. Results are computed in double precision; f32 results are
# then rounded to binary32 when written back.

def _log(fn):
    def apply(x):
        if math.isnan(x) or x < 0:
            return math.nan
        if x == 0:
            return -math.inf
        if math.isinf(x):
            return math.inf
        return fn(x)
    return apply


def _exp(fn):
    def apply(x):
        try:
            return fn(x)
        except OverflowError:
            return math.inf
    return apply


def _rounding(fn):
    def apply(x):
        if math.isnan(x) or math.isinf(x):
            return x
        return math.copysign(float(fn(x)), x)
    return apply


def _periodic(fn):
    def apply(x):
        if math.isinf(x):
            return math.nan
        return fn(x)
    return apply


def _sqrt(x):
    if x < 0:
        return math.nan
    return math.sqrt(x)


def _pow(x, y):
    try:
        return math.pow(x, y)
    except OverflowError:
        return math.copysign(math.inf, x) if y == int(y) and int(y) % 2 else math.inf
    except (ValueError, ZeroDivisionError):
        if x == 0:
            # pow(+-0, negative) is a pole
            if y == int(y) and int(y) % 2:
                return math.copysign(math.inf, x)
            return math.inf
        return math.nan


_UNARY_MATH = {
    "sin": _periodic(math.sin),
    "cos": _periodic(math.cos),
    "fabs": math.fabs,
    "sqrt": _sqrt,
    "exp": _exp(math.exp),
    "exp2": _exp(lambda x: 2.0 ** x),
    "log": _log(math.log),
    "log10": _log(math.log10),
    "log2": _log(math.log2),
    "floor": _rounding(math.floor),
    "ceil": _rounding(math.ceil),
    "trunc": _rounding(math.trunc),
}


def _fma(a: float, b: float, c: float, kind: PrimValKind) -> PrimVal:
    """Fused multiply-add, rounded once to the destination format."""
    if any(math.isnan(v) for v in (a, b, c)):
        return PrimVal.from_f64(math.nan) if kind == PrimValKind.F64 else PrimVal.from_f32(math.nan)
    sort = z3.Float32() if kind == PrimValKind.F32 else z3.Float64()
    expr = z3.fpFMA(z3.RNE(), z3.FPVal(a, sort), z3.FPVal(b, sort), z3.FPVal(c, sort))
    return PrimVal.from_u128(z3.simplify(z3.fpToIEEEBV(expr)).as_long())


@dataclass
class Arg:
    """An evaluated call argument with its declared type."""
    value: Value
    ty: Ty


@dataclass
class IntrinsicCall:
    intrinsic: Intrinsic
    name: str
    args: list
    dest: Optional[MemoryPointer]
    dest_ty: Optional[Ty]
    type_args: tuple = field(default_factory=tuple)

    def type_arg(self, index: int = 0) -> Ty:
        if index >= len(self.type_args):
            raise EvalError.type_error(f"{self.name} needs type argument {index}")
        return self.type_args[index]


def pointee_type(ty: Ty) -> Ty:
    if isinstance(ty, (RefTy, RawPtrTy)):
        return ty.pointee
    raise EvalError.type_error(f"{ty.name} is not a pointer type")


def size_and_align_of_dst(ty: Ty, length: Optional[int]) -> tuple[int, int]:
    """
    Size and alignment of a possibly unsized value.

    `length` is the element count carried by the fat pointer. An unsized
    aggregate is its statically sized prefix plus its unsized tail, rounded
    up to the combined alignment.
    """
    if ty.is_sized():
        return ty.size(), ty.align()
    if isinstance(ty, SliceTy):
        return ty.elem.size() * length, ty.elem.align()
    if isinstance(ty, StrTy):
        return length, 1
    if isinstance(ty, (StructTy, TupleTy)):
        prefix = ty.field_offsets()[-1]
        tail_size, tail_align = size_and_align_of_dst(ty.field_types()[-1], length)
        align = max(ty.align(), tail_align)
        return align_up(prefix + tail_size, align), align
    raise EvalError.unimplemented(f"size of unsized type {ty.name}")


class IntrinsicEvaluator:
    """
    Evaluates intrinsic calls against one execution state.

    The state provides `memory`, `read_arg`, `read_primval`,
    `write_primval`, `write_value` and `write_pair`.
    """

    def __init__(self, state):
        self.state = state
        self.dispatch = self._build_dispatch()

    @property
    def constraints(self):
        return self.state.memory.constraints

    def _build_dispatch(self) -> dict:
        table = {}
        for intrinsic in _OVERFLOW_OPS:
            table[intrinsic] = self._overflow
        for intrinsic in _ARITH_OPS:
            table[intrinsic] = self._arith
        for intrinsic in _BIT_COUNTS:
            table[intrinsic] = self._bit_count
        table[Intrinsic.BSWAP] = self._bswap
        table[Intrinsic.ATOMIC_LOAD] = self._load
        table[Intrinsic.VOLATILE_LOAD] = self._load
        table[Intrinsic.ATOMIC_STORE] = self._store
        table[Intrinsic.VOLATILE_STORE] = self._store
        table[Intrinsic.ATOMIC_XCHG] = self._xchg
        table[Intrinsic.ATOMIC_CXCHG] = self._cxchg
        for intrinsic in _FETCH_OPS:
            table[intrinsic] = self._fetch_op
        table[Intrinsic.ATOMIC_FENCE_ACQ] = self._no_op
        table[Intrinsic.OFFSET] = self._offset
        table[Intrinsic.ARITH_OFFSET] = self._offset
        table[Intrinsic.ALIGN_OFFSET] = self._align_offset
        table[Intrinsic.ASSUME] = self._assume
        table[Intrinsic.COPY] = self._copy
        table[Intrinsic.COPY_NONOVERLAPPING] = self._copy
        table[Intrinsic.WRITE_BYTES] = self._write_bytes
        table[Intrinsic.INIT] = self._init
        table[Intrinsic.UNINIT] = self._uninit
        table[Intrinsic.MOVE_VAL_INIT] = self._move_val_init
        table[Intrinsic.TRANSMUTE] = self._transmute
        table[Intrinsic.SIZE_OF] = self._static_layout
        table[Intrinsic.MIN_ALIGN_OF] = self._static_layout
        table[Intrinsic.PREF_ALIGN_OF] = self._static_layout
        table[Intrinsic.SIZE_OF_VAL] = self._dynamic_layout
        table[Intrinsic.MIN_ALIGN_OF_VAL] = self._dynamic_layout
        table[Intrinsic.ALIGN_OF_VAL] = self._dynamic_layout
        table[Intrinsic.TYPE_NAME] = self._type_name
        table[Intrinsic.TYPE_ID] = self._type_id
        table[Intrinsic.NEEDS_DROP] = self._needs_drop
        for intrinsic in Intrinsic:
            if intrinsic.value.endswith(("f32", "f64")) and intrinsic not in table:
                table[intrinsic] = self._float_math
        table[Intrinsic.LIKELY] = self._hint
        table[Intrinsic.UNLIKELY] = self._hint
        table[Intrinsic.FORGET] = self._no_op
        table[Intrinsic.BREAKPOINT] = self._unimplemented
        return table

    def call(self, call: IntrinsicCall):
        handler = self.dispatch.get(call.intrinsic)
        if handler is None:
            raise EvalError.unimplemented(f"unimplemented intrinsic: {call.name}")
        expected = intrinsic_arity(call.intrinsic)
        if len(call.args) != expected:
            raise EvalError.type_error(f"{call.name} takes {expected} arguments but {len(call.args)} were supplied")
        logger.debug(f"[INTRINSIC] {call.name}")
        handler(call)

    # Helpers

    def _prim(self, call: IntrinsicCall, index: int) -> PrimVal:
        return self.state.read_arg(call.args[index])

    def _ptr_arg(self, call: IntrinsicCall, index: int) -> MemoryPointer:
        return self._prim(call, index).to_ptr()

    def _concrete_count(self, call: IntrinsicCall, index: int) -> int:
        val = self._prim(call, index)
        if val.is_abstract():
            raise EvalError.unimplemented(f"{call.name} with a symbolic count")
        return val.to_u64()

    def _write_result(self, call: IntrinsicCall, val: PrimVal):
        if call.dest is not None:
            self.state.write_primval(call.dest, val, call.dest_ty)

    def _write_usize(self, call: IntrinsicCall, value: int):
        self._write_result(call, PrimVal.from_u128(truncate(value, 64)))

    def _write_tuple(self, call: IntrinsicCall, first: PrimVal, second: PrimVal):
        if call.dest is not None:
            self.state.write_pair(call.dest, first, second, call.dest_ty)

    def _elem_type(self, call: IntrinsicCall) -> Ty:
        if call.type_args:
            return call.type_args[0]
        return pointee_type(call.args[0].ty)

    # Arithmetic

    def _overflow(self, call: IntrinsicCall):
        op = _OVERFLOW_OPS[call.intrinsic]
        kind = ty_to_primval_kind(call.args[0].ty)
        lhs, rhs = self._prim(call, 0), self._prim(call, 1)
        result, overflowed = overflowing_op(self.constraints, op, lhs, rhs, kind)
        if call.intrinsic in (Intrinsic.OVERFLOWING_ADD, Intrinsic.OVERFLOWING_SUB, Intrinsic.OVERFLOWING_MUL):
            self._write_result(call, result)
        else:
            self._write_tuple(call, result, overflowed)

    def _arith(self, call: IntrinsicCall):
        kind = ty_to_primval_kind(call.args[0].ty)
        result = binary_op(self.constraints, _ARITH_OPS[call.intrinsic],
                           self._prim(call, 0), self._prim(call, 1), kind)
        self._write_result(call, result)

    # Bit manipulation

    def _bit_count(self, call: IntrinsicCall):
        kind = ty_to_primval_kind(call.args[0].ty)
        val = self._prim(call, 0)
        if val.is_undef():
            self._write_result(call, val)
            return
        if val.is_abstract():
            # A zero operand of the _nonzero variants is not excluded here
            result = self.constraints.add_unary_intrinsic_constraint(_BIT_COUNTS[call.intrinsic], val, kind)
            self._write_result(call, result)
            return

        bits = kind.bits
        n = truncate(val.to_u128(), bits)
        if call.intrinsic in (Intrinsic.CTLZ_NONZERO, Intrinsic.CTTZ_NONZERO) and n == 0:
            raise EvalError.intrinsic(f"{call.name} called on 0")
        relation = _BIT_COUNTS[call.intrinsic]
        if relation == UnaryRelation.CTPOP:
            count = bin(n).count("1")
        elif relation == UnaryRelation.CTLZ:
            count = bits - n.bit_length()
        else:
            count = (n & -n).bit_length() - 1 if n else bits
        self._write_result(call, PrimVal.from_bits(count, kind))

    def _bswap(self, call: IntrinsicCall):
        kind = ty_to_primval_kind(call.args[0].ty)
        self._write_result(call, bswap(self._prim(call, 0), kind))

    # Atomics

    def _load(self, call: IntrinsicCall):
        ty = self._elem_type(call)
        self._write_result(call, self.state.read_primval(self._ptr_arg(call, 0), ty))

    def _store(self, call: IntrinsicCall):
        ty = self._elem_type(call)
        self.state.write_primval(self._ptr_arg(call, 0), self._prim(call, 1), ty)

    def _xchg(self, call: IntrinsicCall):
        ty = self._elem_type(call)
        ptr = self._ptr_arg(call, 0)
        old = self.state.read_primval(ptr, ty)
        self.state.write_primval(ptr, self._prim(call, 1), ty)
        self._write_result(call, old)

    def _cxchg(self, call: IntrinsicCall):
        ty = self._elem_type(call)
        kind = ty_to_primval_kind(ty)
        ptr = self._ptr_arg(call, 0)
        expected, new = self._prim(call, 1), self._prim(call, 2)
        old = self.state.read_primval(ptr, ty)
        success = binary_op(self.constraints, BinOp.EQ, old, expected, kind)
        if success.is_abstract():
            stored = self.constraints.add_select_constraint(success, new, old, kind)
            self.state.write_primval(ptr, stored, ty)
        elif success.is_bytes() and success.to_bool():
            self.state.write_primval(ptr, new, ty)
        self._write_tuple(call, old, success)

    def _fetch_op(self, call: IntrinsicCall):
        ty = self._elem_type(call)
        kind = ty_to_primval_kind(ty)
        ptr = self._ptr_arg(call, 0)
        old = self.state.read_primval(ptr, ty)
        new = binary_op(self.constraints, _FETCH_OPS[call.intrinsic], old, self._prim(call, 1), kind)
        self.state.write_primval(ptr, new, ty)
        self._write_result(call, old)

    # Pointer arithmetic

    def _offset(self, call: IntrinsicCall):
        elem_size = self._elem_type(call).size()
        base = self._prim(call, 0)
        count = self._prim(call, 1)
        wrapping = call.intrinsic == Intrinsic.ARITH_OFFSET

        if base.is_undef() or count.is_undef():
            raise EvalError.read_undef_bytes()
        if count.is_abstract() or (base.is_ptr() and not base.payload.has_concrete_offset()):
            self._write_result(call, self._symbolic_offset(base, count, elem_size))
            return

        delta = count.to_i64() * elem_size
        if not base.is_ptr():
            # Integer address; only a zero offset keeps it meaningful unless wrapping
            if delta != 0 and not wrapping:
                raise EvalError(ErrorKind.INVALID_POINTER_MATH, "offset of an integer address")
            self._write_result(call, PrimVal.from_u128(truncate(base.to_u64() + delta, 64)))
            return

        ptr = base.payload
        new_ptr = ptr.offset_by(delta)
        if not wrapping:
            alloc = self.state.memory.get(ptr.alloc_id)
            if ptr.offset + delta < 0 or ptr.offset + delta > alloc.size:
                raise EvalError(ErrorKind.OUT_OF_BOUNDS, "pointer offset outside of its allocation")
        self._write_result(call, PrimVal.ptr(new_ptr))

    def _symbolic_offset(self, base: PrimVal, count: PrimVal, elem_size: int) -> PrimVal:
        if not base.is_ptr():
            raise EvalError.unimplemented("symbolic offset of an integer address")
        ptr = base.payload
        kind = PrimValKind.I64
        scaled = self.constraints.add_binary_constraint(BinOp.MUL, PrimVal.from_u128(elem_size), count, kind)
        new_offset = self.constraints.add_binary_constraint(BinOp.ADD, ptr.offset_as_primval(), scaled, kind)
        return PrimVal.ptr(MemoryPointer.with_primval_offset(ptr.alloc_id, new_offset))

    def _align_offset(self, call: IntrinsicCall):
        self._write_usize(call, (1 << 64) - 1)

    def _assume(self, call: IntrinsicCall):
        cond = self._prim(call, 0)
        if cond.is_abstract():
            self.constraints.push_path_constraint(self.constraints.truthy(cond))
        elif not cond.to_bool():
            raise EvalError.assumption_not_held()

    # Bulk memory

    def _copy(self, call: IntrinsicCall):
        ty = self._elem_type(call)
        count = self._concrete_count(call, 2)
        src, dest = self._ptr_arg(call, 0), self._ptr_arg(call, 1)
        self.state.memory.copy_bytes(src, dest, ty.size() * count, ty.align())

    def _write_bytes(self, call: IntrinsicCall):
        ty = self._elem_type(call)
        dest = self._ptr_arg(call, 0)
        byte = self._prim(call, 1)
        count = self._concrete_count(call, 2)
        if byte.is_abstract():
            cell = byte.cells[0]
        else:
            cell = truncate(byte.to_u128(), 8)
        self.state.memory.write_repeat(dest, cell, ty.size() * count, ty.align())

    def _init(self, call: IntrinsicCall):
        if call.dest is not None:
            self.state.memory.write_repeat(call.dest, 0, call.dest_ty.size())

    def _uninit(self, call: IntrinsicCall):
        if call.dest is not None:
            self.state.memory.mark_definedness(call.dest, call.dest_ty.size(), False)

    def _move_val_init(self, call: IntrinsicCall):
        ptr = self._ptr_arg(call, 0)
        self.state.write_value(ptr, call.args[1].value, call.args[1].ty)

    def _transmute(self, call: IntrinsicCall):
        if call.dest is None:
            return
        src = call.args[0]
        size = call.dest_ty.size()
        if src.ty.size() != size:
            raise EvalError.type_error(
                f"transmute between types of different size: {src.ty.name} ({src.ty.size()}) "
                f"and {call.dest_ty.name} ({size})"
            )
        self.state.memory.mark_packed(call.dest, size)
        self.state.write_value(call.dest, src.value, src.ty, check_align=False)

    # Reflection and layout

    def _static_layout(self, call: IntrinsicCall):
        ty = call.type_arg(0)
        if call.intrinsic == Intrinsic.SIZE_OF:
            self._write_usize(call, ty.size())
        else:
            self._write_usize(call, ty.align())

    def _dynamic_layout(self, call: IntrinsicCall):
        arg = call.args[0]
        ty = call.type_args[0] if call.type_args else pointee_type(arg.ty)
        length = None
        if not ty.is_sized():
            if not arg.value.is_by_val_pair():
                raise EvalError.type_error(f"{call.name} of an unsized value without length")
            meta = arg.value.payload[1]
            if meta.is_abstract():
                raise EvalError.unimplemented(f"{call.name} with a symbolic length")
            length = meta.to_u64()
        size, align = size_and_align_of_dst(ty, length)
        self._write_usize(call, size if call.intrinsic == Intrinsic.SIZE_OF_VAL else align)

    def _type_name(self, call: IntrinsicCall):
        name = call.type_arg(0).name.encode("utf-8")
        ptr = self.state.memory.allocate_static_bytes(name)
        if call.dest is not None:
            self.state.write_pair(call.dest, PrimVal.ptr(ptr), PrimVal.from_u128(len(name)), STR_REF)

    def _type_id(self, call: IntrinsicCall):
        self._write_result(call, PrimVal.from_u128(type_id_hash(call.type_arg(0))))

    def _needs_drop(self, call: IntrinsicCall):
        self._write_result(call, PrimVal.from_bool(call.type_arg(0).needs_drop()))

    # Float math

    def _float_math(self, call: IntrinsicCall):
        name = call.intrinsic.value
        kind = PrimValKind.F32 if name.endswith("f32") else PrimValKind.F64
        base = name[:-3]
        args = [self._prim(call, i) for i in range(len(call.args))]
        if any(a.is_abstract() for a in args):
            raise EvalError.unimplemented(f"{name} on a symbolic operand")
        if any(a.is_undef() for a in args):
            self._write_result(call, PrimVal.undef())
            return

        def as_float(val: PrimVal) -> float:
            return val.to_f32() if kind == PrimValKind.F32 else val.to_f64()

        if base == "fma":
            result = _fma(as_float(args[0]), as_float(args[1]), as_float(args[2]), kind)
            self._write_result(call, result)
            return
        if base == "pow":
            value = _pow(as_float(args[0]), as_float(args[1]))
        elif base == "powi":
            value = _pow(as_float(args[0]), float(args[1].to_i128()))
        else:
            value = _UNARY_MATH[base](as_float(args[0]))
        self._write_result(call, PrimVal.from_f32(value) if kind == PrimValKind.F32 else PrimVal.from_f64(value))

    # Hints

    def _hint(self, call: IntrinsicCall):
        self._write_result(call, self._prim(call, 0))

    def _no_op(self, call: IntrinsicCall):
        pass

    def _unimplemented(self, call: IntrinsicCall):
        raise EvalError.unimplemented(f"unimplemented intrinsic: {call.name}")


def bswap(val: PrimVal, kind: PrimValKind) -> PrimVal:
    """Reverse the byte order; symbolic values are permuted cell by cell."""
    if val.is_undef():
        return val
    if val.is_abstract():
        return PrimVal.abstract(tuple(reversed(val.cells)))
    n = truncate(val.to_u128(), kind.bits)
    swapped = int.from_bytes(n.to_bytes(kind.num_bytes, "little"), "big")
    return PrimVal.from_bits(swapped, kind)
