"""
Tagged primitive value representation for symbolic execution with Z3.

A primitive value is one machine word, tagged as one of:
- BYTES: a concrete bit pattern
- PTR: a (memory region, offset) pair
- UNDEF: uninitialized memory
- ABSTRACT: little-endian byte cells, each concrete or a placeholder
  variable owned by the constraint store

Concrete bit patterns are unsigned 128-bit integers. Signed kinds are kept
sign-extended to 128 bits so that reinterpreting the pattern as i128
recovers the signed value.
"""

import math
import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Sequence, Union

from ..errors import ErrorKind, EvalError


MASK128 = (1 << 128) - 1
POINTER_SIZE = 8


def truncate(value: int, bits: int) -> int:
    """Keep the low `bits` bits of value."""
    return value & ((1 << bits) - 1)


def sign_extend(value: int, bits: int) -> int:
    """Interpret the low `bits` bits of value as two's complement."""
    value = truncate(value, bits)
    if value >> (bits - 1):
        return value - (1 << bits)
    return value


@dataclass(frozen=True)
class AbstractByte:
    """A symbolic byte placeholder; `index` names a variable in the constraint store."""
    index: int

    def __repr__(self):
        return f"sb{self.index}"


# A cell of an abstract value: concrete byte (0..255) or placeholder
SByte = Union[int, AbstractByte]


class PrimValKind(Enum):
    """Machine-level kind of a primitive value."""
    I8 = ("i8", 1, True)
    I16 = ("i16", 2, True)
    I32 = ("i32", 4, True)
    I64 = ("i64", 8, True)
    I128 = ("i128", 16, True)
    U8 = ("u8", 1, False)
    U16 = ("u16", 2, False)
    U32 = ("u32", 4, False)
    U64 = ("u64", 8, False)
    U128 = ("u128", 16, False)
    F32 = ("f32", 4, False)
    F64 = ("f64", 8, False)
    BOOL = ("bool", 1, False)
    CHAR = ("char", 4, False)
    PTR = ("ptr", POINTER_SIZE, False)
    FN_PTR = ("fnptr", POINTER_SIZE, False)

    def __init__(self, label: str, num_bytes: int, signed: bool):
        self.label = label
        self.num_bytes = num_bytes
        self.signed = signed

    @property
    def bits(self) -> int:
        return self.num_bytes * 8

    def is_int(self) -> bool:
        return self in _INT_KINDS

    def is_signed_int(self) -> bool:
        return self.is_int() and self.signed

    def is_float(self) -> bool:
        return self in (PrimValKind.F32, PrimValKind.F64)

    @staticmethod
    def from_int_size(num_bytes: int, signed: bool) -> 'PrimValKind':
        for kind in _INT_KINDS:
            if kind.num_bytes == num_bytes and kind.signed == signed:
                return kind
        raise EvalError.unimplemented(f"no integer kind of {num_bytes} bytes")

    def __repr__(self):
        return f"PrimValKind.{self.name}"


_INT_KINDS = (
    PrimValKind.I8, PrimValKind.I16, PrimValKind.I32, PrimValKind.I64, PrimValKind.I128,
    PrimValKind.U8, PrimValKind.U16, PrimValKind.U32, PrimValKind.U64, PrimValKind.U128,
)


@dataclass(frozen=True)
class MemoryPointer:
    """
    Pointer into an allocation.

    `offset` is the concrete byte offset. After symbolic pointer arithmetic
    the offset is carried in `symbolic_offset` (an abstract PrimVal) and
    `offset` is meaningless.
    """
    alloc_id: int
    offset: int = 0
    symbolic_offset: Optional['PrimVal'] = None

    def has_concrete_offset(self) -> bool:
        return self.symbolic_offset is None

    def offset_as_primval(self) -> 'PrimVal':
        if self.symbolic_offset is not None:
            return self.symbolic_offset
        return PrimVal.from_u128(self.offset)

    def offset_by(self, delta: int) -> 'MemoryPointer':
        if not self.has_concrete_offset():
            raise EvalError.unimplemented("concrete offset of a pointer with symbolic offset")
        return MemoryPointer(self.alloc_id, truncate(self.offset + delta, 64))

    @staticmethod
    def with_primval_offset(alloc_id: int, offset: 'PrimVal') -> 'MemoryPointer':
        if offset.is_bytes():
            return MemoryPointer(alloc_id, truncate(offset.payload, 64))
        return MemoryPointer(alloc_id, 0, symbolic_offset=offset)

    def __repr__(self):
        if self.symbolic_offset is not None:
            return f"alloc{self.alloc_id}+{self.symbolic_offset!r}"
        return f"alloc{self.alloc_id}+{self.offset}"


class PrimValTag(IntEnum):
    """Primitive value tags."""
    BYTES = 0
    PTR = 1
    UNDEF = 2
    ABSTRACT = 3


class PrimVal:
    """
    A primitive machine value.

    Represents a tagged value: (tag, payload).
    - BYTES: payload is an unsigned 128-bit int
    - PTR: payload is a MemoryPointer
    - UNDEF: payload is None
    - ABSTRACT: payload is a tuple of SByte cells (low byte first)

    Instances are immutable, so forked states may share them freely.
    """

    __slots__ = ("tag", "payload")

    def __init__(self, tag: PrimValTag, payload):
        self.tag = tag
        self.payload = payload

    @staticmethod
    def bytes(value: int) -> 'PrimVal':
        return PrimVal(PrimValTag.BYTES, value & MASK128)

    @staticmethod
    def ptr(pointer: MemoryPointer) -> 'PrimVal':
        return PrimVal(PrimValTag.PTR, pointer)

    @staticmethod
    def undef() -> 'PrimVal':
        return _UNDEF

    @staticmethod
    def abstract(cells: Sequence[SByte]) -> 'PrimVal':
        return PrimVal(PrimValTag.ABSTRACT, tuple(cells))

    @staticmethod
    def from_cells(cells: Sequence[SByte], kind: PrimValKind) -> 'PrimVal':
        """Value of `kind` from cells; collapses to BYTES when every cell is concrete."""
        cells = tuple(cells)
        if all(isinstance(c, int) for c in cells):
            return PrimVal.from_bits(int.from_bytes(bytes(cells), "little"), kind)
        return PrimVal(PrimValTag.ABSTRACT, cells)

    @staticmethod
    def from_bool(b: bool) -> 'PrimVal':
        return PrimVal.bytes(1 if b else 0)

    @staticmethod
    def from_u128(n: int) -> 'PrimVal':
        return PrimVal.bytes(n)

    @staticmethod
    def from_i128(n: int) -> 'PrimVal':
        return PrimVal.bytes(n & MASK128)

    @staticmethod
    def from_f32(f: float) -> 'PrimVal':
        try:
            packed = struct.pack("<f", f)
        except OverflowError:
            # Finite double beyond binary32 range rounds to infinity
            packed = struct.pack("<f", math.copysign(math.inf, f))
        return PrimVal.bytes(struct.unpack("<I", packed)[0])

    @staticmethod
    def from_f64(f: float) -> 'PrimVal':
        return PrimVal.bytes(struct.unpack("<Q", struct.pack("<d", f))[0])

    @staticmethod
    def from_bits(bits: int, kind: PrimValKind) -> 'PrimVal':
        """Concrete value of `kind` from its raw bit pattern, sign-extended if signed."""
        if kind.is_signed_int():
            return PrimVal.from_i128(sign_extend(bits, kind.bits))
        return PrimVal.bytes(truncate(bits, kind.bits))

    def is_bytes(self) -> bool:
        return self.tag == PrimValTag.BYTES

    def is_ptr(self) -> bool:
        return self.tag == PrimValTag.PTR

    def is_undef(self) -> bool:
        return self.tag == PrimValTag.UNDEF

    def is_abstract(self) -> bool:
        return self.tag == PrimValTag.ABSTRACT

    def is_concrete(self) -> bool:
        return self.tag == PrimValTag.BYTES

    @property
    def cells(self) -> tuple:
        if not self.is_abstract():
            raise EvalError.type_error(f"expected an abstract value, got {self.tag.name.lower()}")
        return self.payload

    def to_u128(self) -> int:
        if self.tag == PrimValTag.BYTES:
            return self.payload
        if self.tag == PrimValTag.PTR:
            raise EvalError.read_pointer_as_bytes()
        if self.tag == PrimValTag.UNDEF:
            raise EvalError.read_undef_bytes()
        raise EvalError.unimplemented("concrete value required for symbolic operand")

    def to_i128(self) -> int:
        return sign_extend(self.to_u128(), 128)

    def to_u64(self) -> int:
        return truncate(self.to_u128(), 64)

    def to_i64(self) -> int:
        return sign_extend(self.to_u128(), 64)

    def to_bool(self) -> bool:
        value = self.to_u128()
        if value == 0:
            return False
        if value == 1:
            return True
        raise EvalError.type_error(f"invalid boolean value read: {value}")

    def to_f32(self) -> float:
        return struct.unpack("<f", struct.pack("<I", truncate(self.to_u128(), 32)))[0]

    def to_f64(self) -> float:
        return struct.unpack("<d", struct.pack("<Q", truncate(self.to_u128(), 64)))[0]

    def to_ptr(self) -> MemoryPointer:
        if self.tag == PrimValTag.PTR:
            return self.payload
        if self.tag == PrimValTag.UNDEF:
            raise EvalError.read_undef_bytes()
        raise EvalError(ErrorKind.INVALID_POINTER_MATH, f"integer {self.payload!r} used as a pointer")

    def __eq__(self, other):
        if not isinstance(other, PrimVal):
            return NotImplemented
        return self.tag == other.tag and self.payload == other.payload

    def __hash__(self):
        return hash((self.tag, self.payload))

    def __repr__(self):
        if self.tag == PrimValTag.BYTES:
            return f"Bytes({self.payload:#x})"
        if self.tag == PrimValTag.PTR:
            return f"Ptr({self.payload!r})"
        if self.tag == PrimValTag.UNDEF:
            return "Undef"
        return f"Abstract({list(self.payload)!r})"


_UNDEF = PrimVal(PrimValTag.UNDEF, None)


class ValueTag(IntEnum):
    """How an operand is held."""
    BY_VAL = 0
    BY_VAL_PAIR = 1
    BY_REF = 2


class Value:
    """
    An operand value.

    - BY_VAL: one primitive
    - BY_VAL_PAIR: two primitives (fat pointer: data pointer + length)
    - BY_REF: the value lives in memory at the given pointer
    """

    __slots__ = ("tag", "payload")

    def __init__(self, tag: ValueTag, payload):
        self.tag = tag
        self.payload = payload

    @staticmethod
    def by_val(val: PrimVal) -> 'Value':
        return Value(ValueTag.BY_VAL, val)

    @staticmethod
    def by_val_pair(first: PrimVal, second: PrimVal) -> 'Value':
        return Value(ValueTag.BY_VAL_PAIR, (first, second))

    @staticmethod
    def by_ref(ptr: MemoryPointer) -> 'Value':
        return Value(ValueTag.BY_REF, ptr)

    def is_by_val(self) -> bool:
        return self.tag == ValueTag.BY_VAL

    def is_by_val_pair(self) -> bool:
        return self.tag == ValueTag.BY_VAL_PAIR

    def is_by_ref(self) -> bool:
        return self.tag == ValueTag.BY_REF

    def __repr__(self):
        return f"Value({self.tag.name}, {self.payload!r})"
