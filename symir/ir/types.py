"""
IR type system with static layout information.

Targets a 64-bit little-endian platform. Aggregates use C-style layout:
fields in declaration order, each aligned to its own alignment, total size
rounded up to the aggregate's alignment. A struct or tuple whose last field
is unsized (slice, str, or another unsized aggregate) is itself unsized.
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import EvalError
from ..z3model.values import POINTER_SIZE, PrimValKind


def align_up(size: int, align: int) -> int:
    return (size + align - 1) & -align


@dataclass(frozen=True)
class Layout:
    """Size (None if unsized) and ABI alignment of a type."""
    size: Optional[int]
    align: int

    @property
    def is_unsized(self) -> bool:
        return self.size is None


class TypeCategory(Enum):
    """Coarse classification used by cast dispatch."""
    INT = "int"
    BOOL = "bool"
    CHAR = "char"
    FLOAT = "float"
    RAW_PTR = "raw_ptr"
    REF = "ref"
    FN_PTR = "fn_ptr"
    AGGREGATE = "aggregate"
    UNSIZED = "unsized"


class Ty:
    """Base class of IR types."""

    category = TypeCategory.AGGREGATE

    @property
    def name(self) -> str:
        raise NotImplementedError

    def layout(self) -> Layout:
        raise NotImplementedError

    def is_sized(self) -> bool:
        return not self.layout().is_unsized

    def size(self) -> int:
        """Static size in bytes; errors for unsized types."""
        layout = self.layout()
        if layout.size is None:
            raise EvalError.type_error(f"size of unsized type {self.name}")
        return layout.size

    def align(self) -> int:
        return self.layout().align

    def needs_drop(self) -> bool:
        return False

    def is_unit(self) -> bool:
        return False

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class IntTy(Ty):
    """Fixed-width integer. `pointer_sized` marks isize/usize."""
    bits: int
    signed: bool
    pointer_sized: bool = False

    category = TypeCategory.INT

    @property
    def name(self) -> str:
        if self.pointer_sized:
            return "isize" if self.signed else "usize"
        return f"{'i' if self.signed else 'u'}{self.bits}"

    def layout(self) -> Layout:
        n = self.bits // 8
        return Layout(n, min(n, 16))


@dataclass(frozen=True)
class BoolTy(Ty):
    category = TypeCategory.BOOL

    @property
    def name(self) -> str:
        return "bool"

    def layout(self) -> Layout:
        return Layout(1, 1)


@dataclass(frozen=True)
class CharTy(Ty):
    category = TypeCategory.CHAR

    @property
    def name(self) -> str:
        return "char"

    def layout(self) -> Layout:
        return Layout(4, 4)


@dataclass(frozen=True)
class FloatTy(Ty):
    bits: int

    category = TypeCategory.FLOAT

    @property
    def name(self) -> str:
        return f"f{self.bits}"

    def layout(self) -> Layout:
        n = self.bits // 8
        return Layout(n, n)


def _pointer_layout(pointee: Ty) -> Layout:
    if pointee.is_sized():
        return Layout(POINTER_SIZE, POINTER_SIZE)
    # Fat pointer: data pointer + length
    return Layout(2 * POINTER_SIZE, POINTER_SIZE)


@dataclass(frozen=True)
class RawPtrTy(Ty):
    pointee: Ty
    mutable: bool = False

    category = TypeCategory.RAW_PTR

    @property
    def name(self) -> str:
        return f"*{'mut' if self.mutable else 'const'} {self.pointee.name}"

    def layout(self) -> Layout:
        return _pointer_layout(self.pointee)


@dataclass(frozen=True)
class RefTy(Ty):
    pointee: Ty
    mutable: bool = False

    category = TypeCategory.REF

    @property
    def name(self) -> str:
        return f"&{'mut ' if self.mutable else ''}{self.pointee.name}"

    def layout(self) -> Layout:
        return _pointer_layout(self.pointee)


@dataclass(frozen=True)
class FnPtrTy(Ty):
    signature: str = "fn()"

    category = TypeCategory.FN_PTR

    @property
    def name(self) -> str:
        return self.signature

    def layout(self) -> Layout:
        return Layout(POINTER_SIZE, POINTER_SIZE)


@dataclass(frozen=True)
class SliceTy(Ty):
    elem: Ty

    category = TypeCategory.UNSIZED

    @property
    def name(self) -> str:
        return f"[{self.elem.name}]"

    def layout(self) -> Layout:
        return Layout(None, self.elem.align())


@dataclass(frozen=True)
class StrTy(Ty):
    category = TypeCategory.UNSIZED

    @property
    def name(self) -> str:
        return "str"

    def layout(self) -> Layout:
        return Layout(None, 1)


@dataclass(frozen=True)
class ArrayTy(Ty):
    elem: Ty
    length: int

    @property
    def name(self) -> str:
        return f"[{self.elem.name}; {self.length}]"

    def layout(self) -> Layout:
        return Layout(self.elem.size() * self.length, self.elem.align())

    def needs_drop(self) -> bool:
        return self.length > 0 and self.elem.needs_drop()


def _aggregate_layout(fields: tuple) -> tuple[list[int], Layout]:
    offsets = []
    offset = 0
    align = 1
    for i, field_ty in enumerate(fields):
        layout = field_ty.layout()
        offset = align_up(offset, layout.align)
        offsets.append(offset)
        align = max(align, layout.align)
        if layout.size is None:
            if i != len(fields) - 1:
                raise EvalError.type_error("only the last field of an aggregate may be unsized")
            return offsets, Layout(None, align)
        offset += layout.size
    return offsets, Layout(align_up(offset, align), align)


@dataclass(frozen=True)
class TupleTy(Ty):
    fields: tuple = ()

    @property
    def name(self) -> str:
        if len(self.fields) == 1:
            return f"({self.fields[0].name},)"
        return "(" + ", ".join(f.name for f in self.fields) + ")"

    def layout(self) -> Layout:
        return _aggregate_layout(self.fields)[1]

    def field_offsets(self) -> list[int]:
        return _aggregate_layout(self.fields)[0]

    def field_types(self) -> tuple:
        return self.fields

    def needs_drop(self) -> bool:
        return any(f.needs_drop() for f in self.fields)

    def is_unit(self) -> bool:
        return not self.fields


@dataclass(frozen=True)
class StructTy(Ty):
    """Named struct. `fields` is a tuple of (name, type) pairs."""
    struct_name: str
    fields: tuple = ()
    has_drop_glue: bool = False

    @property
    def name(self) -> str:
        return self.struct_name

    def layout(self) -> Layout:
        return _aggregate_layout(self.field_types())[1]

    def field_offsets(self) -> list[int]:
        return _aggregate_layout(self.field_types())[0]

    def field_types(self) -> tuple:
        return tuple(ty for _, ty in self.fields)

    def needs_drop(self) -> bool:
        return self.has_drop_glue or any(ty.needs_drop() for ty in self.field_types())


# Common types
I8 = IntTy(8, True)
I16 = IntTy(16, True)
I32 = IntTy(32, True)
I64 = IntTy(64, True)
I128 = IntTy(128, True)
ISIZE = IntTy(64, True, pointer_sized=True)
U8 = IntTy(8, False)
U16 = IntTy(16, False)
U32 = IntTy(32, False)
U64 = IntTy(64, False)
U128 = IntTy(128, False)
USIZE = IntTy(64, False, pointer_sized=True)
BOOL = BoolTy()
CHAR = CharTy()
F32 = FloatTy(32)
F64 = FloatTy(64)
UNIT = TupleTy(())
STR_REF = RefTy(StrTy())
BYTE_SLICE_REF = RefTy(SliceTy(U8))


def is_fat_pointer(ty: Ty) -> bool:
    """True for references/raw pointers to unsized types."""
    return isinstance(ty, (RefTy, RawPtrTy)) and not ty.pointee.is_sized()


def is_primitive(ty: Ty) -> bool:
    return ty.category not in (TypeCategory.AGGREGATE, TypeCategory.UNSIZED) and not is_fat_pointer(ty)


def ty_to_primval_kind(ty: Ty) -> PrimValKind:
    """Primitive kind of a scalar type; errors for aggregates and fat pointers."""
    if isinstance(ty, IntTy):
        return PrimValKind.from_int_size(ty.bits // 8, ty.signed)
    if isinstance(ty, BoolTy):
        return PrimValKind.BOOL
    if isinstance(ty, CharTy):
        return PrimValKind.CHAR
    if isinstance(ty, FloatTy):
        return PrimValKind.F32 if ty.bits == 32 else PrimValKind.F64
    if isinstance(ty, FnPtrTy):
        return PrimValKind.FN_PTR
    if isinstance(ty, (RefTy, RawPtrTy)) and ty.pointee.is_sized():
        return PrimValKind.PTR
    raise EvalError.type_error(f"{ty.name} is not a primitive type")


def type_id_hash(ty: Ty) -> int:
    """Stable 64-bit identity hash of a type."""
    digest = hashlib.sha256(ty.name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "little")
