"""
Tests for primitive casts.
"""

import pytest

from symir.errors import ErrorKind, EvalError
from symir.ir.types import (
    BOOL, CHAR, F32, F64, I8, I16, I32, I64, I128, ISIZE, U8, U16, U32, U64, U128, USIZE,
    FnPtrTy, RawPtrTy, RefTy, ty_to_primval_kind,
)
from symir.semantics.cast import cast_primval
from symir.z3model.values import MemoryPointer, PrimVal, PrimValKind, sign_extend, truncate

INT_TYPES = [U8, U16, U32, U64, U128, I8, I16, I32, I64, I128]


def _edge_values(bits):
    top = 1 << (bits - 1)
    return sorted({0, 1, 0x7F, 0x80, 0xFF, top - 1, top, top + 1, (1 << bits) - 1})


class TestConcreteCasts:

    @pytest.mark.parametrize("value,src,dest,expected", [
        (300, U16, U8, 44),
        (0xFF, U8, I32, 255),
        (-1, I8, U16, 0xFFFF),
        (-1, I8, I64, -1),
        (1, BOOL, U32, 1),
        (65, CHAR, U8, 65),
    ])
    def test_int_to_int(self, store, value, src, dest, expected):
        kind = PrimValKind.from_int_size(dest.size(), dest.signed)
        src_val = PrimVal.from_bits(value, PrimValKind.I8 if src == I8 else PrimValKind.U128)
        result = cast_primval(store, src_val, src, dest)
        assert result == PrimVal.from_bits(expected, kind)

    @pytest.mark.parametrize("wide", INT_TYPES, ids=lambda t: t.name)
    @pytest.mark.parametrize("narrow", INT_TYPES, ids=lambda t: t.name)
    def test_narrow_and_widen_round_trip(self, store, wide, narrow):
        """Casting down and back up keeps the low bits, re-extended per the narrow type."""
        if narrow.bits > wide.bits:
            pytest.skip("only narrowing round trips")
        wide_kind = ty_to_primval_kind(wide)
        for bits in _edge_values(wide.bits):
            start = PrimVal.from_bits(bits, wide_kind)
            down = cast_primval(store, start, wide, narrow)
            back = cast_primval(store, down, narrow, wide)
            low = truncate(bits, narrow.bits)
            value = sign_extend(low, narrow.bits) if narrow.signed else low
            assert back == PrimVal.from_bits(value, wide_kind), hex(bits)

    def test_u8_to_char(self, store):
        assert cast_primval(store, PrimVal.from_u128(97), U8, CHAR) == PrimVal.from_u128(97)

    def test_invalid_char(self, store):
        with pytest.raises(EvalError) as exc:
            cast_primval(store, PrimVal.from_u128(0x1F600), U32, CHAR)
        assert exc.value.kind == ErrorKind.INVALID_CHAR

    def test_int_to_float_rounds_to_nearest(self, store):
        assert cast_primval(store, PrimVal.from_u128(3), U32, F64).to_f64() == 3.0
        assert cast_primval(store, PrimVal.from_bits(-2, PrimValKind.I16), I16, F32).to_f32() == -2.0
        # 2**24 + 1 is not representable in binary32
        assert cast_primval(store, PrimVal.from_u128((1 << 24) + 1), U32, F32).to_f32() == float(1 << 24)

    def test_float_source_is_unimplemented(self, store):
        with pytest.raises(EvalError) as exc:
            cast_primval(store, PrimVal.from_f64(1.5), F64, I32)
        assert exc.value.kind == ErrorKind.UNIMPLEMENTED
        assert exc.value.message == "f64 to i32 cast"

    def test_integer_to_raw_pointer(self, store):
        assert cast_primval(store, PrimVal.from_u128(0), USIZE, RawPtrTy(U8)) == PrimVal.from_u128(0)

    def test_undef_passes_through(self, store):
        assert cast_primval(store, PrimVal.undef(), U8, U32).is_undef()


class TestPointerCasts:

    def test_pointer_to_pointer(self, store):
        ptr = PrimVal.ptr(MemoryPointer(3, 4))
        assert cast_primval(store, ptr, RefTy(U32), RawPtrTy(U8)) == ptr
        assert cast_primval(store, ptr, RawPtrTy(U8), FnPtrTy()) == ptr

    def test_pointer_to_usize_keeps_pointer(self, store):
        ptr = PrimVal.ptr(MemoryPointer(3, 4))
        assert cast_primval(store, ptr, RawPtrTy(U8), USIZE) == ptr

    def test_pointer_to_isize_keeps_pointer(self, store):
        ptr = PrimVal.ptr(MemoryPointer(3, 4))
        assert cast_primval(store, ptr, RawPtrTy(U8), ISIZE) == ptr

    @pytest.mark.parametrize("dest", [U64, I64], ids=lambda t: t.name)
    def test_pointer_to_fixed_width_64_bit_int(self, store, dest):
        ptr = PrimVal.ptr(MemoryPointer(3, 4))
        with pytest.raises(EvalError) as exc:
            cast_primval(store, ptr, RawPtrTy(U8), dest)
        assert exc.value.kind == ErrorKind.READ_POINTER_AS_BYTES

    def test_pointer_to_narrow_int(self, store):
        ptr = PrimVal.ptr(MemoryPointer(3, 4))
        with pytest.raises(EvalError) as exc:
            cast_primval(store, ptr, RawPtrTy(U8), U32)
        assert exc.value.kind == ErrorKind.READ_POINTER_AS_BYTES

    def test_pointer_to_float(self, store):
        ptr = PrimVal.ptr(MemoryPointer(3, 4))
        with pytest.raises(EvalError) as exc:
            cast_primval(store, ptr, RawPtrTy(U8), F64)
        assert exc.value.kind == ErrorKind.UNIMPLEMENTED


class TestSymbolicCasts:

    def test_truncation_keeps_low_cells(self, store):
        cells = store.new_abstract_bytes(4)
        result = cast_primval(store, PrimVal.abstract(cells), U32, U8)
        assert result.cells == (cells[0],)

    def test_zero_extension(self, store):
        cells = store.new_abstract_bytes(1)
        result = cast_primval(store, PrimVal.abstract(cells), U8, U32)
        assert result.cells == (cells[0], 0, 0, 0)

    def test_same_width_reinterprets(self, store):
        cells = store.new_abstract_bytes(2)
        result = cast_primval(store, PrimVal.abstract(cells), U16, I16)
        assert result.cells == tuple(cells)

    def test_signed_widening_is_unimplemented(self, store):
        cells = store.new_abstract_bytes(1)
        with pytest.raises(EvalError) as exc:
            cast_primval(store, PrimVal.abstract(cells), I8, I32)
        assert exc.value.kind == ErrorKind.UNIMPLEMENTED

    @pytest.mark.parametrize("flag,expected", [(1, 1), (0, 0)])
    def test_bool_to_int(self, store, flag, expected):
        cells = store.new_abstract_bytes(1)
        result = cast_primval(store, PrimVal.abstract(cells), BOOL, U32)
        assert result.is_abstract()
        store.push_path_constraint(store.variables[0] == flag)
        assert store.witness(result, PrimValKind.U32) == expected

    def test_symbolic_float_target(self, store):
        cells = store.new_abstract_bytes(4)
        with pytest.raises(EvalError) as exc:
            cast_primval(store, PrimVal.abstract(cells), U32, F32)
        assert exc.value.message == "u32 to f32 cast"
