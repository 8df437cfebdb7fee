"""
Tests for the primitive value representation.
"""

import math

import pytest

from symir.errors import ErrorKind, EvalError
from symir.z3model.values import (
    AbstractByte, MemoryPointer, PrimVal, PrimValKind, Value, sign_extend, truncate,
)


class TestBitHelpers:

    def test_truncate_keeps_low_bits(self):
        assert truncate(0x1FF, 8) == 0xFF
        assert truncate(-1, 16) == 0xFFFF

    def test_sign_extend(self):
        assert sign_extend(0xFF, 8) == -1
        assert sign_extend(0x7F, 8) == 127
        assert sign_extend(0x8000, 16) == -32768


class TestPrimValKind:

    def test_widths(self):
        assert PrimValKind.U8.bits == 8
        assert PrimValKind.I128.num_bytes == 16
        assert PrimValKind.PTR.num_bytes == 8
        assert PrimValKind.CHAR.num_bytes == 4

    def test_classification(self):
        assert PrimValKind.I32.is_signed_int()
        assert not PrimValKind.U32.is_signed_int()
        assert PrimValKind.F64.is_float()
        assert not PrimValKind.BOOL.is_int()

    def test_from_int_size(self):
        assert PrimValKind.from_int_size(2, True) == PrimValKind.I16
        assert PrimValKind.from_int_size(8, False) == PrimValKind.U64
        with pytest.raises(EvalError):
            PrimValKind.from_int_size(3, False)


class TestPrimVal:

    def test_signed_values_are_sign_extended(self):
        val = PrimVal.from_bits(0xFF, PrimValKind.I8)
        assert val.to_i128() == -1
        assert val.to_u128() == (1 << 128) - 1

    def test_unsigned_values_are_truncated(self):
        val = PrimVal.from_bits(0x1234, PrimValKind.U8)
        assert val.to_u128() == 0x34

    def test_bool_conversion(self):
        assert PrimVal.from_bool(True).to_bool() is True
        assert PrimVal.from_bool(False).to_bool() is False
        with pytest.raises(EvalError) as exc:
            PrimVal.bytes(2).to_bool()
        assert exc.value.kind == ErrorKind.TYPE_ERROR

    def test_float_round_trip(self):
        assert PrimVal.from_f64(1.5).to_f64() == 1.5
        assert PrimVal.from_f32(0.25).to_f32() == 0.25
        assert math.isinf(PrimVal.from_f32(1e300).to_f32())

    def test_pointer_read_as_bytes(self):
        val = PrimVal.ptr(MemoryPointer(1, 0))
        with pytest.raises(EvalError) as exc:
            val.to_u128()
        assert exc.value.kind == ErrorKind.READ_POINTER_AS_BYTES

    def test_undef_read(self):
        with pytest.raises(EvalError) as exc:
            PrimVal.undef().to_u128()
        assert exc.value.kind == ErrorKind.READ_UNDEF_BYTES

    def test_integer_used_as_pointer(self):
        with pytest.raises(EvalError) as exc:
            PrimVal.bytes(0).to_ptr()
        assert exc.value.kind == ErrorKind.INVALID_POINTER_MATH

    def test_abstract_needs_concrete(self):
        val = PrimVal.abstract([AbstractByte(0)])
        with pytest.raises(EvalError) as exc:
            val.to_u128()
        assert exc.value.kind == ErrorKind.UNIMPLEMENTED

    def test_from_cells_collapses_concrete(self):
        val = PrimVal.from_cells([0x34, 0x12], PrimValKind.U16)
        assert val.is_bytes()
        assert val.to_u128() == 0x1234

    def test_from_cells_keeps_symbolic(self):
        val = PrimVal.from_cells([AbstractByte(3), 0], PrimValKind.U16)
        assert val.is_abstract()
        assert val.cells == (AbstractByte(3), 0)

    def test_cells_of_a_concrete_value(self):
        with pytest.raises(EvalError) as exc:
            PrimVal.bytes(5).cells
        assert exc.value.kind == ErrorKind.TYPE_ERROR
        assert "bytes" in exc.value.message

    def test_equality_and_hash(self):
        assert PrimVal.bytes(5) == PrimVal.from_u128(5)
        assert hash(PrimVal.bytes(5)) == hash(PrimVal.from_u128(5))
        assert PrimVal.undef() != PrimVal.bytes(0)


class TestMemoryPointer:

    def test_offset_by_wraps(self):
        ptr = MemoryPointer(1, 4).offset_by(4)
        assert ptr == MemoryPointer(1, 8)

    def test_symbolic_offset(self):
        sym = PrimVal.abstract([AbstractByte(0)] * 8)
        ptr = MemoryPointer.with_primval_offset(2, sym)
        assert not ptr.has_concrete_offset()
        assert ptr.offset_as_primval() == sym
        with pytest.raises(EvalError):
            ptr.offset_by(1)

    def test_concrete_primval_offset(self):
        ptr = MemoryPointer.with_primval_offset(2, PrimVal.from_u128(12))
        assert ptr == MemoryPointer(2, 12)


class TestValue:

    def test_tags(self):
        assert Value.by_val(PrimVal.bytes(1)).is_by_val()
        assert Value.by_val_pair(PrimVal.bytes(1), PrimVal.bytes(2)).is_by_val_pair()
        assert Value.by_ref(MemoryPointer(1)).is_by_ref()
