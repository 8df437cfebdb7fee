"""
Tests for the byte-level memory model.
"""

import pytest

from symir.errors import ErrorKind, EvalError
from symir.z3model.memory import Memory, MemoryKind
from symir.z3model.values import AbstractByte, MemoryPointer, PrimVal, PrimValKind


class TestAllocation:

    def test_allocate_tracks_usage(self, memory):
        ptr = memory.allocate(16, 8)
        assert memory.memory_usage == 16
        assert memory.is_live(ptr.alloc_id)
        memory.deallocate(ptr)
        assert memory.memory_usage == 0
        assert not memory.is_live(ptr.alloc_id)

    def test_memory_limit(self):
        memory = Memory(32)
        memory.allocate(24, 8)
        with pytest.raises(EvalError) as exc:
            memory.allocate(16, 8)
        assert exc.value.kind == ErrorKind.MEMORY_LIMIT

    def test_invalid_alignment(self, memory):
        with pytest.raises(EvalError) as exc:
            memory.allocate(4, 3)
        assert exc.value.kind == ErrorKind.ALIGNMENT

    def test_double_free(self, memory):
        ptr = memory.allocate(4, 4)
        memory.deallocate(ptr)
        with pytest.raises(EvalError) as exc:
            memory.deallocate(ptr)
        assert exc.value.kind == ErrorKind.DANGLING_POINTER

    def test_dealloc_interior_pointer(self, memory):
        ptr = memory.allocate(4, 4)
        with pytest.raises(EvalError) as exc:
            memory.deallocate(ptr.offset_by(1))
        assert exc.value.kind == ErrorKind.DANGLING_POINTER

    def test_dealloc_wrong_kind(self, memory):
        ptr = memory.allocate(4, 4, MemoryKind.STACK)
        with pytest.raises(EvalError):
            memory.deallocate(ptr, MemoryKind.HEAP)

    def test_static_memory_cannot_be_freed(self, memory):
        ptr = memory.allocate_static_bytes(b"hi")
        with pytest.raises(EvalError):
            memory.deallocate(ptr)

    def test_leak_report_skips_static(self, memory):
        memory.allocate_static_bytes(b"hello")
        memory.allocate(12, 4)
        memory.allocate(4, 4, MemoryKind.STACK)
        assert memory.leak_report() == 16

    def test_abstract_allocation(self, memory):
        ptr = memory.allocate_abstract(3)
        cells = memory.read_bytes(ptr, 3)
        assert cells == [AbstractByte(0), AbstractByte(1), AbstractByte(2)]
        assert memory.constraints.num_abstract_bytes == 3


class TestAccess:

    def test_fresh_memory_is_undefined(self, memory):
        ptr = memory.allocate(4, 4)
        assert memory.read_primval(ptr, 4, PrimValKind.U32, 4).is_undef()
        with pytest.raises(EvalError) as exc:
            memory.read_bytes(ptr, 4)
        assert exc.value.kind == ErrorKind.READ_UNDEF_BYTES

    def test_write_then_read(self, memory):
        ptr = memory.allocate(4, 4)
        memory.write_primval(ptr, PrimVal.from_u128(0xDEADBEEF), 4, 4)
        assert memory.read_bytes(ptr, 4) == [0xEF, 0xBE, 0xAD, 0xDE]
        assert memory.read_primval(ptr, 4, PrimValKind.U32, 4).to_u128() == 0xDEADBEEF

    def test_out_of_bounds(self, memory):
        ptr = memory.allocate(4, 4)
        with pytest.raises(EvalError) as exc:
            memory.read_primval(ptr.offset_by(2), 4, PrimValKind.U32)
        assert exc.value.kind == ErrorKind.OUT_OF_BOUNDS

    def test_misaligned_access(self, memory):
        ptr = memory.allocate(8, 4)
        with pytest.raises(EvalError) as exc:
            memory.write_primval(ptr.offset_by(2), PrimVal.from_u128(1), 4, 4)
        assert exc.value.kind == ErrorKind.ALIGNMENT

    def test_packed_range_skips_alignment(self, memory):
        ptr = memory.allocate(8, 4)
        memory.mark_packed(ptr.offset_by(2), 4)
        memory.write_primval(ptr.offset_by(2), PrimVal.from_u128(1), 4, 4)
        assert memory.read_primval(ptr.offset_by(2), 4, PrimValKind.U32, 4).to_u128() == 1

    def test_dangling_access(self, memory):
        ptr = memory.allocate(4, 4)
        memory.deallocate(ptr)
        with pytest.raises(EvalError) as exc:
            memory.read_bytes(ptr, 1)
        assert exc.value.kind == ErrorKind.DANGLING_POINTER

    def test_symbolic_offset_access_is_unimplemented(self, memory):
        ptr = memory.allocate(4, 4)
        sym = MemoryPointer.with_primval_offset(ptr.alloc_id, PrimVal.abstract([AbstractByte(0)] * 8))
        with pytest.raises(EvalError) as exc:
            memory.read_bytes(sym, 1)
        assert exc.value.kind == ErrorKind.UNIMPLEMENTED


class TestPointers:

    def test_stored_pointer_reads_back(self, memory):
        slot = memory.allocate(8, 8)
        target = memory.allocate(4, 4)
        memory.write_primval(slot, PrimVal.ptr(target.offset_by(2)), 8, 8)
        assert memory.read_primval(slot, 8, PrimValKind.PTR, 8) == PrimVal.ptr(target.offset_by(2))

    def test_partial_pointer_read(self, memory):
        slot = memory.allocate(8, 8)
        memory.write_primval(slot, PrimVal.ptr(MemoryPointer(99, 0)), 8, 8)
        with pytest.raises(EvalError) as exc:
            memory.read_primval(slot, 4, PrimValKind.U32, 4)
        assert exc.value.kind == ErrorKind.READ_POINTER_AS_BYTES

    def test_overwrite_clears_pointer(self, memory):
        slot = memory.allocate(8, 8)
        memory.write_primval(slot, PrimVal.ptr(MemoryPointer(99, 0)), 8, 8)
        memory.write_primval(slot, PrimVal.from_u128(7), 8, 8)
        assert memory.read_primval(slot, 8, PrimValKind.U64, 8).to_u128() == 7

    def test_copy_moves_relocations(self, memory):
        src = memory.allocate(16, 8)
        dest = memory.allocate(16, 8)
        memory.write_primval(src, PrimVal.ptr(MemoryPointer(99, 1)), 8, 8)
        memory.write_primval(src.offset_by(8), PrimVal.from_u128(5), 8, 8)
        memory.copy_bytes(src, dest, 16, 8)
        assert memory.read_primval(dest, 8, PrimValKind.PTR, 8) == PrimVal.ptr(MemoryPointer(99, 1))
        assert memory.read_primval(dest.offset_by(8), 8, PrimValKind.U64, 8).to_u128() == 5


class TestForking:

    def test_copy_is_independent(self, memory):
        ptr = memory.allocate(1, 1)
        memory.write_bytes(ptr, [1])
        other = memory.copy()
        other.write_bytes(ptr, [2])
        other.allocate(4, 4)
        assert memory.read_bytes(ptr, 1) == [1]
        assert other.read_bytes(ptr, 1) == [2]
        assert memory.next_alloc_id != other.next_alloc_id

    def test_make_symbolic(self, memory):
        ptr = memory.allocate(2, 2)
        memory.make_symbolic(ptr, 2)
        val = memory.read_primval(ptr, 2, PrimValKind.U16, 2)
        assert val.is_abstract()
        assert memory.constraints.num_abstract_bytes == 2

    def test_mark_undefined(self, memory):
        ptr = memory.allocate(2, 2)
        memory.write_bytes(ptr, [1, 2])
        memory.mark_definedness(ptr, 2, False)
        assert memory.read_primval(ptr, 2, PrimValKind.U16, 2).is_undef()
