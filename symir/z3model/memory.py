"""
Byte-level memory model.

Memory is a map from allocation id to Allocation. Each allocation is an
array of byte cells (concrete ints or AbstractByte placeholders) with a
definedness bit per byte and a relocation table recording where pointer
values are stored. Identity is separated from content, so pointers are
plain (alloc_id, offset) pairs and aliasing is expressible.

Reads and writes are bounds- and alignment-checked. Reading part of a
stored pointer as bytes fails; reading a whole stored pointer yields the
pointer back.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..errors import ErrorKind, EvalError
from .constraints import ConstraintStore
from .values import POINTER_SIZE, MemoryPointer, PrimVal, PrimValKind, truncate

logger = logging.getLogger(__name__)


class MemoryKind(Enum):
    STACK = "stack"
    HEAP = "heap"
    STATIC = "static"
    ABSTRACT = "abstract"


@dataclass
class Allocation:
    """One contiguous allocation."""
    cells: list
    defined: list
    align: int
    kind: MemoryKind
    relocations: dict = field(default_factory=dict)  # offset -> MemoryPointer
    packed: list = field(default_factory=list)  # (offset, size) ranges exempt from alignment checks

    @property
    def size(self) -> int:
        return len(self.cells)

    def copy(self) -> 'Allocation':
        return Allocation(
            cells=list(self.cells),
            defined=list(self.defined),
            align=self.align,
            kind=self.kind,
            relocations=dict(self.relocations),
            packed=list(self.packed),
        )

    def relocations_in(self, start: int, end: int) -> list:
        """Relocation offsets whose pointer bytes overlap [start, end)."""
        return [off for off in self.relocations if off < end and off + POINTER_SIZE > start]


class Memory:
    """
    All allocations of one execution state plus its constraint store.

    `root_abstract_alloc` is the id of the symbolic input buffer in
    target-function mode; ids are deterministic, so the same id names the
    root buffer in every fork.
    """

    def __init__(self, memory_size: int, constraints: Optional[ConstraintStore] = None):
        self.memory_size = memory_size
        self.memory_usage = 0
        self.allocations: dict[int, Allocation] = {}
        self.next_alloc_id = 1
        self.constraints = constraints if constraints is not None else ConstraintStore()
        self.root_abstract_alloc: Optional[int] = None

    def copy(self) -> 'Memory':
        other = Memory(self.memory_size, self.constraints.copy())
        other.memory_usage = self.memory_usage
        other.allocations = {aid: alloc.copy() for aid, alloc in self.allocations.items()}
        other.next_alloc_id = self.next_alloc_id
        other.root_abstract_alloc = self.root_abstract_alloc
        return other

    # Allocation

    def allocate(self, size: int, align: int, kind: MemoryKind = MemoryKind.HEAP) -> MemoryPointer:
        if align <= 0 or align & (align - 1):
            raise EvalError(ErrorKind.ALIGNMENT, f"invalid alignment {align}")
        if self.memory_usage + size > self.memory_size:
            raise EvalError(
                ErrorKind.MEMORY_LIMIT,
                f"tried to allocate {size} more bytes, but only {self.memory_size - self.memory_usage} bytes are free",
            )
        alloc_id = self.next_alloc_id
        self.next_alloc_id += 1
        self.allocations[alloc_id] = Allocation(
            cells=[0] * size,
            defined=[False] * size,
            align=align,
            kind=kind,
        )
        self.memory_usage += size
        return MemoryPointer(alloc_id, 0)

    def allocate_abstract(self, size: int, align: int = 8) -> MemoryPointer:
        """Allocation whose every byte is a fresh symbolic placeholder."""
        ptr = self.allocate(size, align, MemoryKind.ABSTRACT)
        alloc = self.allocations[ptr.alloc_id]
        alloc.cells = self.constraints.new_abstract_bytes(size)
        alloc.defined = [True] * size
        return ptr

    def allocate_static_bytes(self, data: bytes) -> MemoryPointer:
        ptr = self.allocate(len(data), 1, MemoryKind.STATIC)
        alloc = self.allocations[ptr.alloc_id]
        alloc.cells = list(data)
        alloc.defined = [True] * len(data)
        return ptr

    def deallocate(self, ptr: MemoryPointer, kind: Optional[MemoryKind] = None):
        if not ptr.has_concrete_offset() or ptr.offset != 0:
            raise EvalError(ErrorKind.DANGLING_POINTER, "deallocating a pointer that is not the start of an allocation")
        alloc = self.allocations.get(ptr.alloc_id)
        if alloc is None:
            raise EvalError(ErrorKind.DANGLING_POINTER, f"deallocating alloc{ptr.alloc_id}, which is not live")
        if alloc.kind == MemoryKind.STATIC:
            raise EvalError(ErrorKind.DANGLING_POINTER, "deallocating static memory")
        if kind is not None and alloc.kind != kind:
            raise EvalError(ErrorKind.DANGLING_POINTER, f"deallocating {alloc.kind.value} memory as {kind.value}")
        del self.allocations[ptr.alloc_id]
        self.memory_usage -= alloc.size

    def get(self, alloc_id: int) -> Allocation:
        alloc = self.allocations.get(alloc_id)
        if alloc is None:
            raise EvalError(ErrorKind.DANGLING_POINTER, f"alloc{alloc_id} is not live")
        return alloc

    def is_live(self, alloc_id: int) -> bool:
        return alloc_id in self.allocations

    def leak_report(self) -> int:
        """Bytes held by live non-static allocations."""
        leaked = 0
        for alloc_id, alloc in sorted(self.allocations.items()):
            if alloc.kind == MemoryKind.STATIC:
                continue
            logger.debug(f"[LEAK] alloc{alloc_id} ({alloc.kind.value}, {alloc.size} bytes) still live")
            leaked += alloc.size
        return leaked

    # Checks

    def _checked(self, ptr: MemoryPointer, size: int, align: int = 1) -> Allocation:
        if not ptr.has_concrete_offset():
            raise EvalError.unimplemented("memory access through a pointer with symbolic offset")
        alloc = self.get(ptr.alloc_id)
        if ptr.offset + size > alloc.size:
            raise EvalError(
                ErrorKind.OUT_OF_BOUNDS,
                f"access of {size} bytes at alloc{ptr.alloc_id}+{ptr.offset} outside allocation of {alloc.size} bytes",
            )
        self._check_align(alloc, ptr, size, align)
        return alloc

    def _check_align(self, alloc: Allocation, ptr: MemoryPointer, size: int, align: int):
        if align <= 1:
            return
        for start, length in alloc.packed:
            if start <= ptr.offset and ptr.offset + size <= start + length:
                return
        if alloc.align < align or ptr.offset % align:
            raise EvalError(
                ErrorKind.ALIGNMENT,
                f"access at alloc{ptr.alloc_id}+{ptr.offset} requires alignment {align}",
            )

    def mark_packed(self, ptr: MemoryPointer, size: int):
        """Exempt [ptr, ptr+size) from alignment checks (type-punning writes)."""
        alloc = self._checked(ptr, size)
        alloc.packed.append((ptr.offset, size))

    # Byte access

    def read_bytes(self, ptr: MemoryPointer, size: int, align: int = 1) -> list:
        """Defined, pointer-free byte cells."""
        if size == 0:
            return []
        alloc = self._checked(ptr, size, align)
        end = ptr.offset + size
        if alloc.relocations_in(ptr.offset, end):
            raise EvalError.read_pointer_as_bytes()
        if not all(alloc.defined[ptr.offset:end]):
            raise EvalError.read_undef_bytes()
        return alloc.cells[ptr.offset:end]

    def write_bytes(self, ptr: MemoryPointer, cells, align: int = 1):
        cells = list(cells)
        if not cells:
            return
        alloc = self._checked(ptr, len(cells), align)
        end = ptr.offset + len(cells)
        self._clear_relocations(alloc, ptr.offset, end)
        alloc.cells[ptr.offset:end] = cells
        alloc.defined[ptr.offset:end] = [True] * len(cells)

    def write_repeat(self, ptr: MemoryPointer, byte, count: int, align: int = 1):
        self.write_bytes(ptr, [byte] * count, align)

    def mark_definedness(self, ptr: MemoryPointer, size: int, defined: bool):
        if size == 0:
            return
        alloc = self._checked(ptr, size)
        end = ptr.offset + size
        if not defined:
            self._clear_relocations(alloc, ptr.offset, end)
        alloc.defined[ptr.offset:end] = [defined] * size

    def make_symbolic(self, ptr: MemoryPointer, size: int):
        """Replace [ptr, ptr+size) with fresh symbolic bytes."""
        self.write_bytes(ptr, self.constraints.new_abstract_bytes(size))

    def _clear_relocations(self, alloc: Allocation, start: int, end: int):
        for off in alloc.relocations_in(start, end):
            del alloc.relocations[off]

    def copy_bytes(self, src: MemoryPointer, dest: MemoryPointer, size: int, align: int = 1):
        """
        Copy cells, definedness and relocations.

        The source is read completely before the destination is written;
        overlap is not detected.
        """
        if size == 0:
            return
        src_alloc = self._checked(src, size, align)
        dest_alloc = self._checked(dest, size, align)
        start, end = src.offset, src.offset + size
        cells = src_alloc.cells[start:end]
        defined = src_alloc.defined[start:end]
        relocations = {off - start: target for off, target in src_alloc.relocations.items()
                       if start <= off and off + POINTER_SIZE <= end}

        self._clear_relocations(dest_alloc, dest.offset, dest.offset + size)
        dest_alloc.cells[dest.offset:dest.offset + size] = cells
        dest_alloc.defined[dest.offset:dest.offset + size] = defined
        for rel, target in relocations.items():
            dest_alloc.relocations[dest.offset + rel] = target

    # Primitive access

    def read_primval(self, ptr: MemoryPointer, size: int, kind: PrimValKind, align: int = 1) -> PrimVal:
        """
        Read one primitive.

        Undefined bytes read as Undef. A stored pointer read whole at its own
        offset reads back as the pointer.
        """
        alloc = self._checked(ptr, size, align)
        end = ptr.offset + size
        relocations = alloc.relocations_in(ptr.offset, end)
        if relocations:
            if relocations == [ptr.offset] and size == POINTER_SIZE:
                return PrimVal.ptr(alloc.relocations[ptr.offset])
            raise EvalError.read_pointer_as_bytes()
        if not all(alloc.defined[ptr.offset:end]):
            return PrimVal.undef()
        return PrimVal.from_cells(alloc.cells[ptr.offset:end], kind)

    def write_primval(self, ptr: MemoryPointer, val: PrimVal, size: int, align: int = 1):
        alloc = self._checked(ptr, size, align)
        if val.is_undef():
            self.mark_definedness(ptr, size, False)
        elif val.is_ptr():
            if size != POINTER_SIZE:
                raise EvalError.read_pointer_as_bytes()
            self.write_bytes(ptr, [0] * size)
            alloc.relocations[ptr.offset] = val.payload
        elif val.is_abstract():
            cells = val.cells
            if len(cells) != size:
                raise EvalError.type_error(f"writing {len(cells)} symbolic bytes into {size} byte slot")
            self.write_bytes(ptr, cells)
        else:
            self.write_bytes(ptr, truncate(val.payload, size * 8).to_bytes(size, "little"))

