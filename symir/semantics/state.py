"""
Execution state and the reference stepper.

An ExecutionState is one candidate program path: a call stack, an owned
memory (which owns the constraint store) and the path constraints recorded
so far. `step()` executes one statement or terminator and reports whether
the state continues, forks at a data-dependent branch, or is done.

Every local lives in its own stack allocation, so references to locals
are ordinary pointers. A frame's allocations are released when it returns.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import z3

from ..config import ResourceLimits
from ..errors import ErrorKind, EvalError
from ..ir.program import (
    Abort, Assert, Assign, BinaryOp, Call, Cast, CheckedBinaryOp, ConstIndex, Constant, Copy,
    Deref, Field, Function, Goto, Len, Nop, Place, Program, Ref, Return, SwitchInt,
    UnaryOp, Unreachable, Use,
)
from ..ir.types import (
    U8, USIZE, ArrayTy, BoolTy, CharTy, FloatTy, IntTy, RawPtrTy, RefTy, SliceTy, StrTy, StructTy,
    TupleTy, Ty, is_fat_pointer, is_primitive, ty_to_primval_kind,
)
from ..z3model.memory import Memory, MemoryKind
from ..z3model.values import POINTER_SIZE, MemoryPointer, PrimVal, PrimValKind, Value
from .cast import cast_primval
from .intrinsics import Arg, Intrinsic, IntrinsicCall, IntrinsicEvaluator, pointee_type
from .operators import binary_op, overflowing_op, unary_op

logger = logging.getLogger(__name__)


@dataclass
class FinishStep:
    """
    One feasible direction of a fork.

    The scheduler pushes `constraints` onto a copy of the state, writes
    `set_place` if given, and resumes at `goto_block`. If `error` is set the
    direction is a failing one and the copy reports that error instead.
    """
    constraints: list
    goto_block: Optional[int]
    set_place: Optional[tuple] = None  # (Place, PrimVal, Ty)
    error: Optional[EvalError] = None


class StepKind(Enum):
    CONTINUE = "continue"
    FORK = "fork"
    DONE = "done"


@dataclass
class StepResult:
    kind: StepKind
    outcomes: list = field(default_factory=list)

    @staticmethod
    def advance() -> 'StepResult':
        return StepResult(StepKind.CONTINUE)

    @staticmethod
    def fork(outcomes: list) -> 'StepResult':
        return StepResult(StepKind.FORK, outcomes)

    @staticmethod
    def done() -> 'StepResult':
        return StepResult(StepKind.DONE)


@dataclass
class Frame:
    """
    One activation record.

    `locals[i]` points at the allocation holding local i. `return_ptr` is
    where the caller wants the return value; `return_target` is the caller
    block to resume at.
    """
    function: Function
    locals: list
    block: int = 0
    stmt: int = 0
    return_ptr: Optional[MemoryPointer] = None
    return_target: Optional[int] = None

    def copy(self) -> 'Frame':
        return Frame(
            function=self.function,
            locals=list(self.locals),
            block=self.block,
            stmt=self.stmt,
            return_ptr=self.return_ptr,
            return_target=self.return_target,
        )

    def location(self) -> str:
        return f"inside call to {self.function.name} at bb{self.block}[{self.stmt}]"


@dataclass
class PlaceRef:
    """An evaluated place: its address, type, and length if unsized."""
    ptr: MemoryPointer
    ty: Ty
    meta: Optional[PrimVal] = None


class ExecutionState:
    """Call stack plus owned memory and constraints of one program path."""

    # Runtime builtins and their argument counts; panic takes an optional message
    BUILTINS = {"panic": None, "alloc": 2, "dealloc": 2, "mksym": 1}

    def __init__(self, program: Program, limits: ResourceLimits, memory: Memory):
        self.program = program
        self.limits = limits
        self.memory = memory
        self.stack: list[Frame] = []
        self.steps = 0
        self.pending_error: Optional[EvalError] = None
        self.intrinsics = IntrinsicEvaluator(self)

    @property
    def constraints(self) -> list:
        return self.memory.constraints.path_constraints

    @property
    def current_frame(self) -> Optional[Frame]:
        return self.stack[-1] if self.stack else None

    def copy(self) -> 'ExecutionState':
        """Structurally independent copy; nothing mutable is shared."""
        other = ExecutionState(self.program, self.limits, self.memory.copy())
        other.stack = [frame.copy() for frame in self.stack]
        other.steps = self.steps
        other.pending_error = self.pending_error
        return other

    def stack_trace(self) -> list[str]:
        return [frame.location() for frame in reversed(self.stack)]

    # Frames

    def push_frame(self, function: Function, args: list, return_ptr: Optional[MemoryPointer] = None,
                   return_target: Optional[int] = None):
        if len(self.stack) >= self.limits.stack_limit:
            raise EvalError(ErrorKind.STACK_LIMIT, f"reached the configured maximum of {self.limits.stack_limit} stack frames")
        if len(args) != function.arg_count:
            raise EvalError.type_error(
                f"{function.name} takes {function.arg_count} arguments but {len(args)} were supplied"
            )
        locals_ = [self.memory.allocate(ty.size(), ty.align(), MemoryKind.STACK) for ty in function.locals]
        self.stack.append(Frame(function, locals_, return_ptr=return_ptr, return_target=return_target))
        for i, arg in enumerate(args):
            self.write_value(locals_[i + 1], arg.value, function.locals[i + 1])

    def goto_block(self, block: int):
        frame = self.current_frame
        frame.block = block
        frame.stmt = 0

    def write_place(self, place: Place, val: PrimVal, ty: Ty):
        ref = self.eval_place(place)
        self.write_primval(ref.ptr, val, ty)

    # Typed memory access

    def read_primval(self, ptr: MemoryPointer, ty: Ty) -> PrimVal:
        return self.memory.read_primval(ptr, ty.size(), ty_to_primval_kind(ty), ty.align())

    def write_primval(self, ptr: MemoryPointer, val: PrimVal, ty: Ty, check_align: bool = True):
        self.memory.write_primval(ptr, val, ty.size(), ty.align() if check_align else 1)

    def read_pair(self, ptr: MemoryPointer, ty: Ty) -> tuple[PrimVal, PrimVal]:
        if is_fat_pointer(ty):
            data = self.memory.read_primval(ptr, POINTER_SIZE, PrimValKind.PTR, POINTER_SIZE)
            meta = self.memory.read_primval(ptr.offset_by(POINTER_SIZE), POINTER_SIZE, PrimValKind.U64, POINTER_SIZE)
            return data, meta
        first_ty, second_ty = self._pair_fields(ty)
        offsets = ty.field_offsets()
        return (self.read_primval(ptr.offset_by(offsets[0]), first_ty),
                self.read_primval(ptr.offset_by(offsets[1]), second_ty))

    def write_pair(self, ptr: MemoryPointer, first: PrimVal, second: PrimVal, ty: Ty, check_align: bool = True):
        if is_fat_pointer(ty):
            align = POINTER_SIZE if check_align else 1
            self.memory.write_primval(ptr, first, POINTER_SIZE, align)
            self.memory.write_primval(ptr.offset_by(POINTER_SIZE), second, POINTER_SIZE, align)
            return
        first_ty, second_ty = self._pair_fields(ty)
        offsets = ty.field_offsets()
        self.write_primval(ptr.offset_by(offsets[0]), first, first_ty, check_align)
        self.write_primval(ptr.offset_by(offsets[1]), second, second_ty, check_align)

    def _pair_fields(self, ty: Ty) -> tuple:
        if isinstance(ty, (TupleTy, StructTy)) and len(ty.field_types()) == 2:
            return ty.field_types()
        raise EvalError.type_error(f"{ty.name} is not a pair type")

    def write_value(self, ptr: MemoryPointer, value: Value, ty: Ty, check_align: bool = True):
        size = ty.size()
        if value.is_by_ref():
            self.memory.copy_bytes(value.payload, ptr, size, ty.align() if check_align else 1)
        elif size == 0:
            return
        elif value.is_by_val_pair():
            first, second = value.payload
            self.write_pair(ptr, first, second, ty, check_align)
        else:
            self.write_primval(ptr, value.payload, ty, check_align)

    def read_arg(self, arg: Arg) -> PrimVal:
        """Primitive held by an evaluated argument."""
        if arg.value.is_by_val():
            return arg.value.payload
        if arg.value.is_by_ref():
            return self.read_primval(arg.value.payload, arg.ty)
        raise EvalError.type_error(f"expected a primitive, found a pair of type {arg.ty.name}")

    # Places and operands

    def eval_place(self, place: Place) -> PlaceRef:
        frame = self.current_frame
        self._check_local(frame, place.local)
        ref = PlaceRef(frame.locals[place.local], frame.function.locals[place.local])
        for proj in place.projections:
            if isinstance(proj, Deref):
                pointee = pointee_type(ref.ty)
                if is_fat_pointer(ref.ty):
                    data, meta = self.read_pair(ref.ptr, ref.ty)
                else:
                    data, meta = self.read_primval(ref.ptr, ref.ty), None
                if data.is_undef():
                    raise EvalError.read_undef_bytes()
                ref = PlaceRef(data.to_ptr(), pointee, meta)
            elif isinstance(proj, Field):
                if not isinstance(ref.ty, (TupleTy, StructTy)):
                    raise EvalError.type_error(f"field access on {ref.ty.name}")
                fields = ref.ty.field_types()
                if proj.index >= len(fields):
                    raise EvalError.type_error(f"{ref.ty.name} has no field {proj.index}")
                offset = ref.ty.field_offsets()[proj.index]
                ref = PlaceRef(ref.ptr.offset_by(offset), fields[proj.index], ref.meta)
            else:
                ref = self._eval_index(frame, ref, proj)
        return ref

    def _check_local(self, frame: Frame, local: int):
        if not 0 <= local < len(frame.locals):
            raise EvalError.type_error(f"{frame.function.name} has no local _{local}")

    def _eval_index(self, frame: Frame, ref: PlaceRef, proj) -> PlaceRef:
        if isinstance(proj, ConstIndex):
            index = proj.index
        else:
            self._check_local(frame, proj.local)
            val = self.read_primval(frame.locals[proj.local], USIZE)
            if val.is_abstract():
                raise EvalError.unimplemented("indexing with a symbolic index")
            index = val.to_u64()

        if isinstance(ref.ty, ArrayTy):
            length = ref.ty.length
        elif isinstance(ref.ty, SliceTy):
            length = self._concrete_len(ref.meta)
        else:
            raise EvalError.type_error(f"indexing into {ref.ty.name}")
        if index >= length:
            raise EvalError(ErrorKind.OUT_OF_BOUNDS, f"index out of bounds: the len is {length} but the index is {index}")
        elem = ref.ty.elem
        return PlaceRef(ref.ptr.offset_by(index * elem.size()), elem)

    def _concrete_len(self, meta: Optional[PrimVal]) -> int:
        if meta is None:
            raise EvalError.type_error("unsized place without a length")
        if meta.is_abstract():
            raise EvalError.unimplemented("symbolic slice length")
        return meta.to_u64()

    def eval_operand(self, operand) -> Arg:
        if isinstance(operand, Copy):
            ref = self.eval_place(operand.place)
            if is_fat_pointer(ref.ty):
                return Arg(Value.by_val_pair(*self.read_pair(ref.ptr, ref.ty)), ref.ty)
            if is_primitive(ref.ty):
                return Arg(Value.by_val(self.read_primval(ref.ptr, ref.ty)), ref.ty)
            return Arg(Value.by_ref(ref.ptr), ref.ty)
        return Arg(self._eval_constant(operand), operand.ty)

    def _eval_constant(self, const: Constant) -> Value:
        ty, value = const.ty, const.value
        if isinstance(ty, (RefTy, RawPtrTy)) and isinstance(ty.pointee, StrTy) and isinstance(value, str):
            data = value.encode("utf-8")
            ptr = self.memory.allocate_static_bytes(data)
            return Value.by_val_pair(PrimVal.ptr(ptr), PrimVal.from_u128(len(data)))
        if isinstance(ty, BoolTy):
            return Value.by_val(PrimVal.from_bool(bool(value)))
        if isinstance(ty, CharTy):
            return Value.by_val(PrimVal.from_u128(ord(value) if isinstance(value, str) else int(value)))
        if isinstance(ty, IntTy):
            return Value.by_val(PrimVal.from_bits(int(value), ty_to_primval_kind(ty)))
        if isinstance(ty, FloatTy):
            f = float(value)
            return Value.by_val(PrimVal.from_f32(f) if ty.bits == 32 else PrimVal.from_f64(f))
        if isinstance(ty, RawPtrTy) and isinstance(value, int):
            return Value.by_val(PrimVal.from_u128(value))
        if ty.is_sized() and ty.size() == 0:
            return Value.by_val(PrimVal.undef())
        raise EvalError.unimplemented(f"constant of type {ty.name}")

    # Stepping

    def step(self) -> StepResult:
        """Execute one statement or terminator of the innermost frame."""
        if self.pending_error is not None:
            error, self.pending_error = self.pending_error, None
            raise error
        frame = self.current_frame
        if frame is None:
            return StepResult.done()

        self.steps += 1
        if self.steps > self.limits.step_limit:
            raise EvalError(ErrorKind.STEP_LIMIT, f"reached the configured maximum of {self.limits.step_limit} steps")

        if frame.block >= len(frame.function.blocks):
            raise EvalError.type_error(f"{frame.function.name} has no block bb{frame.block}")
        block = frame.function.blocks[frame.block]
        if frame.stmt < len(block.statements):
            stmt = block.statements[frame.stmt]
            if isinstance(stmt, Assign):
                self._assign(stmt)
            elif not isinstance(stmt, Nop):
                raise EvalError.unimplemented(f"statement {stmt!r}")
            frame.stmt += 1
            return StepResult.advance()
        return self._terminator(block.terminator)

    def _assign(self, stmt: Assign):
        dest = self.eval_place(stmt.place)
        rvalue = stmt.rvalue
        ctx = self.memory.constraints

        if isinstance(rvalue, Use):
            arg = self.eval_operand(rvalue.operand)
            self.write_value(dest.ptr, arg.value, dest.ty)
        elif isinstance(rvalue, BinaryOp):
            lhs, rhs = self.eval_operand(rvalue.lhs), self.eval_operand(rvalue.rhs)
            rhs_kind = ty_to_primval_kind(rhs.ty) if rvalue.op.is_shift() else None
            val = binary_op(ctx, rvalue.op, self.read_arg(lhs), self.read_arg(rhs),
                            ty_to_primval_kind(lhs.ty), rhs_kind)
            self.write_primval(dest.ptr, val, dest.ty)
        elif isinstance(rvalue, CheckedBinaryOp):
            lhs, rhs = self.eval_operand(rvalue.lhs), self.eval_operand(rvalue.rhs)
            rhs_kind = ty_to_primval_kind(rhs.ty) if rvalue.op.is_shift() else None
            result, overflowed = overflowing_op(ctx, rvalue.op, self.read_arg(lhs), self.read_arg(rhs),
                                                ty_to_primval_kind(lhs.ty), rhs_kind)
            self.write_pair(dest.ptr, result, overflowed, dest.ty)
        elif isinstance(rvalue, UnaryOp):
            arg = self.eval_operand(rvalue.operand)
            val = unary_op(ctx, rvalue.op, self.read_arg(arg), ty_to_primval_kind(arg.ty))
            self.write_primval(dest.ptr, val, dest.ty)
        elif isinstance(rvalue, Cast):
            self._cast(dest, self.eval_operand(rvalue.operand))
        elif isinstance(rvalue, Ref):
            ref = self.eval_place(rvalue.place)
            if ref.ty.is_sized():
                self.write_primval(dest.ptr, PrimVal.ptr(ref.ptr), dest.ty)
            else:
                self.write_pair(dest.ptr, PrimVal.ptr(ref.ptr), ref.meta, dest.ty)
        elif isinstance(rvalue, Len):
            ref = self.eval_place(rvalue.place)
            if isinstance(ref.ty, ArrayTy):
                length = PrimVal.from_u128(ref.ty.length)
            elif isinstance(ref.ty, (SliceTy, StrTy)) and ref.meta is not None:
                length = ref.meta
            else:
                raise EvalError.type_error(f"length of {ref.ty.name}")
            self.write_primval(dest.ptr, length, dest.ty)
        else:
            raise EvalError.unimplemented(f"rvalue {rvalue!r}")

    def _cast(self, dest: PlaceRef, src: Arg):
        if is_fat_pointer(dest.ty):
            if is_fat_pointer(src.ty):
                self.write_value(dest.ptr, src.value, dest.ty)
                return
            pointee = pointee_type(src.ty)
            if isinstance(pointee, ArrayTy):
                # Unsizing: &[T; N] -> &[T]
                self.write_pair(dest.ptr, self.read_arg(src), PrimVal.from_u128(pointee.length), dest.ty)
                return
            raise EvalError.unimplemented(f"{src.ty.name} to {dest.ty.name} cast")
        if is_fat_pointer(src.ty):
            # Dropping the length of a fat pointer keeps the data pointer
            data = src.value.payload[0] if src.value.is_by_val_pair() else self.read_pair(src.value.payload, src.ty)[0]
            val = cast_primval(self.memory.constraints, data, RawPtrTy(U8), dest.ty)
            self.write_primval(dest.ptr, val, dest.ty)
            return
        val = cast_primval(self.memory.constraints, self.read_arg(src), src.ty, dest.ty)
        self.write_primval(dest.ptr, val, dest.ty)

    def _terminator(self, term) -> StepResult:
        if isinstance(term, Goto):
            self.goto_block(term.target)
            return StepResult.advance()
        if isinstance(term, SwitchInt):
            return self._switch_int(term)
        if isinstance(term, Assert):
            return self._assert(term)
        if isinstance(term, Call):
            return self._call(term)
        if isinstance(term, Return):
            return self._return()
        if isinstance(term, Abort):
            raise EvalError.panic("the program aborted execution")
        if isinstance(term, Unreachable):
            raise EvalError(ErrorKind.UNREACHABLE, "entered unreachable code")
        raise EvalError.unimplemented(f"terminator {term!r}")

    def _switch_int(self, term: SwitchInt) -> StepResult:
        arg = self.eval_operand(term.discr)
        discr = self.read_arg(arg)
        kind = ty_to_primval_kind(arg.ty)
        if discr.is_undef():
            raise EvalError.read_undef_bytes()

        if not discr.is_abstract():
            bits = discr.to_u128() & ((1 << kind.bits) - 1)
            target = term.otherwise
            for value, candidate in zip(term.values, term.targets):
                if value & ((1 << kind.bits) - 1) == bits:
                    target = candidate
                    break
            self.goto_block(target)
            return StepResult.advance()

        store = self.memory.constraints
        outcomes = []
        for value, target in zip(term.values, term.targets):
            cond = store.condition_eq(discr, value, kind)
            if store.is_feasible(cond):
                outcomes.append(FinishStep([cond], target))
        otherwise = z3.And(*[store.condition_ne(discr, v, kind) for v in term.values]) if term.values else z3.BoolVal(True)
        if store.is_feasible(otherwise):
            outcomes.append(FinishStep([otherwise], term.otherwise))
        logger.debug(f"[FORK] switchInt in {self.current_frame.function.name} into {len(outcomes)} directions")
        return StepResult.fork(outcomes)

    def _assert(self, term: Assert) -> StepResult:
        cond = self.read_arg(self.eval_operand(term.cond))
        if cond.is_undef():
            raise EvalError.read_undef_bytes()
        if not cond.is_abstract():
            if cond.to_bool() != term.expected:
                raise EvalError.panic(term.message)
            self.goto_block(term.target)
            return StepResult.advance()

        store = self.memory.constraints
        holds = store.truthy(cond)
        passing = holds if term.expected else z3.Not(holds)
        failing = z3.Not(passing)
        outcomes = []
        if store.is_feasible(passing):
            outcomes.append(FinishStep([passing], term.target))
        if store.is_feasible(failing):
            outcomes.append(FinishStep([failing], None, error=EvalError.panic(term.message)))
        logger.debug(f"[FORK] assert in {self.current_frame.function.name} into {len(outcomes)} directions")
        return StepResult.fork(outcomes)

    def _call(self, term: Call) -> StepResult:
        args = [self.eval_operand(a) for a in term.args]
        dest = self.eval_place(term.destination) if term.destination is not None else None

        callee = self.program.get_function(term.func)
        if callee is not None:
            self.push_frame(callee, args, dest.ptr if dest else None, term.target)
            return StepResult.advance()

        if term.func in self.BUILTINS:
            self._builtin(term, args, dest)
        else:
            intrinsic = Intrinsic.parse(term.func)
            self.intrinsics.call(IntrinsicCall(
                intrinsic=intrinsic,
                name=term.func,
                args=args,
                dest=dest.ptr if dest else None,
                dest_ty=dest.ty if dest else None,
                type_args=term.type_args,
            ))

        if term.target is None:
            raise EvalError(ErrorKind.UNREACHABLE, f"diverging call to {term.func} returned")
        self.goto_block(term.target)
        return StepResult.advance()

    def _builtin(self, term: Call, args: list, dest: Optional[PlaceRef]):
        expected = self.BUILTINS[term.func]
        if expected is not None and len(args) != expected:
            raise EvalError.type_error(f"{term.func} takes {expected} arguments but {len(args)} were supplied")
        if term.func == "panic":
            raise EvalError.panic(self._panic_message(args))
        if term.func == "alloc":
            size, align = (self.read_arg(a) for a in args)
            ptr = self.memory.allocate(size.to_u64(), align.to_u64(), MemoryKind.HEAP)
            if dest is not None:
                self.write_primval(dest.ptr, PrimVal.ptr(ptr), dest.ty)
        elif term.func == "dealloc":
            ptr, size = self.read_arg(args[0]).to_ptr(), self.read_arg(args[1]).to_u64()
            alloc = self.memory.get(ptr.alloc_id)
            if alloc.size != size:
                raise EvalError(ErrorKind.DANGLING_POINTER, f"deallocating {alloc.size} bytes with size {size}")
            self.memory.deallocate(ptr, MemoryKind.HEAP)
        else:
            ty = term.type_args[0] if term.type_args else pointee_type(args[0].ty)
            self.memory.make_symbolic(self.read_arg(args[0]).to_ptr(), ty.size())

    def _panic_message(self, args: list) -> str:
        if not args or not args[0].value.is_by_val_pair():
            return "explicit panic"
        data, length = args[0].value.payload
        if not data.is_ptr() or not length.is_bytes():
            return "explicit panic"
        cells = self.memory.read_bytes(data.payload, length.to_u64())
        if not all(isinstance(c, int) for c in cells):
            return "explicit panic"
        return bytes(cells).decode("utf-8", errors="replace")

    def _return(self) -> StepResult:
        frame = self.stack[-1]
        ret_ty = frame.function.return_ty
        if frame.return_ptr is not None and ret_ty.size() > 0:
            self.memory.copy_bytes(frame.locals[0], frame.return_ptr, ret_ty.size())
        for ptr in frame.locals:
            self.memory.deallocate(ptr, MemoryKind.STACK)
        self.stack.pop()
        if not self.stack:
            return StepResult.done()
        if frame.return_target is None:
            raise EvalError(ErrorKind.UNREACHABLE, f"diverging function {frame.function.name} returned")
        self.goto_block(frame.return_target)
        return StepResult.advance()
