"""
Shared builders for IR test programs.
"""

import pytest

from symir.config import ExecutorConfig, ResourceLimits
from symir.ir.program import (
    Assign, BasicBlock, BinaryOp, Call, ConstIndex, Constant, Copy, Deref, Field, Function, Place,
    Program, Return, SwitchInt, Use,
)
from symir.ir.types import BOOL, BYTE_SLICE_REF, U8, UNIT, TupleTy
from symir.z3model.constraints import ConstraintStore
from symir.z3model.memory import Memory


def place(local, *projections):
    return Place(local, tuple(projections))


def copy(local, *projections):
    return Copy(place(local, *projections))


def const(value, ty):
    return Constant(value, ty)


def assign(dest, rvalue):
    """Assignment to local `dest`; a bare operand is wrapped in Use."""
    if isinstance(rvalue, (Copy, Constant)):
        rvalue = Use(rvalue)
    if isinstance(dest, int):
        dest = Place(dest)
    return Assign(dest, rvalue)


def block(*statements, terminator=None):
    return BasicBlock(list(statements), terminator if terminator is not None else Return())


def function(name, locals_, blocks, arg_count=0):
    return Function(name, list(locals_), arg_count, list(blocks))


def program(*functions):
    prog = Program()
    for fn in functions:
        prog.add(fn)
    return prog


def panic_call():
    return Call("panic", (), None, None)


def input_byte(index):
    """Operand reading byte `index` of the `&[u8]` parameter in local 1."""
    return copy(1, Deref(), ConstIndex(index))


def overflow_program():
    """
    fn target(_1: &[u8]) {
        let (_, overflowed) = add_with_overflow(_1[0], 250u8);
        if overflowed { panic() }
    }
    """
    target = function(
        "target",
        [UNIT, BYTE_SLICE_REF, U8, TupleTy((U8, BOOL))],
        [
            block(
                assign(2, input_byte(0)),
                terminator=Call("add_with_overflow", (copy(2), const(250, U8)), Place(3), 1),
            ),
            block(terminator=SwitchInt(copy(3, Field(1)), (0,), (2,), 3)),
            block(),
            block(terminator=panic_call()),
        ],
        arg_count=1,
    )
    return program(target)


def compare_program(op, constant):
    """fn target(_1: &[u8]) { if _1[0] <op> constant { panic() } }"""
    target = function(
        "target",
        [UNIT, BYTE_SLICE_REF, U8, BOOL],
        [
            block(
                assign(2, input_byte(0)),
                assign(3, BinaryOp(op, copy(2), const(constant, U8))),
                terminator=SwitchInt(copy(3), (0,), (1,), 2),
            ),
            block(),
            block(terminator=panic_call()),
        ],
        arg_count=1,
    )
    return program(target)


def small_config(input_len=1, step_limit=10_000, stack_limit=16, memory_size=1 << 20):
    return ExecutorConfig(
        limits=ResourceLimits(step_limit=step_limit, memory_size=memory_size, stack_limit=stack_limit),
        symbolic_input_len=input_len,
    )


@pytest.fixture
def store():
    return ConstraintStore()


@pytest.fixture
def memory():
    return Memory(1 << 20)
