"""
Control-flow-graph IR consumed by the executor.

A Program is a set of named Functions. Each Function declares typed locals
(local 0 is the return place, locals 1..=arg_count are the parameters) and
an ordered list of BasicBlocks. A block is a list of statements followed by
exactly one terminator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .types import Ty


class BinOp(Enum):
    """Binary operators of the IR."""
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    REM = "rem"
    BIT_XOR = "bit_xor"
    BIT_AND = "bit_and"
    BIT_OR = "bit_or"
    SHL = "shl"
    SHR = "shr"
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"

    def is_comparison(self) -> bool:
        return self in (BinOp.EQ, BinOp.NE, BinOp.LT, BinOp.LE, BinOp.GT, BinOp.GE)

    def is_shift(self) -> bool:
        return self in (BinOp.SHL, BinOp.SHR)


class UnOp(Enum):
    NOT = "not"
    NEG = "neg"


# Place projections

@dataclass(frozen=True)
class Deref:
    pass


@dataclass(frozen=True)
class Field:
    index: int


@dataclass(frozen=True)
class ConstIndex:
    index: int


@dataclass(frozen=True)
class Index:
    """Index by the (usize) value held in a local."""
    local: int


Projection = Union[Deref, Field, ConstIndex, Index]


@dataclass(frozen=True)
class Place:
    local: int
    projections: tuple = ()

    def project(self, *elems: Projection) -> 'Place':
        return Place(self.local, self.projections + tuple(elems))

    def __repr__(self):
        text = f"_{self.local}"
        for proj in self.projections:
            if isinstance(proj, Deref):
                text = f"(*{text})"
            elif isinstance(proj, Field):
                text = f"{text}.{proj.index}"
            elif isinstance(proj, ConstIndex):
                text = f"{text}[{proj.index}]"
            else:
                text = f"{text}[_{proj.local}]"
        return text


# Operands

@dataclass(frozen=True)
class Copy:
    place: Place


@dataclass(frozen=True)
class Constant:
    """
    Literal operand. `value` is an int (integers, chars as code points),
    bool, float, or str (for &str constants).
    """
    value: object
    ty: Ty


Operand = Union[Copy, Constant]


# Rvalues

@dataclass(frozen=True)
class Use:
    operand: Operand


@dataclass(frozen=True)
class BinaryOp:
    op: BinOp
    lhs: Operand
    rhs: Operand


@dataclass(frozen=True)
class CheckedBinaryOp:
    """Produces a (result, overflowed) pair."""
    op: BinOp
    lhs: Operand
    rhs: Operand


@dataclass(frozen=True)
class UnaryOp:
    op: UnOp
    operand: Operand


@dataclass(frozen=True)
class Cast:
    operand: Operand
    ty: Ty


@dataclass(frozen=True)
class Ref:
    place: Place
    mutable: bool = False


@dataclass(frozen=True)
class Len:
    place: Place


Rvalue = Union[Use, BinaryOp, CheckedBinaryOp, UnaryOp, Cast, Ref, Len]


# Statements

@dataclass(frozen=True)
class Assign:
    place: Place
    rvalue: Rvalue


@dataclass(frozen=True)
class Nop:
    pass


Statement = Union[Assign, Nop]


# Terminators

@dataclass(frozen=True)
class Goto:
    target: int


@dataclass(frozen=True)
class SwitchInt:
    """Jump to targets[i] when discr == values[i], else to `otherwise`."""
    discr: Operand
    values: tuple
    targets: tuple
    otherwise: int


@dataclass(frozen=True)
class Assert:
    cond: Operand
    expected: bool
    target: int
    message: str = "assertion failed"


@dataclass(frozen=True)
class Call:
    """
    Call of an IR function, a runtime builtin or an intrinsic.

    `destination` is None for calls whose result is discarded; `target` is
    None for diverging calls.
    """
    func: str
    args: tuple = ()
    destination: Optional[Place] = None
    target: Optional[int] = None
    type_args: tuple = ()


@dataclass(frozen=True)
class Return:
    pass


@dataclass(frozen=True)
class Abort:
    pass


@dataclass(frozen=True)
class Unreachable:
    pass


Terminator = Union[Goto, SwitchInt, Assert, Call, Return, Abort, Unreachable]


@dataclass
class BasicBlock:
    statements: list
    terminator: Terminator


@dataclass
class Function:
    name: str
    locals: list
    arg_count: int
    blocks: list

    @property
    def return_ty(self) -> Ty:
        return self.locals[0]

    @property
    def param_types(self) -> list:
        return self.locals[1:self.arg_count + 1]


@dataclass
class Program:
    functions: dict = field(default_factory=dict)

    def add(self, function: Function) -> Function:
        self.functions[function.name] = function
        return function

    def get_function(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.functions
