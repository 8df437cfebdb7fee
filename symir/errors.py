"""
Evaluation errors raised while stepping an execution state.

Every error is path-local: the scheduler catches it at the step boundary and
reports it as a failed path. Nothing here terminates the exploration loop.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Discriminator for evaluation errors."""
    # Unsupported feature
    UNIMPLEMENTED = "unimplemented"

    # Precondition violations
    INVALID_CHAR = "invalid_char"
    READ_POINTER_AS_BYTES = "read_pointer_as_bytes"
    INTRINSIC = "intrinsic"
    ASSUMPTION_NOT_HELD = "assumption_not_held"
    TYPE_ERROR = "type_error"

    # Program failures
    PANIC = "panic"
    UNREACHABLE = "unreachable"
    DIVISION_BY_ZERO = "division_by_zero"

    # Memory errors
    OUT_OF_BOUNDS = "out_of_bounds"
    ALIGNMENT = "alignment"
    DANGLING_POINTER = "dangling_pointer"
    READ_UNDEF_BYTES = "read_undef_bytes"
    INVALID_POINTER_MATH = "invalid_pointer_math"

    # Resource limits
    STEP_LIMIT = "step_limit"
    MEMORY_LIMIT = "memory_limit"
    STACK_LIMIT = "stack_limit"

    # Scheduler-level
    INFEASIBLE_PATH = "infeasible_path"


class EvalError(Exception):
    """
    An error that ends the current execution path.

    Carries an ErrorKind so consumers can branch on the failure class
    without parsing messages.
    """

    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}" if message else kind.value)

    @staticmethod
    def unimplemented(what: str) -> 'EvalError':
        return EvalError(ErrorKind.UNIMPLEMENTED, what)

    @staticmethod
    def invalid_char(value: int) -> 'EvalError':
        return EvalError(ErrorKind.INVALID_CHAR, f"tried to interpret an invalid 32-bit value as a char: {value}")

    @staticmethod
    def read_pointer_as_bytes() -> 'EvalError':
        return EvalError(ErrorKind.READ_POINTER_AS_BYTES, "a raw memory access tried to access part of a pointer value as raw bytes")

    @staticmethod
    def intrinsic(message: str) -> 'EvalError':
        return EvalError(ErrorKind.INTRINSIC, message)

    @staticmethod
    def assumption_not_held() -> 'EvalError':
        return EvalError(ErrorKind.ASSUMPTION_NOT_HELD, "`assume` argument was false")

    @staticmethod
    def type_error(message: str) -> 'EvalError':
        return EvalError(ErrorKind.TYPE_ERROR, message)

    @staticmethod
    def panic(message: str = "explicit panic") -> 'EvalError':
        return EvalError(ErrorKind.PANIC, message)

    @staticmethod
    def read_undef_bytes() -> 'EvalError':
        return EvalError(ErrorKind.READ_UNDEF_BYTES, "attempted to read undefined bytes")

    @staticmethod
    def infeasible_path(message: str = "no feasible branch") -> 'EvalError':
        return EvalError(ErrorKind.INFEASIBLE_PATH, message)


class StaticEvalError:
    """
    Detached description of a path failure, handed to result sinks.

    `stack` is the location chain from innermost frame outwards, e.g.
    ["inside call to helper at bb2[0]", "inside call to main at bb0[3]"].
    """

    def __init__(self, error: EvalError, stack: Optional[list[str]] = None):
        self.error = error
        self.stack = stack or []

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def message(self) -> str:
        return self.error.message

    def __repr__(self):
        return f"StaticEvalError(kind={self.kind.value}, message={self.message!r})"
