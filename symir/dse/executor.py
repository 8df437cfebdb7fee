"""
Worklist scheduler for symbolic execution.

The executor owns a FIFO queue of execution states. Each iteration pops the
head state and steps it once:
- continue: the state goes to the back of the queue
- fork: one copy per feasible direction is constrained and enqueued
- done: a concrete input is extracted for the path and reported

Errors raised while stepping end that path only. They are reported through
the same result sink as completed paths and exploration goes on.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..config import ExecutorConfig
from ..errors import EvalError, StaticEvalError
from ..ir.program import Program
from ..ir.types import RawPtrTy, RefTy, SliceTy, U8
from ..semantics.intrinsics import Arg
from ..semantics.state import ExecutionState, FinishStep, StepKind
from ..z3model.constraints import ConstraintStore
from ..z3model.memory import Memory
from ..z3model.values import MemoryPointer, PrimVal, Value

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """Success, or a failure carrying the error and its call-stack chain."""
    error: Optional[StaticEvalError] = None

    @staticmethod
    def success() -> 'Outcome':
        return Outcome()

    @staticmethod
    def failure(error: EvalError, stack: Optional[list[str]] = None) -> 'Outcome':
        return Outcome(StaticEvalError(error, stack))

    @property
    def is_success(self) -> bool:
        return self.error is None

    def __str__(self):
        if self.error is None:
            return "ok"
        return f"{self.error.kind.value}: {self.error.message}"


@dataclass
class ExecutionComplete:
    """
    One finished path.

    `input` drives the program down this path. `leaked_bytes` counts bytes
    still allocated after the path returned normally; it is None for paths
    that ended in an error.
    """
    input: bytes
    result: Outcome
    leaked_bytes: Optional[int] = None


class ResultSink(ABC):
    """Receives every finished path; returning False stops exploration."""

    @abstractmethod
    def on_path_complete(self, complete: ExecutionComplete) -> bool:
        ...


class CollectingSink(ResultSink):
    """Keeps every result, optionally stopping after `max_paths`."""

    def __init__(self, max_paths: Optional[int] = None):
        self.max_paths = max_paths
        self.results: list[ExecutionComplete] = []

    def on_path_complete(self, complete: ExecutionComplete) -> bool:
        self.results.append(complete)
        return self.max_paths is None or len(self.results) < self.max_paths

    @property
    def failures(self) -> list[ExecutionComplete]:
        return [r for r in self.results if not r.result.is_success]


class CallbackSink(ResultSink):
    """Adapts a plain callable returning the keep-going flag."""

    def __init__(self, callback: Callable[[ExecutionComplete], bool]):
        self.callback = callback

    def on_path_complete(self, complete: ExecutionComplete) -> bool:
        return bool(self.callback(complete))


@dataclass
class ExplorationStats:
    paths_completed: int = 0
    failures: int = 0
    forks: int = 0
    steps: int = 0
    infeasible_forks: int = 0
    stopped_by_sink: bool = False


def _is_byte_slice_ref(ty) -> bool:
    return isinstance(ty, (RefTy, RawPtrTy)) and ty.pointee == SliceTy(U8)


class Executor:
    """
    Explores every feasible path of an entry function.

    Construct with `new_main` (no input, crash discovery) or `new_symbolic`
    (one `&[u8]` argument bound to a fully symbolic buffer), then `run()`.
    """

    def __init__(self, program: Program, config: ExecutorConfig, sink: Optional[ResultSink] = None):
        self.program = program
        self.config = config
        self.sink = sink if sink is not None else CollectingSink()
        self.queue: deque = deque()
        self.input_len: Optional[int] = None

    @classmethod
    def _new_state(cls, program: Program, config: ExecutorConfig) -> ExecutionState:
        memory = Memory(config.limits.memory_size, ConstraintStore(config.solver_timeout_ms))
        return ExecutionState(program, config.limits, memory)

    @classmethod
    def _entry(cls, program: Program, entry: str):
        function = program.get_function(entry)
        if function is None:
            raise EvalError.unimplemented(f"entry function {entry} not found")
        if not function.return_ty.is_unit():
            raise EvalError.unimplemented(f"entry function {entry} must return ()")
        return function

    @classmethod
    def new_main(cls, program: Program, entry: str = "main", config: Optional[ExecutorConfig] = None,
                 sink: Optional[ResultSink] = None) -> 'Executor':
        """Whole-program mode: `entry` must have type `fn()`."""
        config = config or ExecutorConfig()
        function = cls._entry(program, entry)
        if function.arg_count != 0:
            raise EvalError.unimplemented("main functions without `fn()` type signatures are not supported")

        executor = cls(program, config, sink)
        state = cls._new_state(program, config)
        state.push_frame(function, [])
        executor.queue.append(state)
        return executor

    @classmethod
    def new_symbolic(cls, program: Program, entry: str, config: Optional[ExecutorConfig] = None,
                     sink: Optional[ResultSink] = None) -> 'Executor':
        """Target-function mode: `entry` must have type `fn(&[u8])`."""
        config = config or ExecutorConfig()
        function = cls._entry(program, entry)
        if function.arg_count != 1 or not _is_byte_slice_ref(function.param_types[0]):
            raise EvalError.unimplemented("functions without `fn(&[u8])` type signatures are not supported")

        executor = cls(program, config, sink)
        executor.input_len = config.symbolic_input_len
        state = cls._new_state(program, config)

        length = config.symbolic_input_len
        ptr = state.memory.allocate_abstract(length, 8)
        state.memory.root_abstract_alloc = ptr.alloc_id
        arg = Arg(Value.by_val_pair(PrimVal.ptr(ptr), PrimVal.from_u128(length)), function.param_types[0])
        state.push_frame(function, [arg])
        executor.queue.append(state)
        return executor

    def run(self) -> ExplorationStats:
        stats = ExplorationStats()
        while self.queue:
            state = self.queue.popleft()
            try:
                result = state.step()
            except EvalError as e:
                logger.debug(f"[PATH] failed: {e}")
                stats.failures += 1
                if not self._report_failure(state, e, stats):
                    break
                continue
            stats.steps += 1

            if result.kind == StepKind.CONTINUE:
                self.queue.append(state)
            elif result.kind == StepKind.FORK:
                if not result.outcomes:
                    stats.infeasible_forks += 1
                    stats.failures += 1
                    if not self._report_failure(state, EvalError.infeasible_path(), stats):
                        break
                    continue
                stats.forks += 1
                for outcome in result.outcomes:
                    self.queue.append(self._apply(state, outcome))
            else:
                if not self._report_success(state, stats):
                    break
        logger.info(
            f"[EXPLORE] {stats.paths_completed} paths, {stats.failures} failures, "
            f"{stats.forks} forks, {stats.steps} steps"
        )
        return stats

    def _apply(self, state: ExecutionState, outcome: FinishStep) -> ExecutionState:
        child = state.copy()
        for constraint in outcome.constraints:
            child.memory.constraints.push_path_constraint(constraint)
        if outcome.set_place is not None:
            place, val, ty = outcome.set_place
            child.write_place(place, val, ty)
        if outcome.error is not None:
            child.pending_error = outcome.error
        elif outcome.goto_block is not None:
            child.goto_block(outcome.goto_block)
        return child

    def _input_length(self, state: ExecutionState) -> int:
        if self.input_len is not None:
            return self.input_len
        # Whole-program mode reports the bytes made symbolic inside the program
        return state.memory.constraints.num_abstract_bytes

    def _report_failure(self, state: ExecutionState, error: EvalError, stats: ExplorationStats) -> bool:
        try:
            concrete = state.memory.constraints.get_satisfying_assignment(self._input_length(state))
        except EvalError as e:
            logger.debug(f"[SOLVER] no input for failed path: {e}")
            concrete = b""
        outcome = Outcome.failure(error, state.stack_trace())
        return self._deliver(ExecutionComplete(concrete, outcome), stats)

    def _report_success(self, state: ExecutionState, stats: ExplorationStats) -> bool:
        try:
            concrete = state.memory.constraints.get_satisfying_assignment(self._input_length(state))
        except EvalError as e:
            stats.failures += 1
            return self._deliver(ExecutionComplete(b"", Outcome.failure(e, [])), stats)

        root = state.memory.root_abstract_alloc
        if root is not None and state.memory.is_live(root):
            state.memory.deallocate(MemoryPointer(root, 0))
        leaked = state.memory.leak_report()
        if leaked:
            logger.warning(f"[LEAK] the evaluated program leaked {leaked} bytes of memory")
        return self._deliver(ExecutionComplete(concrete, Outcome.success(), leaked), stats)

    def _deliver(self, complete: ExecutionComplete, stats: ExplorationStats) -> bool:
        stats.paths_completed += 1
        go_on = self.sink.on_path_complete(complete)
        if not go_on:
            stats.stopped_by_sink = True
        return go_on
