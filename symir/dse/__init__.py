"""
Path exploration: worklist scheduling and result reporting.
"""

from .executor import (
    CallbackSink,
    CollectingSink,
    ExecutionComplete,
    Executor,
    ExplorationStats,
    Outcome,
    ResultSink,
)

__all__ = [
    "CallbackSink",
    "CollectingSink",
    "ExecutionComplete",
    "Executor",
    "ExplorationStats",
    "Outcome",
    "ResultSink",
]
