"""
Executor configuration, optionally loaded from a YAML file.

Provides sane defaults so the executor works out of the box without a
config file. A file may override any field:

    limits:
      step-limit: 1000000
      memory-size: 104857600
      stack-limit: 100
    symbolic-input-len: 21
    solver-timeout-ms: 5000

Keys may use dashes or underscores. Unknown keys are rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml


DEFAULT_INPUT_LEN = 21


@dataclass
class ResourceLimits:
    step_limit: int = 1_000_000
    memory_size: int = 100 * 1024 * 1024
    stack_limit: int = 100


@dataclass
class ExecutorConfig:
    """Top-level configuration for the executor."""
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    symbolic_input_len: int = DEFAULT_INPUT_LEN
    solver_timeout_ms: Optional[int] = 5000

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ExecutorConfig":
        """Load config from a YAML file, falling back to defaults if it does not exist."""
        config_path = Path(path)
        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ValueError(f"{config_path}: expected a mapping at the top level")
        return cls._from_dict(raw)

    @classmethod
    def _from_dict(cls, raw: dict[str, Any]) -> "ExecutorConfig":
        raw = _normalize(raw, {f.name for f in fields(cls)}, "config")
        limits_raw = _normalize(raw.pop("limits", {}) or {}, {f.name for f in fields(ResourceLimits)}, "limits")

        limits = ResourceLimits(
            step_limit=int(limits_raw.get("step_limit", ResourceLimits.step_limit)),
            memory_size=int(limits_raw.get("memory_size", ResourceLimits.memory_size)),
            stack_limit=int(limits_raw.get("stack_limit", ResourceLimits.stack_limit)),
        )
        timeout = raw.get("solver_timeout_ms", 5000)
        return cls(
            limits=limits,
            symbolic_input_len=int(raw.get("symbolic_input_len", DEFAULT_INPUT_LEN)),
            solver_timeout_ms=None if timeout is None else int(timeout),
        )

    def to_yaml(self) -> str:
        """Serialise to YAML string."""
        return yaml.safe_dump({
            "limits": {
                "step-limit": self.limits.step_limit,
                "memory-size": self.limits.memory_size,
                "stack-limit": self.limits.stack_limit,
            },
            "symbolic-input-len": self.symbolic_input_len,
            "solver-timeout-ms": self.solver_timeout_ms,
        }, sort_keys=False)


def _normalize(raw: dict, known: set, section: str) -> dict:
    if not isinstance(raw, dict):
        raise ValueError(f"{section}: expected a mapping")
    result = {}
    for key, value in raw.items():
        name = str(key).replace("-", "_")
        if name not in known:
            raise ValueError(f"{section}: unknown key {key!r}")
        result[name] = value
    return result
