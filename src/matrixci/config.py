# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from .model import WorkflowSpec

DEFAULT_INSTANCE_TIMEOUT = 3600.0
DEFAULT_OUTPUT_LIMIT = 4000
DEFAULT_KILL_GRACE = 5.0


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _frozen(env: Mapping[str, Any]) -> Mapping[str, str]:
    return MappingProxyType({str(k): str(v) for k, v in env.items()})


@dataclass(frozen=True)
class EngineConfig:
    """
    Everything the engine needs besides the workflow itself.

    `env` is the workflow-level environment (e.g. CARGO_INCREMENTAL=0). It is
    passed explicitly into every step's process environment; the engine never
    mutates os.environ.
    """
    max_workers: int = field(default_factory=default_workers)
    instance_timeout: float = DEFAULT_INSTANCE_TIMEOUT  # seconds
    workdir: Path = field(default_factory=Path.cwd)
    env: Mapping[str, str] = field(default_factory=dict)
    inherit_env: bool = True
    output_limit: int = DEFAULT_OUTPUT_LIMIT  # chars of captured output kept per step
    kill_grace: float = DEFAULT_KILL_GRACE  # seconds between terminate and kill

    def __post_init__(self):
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.instance_timeout <= 0:
            raise ValueError(f"instance_timeout must be > 0, got {self.instance_timeout}")
        object.__setattr__(self, "workdir", Path(self.workdir).resolve())
        object.__setattr__(self, "env", _frozen(self.env))

    @classmethod
    def for_workflow(cls, workflow: WorkflowSpec, **overrides: Any) -> EngineConfig:
        """Config carrying the workflow `env`, with None-valued overrides ignored."""
        opts = {k: v for k, v in overrides.items() if v is not None}
        env = dict(workflow.env)
        env.update(opts.pop("env", {}) or {})
        return cls(env=env, **opts)

    def with_overrides(self, **overrides: Any) -> EngineConfig:
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
