# errors.py
"""
Error taxonomy for matrixci.

Not every failure is an exception:
  - a rejected trigger is `should_run(...) -> False`
  - an empty matrix is `expand(...) -> []`
Both are reported on the console and never raised.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .model import FailureKind, JobResult


class MatrixCIError(Exception):
    """Base exception for matrixci."""
    pass


class ConfigInvalid(MatrixCIError):
    """Workflow declaration could not be parsed or validated. The run never starts."""

    def __init__(self, message: str, *, source: Optional[str] = None, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.source = source
        self.details = list(details or [])

    def __str__(self) -> str:
        head = f"{self.source}: {self.message}" if self.source else self.message
        if not self.details:
            return head
        return "\n".join([head, *(f"  {d}" for d in self.details)])


class CacheUnavailable(MatrixCIError):
    """Cache store I/O failed. Non-fatal: the run degrades to always-miss."""
    pass


@dataclass
class StepFailure(MatrixCIError):
    """
    A fatal step failure with enough context to reproduce it:
    job name, axis values, step index, command and exit code.
    """
    job: str
    step_index: int
    command: str
    exit_code: Optional[int]
    axis_values: Dict[str, str] = field(default_factory=dict)
    output: str = ""

    kind = "exit"

    def __str__(self) -> str:
        axes = " ".join(f"{k}={v}" for k, v in self.axis_values.items())
        where = f"{self.job} [{axes}]" if axes else self.job
        return f"[{where}] step #{self.step_index} failed (exit={self.exit_code}): {self.command}"


@dataclass
class StepTimeout(StepFailure):
    """A step killed at its deadline. Reported as a failure, marked distinctly."""
    timeout: Optional[float] = None

    kind = "timeout"

    def __str__(self) -> str:
        axes = " ".join(f"{k}={v}" for k, v in self.axis_values.items())
        where = f"{self.job} [{axes}]" if axes else self.job
        after = f" after {self.timeout:g}s" if self.timeout else ""
        return f"[{where}] step #{self.step_index} timed out{after}: {self.command}"


def step_error(result: JobResult) -> Optional[StepFailure]:
    """The fatal step failure of a finished instance as an exception value, if any."""
    failed = result.failed_step
    if failed is None:
        return None
    instance = result.instance
    common = dict(
        job=instance.job_name,
        step_index=failed.index,
        command=" ".join(failed.step.argv),
        exit_code=failed.exit_code,
        axis_values=dict(instance.axis_values),
        output=failed.output,
    )
    if failed.failure == FailureKind.TIMEOUT:
        return StepTimeout(timeout=failed.step.timeout or instance.timeout, **common)
    return StepFailure(**common)
