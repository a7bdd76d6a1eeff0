# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PULL_REQUEST = "pull_request"
    PUSH = "push"
    SCHEDULED = "schedule"

    @classmethod
    def parse(cls, name: str) -> Optional[EventKind]:
        """Map a webhook/CLI event name to a kind. Unknown names give None."""
        normalized = name.strip().lower().replace("-", "_")
        if normalized == "scheduled":
            normalized = "schedule"
        for kind in cls:
            if kind.value == normalized:
                return kind
        return None


@dataclass(frozen=True)
class Event:
    """Something that may start a run. Consumed once by the trigger evaluator."""
    kind: Union[EventKind, str]
    branch: Optional[str] = None
    cron_tick: Optional[datetime] = None

    @classmethod
    def pull_request(cls, branch: str | None = None) -> Event:
        return cls(kind=EventKind.PULL_REQUEST, branch=branch)

    @classmethod
    def push(cls, branch: str) -> Event:
        return cls(kind=EventKind.PUSH, branch=branch)

    @classmethod
    def scheduled(cls, tick: datetime) -> Event:
        return cls(kind=EventKind.SCHEDULED, cron_tick=tick)

    def describe(self) -> str:
        kind = self.kind.value if isinstance(self.kind, EventKind) else str(self.kind)
        if self.branch:
            return f"{kind} ({self.branch})"
        if self.cron_tick is not None:
            return f"{kind} ({self.cron_tick.isoformat()})"
        return kind


# ---------------------------------------------------------------------
# Workflow declaration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepSpec:
    """A single external command inside a job."""
    command: str
    args: Tuple[str, ...] = ()
    continue_on_error: bool = False
    name: Optional[str] = None
    timeout: Optional[float] = None  # seconds

    @property
    def display_name(self) -> str:
        return self.name or " ".join((self.command, *self.args))

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class CacheSpec:
    """
    Keyed cache for a job.

    namespace: logical key prefix (e.g. "cargo-check")
    inputs:    glob patterns whose file contents form the key (e.g. "**/Cargo.lock")
    paths:     files/dirs stored on miss and restored on hit
    """
    namespace: str
    inputs: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class JobTemplate:
    name: str
    os: str
    steps: Tuple[StepSpec, ...]
    # axis name -> ordered values; declaration order is preserved
    matrix_axes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheSpec] = None
    timeout: Optional[float] = None  # seconds, per instance
    continue_on_error: bool = False


@dataclass(frozen=True)
class TriggerConfig:
    """
    What the `on:` block admits.

    push_branches=None with push_enabled means any branch.
    """
    pull_request: bool = False
    push_enabled: bool = False
    push_branches: Optional[Tuple[str, ...]] = None
    # CronExpression instances (see triggers.py); kept untyped to avoid an import cycle
    schedules: Tuple = ()


@dataclass(frozen=True)
class WorkflowSpec:
    name: str
    triggers: TriggerConfig
    jobs: Tuple[JobTemplate, ...]
    env: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None  # path the workflow was loaded from

    def job(self, name: str) -> JobTemplate:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(f"Unknown job {name!r}. Known jobs: {[j.name for j in self.jobs]}")


@dataclass(frozen=True)
class JobInstance:
    """One concrete unit of work: fixed os + axis values + steps."""
    job_name: str
    os: str
    axis_values: Dict[str, str]
    steps: Tuple[StepSpec, ...]
    env: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheSpec] = None
    timeout: Optional[float] = None
    continue_on_error: bool = False

    @property
    def id(self) -> str:
        if not self.axis_values:
            return self.job_name
        return f"{self.job_name} ({', '.join(self.axis_values.values())})"

    def label(self) -> str:
        """Log prefix with enough context to reproduce the instance."""
        axes = " ".join(f"{k}={v}" for k, v in self.axis_values.items())
        return f"{self.job_name} [{axes}]" if axes else self.job_name


# ---------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheKey:
    namespace: str
    os: str
    digest: str

    def __str__(self) -> str:
        return f"{self.os}-{self.namespace}-{self.digest}"


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    EXIT = "exit"            # command exited non-zero
    TIMEOUT = "timeout"      # killed at the step/instance deadline
    CANCELLED = "cancelled"  # run cancelled while the step was running
    ERROR = "error"          # command could not be started


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    index: int
    step: StepSpec
    exit_code: Optional[int]
    output: str = ""
    failure: Optional[FailureKind] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def fatal(self) -> bool:
        return self.failure is not None and not self.step.continue_on_error


@dataclass(frozen=True)
class JobResult:
    instance: JobInstance
    outcome: Outcome
    steps: Tuple[StepResult, ...] = ()
    failed_step: Optional[StepResult] = None
    cache_hit: Optional[bool] = None
    duration: float = 0.0

    @property
    def timed_out(self) -> bool:
        return self.failed_step is not None and self.failed_step.failure == FailureKind.TIMEOUT

    @property
    def non_fatal_failures(self) -> Tuple[StepResult, ...]:
        return tuple(s for s in self.steps if not s.ok and not s.fatal)


@dataclass(frozen=True)
class RunResult:
    state: RunState
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    admitted: bool = True
    cancelled: bool = False

    @property
    def job_outcomes(self) -> Dict[str, Outcome]:
        return {k: v.outcome for k, v in self.jobs.items()}

    @property
    def overall(self) -> Outcome:
        return Outcome.FAILURE if self.state == RunState.FAILED else Outcome.SUCCESS

    @property
    def ok(self) -> bool:
        return self.state != RunState.FAILED
