from .cache import resolve
from .matrix import expand, expand_all
from .model import Event, EventKind, JobInstance, JobTemplate, Outcome, RunResult, RunState, StepSpec, WorkflowSpec
from .scheduler import Scheduler, run_workflow
from .triggers import should_run
from .workflow import load_workflow, parse_workflow

__all__ = [
    "resolve",
    "expand",
    "expand_all",
    "Event",
    "EventKind",
    "JobInstance",
    "JobTemplate",
    "Outcome",
    "RunResult",
    "RunState",
    "StepSpec",
    "WorkflowSpec",
    "Scheduler",
    "run_workflow",
    "should_run",
    "load_workflow",
    "parse_workflow",
]
