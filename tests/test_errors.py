"""Tests for error values and their messages."""

from __future__ import annotations

from matrixci.errors import ConfigInvalid, StepFailure, StepTimeout, step_error
from matrixci.model import FailureKind, JobInstance, JobResult, Outcome, StepResult, StepSpec


def _failed(failure: FailureKind, **instance_kwargs) -> JobResult:
    step = StepSpec(command="cargo", args=("+beta", "test"))
    instance = JobInstance("ci-linux", "linux", {"rust": "beta"}, (step,), **instance_kwargs)
    failed = StepResult(index=3, step=step, exit_code=101 if failure == FailureKind.EXIT else None, failure=failure)
    return JobResult(instance=instance, outcome=Outcome.FAILURE, steps=(failed,), failed_step=failed)


def test_config_invalid_message() -> None:
    err = ConfigInvalid("invalid workflow", source="ci.yml", details=["jobs.ci.runs-on: Field required"])

    assert str(err) == "ci.yml: invalid workflow\n  jobs.ci.runs-on: Field required"


def test_step_failure_carries_reproduction_context() -> None:
    err = step_error(_failed(FailureKind.EXIT))

    assert type(err) is StepFailure
    assert err.exit_code == 101
    assert err.step_index == 3
    assert str(err) == "[ci-linux [rust=beta]] step #3 failed (exit=101): cargo +beta test"


def test_step_timeout_is_distinct() -> None:
    err = step_error(_failed(FailureKind.TIMEOUT, timeout=90.0))

    assert isinstance(err, StepTimeout)
    assert err.kind == "timeout"
    assert str(err) == "[ci-linux [rust=beta]] step #3 timed out after 90s: cargo +beta test"


def test_successful_instance_has_no_error() -> None:
    instance = JobInstance("ci", "linux", {}, ())

    assert step_error(JobResult(instance=instance, outcome=Outcome.SUCCESS)) is None
