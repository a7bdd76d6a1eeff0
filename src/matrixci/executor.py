# executor.py
from __future__ import annotations

import os
import subprocess
import threading
import time
from typing import Dict, List, Optional, Tuple

from .config import EngineConfig
from .model import FailureKind, JobInstance, JobResult, Outcome, StepResult, StepSpec
from .ui.console import Console, get_console

POLL_INTERVAL = 0.1  # seconds between cancel/deadline checks while a step runs
MISSING_COMMAND_EXIT = 127

TOOL_HINTS = {
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
    "rustup": "Install rustup from https://rustup.rs or fix PATH.",
    "rustc": "Install a Rust toolchain (rustup) or fix PATH.",
    "git": "Install Git or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "docker": "Install Docker and ensure the daemon is running.",
}


def axis_env_name(axis: str) -> str:
    return "MATRIX_" + "".join(c if c.isalnum() else "_" for c in axis).upper()


class StepExecutor:
    """
    Runs the steps of one job instance, strictly in order.

    Fail-fast: the first failing step without continue_on_error halts the
    instance. Failing continue_on_error steps are recorded and skipped over.
    """

    def __init__(self, config: EngineConfig, console: Optional[Console] = None):
        self.config = config
        self.console = console or get_console()

    def environment(self, instance: JobInstance) -> Dict[str, str]:
        """Process environment for an instance's steps, built from config, never os.environ mutation."""
        env: Dict[str, str] = dict(os.environ) if self.config.inherit_env else {}
        env.update(self.config.env)
        env.update(instance.env)
        env["CI"] = "true"
        env["RUNNER_OS"] = instance.os
        for axis, value in instance.axis_values.items():
            env[axis_env_name(axis)] = value
        return env

    def run(
        self,
        instance: JobInstance,
        *,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> JobResult:
        """
        Execute `instance` and return its outcome.

        deadline: time.monotonic() value after which the running step is
                  killed and the instance fails with a timeout marker.
        cancel:   when set, the running step is terminated and the
                  instance is SKIPPED.
        """
        started = time.monotonic()
        env = self.environment(instance)
        results: List[StepResult] = []
        failed: Optional[StepResult] = None
        cancelled = False

        for index, step in enumerate(instance.steps, start=1):
            if cancel is not None and cancel.is_set():
                cancelled = True
                break

            self.console.print_step(instance, index, step)
            result = self._run_step(index, step, env, deadline, cancel)
            results.append(result)
            self.console.print_step_result(instance, result)

            if result.failure == FailureKind.CANCELLED:
                cancelled = True
                break
            if result.fatal or self._deadline_passed(result, deadline):
                # the instance deadline fails the instance even under continue_on_error
                failed = result
                break

        if cancelled:
            outcome = Outcome.SKIPPED
        elif failed is not None:
            outcome = Outcome.FAILURE
        else:
            outcome = Outcome.SUCCESS

        return JobResult(
            instance=instance,
            outcome=outcome,
            steps=tuple(results),
            failed_step=failed,
            duration=time.monotonic() - started,
        )

    # ------------------------------------------------------------------
    # Execution primitives
    # ------------------------------------------------------------------

    @staticmethod
    def _deadline_passed(result: StepResult, deadline: Optional[float]) -> bool:
        return result.failure == FailureKind.TIMEOUT and deadline is not None and time.monotonic() >= deadline

    def _step_deadline(self, step: StepSpec, deadline: Optional[float]) -> Optional[float]:
        if step.timeout is None:
            return deadline
        step_deadline = time.monotonic() + step.timeout
        return step_deadline if deadline is None else min(deadline, step_deadline)

    def _run_step(
        self,
        index: int,
        step: StepSpec,
        env: Dict[str, str],
        deadline: Optional[float],
        cancel: Optional[threading.Event],
    ) -> StepResult:
        started = time.monotonic()
        step_deadline = self._step_deadline(step, deadline)

        if step_deadline is not None and started >= step_deadline:
            return StepResult(index=index, step=step, exit_code=None, failure=FailureKind.TIMEOUT)

        try:
            proc = subprocess.Popen(
                step.argv,
                cwd=str(self.config.workdir),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            # FileNotFoundError / PermissionError: command could not be started
            message = f"{step.command}: {e}"
            hint = TOOL_HINTS.get(step.command)
            if hint:
                message = f"{message}\nHint: {hint}"
            return StepResult(
                index=index,
                step=step,
                exit_code=MISSING_COMMAND_EXIT,
                output=message,
                failure=FailureKind.ERROR,
                duration=time.monotonic() - started,
            )

        failure, output = self._wait(proc, step_deadline, cancel)
        exit_code = proc.returncode
        if failure is None and exit_code != 0:
            failure = FailureKind.EXIT

        return StepResult(
            index=index,
            step=step,
            exit_code=exit_code,
            output=output[-self.config.output_limit:] if output else "",
            failure=failure,
            duration=time.monotonic() - started,
        )

    def _wait(
        self,
        proc: subprocess.Popen,
        deadline: Optional[float],
        cancel: Optional[threading.Event],
    ) -> Tuple[Optional[FailureKind], str]:
        """Block until the process exits, the deadline passes or the run is cancelled."""
        while True:
            wait_for = POLL_INTERVAL
            if deadline is not None:
                wait_for = min(wait_for, max(0.0, deadline - time.monotonic()))
            try:
                out, _ = proc.communicate(timeout=wait_for)
                return None, out or ""
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.is_set():
                return FailureKind.CANCELLED, self._stop(proc)
            if deadline is not None and time.monotonic() >= deadline:
                return FailureKind.TIMEOUT, self._stop(proc)

    def _stop(self, proc: subprocess.Popen) -> str:
        """terminate, then kill after the grace period. Returns whatever output was captured."""
        proc.terminate()
        try:
            out, _ = proc.communicate(timeout=self.config.kill_grace)
        except subprocess.TimeoutExpired:
            proc.kill()
            out, _ = proc.communicate()
        return out or ""
