"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional, TextIO

from ..model import (
    Event,
    FailureKind,
    JobInstance,
    JobResult,
    Outcome,
    RunResult,
    StepResult,
    StepSpec,
)


class Console:
    """
    Centralized run report output.

    Instances run on worker threads, so every write goes through one lock
    and each line is emitted whole. Lines about an instance carry its job
    name and axis values; step lines add the step index and exit code.
    """

    def __init__(self, debug: bool = False, stream: Optional[TextIO] = None, err_stream: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where the report goes (defaults to stdout)
            err_stream: Where errors go (defaults to stderr)
        """
        self.debug = debug
        self._stream = stream
        self._err_stream = err_stream
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    @property
    def err_stream(self) -> TextIO:
        return self._err_stream or sys.stderr

    def _emit(self, *lines: str, err: bool = False) -> None:
        out = self.err_stream if err else self.stream
        with self._lock:
            for line in lines:
                print(line, file=out)
            out.flush()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit("", title, "-" * len(title))

    def print_run_started(self, workflow: str, event: Optional[Event], instance_count: int) -> None:
        """Print run start information."""
        self._emit(
            "",
            "RUN STARTED",
            f"Workflow: {workflow}",
            f"Event: {event.describe() if event else 'manual'}",
            f"Instances: {instance_count}",
            "",
        )

    def print_trigger_rejected(self, workflow: str, event: Event) -> None:
        self._emit(f"TRIGGER: {event.describe()} does not start {workflow} (no-op)")

    def print_matrix_empty(self, job: str, axes: Iterable[str]) -> None:
        self._emit(f"MATRIX: {job} skipped (empty axis: {', '.join(axes)})")

    def print_job_start(self, instance: JobInstance) -> None:
        self._emit(f"[{instance.label()}] JOB STARTED on {instance.os}")

    def print_step(self, instance: JobInstance, index: int, step: StepSpec) -> None:
        self._emit(f"[{instance.label()}] STEP #{index}: {step.display_name}")

    def print_step_result(self, instance: JobInstance, result: StepResult) -> None:
        prefix = f"[{instance.label()}] STEP #{result.index}"
        if result.ok:
            if self.debug:
                self._emit(f"{prefix}: ok ({result.duration:.1f}s)")
            return

        if result.failure == FailureKind.TIMEOUT:
            status = "TIMED OUT"
        elif result.failure == FailureKind.CANCELLED:
            status = "CANCELLED"
        elif result.fatal:
            status = "FAILED"
        else:
            status = "FAILED (continue-on-error)"
        lines = [f"{prefix} {status}: {' '.join(result.step.argv)}", f"{prefix} exit code: {result.exit_code}"]
        if result.output and (result.fatal or self.debug):
            lines.extend(f"{prefix} | {line}" for line in result.output.rstrip().splitlines())
        self._emit(*lines)

    def print_job_result(self, result: JobResult) -> None:
        label = result.instance.label()
        if result.outcome == Outcome.SUCCESS:
            self._emit(f"[{label}] STATUS: success ({result.duration:.1f}s)")
        elif result.outcome == Outcome.SKIPPED:
            self._emit(f"[{label}] STATUS: skipped")
        else:
            failed = result.failed_step
            marker = " (timeout)" if result.timed_out else ""
            where = f" at step #{failed.index}" if failed else ""
            self._emit(f"[{label}] STATUS: failure{marker}{where}")

    def print_cache_hit(self, instance: JobInstance, key: str, files: int) -> None:
        """Print cache hit message."""
        self._emit(f"[{instance.label()}] CACHE: hit {_short(key)} ({files} files)")

    def print_cache_miss(self, instance: JobInstance, key: str) -> None:
        """Print cache miss message."""
        self._emit(f"[{instance.label()}] CACHE: miss {_short(key)}")

    def print_cache_saved(self, instance: JobInstance, key: str) -> None:
        """Print cache save message."""
        self._emit(f"[{instance.label()}] CACHE: saved {_short(key)}")

    def print_cache_unavailable(self, reason: str) -> None:
        self._emit(f"CACHE: unavailable, continuing without cache ({reason})")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job_id, job in result.jobs.items():
            status = job.outcome.value.upper()
            if job.timed_out:
                status += " (timeout)"
            elif job.outcome == Outcome.FAILURE and job.instance.continue_on_error:
                status += " (continue-on-error)"
            lines.append(f"  {job_id}: {status}")
        if result.cancelled:
            lines.append("  (run cancelled)")
        lines.append(f"RUN: {result.state.value.upper()}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=self.err_stream)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


def _short(key: str) -> str:
    return key[:48] + "..." if len(key) > 48 else key


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
