# scheduler.py
from __future__ import annotations

import tarfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .cache import CacheStore, pack_paths, resolve, resolve_globs, unpack_paths
from .config import EngineConfig
from .errors import CacheUnavailable, ConfigInvalid
from .executor import StepExecutor
from .matrix import empty_axes, expand
from .model import (
    Event,
    FailureKind,
    JobInstance,
    JobResult,
    Outcome,
    RunResult,
    RunState,
    StepResult,
    StepSpec,
    WorkflowSpec,
)
from .triggers import should_run
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Aggregation
# ----------------------------------------------------------------------

class Aggregator:
    """Folds per-instance outcomes into a run verdict. Each instance is recorded exactly once."""

    def __init__(self) -> None:
        self._results: Dict[str, JobResult] = {}
        self._lock = threading.Lock()

    def record(self, result: JobResult) -> None:
        job_id = result.instance.id
        with self._lock:
            if job_id in self._results:
                raise RuntimeError(f"Outcome for {job_id!r} already recorded")
            self._results[job_id] = result

    @property
    def results(self) -> Dict[str, JobResult]:
        with self._lock:
            return dict(self._results)

    def verdict(self) -> RunState:
        """FAILED iff some instance failed and its job did not opt into continue-on-error."""
        with self._lock:
            for result in self._results.values():
                if result.outcome == Outcome.FAILURE and not result.instance.continue_on_error:
                    return RunState.FAILED
        return RunState.SUCCEEDED


# ----------------------------------------------------------------------
# Cache access for one run
# ----------------------------------------------------------------------

class RunCache:
    """
    Store access that never fails an instance.

    The first CacheUnavailable turns the cache off for the rest of the
    run (always-miss). Concurrent misses on the same key both write; the
    bytes are identical so the last writer winning is fine.
    """

    def __init__(self, store: Optional[CacheStore], config: EngineConfig, console: Console):
        self.store = store
        self.config = config
        self.console = console
        self._available = store is not None
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._available

    def _degrade(self, reason: str) -> None:
        with self._lock:
            if not self._available:
                return
            self._available = False
        self.console.print_cache_unavailable(reason)

    def key_for(self, instance: JobInstance) -> Optional[str]:
        if instance.cache is None or not self._available:
            return None
        patterns = [p for p in instance.cache.inputs if p.strip()]
        try:
            missing = [p for p in patterns if not resolve_globs(self.config.workdir, [p])]
            if missing:
                self._degrade(f"cache inputs match no files: {', '.join(missing)}")
                return None
            inputs = resolve_globs(self.config.workdir, patterns)
            return str(resolve(instance.cache.namespace, inputs, os_name=instance.os))
        except OSError as e:
            self._degrade(f"cannot hash cache inputs: {e}")
            return None

    def restore(self, instance: JobInstance, key: str) -> bool:
        try:
            data = self.store.get(key) if self._available else None
        except CacheUnavailable as e:
            self._degrade(str(e))
            return False
        if data is None:
            self.console.print_cache_miss(instance, key)
            return False
        try:
            files = unpack_paths(self.config.workdir, data)
        except (tarfile.TarError, OSError) as e:
            self.console.print_info(f"[{instance.label()}] CACHE: restore failed, treating as miss ({e})")
            return False
        self.console.print_cache_hit(instance, key, files)
        return True

    def save(self, instance: JobInstance, key: str) -> None:
        if not self._available or instance.cache is None:
            return
        try:
            data = pack_paths(self.config.workdir, instance.cache.paths)
            self.store.put(key, data)
        except CacheUnavailable as e:
            self._degrade(str(e))
            return
        except (tarfile.TarError, OSError) as e:
            self._degrade(f"cannot archive cache paths: {e}")
            return
        self.console.print_cache_saved(instance, key)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

def _skipped(instance: JobInstance) -> JobResult:
    return JobResult(instance=instance, outcome=Outcome.SKIPPED)


def _crashed(instance: JobInstance, exc: BaseException) -> JobResult:
    step = StepSpec(command="<matrixci>", name="engine error")
    failed = StepResult(index=0, step=step, exit_code=None, output=str(exc), failure=FailureKind.ERROR)
    return JobResult(instance=instance, outcome=Outcome.FAILURE, steps=(failed,), failed_step=failed)


class Scheduler:
    """
    Runs one workflow run: PENDING -> RUNNING -> SUCCEEDED | FAILED.

    Every instance of every admitted job is dispatched to a thread pool
    bounded by config.max_workers. Each instance gets a deadline when it
    starts; the executor kills the running step when it passes.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        executor: Optional[StepExecutor] = None,
        cache_store: Optional[CacheStore] = None,
        console: Optional[Console] = None,
    ):
        self.config = config
        self.console = console or get_console()
        self.executor = executor or StepExecutor(config, console=self.console)
        self.cache = RunCache(cache_store, config, self.console)
        self.state = RunState.PENDING
        self._cancel = threading.Event()
        self._aggregator = Aggregator()

    # ---- cancellation ----

    def cancel(self) -> None:
        """Best-effort stop: running steps are terminated, unfinished instances are SKIPPED."""
        if not self._cancel.is_set():
            self._cancel.set()
            self.console.print_info("RUN: cancellation requested")

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- planning ----

    def plan(self, workflow: WorkflowSpec, jobs: Optional[Iterable[str]] = None) -> List[JobInstance]:
        """Expand the selected jobs into instances. Jobs with an empty axis are reported and dropped."""
        selected = set(jobs) if jobs else None
        if selected:
            unknown = selected - {j.name for j in workflow.jobs}
            if unknown:
                raise ConfigInvalid(
                    f"unknown job(s): {sorted(unknown)}",
                    details=[f"known jobs: {[j.name for j in workflow.jobs]}"],
                )

        instances: List[JobInstance] = []
        for template in workflow.jobs:
            if selected is not None and template.name not in selected:
                continue
            empty = empty_axes(template)
            if empty:
                self.console.print_matrix_empty(template.name, empty)
                continue
            instances.extend(expand(template))

        ids = [i.id for i in instances]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ConfigInvalid(f"matrix produces duplicate job instances: {dupes}")
        return instances

    # ---- execution ----

    def _run_instance(self, instance: JobInstance) -> JobResult:
        if self._cancel.is_set():
            return _skipped(instance)

        timeout = instance.timeout or self.config.instance_timeout
        deadline = time.monotonic() + timeout
        self.console.print_job_start(instance)

        key = self.cache.key_for(instance)
        hit: Optional[bool] = None
        if key is not None:
            hit = self.cache.restore(instance, key)

        result = self.executor.run(instance, deadline=deadline, cancel=self._cancel)

        if key is not None and not hit and result.outcome == Outcome.SUCCESS:
            self.cache.save(instance, key)

        return replace(result, cache_hit=hit)

    def run(
        self,
        workflow: WorkflowSpec,
        event: Optional[Event] = None,
        *,
        jobs: Optional[Iterable[str]] = None,
    ) -> RunResult:
        """
        Run `workflow` for `event` (None means a manual run, always admitted).

        A rejected event is not an error: the run stays PENDING with
        admitted=False and nothing is executed.
        """
        if self.state != RunState.PENDING:
            raise RuntimeError(f"Scheduler already used (state={self.state.value})")

        if event is not None and not should_run(event, workflow):
            self.console.print_trigger_rejected(workflow.name, event)
            return RunResult(state=RunState.PENDING, admitted=False)

        instances = self.plan(workflow, jobs)
        self.state = RunState.RUNNING
        self.console.print_run_started(workflow.name, event, len(instances))

        if instances:
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                futures = {pool.submit(self._run_instance, inst): inst for inst in instances}
                for future in as_completed(futures):
                    instance = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        self.console.print_exception(e)
                        result = _crashed(instance, e)
                    self._aggregator.record(result)
                    self.console.print_job_result(result)

        self.state = self._aggregator.verdict()
        ordered = self._ordered(instances)
        result = RunResult(state=self.state, jobs=ordered, cancelled=self.cancelled)
        self.console.print_results(result)
        return result

    def _ordered(self, instances: List[JobInstance]) -> Dict[str, JobResult]:
        """Results in expansion order, independent of completion order."""
        recorded = self._aggregator.results
        return {i.id: recorded[i.id] for i in instances if i.id in recorded}


def run_workflow(
    workflow: WorkflowSpec,
    event: Optional[Event] = None,
    *,
    config: Optional[EngineConfig] = None,
    cache_store: Optional[CacheStore] = None,
    console: Optional[Console] = None,
    jobs: Optional[Iterable[str]] = None,
) -> RunResult:
    """One-shot convenience: build a Scheduler for the workflow and run it."""
    config = config or EngineConfig.for_workflow(workflow)
    scheduler = Scheduler(config, cache_store=cache_store, console=console)
    return scheduler.run(workflow, event, jobs=jobs)
