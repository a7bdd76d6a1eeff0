# server.py
"""
Trigger source: receives events and starts runs.

  POST /events            webhook-style PullRequest/Push/Scheduled events
  GET  /runs              all runs
  GET  /runs/{id}         run status and per-instance outcomes
  POST /runs/{id}/cancel  cancel a run

A Ticker thread delivers minute-aligned Scheduled events (timer-style).
An admitted event supersedes in-flight runs of the same group (same kind
and branch, or all scheduled runs): they are cancelled before the new run
starts. Only the newest `keep` finished runs are remembered.
"""
from __future__ import annotations

import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .cache import CacheStore
from .config import EngineConfig
from .errors import step_error
from .model import Event, EventKind, RunResult, WorkflowSpec
from .scheduler import Scheduler
from .triggers import should_run
from .ui.console import Console, get_console


# -------------------- Schemas --------------------

class EventIn(BaseModel):
    kind: str
    branch: Optional[str] = None
    cron_tick: Optional[datetime] = None


class EventAccepted(BaseModel):
    admitted: bool
    run_id: Optional[str] = None
    superseded: List[str] = Field(default_factory=list)


class InstanceOut(BaseModel):
    outcome: str
    axis_values: Dict[str, str]
    os: str
    failed_step: Optional[int] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    error: Optional[str] = None


class RunOut(BaseModel):
    run_id: str
    event: str
    status: str
    cancelled: bool
    created_at: datetime
    jobs: Dict[str, InstanceOut] = Field(default_factory=dict)


# -------------------- Run registry --------------------

DEFAULT_KEEP_RUNS = 100


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _group(event: Event) -> str:
    kind = event.kind.value if isinstance(event.kind, EventKind) else str(event.kind)
    return f"{kind}:{event.branch}" if event.branch else kind


@dataclass
class RunRecord:
    run_id: str
    event: Event
    scheduler: Scheduler
    created_at: datetime = field(default_factory=_now_utc)
    result: Optional[RunResult] = None
    error: Optional[str] = None
    thread: Optional[threading.Thread] = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "error"
        if self.result is not None:
            return self.result.state.value
        return self.scheduler.state.value

    @property
    def done(self) -> bool:
        return self.result is not None or self.error is not None


class RunRegistry:
    """Starts admitted runs on background threads and keeps their records."""

    def __init__(
        self,
        workflow: WorkflowSpec,
        config: EngineConfig,
        *,
        cache_store: Optional[CacheStore] = None,
        console: Optional[Console] = None,
        keep: int = DEFAULT_KEEP_RUNS,
    ):
        self.workflow = workflow
        self.config = config
        self.cache_store = cache_store
        self.console = console or get_console()
        self.keep = keep
        self._runs: Dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def submit(self, event: Event) -> EventAccepted:
        if not should_run(event, self.workflow):
            self.console.print_trigger_rejected(self.workflow.name, event)
            return EventAccepted(admitted=False)

        group = _group(event)
        superseded: List[str] = []
        with self._lock:
            for rec in self._runs.values():
                if not rec.done and _group(rec.event) == group:
                    rec.scheduler.cancel()
                    superseded.append(rec.run_id)

            scheduler = Scheduler(self.config, cache_store=self.cache_store, console=self.console)
            rec = RunRecord(run_id=str(uuid.uuid4()), event=event, scheduler=scheduler)
            rec.thread = threading.Thread(target=self._execute, args=(rec,), name=f"run-{rec.run_id[:8]}", daemon=True)
            self._runs[rec.run_id] = rec
            self._prune()
        rec.thread.start()
        return EventAccepted(admitted=True, run_id=rec.run_id, superseded=superseded)

    def _prune(self) -> None:
        """Drop the oldest finished runs beyond `keep`. Caller holds the lock."""
        excess = len(self._runs) - self.keep
        for run_id in [r.run_id for r in self._runs.values() if r.done][:max(0, excess)]:
            del self._runs[run_id]

    def _execute(self, rec: RunRecord) -> None:
        try:
            # the event was admitted in submit(); run it as a manual run
            rec.result = rec.scheduler.run(self.workflow)
        except Exception as e:
            rec.error = str(e)
            self.console.print_exception(e)

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def all(self) -> List[RunRecord]:
        with self._lock:
            return list(self._runs.values())

    def cancel(self, run_id: str) -> bool:
        rec = self.get(run_id)
        if rec is None:
            return False
        rec.scheduler.cancel()
        return True

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[RunRecord]:
        rec = self.get(run_id)
        if rec is not None and rec.thread is not None:
            rec.thread.join(timeout)
        return rec

    def shutdown(self) -> None:
        for rec in self.all():
            if not rec.done:
                rec.scheduler.cancel()


# -------------------- Timer trigger --------------------

class Ticker(threading.Thread):
    """Delivers a Scheduled event at every minute boundary until stopped."""

    def __init__(self, deliver: Callable[[Event], Any], *, clock: Callable[[], datetime] = _now_utc):
        super().__init__(name="matrixci-ticker", daemon=True)
        self.deliver = deliver
        self.clock = clock
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            now = self.clock()
            tick = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
            if self._stop_event.wait((tick - now).total_seconds()):
                break
            self.deliver(Event.scheduled(tick))


# -------------------- App --------------------

def _run_out(rec: RunRecord) -> RunOut:
    jobs: Dict[str, InstanceOut] = {}
    if rec.result is not None:
        for job_id, job in rec.result.jobs.items():
            err = step_error(job)
            jobs[job_id] = InstanceOut(
                outcome=job.outcome.value,
                axis_values=dict(job.instance.axis_values),
                os=job.instance.os,
                failed_step=job.failed_step.index if job.failed_step else None,
                exit_code=job.failed_step.exit_code if job.failed_step else None,
                timed_out=job.timed_out,
                error=str(err) if err else None,
            )
    return RunOut(
        run_id=rec.run_id,
        event=rec.event.describe(),
        status=rec.status,
        cancelled=rec.scheduler.cancelled,
        created_at=rec.created_at,
        jobs=jobs,
    )


def create_app(
    workflow: WorkflowSpec,
    config: EngineConfig,
    *,
    cache_store: Optional[CacheStore] = None,
    console: Optional[Console] = None,
    schedule_ticks: bool = False,
    keep_runs: int = DEFAULT_KEEP_RUNS,
) -> FastAPI:
    registry = RunRegistry(workflow, config, cache_store=cache_store, console=console, keep=keep_runs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ticker = Ticker(registry.submit) if schedule_ticks else None
        if ticker is not None:
            ticker.start()
        try:
            yield
        finally:
            if ticker is not None:
                ticker.stop()
            registry.shutdown()

    app = FastAPI(title="matrixci trigger source", lifespan=lifespan)
    app.state.registry = registry

    @app.post("/events", response_model=EventAccepted, status_code=202)
    def post_event(body: EventIn):
        kind = EventKind.parse(body.kind)
        event = Event(kind=kind or body.kind, branch=body.branch, cron_tick=body.cron_tick)
        return registry.submit(event)

    @app.get("/runs", response_model=List[RunOut])
    def list_runs():
        return [_run_out(r) for r in registry.all()]

    @app.get("/runs/{run_id}", response_model=RunOut)
    def get_run(run_id: str):
        rec = registry.get(run_id)
        if rec is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_out(rec)

    @app.post("/runs/{run_id}/cancel", response_model=RunOut)
    def cancel_run(run_id: str):
        if not registry.cancel(run_id):
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_out(registry.get(run_id))

    return app
