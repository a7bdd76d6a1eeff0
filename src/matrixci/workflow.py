# workflow.py
"""
Workflow declaration loading.

The declaration is a YAML document shaped like a hosted CI workflow:

    name: Continuous integration
    on:
      pull_request:
      push:
        branches: [main]
      schedule:
        - cron: '07 12 * * 5'
    env:
      CARGO_INCREMENTAL: 0
    jobs:
      ci-linux:
        runs-on: ubuntu-latest
        strategy:
          matrix:
            rust: [stable, beta, nightly, 1.63.0]
        cache:
          namespace: cargo-check
          inputs: ["**/Cargo.lock"]
          paths: [target/]
        steps:
          - run: cargo build
          - run: cargo fmt --all -- --check
            continue-on-error: true

Parsing is strict: anything invalid raises ConfigInvalid and no run starts.
"""
from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigInvalid
from .matrix import compact_expressions, empty_axes, expand
from .model import CacheSpec, JobTemplate, StepSpec, TriggerConfig, WorkflowSpec
from .triggers import CronExpression

Scalar = Union[str, int, float, bool]


def _to_str(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepDoc(_Doc):
    name: Optional[str] = None
    run: Optional[str] = None
    command: Optional[str] = None
    args: Union[List[Scalar], str, None] = None
    uses: Optional[str] = None
    continue_on_error: bool = Field(False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)

    @model_validator(mode="after")
    def _one_command(self) -> StepDoc:
        if self.uses is not None:
            raise ValueError(f"action steps are not supported (uses: {self.uses}); use run: or command:")
        if (self.run is None) == (self.command is None):
            raise ValueError("step needs exactly one of 'run' or 'command'")
        if self.run is not None and self.args is not None:
            raise ValueError("'args' only applies to 'command' steps")
        return self

    def to_spec(self) -> StepSpec:
        if self.run is not None:
            argv = shlex.split(compact_expressions(self.run))
            if not argv:
                raise ValueError("empty 'run' command")
            command, args = argv[0], tuple(argv[1:])
        else:
            command = self.command
            if isinstance(self.args, str):
                args = tuple(shlex.split(compact_expressions(self.args)))
            else:
                args = tuple(_to_str(a) for a in (self.args or []))
        return StepSpec(
            command=command,
            args=args,
            continue_on_error=self.continue_on_error,
            name=self.name,
            timeout=self.timeout_minutes * 60 if self.timeout_minutes else None,
        )


class CacheDoc(_Doc):
    namespace: str = Field(min_length=1)
    inputs: List[str] = Field(default_factory=list)
    paths: List[str] = Field(min_length=1)


class StrategyDoc(_Doc):
    matrix: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("matrix")
    @classmethod
    def _axes(cls, matrix: Dict[str, Any]) -> Dict[str, Any]:
        for axis in ("include", "exclude"):
            if axis in matrix:
                raise ValueError(f"matrix '{axis}' is not supported; declare plain axes only")
        for axis, values in matrix.items():
            if not isinstance(values, list) or not all(isinstance(v, (str, int, float, bool)) for v in values):
                raise ValueError(f"matrix axis {axis!r} must be a list of scalar values")
            labels = [_to_str(v) for v in values]
            if len(set(labels)) != len(labels):
                raise ValueError(f"matrix axis {axis!r} has duplicate values: {labels}")
        return matrix


class JobDoc(_Doc):
    runs_on: str = Field(alias="runs-on", min_length=1)
    strategy: Optional[StrategyDoc] = None
    steps: List[StepDoc] = Field(min_length=1)
    env: Dict[str, Scalar] = Field(default_factory=dict)
    cache: Optional[CacheDoc] = None
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    continue_on_error: bool = Field(False, alias="continue-on-error")

    def to_template(self, name: str) -> JobTemplate:
        axes = {}
        if self.strategy is not None:
            axes = {axis: tuple(_to_str(v) for v in values) for axis, values in self.strategy.matrix.items()}
        cache = None
        if self.cache is not None:
            cache = CacheSpec(
                namespace=self.cache.namespace,
                inputs=tuple(self.cache.inputs),
                paths=tuple(self.cache.paths),
            )
        return JobTemplate(
            name=name,
            os=self.runs_on,
            steps=tuple(s.to_spec() for s in self.steps),
            matrix_axes=axes,
            env={k: _to_str(v) for k, v in self.env.items()},
            cache=cache,
            timeout=self.timeout_minutes * 60 if self.timeout_minutes else None,
            continue_on_error=self.continue_on_error,
        )


class PushDoc(BaseModel):
    model_config = ConfigDict(extra="ignore")
    branches: Optional[List[str]] = None


class ScheduleDoc(BaseModel):
    model_config = ConfigDict(extra="ignore")
    cron: str


class WorkflowDoc(_Doc):
    name: Optional[str] = None
    on: Any
    env: Dict[str, Scalar] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc] = Field(min_length=1)


# ---------------------------------------------------------------------
# Triggers (`on:`)
# ---------------------------------------------------------------------

def _parse_on(raw: Any) -> TriggerConfig:
    """
    `on` may be a single event name, a list of names or a mapping.
    Events other than pull_request/push/schedule are accepted and ignored.
    """
    if isinstance(raw, str):
        raw = {raw: None}
    elif isinstance(raw, list):
        if not all(isinstance(x, str) for x in raw):
            raise ConfigInvalid("'on' list must contain event names")
        raw = {name: None for name in raw}
    elif not isinstance(raw, dict):
        raise ConfigInvalid(f"'on' must be a string, list or mapping, got {type(raw).__name__}")

    push_enabled = "push" in raw
    push_branches = None
    if push_enabled and raw["push"] is not None:
        push = PushDoc.model_validate(raw["push"])
        push_branches = tuple(push.branches) if push.branches is not None else None

    schedules = []
    if raw.get("schedule") is not None:
        entries = raw["schedule"]
        if not isinstance(entries, list):
            raise ConfigInvalid("'on.schedule' must be a list of {cron: ...} entries")
        for entry in entries:
            schedules.append(CronExpression.parse(ScheduleDoc.model_validate(entry).cron))

    return TriggerConfig(
        pull_request="pull_request" in raw,
        push_enabled=push_enabled,
        push_branches=push_branches,
        schedules=tuple(schedules),
    )


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------

def _format_errors(e: ValidationError) -> List[str]:
    out = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        out.append(f"{loc}: {err.get('msg')}")
    return out


def workflow_from_dict(data: Any, *, source: Optional[str] = None) -> WorkflowSpec:
    if not isinstance(data, dict):
        raise ConfigInvalid("workflow must be a mapping", source=source)

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)
    if "on" not in data:
        raise ConfigInvalid("missing 'on' (trigger) section", source=source)

    try:
        doc = WorkflowDoc.model_validate(data)
        triggers = _parse_on(doc.on)
        templates = tuple(job.to_template(name) for name, job in doc.jobs.items())
    except ValidationError as e:
        raise ConfigInvalid("invalid workflow", source=source, details=_format_errors(e)) from e
    except ConfigInvalid as e:
        e.source = e.source or source
        raise
    except ValueError as e:
        raise ConfigInvalid(str(e), source=source) from e

    for template in templates:
        if empty_axes(template):
            continue
        try:
            # surfaces bad ${{ matrix.* }} references before any run starts
            expand(template)
        except ConfigInvalid as e:
            e.source = e.source or source
            e.details.insert(0, f"job: {template.name}")
            raise

    return WorkflowSpec(
        name=doc.name or (Path(source).stem if source else "workflow"),
        triggers=triggers,
        jobs=templates,
        env={k: _to_str(v) for k, v in doc.env.items()},
        source=source,
    )


def parse_workflow(text: str, *, source: Optional[str] = None) -> WorkflowSpec:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigInvalid(f"Invalid YAML syntax: {e}", source=source) from e
    if not data:
        raise ConfigInvalid("workflow file is empty", source=source)
    return workflow_from_dict(data, source=source)


def load_workflow(path: str | Path) -> WorkflowSpec:
    """Load and validate a workflow declaration from a YAML file."""
    wf_path = Path(path).expanduser()
    if not wf_path.exists():
        raise ConfigInvalid(f"Workflow file not found: {wf_path}")
    if wf_path.suffix not in (".yml", ".yaml"):
        raise ConfigInvalid(f"Workflow must be a .yml/.yaml file, got: {wf_path.name}")
    return parse_workflow(wf_path.read_text(encoding="utf-8"), source=str(wf_path))
