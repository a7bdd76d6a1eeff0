# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Dict, List, Mapping

from .errors import ConfigInvalid
from .model import CacheSpec, JobInstance, JobTemplate, StepSpec, WorkflowSpec

# ${{ matrix.rust }} / ${{ runner.os }}
_EXPR = re.compile(r"\$\{\{\s*([A-Za-z_][\w-]*)\.([A-Za-z_][\w-]*)\s*\}\}")

OS_AXIS = "os"

_EXPR_PADDING = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")


def compact_expressions(text: str) -> str:
    """`${{ matrix.rust }}` -> `${{matrix.rust}}` so shell-style splitting keeps it in one word."""
    return _EXPR_PADDING.sub(lambda m: "${{" + m.group(1) + "}}", text)


def substitute(text: str, axis_values: Mapping[str, str], os_name: str | None = None) -> str:
    """Replace matrix/runner expressions with their values for one instance."""

    def repl(m: re.Match) -> str:
        scope, name = m.group(1), m.group(2)
        if scope == "matrix":
            if name not in axis_values:
                raise ConfigInvalid(
                    f"unknown matrix axis {name!r} in {text!r}",
                    details=[f"known axes: {sorted(axis_values)}"],
                )
            return axis_values[name]
        if scope == "runner" and name == "os" and os_name is not None:
            return os_name
        raise ConfigInvalid(f"unsupported expression {m.group(0)!r} in {text!r}")

    return _EXPR.sub(repl, text)


def _bind_step(step: StepSpec, axis_values: Mapping[str, str], os_name: str) -> StepSpec:
    return replace(
        step,
        command=substitute(step.command, axis_values, os_name),
        args=tuple(substitute(a, axis_values, os_name) for a in step.args),
        name=substitute(step.name, axis_values, os_name) if step.name else None,
    )


def _instance(template: JobTemplate, axis_values: Dict[str, str]) -> JobInstance:
    if OS_AXIS in axis_values:
        os_name = axis_values[OS_AXIS]
    else:
        os_name = substitute(template.os, axis_values)

    cache = template.cache
    if cache is not None:
        cache = CacheSpec(
            namespace=substitute(cache.namespace, axis_values, os_name),
            inputs=cache.inputs,
            paths=cache.paths,
        )

    return JobInstance(
        job_name=template.name,
        os=os_name,
        axis_values=axis_values,
        steps=tuple(_bind_step(s, axis_values, os_name) for s in template.steps),
        env={k: substitute(v, axis_values, os_name) for k, v in template.env.items()},
        cache=cache,
        timeout=template.timeout,
        continue_on_error=template.continue_on_error,
    )


def expand(job_template: JobTemplate) -> List[JobInstance]:
    """
    Cartesian product of the template's axes.

    Order is deterministic: axes in declaration order, the first axis
    outermost, values in declaration order. No axes gives exactly one
    instance; any empty axis gives none (the job is skipped, not an error).
    Values are opaque labels: "1.63.0" and "nightly" are never compared.
    """
    axes = list(job_template.matrix_axes.items())
    if not axes:
        return [_instance(job_template, {})]

    names = [name for name, _ in axes]
    value_lists = [list(values) for _, values in axes]
    return [
        _instance(job_template, dict(zip(names, combo)))
        for combo in itertools.product(*value_lists)
    ]


def expand_all(workflow: WorkflowSpec) -> List[JobInstance]:
    """Every instance of every job, in job order."""
    instances: List[JobInstance] = []
    for template in workflow.jobs:
        instances.extend(expand(template))
    return instances


def empty_axes(job_template: JobTemplate) -> List[str]:
    """Names of axes declared with no values (these make the job expand to nothing)."""
    return [name for name, values in job_template.matrix_axes.items() if not values]
