"""Shared fixtures: steps are real subprocesses of the running interpreter so tests are OS independent."""

from __future__ import annotations

import io
import sys

import pytest

from matrixci.config import EngineConfig
from matrixci.model import StepSpec
from matrixci.ui.console import Console


@pytest.fixture
def py_step():
    """Factory for a step that runs a python snippet."""

    def _make(code: str, **kwargs) -> StepSpec:
        return StepSpec(command=sys.executable, args=("-c", code), **kwargs)

    return _make


@pytest.fixture
def report():
    return io.StringIO()


@pytest.fixture
def console(report):
    return Console(stream=report, err_stream=report)


@pytest.fixture
def config(tmp_path):
    return EngineConfig(workdir=tmp_path, max_workers=4, instance_timeout=60, kill_grace=1.0)
