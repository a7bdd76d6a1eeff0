"""Tests for the matrixci command line."""

from __future__ import annotations

import sys
import textwrap

import pytest
from click.testing import CliRunner

from matrixci.cli import EXIT_CONFIG, EXIT_FAILED, build_event, cli
from matrixci.model import EventKind


def _workflow(exit_code: int = 0) -> str:
    # repr() gives a quoted scalar for the interpreter path
    return textwrap.dedent(
        f"""
        name: local
        on:
          pull_request:
          push:
            branches: [main]
          schedule:
            - cron: '07 12 * * 5'
        jobs:
          build:
            runs-on: linux
            strategy:
              matrix:
                toolchain: [stable, beta]
            steps:
              - name: compile
                command: {sys.executable!r}
                args: ["-c", "import sys; sys.exit({exit_code})"]
        """
    )


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".matrixci").mkdir()
    return tmp_path


def _write(workspace, text: str, name: str = "ci.yml"):
    path = workspace / ".matrixci" / name
    path.write_text(text)
    return path


class TestCheck:
    def test_valid(self, workspace) -> None:
        _write(workspace, _workflow())

        result = CliRunner().invoke(cli, ["check"])

        assert result.exit_code == 0, result.output
        assert "OK: local (1 job(s))" in result.output

    def test_invalid(self, workspace) -> None:
        _write(workspace, "on: push\njobs:\n  ci:\n    steps:\n      - run: x\n")

        result = CliRunner().invoke(cli, ["check"])

        assert result.exit_code == EXIT_CONFIG
        assert "Invalid workflow" in result.output

    def test_no_workflow_found(self, workspace) -> None:
        result = CliRunner().invoke(cli, ["check"])

        assert result.exit_code == EXIT_CONFIG
        assert "No workflow file found" in result.output

    def test_multiple_workflows(self, workspace) -> None:
        _write(workspace, _workflow(), "a.yml")
        _write(workspace, _workflow(), "b.yml")

        result = CliRunner().invoke(cli, ["check"])

        assert result.exit_code == EXIT_CONFIG
        assert "Multiple workflow files found" in result.output

    def test_explicit_path(self, workspace) -> None:
        (workspace / "other.yml").write_text(_workflow())

        result = CliRunner().invoke(cli, ["check", "--workflow", "other.yml"])

        assert result.exit_code == 0, result.output


class TestRun:
    def test_success(self, workspace) -> None:
        _write(workspace, _workflow())

        result = CliRunner().invoke(cli, ["run", "--event", "pull_request", "--no-cache"])

        assert result.exit_code == 0, result.output
        assert "build (stable): SUCCESS" in result.output
        assert "build (beta): SUCCESS" in result.output
        assert "RUN: SUCCEEDED" in result.output

    def test_failure_exits_nonzero(self, workspace) -> None:
        _write(workspace, _workflow(exit_code=3))

        result = CliRunner().invoke(cli, ["run", "--no-cache"])

        assert result.exit_code == EXIT_FAILED
        assert "[build [toolchain=beta]] STEP #1 FAILED" in result.output
        assert "exit code: 3" in result.output
        assert "RUN: FAILED" in result.output

    def test_rejected_event_is_a_noop(self, workspace) -> None:
        _write(workspace, _workflow(exit_code=3))

        result = CliRunner().invoke(cli, ["run", "--event", "push", "--branch", "feature"])

        assert result.exit_code == 0, result.output
        assert "does not start local (no-op)" in result.output
        assert "RUN:" not in result.output

    def test_scheduled_tick(self, workspace) -> None:
        _write(workspace, _workflow())

        result = CliRunner().invoke(
            cli, ["run", "--event", "schedule", "--at", "2024-01-05T12:07:00", "--no-cache"]
        )

        assert result.exit_code == 0, result.output
        assert "RUN: SUCCEEDED" in result.output

    def test_job_selection_unknown(self, workspace) -> None:
        _write(workspace, _workflow())

        result = CliRunner().invoke(cli, ["run", "--job", "nope", "--no-cache"])

        assert result.exit_code == EXIT_CONFIG
        assert "unknown job" in result.output

    def test_bad_timestamp(self, workspace) -> None:
        _write(workspace, _workflow())

        result = CliRunner().invoke(cli, ["run", "--event", "schedule", "--at", "friday"])

        assert result.exit_code == 2
        assert "not an ISO timestamp" in result.output


class TestPlan:
    def test_lists_instances(self, workspace) -> None:
        _write(workspace, _workflow())

        result = CliRunner().invoke(cli, ["plan"])

        assert result.exit_code == 0, result.output
        assert "push: main" in result.output
        assert "schedule: 07 12 * * 5" in result.output
        assert "next scheduled run:" in result.output
        assert "  build (stable): os=linux, steps=1" in result.output
        assert "2 instance(s)" in result.output


class TestBuildEvent:
    def test_manual(self) -> None:
        assert build_event(None, None, None) is None

    def test_push_branch(self) -> None:
        event = build_event("push", "main", None)

        assert event.kind == EventKind.PUSH
        assert event.branch == "main"

    def test_push_without_branch_outside_git(self, monkeypatch) -> None:
        monkeypatch.setattr("matrixci.cli.current_branch", lambda: None)

        with pytest.raises(Exception, match="need a branch"):
            build_event("push", None, None)

    def test_schedule_tick_is_utc(self) -> None:
        event = build_event("schedule", None, "2024-01-05T12:07:00")

        assert event.cron_tick.tzinfo is not None
        assert event.cron_tick.hour == 12
