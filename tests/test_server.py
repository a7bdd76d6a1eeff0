"""Tests for the HTTP trigger source."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from matrixci.model import Event, EventKind, JobTemplate, TriggerConfig, WorkflowSpec
from matrixci.server import Ticker, create_app
from matrixci.triggers import CronExpression


@pytest.fixture
def make_client(config, console):
    def _make(*steps, **app_kwargs) -> TestClient:
        workflow = WorkflowSpec(
            name="ci",
            triggers=TriggerConfig(
                pull_request=True,
                push_enabled=True,
                push_branches=("main",),
                schedules=(CronExpression.parse("07 12 * * 5"),),
            ),
            jobs=(JobTemplate(name="build", os="linux", steps=tuple(steps), matrix_axes={"rust": ("stable", "beta")}),),
        )
        return TestClient(create_app(workflow, config, console=console, **app_kwargs))

    return _make


def _registry(client: TestClient):
    return client.app.state.registry


class TestEvents:
    def test_admitted_run_completes(self, make_client, py_step) -> None:
        client = make_client(py_step("pass"))

        resp = client.post("/events", json={"kind": "pull_request", "branch": "feat"})

        assert resp.status_code == 202
        body = resp.json()
        assert body["admitted"] is True
        _registry(client).wait(body["run_id"], timeout=30)

        run = client.get(f"/runs/{body['run_id']}").json()
        assert run["status"] == "succeeded"
        assert run["event"] == "pull_request (feat)"
        assert set(run["jobs"]) == {"build (stable)", "build (beta)"}
        assert run["jobs"]["build (beta)"]["axis_values"] == {"rust": "beta"}

    def test_failed_instance_is_reported(self, make_client, py_step) -> None:
        client = make_client(py_step("import os, sys; sys.exit(4 if os.environ['MATRIX_RUST'] == 'beta' else 0)"))

        run_id = client.post("/events", json={"kind": "push", "branch": "main"}).json()["run_id"]
        _registry(client).wait(run_id, timeout=30)

        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "failed"
        beta = run["jobs"]["build (beta)"]
        assert beta["outcome"] == "failure"
        assert beta["failed_step"] == 1
        assert beta["exit_code"] == 4
        assert "build [rust=beta]" in beta["error"]
        assert run["jobs"]["build (stable)"]["error"] is None

    def test_rejected_push(self, make_client, py_step) -> None:
        client = make_client(py_step("pass"))

        resp = client.post("/events", json={"kind": "push", "branch": "feature"})

        assert resp.status_code == 202
        assert resp.json() == {"admitted": False, "run_id": None, "superseded": []}
        assert client.get("/runs").json() == []

    def test_unknown_kind_is_rejected(self, make_client, py_step) -> None:
        client = make_client(py_step("pass"))

        resp = client.post("/events", json={"kind": "release"})

        assert resp.json()["admitted"] is False

    def test_scheduled_tick(self, make_client, py_step) -> None:
        client = make_client(py_step("pass"))

        resp = client.post("/events", json={"kind": "schedule", "cron_tick": "2024-01-05T12:07:00Z"})

        assert resp.json()["admitted"] is True
        _registry(client).wait(resp.json()["run_id"], timeout=30)

    def test_missing_run(self, make_client, py_step) -> None:
        client = make_client(py_step("pass"))

        assert client.get("/runs/nope").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404


class TestSupersede:
    def test_new_event_cancels_same_branch(self, make_client, py_step) -> None:
        client = make_client(py_step("import time; time.sleep(30)"))
        registry = _registry(client)

        first = client.post("/events", json={"kind": "pull_request", "branch": "feat"}).json()
        other = client.post("/events", json={"kind": "pull_request", "branch": "other"}).json()
        second = client.post("/events", json={"kind": "pull_request", "branch": "feat"}).json()

        assert second["superseded"] == [first["run_id"]]
        registry.wait(first["run_id"], timeout=30)
        run = client.get(f"/runs/{first['run_id']}").json()
        assert run["cancelled"] is True
        assert {j["outcome"] for j in run["jobs"].values()} == {"skipped"}

        for run_id in (other["run_id"], second["run_id"]):
            resp = client.post(f"/runs/{run_id}/cancel")
            assert resp.status_code == 200
            registry.wait(run_id, timeout=30)
            assert client.get(f"/runs/{run_id}").json()["cancelled"] is True

    def test_other_kind_on_same_branch_is_not_superseded(self, make_client, py_step) -> None:
        client = make_client(py_step("import time; time.sleep(30)"))
        registry = _registry(client)

        pr = client.post("/events", json={"kind": "pull_request", "branch": "main"}).json()
        push = client.post("/events", json={"kind": "push", "branch": "main"}).json()

        assert push["admitted"] is True
        assert push["superseded"] == []
        assert client.get(f"/runs/{pr['run_id']}").json()["cancelled"] is False

        for run_id in (pr["run_id"], push["run_id"]):
            client.post(f"/runs/{run_id}/cancel")
            registry.wait(run_id, timeout=30)


class TestRetention:
    def test_oldest_finished_runs_are_dropped(self, make_client, py_step) -> None:
        client = make_client(py_step("pass"), keep_runs=2)
        registry = _registry(client)

        finished = []
        for branch in ("a", "b", "c"):
            run_id = client.post("/events", json={"kind": "pull_request", "branch": branch}).json()["run_id"]
            registry.wait(run_id, timeout=30)
            finished.append(run_id)
        latest = client.post("/events", json={"kind": "pull_request", "branch": "d"}).json()["run_id"]
        registry.wait(latest, timeout=30)

        assert client.get(f"/runs/{finished[0]}").status_code == 404
        assert client.get(f"/runs/{finished[1]}").status_code == 404
        assert client.get(f"/runs/{finished[2]}").status_code == 200
        assert {r["run_id"] for r in client.get("/runs").json()} == {finished[2], latest}


class TestTicker:
    def test_delivers_minute_aligned_ticks(self) -> None:
        delivered = []
        done = threading.Event()
        clock = lambda: datetime(2024, 1, 5, 12, 6, 59, 900000, tzinfo=timezone.utc)  # noqa: E731

        def deliver(event: Event) -> None:
            delivered.append(event)
            ticker.stop()
            done.set()

        ticker = Ticker(deliver, clock=clock)
        ticker.start()

        assert done.wait(5)
        ticker.join(5)
        assert delivered[0].kind == EventKind.SCHEDULED
        assert delivered[0].cron_tick == datetime(2024, 1, 5, 12, 7, tzinfo=timezone.utc)

    def test_stop_before_first_tick(self) -> None:
        delivered = []
        ticker = Ticker(delivered.append, clock=lambda: datetime(2024, 1, 5, 12, 0, 1, tzinfo=timezone.utc))
        ticker.start()

        ticker.stop()
        ticker.join(5)

        assert not ticker.is_alive()
        assert delivered == []
