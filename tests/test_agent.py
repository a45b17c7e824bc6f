from __future__ import annotations

import threading
import time
from pathlib import Path

from runway.agent.api_client import APIClient
from runway.agent.executor import CancelWatcher, execute_lease
from runway.agent.models import Lease
from runway.dsl import checkout, job, pipeline, sh
from runway.loader import pipeline_to_dict
from runway.model import EventKind, JobStatus, RunStatus


def _claimed(pipe) -> dict:
    return {
        "run_id": "run-42",
        "repo_url": "https://git.example.com/acme/app.git",
        "ref": "refs/heads/main",
        "event": {"kind": "push", "ref": "refs/heads/main", "source_identity": "hook"},
        "pipeline": pipeline_to_dict(pipe),
        "lease_expires_at": "2026-01-01T00:00:00+00:00",
    }


def test_lease_from_claim_response():
    lease = Lease.from_dict(_claimed(pipeline("ci", job("a", sh("a", "true")))))
    assert lease.run_id == "run-42"
    assert lease.event.kind is EventKind.PUSH
    assert lease.pipeline_name == "ci"


def test_claim_lease_returns_none_when_nothing_queued(monkeypatch):
    client = APIClient("http://ci.local", "agent-1")
    monkeypatch.setattr(client, "_request", lambda method, path, data=None: {})
    assert client.claim_lease() is None

    claimed = _claimed(pipeline("ci", job("a", sh("a", "true"))))
    monkeypatch.setattr(client, "_request", lambda method, path, data=None: claimed)
    assert client.claim_lease().run_id == "run-42"


class FakeAPI:
    base_url = "http://ci.local"

    def __init__(self, statuses):
        self.statuses = list(statuses)

    def run_status(self, run_id: str) -> str:
        return self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]


class FakeScheduler:
    def __init__(self):
        self.cancelled = threading.Event()

    def cancel(self):
        self.cancelled.set()


def test_cancel_watcher_cancels_superseded_run():
    scheduler = FakeScheduler()
    with CancelWatcher(FakeAPI(["running", "running", "cancelled"]), "run-42", scheduler, interval=0.01):
        assert scheduler.cancelled.wait(2)


def test_cancel_watcher_leaves_active_run_alone():
    scheduler = FakeScheduler()
    with CancelWatcher(FakeAPI(["running"]), "run-42", scheduler, interval=0.01):
        time.sleep(0.1)
    assert not scheduler.cancelled.is_set()


def test_execute_lease_runs_pipeline_and_publishes(monkeypatch, source: Path, settings):
    pipe = pipeline(
        "ci",
        job("test", checkout(), sh("t", "cat README.md")),
        job("review", sh("r", "true"), on="pull_request"),
    )
    published = []
    monkeypatch.setattr("runway.agent.executor.clone_at_ref", lambda url, ref, work_dir: source)
    monkeypatch.setattr(
        "runway.agent.executor.publish",
        lambda report, publisher, **kw: published.append((report, publisher)),
    )

    report = execute_lease(Lease.from_dict(_claimed(pipe)), FakeAPI(["running"]), settings, cancel_poll_interval=0.05)

    assert report.run_id == "run-42"
    assert report.status is RunStatus.SUCCEEDED
    assert report.job("review").status is JobStatus.SKIPPED
    assert "hello" in report.job("test").captured_output
    (sent, publisher) = published[0]
    assert sent is report
    assert publisher.base_url == "http://ci.local"
