from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from runway.cache import CacheStore
from runway.cli import cli

PIPELINE = """
name: demo
jobs:
  build:
    steps:
      - checkout
      - run: cat README.md
  test:
    needs: build
    steps:
      - run: echo testing
  lint:
    on: pull_request
    steps:
      - run: echo "lint failed"; exit 1
"""


@pytest.fixture
def env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("RUNWAY_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("RUNWAY_WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("RUNWAY_TOOLCHAIN_DIR", str(tmp_path / "toolchains"))
    return tmp_path


@pytest.fixture
def pipeline_file(tmp_path: Path) -> Path:
    path = tmp_path / "ci.yml"
    path.write_text(PIPELINE, encoding="utf-8")
    return path


def _run(*args: str):
    return CliRunner().invoke(cli, list(args), obj={})


def test_run_push_succeeds(env, pipeline_file, source):
    result = _run("run", str(pipeline_file), "--event", "push", "--source", str(source), "--ref", "refs/heads/main")
    assert result.exit_code == 0, result.output
    assert "STATUS: SUCCEEDED" in result.output
    assert "lint: SKIPPED (not triggered by push)" in result.output


def test_run_pull_request_fails_and_shows_output(env, pipeline_file, source):
    result = _run("run", str(pipeline_file), "--event", "pull_request", "--source", str(source))
    assert result.exit_code == 1
    assert "STATUS: FAILED" in result.output
    assert "lint failed" in result.output


def test_run_selected_job_only(env, pipeline_file, source, tmp_path: Path):
    report_path = tmp_path / "report.json"
    result = _run(
        "run", str(pipeline_file),
        "--event", "push",
        "--job", "test",
        "--source", str(source),
        "--report", str(report_path),
    )
    assert result.exit_code == 0, result.output
    report = json.loads(report_path.read_text(encoding="utf-8"))
    statuses = {j["name"]: j["status"] for j in report["jobs"]}
    assert statuses == {"build": "skipped", "test": "succeeded", "lint": "skipped"}
    assert report["event"]["kind"] == "push"


def test_run_requires_event(env, pipeline_file):
    result = _run("run", str(pipeline_file))
    assert result.exit_code == 2
    assert "--event" in result.output


def test_run_rejects_bad_pipeline(env, tmp_path: Path, source):
    bad = tmp_path / "bad.yml"
    bad.write_text("jobs:\n  a:\n    needs: [a]\n    steps: [x]\n", encoding="utf-8")
    result = _run("run", str(bad), "--event", "push", "--source", str(source))
    assert result.exit_code == 1
    assert "needs itself" in result.output


def test_plan_lists_stages(env, pipeline_file):
    result = _run("plan", str(pipeline_file), "--event", "push")
    assert result.exit_code == 0, result.output
    assert "Stage 1: build" in result.output
    assert "Stage 2: test" in result.output
    assert "lint (skipped: not triggered by push)" in result.output


def test_cache_ls_and_prune(env):
    store = CacheStore(env / "cache")
    for i in range(3):
        store.save_payload(f"rust-{i}", b"x" * 10, prefix="rust-")

    listed = _run("cache", "ls")
    assert listed.exit_code == 0, listed.output
    assert "3 entries, 30 bytes" in listed.output

    pruned = _run("cache", "prune", "--keep", "1")
    assert pruned.exit_code == 0, pruned.output
    assert "removed 2 entries" in pruned.output
    assert len(store.entries()) == 1


class _FakeResponse:
    def __init__(self, body: dict):
        self._body = json.dumps(body).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_submit_posts_event(monkeypatch):
    sent = {}

    def fake_urlopen(req):
        sent["url"] = req.full_url
        sent["body"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse({"admitted": True, "run_id": "r1", "jobs": ["test"], "superseded": ["r0"]})

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    result = _run(
        "submit", "--api", "http://cp:8000",
        "--event", "push", "--ref", "refs/heads/main", "--repo", "https://git.example/demo.git",
    )
    assert result.exit_code == 0, result.output
    assert sent["url"] == "http://cp:8000/events"
    assert sent["body"] == {
        "kind": "push",
        "ref": "refs/heads/main",
        "repo_url": "https://git.example/demo.git",
        "source_identity": "cli",
    }
    assert "Run queued: r1" in result.output
    assert "superseded run r0" in result.output


def test_submit_reports_event_not_admitted(monkeypatch):
    monkeypatch.setattr("urllib.request.urlopen", lambda req: _FakeResponse({"admitted": False}))
    result = _run(
        "submit", "--api", "http://cp:8000",
        "--event", "pull_request", "--ref", "refs/pull/1/head", "--repo", "https://git.example/demo.git",
    )
    assert result.exit_code == 0, result.output
    assert "not admitted" in result.output


def test_agent_passes_log_file(monkeypatch, tmp_path: Path):
    calls = []
    monkeypatch.setattr(
        "runway.agent.agent.run_agent",
        lambda api, agent_id, poll_interval, log_file=None: calls.append((api, agent_id, poll_interval, log_file)),
    )
    log_file = tmp_path / "agent.log"
    result = _run("agent", "--api", "http://cp:8000", "--agent-id", "a1", "--log-file", str(log_file))
    assert result.exit_code == 0, result.output
    assert calls == [("http://cp:8000", "a1", 5, log_file)]
