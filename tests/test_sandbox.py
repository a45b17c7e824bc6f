from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from runway.dsl import checkout, job, sh
from runway.errors import JobTimeoutError, SandboxTerminated, StepExecutionError
from runway.model import JobRun
from runway.sandbox import ExecutionSandbox


def _sandbox(source: Path, tmp_path: Path, push_event=None, **kwargs) -> ExecutionSandbox:
    return ExecutionSandbox(source, tmp_path / "work", event=push_event, **kwargs)


def test_checkout_and_commands_run_in_workspace(source: Path, tmp_path: Path, push_event):
    j = job("build", checkout(), sh("list", "cat README.md && echo $RUNWAY_EVENT $RUNWAY_JOB"))
    jr = JobRun(j, "r1")
    with _sandbox(source, tmp_path, push_event) as sb:
        sb.execute(jr, j.steps)
        workspace = sb.workspace
        assert (workspace / "README.md").exists()

    out = jr.captured_output
    assert "==> list" in out
    assert "hello" in out
    assert "push build" in out
    # removed on close
    assert not workspace.exists()


def test_failing_step_stops_the_job(source: Path, tmp_path: Path):
    j = job("t", sh("one", "echo one"), sh("two", "echo boom; exit 3"), sh("three", "echo three"))
    jr = JobRun(j)
    with _sandbox(source, tmp_path) as sb:
        with pytest.raises(StepExecutionError) as exc:
            sb.execute(jr, j.steps)

    assert exc.value.exit_code == 3
    assert exc.value.step == "two"
    assert "boom" in jr.captured_output
    assert "three" not in jr.captured_output


def test_missing_cwd_fails_the_step(source: Path, tmp_path: Path):
    j = job("t", sh("nowhere", "true", cwd="does/not/exist"))
    jr = JobRun(j)
    with _sandbox(source, tmp_path) as sb:
        with pytest.raises(StepExecutionError):
            sb.execute(jr, j.steps)


def test_job_timeout(source: Path, tmp_path: Path):
    j = job("slow", sh("sleep", "sleep 5"))
    jr = JobRun(j)
    started = time.monotonic()
    with _sandbox(source, tmp_path) as sb:
        with pytest.raises(JobTimeoutError):
            sb.execute(jr, j.steps, timeout=0.3)
    assert time.monotonic() - started < 4


def test_terminate_kills_running_step(source: Path, tmp_path: Path):
    j = job("slow", sh("sleep", "sleep 5"), sh("after", "echo after"))
    jr = JobRun(j)
    sb = _sandbox(source, tmp_path)
    threading.Timer(0.3, sb.terminate).start()
    with sb:
        with pytest.raises(SandboxTerminated):
            sb.execute(jr, j.steps)
    assert sb.terminated
    assert "after" not in jr.captured_output


def test_sandboxes_do_not_share_files_or_env(source: Path, tmp_path: Path):
    writer = job("writer", sh("write", "echo secret > mine.txt && export LEAK=1"), env={"ONLY_WRITER": "1"})
    reader = job("reader", sh("read", "test ! -e mine.txt && test -z \"$ONLY_WRITER\" && test -z \"$LEAK\""))
    w, r = JobRun(writer), JobRun(reader)

    with _sandbox(source, tmp_path, keep_workspace=True) as sw, _sandbox(source, tmp_path) as sr:
        sw.execute(w, writer.steps)
        sr.execute(r, reader.steps)
        assert sw.workspace != sr.workspace
        assert (sw.workspace / "mine.txt").exists()
