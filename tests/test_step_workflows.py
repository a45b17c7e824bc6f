from __future__ import annotations

from runway.dsl import pipeline
from runway.model import EventKind, StepKind
from runway.step_workflows.rust import rust_cache, rust_jobs
from runway.toolchain import requested_toolchain


def test_rust_jobs_cover_test_fmt_clippy_coverage():
    jobs = {j.name: j for j in rust_jobs()}
    assert list(jobs) == ["test", "fmt", "clippy", "coverage"]
    assert all(j.on == frozenset({EventKind.PUSH, EventKind.PULL_REQUEST}) for j in jobs.values())
    assert all(not j.needs for j in jobs.values())
    assert all(j.steps[0].kind is StepKind.CHECKOUT for j in jobs.values())

    assert requested_toolchain(jobs["fmt"], environ={}).components == ("rustfmt",)
    assert requested_toolchain(jobs["clippy"], environ={}).components == ("clippy",)
    assert jobs["clippy"].steps[-1].run == "cargo clippy -- -D warnings"
    assert jobs["test"].caches == (rust_cache(),)


def test_rust_jobs_pin_version():
    p = pipeline("rust", rust_jobs("1.75.0"))
    assert {requested_toolchain(j, environ={}).version for j in p.jobs} == {"1.75.0"}
