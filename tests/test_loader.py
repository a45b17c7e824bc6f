from __future__ import annotations

import json
from pathlib import Path

import pytest

from runway.errors import PipelineError
from runway.loader import load_pipeline, pipeline_from_dict, pipeline_to_dict
from runway.model import EventKind, StepKind

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_yaml_pipeline_with_bare_on_key(tmp_path: Path):
    path = tmp_path / "ci.yml"
    path.write_text(
        """
name: demo
on: [push]
env:
  GREETING: hi
jobs:
  build:
    steps:
      - checkout
      - name: Compile
        run: make
  review:
    on: pull_request
    needs: build
    toolchain: rust@1.75
    steps:
      - toolchain: rust
        components: [clippy]
      - run: cargo clippy
""",
        encoding="utf-8",
    )
    p = load_pipeline(path)

    assert p.name == "demo"
    assert p.env == {"GREETING": "hi"}
    build, review = p.jobs
    assert build.on == frozenset({EventKind.PUSH})
    assert [s.kind for s in build.steps] == [StepKind.CHECKOUT, StepKind.RUN_COMMAND]
    assert build.steps[1].run == "make"

    assert review.on == frozenset({EventKind.PULL_REQUEST})
    assert review.needs == ("build",)
    assert review.toolchain.version == "1.75"
    assert review.steps[0].kind is StepKind.INSTALL_TOOLCHAIN
    assert review.steps[0].params["components"] == ["clippy"]


def test_json_pipeline_and_round_trip(tmp_path: Path):
    data = {
        "name": "j",
        "fail_fast": True,
        "jobs": [
            {
                "name": "test",
                "steps": ["cargo test"],
                "cache": {"prefix": "rust", "key_files": ["Cargo.lock"], "dirs": ["target"]},
                "timeout": 30,
            }
        ],
    }
    path = tmp_path / "ci.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    p = load_pipeline(path)

    assert p.fail_fast is True
    (test,) = p.jobs
    assert test.caches[0].paths == ("Cargo.lock",)
    assert test.timeout == 30.0
    assert pipeline_from_dict(pipeline_to_dict(p)) == p


def test_python_pipeline_file():
    p = load_pipeline(REPO_ROOT / "runway_workflow.py")
    assert p.name == "runway"
    assert p.job("test").needs == ("lint",)
    assert p.job("config-check").on == frozenset({EventKind.PULL_REQUEST})


def test_bundled_rust_pipeline():
    p = load_pipeline(REPO_ROOT / "runway.yml")
    assert p.job_names == ["test", "fmt", "clippy", "coverage"]
    assert all(j.on == frozenset(EventKind) for j in p.jobs)
    assert p.env["CARGO_TERM_COLOR"] == "always"


def test_scalar_values_read_as_one_item_lists(tmp_path: Path):
    path = tmp_path / "ci.yml"
    path.write_text(
        """
jobs:
  test:
    toolchain: {name: rust, components: rustfmt}
    cache:
      prefix: rust
      key_files: Cargo.lock
      dirs: target
    steps: cargo test
  fmt:
    needs: test
    steps:
      - toolchain: rust
        components: clippy
      - run: cargo clippy
""",
        encoding="utf-8",
    )
    test, fmt = load_pipeline(path).jobs

    assert len(test.steps) == 1
    assert test.steps[0].kind is StepKind.RUN_COMMAND
    assert test.steps[0].run == "cargo test"
    assert test.toolchain.components == ("rustfmt",)
    assert test.caches[0].paths == ("Cargo.lock",)
    assert test.caches[0].cache_dirs == ("target",)
    assert fmt.needs == ("test",)
    assert fmt.steps[0].params["components"] == ["clippy"]


@pytest.mark.parametrize(
    "content, message",
    [
        ("jobs: {}", "no jobs"),
        ("jobs:\n  a:\n    steps: []", "no steps"),
        ("jobs:\n  a:\n    on: tag\n    steps: [x]", "tag"),
        ("jobs:\n  a:\n    needs: [a2]\n    steps: [x]", "missing job"),
        ("jobs:\n  a:\n    steps: [{name: odd}]", "step kind"),
        ("- just\n- a list", "mapping"),
        ("jobs:\n  test:\n    - cargo test", "must be a mapping"),
        ("jobs:\n  test:\n    timeout: soon\n    steps: [x]", "number of seconds"),
        ("jobs:\n  test:\n    timeout: 0\n    steps: [x]", "positive"),
        ("jobs:\n  test:\n    env: [A=1]\n    steps: [x]", "'env' must be a mapping"),
        ("env: A=1\njobs:\n  test:\n    steps: [x]", "'env' must be a mapping"),
        ("jobs:\n  test:\n    steps: {run: x}", "'steps' must be a list"),
        ("jobs:\n  test:\n    toolchain: {name: rust, components: {a: b}}\n    steps: [x]", "components"),
        ("jobs:\n  test:\n    cache: {prefix: p, dirs: [[a]]}\n    steps: [x]", "dirs"),
    ],
)
def test_invalid_pipeline_files(tmp_path: Path, content: str, message: str):
    path = tmp_path / "bad.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(PipelineError, match=message):
        load_pipeline(path)


def test_unsupported_extension(tmp_path: Path):
    path = tmp_path / "ci.toml"
    path.write_text("", encoding="utf-8")
    with pytest.raises(PipelineError, match="Unsupported"):
        load_pipeline(path)
