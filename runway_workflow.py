# runway_workflow.py
# Pipeline for runway itself: lint, type check and tests.
#   runway run runway_workflow.py --event push
from __future__ import annotations
from runway import cache, checkout, job, pipeline, sh, toolchain

PIPELINE = pipeline(
    "runway",
    # Lint job - runs ruff on the codebase
    job(
        "lint",
        checkout(),
        toolchain("python"),
        sh("Ruff check", "ruff check src tests"),
        sh("Ruff format check", "ruff format --check src tests"),
    ),

    # Test job - runs pytest once lint passed
    job(
        "test",
        checkout(),
        toolchain("python"),
        sh("Install package", "python3 -m venv .venv && .venv/bin/pip install -e '.[test]'"),
        sh("Run pytest", ".venv/bin/pytest -q"),
        needs=["lint"],
        env={"PIP_CACHE_DIR": ".pip-cache"},
        caches=[cache("pip", key_files=["pyproject.toml"], dirs=[".pip-cache"])],
        timeout=900,
    ),

    # Config check only on pull requests
    job(
        "config-check",
        checkout(),
        sh("Validate pyproject.toml", "python3 -c 'import tomllib; tomllib.load(open(\"pyproject.toml\", \"rb\"))'"),
        on="pull_request",
    ),
)
