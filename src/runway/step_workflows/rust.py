# step_workflows/rust.py
from __future__ import annotations

from typing import List, Sequence

from ..dsl import cache, checkout, job, sh, toolchain
from ..model import CacheKeySpec, EventKind, Job, Step


# ---------------------------------------------------------------------
# Cargo step helpers
# ---------------------------------------------------------------------

def cargo_step(name: str, args: str, *, cwd: str | None = None) -> Step:
    """Create a shell step that runs a cargo subcommand."""
    return sh(name, f"cargo {args}", cwd=cwd)


def rust_cache(prefix: str = "rust", *, dirs: Sequence[str] = ("target",)) -> CacheKeySpec:
    """
    Dependency cache keyed on the lock file and manifests; stores the
    build directory by default.
    """
    return cache(
        prefix,
        key_files=["Cargo.lock", "Cargo.toml"],
        dirs=dirs,
    )


# ---------------------------------------------------------------------
# The standard Rust pipeline: test, fmt, clippy, coverage
# ---------------------------------------------------------------------

def rust_jobs(version: str = "stable") -> List[Job]:
    """
    Four independent jobs, each triggered by push and pull_request:
      test      cargo test, with the dependency cache
      fmt       cargo fmt --check, needs the rustfmt component
      clippy    cargo clippy -- -D warnings, needs the clippy component
      coverage  cargo tarpaulin, with the dependency cache
    """
    events = [EventKind.PUSH, EventKind.PULL_REQUEST]
    return [
        job(
            "test",
            checkout(),
            toolchain("rust", version),
            cargo_step("Run tests", "test"),
            on=events,
            caches=[rust_cache()],
        ),
        job(
            "fmt",
            checkout("Check out repository"),
            toolchain("rust", version, components=["rustfmt"], step_name="Install rust toolchain"),
            cargo_step("Enforce formatting", "fmt --check"),
            on=events,
        ),
        job(
            "clippy",
            checkout("Check out repository"),
            toolchain("rust", version, components=["clippy"], step_name="Install rust toolchain"),
            cargo_step("Linting", "clippy -- -D warnings"),
            on=events,
        ),
        job(
            "coverage",
            checkout("Checkout repository"),
            toolchain("rust", version),
            sh("Generate code coverage", "cargo install cargo-tarpaulin && cargo tarpaulin --verbose --workspace"),
            on=events,
            caches=[rust_cache("rust-coverage")],
        ),
    ]
