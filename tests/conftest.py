# tests/conftest.py
"""
Shared fixtures for the runway test suite.

Every fixture works under pytest's tmp_path: caches, workspaces and
toolchain markers never touch the real project directory. Jobs run real
`sh` commands, so the suite needs a POSIX shell.
"""
from __future__ import annotations

from pathlib import Path

import pytest

from runway.cache import CacheStore
from runway.model import Event, EventKind
from runway.runner import Scheduler
from runway.settings import Settings
from runway.toolchain import SystemInstaller, ToolchainProvisioner
from runway.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    """A fresh console per test; output still goes to pytest's captured stdout."""
    set_console(Console())
    yield
    set_console(Console())


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        toolchain_dir=tmp_path / "toolchains",
        publish_backoff=0.0,
    )


@pytest.fixture
def source(tmp_path: Path) -> Path:
    """A small project tree that checkout steps copy into each workspace."""
    root = tmp_path / "src-tree"
    root.mkdir()
    (root / "README.md").write_text("hello\n", encoding="utf-8")
    (root / "deps.lock").write_text("dep==1.0\n", encoding="utf-8")
    return root


@pytest.fixture
def push_event() -> Event:
    return Event(kind=EventKind.PUSH, ref="refs/heads/main", source_identity="pytest")


@pytest.fixture
def pr_event() -> Event:
    return Event(kind=EventKind.PULL_REQUEST, ref="refs/pull/1/head", source_identity="pytest")


@pytest.fixture
def provisioner(settings: Settings) -> ToolchainProvisioner:
    """Only toolchains that need nothing beyond PATH: system and a fake 'rust' backed by sh."""
    return ToolchainProvisioner(
        settings.toolchain_dir,
        installers={"system": SystemInstaller(), "rust": SystemInstaller("sh")},
    )


@pytest.fixture
def make_scheduler(settings: Settings, source: Path, provisioner: ToolchainProvisioner):
    def factory(**kwargs) -> Scheduler:
        kwargs.setdefault("source", source)
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("provisioner", provisioner)
        kwargs.setdefault("cache", CacheStore(settings.cache_dir))
        return Scheduler(**kwargs)

    return factory
