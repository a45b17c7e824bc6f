from __future__ import annotations

from pathlib import Path

from runway.settings import DEFAULT_CACHE_QUOTA, Settings


def test_defaults():
    s = Settings.from_env({})
    assert s.cache_dir == Path(".runway/cache")
    assert s.cache_quota == DEFAULT_CACHE_QUOTA
    assert s.max_workers is None
    assert s.publish_retries == 3


def test_environment_and_overrides():
    s = Settings.from_env(
        {
            "RUNWAY_CACHE_DIR": "/tmp/c",
            "RUNWAY_CACHE_QUOTA": "1024",
            "RUNWAY_MAX_WORKERS": "4",
            "RUNWAY_JOB_TIMEOUT": "90",
            "RUNWAY_PUBLISH_RETRIES": "5",
        }
    )
    assert s.cache_dir == Path("/tmp/c")
    assert s.cache_quota == 1024
    assert s.max_workers == 4
    assert s.job_timeout == 90.0
    assert s.publish_retries == 5

    o = s.override(max_workers=1, job_timeout=None)
    assert o.max_workers == 1
    assert o.job_timeout == 90.0
