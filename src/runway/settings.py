from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_CACHE_DIR = ".runway/cache"
DEFAULT_WORK_DIR = ".runway/work"
DEFAULT_TOOLCHAIN_DIR = ".runway/toolchains"
DEFAULT_CACHE_QUOTA = 512 * 1024 * 1024


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    """Runner configuration. CLI options override values read from the environment."""
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    cache_quota: int = DEFAULT_CACHE_QUOTA
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    toolchain_dir: Path = Path(DEFAULT_TOOLCHAIN_DIR)
    max_workers: Optional[int] = None  # None: one worker per job
    job_timeout: Optional[float] = None
    publish_retries: int = 3
    publish_backoff: float = 0.5

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        return cls(
            cache_dir=Path(env.get("RUNWAY_CACHE_DIR", DEFAULT_CACHE_DIR)),
            cache_quota=int(env.get("RUNWAY_CACHE_QUOTA", DEFAULT_CACHE_QUOTA)),
            work_dir=Path(env.get("RUNWAY_WORK_DIR", DEFAULT_WORK_DIR)),
            toolchain_dir=Path(env.get("RUNWAY_TOOLCHAIN_DIR", DEFAULT_TOOLCHAIN_DIR)),
            max_workers=_int_or_none(env.get("RUNWAY_MAX_WORKERS")),
            job_timeout=_float_or_none(env.get("RUNWAY_JOB_TIMEOUT")),
            publish_retries=int(env.get("RUNWAY_PUBLISH_RETRIES", "3")),
            publish_backoff=float(env.get("RUNWAY_PUBLISH_BACKOFF", "0.5")),
        )

    def override(self, **values) -> Settings:
        """Return a copy with every non-None value applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})
