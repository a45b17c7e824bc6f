# src/runway/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .model import (
    ALL_EVENTS,
    CacheKeySpec,
    EventKind,
    Job,
    PipelineDefinition,
    Step,
    StepKind,
    ToolchainSpec,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, kind=StepKind.RUN_COMMAND, run=cmd, cwd=cwd)


def checkout(name: str = "Check out repository code") -> Step:
    return Step(name=name, kind=StepKind.CHECKOUT)


def toolchain(
    name: str = "system",
    version: str = "stable",
    *,
    components: Sequence[str] = (),
    step_name: str | None = None,
) -> Step:
    """Install a toolchain (and optionally components) before later steps run."""
    return Step(
        name=step_name or f"Install the {name} toolchain",
        kind=StepKind.INSTALL_TOOLCHAIN,
        params={"toolchain": name, "version": version, "components": list(components)},
    )


def component(name: str, *, step_name: str | None = None) -> Step:
    return Step(
        name=step_name or f"Install {name}",
        kind=StepKind.INSTALL_COMPONENT,
        params={"component": name},
    )


def cache(prefix: str, *, key_files: Sequence[str] = (), dirs: Sequence[str] = ()) -> CacheKeySpec:
    return CacheKeySpec(prefix=prefix, paths=tuple(key_files), cache_dirs=tuple(dirs))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

EventsArg = Union[None, str, EventKind, Iterable[Union[str, EventKind]]]


def _events(on: EventsArg) -> frozenset:
    if on is None:
        return ALL_EVENTS
    if isinstance(on, (str, EventKind)):
        on = [on]
    return frozenset(EventKind(e) for e in on)


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    on: EventsArg = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    toolchain: ToolchainSpec | None = None,
    caches: Optional[List[CacheKeySpec]] = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        on=_events(on),
        needs=tuple(needs or ()),
        toolchain=toolchain,
        caches=tuple(caches or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._on: list[str] = []
        self._env: dict[str, str] = {}
        self._toolchain: ToolchainSpec | None = None
        self._caches: list[CacheKeySpec] = []
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def on(self, *events: str):
        self._on.extend(events)
        return self

    def uses_toolchain(self, name: str, version: str = "stable", *components: str):
        self._toolchain = ToolchainSpec(name=name, version=version, components=tuple(components))
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_cache(self, prefix: str, *, key_files: Sequence[str] = (), dirs: Sequence[str] = ()):
        self._caches.append(cache(prefix, key_files=key_files, dirs=dirs))
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            on=self._on or None,
            needs=self._needs,
            env=self._env,
            toolchain=self._toolchain,
            caches=self._caches,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("rust", ["stable", "beta"]).jobs(
            lambda v: job(f"test-{v}", sh(...), toolchain=ToolchainSpec("rust", v))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def _flatten(items: Iterable[Union[Job, List[Job]]]) -> List[Job]:
    out: List[Job] = []
    for item in items:
        if isinstance(item, Job):
            out.append(item)
        else:
            out.extend(item)
    return out


def wf(*jobs: Union[Job, List[Job]]) -> List[Job]:
    """
    Workflow definition helper. Matrix expansions may be passed inline.

        from runway import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return _flatten(jobs)


def pipeline(
    name: str,
    *jobs: Union[Job, List[Job]],
    fail_fast: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> PipelineDefinition:
    """Build a full PipelineDefinition (PIPELINE = pipeline("ci", job(...), ...))."""
    return PipelineDefinition(
        name=name,
        jobs=tuple(_flatten(jobs)),
        fail_fast=fail_fast,
        env={k: str(v) for k, v in (env or {}).items()},
    )
