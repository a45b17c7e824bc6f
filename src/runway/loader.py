# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml  # PyYAML

from .dag import validate_graph
from .errors import PipelineError
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

PIPELINE_SUFFIXES = {".yml", ".yaml", ".json", ".py"}


# ----------------------------------------------------------------------
# Loading (local file)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline description from a file.

    Declarative files (.yml, .yaml, .json) follow the layout documented in
    README.md. A Python file must define one of:
      - PIPELINE = pipeline("name", job(...), ...)
      - workflow() -> PipelineDefinition | List[Job]
      - JOBS = [Job, ...]
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise PipelineError(f"Pipeline file not found: {p}")
    suffix = p.suffix.lower()
    if suffix not in PIPELINE_SUFFIXES:
        raise PipelineError(f"Unsupported pipeline format: {p.name}", details={"supported": sorted(PIPELINE_SUFFIXES)})

    if suffix == ".py":
        pipeline = _load_python(p)
    else:
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) if suffix in {".yml", ".yaml"} else json.load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise PipelineError(f"Could not parse {p.name}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise PipelineError(f"Pipeline root must be a mapping, got {type(data).__name__}")
        data.setdefault("name", p.stem)
        pipeline = pipeline_from_dict(data)

    validate_graph(pipeline.jobs)
    return pipeline


def _load_python(path: Path) -> PipelineDefinition:
    module_name = f"runway_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    found: Any = None
    if isinstance(globals_dict.get("PIPELINE"), PipelineDefinition):
        found = globals_dict["PIPELINE"]
    elif callable(globals_dict.get("workflow")):
        found = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        found = globals_dict["JOBS"]

    if isinstance(found, PipelineDefinition):
        return found
    if isinstance(found, (list, tuple)) and all(isinstance(j, Job) for j in found):
        return PipelineDefinition(name=path.stem, jobs=tuple(found))
    raise PipelineError(
        "Python pipeline must define PIPELINE, workflow() or JOBS. "
        "Use the runway.dsl helpers: `from runway import pipeline, job, sh`."
    )


# ----------------------------------------------------------------------
# Dict form (declarative files, control plane payloads)
# ----------------------------------------------------------------------

def _events(value: Any, where: str) -> frozenset:
    if value is None:
        return ALL_EVENTS
    if isinstance(value, str):
        value = [value]
    try:
        return frozenset(EventKind(str(v)) for v in value)
    except ValueError as e:
        raise PipelineError(f"{where}: {e}") from None


_MISSING = object()


def _on_value(raw: Mapping[Any, Any]) -> Any:
    # YAML 1.1 reads a bare `on:` key as boolean True
    if "on" in raw:
        return raw["on"]
    return raw.get(True, _MISSING)


def _str_list(value: Any, where: str, field: str) -> List[str]:
    """A scalar is a one-item list; anything else must be a list of scalars."""
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        return [str(value)]
    if isinstance(value, (list, tuple)) and not any(isinstance(v, (Mapping, list, tuple)) for v in value):
        return [str(v) for v in value]
    raise PipelineError(f"{where}: '{field}' must be a string or a list of strings")


def _env(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PipelineError(f"{where}: 'env' must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _toolchain(value: Any, where: str) -> ToolchainSpec | None:
    if value is None:
        return None
    if isinstance(value, str):
        name, _, version = value.partition("@")
        return ToolchainSpec(name=name, version=version or "stable")
    if isinstance(value, Mapping):
        return ToolchainSpec(
            name=str(value.get("name", "system")),
            version=str(value.get("version", "stable")),
            components=tuple(_str_list(value.get("components"), where, "components")),
        )
    raise PipelineError(f"{where}: toolchain must be a string or mapping")


def _step(raw: Any, where: str) -> Step:
    if isinstance(raw, str):
        if raw == "checkout":
            return Step(name="Check out repository code", kind=StepKind.CHECKOUT)
        return Step(name=raw, kind=StepKind.RUN_COMMAND, run=raw)
    if not isinstance(raw, Mapping):
        raise PipelineError(f"{where}: step must be a string or mapping")

    kind = raw.get("kind")
    if kind is None:
        if "run" in raw:
            kind = StepKind.RUN_COMMAND
        elif "toolchain" in raw:
            kind = StepKind.INSTALL_TOOLCHAIN
        elif "component" in raw:
            kind = StepKind.INSTALL_COMPONENT
        elif raw.get("checkout"):
            kind = StepKind.CHECKOUT
        else:
            raise PipelineError(f"{where}: cannot tell the step kind (expected run, toolchain, component or checkout)")
    try:
        kind = StepKind(kind)
    except ValueError:
        raise PipelineError(f"{where}: unknown step kind {kind!r}") from None

    params_raw = raw.get("params") or {}
    if not isinstance(params_raw, Mapping):
        raise PipelineError(f"{where}: 'params' must be a mapping")
    params: Dict[str, Any] = dict(params_raw)
    if kind is StepKind.INSTALL_TOOLCHAIN:
        params.setdefault("toolchain", raw.get("toolchain", "system"))
        params.setdefault("version", raw.get("version", "stable"))
        params.setdefault("components", _str_list(raw.get("components"), where, "components"))
    elif kind is StepKind.INSTALL_COMPONENT:
        params.setdefault("component", raw.get("component"))
        if not params["component"]:
            raise PipelineError(f"{where}: install_component needs a component")
    elif kind is StepKind.RUN_COMMAND and not str(raw.get("run") or "").strip():
        raise PipelineError(f"{where}: run step has no command")

    default_name = {
        StepKind.CHECKOUT: "Check out repository code",
        StepKind.INSTALL_TOOLCHAIN: f"Install the {params.get('toolchain')} toolchain",
        StepKind.INSTALL_COMPONENT: f"Install {params.get('component')}",
        StepKind.RUN_COMMAND: str(raw.get("run", "")),
    }[kind]
    return Step(
        name=str(raw.get("name") or default_name),
        kind=kind,
        run=str(raw.get("run") or ""),
        cwd=raw.get("cwd"),
        params=params,
    )


def _cache(raw: Any, where: str) -> CacheKeySpec:
    if not isinstance(raw, Mapping) or not raw.get("prefix"):
        raise PipelineError(f"{where}: cache needs a prefix")
    return CacheKeySpec(
        prefix=str(raw["prefix"]),
        paths=tuple(_str_list(raw.get("key_files") or raw.get("paths"), where, "key_files")),
        cache_dirs=tuple(_str_list(raw.get("dirs") or raw.get("cache_dirs"), where, "dirs")),
    )


def _job(name: str, raw: Any, default_on: frozenset) -> Job:
    where = f"job '{name}'"
    if not isinstance(raw, Mapping):
        raise PipelineError(f"{where} must be a mapping with 'steps'", job=name)
    steps_raw = raw.get("steps") or []
    if isinstance(steps_raw, str):
        steps_raw = [steps_raw]
    elif not isinstance(steps_raw, list):
        raise PipelineError(f"{where}: 'steps' must be a list", job=name)
    if not steps_raw:
        raise PipelineError(f"{where} has no steps", job=name)
    caches_raw = raw.get("cache") or raw.get("caches") or []
    if isinstance(caches_raw, Mapping):
        caches_raw = [caches_raw]
    elif not isinstance(caches_raw, list):
        raise PipelineError(f"{where}: 'cache' must be a mapping or a list", job=name)
    timeout = raw.get("timeout")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise PipelineError(f"{where}: timeout must be a number of seconds", job=name) from None
        if timeout <= 0:
            raise PipelineError(f"{where}: timeout must be positive", job=name)
    on = _on_value(raw)
    needs = _str_list(raw.get("needs"), where, "needs")
    return Job(
        name=name,
        steps=tuple(_step(s, f"{where} step {i + 1}") for i, s in enumerate(steps_raw)),
        on=default_on if on is _MISSING else _events(on, where),
        needs=tuple(needs),
        toolchain=_toolchain(raw.get("toolchain"), where),
        caches=tuple(_cache(c, where) for c in caches_raw),
        env=_env(raw.get("env"), where),
        timeout=timeout,
    )


def pipeline_from_dict(data: Mapping[str, Any]) -> PipelineDefinition:
    on = _on_value(data)
    default_on = _events(None if on is _MISSING else on, "pipeline")
    jobs_raw = data.get("jobs")
    if not jobs_raw:
        raise PipelineError("Pipeline defines no jobs")

    jobs: List[Job] = []
    if isinstance(jobs_raw, Mapping):
        for name, raw in jobs_raw.items():
            jobs.append(_job(str(name), {} if raw is None else raw, default_on))
    elif isinstance(jobs_raw, list):
        for i, raw in enumerate(jobs_raw):
            if not isinstance(raw, Mapping) or not raw.get("name"):
                raise PipelineError(f"jobs[{i}] needs a name")
            jobs.append(_job(str(raw["name"]), raw, default_on))
    else:
        raise PipelineError("'jobs' must be a mapping or a list")

    return PipelineDefinition(
        name=str(data.get("name") or "pipeline"),
        jobs=tuple(jobs),
        fail_fast=bool(data.get("fail_fast", False)),
        env=_env(data.get("env"), "pipeline"),
    )


def _step_to_dict(step: Step) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": step.name, "kind": step.kind.value}
    if step.run:
        out["run"] = step.run
    if step.cwd is not None:
        out["cwd"] = step.cwd
    if step.params:
        out["params"] = dict(step.params)
    return out


def job_to_dict(job: Job) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "name": job.name,
        "on": sorted(e.value for e in job.on),
        "needs": list(job.needs),
        "env": dict(job.env),
        "steps": [_step_to_dict(s) for s in job.steps],
    }
    if job.toolchain is not None:
        out["toolchain"] = {
            "name": job.toolchain.name,
            "version": job.toolchain.version,
            "components": list(job.toolchain.components),
        }
    if job.caches:
        out["cache"] = [
            {"prefix": c.prefix, "key_files": list(c.paths), "dirs": list(c.cache_dirs)}
            for c in job.caches
        ]
    if job.timeout is not None:
        out["timeout"] = job.timeout
    return out


def pipeline_to_dict(pipeline: PipelineDefinition) -> Dict[str, Any]:
    """Inverse of pipeline_from_dict (jobs as a list, keeps declaration order)."""
    return {
        "name": pipeline.name,
        "fail_fast": pipeline.fail_fast,
        "env": dict(pipeline.env),
        "jobs": [job_to_dict(j) for j in pipeline.jobs],
    }
