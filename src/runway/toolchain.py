# toolchain.py
from __future__ import annotations

import hashlib
import json
import os
import re
import shlex
import shutil
import subprocess
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

from .errors import JobTimeoutError, ProvisioningError
from .logging import get_logger
from .model import Job, StepKind, ToolchainSpec

logger = get_logger("runway.toolchain")

TOOL_HINTS = {
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo": "Install the Rust toolchain with rustup or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# versions that mean "whatever is current", never checked against --version
FLOATING_VERSIONS = {"stable", "latest", "system"}


@dataclass(frozen=True)
class ToolchainHandle:
    """A provisioned toolchain: what a sandbox needs to use it."""
    spec: ToolchainSpec
    env: Mapping[str, str] = field(default_factory=dict)
    installed: bool = False  # True only for the call that actually installed it


def override_var(job_name: str) -> str:
    """RUNWAY_TOOLCHAIN_<JOB>: per-job toolchain version override."""
    return "RUNWAY_TOOLCHAIN_" + re.sub(r"[^A-Za-z0-9]", "_", job_name).upper()


def requested_toolchain(job: Job, environ: Mapping[str, str] | None = None) -> ToolchainSpec:
    """
    Work out which toolchain a job asks for: job.toolchain, then any
    install_toolchain / install_component steps, then the env override.
    """
    spec = job.toolchain
    for step in job.steps:
        if step.kind is StepKind.INSTALL_TOOLCHAIN:
            params = step.params or {}
            base = spec or ToolchainSpec()
            spec = ToolchainSpec(
                name=str(params.get("toolchain", base.name)),
                version=str(params.get("version", base.version)),
                components=tuple(base.components),
            ).with_components(*params.get("components", ()))
        elif step.kind is StepKind.INSTALL_COMPONENT:
            spec = (spec or ToolchainSpec()).with_components(str(step.params["component"]))
    spec = spec or ToolchainSpec()

    env = os.environ if environ is None else environ
    pinned = env.get(override_var(job.name))
    if pinned:
        spec = ToolchainSpec(name=spec.name, version=pinned, components=spec.components)
    return spec


class Installer(Protocol):
    # timeout: seconds left before the job's deadline (None: unbounded)
    def install(self, spec: ToolchainSpec, root: Path, *, timeout: float | None = None) -> None: ...

    def probe(self, spec: ToolchainSpec, env: Mapping[str, str], *, timeout: float | None = None) -> None: ...

    def environment(self, spec: ToolchainSpec) -> Dict[str, str]: ...


def _which(tool: str, env: Mapping[str, str]) -> Optional[str]:
    return shutil.which(tool, path=env.get("PATH", os.environ.get("PATH")))


def _unavailable(tool: str, spec: ToolchainSpec, message: str | None = None) -> ProvisioningError:
    hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
    return ProvisioningError(
        message or f"{tool} is not available",
        details={"toolchain": f"{spec.name}@{spec.version}", "tool": tool, "hint": hint},
    )


def _remaining(deadline: float | None, spec: ToolchainSpec) -> float | None:
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise JobTimeoutError(
            "job exceeded its maximum duration while provisioning its toolchain",
            details={"toolchain": f"{spec.name}@{spec.version}"},
        )
    return left


class SystemInstaller:
    """
    Uses whatever is already on PATH; never installs anything.

    binary:     executable that represents the toolchain (None for "system")
    components: each component name is probed as an executable
    """

    def __init__(self, binary: str | None = None):
        self.binary = binary

    def install(self, spec: ToolchainSpec, root: Path, *, timeout: float | None = None) -> None:
        return None

    def environment(self, spec: ToolchainSpec) -> Dict[str, str]:
        return {}

    def probe(self, spec: ToolchainSpec, env: Mapping[str, str], *, timeout: float | None = None) -> None:
        if self.binary:
            if not _which(self.binary, env):
                raise _unavailable(self.binary, spec)
            if spec.version not in FLOATING_VERSIONS:
                self._check_version(spec, env, timeout)
        for comp in spec.components:
            if not _which(comp, env):
                raise _unavailable(comp, spec, f"component {comp!r} is not available")

    def _check_version(self, spec: ToolchainSpec, env: Mapping[str, str], timeout: float | None) -> None:
        try:
            proc = subprocess.run(
                [self.binary, "--version"],
                text=True,
                capture_output=True,
                env=dict(env),
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise JobTimeoutError(
                f"job exceeded its maximum duration running {self.binary} --version",
                details={"toolchain": f"{spec.name}@{spec.version}"},
            ) from None
        text = " ".join(((proc.stdout or "") + (proc.stderr or "")).split())
        if proc.returncode != 0 or spec.version not in text:
            raise ProvisioningError(
                f"{self.binary} {spec.version} requested but found: {text or 'nothing'}",
                details={"toolchain": f"{spec.name}@{spec.version}"},
            )


class CommandInstaller:
    """
    Installs a toolchain by running commands (e.g. rustup). Templates may
    use {version}, {component} and {root}.
    """

    def __init__(
        self,
        install: str,
        component: str | None = None,
        probe: str | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.install_cmd = install
        self.component_cmd = component
        self.probe_cmd = probe
        self.env_template = dict(env or {})

    def _run(self, template: str, spec: ToolchainSpec, root: Path, timeout: float | None, **extra: str) -> None:
        cmd = template.format(version=spec.version, root=str(root), **extra)
        argv = shlex.split(cmd)
        try:
            proc = subprocess.run(argv, text=True, capture_output=True, check=False, timeout=timeout)
        except FileNotFoundError:
            raise _unavailable(argv[0], spec) from None
        except subprocess.TimeoutExpired:
            raise JobTimeoutError(
                f"job exceeded its maximum duration running: {cmd}",
                details={"toolchain": f"{spec.name}@{spec.version}"},
            ) from None
        if proc.returncode != 0:
            raise ProvisioningError(
                f"command failed (exit={proc.returncode}): {cmd}",
                details={"toolchain": f"{spec.name}@{spec.version}", "stderr": (proc.stderr or "")[-2000:]},
            )

    def install(self, spec: ToolchainSpec, root: Path, *, timeout: float | None = None) -> None:
        deadline = time.monotonic() + timeout if timeout is not None else None
        self._run(self.install_cmd, spec, root, _remaining(deadline, spec))
        for comp in spec.components:
            if self.component_cmd is None:
                raise ProvisioningError(
                    f"toolchain {spec.name!r} does not support components",
                    details={"component": comp},
                )
            self._run(self.component_cmd, spec, root, _remaining(deadline, spec), component=comp)

    def environment(self, spec: ToolchainSpec) -> Dict[str, str]:
        return {k: v.format(version=spec.version) for k, v in self.env_template.items()}

    def probe(self, spec: ToolchainSpec, env: Mapping[str, str], *, timeout: float | None = None) -> None:
        if self.probe_cmd:
            self._run(self.probe_cmd, spec, Path("."), timeout)


def default_installers() -> Dict[str, Installer]:
    return {
        "system": SystemInstaller(),
        "rust": CommandInstaller(
            install="rustup toolchain install {version} --profile minimal --no-self-update",
            component="rustup component add {component} --toolchain {version}",
            probe="rustup run {version} cargo --version",
            env={"RUSTUP_TOOLCHAIN": "{version}"},
        ),
        "python": SystemInstaller("python3"),
        "node": SystemInstaller("node"),
    }


class ToolchainProvisioner:
    """
    Resolves and installs the toolchain a job needs, idempotently.

    Handles are memoized per spec for the lifetime of the provisioner and a
    marker file under `root` keeps later runs from reinstalling. Concurrent
    prepare() calls for the same spec provision it once.

    A deadline (time.monotonic() value) bounds the whole call: waiting for
    another job's install, installing and probing. Running past it raises
    JobTimeoutError.
    """

    def __init__(
        self,
        root: str | Path = ".runway/toolchains",
        installers: Mapping[str, Installer] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.root = Path(root).resolve()
        self.installers: Dict[str, Installer] = dict(installers or default_installers())
        self.environ = os.environ if environ is None else environ
        self._handles: Dict[ToolchainSpec, ToolchainHandle] = {}
        self._locks: Dict[ToolchainSpec, threading.Lock] = defaultdict(threading.Lock)
        self._registry = threading.Lock()

    def register(self, name: str, installer: Installer) -> None:
        self.installers[name] = installer

    def _marker(self, spec: ToolchainSpec) -> Path:
        comps = hashlib.sha256(",".join(sorted(spec.components)).encode("utf-8")).hexdigest()[:16]
        return self.root / f"{spec.name}-{spec.version}" / f"{comps}.ok"

    def prepare(self, job: Job, *, deadline: float | None = None) -> ToolchainHandle:
        spec = requested_toolchain(job, self.environ)
        try:
            return self.provision(spec, deadline=deadline)
        except (ProvisioningError, JobTimeoutError) as e:
            e.job = job.name
            raise

    def provision(self, spec: ToolchainSpec, *, deadline: float | None = None) -> ToolchainHandle:
        with self._registry:
            lock = self._locks[spec]
        # another job may be installing the same toolchain
        wait = _remaining(deadline, spec)
        if not lock.acquire(timeout=-1 if wait is None else wait):
            raise JobTimeoutError(
                "job exceeded its maximum duration waiting for its toolchain",
                details={"toolchain": f"{spec.name}@{spec.version}"},
            )
        try:
            cached = self._handles.get(spec)
            if cached is not None:
                return ToolchainHandle(spec=cached.spec, env=cached.env, installed=False)

            installer = self.installers.get(spec.name)
            if installer is None:
                raise ProvisioningError(
                    f"unknown toolchain {spec.name!r}",
                    details={"known": ", ".join(sorted(self.installers))},
                )

            env = dict(self.environ)
            extra = installer.environment(spec)
            env.update(extra)

            marker = self._marker(spec)
            installed = False
            if not marker.exists():
                logger.info("installing toolchain %s@%s %s", spec.name, spec.version, list(spec.components))
                installer.install(spec, self.root, timeout=_remaining(deadline, spec))
                installed = True
            installer.probe(spec, env, timeout=_remaining(deadline, spec))

            if installed:
                marker.parent.mkdir(parents=True, exist_ok=True)
                marker.write_text(
                    json.dumps({"name": spec.name, "version": spec.version, "components": list(spec.components)}),
                    encoding="utf-8",
                )

            handle = ToolchainHandle(spec=spec, env=extra, installed=installed)
            self._handles[spec] = handle
            return handle
        finally:
            lock.release()
