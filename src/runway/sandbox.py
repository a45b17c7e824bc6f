# sandbox.py
from __future__ import annotations

import os
import re
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from .errors import JobTimeoutError, SandboxTerminated, StepExecutionError
from .logging import get_logger
from .model import Event, JobRun, Step, StepKind
from .toolchain import ToolchainHandle

logger = get_logger("runway.sandbox")

# never copied into a workspace on checkout
CHECKOUT_IGNORE = {".git", ".runway", "__pycache__"}


@dataclass(frozen=True)
class ExecutionResult:
    exit_status: int
    output: str


def _safe_name(job_run_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", job_run_id)


class ExecutionSandbox:
    """
    Runs one JobRun's steps in its own workspace directory with its own
    environment mapping. One sandbox per JobRun; os.environ is never mutated,
    so concurrent jobs never see each other's files or variables.

    Usage:
        with ExecutionSandbox(source, work_root) as sb:
            sb.execute(job_run, job.steps, handle, timeout=600)
    """

    def __init__(
        self,
        source: str | Path,
        work_root: str | Path,
        *,
        event: Event | None = None,
        base_env: Mapping[str, str] | None = None,
        keep_workspace: bool = False,
    ):
        self.source = Path(source).resolve()
        self.work_root = Path(work_root).resolve()
        self.event = event
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.keep_workspace = keep_workspace
        self.workspace: Optional[Path] = None
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._terminated = False

    # ---- lifecycle ----

    def open(self, job_run: JobRun) -> Path:
        if self.workspace is None:
            self.workspace = self.work_root / _safe_name(job_run.id)
            if self.workspace.exists():
                shutil.rmtree(self.workspace)
            self.workspace.mkdir(parents=True)
        return self.workspace

    def close(self) -> None:
        if self.workspace is not None and not self.keep_workspace:
            shutil.rmtree(self.workspace, ignore_errors=True)

    def __enter__(self) -> ExecutionSandbox:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def terminated(self) -> bool:
        return self._terminated

    def terminate(self) -> None:
        """Kill the running step (if any) and refuse to start new ones."""
        with self._lock:
            self._terminated = True
            proc = self._proc
        if proc is not None and proc.poll() is None:
            _kill(proc)

    # ---- environment ----

    def environment(self, job_run: JobRun, handle: ToolchainHandle | None, extra: Mapping[str, str] | None = None) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(extra or {})
        env.update(job_run.job.env or {})
        if handle is not None:
            env.update(handle.env)
        env.update(
            {
                "CI": "true",
                "RUNWAY": "1",
                "RUNWAY_JOB": job_run.name,
                "RUNWAY_JOB_RUN_ID": job_run.id,
                "RUNWAY_WORKSPACE": str(self.workspace or ""),
            }
        )
        if self.event is not None:
            env["RUNWAY_EVENT"] = self.event.kind.value
            env["RUNWAY_REF"] = self.event.ref
        return env

    # ---- execution ----

    def execute(
        self,
        job_run: JobRun,
        steps: Iterable[Step],
        handle: ToolchainHandle | None = None,
        *,
        timeout: float | None = None,
        deadline: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        """
        Run steps in declared order. The first failing step raises
        StepExecutionError; exceeding `timeout` (seconds from now) or
        `deadline` (a time.monotonic() value) raises JobTimeoutError. Output
        is appended to job_run.captured_output as it is produced.
        """
        self.open(job_run)
        if deadline is None and timeout:
            deadline = time.monotonic() + timeout
        full_env = self.environment(job_run, handle, env)

        for step in steps:
            if self._terminated:
                raise SandboxTerminated("sandbox terminated", job=job_run.name, step=step.name)
            if deadline is not None and time.monotonic() >= deadline:
                raise JobTimeoutError("job exceeded its maximum duration", job=job_run.name, step=step.name)
            job_run.append_output(f"==> {step.name}\n")

            if step.kind is StepKind.CHECKOUT:
                self._checkout(job_run)
            elif step.kind in (StepKind.INSTALL_TOOLCHAIN, StepKind.INSTALL_COMPONENT):
                if handle is not None:
                    spec = handle.spec
                    job_run.append_output(
                        f"toolchain {spec.name}@{spec.version} ready"
                        + (f" (components: {', '.join(spec.components)})" if spec.components else "")
                        + "\n"
                    )
            else:
                self._run_command(job_run, step, full_env, deadline)

        return ExecutionResult(exit_status=0, output=job_run.captured_output)

    def _checkout(self, job_run: JobRun) -> None:
        assert self.workspace is not None
        work_root = self.work_root

        def ignore(directory: str, names: list[str]) -> set[str]:
            skipped = {n for n in names if n in CHECKOUT_IGNORE}
            for n in names:
                if (Path(directory) / n).resolve() == work_root:
                    skipped.add(n)
            return skipped

        shutil.copytree(self.source, self.workspace, ignore=ignore, dirs_exist_ok=True)
        job_run.append_output(f"checked out {self.source}\n")

    def _run_command(self, job_run: JobRun, step: Step, env: Dict[str, str], deadline: float | None) -> None:
        assert self.workspace is not None
        cwd = (self.workspace / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            job_run.append_output(f"working directory not found: {step.cwd}\n")
            raise StepExecutionError(
                f"step '{step.name}' cwd not found: {step.cwd}",
                job=job_run.name,
                step=step.name,
                cmd=step.run,
                exit_code=-1,
            )

        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise JobTimeoutError("job exceeded its maximum duration", job=job_run.name, step=step.name)

        with self._lock:
            if self._terminated:
                raise SandboxTerminated("sandbox terminated", job=job_run.name, step=step.name)
            proc = subprocess.Popen(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=(os.name == "posix"),
            )
            self._proc = proc

        try:
            out, _ = proc.communicate(timeout=remaining)
        except subprocess.TimeoutExpired:
            _kill(proc)
            out, _ = proc.communicate()
            job_run.append_output(out or "")
            raise JobTimeoutError(
                "job exceeded its maximum duration",
                job=job_run.name,
                step=step.name,
                details={"cmd": step.run},
            ) from None
        finally:
            with self._lock:
                self._proc = None

        job_run.append_output(out or "")

        if self._terminated:
            raise SandboxTerminated("sandbox terminated", job=job_run.name, step=step.name)
        if proc.returncode != 0:
            raise StepExecutionError(
                f"step '{step.name}' failed (exit={proc.returncode}): {step.run}",
                job=job_run.name,
                step=step.name,
                cmd=step.run,
                exit_code=proc.returncode,
            )


def _kill(proc: subprocess.Popen) -> None:
    """Kill the step and everything its shell started."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass
