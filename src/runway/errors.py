# errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the per-job error recorded in a RunReport
      - debugging without full tracebacks
    """

    kind = "ci_error"

    def __init__(
        self,
        message: str,
        *,
        job: str | None = None,
        step: str | None = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class InvalidEvent(CIError):
    """Malformed trigger input; the run never starts."""

    kind = "invalid_event"


class PipelineError(CIError):
    """Malformed pipeline description (duplicate names, cycles, bad fields)."""

    kind = "invalid_pipeline"


class ProvisioningError(CIError):
    kind = "provisioning_failed"


class StepExecutionError(CIError):
    """A step exited non-zero. Remaining steps of the job are not run."""

    kind = "step_failed"

    def __init__(self, message: str, *, job: str, step: str, cmd: str, exit_code: int):
        super().__init__(message, job=job, step=step, details={"exit_code": exit_code, "cmd": cmd})
        self.cmd = cmd
        self.exit_code = exit_code


class JobTimeoutError(CIError, TimeoutError):
    kind = "timeout"


class CacheWriteError(CIError):
    """Non-fatal: logged by the scheduler, never fails a job."""

    kind = "cache_write_failed"


class PublishError(CIError):
    """Non-fatal once the bounded retries are exhausted."""

    kind = "publish_failed"


class SandboxTerminated(CIError):
    """The sandbox was terminated (run cancelled) while a job was running."""

    kind = "terminated"
