"""Console output formatting utilities for runway."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional, TextIO

from ..model import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where progress goes (defaults to stdout)
        """
        self.debug = debug
        self.stream = stream
        # jobs run on worker threads; keep lines whole
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        out = sys.stderr if err else (self.stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        event: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Pipeline: {pipeline}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        self._print(f"JOB STARTED: {name}")

    def print_success(self, name: str) -> None:
        self._print(f"JOB SUCCEEDED: {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"  Exit code: {exit_code}")
        if hint:
            lines.append(f"  Hint: {hint}")
        if self.debug:
            lines.append(f"  Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"  Error: {error_line}")
        self._print(*lines)

    def print_cache(self, job: str, cache: str, status: str) -> None:
        self._print(f"[{job}] CACHE {cache}: {status}")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:24] + "..." if len(key) > 24 else key
        self._print(f"[{job}] CACHE: saved ({short_key})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._print(f"JOB SKIPPED: {name} ({reason})")

    def print_plan(self, stages: List[List[str]], skipped: Dict[str, str]) -> None:
        """Print the stages a run would execute."""
        for idx, stage in enumerate(stages, start=1):
            self._print(f"=== Stage {idx}: {', '.join(stage)} ===")
        for name, reason in skipped.items():
            self.print_plan_job_skipped(name, reason)

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        self._print(f"  {name} (skipped: {reason})")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary, with captured output for failed jobs."""
        lines = ["", "=" * 40, f"RESULTS ({report.pipeline}, run {report.run_id})", "=" * 40]
        for job in report.jobs:
            line = f"  {job.name}: {job.status.value.upper()}"
            if job.skip_reason:
                line += f" ({job.skip_reason})"
            elif job.duration is not None:
                line += f" ({job.duration:.1f}s)"
            lines.append(line)
        lines.append(f"STATUS: {report.status.value.upper()}")
        self._print(*lines)
        for job in report.jobs:
            if job.status.value == "failed" and job.captured_output:
                self._print("", f"--- output: {job.name} ---", job.captured_output.rstrip())

    def print_published(self, run_id: str, status: str, jobs: Dict[str, str]) -> None:
        self._print(f"STATUS PUBLISHED: run {run_id} -> {status}")
        for name, job_status in jobs.items():
            self._print(f"  {name}: {job_status}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_agent_started(self, agent_id: str, api: str, poll_interval: int) -> None:
        self._print("\nAGENT STARTED", f"Agent ID: {agent_id}", f"API: {api}", f"Polling every: {poll_interval}s", "")

    def print_lease_acquired(self, pipeline: str, run_id: str) -> None:
        self._print("\nLEASE ACQUIRED", f"Pipeline: {pipeline}", f"Run ID: {run_id}")

    def print_execution_complete(self, status: str, duration: Optional[float] = None) -> None:
        lines = ["\nEXECUTION COMPLETE", f"Status: {status}"]
        if duration is not None:
            lines.append(f"Duration: {duration:.1f}s")
        self._print(*lines)

    def print_info(self, message: str) -> None:
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
