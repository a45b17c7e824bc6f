# report.py
from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from typing import Dict, Iterable, Optional, Protocol, Sequence
from urllib.parse import urljoin

from .errors import PublishError
from .logging import get_logger
from .model import Event, JobRun, JobStatus, RunReport, RunStatus, utcnow

logger = get_logger("runway.report")


def aggregate_status(statuses: Iterable[JobStatus], *, cancelled: bool = False) -> RunStatus:
    """
    failed    if any job failed
    pending   while any job is non-terminal
    cancelled if the run was cancelled
    succeeded otherwise (every job succeeded or was skipped by design)
    """
    statuses = list(statuses)
    if any(s is JobStatus.FAILED for s in statuses):
        return RunStatus.FAILED
    if any(not s.terminal for s in statuses):
        return RunStatus.PENDING
    if cancelled:
        return RunStatus.CANCELLED
    return RunStatus.SUCCEEDED


def finalize(
    run_id: str,
    event: Event,
    pipeline: str,
    job_runs: Sequence[JobRun],
    *,
    started_at=None,
    cancelled: bool = False,
) -> RunReport:
    snapshots = tuple(jr.snapshot() for jr in job_runs)
    status = aggregate_status((s.status for s in snapshots), cancelled=cancelled)
    return RunReport(
        run_id=run_id,
        event=event,
        pipeline=pipeline,
        status=status,
        jobs=snapshots,
        started_at=started_at or utcnow(),
        finished_at=None if status is RunStatus.PENDING else utcnow(),
    )


# ----------------------------------------------------------------------
# Publishing
# ----------------------------------------------------------------------

class StatusPublisher(Protocol):
    """External status-check collaborator (e.g. pull request annotations)."""

    def publish(self, run_id: str, overall_status: str, per_job_statuses: Dict[str, str]) -> None: ...


class HttpStatusPublisher:
    """Posts run status to the control plane: POST {base}/runs/{run_id}/status."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, include_report: Optional[RunReport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.include_report = include_report

    def publish(self, run_id: str, overall_status: str, per_job_statuses: Dict[str, str]) -> None:
        url = urljoin(self.base_url + "/", f"runs/{run_id}/status")
        body = {"status": overall_status, "jobs": per_job_statuses}
        if self.include_report is not None and self.include_report.run_id == run_id:
            body["report"] = self.include_report.to_dict()
        req = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise PublishError(f"status publish failed: {e.code} {e.reason}", details={"body": error_body}) from e
        except urllib.error.URLError as e:
            raise PublishError(f"network error: {e.reason}") from e


class ConsolePublisher:
    """Prints the status through the UI console."""

    def publish(self, run_id: str, overall_status: str, per_job_statuses: Dict[str, str]) -> None:
        from .ui.console import get_console

        get_console().print_published(run_id, overall_status, per_job_statuses)


def publish(
    report: RunReport,
    publisher: StatusPublisher,
    *,
    retries: int = 3,
    backoff: float = 0.5,
    sleep=time.sleep,
) -> bool:
    """
    Fire-and-forget publish. Retries up to `retries` times on failure, then
    logs and drops. Never raises; returns whether the status was delivered.
    """
    attempts = max(1, retries + 1)
    for attempt in range(1, attempts + 1):
        try:
            publisher.publish(report.run_id, report.status.value, report.per_job_statuses)
            return True
        except Exception as e:  # any publisher failure is non-fatal to the run
            if attempt == attempts:
                logger.warning("dropping status for run %s after %d attempts: %s", report.run_id, attempt, e)
                return False
            logger.info("publish attempt %d for run %s failed: %s", attempt, report.run_id, e)
            sleep(backoff * attempt)
    return False
