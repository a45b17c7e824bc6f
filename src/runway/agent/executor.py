# agent/executor.py
from __future__ import annotations

import threading
from pathlib import Path

from runway.git import clone_at_ref
from runway.loader import pipeline_from_dict
from runway.logging import get_logger
from runway.model import RunReport, RunStatus
from runway.report import HttpStatusPublisher, publish
from runway.runner import Scheduler
from runway.settings import Settings

from .api_client import APIClient, APIError
from .models import Lease

logger = get_logger("runway.agent")


class CancelWatcher:
    """
    Background thread that polls the control plane while a run executes.

    When the run is superseded (status "cancelled"), the scheduler is
    cancelled: jobs that have not finished are skipped and their
    sandboxes terminated.
    """

    def __init__(self, api_client: APIClient, run_id: str, scheduler: Scheduler, interval: float = 5.0):
        self.api_client = api_client
        self.run_id = run_id
        self.scheduler = scheduler
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._watch, name=f"runway-cancel-{run_id}", daemon=True)

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._stop.set()
        self._thread.join(timeout=self.interval + 1)

    def _watch(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                status = self.api_client.run_status(self.run_id)
            except APIError as e:
                logger.debug("cancel check for run %s failed: %s", self.run_id, e)
                continue
            if status == RunStatus.CANCELLED.value:
                logger.info("run %s was superseded; cancelling", self.run_id)
                self.scheduler.cancel()
                return


def execute_lease(
    lease: Lease,
    api_client: APIClient,
    settings: Settings,
    *,
    cancel_poll_interval: float = 5.0,
) -> RunReport:
    """
    Execute a claimed run.

    Clones the repository at the event's ref, runs the pipeline snapshot
    carried by the lease, and publishes the report to the control plane.

    Raises:
        GitError / CIError when the run could not start; the caller
        reports the failure.
    """
    checkout = clone_at_ref(lease.repo_url, lease.ref, Path(settings.work_dir) / "checkouts")
    pipeline = pipeline_from_dict(lease.pipeline_json)

    scheduler = Scheduler(source=checkout, settings=settings)
    with CancelWatcher(api_client, lease.run_id, scheduler, cancel_poll_interval):
        report = scheduler.run(pipeline, lease.event, run_id=lease.run_id)

    publish(
        report,
        HttpStatusPublisher(api_client.base_url, include_report=report),
        retries=settings.publish_retries,
        backoff=settings.publish_backoff,
    )
    return report
