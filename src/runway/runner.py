# runner.py
from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from .cache import CacheStore, compute_cache_key, restore_prefix
from .dag import validate_graph
from .errors import CacheWriteError, CIError, PipelineError
from .logging import get_logger
from .model import Event, JobRun, JobStatus, PipelineDefinition, RunReport, utcnow
from .report import StatusPublisher, finalize, publish
from .sandbox import ExecutionSandbox
from .settings import Settings
from .toolchain import ToolchainHandle, ToolchainProvisioner
from .trigger import matching_jobs, parse_event
from .ui.console import get_console

logger = get_logger("runway.runner")

SandboxFactory = Callable[[JobRun, Event], ExecutionSandbox]


class Scheduler:
    """
    Runs a pipeline for one event:

    - one JobRun per job; jobs the event does not trigger are skipped
    - a job starts once every dependency succeeded; a failed or skipped
      dependency skips it without running any step
    - independent jobs run concurrently, bounded by max_workers
      (None: one worker per job)
    - fail_fast skips every job that has not started once any job fails;
      running jobs are left to finish
    - cancel() skips every non-terminal job and terminates its sandbox;
      a cancel() before run() cancels that run, and the flag resets once
      the run is finalized, so the same Scheduler can run again
    - a job's timeout starts before toolchain provisioning and bounds
      the whole job
    """

    def __init__(
        self,
        *,
        source: str | Path = ".",
        settings: Settings | None = None,
        cache: CacheStore | None = None,
        provisioner: ToolchainProvisioner | None = None,
        sandbox_factory: SandboxFactory | None = None,
        max_workers: int | None = None,
        fail_fast: bool | None = None,
    ):
        self.source = Path(source).resolve()
        self.settings = settings or Settings.from_env()
        self.cache = cache or CacheStore(self.settings.cache_dir, quota=self.settings.cache_quota)
        self.provisioner = provisioner or ToolchainProvisioner(self.settings.toolchain_dir)
        self.sandbox_factory = sandbox_factory or self._default_sandbox
        self.max_workers = max_workers if max_workers is not None else self.settings.max_workers
        self.fail_fast = fail_fast

        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._failed = threading.Event()
        self._runs: Dict[str, JobRun] = {}
        self._sandboxes: Dict[str, ExecutionSandbox] = {}
        self._pipeline: PipelineDefinition | None = None

    def _default_sandbox(self, job_run: JobRun, event: Event) -> ExecutionSandbox:
        return ExecutionSandbox(self.source, self.settings.work_dir, event=event)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def job_runs(self) -> Dict[str, JobRun]:
        with self._lock:
            return dict(self._runs)

    def cancel(self) -> None:
        """
        Cancel the run in progress: non-terminal JobRuns become skipped and
        their sandboxes are terminated. Terminal JobRuns are untouched.
        """
        self._cancelled.set()
        with self._lock:
            runs = list(self._runs.values())
            sandboxes = list(self._sandboxes.values())
        for jr in runs:
            if jr.transition_if_active(JobStatus.SKIPPED, reason="cancelled"):
                get_console().print_job_skipped(jr.name, "cancelled")
        for sb in sandboxes:
            sb.terminate()

    def run(
        self,
        pipeline: PipelineDefinition,
        event: Union[Event, Mapping[str, Any]],
        *,
        only: Optional[Iterable[str]] = None,
        run_id: str | None = None,
    ) -> RunReport:
        event = parse_event(event)
        validate_graph(pipeline.jobs)  # aborts before any job starts
        run_id = run_id or uuid.uuid4().hex[:12]
        started_at = utcnow()
        fail_fast = pipeline.fail_fast if self.fail_fast is None else self.fail_fast
        console = get_console()

        only_set = set(only) if only else None
        if only_set is not None:
            unknown = sorted(only_set - set(pipeline.job_names))
            if unknown:
                raise PipelineError(f"Unknown job(s) selected: {unknown}", details={"known": pipeline.job_names})

        runs = {j.name: JobRun(j, run_id) for j in pipeline.jobs}
        with self._lock:
            self._runs = runs
            self._sandboxes = {}
            self._pipeline = pipeline
        self._failed.clear()
        if self._cancelled.is_set():
            # cancelled before start
            self._cancelled.clear()
            for jr in runs.values():
                jr.transition(JobStatus.SKIPPED, reason="cancelled")
            return finalize(run_id, event, pipeline.name, list(runs.values()), started_at=started_at, cancelled=True)

        # ---- selection ----
        if only_set is not None:
            selected = only_set
            deps: Dict[str, Set[str]] = {name: set() for name in selected}  # --job ignores dependencies
            skip_reason = "not selected"
        else:
            selected = set(matching_jobs(pipeline, event))
            deps = {name: set(runs[name].job.needs) for name in selected}
            skip_reason = f"not triggered by {event.kind.value}"

        for name, jr in runs.items():
            if name not in selected:
                jr.transition(JobStatus.SKIPPED, reason=skip_reason)
                console.print_plan_job_skipped(name, skip_reason)

        waiting: Set[str] = set(selected)
        workers = self.max_workers or max(1, len(selected))
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="runway-job") as pool:
            while True:
                if fail_fast and self._failed.is_set():
                    reason = "fail_fast: another job failed"
                    self._skip_waiting(waiting, reason)
                    # submitted but still queued for a worker
                    for name in in_flight.values():
                        if runs[name].skip_if_pending(reason):
                            console.print_job_skipped(name, reason)
                if self._cancelled.is_set():
                    self._skip_waiting(waiting, "cancelled")

                # schedule everything that became ready
                for name in sorted(self._resolve_ready(waiting, deps)):
                    waiting.discard(name)
                    fut = pool.submit(self._run_job, runs[name], event, pipeline)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    # stop the sandboxes before the pool waits for its workers
                    self.cancel()
                    raise
                for fut in done:
                    name = in_flight.pop(fut)
                    exc = fut.exception()
                    if exc is not None:  # _run_job records its own errors
                        logger.error("job %s crashed: %s", name, exc)
                        runs[name].transition_if_active(JobStatus.FAILED, error=str(exc))
                    if runs[name].status is JobStatus.FAILED:
                        self._failed.set()

        # anything still waiting had an unsatisfiable dependency
        self._skip_waiting(waiting, "dependency not satisfied")

        report = finalize(
            run_id,
            event,
            pipeline.name,
            list(runs.values()),
            started_at=started_at,
            cancelled=self._cancelled.is_set(),
        )
        with self._lock:
            self._sandboxes = {}
        self._cancelled.clear()
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _skip_waiting(self, waiting: Set[str], reason: str) -> None:
        with self._lock:
            runs = dict(self._runs)
        for name in sorted(waiting):
            if runs[name].skip_if_pending(reason):
                get_console().print_job_skipped(name, reason)
        waiting.clear()

    def _resolve_ready(self, waiting: Set[str], deps: Dict[str, Set[str]]) -> List[str]:
        """
        Skip waiting jobs whose dependencies failed or were skipped (cascading)
        and return those whose dependencies all succeeded.
        """
        with self._lock:
            runs = dict(self._runs)
        changed = True
        while changed:
            changed = False
            for name in sorted(waiting):
                for dep in sorted(deps[name]):
                    status = runs[dep].status
                    if status in (JobStatus.FAILED, JobStatus.SKIPPED):
                        reason = f"dependency '{dep}' {status.value}"
                        if runs[name].skip_if_pending(reason):
                            get_console().print_job_skipped(name, reason)
                        waiting.discard(name)
                        changed = True
                        break
        return [
            name for name in waiting
            if all(runs[d].status is JobStatus.SUCCEEDED for d in deps[name])
        ]

    def _run_job(self, job_run: JobRun, event: Event, pipeline: PipelineDefinition) -> None:
        job = job_run.job
        console = get_console()
        # a queued job may have been skipped (fail_fast, cancel) before it got a worker
        if not job_run.transition(JobStatus.RUNNING):
            return
        console.print_job_start(job.name)

        sandbox = self.sandbox_factory(job_run, event)
        with self._lock:
            self._sandboxes[job_run.id] = sandbox
        if self._cancelled.is_set():
            sandbox.terminate()

        timeout = job.timeout or self.settings.job_timeout
        deadline = time.monotonic() + timeout if timeout else None
        try:
            handle = self.provisioner.prepare(job, deadline=deadline)
            with sandbox:
                workspace = sandbox.open(job_run)
                pending_saves = self._restore_caches(job_run, handle, workspace)
                sandbox.execute(
                    job_run,
                    job.steps,
                    handle,
                    deadline=deadline,
                    env=pipeline.env,
                )
                self._save_caches(job_run, workspace, pending_saves)
            if job_run.transition(JobStatus.SUCCEEDED):
                console.print_success(job.name)
        except CIError as e:
            job_run.append_output(f"error: {e.message}\n")
            if job_run.transition(JobStatus.FAILED, error=str(e)):
                console.print_failure(job.name, str(e), exit_code=e.details.get("exit_code"), is_job=True)
        finally:
            with self._lock:
                self._sandboxes.pop(job_run.id, None)

    def _restore_caches(self, job_run: JobRun, handle: ToolchainHandle, workspace: Path) -> List[tuple]:
        """Restore every declared cache; return the (spec, key, manifest) entries to save afterwards."""
        to_save = []
        statuses = []
        for spec in job_run.job.caches:
            key, manifest = compute_cache_key(spec, handle.spec.scope, root=self.source)
            prefix = restore_prefix(spec, handle.spec.scope)
            hit = self.cache.restore(key, workspace, restore_prefixes=[prefix])
            statuses.append(f"{spec.prefix}: {hit.status}")
            job_run.append_output(f"cache {spec.prefix}: {hit.reason}\n")
            get_console().print_cache(job_run.name, spec.prefix, hit.status)
            if not hit.exact:
                # an exact hit is already up to date
                to_save.append((spec, key, prefix, manifest))
        job_run.cache_status = ", ".join(statuses) or None
        return to_save

    def _save_caches(self, job_run: JobRun, workspace: Path, pending: List[tuple]) -> None:
        for spec, key, prefix, manifest in pending:
            try:
                self.cache.save(key, workspace, spec.cache_dirs, prefix=prefix, inputs=manifest)
                get_console().print_cache_saved(job_run.name, key)
            except CacheWriteError as e:
                # best effort: a failed save never fails the job
                logger.warning("[%s] %s", job_run.name, e)
                job_run.append_output(f"cache {spec.prefix}: save failed ({e.message})\n")


def run_pipeline(
    pipeline: PipelineDefinition,
    event: Union[Event, Mapping[str, Any]],
    *,
    source: str | Path = ".",
    settings: Settings | None = None,
    only: Optional[Iterable[str]] = None,
    max_workers: int | None = None,
    fail_fast: bool | None = None,
    publisher: StatusPublisher | None = None,
    run_id: str | None = None,
) -> RunReport:
    """Run a pipeline once and publish its report (if a publisher is given)."""
    settings = settings or Settings.from_env()
    scheduler = Scheduler(source=source, settings=settings, max_workers=max_workers, fail_fast=fail_fast)
    report = scheduler.run(pipeline, event, only=only, run_id=run_id)
    if publisher is not None:
        publish(report, publisher, retries=settings.publish_retries, backoff=settings.publish_backoff)
    return report
