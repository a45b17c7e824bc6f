# cli.py
from __future__ import annotations

import json
import socket
import sys
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import urljoin

import click

from .cache import CacheStore
from .dag import build_dag, topo_levels
from .errors import CIError
from .git import GitError, current_ref, repo_name
from .loader import load_pipeline
from .logging import set_level
from .model import Event, EventKind
from .report import HttpStatusPublisher, publish
from .runner import Scheduler
from .settings import Settings
from .trigger import matching_jobs
from .ui.console import Console, get_console, set_console

EVENT_CHOICES = [k.value for k in EventKind]


def _fail(ctx: click.Context, exc: BaseException, title: str = "Run aborted") -> None:
    console = get_console()
    if isinstance(exc, CIError):
        console.print_error(title, exc.message, details=[f"{k}={v}" for k, v in exc.details.items()] or None)
        if ctx.obj.get("debug", False):
            console.print_exception(exc)
    else:
        console.print_exception(exc)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """runway: run CI pipelines locally or as a remote agent."""
    set_console(Console(debug=debug))
    if debug:
        set_level("DEBUG")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.option("--event", "event_kind", required=True, type=click.Choice(EVENT_CHOICES), help="Event that triggers the run")
@click.option("--job", "jobs", multiple=True, help="Run only this job (repeatable); ignores triggers and dependencies")
@click.option("--ref", default=None, help="Git ref of the event (defaults to the current branch)")
@click.option("--source", default=".", show_default=True, type=click.Path(file_okay=False), help="Source tree to check out")
@click.option("--workers", default=None, type=int, help="Max parallel jobs (default: one per job)")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Skip jobs not yet started after the first failure")
@click.option("--timeout", default=None, type=float, help="Default max duration per job, in seconds")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--work-dir", default=None, help="Directory for job workspaces")
@click.option("--publish-url", default=None, help="Control plane URL to publish the run status to")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.pass_context
def run(ctx, pipeline_file, event_kind, jobs, ref, source, workers, fail_fast, timeout, cache_dir, work_dir, publish_url, report_path):
    """Run a pipeline for an event. Exit code 0 iff the run succeeded."""
    console = get_console()
    settings = Settings.from_env().override(
        cache_dir=Path(cache_dir) if cache_dir else None,
        work_dir=Path(work_dir) if work_dir else None,
        max_workers=workers,
        job_timeout=timeout,
    )

    try:
        pipeline = load_pipeline(pipeline_file)
        if ref is None:
            try:
                ref = current_ref(source)
            except GitError:
                ref = "HEAD"
        event = Event(kind=EventKind(event_kind), ref=ref, source_identity="cli")

        console.print_run_started(
            repository=repo_name(source),
            pipeline=pipeline.name,
            event=f"{event.kind.value} ({event.ref})",
            job_count=len(pipeline.jobs),
        )

        scheduler = Scheduler(source=source, settings=settings, fail_fast=fail_fast)
        report = scheduler.run(pipeline, event, only=list(jobs) or None)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(ctx, e)

    console.print_results(report)

    if report_path:
        Path(report_path).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    if publish_url:
        publish(
            report,
            HttpStatusPublisher(publish_url, include_report=report),
            retries=settings.publish_retries,
            backoff=settings.publish_backoff,
        )

    sys.exit(0 if report.ok else 1)


@cli.command()
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.option("--event", "event_kind", default=None, type=click.Choice(EVENT_CHOICES), help="Only show jobs this event triggers")
@click.pass_context
def plan(ctx, pipeline_file, event_kind):
    """Print the stages a run would execute."""
    console = get_console()
    try:
        pipeline = load_pipeline(pipeline_file)
    except Exception as e:
        _fail(ctx, e, "Invalid pipeline")

    jobs = list(pipeline.jobs)
    skipped = {}
    if event_kind:
        selected = set(matching_jobs(pipeline, Event(kind=EventKind(event_kind))))
        skipped = {j.name: f"not triggered by {event_kind}" for j in jobs if j.name not in selected}
    adj, indeg = build_dag(jobs)
    stages = [[n for n in stage if n not in skipped] for stage in topo_levels(adj, indeg)]
    console.print_plan([s for s in stages if s], skipped)


# ----------------------------------------------------------------------
# cache maintenance
# ----------------------------------------------------------------------

@cli.group()
@click.option("--cache-dir", default=None, help="Cache directory")
@click.pass_context
def cache(ctx, cache_dir):
    """Inspect and maintain the dependency cache."""
    settings = Settings.from_env().override(cache_dir=Path(cache_dir) if cache_dir else None)
    ctx.obj["store"] = CacheStore(settings.cache_dir, quota=settings.cache_quota)


@cache.command("ls")
@click.pass_context
def cache_ls(ctx):
    """List cache entries, least recently used first."""
    store: CacheStore = ctx.obj["store"]
    console = get_console()
    entries = store.entries()
    for e in entries:
        console.print_info(f"{e.key}  {e.size:>10d} B  last used {e.last_used_at:.0f}")
    console.print_info(f"{len(entries)} entries, {sum(e.size for e in entries)} bytes")


@cache.command("prune")
@click.option("--keep", default=3, show_default=True, type=int, help="Entries to keep per cache prefix")
@click.option("--quota", default=None, type=int, help="Also evict LRU entries until the cache fits this many bytes")
@click.pass_context
def cache_prune(ctx, keep, quota):
    """Drop old cache entries."""
    store: CacheStore = ctx.obj["store"]
    removed = store.prune(keep=keep)
    if quota is not None:
        removed.extend(store.evict(quota))
    get_console().print_info(f"removed {len(removed)} entries")


# ----------------------------------------------------------------------
# control plane
# ----------------------------------------------------------------------

@cli.command()
@click.option("--api", required=True, help="Control plane URL (e.g., http://localhost:8000)")
@click.option("--agent-id", default=None, help="Unique agent identifier (defaults to hostname)")
@click.option("--poll-interval", default=5, type=int, help="Polling interval in seconds when no runs are queued")
@click.option(
    "--log-file",
    default=None,
    envvar="RUNWAY_AGENT_LOG_FILE",
    type=click.Path(dir_okay=False),
    help="Also write logs to this file (rotated at 1 MB)",
)
@click.pass_context
def agent(ctx, api, agent_id, poll_interval, log_file):
    """Run the agent loop: claim queued runs from the control plane and execute them."""
    from .agent.agent import run_agent

    console = get_console()
    try:
        run_agent(api, agent_id or socket.gethostname(), poll_interval, log_file=Path(log_file) if log_file else None)
    except KeyboardInterrupt:
        console.print_info("\nAgent stopped by user")
        sys.exit(0)
    except Exception as e:
        _fail(ctx, e, "Agent failed")


@cli.command()
@click.option("--api", required=True, help="Control plane URL (e.g., http://localhost:8000)")
@click.option("--event", "event_kind", required=True, type=click.Choice(EVENT_CHOICES))
@click.option("--ref", required=True, help="Git ref the event is for")
@click.option("--repo", required=True, help="Repository URL agents clone")
@click.option("--source-identity", default="cli", show_default=True, help="Who sent the event")
@click.pass_context
def submit(ctx, api, event_kind, ref, repo, source_identity):
    """Send an event to the control plane, as a source-control webhook would."""
    console = get_console()
    url = urljoin(api.rstrip("/") + "/", "events")
    body = {"kind": event_kind, "ref": ref, "repo_url": repo, "source_identity": source_identity}
    req = urllib.request.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error("API request failed", f"HTTP {e.code} {e.reason}", details=[error_body] if error_body else None)
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {api}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(1)

    if not result.get("admitted"):
        console.print_info("Event not admitted: no job is triggered by it.")
        return
    console.print_info(f"Run queued: {result.get('run_id')}")
    for superseded in result.get("superseded", []):
        console.print_info(f"  superseded run {superseded}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
