from __future__ import annotations

from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from ..errors import InvalidEvent
from ..loader import load_pipeline, pipeline_to_dict
from ..logging import get_logger
from ..model import PipelineDefinition, RunStatus
from ..trigger import matching_jobs, parse_event
from .db import SessionLocal, engine
from .models import Base, Lease, Run, now_utc
from .redisq import acquire_lease_lock, dequeue_run, enqueue_run, release_lease_lock
from .settings import LEASE_SECONDS, PIPELINE_PATH

logger = get_logger("runway.cloud")

app = FastAPI(title="runway control plane")

# unfinished runs; a newer event on the same ref cancels them
ACTIVE_STATUSES = ("queued", "running")
FINAL_STATUSES = {s.value for s in RunStatus if s is not RunStatus.PENDING}

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: str
    ref: str
    repo_url: str
    source_identity: str = "webhook"

class EventResponse(BaseModel):
    admitted: bool
    run_id: str | None = None
    jobs: list[str] = Field(default_factory=list)
    superseded: list[str] = Field(default_factory=list)

class ClaimRequest(BaseModel):
    agent_id: str

class ClaimedRun(BaseModel):
    run_id: str
    repo_url: str
    ref: str
    event: dict[str, Any]
    pipeline: dict[str, Any]
    lease_expires_at: str

class StatusRequest(BaseModel):
    status: str  # pending|succeeded|failed|cancelled
    jobs: dict[str, str] = Field(default_factory=dict)
    report: dict[str, Any] | None = None

class RunResponse(BaseModel):
    id: str
    repo: str
    ref: str
    event_kind: str
    source_identity: str
    status: str
    jobs: dict[str, str]
    report: dict[str, Any] | None
    created_at: datetime

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

@lru_cache(maxsize=1)
def current_pipeline() -> PipelineDefinition:
    """The pipeline admitted events run, loaded once from RUNWAY_PIPELINE."""
    return load_pipeline(PIPELINE_PATH)

def _run_response(run: Run) -> RunResponse:
    return RunResponse(
        id=run.id,
        repo=run.repo,
        ref=run.ref,
        event_kind=run.event_kind,
        source_identity=run.source_identity,
        status=run.status,
        jobs=dict(run.jobs_json or {}),
        report=run.report_json,
        created_at=run.created_at,
    )

# -------------------- Endpoints --------------------

@app.post("/events", response_model=EventResponse)
async def on_event(req: EventRequest):
    """Source-control webhook: admit the event, supersede older runs on the ref, enqueue."""
    try:
        event = parse_event(req.model_dump())
    except InvalidEvent as e:
        raise HTTPException(status_code=400, detail=e.message)

    pipeline = current_pipeline()
    jobs = matching_jobs(pipeline, event)
    if not jobs:
        logger.info("event %s on %s admits no job", event.kind.value, event.ref)
        return EventResponse(admitted=False)

    async with SessionLocal() as s:
        async with s.begin():
            q = sa.select(Run).where(
                Run.repo == req.repo_url,
                Run.ref == event.ref,
                Run.status.in_(ACTIVE_STATUSES),
            )
            superseded = list((await s.execute(q)).scalars())
            for old in superseded:
                # agents watching this run cancel it
                old.status = RunStatus.CANCELLED.value

            run = Run(
                repo=req.repo_url,
                ref=event.ref,
                event_kind=event.kind.value,
                source_identity=event.source_identity,
                status="queued",
                pipeline_json=pipeline_to_dict(pipeline),
                jobs_json={},
            )
            s.add(run)
            await s.flush()
            run_id = run.id

    # push to Redis after DB commit
    await enqueue_run(run_id)
    logger.info("queued run %s (%s %s)", run_id, event.kind.value, event.ref)
    return EventResponse(admitted=True, run_id=run_id, jobs=jobs, superseded=[r.id for r in superseded])

@app.post("/leases/claim", response_model=ClaimedRun)
async def claim(req: ClaimRequest):
    while True:
        run_id = await dequeue_run(timeout_s=5)
        if not run_id:
            return Response(status_code=204)

        if not await acquire_lease_lock(run_id, req.agent_id):
            continue

        expires_at = now_utc() + timedelta(seconds=LEASE_SECONDS)
        async with SessionLocal() as s:
            async with s.begin():
                run = await s.get(Run, run_id)
                if not run or run.status != "queued":
                    # superseded (or gone) while waiting in the queue
                    await release_lease_lock(run_id)
                    continue

                lease = await s.get(Lease, run_id)
                if lease:
                    lease.agent_id = req.agent_id
                    lease.leased_at = now_utc()
                    lease.expires_at = expires_at
                else:
                    s.add(Lease(run_id=run_id, agent_id=req.agent_id, leased_at=now_utc(), expires_at=expires_at))

                run.status = "running"
                return ClaimedRun(
                    run_id=run.id,
                    repo_url=run.repo,
                    ref=run.ref,
                    event={
                        "kind": run.event_kind,
                        "ref": run.ref,
                        "source_identity": run.source_identity,
                        "repo_url": run.repo,
                    },
                    pipeline=run.pipeline_json,
                    lease_expires_at=expires_at.isoformat(),
                )

@app.post("/runs/{run_id}/status")
async def publish_status(run_id: str, req: StatusRequest):
    """Status reporter sink: overall status plus per-job statuses of a run."""
    if req.status not in {s.value for s in RunStatus}:
        raise HTTPException(status_code=400, detail="status must be pending|succeeded|failed|cancelled")

    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")

            run.jobs_json = dict(req.jobs)
            if req.report is not None:
                run.report_json = req.report
            # a superseded run stays cancelled whatever its agent reports
            if run.status != RunStatus.CANCELLED.value:
                run.status = "running" if req.status == RunStatus.PENDING.value else req.status
            status = run.status

            finished = req.status in FINAL_STATUSES
            if finished:
                lease = await s.get(Lease, run_id)
                if lease:
                    await s.delete(lease)

    if finished:
        await release_lease_lock(run_id)
    return {"ok": True, "status": status}

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    """Get run details including per-job statuses and the final report."""
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(run)
