from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from lintci.agent.executor import job_to_dict
from lintci.model import EVENT_KINDS, Event, Workflow
from lintci.runner import load_workflow
from lintci.trigger import evaluate
from lintci.workflows import lint_rust

from .redisq import (
    cancel_run,
    claim_slot,
    create_run,
    dequeue_job,
    enqueue_job,
    finish_job,
    get_job,
    get_run,
    is_cancelled,
    lease_lock_key,
    r,
    set_job_status,
    set_run_status,
)
from .settings import LEASE_SECONDS, WORKFLOW_FILE

app = FastAPI(title="lintci Control Plane")

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: str
    ref: str
    base_ref: str | None = None
    # None: the platform did not provide a change list for this event
    changed_paths: list[str] | None = None
    sha: str | None = None
    repository: str | None = None
    repo_url: str | None = None

class EventResponse(BaseModel):
    admitted: bool
    reason: str
    run_id: str | None = None
    concurrency_key: str | None = None
    cancelled_run_id: str | None = None
    job_ids: list[str] = Field(default_factory=list)

class RunResponse(BaseModel):
    run_id: str
    status: str
    cancelled: bool
    job_ids: list[str]

class ClaimRequest(BaseModel):
    agent_id: str

class ClaimedJob(BaseModel):
    job_id: str
    run_id: str
    job_name: str
    payload_json: dict[str, Any]
    lease_expires_at: str

class CompleteRequest(BaseModel):
    agent_id: str
    status: str  # ok|failed|cancelled
    details: dict[str, Any] = Field(default_factory=dict)

class JobResponse(BaseModel):
    id: str
    run_id: str
    job_name: str
    status: str
    logs: str | None
    result: dict[str, Any] | None

# -------------------- Helpers --------------------

@lru_cache(maxsize=1)
def get_workflow() -> Workflow:
    if WORKFLOW_FILE:
        return load_workflow(WORKFLOW_FILE)
    return lint_rust.workflow()

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

# -------------------- Endpoints --------------------

@app.post("/events", response_model=EventResponse)
async def receive_event(req: EventRequest):
    if req.kind not in EVENT_KINDS:
        return EventResponse(admitted=False, reason=f"event kind {req.kind!r} is not supported")

    workflow = get_workflow()
    event = Event(
        kind=req.kind,
        ref=req.ref,
        base_ref=req.base_ref,
        changed_paths=tuple(req.changed_paths) if req.changed_paths is not None else None,
        sha=req.sha,
        repository=req.repository,
        repo_url=req.repo_url,
    )
    decision = evaluate(workflow, event)
    if not decision.admitted:
        return EventResponse(admitted=False, reason=decision.reason)

    run_id = str(uuid.uuid4())
    key = workflow.concurrency_key(event.ref)
    cancelled_run_id = None
    if key is not None:
        acq = await claim_slot(key, run_id, preempt=workflow.concurrency.cancel_in_progress)
        if not acq.acquired:
            return EventResponse(
                admitted=False,
                reason=f"concurrency key {key!r} is held by run {acq.holder}",
                concurrency_key=key,
            )
        if acq.cancelled:
            cancelled_run_id = acq.cancelled
            await set_run_status(acq.cancelled, "cancelled")

    jobs = []
    for job in workflow.jobs:
        payload = {
            "run_id": run_id,
            "repo_url": event.repo_url,
            "repository": event.repository,
            "sha": event.sha,
            "ref": event.sha or event.ref,
            "job": job_to_dict(job),
        }
        jobs.append((str(uuid.uuid4()), job.name, payload))

    await create_run(run_id, key, jobs)
    # push to Redis queue after the run is recorded
    for job_id, _name, _payload in jobs:
        await enqueue_job(job_id)

    return EventResponse(
        admitted=True,
        reason=decision.reason,
        run_id=run_id,
        concurrency_key=key,
        cancelled_run_id=cancelled_run_id,
        job_ids=[job_id for job_id, _name, _payload in jobs],
    )

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run_status(run_id: str):
    run = await get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunResponse(run_id=run_id, status=run["status"], cancelled=run["cancelled"], job_ids=run["job_ids"])

@app.post("/runs/{run_id}/cancel", response_model=RunResponse)
async def cancel(run_id: str):
    run = await get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if run["status"] in ("ok", "failed"):
        raise HTTPException(status_code=409, detail=f"Run already {run['status']}")
    await cancel_run(run_id)
    await set_run_status(run_id, "cancelled")
    return RunResponse(run_id=run_id, status="cancelled", cancelled=True, job_ids=run["job_ids"])

@app.post("/leases/claim", response_model=ClaimedJob)
async def claim(req: ClaimRequest):
    while True:
        job_id = await dequeue_job(timeout_s=5)
        if not job_id:
            return Response(status_code=204)

        job = await get_job(job_id)
        if job is None or job["status"] != "queued":
            continue

        # jobs of a cancelled run are dropped rather than leased
        if await is_cancelled(job["run_id"]):
            await set_job_status(job_id, "cancelled")
            await finish_job(job_id, job["run_id"], "cancelled", {})
            continue

        # Lock in Redis to reduce duplicate leasing during retries
        if not await r.set(lease_lock_key(job_id), req.agent_id, nx=True, ex=LEASE_SECONDS):
            continue

        await set_job_status(job_id, "leased")
        await set_run_status(job["run_id"], "running")
        expires_at = now_utc() + timedelta(seconds=LEASE_SECONDS)
        return ClaimedJob(
            job_id=job_id,
            run_id=job["run_id"],
            job_name=job["job_name"],
            payload_json=job["payload_json"],
            lease_expires_at=expires_at.isoformat(),
        )

@app.post("/leases/{job_id}/complete")
async def complete(job_id: str, req: CompleteRequest):
    if req.status not in ("ok", "failed", "cancelled"):
        raise HTTPException(status_code=400, detail="status must be ok|failed|cancelled")

    job = await get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    owner = await r.get(lease_lock_key(job_id))
    if owner is None:
        raise HTTPException(status_code=409, detail="No lease for job")
    if owner != req.agent_id:
        raise HTTPException(status_code=403, detail="Lease owned by different agent")

    run_status = await finish_job(job_id, job["run_id"], req.status, req.details)
    await r.delete(lease_lock_key(job_id))
    return {"ok": True, "run_status": run_status}

@app.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job_details(job_id: str):
    """Get job details including logs and annotations."""
    job = await get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse(
        id=job_id,
        run_id=job["run_id"],
        job_name=job["job_name"],
        status=job["status"],
        logs=job.get("logs") or None,
        result=job.get("result"),
    )
