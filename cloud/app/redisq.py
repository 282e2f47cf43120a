from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis

from lintci.concurrency import (
    CANCEL_TTL_SECONDS,
    KEY_PREFIX,
    RELEASE_SCRIPT,
    SLOT_TTL_SECONDS,
    Acquisition,
    cancel_key,
    slot_key,
)
from .settings import REDIS_URL, QUEUE_NAME, RUN_TTL_SECONDS

r = redis.from_url(REDIS_URL, decode_responses=True)


def lease_lock_key(job_id: str) -> str:
    return f"{KEY_PREFIX}:lease_lock:{job_id}"


def run_key(run_id: str) -> str:
    return f"{KEY_PREFIX}:run:{run_id}"


def job_key(job_id: str) -> str:
    return f"{KEY_PREFIX}:job:{job_id}"


# -------------------- Queue --------------------

async def enqueue_job(job_id: str) -> None:
    await r.rpush(QUEUE_NAME, job_id)  # FIFO: push right


async def dequeue_job(timeout_s: int = 5) -> str | None:
    item = await r.blpop(QUEUE_NAME, timeout=timeout_s)  # FIFO: pop left
    if not item:
        return None
    _q, job_id = item
    return job_id


# -------------------- Concurrency slots --------------------
# Same keys and semantics as lintci.concurrency.RedisGovernor, async.

async def claim_slot(key: str, run_id: str, *, preempt: bool = True) -> Acquisition:
    name = slot_key(key)
    if not preempt:
        if await r.set(name, run_id, nx=True, ex=SLOT_TTL_SECONDS):
            return Acquisition(acquired=True)
        holder = await r.get(name)
        if holder is None or holder == run_id or await is_cancelled(holder):
            await r.set(name, run_id, ex=SLOT_TTL_SECONDS)
            return Acquisition(acquired=True)
        return Acquisition(acquired=False, holder=holder)

    prev = await r.set(name, run_id, ex=SLOT_TTL_SECONDS, get=True)
    if prev and prev != run_id:
        await cancel_run(prev)
        return Acquisition(acquired=True, cancelled=prev)
    return Acquisition(acquired=True)


async def cancel_run(run_id: str) -> None:
    await r.set(cancel_key(run_id), "1", ex=CANCEL_TTL_SECONDS)
    if await r.exists(run_key(run_id)):
        await r.hset(run_key(run_id), "cancelled", "1")


async def is_cancelled(run_id: str) -> bool:
    return bool(await r.exists(cancel_key(run_id)))


async def release_slot(key: str, run_id: str) -> bool:
    return bool(await r.eval(RELEASE_SCRIPT, 1, slot_key(key), run_id))


# -------------------- Runs / jobs --------------------

async def create_run(run_id: str, key: str | None, jobs: list[tuple[str, str, dict[str, Any]]]) -> None:
    pipe = r.pipeline(transaction=True)
    pipe.hset(
        run_key(run_id),
        mapping={
            "status": "queued",
            "key": key or "",
            "remaining": len(jobs),
            "cancelled": "0",
            "job_ids": json.dumps([jid for jid, _name, _payload in jobs]),
        },
    )
    pipe.expire(run_key(run_id), RUN_TTL_SECONDS)
    for job_id, name, payload in jobs:
        pipe.hset(
            job_key(job_id),
            mapping={
                "run_id": run_id,
                "job_name": name,
                "status": "queued",
                "payload_json": json.dumps(payload),
            },
        )
        pipe.expire(job_key(job_id), RUN_TTL_SECONDS)
    await pipe.execute()


async def get_run(run_id: str) -> dict[str, Any] | None:
    data = await r.hgetall(run_key(run_id))
    if not data:
        return None
    data["job_ids"] = json.loads(data.get("job_ids") or "[]")
    data["remaining"] = int(data.get("remaining", 0))
    data["cancelled"] = data.get("cancelled") == "1" or await is_cancelled(run_id)
    return data


async def get_job(job_id: str) -> dict[str, Any] | None:
    data = await r.hgetall(job_key(job_id))
    if not data:
        return None
    data["payload_json"] = json.loads(data.get("payload_json") or "{}")
    data["result"] = json.loads(data["result"]) if data.get("result") else None
    return data


async def set_job_status(job_id: str, status: str) -> None:
    await r.hset(job_key(job_id), "status", status)


async def set_run_status(run_id: str, status: str) -> None:
    await r.hset(run_key(run_id), "status", status)


async def finish_job(job_id: str, run_id: str, status: str, details: dict[str, Any]) -> str:
    """
    Record a job outcome and roll it up into the run. Returns the run status.

    The last job to finish settles the run and frees its concurrency slot.
    """
    await r.hset(
        job_key(job_id),
        mapping={
            "status": status,
            "logs": details.get("logs") or "",
            "result": json.dumps(details.get("results") or {}),
        },
    )
    remaining = await r.hincrby(run_key(run_id), "remaining", -1)
    run = await get_run(run_id) or {}
    run_status = run.get("status", "running")

    if status == "failed":
        run_status = "failed"
    if remaining <= 0:
        if run_status != "failed":
            run_status = "cancelled" if run.get("cancelled") else "ok"
        if run.get("key"):
            await release_slot(run["key"], run_id)
    await set_run_status(run_id, run_status)
    return run_status
