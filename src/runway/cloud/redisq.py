from __future__ import annotations

import redis.asyncio as redis
from .settings import REDIS_URL, QUEUE_NAME, LEASE_SECONDS

r = redis.from_url(REDIS_URL, decode_responses=True)

def lease_lock_key(run_id: str) -> str:
    return f"runway:lease_lock:{run_id}"

async def enqueue_run(run_id: str) -> None:
    await r.rpush(QUEUE_NAME, run_id)  # FIFO: push right

async def dequeue_run(timeout_s: int = 5) -> str | None:
    item = await r.blpop(QUEUE_NAME, timeout=timeout_s)  # FIFO: pop left
    if not item:
        return None
    _q, run_id = item
    return run_id

async def requeue_run(run_id: str) -> None:
    await r.lpush(QUEUE_NAME, run_id)

async def acquire_lease_lock(run_id: str, agent_id: str) -> bool:
    # reduces duplicate leasing during client retries
    return bool(await r.set(lease_lock_key(run_id), agent_id, nx=True, ex=LEASE_SECONDS))

async def release_lease_lock(run_id: str) -> None:
    await r.delete(lease_lock_key(run_id))
