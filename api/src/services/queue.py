"""
Redis queue service for pipeline runs and control messages.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone

from api.src.config import get_settings

settings = get_settings()

RUN_QUEUE = "conveyor:runs"
CONTROL_QUEUE = "conveyor:control"
STATUS_HASH = "conveyor:status"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_pipeline_run(
    run_id: str,
    definition: str,
    event: Dict[str, Any],
    jobs: Optional[List[str]] = None,
):
    """
    Add pipeline run to processing queue. `definition` is the YAML source and
    `jobs` the triggered jobs, so the controller does not re-evaluate triggers.
    """
    client = await get_redis_client()

    message = {
        "type": "run",
        "run_id": run_id,
        "definition": definition,
        "event": event,
        "jobs": jobs,
        "queued_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await client.lpush(RUN_QUEUE, json.dumps(message, default=str))
        await client.hset(STATUS_HASH, run_id, "queued")
    finally:
        await client.aclose()

async def send_control(message_type: str, run_id: str, **fields: Any):
    """Send a cancel/approve/reject message to the controller."""
    client = await get_redis_client()

    try:
        await client.lpush(CONTROL_QUEUE, json.dumps({"type": message_type, "run_id": run_id, **fields}))
    finally:
        await client.aclose()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(STATUS_HASH, run_id)
    finally:
        await client.aclose()

async def get_queue_length() -> int:
    """Get number of runs waiting in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(RUN_QUEUE)
    finally:
        await client.aclose()
