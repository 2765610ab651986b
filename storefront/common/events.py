"""
Common — domain event publishing (Redis Pub/Sub)

Services publish the facts they committed (past-tense pydantic models) on a
per-service channel so other services can project them. Publishing happens
after the database commit; Redis Pub/Sub is fire-and-forget, so a publish
failure is logged and never undoes the committed change.
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def publish(redis: aioredis.Redis | None, channel: str, event: BaseModel) -> None:
    """Publish `{"event_type": <class name>, "data": <event>}` on `channel`."""
    event_type = type(event).__name__
    if redis is None:
        logger.warning("No redis connection, dropping %s on %s", event_type, channel)
        return
    message = json.dumps(
        {"event_type": event_type, "data": event.model_dump(mode="json")},
        default=str,
    )
    try:
        await redis.publish(channel, message)
    except RedisError:
        logger.exception("Failed to publish %s on %s", event_type, channel)
