"""
Redis pub/sub publishing for the websocket bridge.

Channels:
- orders:{tenant_id}:staff - every event of the tenant (staff roles)
- orders:{tenant_id}:table:{table_id} - events of one table (customer role)
"""
import json
import logging

import redis

from .settings import settings

logger = logging.getLogger(__name__)

# Redis client for pub/sub
redis_client: redis.Redis | None = None

EVENT_NEW_ORDER = "new_order"
EVENT_ORDER_STATUS_CHANGED = "order_status_changed"
EVENT_TIMER_UPDATE = "timer_update"
EVENT_PAYMENT_COMPLETED = "payment_completed"


def staff_channel(tenant_id: int) -> str:
    return f"orders:{tenant_id}:staff"


def table_channel(tenant_id: int, table_id: int) -> str:
    return f"orders:{tenant_id}:table:{table_id}"


def get_redis() -> redis.Redis | None:
    global redis_client
    if not settings.redis_url:
        return None
    if redis_client is None:
        try:
            redis_client = redis.from_url(settings.redis_url)
            redis_client.ping()
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable at {settings.redis_url}: {e}")
            redis_client = None
    return redis_client


def publish_order_update(tenant_id: int, event: dict, table_id: int | None = None) -> None:
    """Publish an order event to the staff channel and, with table_id, the table channel.

    Publishing never fails the request that triggered it.
    """
    r = get_redis()
    if r is None:
        return
    message = json.dumps(event, default=str)
    try:
        r.publish(staff_channel(tenant_id), message)
        if table_id is not None:
            r.publish(table_channel(tenant_id, table_id), message)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish {event.get('type')} for tenant {tenant_id}: {e}")
