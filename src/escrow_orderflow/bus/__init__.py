"""Event bus layer - Partitioned at-least-once delivery over Redis Streams."""

from escrow_orderflow.bus.models import BusError, BusMessage, EventBus
from escrow_orderflow.bus.redis_streams import RedisStreamBus, partition_for_key

__all__ = [
    "BusError",
    "BusMessage",
    "EventBus",
    "RedisStreamBus",
    "partition_for_key",
]
