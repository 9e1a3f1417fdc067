"""Redis Streams implementation of the partitioned event bus.

Each topic is split into ``partitions`` streams named ``<topic>:<n>``. A key
always maps to the same stream, so all entries for one key are read back in
publish order. Consumer groups give each downstream service its own
committed offset (``XACK``) and a pending list of entries that were read but
not yet acknowledged.
"""

from __future__ import annotations

import logging
import zlib
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ResponseError

from escrow_orderflow.bus.models import BusError, BusMessage

logger = logging.getLogger(__name__)

DEFAULT_LEASE_KEY_PREFIX = "escrow:bus:lease:"

# Compare-and-set helpers so only the current owner can extend or drop a lease.
_RENEW_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""
_RELEASE_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def partition_for_key(key: str, partitions: int) -> int:
    """Stable partition of ``key`` (CRC-32, independent of PYTHONHASHSEED)."""
    return zlib.crc32(key.encode("utf-8")) % partitions


class RedisStreamBus:
    """Event bus backed by Redis Streams and consumer groups.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        bus = RedisStreamBus(redis, partitions=8)

        await bus.publish("escrow.events.v1", key="42", payload=event.to_json())
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        partitions: int,
        lease_key_prefix: str = DEFAULT_LEASE_KEY_PREFIX,
    ) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._redis = redis
        self.partitions = partitions
        self._lease_prefix = lease_key_prefix

    def stream_name(self, topic: str, partition: int) -> str:
        return f"{topic}:{partition}"

    def partition_for(self, key: str) -> int:
        return partition_for_key(key, self.partitions)

    def _lease_key(self, group: str, topic: str, partition: int) -> str:
        return f"{self._lease_prefix}{group}:{self.stream_name(topic, partition)}"

    async def publish(self, topic: str, key: str, payload: str) -> str:
        """Append ``payload`` to the partition owning ``key``.

        Returns:
            The stream entry id.
        """
        stream = self.stream_name(topic, self.partition_for(key))
        message_id = await self._redis.xadd(stream, {"key": key, "payload": payload})
        return _decode(message_id)

    async def ensure_group(self, topic: str, partition: int, group: str) -> None:
        """Create the consumer group at the start of the stream if missing."""
        stream = self.stream_name(topic, partition)
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", group, stream)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise BusError(f"Failed to create group {group} on {stream}: {e}") from e

    async def read(
        self,
        topic: str,
        partition: int,
        *,
        group: str,
        consumer: str,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[BusMessage]:
        """Read the next entries of a partition for ``consumer``.

        With ``pending=True`` the consumer's own unacknowledged entries are
        returned (from the beginning of its pending list) instead of new ones.
        """
        stream = self.stream_name(topic, partition)
        response = await self._redis.xreadgroup(
            group,
            consumer,
            {stream: "0" if pending else ">"},
            count=count,
            block=None if pending else block_ms,
        )
        messages: list[BusMessage] = []
        for _stream, entries in self._iter_streams(response):
            for raw_id, fields in entries:
                message_id = _decode(raw_id)
                if not fields:
                    # Entry trimmed from the stream while still pending; nothing to apply.
                    logger.warning("Pending entry %s on %s has no fields; acknowledging", message_id, stream)
                    await self._redis.xack(stream, group, message_id)
                    continue
                decoded = {_decode(k): _decode(v) for k, v in fields.items()}
                messages.append(
                    BusMessage(
                        topic=topic,
                        partition=partition,
                        message_id=message_id,
                        key=decoded.get("key", ""),
                        payload=decoded.get("payload", ""),
                        redelivered=pending,
                    )
                )
        return messages

    @staticmethod
    def _iter_streams(response: Any) -> list[tuple[Any, list[Any]]]:
        if not response:
            return []
        # RESP3 returns {stream: [entries]}, RESP2 a list of [stream, entries] pairs.
        if isinstance(response, dict):
            return [(stream, wrapped[0] if wrapped else []) for stream, wrapped in response.items()]
        return [(item[0], item[1]) for item in response]

    async def ack(self, message: BusMessage, *, group: str) -> None:
        """Commit ``message`` for ``group`` so it is never delivered again."""
        await self._redis.xack(self.stream_name(message.topic, message.partition), group, message.message_id)

    async def acquire_partition(
        self, topic: str, partition: int, *, group: str, owner: str, ttl_seconds: int
    ) -> bool:
        """Take ownership of a partition for ``group`` if nobody holds it."""
        acquired = await self._redis.set(
            self._lease_key(group, topic, partition),
            owner,
            nx=True,
            ex=ttl_seconds,
        )
        return bool(acquired)

    async def renew_partition(
        self, topic: str, partition: int, *, group: str, owner: str, ttl_seconds: int
    ) -> bool:
        """Extend the lease; False means ownership was lost."""
        renewed = await self._redis.eval(
            _RENEW_LEASE_SCRIPT, 1, self._lease_key(group, topic, partition), owner, ttl_seconds
        )
        return bool(renewed)

    async def release_partition(self, topic: str, partition: int, *, group: str, owner: str) -> None:
        await self._redis.eval(_RELEASE_LEASE_SCRIPT, 1, self._lease_key(group, topic, partition), owner)
