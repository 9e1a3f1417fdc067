"""Data models and interface of the partitioned event bus."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class BusError(Exception):
    """Base exception for event bus errors."""


@dataclass(frozen=True)
class BusMessage:
    """One entry read from a topic partition.

    Attributes:
        topic: Logical topic name (e.g. ``escrow.events.v1``).
        partition: Partition number within the topic.
        message_id: Broker-assigned position, used to acknowledge the entry.
        key: Partition key the producer used.
        payload: JSON document, as published.
        redelivered: True if the entry was delivered before but never acknowledged.
    """

    topic: str
    partition: int
    message_id: str
    key: str
    payload: str
    redelivered: bool = False


class EventBus(Protocol):
    """Partitioned, at-least-once, per-partition-ordered log.

    Offsets are committed per consumer group with ``ack``; anything read but
    not acknowledged is delivered again (``pending=True``) to the partition's
    next owner.
    """

    partitions: int

    def partition_for(self, key: str) -> int: ...

    async def publish(self, topic: str, key: str, payload: str) -> str: ...

    async def ensure_group(self, topic: str, partition: int, group: str) -> None: ...

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
    ) -> list[BusMessage]: ...

    async def ack(self, message: BusMessage, *, group: str) -> None: ...

    async def acquire_partition(
        self, topic: str, partition: int, *, group: str, owner: str, ttl_seconds: int
    ) -> bool: ...

    async def renew_partition(
        self, topic: str, partition: int, *, group: str, owner: str, ttl_seconds: int
    ) -> bool: ...

    async def release_partition(self, topic: str, partition: int, *, group: str, owner: str) -> None: ...
