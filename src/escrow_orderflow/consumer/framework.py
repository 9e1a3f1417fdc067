"""Idempotent bus consumption shared by every downstream service.

One ``PartitionWorker`` serves one ``(group, topic, partition)``. It owns the
partition through a lease, reads its own pending entries first (anything a
previous owner read but never acknowledged), then new ones, and for each
message runs the handler and only then acknowledges it. A crash between the
two redelivers the message; handlers are idempotent, so that is harmless.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from escrow_orderflow.bus.models import BusMessage, EventBus
from escrow_orderflow.retry import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    TRANSIENT_BUS_ERRORS,
    TRANSIENT_ERRORS,
    call_with_retry,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BusMessage], Awaitable[None]]

DEFAULT_READ_COUNT = 100
DEFAULT_BLOCK_MS = 1000
DEFAULT_LEASE_TTL_SECONDS = 30


class ConsumerError(Exception):
    """Base exception for consumer errors."""


class MalformedMessageError(ConsumerError):
    """Raised by a handler for a message that can never be processed.

    The message is logged, counted and acknowledged.
    """


@dataclass
class ConsumerStats:
    """Counters for one partition worker."""

    messages_processed: int = 0
    malformed: int = 0
    redelivered: int = 0
    leases_acquired: int = 0
    leases_lost: int = 0
    last_error: str | None = None


def default_owner_id() -> str:
    """Process-unique lease owner id."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def consumer_name(group: str, partition: int) -> str:
    """Consumer name for a partition, stable across restarts and owners."""
    return f"{group}-p{partition}"


class PartitionWorker:
    """Consumes a single partition for a consumer group.

    Example:
        ```python
        worker = PartitionWorker(bus, topic="escrow.events.v1", partition=3,
                                 group="storage-writer-v1", handler=projector.handle)
        task = asyncio.create_task(worker.run())
        ...
        worker.request_stop()
        await task
        ```
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        topic: str,
        partition: int,
        group: str,
        handler: MessageHandler,
        owner: str | None = None,
        read_count: int = DEFAULT_READ_COUNT,
        block_ms: int = DEFAULT_BLOCK_MS,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    ) -> None:
        """Initialize the worker.

        Args:
            bus: Event bus client.
            topic: Topic to consume.
            partition: Partition number within the topic.
            group: Consumer group (one per downstream service).
            handler: Idempotent side effect applied to each message.
            owner: Lease owner id; defaults to a process-unique id.
            read_count: Maximum entries per read.
            block_ms: How long a read waits for new entries.
            lease_ttl_seconds: Lease TTL; renewed every third of it.
            max_retries: Retries for transient errors before giving up.
            base_delay: Base backoff delay in seconds.
            max_delay: Upper bound of a single backoff delay.
        """
        self._bus = bus
        self.topic = topic
        self.partition = partition
        self.group = group
        self._handler = handler
        self._owner = owner or default_owner_id()
        self._consumer = consumer_name(group, partition)
        self._read_count = read_count
        self._block_ms = block_ms
        self._lease_ttl = lease_ttl_seconds
        self._renew_interval = max(lease_ttl_seconds / 3, 0.5)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._stop_event = asyncio.Event()
        self._owned = False
        self._next_renew_at = 0.0
        self._stats = ConsumerStats()

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    @property
    def owns_partition(self) -> bool:
        return self._owned

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Stop after the message being processed (if any) is acknowledged."""
        self._stop_event.set()

    async def _retry(
        self,
        func: Callable[[], Awaitable[Any]],
        operation: str,
        retry_on: tuple[type[Exception], ...],
    ) -> Any:
        return await call_with_retry(
            func,
            operation=f"{self.group} {self.topic}:{self.partition} {operation}",
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            max_delay=self._max_delay,
            retry_on=retry_on,
        )

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def _acquire(self) -> bool:
        acquired = await self._retry(
            lambda: self._bus.acquire_partition(
                self.topic,
                self.partition,
                group=self.group,
                owner=self._owner,
                ttl_seconds=self._lease_ttl,
            ),
            "acquire lease",
            TRANSIENT_BUS_ERRORS,
        )
        if acquired:
            self._owned = True
            self._stats.leases_acquired += 1
            self._next_renew_at = asyncio.get_running_loop().time() + self._renew_interval
            logger.info("%s owns %s:%d", self.group, self.topic, self.partition)
        return bool(acquired)

    async def _renew_if_due(self) -> bool:
        """Renew the lease when due; False means the partition was lost."""
        now = asyncio.get_running_loop().time()
        if now < self._next_renew_at:
            return True
        renewed = await self._retry(
            lambda: self._bus.renew_partition(
                self.topic,
                self.partition,
                group=self.group,
                owner=self._owner,
                ttl_seconds=self._lease_ttl,
            ),
            "renew lease",
            TRANSIENT_BUS_ERRORS,
        )
        if not renewed:
            self._owned = False
            self._stats.leases_lost += 1
            logger.warning("%s lost lease on %s:%d", self.group, self.topic, self.partition)
            return False
        self._next_renew_at = now + self._renew_interval
        return True

    async def _release(self) -> None:
        if not self._owned:
            return
        self._owned = False
        try:
            await self._bus.release_partition(self.topic, self.partition, group=self.group, owner=self._owner)
            logger.info("%s released %s:%d", self.group, self.topic, self.partition)
        except TRANSIENT_BUS_ERRORS as e:
            # The lease expires on its own.
            logger.warning("Failed to release lease on %s:%d: %s", self.topic, self.partition, e)

    async def process(self, message: BusMessage) -> None:
        """Apply the handler to ``message``, then acknowledge it.

        Raises:
            RetryError: If a transient error outlasted every retry.
        """
        try:
            await self._retry(
                lambda: self._handler(message), f"handle {message.message_id}", TRANSIENT_ERRORS
            )
        except MalformedMessageError as e:
            self._stats.malformed += 1
            self._stats.last_error = str(e)
            logger.warning(
                "Skipping malformed message %s on %s:%d: %s",
                message.message_id,
                message.topic,
                message.partition,
                e,
            )

        await self._retry(
            lambda: self._bus.ack(message, group=self.group),
            f"ack {message.message_id}",
            TRANSIENT_BUS_ERRORS,
        )
        self._stats.messages_processed += 1
        if message.redelivered:
            self._stats.redelivered += 1

    async def _read(self, *, pending: bool) -> list[BusMessage]:
        messages: list[BusMessage] = await self._retry(
            lambda: self._bus.read(
                self.topic,
                self.partition,
                group=self.group,
                consumer=self._consumer,
                count=self._read_count,
                block_ms=self._block_ms,
                pending=pending,
            ),
            "read",
            TRANSIENT_BUS_ERRORS,
        )
        return messages

    async def run(self) -> None:
        """Consume until ``request_stop()``.

        Raises:
            RetryError: If the bus or the handler stayed unavailable.
        """
        await self._retry(
            lambda: self._bus.ensure_group(self.topic, self.partition, self.group),
            "create group",
            TRANSIENT_BUS_ERRORS,
        )
        pending = True
        try:
            while not self.stopping:
                if not self._owned:
                    if not await self._acquire():
                        await self._sleep(self._renew_interval)
                        continue
                    pending = True

                if not await self._renew_if_due():
                    continue

                messages = await self._read(pending=pending)
                if pending and not messages:
                    pending = False
                    continue

                for message in messages:
                    if self.stopping or not await self._renew_if_due():
                        break
                    await self.process(message)
        except Exception as e:
            self._stats.last_error = str(e)
            logger.error("Worker %s %s:%d failed: %s", self.group, self.topic, self.partition, e)
            raise
        finally:
            await self._release()


class ConsumerGroupRunner:
    """Runs one ``PartitionWorker`` per partition of every consumed topic.

    Workers in different processes sharing a group split partitions between
    them through the leases. The first worker failure stops the rest and is
    re-raised from ``run()``.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        group: str,
        handlers: Mapping[str, MessageHandler],
        owner: str | None = None,
        **worker_options: Any,
    ) -> None:
        if not handlers:
            raise ValueError("at least one topic handler is required")
        self.group = group
        self._owner = owner or default_owner_id()
        self._workers = [
            PartitionWorker(
                bus,
                topic=topic,
                partition=partition,
                group=group,
                handler=handler,
                owner=self._owner,
                **worker_options,
            )
            for topic, handler in handlers.items()
            for partition in range(bus.partitions)
        ]

    @property
    def workers(self) -> list[PartitionWorker]:
        return list(self._workers)

    def stats(self) -> dict[str, ConsumerStats]:
        return {f"{w.topic}:{w.partition}": w.stats for w in self._workers}

    def request_stop(self) -> None:
        for worker in self._workers:
            worker.request_stop()

    async def run(self) -> None:
        """Run all workers until stopped.

        Raises:
            RetryError: Re-raised from the first worker that failed.
        """
        tasks = [
            asyncio.create_task(worker.run(), name=f"{self.group}:{worker.topic}:{worker.partition}")
            for worker in self._workers
        ]
        logger.info("Consumer group %s running %d partition workers", self.group, len(tasks))
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            errors = [t.exception() for t in done if not t.cancelled()]
            failure = next((e for e in errors if e is not None), None)
            if failure is not None:
                self.request_stop()
                await asyncio.wait(tasks)
                raise failure
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks, return_exceptions=True)
            raise
        logger.info("Consumer group %s stopped", self.group)
