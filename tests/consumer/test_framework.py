"""Tests for the consumer framework."""

from __future__ import annotations

import asyncio
from collections import defaultdict

import pytest
from conftest import FakeBus, make_message
from redis.exceptions import ConnectionError as RedisConnectionError

from escrow_orderflow.bus.models import BusMessage
from escrow_orderflow.consumer.framework import (
    ConsumerGroupRunner,
    MalformedMessageError,
    PartitionWorker,
    consumer_name,
)
from escrow_orderflow.retry import RetryError

TOPIC = "escrow.events.v1"
GROUP = "storage-writer-v1"


def make_worker(
    bus: FakeBus, handler, *, partition: int = 0, owner: str = "owner-a", **kwargs
) -> PartitionWorker:
    options = {"block_ms": 1, "base_delay": 0.0, "max_retries": 2}
    options.update(kwargs)
    return PartitionWorker(
        bus,
        topic=TOPIC,
        partition=partition,
        group=GROUP,
        handler=handler,
        owner=owner,
        **options,
    )


async def publish_to_partition(bus: FakeBus, partition: int, payloads: list[str]) -> str:
    """Publish payloads under a key that maps to ``partition``; returns the key."""
    key = next(str(k) for k in range(1000) if bus.partition_for(str(k)) == partition)
    for payload in payloads:
        await bus.publish(TOPIC, key, payload)
    return key


class TestConsumerName:
    def test_stable_per_partition(self) -> None:
        assert consumer_name("risk-engine-v1", 3) == "risk-engine-v1-p3"


class TestProcess:
    """Tests for effect-then-ack processing of one message."""

    async def test_handler_then_ack(self, fake_bus: FakeBus) -> None:
        calls: list[str] = []

        async def handler(message: BusMessage) -> None:
            assert (GROUP, message.message_id) not in fake_bus.acked
            calls.append(message.message_id)

        worker = make_worker(fake_bus, handler)
        await worker.process(make_message("{}", message_id="1-0"))

        assert calls == ["1-0"]
        assert fake_bus.acked == [(GROUP, "1-0")]
        assert worker.stats.messages_processed == 1

    async def test_malformed_message_is_acked(self, fake_bus: FakeBus) -> None:
        async def handler(message: BusMessage) -> None:
            raise MalformedMessageError("bad payload")

        worker = make_worker(fake_bus, handler)
        await worker.process(make_message("garbage", message_id="2-0"))

        assert fake_bus.acked == [(GROUP, "2-0")]
        assert worker.stats.malformed == 1
        assert worker.stats.last_error == "bad payload"

    async def test_transient_handler_error_is_retried(self, fake_bus: FakeBus) -> None:
        attempts = 0

        async def handler(message: BusMessage) -> None:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise RedisConnectionError("down")

        worker = make_worker(fake_bus, handler)
        await worker.process(make_message("{}"))

        assert attempts == 3
        assert len(fake_bus.acked) == 1

    async def test_exhausted_retries_leave_message_unacked(self, fake_bus: FakeBus) -> None:
        async def handler(message: BusMessage) -> None:
            raise RedisConnectionError("down")

        worker = make_worker(fake_bus, handler)
        with pytest.raises(RetryError):
            await worker.process(make_message("{}"))

        assert fake_bus.acked == []

    async def test_unexpected_error_propagates(self, fake_bus: FakeBus) -> None:
        async def handler(message: BusMessage) -> None:
            raise RuntimeError("bug")

        worker = make_worker(fake_bus, handler)
        with pytest.raises(RuntimeError):
            await worker.process(make_message("{}"))

        assert fake_bus.acked == []

    async def test_redelivered_is_counted(self, fake_bus: FakeBus) -> None:
        async def handler(message: BusMessage) -> None:
            return None

        worker = make_worker(fake_bus, handler)
        await worker.process(make_message("{}", redelivered=True))

        assert worker.stats.redelivered == 1


class TestPartitionWorkerRun:
    """Tests for the partition worker loop."""

    async def test_consumes_in_order_and_releases_lease(self, fake_bus: FakeBus) -> None:
        await publish_to_partition(fake_bus, 0, ["a", "b", "c"])
        seen: list[str] = []
        worker: PartitionWorker

        async def handler(message: BusMessage) -> None:
            seen.append(message.payload)
            if len(seen) == 3:
                worker.request_stop()

        worker = make_worker(fake_bus, handler)
        await asyncio.wait_for(worker.run(), timeout=5)

        assert seen == ["a", "b", "c"]
        assert len(fake_bus.acked) == 3
        assert worker.stats.leases_acquired == 1
        assert fake_bus.leases == {}
        assert not worker.owns_partition

    async def test_unacked_message_is_redelivered_to_next_owner(self, fake_bus: FakeBus) -> None:
        await publish_to_partition(fake_bus, 0, ["first", "second"])

        async def crashing(message: BusMessage) -> None:
            raise RuntimeError("crash before ack")

        with pytest.raises(RuntimeError):
            await asyncio.wait_for(make_worker(fake_bus, crashing).run(), timeout=5)
        assert fake_bus.acked == []

        seen: list[tuple[str, bool]] = []
        worker: PartitionWorker

        async def handler(message: BusMessage) -> None:
            seen.append((message.payload, message.redelivered))
            if len(seen) == 2:
                worker.request_stop()

        worker = make_worker(fake_bus, handler, owner="owner-b")
        await asyncio.wait_for(worker.run(), timeout=5)

        assert seen == [("first", True), ("second", True)]
        assert worker.stats.redelivered == 2

    async def test_does_not_consume_without_lease(self, fake_bus: FakeBus) -> None:
        await publish_to_partition(fake_bus, 0, ["a"])
        fake_bus.leases[(GROUP, TOPIC, 0)] = "someone-else"
        handled: list[str] = []

        async def handler(message: BusMessage) -> None:
            handled.append(message.payload)

        worker = make_worker(fake_bus, handler)
        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.05)
        worker.request_stop()
        await asyncio.wait_for(task, timeout=5)

        assert handled == []
        assert fake_bus.leases[(GROUP, TOPIC, 0)] == "someone-else"

    async def test_stop_while_idle(self, fake_bus: FakeBus) -> None:
        async def handler(message: BusMessage) -> None:
            return None

        worker = make_worker(fake_bus, handler)
        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.02)
        worker.request_stop()

        await asyncio.wait_for(task, timeout=5)
        assert worker.stopping


class TestConsumerGroupRunner:
    """Tests for running every partition of a group."""

    async def test_per_key_order_across_partitions(self, fake_bus: FakeBus) -> None:
        keys = [str(k) for k in range(10)]
        for i in range(3):
            for key in keys:
                await fake_bus.publish(TOPIC, key, f"{key}:{i}")

        seen: dict[str, list[int]] = defaultdict(list)
        total = 0
        runner: ConsumerGroupRunner

        async def handler(message: BusMessage) -> None:
            nonlocal total
            key, index = message.payload.split(":")
            seen[key].append(int(index))
            total += 1
            if total == 30:
                runner.request_stop()

        runner = ConsumerGroupRunner(
            fake_bus, group=GROUP, handlers={TOPIC: handler}, block_ms=1, base_delay=0.0
        )
        assert len(runner.workers) == fake_bus.partitions

        await asyncio.wait_for(runner.run(), timeout=5)

        assert {key: seen[key] for key in keys} == {key: [0, 1, 2] for key in keys}
        assert sum(s.messages_processed for s in runner.stats().values()) == 30

    async def test_one_worker_per_topic_partition(self, fake_bus: FakeBus) -> None:
        async def handler(message: BusMessage) -> None:
            return None

        runner = ConsumerGroupRunner(
            fake_bus, group=GROUP, handlers={TOPIC: handler, "escrow.alerts.v1": handler}
        )

        assert len(runner.workers) == 2 * fake_bus.partitions
        assert set(runner.stats()) == {f"{t}:{p}" for t in (TOPIC, "escrow.alerts.v1") for p in range(4)}

    async def test_worker_failure_stops_group(self, fake_bus: FakeBus) -> None:
        await publish_to_partition(fake_bus, 2, ["boom"])

        async def handler(message: BusMessage) -> None:
            raise RuntimeError("handler bug")

        runner = ConsumerGroupRunner(fake_bus, group=GROUP, handlers={TOPIC: handler}, block_ms=1)

        with pytest.raises(RuntimeError, match="handler bug"):
            await asyncio.wait_for(runner.run(), timeout=5)
        assert all(worker.stopping for worker in runner.workers if worker.partition != 2)
        assert fake_bus.leases == {}

    def test_requires_handlers(self, fake_bus: FakeBus) -> None:
        with pytest.raises(ValueError):
            ConsumerGroupRunner(fake_bus, group=GROUP, handlers={})
