"""Tests for the Redis Streams event bus."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ResponseError

from escrow_orderflow.bus.models import BusError, BusMessage
from escrow_orderflow.bus.redis_streams import RedisStreamBus, partition_for_key

TOPIC = "escrow.events.v1"


@pytest.fixture
def mock_redis() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def bus(mock_redis: AsyncMock) -> RedisStreamBus:
    return RedisStreamBus(mock_redis, partitions=4)


class TestPartitioning:
    """Tests for key -> partition mapping."""

    def test_stable_and_in_range(self) -> None:
        for key in ["1", "42", "offer-xyz", ""]:
            partition = partition_for_key(key, 8)
            assert 0 <= partition < 8
            assert partition == partition_for_key(key, 8)

    def test_single_partition(self) -> None:
        assert partition_for_key("anything", 1) == 0

    def test_partitions_must_be_positive(self, mock_redis: AsyncMock) -> None:
        with pytest.raises(ValueError):
            RedisStreamBus(mock_redis, partitions=0)


class TestPublish:
    """Tests for publishing."""

    async def test_publish_to_key_partition(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.xadd.return_value = b"1700000000000-0"

        message_id = await bus.publish(TOPIC, "42", '{"a":1}')

        assert message_id == "1700000000000-0"
        expected_stream = f"{TOPIC}:{partition_for_key('42', 4)}"
        mock_redis.xadd.assert_awaited_once_with(expected_stream, {"key": "42", "payload": '{"a":1}'})


class TestConsumerGroups:
    """Tests for group creation, reads and acknowledgements."""

    async def test_ensure_group_creates_at_start(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        await bus.ensure_group(TOPIC, 2, "storage-writer-v1")

        mock_redis.xgroup_create.assert_awaited_once_with(
            f"{TOPIC}:2", "storage-writer-v1", id="0", mkstream=True
        )

    async def test_ensure_group_existing(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")

        await bus.ensure_group(TOPIC, 0, "g")

    async def test_ensure_group_other_error(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.xgroup_create.side_effect = ResponseError("WRONGTYPE")

        with pytest.raises(BusError):
            await bus.ensure_group(TOPIC, 0, "g")

    async def test_read_new_entries(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.xreadgroup.return_value = [
            [
                f"{TOPIC}:1".encode(),
                [
                    (b"1-0", {b"key": b"42", b"payload": b'{"n":1}'}),
                    (b"2-0", {b"key": b"42", b"payload": b'{"n":2}'}),
                ],
            ]
        ]

        messages = await bus.read(TOPIC, 1, group="g", consumer="g-p1", count=10, block_ms=500)

        mock_redis.xreadgroup.assert_awaited_once_with("g", "g-p1", {f"{TOPIC}:1": ">"}, count=10, block=500)
        assert messages == [
            BusMessage(topic=TOPIC, partition=1, message_id="1-0", key="42", payload='{"n":1}'),
            BusMessage(topic=TOPIC, partition=1, message_id="2-0", key="42", payload='{"n":2}'),
        ]

    async def test_read_pending_entries(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.xreadgroup.return_value = {
            f"{TOPIC}:0": [[("5-0", {"key": "7", "payload": "{}"})]],
        }

        messages = await bus.read(TOPIC, 0, group="g", consumer="g-p0", count=10, block_ms=500, pending=True)

        mock_redis.xreadgroup.assert_awaited_once_with("g", "g-p0", {f"{TOPIC}:0": "0"}, count=10, block=None)
        assert len(messages) == 1
        assert messages[0].redelivered is True
        assert messages[0].key == "7"

    async def test_read_acks_trimmed_pending_entries(
        self, bus: RedisStreamBus, mock_redis: AsyncMock
    ) -> None:
        mock_redis.xreadgroup.return_value = [[f"{TOPIC}:0", [(b"3-0", None)]]]

        messages = await bus.read(TOPIC, 0, group="g", consumer="g-p0", count=10, block_ms=0, pending=True)

        assert messages == []
        mock_redis.xack.assert_awaited_once_with(f"{TOPIC}:0", "g", "3-0")

    async def test_read_timeout(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.xreadgroup.return_value = []

        assert await bus.read(TOPIC, 0, group="g", consumer="c", count=1, block_ms=10) == []

    async def test_ack(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        message = BusMessage(topic=TOPIC, partition=3, message_id="9-0", key="k", payload="{}")

        await bus.ack(message, group="risk-engine-v1")

        mock_redis.xack.assert_awaited_once_with(f"{TOPIC}:3", "risk-engine-v1", "9-0")


class TestLeases:
    """Tests for partition ownership leases."""

    async def test_acquire(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.set.return_value = True

        assert await bus.acquire_partition(TOPIC, 1, group="g", owner="me", ttl_seconds=30)
        mock_redis.set.assert_awaited_once_with(f"escrow:bus:lease:g:{TOPIC}:1", "me", nx=True, ex=30)

    async def test_acquire_taken(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.set.return_value = None

        assert not await bus.acquire_partition(TOPIC, 1, group="g", owner="me", ttl_seconds=30)

    async def test_renew_checks_owner(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        mock_redis.eval.return_value = 0

        assert not await bus.renew_partition(TOPIC, 1, group="g", owner="me", ttl_seconds=30)
        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, f"escrow:bus:lease:g:{TOPIC}:1", "me", 30)

    async def test_release(self, bus: RedisStreamBus, mock_redis: AsyncMock) -> None:
        await bus.release_partition(TOPIC, 1, group="g", owner="me")

        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, f"escrow:bus:lease:g:{TOPIC}:1", "me")
