"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from escrow_orderflow.bus.models import BusMessage
from escrow_orderflow.bus.redis_streams import partition_for_key
from escrow_orderflow.ingestor.models import EventType, NormalizedEvent, make_event_id
from escrow_orderflow.storage.models import Base

MAKER = "Mkr1111111111111111111111111111111111111111"
TAKER = "Tkr1111111111111111111111111111111111111111"
MINT_A = "MintA111111111111111111111111111111111111111"
MINT_B = "MintB111111111111111111111111111111111111111"
PROGRAM_ID = "Escrow1111111111111111111111111111111111111"

_sig_counter = itertools.count(1)


def make_event(
    event_type: EventType = EventType.OFFER_CREATED,
    *,
    offer_id: str = "42",
    slot: int = 100,
    maker: str = MAKER,
    taker: str | None = None,
    amount_a: str = "1000000",
    amount_b: str = "2000000",
    signature: str | None = None,
    instruction_index: int = 0,
    log_index: int = 2,
    commitment: str = "finalized",
    ts_ingest_ms: int = 1_700_000_000_000,
) -> NormalizedEvent:
    """Build a NormalizedEvent with sensible defaults."""
    signature = signature or f"sig{next(_sig_counter)}"
    return NormalizedEvent(
        event_id=make_event_id(signature, instruction_index, log_index),
        event_type=event_type,
        cluster="localnet",
        slot=slot,
        signature=signature,
        program_id=PROGRAM_ID,
        offer_id=offer_id,
        maker=maker,
        taker=taker,
        mint_a=MINT_A,
        mint_b=MINT_B,
        amount_a=amount_a,
        amount_b=amount_b,
        commitment=commitment,
        ts_ingest_ms=ts_ingest_ms,
    )


def make_message(
    payload: str,
    *,
    topic: str = "escrow.events.v1",
    partition: int = 0,
    message_id: str = "1-0",
    key: str = "42",
    redelivered: bool = False,
) -> BusMessage:
    return BusMessage(
        topic=topic,
        partition=partition,
        message_id=message_id,
        key=key,
        payload=payload,
        redelivered=redelivered,
    )


class FakeBus:
    """In-memory EventBus with consumer groups, pending lists and leases."""

    def __init__(self, partitions: int = 4) -> None:
        self.partitions = partitions
        self.streams: dict[tuple[str, int], list[tuple[str, str, str]]] = defaultdict(list)
        self.delivered: dict[tuple[str, str, int], int] = defaultdict(int)
        self.pending: dict[tuple[str, str, int], dict[str, str]] = defaultdict(dict)
        self.acked: list[tuple[str, str]] = []
        self.leases: dict[tuple[str, str, int], str] = {}
        self.publish_errors: list[Exception] = []
        self._seq = itertools.count(1)

    def partition_for(self, key: str) -> int:
        return partition_for_key(key, self.partitions)

    async def publish(self, topic: str, key: str, payload: str) -> str:
        if self.publish_errors:
            raise self.publish_errors.pop(0)
        message_id = f"{next(self._seq)}-0"
        self.streams[(topic, self.partition_for(key))].append((message_id, key, payload))
        return message_id

    def published(self, topic: str) -> list[tuple[str, str]]:
        entries = [
            (int(mid.split("-")[0]), key, payload)
            for (t, _), stream in self.streams.items()
            if t == topic
            for mid, key, payload in stream
        ]
        return [(key, payload) for _, key, payload in sorted(entries)]

    async def ensure_group(self, topic: str, partition: int, group: str) -> None:
        return None

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
        key = (group, topic, partition)
        stream = self.streams[(topic, partition)]
        if pending:
            ids = list(self.pending[key])[:count]
            entries = [e for e in stream if e[0] in ids]
        else:
            start = self.delivered[key]
            entries = stream[start : start + count]
            self.delivered[key] = start + len(entries)
            for message_id, _, _ in entries:
                self.pending[key][message_id] = consumer
            if not entries:
                await asyncio.sleep(min(block_ms, 10) / 1000)
        return [
            BusMessage(
                topic=topic,
                partition=partition,
                message_id=message_id,
                key=k,
                payload=payload,
                redelivered=pending,
            )
            for message_id, k, payload in entries
        ]

    async def ack(self, message: BusMessage, *, group: str) -> None:
        self.pending[(group, message.topic, message.partition)].pop(message.message_id, None)
        self.acked.append((group, message.message_id))

    async def acquire_partition(
        self, topic: str, partition: int, *, group: str, owner: str, ttl_seconds: int
    ) -> bool:
        key = (group, topic, partition)
        if key in self.leases and self.leases[key] != owner:
            return False
        self.leases[key] = owner
        return True

    async def renew_partition(
        self, topic: str, partition: int, *, group: str, owner: str, ttl_seconds: int
    ) -> bool:
        return self.leases.get((group, topic, partition)) == owner

    async def release_partition(self, topic: str, partition: int, *, group: str, owner: str) -> None:
        if self.leases.get((group, topic, partition)) == owner:
            del self.leases[(group, topic, partition)]


class FakeRedis:
    """Just enough of redis.asyncio.Redis for markers and ledgers."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.ttls: dict[str, int | None] = {}

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.values)

    async def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True


@pytest.fixture
def fake_bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def async_engine(tmp_path):
    """Create an async SQLite engine backed by a temporary file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory):
    """Create an async session for testing."""
    async with session_factory() as session:
        yield session
