"""Bounded per-maker / per-offer event history used by risk rules."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Protocol

from redis.asyncio import Redis

from escrow_orderflow.ingestor.models import EventType, NormalizedEvent

logger = logging.getLogger(__name__)

DEFAULT_REDIS_KEY_PREFIX = "escrow:risk:history:"
DEFAULT_WINDOW_MS = 10 * 60 * 1000
DEFAULT_MAX_ENTRIES = 200


@dataclass(frozen=True)
class HistoryEntry:
    """What the rules remember about one past event."""

    event_id: str
    event_type: EventType
    offer_id: str
    slot: int
    ts_ms: int

    @classmethod
    def from_event(cls, event: NormalizedEvent) -> HistoryEntry:
        return cls(
            event_id=event.event_id,
            event_type=event.event_type,
            offer_id=event.offer_id,
            slot=event.slot,
            ts_ms=event.ts_ingest_ms,
        )

    def member(self) -> str:
        """Deterministic sorted-set member; the same event always maps to the same member."""
        return json.dumps(
            {
                "event_id": self.event_id,
                "event_type": self.event_type.value,
                "offer_id": self.offer_id,
                "slot": self.slot,
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def from_member(cls, member: str | bytes, score: float) -> HistoryEntry:
        data = json.loads(member)
        return cls(
            event_id=data["event_id"],
            event_type=EventType(data["event_type"]),
            offer_id=data["offer_id"],
            slot=int(data["slot"]),
            ts_ms=int(score),
        )


@dataclass(frozen=True)
class HistoryView:
    """Read-only history handed to rules, oldest first.

    May already contain the event being evaluated if it is a redelivery.
    """

    maker_events: tuple[HistoryEntry, ...] = ()
    offer_events: tuple[HistoryEntry, ...] = ()

    def maker_events_since(self, since_ms: int, *, event_type: EventType | None = None) -> list[HistoryEntry]:
        return [
            entry
            for entry in self.maker_events
            if entry.ts_ms >= since_ms and (event_type is None or entry.event_type is event_type)
        ]


class HistoryStore(Protocol):
    async def view(self, event: NormalizedEvent) -> HistoryView: ...

    async def record(self, event: NormalizedEvent) -> None: ...


class InMemoryHistoryStore:
    """Process-local history; state is lost on restart."""

    def __init__(self, *, window_ms: int = DEFAULT_WINDOW_MS, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._window_ms = window_ms
        self._max_entries = max_entries
        self._by_maker: dict[str, dict[str, HistoryEntry]] = defaultdict(dict)
        self._by_offer: dict[str, dict[str, HistoryEntry]] = defaultdict(dict)

    async def view(self, event: NormalizedEvent) -> HistoryView:
        return HistoryView(
            maker_events=self._sorted(self._by_maker.get(event.maker, {})),
            offer_events=self._sorted(self._by_offer.get(event.offer_id, {})),
        )

    async def record(self, event: NormalizedEvent) -> None:
        entry = HistoryEntry.from_event(event)
        for bucket in (self._by_maker[event.maker], self._by_offer[event.offer_id]):
            bucket[entry.event_id] = entry
            self._trim(bucket, now_ms=entry.ts_ms)

    @staticmethod
    def _sorted(bucket: dict[str, HistoryEntry]) -> tuple[HistoryEntry, ...]:
        return tuple(sorted(bucket.values(), key=lambda e: (e.ts_ms, e.member())))

    def _trim(self, bucket: dict[str, HistoryEntry], *, now_ms: int) -> None:
        cutoff = now_ms - self._window_ms
        for event_id in [k for k, e in bucket.items() if e.ts_ms < cutoff]:
            del bucket[event_id]
        overflow = len(bucket) - self._max_entries
        if overflow > 0:
            for entry in self._sorted(bucket)[:overflow]:
                del bucket[entry.event_id]


class RedisHistoryStore:
    """History kept in Redis sorted sets scored by ingestion time.

    One set per maker and one per offer. Members are deterministic, so
    recording a redelivered event does not add a second entry.

    Example:
        ```python
        store = RedisHistoryStore(redis, window_ms=600_000, max_entries=200)
        history = await store.view(event)
        await store.record(event)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
    ) -> None:
        self._redis = redis
        self._window_ms = window_ms
        self._max_entries = max_entries
        self._key_prefix = key_prefix

    def _maker_key(self, maker: str) -> str:
        return f"{self._key_prefix}maker:{maker}"

    def _offer_key(self, offer_id: str) -> str:
        return f"{self._key_prefix}offer:{offer_id}"

    async def _entries(self, key: str) -> tuple[HistoryEntry, ...]:
        raw: list[Any] = await self._redis.zrange(key, 0, -1, withscores=True)
        entries: list[HistoryEntry] = []
        for member, score in raw:
            try:
                entries.append(HistoryEntry.from_member(member, score))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Ignoring unreadable history entry in %s: %s", key, e)
        return tuple(entries)

    async def view(self, event: NormalizedEvent) -> HistoryView:
        return HistoryView(
            maker_events=await self._entries(self._maker_key(event.maker)),
            offer_events=await self._entries(self._offer_key(event.offer_id)),
        )

    async def record(self, event: NormalizedEvent) -> None:
        entry = HistoryEntry.from_event(event)
        member = entry.member()
        cutoff = entry.ts_ms - self._window_ms
        ttl_seconds = max(1, self._window_ms // 1000) * 2

        pipe = self._redis.pipeline()
        for key in (self._maker_key(event.maker), self._offer_key(event.offer_id)):
            pipe.zadd(key, {member: entry.ts_ms})
            pipe.zremrangebyscore(key, "-inf", f"({cutoff}")
            pipe.zremrangebyrank(key, 0, -(self._max_entries + 1))
            pipe.expire(key, ttl_seconds)
        await pipe.execute()
