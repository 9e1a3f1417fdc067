"""Raw program log → NormalizedEvent normalization and publishing.

The normalizer turns every escrow event line observed by the log source into
a canonical ``NormalizedEvent`` and publishes it on the events topic keyed by
``offer_id``. Ordinary program output (invokes, compute units) is skipped
quietly; malformed event lines are dropped with a diagnostic.

Publishing is at-least-once with bounded exponential backoff. Running out of
retries is fatal because a silently lost event could never be replayed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from escrow_orderflow.bus.models import EventBus
from escrow_orderflow.ingestor.models import (
    COMMITMENT_LEVELS,
    NormalizedEvent,
    OnchainLogPayload,
    RawLogRecord,
    now_ms,
)
from escrow_orderflow.retry import TRANSIENT_BUS_ERRORS, RetryError, call_with_retry

logger = logging.getLogger(__name__)

PROGRAM_LOG_PREFIX = "Program log: "

DEFAULT_MAX_IN_FLIGHT = 64
DEFAULT_PUBLISH_MAX_RETRIES = 5
DEFAULT_PUBLISH_BASE_DELAY = 0.2
DEFAULT_PUBLISH_MAX_DELAY = 10.0


class NormalizationError(Exception):
    """Raised when a raw log record cannot be turned into an event."""


class NotAnEventLine(NormalizationError):
    """Raised for program output that carries no escrow event (invokes, compute units)."""


@dataclass
class NormalizerStats:
    """Counters for the normalizer."""

    records_seen: int = 0
    records_skipped: int = 0
    events_published: int = 0
    malformed: int = 0
    publish_failures: int = 0


def extract_payload(raw: bytes | str) -> dict[str, object]:
    """Decode the JSON document carried by a program log line.

    Raises:
        NotAnEventLine: If the line is ordinary program output.
        NormalizationError: If an event line is not a valid JSON object.
    """
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise NormalizationError("payload is not valid UTF-8") from e
    else:
        text = raw

    text = text.strip()
    if not text.startswith(PROGRAM_LOG_PREFIX):
        raise NotAnEventLine("not a program log line")
    text = text[len(PROGRAM_LOG_PREFIX) :]
    if '"event"' not in text:
        raise NotAnEventLine("program log line carries no event")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise NormalizationError(f"invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise NormalizationError("payload is not a JSON object")
    return data


def normalize_record(
    record: RawLogRecord,
    *,
    cluster: str,
    program_id: str,
    ts_ingest_ms: int | None = None,
) -> NormalizedEvent:
    """Build the canonical event for one raw log record.

    Raises:
        NormalizationError: If the record is malformed or unrecognized.
    """
    if record.commitment not in COMMITMENT_LEVELS:
        raise NormalizationError(f"unknown commitment level {record.commitment!r}")
    if record.slot < 0 or record.instruction_index < 0 or record.log_index < 0:
        raise NormalizationError("slot and indices must be non-negative")

    data = extract_payload(record.payload)
    try:
        payload = OnchainLogPayload.from_dict(data)
    except ValueError as e:
        raise NormalizationError(str(e)) from e

    return NormalizedEvent(
        event_id=record.event_id,
        event_type=payload.event,
        cluster=cluster,
        slot=record.slot,
        signature=record.signature,
        program_id=program_id,
        offer_id=payload.offer_id,
        maker=payload.maker,
        taker=payload.taker,
        mint_a=payload.mint_a,
        mint_b=payload.mint_b,
        amount_a=str(payload.amount_a),
        amount_b=str(payload.amount_b),
        commitment=record.commitment,
        ts_ingest_ms=ts_ingest_ms if ts_ingest_ms is not None else now_ms(),
    )


class EventNormalizer:
    """Normalizes raw log records and publishes them to the event bus.

    Publishes run concurrently, bounded by ``max_in_flight``. Publishes for
    the same ``offer_id`` are chained so they reach the bus in submission
    order; unrelated offers never wait on each other.

    Example:
        ```python
        normalizer = EventNormalizer(bus, topic="escrow.events.v1", cluster="devnet", program_id=pid)
        async for record in source:
            await normalizer.submit(record)
        await normalizer.drain()
        ```
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        topic: str,
        cluster: str,
        program_id: str,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        publish_max_retries: int = DEFAULT_PUBLISH_MAX_RETRIES,
        publish_base_delay: float = DEFAULT_PUBLISH_BASE_DELAY,
        publish_max_delay: float = DEFAULT_PUBLISH_MAX_DELAY,
    ) -> None:
        """Initialize the normalizer.

        Args:
            bus: Event bus client used for publishing.
            topic: Events topic name.
            cluster: Cluster label stamped on every event.
            program_id: Escrow program id stamped on every event.
            max_in_flight: Maximum concurrent publish operations.
            publish_max_retries: Retries per publish before giving up.
            publish_base_delay: Base backoff delay in seconds.
            publish_max_delay: Upper bound of a single backoff delay.
        """
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self._bus = bus
        self._topic = topic
        self._cluster = cluster
        self._program_id = program_id
        self._publish_max_retries = publish_max_retries
        self._publish_base_delay = publish_base_delay
        self._publish_max_delay = publish_max_delay

        self._slots = asyncio.Semaphore(max_in_flight)
        self._tails: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._failure: BaseException | None = None
        self._failed = asyncio.Event()
        self._stats = NormalizerStats()

    @property
    def stats(self) -> NormalizerStats:
        return self._stats

    def normalize(self, record: RawLogRecord) -> NormalizedEvent | None:
        """Normalize one record.

        Returns None for ordinary program output (skipped quietly) and for
        malformed event lines (dropped with a diagnostic).
        """
        self._stats.records_seen += 1
        try:
            return normalize_record(record, cluster=self._cluster, program_id=self._program_id)
        except NotAnEventLine:
            self._stats.records_skipped += 1
            logger.debug("Skipping non-event log line %s", record.event_id)
            return None
        except NormalizationError as e:
            self._stats.malformed += 1
            logger.warning(
                "Dropping malformed log record %s (slot=%d): %s",
                record.event_id,
                record.slot,
                e,
            )
            return None

    async def publish(self, event: NormalizedEvent) -> str:
        """Publish one event, retrying transient bus failures.

        Raises:
            RetryError: If the bus stayed unavailable for every attempt.
        """
        payload = event.to_json()
        try:
            message_id = await call_with_retry(
                lambda: self._bus.publish(self._topic, event.offer_id, payload),
                operation=f"publish {event.event_id}",
                max_retries=self._publish_max_retries,
                base_delay=self._publish_base_delay,
                max_delay=self._publish_max_delay,
                retry_on=TRANSIENT_BUS_ERRORS,
            )
        except RetryError:
            self._stats.publish_failures += 1
            raise
        self._stats.events_published += 1
        logger.debug(
            "Published %s %s offer=%s slot=%d -> %s",
            event.event_type.value,
            event.event_id,
            event.offer_id,
            event.slot,
            message_id,
        )
        return message_id

    async def submit(self, record: RawLogRecord) -> None:
        """Normalize ``record`` and schedule its publish.

        Waits while ``max_in_flight`` publishes are outstanding.

        Raises:
            RetryError: If an earlier publish exhausted its retries.
        """
        self._raise_if_failed()
        event = self.normalize(record)
        if event is None:
            return

        await self._slots.acquire()
        previous = self._tails.get(event.offer_id)
        task = asyncio.create_task(self._publish_after(previous, event))
        self._tails[event.offer_id] = task
        self._tasks.add(task)
        task.add_done_callback(lambda t, key=event.offer_id: self._on_done(t, key))

    async def _publish_after(self, previous: asyncio.Task[None] | None, event: NormalizedEvent) -> None:
        try:
            if previous is not None:
                # Errors of the previous publish are reported by its own task.
                await asyncio.wait({previous})
                if self._failure is not None:
                    return
            await self.publish(event)
        finally:
            self._slots.release()

    def _on_done(self, task: asyncio.Task[None], key: str) -> None:
        self._tasks.discard(task)
        if self._tails.get(key) is task:
            del self._tails[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._failure is None:
            self._failure = exc
            self._failed.set()
            logger.error("Publishing failed fatally: %s", exc)

    async def wait_failed(self) -> BaseException:
        """Wait until a publish fails fatally and return its exception."""
        while self._failure is None:
            await self._failed.wait()
        return self._failure

    def _raise_if_failed(self) -> None:
        if self._failure is not None:
            raise self._failure

    async def drain(self) -> None:
        """Wait for all scheduled publishes to finish.

        Raises:
            RetryError: If any publish exhausted its retries.
        """
        while self._tasks:
            await asyncio.wait(set(self._tasks))
        self._raise_if_failed()

    async def cancel(self) -> None:
        """Abort outstanding publishes (shutdown without draining)."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.wait(set(self._tasks))
