"""Data models for the ingestor module."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

U64_MAX = 2**64 - 1

COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")


class EventType(str, Enum):
    """Escrow program events carried on the bus."""

    OFFER_CREATED = "OfferCreated"
    OFFER_FILLED = "OfferFilled"
    OFFER_CANCELLED = "OfferCancelled"

    @property
    def is_terminal(self) -> bool:
        """Return True for events that close an offer."""
        return self is not EventType.OFFER_CREATED


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def make_event_id(signature: str, instruction_index: int, log_index: int) -> str:
    """Build the commitment-independent idempotency key of a log event."""
    return f"{signature}:{instruction_index}:{log_index}"


def parse_u64(value: Any, *, name: str) -> int:
    """Parse an on-chain u64 given as int or decimal string.

    Raises:
        ValueError: If the value is not an integer in the u64 range.
    """
    # bool is an int subclass; JSON true/false is never an amount.
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, got bool")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.isdigit():
        parsed = int(value)
    else:
        raise ValueError(f"{name} must be a u64 integer, got {value!r}")
    if not 0 <= parsed <= U64_MAX:
        raise ValueError(f"{name} out of u64 range: {parsed}")
    return parsed


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"missing or invalid field {key!r}")
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string or null")
    return value


@dataclass(frozen=True)
class RawLogRecord:
    """One program log line as observed by the log source.

    Attributes:
        signature: Transaction signature.
        slot: Slot the transaction was observed in.
        instruction_index: Top-level instruction that emitted the line.
        log_index: Position of the line in the transaction's log messages.
        commitment: Commitment level of the observation.
        payload: Raw log line (bytes or text).
    """

    signature: str
    slot: int
    instruction_index: int
    log_index: int
    commitment: str
    payload: bytes | str

    @property
    def event_id(self) -> str:
        return make_event_id(self.signature, self.instruction_index, self.log_index)


@dataclass(frozen=True)
class OnchainLogPayload:
    """The JSON document the escrow program writes to its log.

    This is not the bus contract; the bus carries NormalizedEvent.
    """

    event: EventType
    offer_id: str
    maker: str
    taker: str | None
    mint_a: str
    mint_b: str
    amount_a: int
    amount_b: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OnchainLogPayload:
        """Create a payload from a decoded log document.

        Raises:
            ValueError: If the event is unknown or a field is missing/invalid.
        """
        try:
            event = EventType(data.get("event"))
        except ValueError as e:
            raise ValueError(f"unrecognized event {data.get('event')!r}") from e

        offer_id = data.get("offer_id")
        # The program logs offer ids unquoted in some builds.
        if isinstance(offer_id, int) and not isinstance(offer_id, bool):
            offer_id = str(offer_id)
        if not isinstance(offer_id, str) or not offer_id:
            raise ValueError("missing or invalid field 'offer_id'")

        return cls(
            event=event,
            offer_id=offer_id,
            maker=_require_str(data, "maker"),
            taker=_optional_str(data, "taker"),
            mint_a=_require_str(data, "mint_a"),
            mint_b=_require_str(data, "mint_b"),
            amount_a=parse_u64(data.get("amount_a"), name="amount_a"),
            amount_b=parse_u64(data.get("amount_b"), name="amount_b"),
        )


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical escrow event published on ``escrow.events.v1``.

    Amounts are u64 values encoded as decimal strings so consumers backed by
    floating-point numbers never lose precision.
    """

    event_id: str
    event_type: EventType
    cluster: str
    slot: int
    signature: str
    program_id: str
    offer_id: str
    maker: str
    taker: str | None
    mint_a: str
    mint_b: str
    amount_a: str
    amount_b: str
    commitment: str
    ts_ingest_ms: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NormalizedEvent:
        """Create an event from its JSON object form.

        Raises:
            ValueError: If a field is missing or violates the schema.
        """
        if not isinstance(data, dict):
            raise ValueError("event must be a JSON object")
        try:
            event_type = EventType(data.get("event_type"))
        except ValueError as e:
            raise ValueError(f"unrecognized event_type {data.get('event_type')!r}") from e

        commitment = _require_str(data, "commitment")
        if commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"unrecognized commitment {commitment!r}")

        slot = parse_u64(data.get("slot"), name="slot")
        ts_ingest_ms = parse_u64(data.get("ts_ingest_ms"), name="ts_ingest_ms")
        amount_a = parse_u64(data.get("amount_a"), name="amount_a")
        amount_b = parse_u64(data.get("amount_b"), name="amount_b")

        return cls(
            event_id=_require_str(data, "event_id"),
            event_type=event_type,
            cluster=_require_str(data, "cluster"),
            slot=slot,
            signature=_require_str(data, "signature"),
            program_id=_require_str(data, "program_id"),
            offer_id=_require_str(data, "offer_id"),
            maker=_require_str(data, "maker"),
            taker=_optional_str(data, "taker"),
            mint_a=_require_str(data, "mint_a"),
            mint_b=_require_str(data, "mint_b"),
            amount_a=str(amount_a),
            amount_b=str(amount_b),
            commitment=commitment,
            ts_ingest_ms=ts_ingest_ms,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> NormalizedEvent:
        """Decode an event from bus payload bytes.

        Raises:
            ValueError: If the payload is not valid JSON or violates the schema.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"invalid JSON: {e}") from e
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for bus publishing and the event log."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "cluster": self.cluster,
            "slot": self.slot,
            "signature": self.signature,
            "program_id": self.program_id,
            "offer_id": self.offer_id,
            "maker": self.maker,
            "taker": self.taker,
            "mint_a": self.mint_a,
            "mint_b": self.mint_b,
            "amount_a": self.amount_a,
            "amount_b": self.amount_b,
            "commitment": self.commitment,
            "ts_ingest_ms": self.ts_ingest_ms,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))
