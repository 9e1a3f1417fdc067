"""SQLAlchemy models for persistent storage.

This module defines the database schema for the append-only escrow event
log, the derived offer snapshot table, and processing diagnostics.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# u64 amounts do not fit BIGINT; NUMERIC(20, 0) holds the full range.
U64_NUMERIC = Numeric(20, 0)

PAYLOAD_JSON = JSON().with_variant(JSONB(), "postgresql")


class OfferStatus(str, Enum):
    """Offer snapshot states; Filled and Cancelled are terminal."""

    OPEN = "Open"
    FILLED = "Filled"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OfferStatus.OPEN


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class EventModel(Base):
    """Append-only escrow event log (replay source of truth).

    ``event_id`` is the idempotency key: a second insert of the same key is a
    no-op, whatever commitment level it was observed at.

    Chain identifiers are unbounded ``Text`` so every event that decodes can be
    stored.
    """

    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(Text, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    signature: Mapped[str] = mapped_column(Text, nullable=False)
    slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offer_id: Mapped[str] = mapped_column(Text, nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(PAYLOAD_JSON, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_events_offer_id", "offer_id"),
        Index("idx_events_slot", "slot"),
    )


class OfferModel(Base):
    """Latest offer snapshot, rebuildable from the event log."""

    __tablename__ = "offers"

    offer_id: Mapped[str] = mapped_column(Text, primary_key=True)
    status: Mapped[str] = mapped_column(String(12), nullable=False)
    maker: Mapped[str] = mapped_column(Text, nullable=False)
    taker: Mapped[str | None] = mapped_column(Text, nullable=True)
    mint_a: Mapped[str] = mapped_column(Text, nullable=False)
    mint_b: Mapped[str] = mapped_column(Text, nullable=False)
    amount_a: Mapped[Decimal] = mapped_column(U64_NUMERIC, nullable=False)
    amount_b: Mapped[Decimal] = mapped_column(U64_NUMERIC, nullable=False)
    created_slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_offers_maker", "maker"),
        Index("idx_offers_updated_slot", "updated_slot"),
    )


class ProcessingDiagnosticModel(Base):
    """Non-fatal processing problems (orphan updates, rejected records)."""

    __tablename__ = "processing_diagnostics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(Text, nullable=False)
    offer_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    stage: Mapped[str] = mapped_column(String(40), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_processing_diagnostics_event", "event_id"),
        Index("idx_processing_diagnostics_offer", "offer_id"),
    )
