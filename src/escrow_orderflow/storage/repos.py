"""Repository pattern implementations for data access.

This module provides clean data access abstractions for the escrow event
log, the offer snapshot table, and processing diagnostics.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from escrow_orderflow.ingestor.models import EventType, NormalizedEvent
from escrow_orderflow.storage.models import (
    EventModel,
    OfferModel,
    OfferStatus,
    ProcessingDiagnosticModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ``ON CONFLICT``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"Unsupported database dialect for idempotent inserts: {dialect}")


def replay_order() -> tuple[Any, ...]:
    """Event log order used for replay: slot, creates first, then arrival."""
    return (
        EventModel.slot.asc(),
        sa.case((EventModel.event_type == EventType.OFFER_CREATED.value, 0), else_=1).asc(),
        EventModel.ingested_at.asc(),
        EventModel.event_id.asc(),
    )


@dataclass
class EventLogEntryDTO:
    """Data transfer object for event log rows."""

    event_id: str
    event_type: str
    signature: str
    slot: int
    offer_id: str
    payload_json: dict[str, Any]
    ingested_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EventModel) -> EventLogEntryDTO:
        return cls(
            event_id=model.event_id,
            event_type=model.event_type,
            signature=model.signature,
            slot=model.slot,
            offer_id=model.offer_id,
            payload_json=model.payload_json,
            ingested_at=model.ingested_at,
        )

    def to_event(self) -> NormalizedEvent:
        return NormalizedEvent.from_dict(self.payload_json)


class EventRepository:
    """Repository for the append-only event log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, event: NormalizedEvent) -> bool:
        """Record ``event``; an existing ``event_id`` is left untouched.

        Returns:
            True if a new row was written, False if the event was already recorded.
        """
        stmt = (
            _insert(self.session, EventModel)
            .values(
                event_id=event.event_id,
                event_type=event.event_type.value,
                signature=event.signature,
                slot=event.slot,
                offer_id=event.offer_id,
                payload_json=event.to_dict(),
                ingested_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(EventModel.event_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def get(self, event_id: str) -> EventLogEntryDTO | None:
        result = await self.session.execute(select(EventModel).where(EventModel.event_id == event_id))
        model = result.scalar_one_or_none()
        return EventLogEntryDTO.from_model(model) if model else None

    async def count(self) -> int:
        result = await self.session.execute(select(sa.func.count()).select_from(EventModel))
        return int(result.scalar_one() or 0)

    async def list_terminal_for_offer(self, offer_id: str, *, min_slot: int) -> list[NormalizedEvent]:
        """Fill/cancel events of one offer at or after ``min_slot``, in replay order."""
        result = await self.session.execute(
            select(EventModel)
            .where(
                (EventModel.offer_id == offer_id)
                & (EventModel.event_type != EventType.OFFER_CREATED.value)
                & (EventModel.slot >= min_slot)
            )
            .order_by(*replay_order())
        )
        return [EventLogEntryDTO.from_model(m).to_event() for m in result.scalars().all()]

    async def iter_replay(self, *, batch_size: int = 1000) -> AsyncIterator[NormalizedEvent]:
        """Iterate the whole log in replay order, ``batch_size`` rows per query.

        The caller may write through the same session between batches; the log
        must not grow while iterating (stop the store consumers first).
        """
        offset = 0
        while True:
            result = await self.session.execute(
                select(EventModel).order_by(*replay_order()).limit(batch_size).offset(offset)
            )
            models = result.scalars().all()
            if not models:
                return
            for model in models:
                yield EventLogEntryDTO.from_model(model).to_event()
            offset += len(models)


@dataclass
class OfferSnapshotDTO:
    """Data transfer object for offer snapshots.

    Amounts are u64 decimal strings, as on the bus.
    """

    offer_id: str
    status: OfferStatus
    maker: str
    taker: str | None
    mint_a: str
    mint_b: str
    amount_a: str
    amount_b: str
    created_slot: int
    updated_slot: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: OfferModel) -> OfferSnapshotDTO:
        return cls(
            offer_id=model.offer_id,
            status=OfferStatus(model.status),
            maker=model.maker,
            taker=model.taker,
            mint_a=model.mint_a,
            mint_b=model.mint_b,
            amount_a=str(int(model.amount_a)),
            amount_b=str(int(model.amount_b)),
            created_slot=int(model.created_slot),
            updated_slot=int(model.updated_slot),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def state_key(self) -> tuple[object, ...]:
        """Fields that define the derived state (timestamps excluded)."""
        return (
            self.offer_id,
            self.status,
            self.maker,
            self.taker,
            self.mint_a,
            self.mint_b,
            self.amount_a,
            self.amount_b,
            self.created_slot,
            self.updated_slot,
        )


class OfferRepository:
    """Repository for offer snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, offer_id: str) -> OfferSnapshotDTO | None:
        result = await self.session.execute(select(OfferModel).where(OfferModel.offer_id == offer_id))
        model = result.scalar_one_or_none()
        return OfferSnapshotDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: OfferSnapshotDTO) -> bool:
        """Create the snapshot unless one already exists for ``offer_id``.

        Returns:
            True if the snapshot was created.
        """
        now = datetime.now(UTC)
        stmt = (
            _insert(self.session, OfferModel)
            .values(
                offer_id=dto.offer_id,
                status=dto.status.value,
                maker=dto.maker,
                taker=dto.taker,
                mint_a=dto.mint_a,
                mint_b=dto.mint_b,
                amount_a=Decimal(dto.amount_a),
                amount_b=Decimal(dto.amount_b),
                created_slot=dto.created_slot,
                updated_slot=dto.updated_slot,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["offer_id"])
            .returning(OfferModel.offer_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def close_if_open(
        self,
        offer_id: str,
        *,
        status: OfferStatus,
        slot: int,
        taker: str | None = None,
    ) -> bool:
        """Atomically move an Open offer to a terminal status.

        The row only changes if it is still Open and ``updated_slot <= slot``;
        concurrent or stale updates match zero rows instead of failing.

        Returns:
            True if the snapshot changed.
        """
        if not status.is_terminal:
            raise ValueError("close_if_open requires a terminal status")
        values: dict[str, Any] = {
            "status": status.value,
            "updated_slot": slot,
            "updated_at": datetime.now(UTC),
        }
        if status is OfferStatus.FILLED:
            values["taker"] = taker
        result = await self.session.execute(
            update(OfferModel)
            .where(
                (OfferModel.offer_id == offer_id)
                & (OfferModel.status == OfferStatus.OPEN.value)
                & (OfferModel.updated_slot <= slot)
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def list_all(self) -> list[OfferSnapshotDTO]:
        result = await self.session.execute(select(OfferModel).order_by(OfferModel.offer_id.asc()))
        return [OfferSnapshotDTO.from_model(m) for m in result.scalars().all()]

    async def delete_all(self) -> int:
        """Truncate the snapshot table (only used to rebuild it from the log)."""
        result = await self.session.execute(delete(OfferModel))
        await self.session.flush()
        return int(result.rowcount or 0)


@dataclass
class ProcessingDiagnosticDTO:
    event_id: str
    offer_id: str | None
    stage: str
    kind: str
    message: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ProcessingDiagnosticModel) -> ProcessingDiagnosticDTO:
        return cls(
            event_id=model.event_id,
            offer_id=model.offer_id,
            stage=model.stage,
            kind=model.kind,
            message=model.message,
            created_at=model.created_at,
        )


class ProcessingDiagnosticRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: ProcessingDiagnosticDTO) -> None:
        self.session.add(
            ProcessingDiagnosticModel(
                event_id=dto.event_id,
                offer_id=dto.offer_id,
                stage=dto.stage,
                kind=dto.kind,
                message=dto.message,
                created_at=dto.created_at or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def list_by_kind(self, kind: str) -> list[ProcessingDiagnosticDTO]:
        result = await self.session.execute(
            select(ProcessingDiagnosticModel)
            .where(ProcessingDiagnosticModel.kind == kind)
            .order_by(ProcessingDiagnosticModel.id.asc())
        )
        return [ProcessingDiagnosticDTO.from_model(m) for m in result.scalars().all()]
