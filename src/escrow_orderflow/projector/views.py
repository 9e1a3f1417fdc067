"""Derived views maintained from the event log."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from escrow_orderflow.ingestor.models import EventType, NormalizedEvent
from escrow_orderflow.projector.state_machine import (
    TERMINAL_STATUS,
    ApplyOutcome,
    snapshot_from_create,
    transition,
)
from escrow_orderflow.storage.repos import EventRepository, OfferRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class DerivedView(Protocol):
    """A table that is a pure function of the event log.

    ``apply`` must be idempotent and run inside the caller's transaction.
    ``reset`` empties the view before a full replay.
    """

    name: str

    async def reset(self, session: AsyncSession) -> None: ...

    async def apply(self, session: AsyncSession, event: NormalizedEvent) -> ApplyOutcome: ...


class OfferSnapshotView:
    """Latest state of every offer (the ``offers`` table).

    Args:
        reconcile: On a live create, re-apply fills/cancels of the same offer
            that were logged earlier as orphans. Replay passes False because it
            reads the log in slot order anyway.
    """

    name = "offers"

    def __init__(self, *, reconcile: bool = True) -> None:
        self._reconcile = reconcile

    async def reset(self, session: AsyncSession) -> None:
        deleted = await OfferRepository(session).delete_all()
        logger.info("Reset view %s (%d rows removed)", self.name, deleted)

    async def apply(self, session: AsyncSession, event: NormalizedEvent) -> ApplyOutcome:
        offers = OfferRepository(session)
        if event.event_type is EventType.OFFER_CREATED:
            if not await offers.insert_if_absent(snapshot_from_create(event)):
                return ApplyOutcome.DUPLICATE_CREATE
            if self._reconcile:
                await self._apply_logged_terminals(session, event)
            return ApplyOutcome.CREATED
        return await self._apply_terminal(offers, event)

    async def _apply_terminal(self, offers: OfferRepository, event: NormalizedEvent) -> ApplyOutcome:
        changed = await offers.close_if_open(
            event.offer_id,
            status=TERMINAL_STATUS[event.event_type],
            slot=event.slot,
            taker=event.taker,
        )
        if changed:
            return ApplyOutcome.UPDATED

        outcome, _ = transition(await offers.get(event.offer_id), event)
        if outcome is ApplyOutcome.UPDATED:
            # Only possible if the row changed between the UPDATE and the read.
            logger.warning("Offer %s changed concurrently while applying %s", event.offer_id, event.event_id)
            return ApplyOutcome.STALE
        return outcome

    async def _apply_logged_terminals(self, session: AsyncSession, created: NormalizedEvent) -> None:
        offers = OfferRepository(session)
        earlier = await EventRepository(session).list_terminal_for_offer(
            created.offer_id, min_slot=created.slot
        )
        for event in earlier:
            outcome = await self._apply_terminal(offers, event)
            logger.info(
                "Reconciled %s for offer %s after late create: %s",
                event.event_type.value,
                created.offer_id,
                outcome.value,
            )
