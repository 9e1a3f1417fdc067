"""Offer lifecycle state machine.

Pure functions over ``OfferSnapshotDTO``; the database-backed view applies
the same rules with a conditional UPDATE and falls back to ``transition``
to classify updates that matched no row.

Transitions are forward-only (Open -> Filled | Cancelled), terminal states
never change, and ``updated_slot`` never decreases.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from enum import Enum

from escrow_orderflow.ingestor.models import EventType, NormalizedEvent
from escrow_orderflow.storage.models import OfferStatus
from escrow_orderflow.storage.repos import OfferSnapshotDTO

TERMINAL_STATUS = {
    EventType.OFFER_FILLED: OfferStatus.FILLED,
    EventType.OFFER_CANCELLED: OfferStatus.CANCELLED,
}


class ApplyOutcome(str, Enum):
    """Result of applying one event to an offer snapshot."""

    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE_CREATE = "duplicate_create"
    ALREADY_TERMINAL = "already_terminal"
    STALE = "stale"
    ORPHAN = "orphan"

    @property
    def changed(self) -> bool:
        return self in (ApplyOutcome.CREATED, ApplyOutcome.UPDATED)


def snapshot_from_create(event: NormalizedEvent) -> OfferSnapshotDTO:
    """Initial Open snapshot for an OfferCreated event."""
    if event.event_type is not EventType.OFFER_CREATED:
        raise ValueError(f"expected OfferCreated, got {event.event_type.value}")
    return OfferSnapshotDTO(
        offer_id=event.offer_id,
        status=OfferStatus.OPEN,
        maker=event.maker,
        taker=None,
        mint_a=event.mint_a,
        mint_b=event.mint_b,
        amount_a=event.amount_a,
        amount_b=event.amount_b,
        created_slot=event.slot,
        updated_slot=event.slot,
    )


def transition(
    snapshot: OfferSnapshotDTO | None, event: NormalizedEvent
) -> tuple[ApplyOutcome, OfferSnapshotDTO | None]:
    """Apply ``event`` to ``snapshot``.

    Returns:
        The outcome and the resulting snapshot (the input one for no-ops).
    """
    if event.event_type is EventType.OFFER_CREATED:
        if snapshot is not None:
            return ApplyOutcome.DUPLICATE_CREATE, snapshot
        return ApplyOutcome.CREATED, snapshot_from_create(event)

    if snapshot is None:
        return ApplyOutcome.ORPHAN, None
    if snapshot.status.is_terminal:
        return ApplyOutcome.ALREADY_TERMINAL, snapshot
    if event.slot < snapshot.updated_slot:
        return ApplyOutcome.STALE, snapshot

    status = TERMINAL_STATUS[event.event_type]
    return ApplyOutcome.UPDATED, replace(
        snapshot,
        status=status,
        taker=event.taker if status is OfferStatus.FILLED else snapshot.taker,
        updated_slot=event.slot,
    )


def project_offers(events: Iterable[NormalizedEvent]) -> dict[str, OfferSnapshotDTO]:
    """Fold events (already in replay order) into offer snapshots, in memory."""
    offers: dict[str, OfferSnapshotDTO] = {}
    for event in events:
        _, snapshot = transition(offers.get(event.offer_id), event)
        if snapshot is not None:
            offers[event.offer_id] = snapshot
    return offers

