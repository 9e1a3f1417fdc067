"""Rebuild and verify derived views from the event log."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from escrow_orderflow.projector.state_machine import project_offers
from escrow_orderflow.projector.views import DerivedView, OfferSnapshotView
from escrow_orderflow.storage.repos import EventRepository, OfferRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_BATCH_SIZE = 1000


@dataclass
class ReplayReport:
    events_replayed: int = 0
    outcomes: Counter[str] = field(default_factory=Counter)


@dataclass
class VerifyReport:
    """Differences between the stored offers and a fresh in-memory projection."""

    events_read: int = 0
    offers_checked: int = 0
    missing: list[str] = field(default_factory=list)
    unexpected: list[str] = field(default_factory=list)
    mismatched: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.unexpected or self.mismatched)


class ReplayRunner:
    """Replays the event log into derived views.

    Run with the store consumers stopped; the log must not grow during a
    rebuild.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        views: Sequence[DerivedView] | None = None,
        batch_size: int = DEFAULT_REPLAY_BATCH_SIZE,
    ) -> None:
        self._session_factory = session_factory
        self._views: list[DerivedView] = (
            list(views) if views is not None else [OfferSnapshotView(reconcile=False)]
        )
        self._batch_size = batch_size

    async def rebuild(self) -> ReplayReport:
        """Truncate every view and re-apply the whole log, in one transaction."""
        report = ReplayReport()
        async with self._session_factory() as session, session.begin():
            for view in self._views:
                await view.reset(session)
            async for event in EventRepository(session).iter_replay(batch_size=self._batch_size):
                for view in self._views:
                    outcome = await view.apply(session, event)
                    report.outcomes[f"{view.name}:{outcome.value}"] += 1
                report.events_replayed += 1
                if report.events_replayed % self._batch_size == 0:
                    logger.info("Replayed %d events", report.events_replayed)

        logger.info(
            "Rebuilt %s from %d events: %s",
            ", ".join(view.name for view in self._views),
            report.events_replayed,
            dict(report.outcomes),
        )
        return report

    async def verify(self) -> VerifyReport:
        """Compare the stored offer snapshots with a projection of the log."""
        report = VerifyReport()
        async with self._session_factory() as session:
            events = [e async for e in EventRepository(session).iter_replay(batch_size=self._batch_size)]
            stored = {offer.offer_id: offer for offer in await OfferRepository(session).list_all()}

        report.events_read = len(events)
        expected = project_offers(events)
        report.offers_checked = len(expected)
        report.missing = sorted(set(expected) - set(stored))
        report.unexpected = sorted(set(stored) - set(expected))
        report.mismatched = sorted(
            offer_id
            for offer_id in set(expected) & set(stored)
            if expected[offer_id].state_key() != stored[offer_id].state_key()
        )
        if report.ok:
            logger.info("Verified %d offers against %d events", report.offers_checked, report.events_read)
        else:
            logger.warning(
                "Offer view differs from the log: %d missing, %d unexpected, %d mismatched",
                len(report.missing),
                len(report.unexpected),
                len(report.mismatched),
            )
        return report
