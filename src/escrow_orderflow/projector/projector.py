"""Storage projector: events topic -> event log + derived views.

Every event is appended to the ``events`` log and applied to the derived
views in one transaction. Redelivered events hit the log's primary key and
leave the views unchanged, so the projector is safe under at-least-once
delivery.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from escrow_orderflow.bus.models import BusMessage
from escrow_orderflow.consumer.framework import MalformedMessageError
from escrow_orderflow.ingestor.models import NormalizedEvent
from escrow_orderflow.projector.state_machine import ApplyOutcome
from escrow_orderflow.projector.views import DerivedView, OfferSnapshotView
from escrow_orderflow.storage.repos import (
    EventRepository,
    ProcessingDiagnosticDTO,
    ProcessingDiagnosticRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_ORPHAN_MAX_ATTEMPTS = 3
DEFAULT_ORPHAN_RETRY_DELAY_SECONDS = 0.5

DIAGNOSTIC_STAGE = "projector"
DIAGNOSTIC_KIND_ORPHAN = "orphan_update"


class _OrphanDeferred(Exception):
    """Roll back an attempt whose offer snapshot does not exist yet."""


@dataclass
class ProjectorStats:
    events_logged: int = 0
    duplicates: int = 0
    orphans_recorded: int = 0
    outcomes: Counter[str] = field(default_factory=Counter)


class StorageProjector:
    """Consumes normalized events into the store.

    Example:
        ```python
        projector = StorageProjector(db.session_factory)
        outcome = await projector.apply(event)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        views: Sequence[DerivedView] | None = None,
        orphan_max_attempts: int = DEFAULT_ORPHAN_MAX_ATTEMPTS,
        orphan_retry_delay_seconds: float = DEFAULT_ORPHAN_RETRY_DELAY_SECONDS,
    ) -> None:
        if orphan_max_attempts < 1:
            raise ValueError("orphan_max_attempts must be >= 1")
        self._session_factory = session_factory
        self._views: list[DerivedView] = list(views) if views is not None else [OfferSnapshotView()]
        if not self._views:
            raise ValueError("at least one derived view is required")
        self._orphan_max_attempts = orphan_max_attempts
        self._orphan_retry_delay = orphan_retry_delay_seconds
        self._stats = ProjectorStats()

    @property
    def stats(self) -> ProjectorStats:
        return self._stats

    async def handle(self, message: BusMessage) -> None:
        """ConsumerFramework handler for the events topic."""
        try:
            event = NormalizedEvent.from_json(message.payload)
        except ValueError as e:
            raise MalformedMessageError(f"undecodable event {message.message_id}: {e}") from e
        await self.apply(event)

    async def apply(self, event: NormalizedEvent) -> ApplyOutcome:
        """Log ``event`` and apply it to every view.

        A fill/cancel for an unknown offer is retried up to
        ``orphan_max_attempts`` times; after that the event stays in the log
        and an orphan diagnostic is recorded.

        Returns:
            The outcome reported by the first view.
        """
        attempt = 1
        while True:
            try:
                outcome = await self._apply_once(event, final=attempt >= self._orphan_max_attempts)
            except _OrphanDeferred:
                logger.debug(
                    "Offer %s unknown for %s (attempt %d/%d)",
                    event.offer_id,
                    event.event_id,
                    attempt,
                    self._orphan_max_attempts,
                )
                attempt += 1
                await asyncio.sleep(self._orphan_retry_delay)
                continue
            self._stats.outcomes[outcome.value] += 1
            return outcome

    async def _apply_once(self, event: NormalizedEvent, *, final: bool) -> ApplyOutcome:
        async with self._session_factory() as session, session.begin():
            inserted = await EventRepository(session).insert_if_absent(event)
            outcomes = [await view.apply(session, event) for view in self._views]

            if ApplyOutcome.ORPHAN in outcomes and inserted:
                if not final:
                    raise _OrphanDeferred(event.event_id)
                await self._record_orphan(session, event)

            if inserted:
                self._stats.events_logged += 1
            else:
                self._stats.duplicates += 1
                logger.debug("Event %s already logged", event.event_id)
            return outcomes[0]

    async def _record_orphan(self, session: AsyncSession, event: NormalizedEvent) -> None:
        logger.warning(
            "Orphan %s %s: offer %s has no snapshot after %d attempts",
            event.event_type.value,
            event.event_id,
            event.offer_id,
            self._orphan_max_attempts,
        )
        await ProcessingDiagnosticRepository(session).insert(
            ProcessingDiagnosticDTO(
                event_id=event.event_id,
                offer_id=event.offer_id,
                stage=DIAGNOSTIC_STAGE,
                kind=DIAGNOSTIC_KIND_ORPHAN,
                message=(
                    f"{event.event_type.value} at slot {event.slot} for unknown offer; "
                    "kept in the event log, applied when the offer is created"
                ),
            )
        )
        self._stats.orphans_recorded += 1
