"""Storage layer - Database schemas and repositories."""

from escrow_orderflow.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from escrow_orderflow.storage.models import (
    Base,
    EventModel,
    OfferModel,
    OfferStatus,
    ProcessingDiagnosticModel,
)
from escrow_orderflow.storage.repos import (
    EventLogEntryDTO,
    EventRepository,
    OfferRepository,
    OfferSnapshotDTO,
    ProcessingDiagnosticDTO,
    ProcessingDiagnosticRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "EventLogEntryDTO",
    "EventModel",
    "EventRepository",
    "OfferModel",
    "OfferRepository",
    "OfferSnapshotDTO",
    "OfferStatus",
    "ProcessingDiagnosticDTO",
    "ProcessingDiagnosticModel",
    "ProcessingDiagnosticRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
