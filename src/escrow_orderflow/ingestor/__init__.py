"""Data ingestion layer - Program log streaming and event normalization."""

from escrow_orderflow.ingestor.log_source import SolanaLogStreamHandler
from escrow_orderflow.ingestor.models import (
    EventType,
    NormalizedEvent,
    OnchainLogPayload,
    RawLogRecord,
    make_event_id,
)
from escrow_orderflow.ingestor.normalizer import (
    EventNormalizer,
    NormalizationError,
    NormalizerStats,
    NotAnEventLine,
    normalize_record,
)

__all__ = [
    "EventNormalizer",
    "EventType",
    "NormalizationError",
    "NormalizedEvent",
    "NormalizerStats",
    "NotAnEventLine",
    "OnchainLogPayload",
    "RawLogRecord",
    "SolanaLogStreamHandler",
    "make_event_id",
    "normalize_record",
]
