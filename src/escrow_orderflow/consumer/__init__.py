"""Consumer framework - partition workers with effect-then-ack semantics."""

from escrow_orderflow.consumer.framework import (
    ConsumerError,
    ConsumerGroupRunner,
    ConsumerStats,
    MalformedMessageError,
    MessageHandler,
    PartitionWorker,
    consumer_name,
)

__all__ = [
    "ConsumerError",
    "ConsumerGroupRunner",
    "ConsumerStats",
    "MalformedMessageError",
    "MessageHandler",
    "PartitionWorker",
    "consumer_name",
]
