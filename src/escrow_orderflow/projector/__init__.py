"""Storage projector - event log, offer snapshots and replay."""

from escrow_orderflow.projector.projector import ProjectorStats, StorageProjector
from escrow_orderflow.projector.replay import ReplayReport, ReplayRunner, VerifyReport
from escrow_orderflow.projector.state_machine import (
    ApplyOutcome,
    project_offers,
    snapshot_from_create,
    transition,
)
from escrow_orderflow.projector.views import DerivedView, OfferSnapshotView

__all__ = [
    "ApplyOutcome",
    "DerivedView",
    "OfferSnapshotView",
    "ProjectorStats",
    "ReplayReport",
    "ReplayRunner",
    "StorageProjector",
    "VerifyReport",
    "project_offers",
    "snapshot_from_create",
    "transition",
]
