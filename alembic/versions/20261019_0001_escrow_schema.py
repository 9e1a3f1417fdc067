"""Escrow event log, offer snapshots and processing diagnostics.

Revision ID: 001_escrow_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_escrow_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Append-only event log; event_id is the idempotency key.
    op.create_table(
        "events",
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("signature", sa.Text(), nullable=False),
        sa.Column("slot", sa.BigInteger(), nullable=False),
        sa.Column("offer_id", sa.Text(), nullable=False),
        sa.Column(
            "payload_json",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_events_offer_id", "events", ["offer_id"])
    op.create_index("idx_events_slot", "events", ["slot"])

    # Offer snapshots (derived view, rebuildable from events)
    op.create_table(
        "offers",
        sa.Column("offer_id", sa.Text(), nullable=False),
        sa.Column("status", sa.String(12), nullable=False),
        sa.Column("maker", sa.Text(), nullable=False),
        sa.Column("taker", sa.Text(), nullable=True),
        sa.Column("mint_a", sa.Text(), nullable=False),
        sa.Column("mint_b", sa.Text(), nullable=False),
        sa.Column("amount_a", sa.Numeric(20, 0), nullable=False),
        sa.Column("amount_b", sa.Numeric(20, 0), nullable=False),
        sa.Column("created_slot", sa.BigInteger(), nullable=False),
        sa.Column("updated_slot", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("offer_id"),
    )
    op.create_index("idx_offers_maker", "offers", ["maker"])
    op.create_index("idx_offers_updated_slot", "offers", ["updated_slot"])

    op.create_table(
        "processing_diagnostics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("offer_id", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(40), nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_processing_diagnostics_event", "processing_diagnostics", ["event_id"])
    op.create_index("idx_processing_diagnostics_offer", "processing_diagnostics", ["offer_id"])


def downgrade() -> None:
    op.drop_index("idx_processing_diagnostics_offer", table_name="processing_diagnostics")
    op.drop_index("idx_processing_diagnostics_event", table_name="processing_diagnostics")
    op.drop_table("processing_diagnostics")
    op.drop_index("idx_offers_updated_slot", table_name="offers")
    op.drop_index("idx_offers_maker", table_name="offers")
    op.drop_table("offers")
    op.drop_index("idx_events_slot", table_name="events")
    op.drop_index("idx_events_offer_id", table_name="events")
    op.drop_table("events")
