"""vocal processing state and review queue

Revision ID: 0001_vocal_processing
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_vocal_processing"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Voice memos carry their own processing ledger for the recovery sweeper.
    op.create_table(
        "vocals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("property_id", sa.String(), nullable=True),
        sa.Column("file_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("transcript", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("vocal_type", sa.String(), nullable=True),
        sa.Column("insights_json", sa.JSON(), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("processing_step", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_vocals_org_id", "vocals", ["org_id"], unique=False)
    op.create_index("ix_vocals_status_updated_at", "vocals", ["status", "updated_at"], unique=False)

    # Operator triage items opened by failed processing.
    op.create_table(
        "review_queue_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("item_type", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("resolution", sa.String(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_review_queue_items_org_id", "review_queue_items", ["org_id"], unique=False)
    op.create_index(
        "ix_review_queue_items_open_lookup",
        "review_queue_items",
        ["org_id", "item_type", "item_id", "reason", "status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_review_queue_items_open_lookup", table_name="review_queue_items")
    op.drop_index("ix_review_queue_items_org_id", table_name="review_queue_items")
    op.drop_table("review_queue_items")

    op.drop_index("ix_vocals_status_updated_at", table_name="vocals")
    op.drop_index("ix_vocals_org_id", table_name="vocals")
    op.drop_table("vocals")
