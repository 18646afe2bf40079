"""Create work item anchor and work item tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_item_anchors",
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("anchor_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("kind", "owner_id"),
    )

    op.create_table(
        "work_items",
        sa.Column("work_item_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("timing_type", sa.String(length=16), nullable=False),
        sa.Column("relative_minutes_before", sa.Integer(), nullable=True),
        sa.Column("absolute_send_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("channels", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("recipients_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("lifecycle_state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_status", sa.String(length=16), nullable=True),
        sa.Column("attempt_summary_json", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("modified_by", sa.String(length=128), nullable=True),
        sa.CheckConstraint(
            "(timing_type = 'relative' AND relative_minutes_before > 0 AND absolute_send_at IS NULL) "
            "OR (timing_type = 'absolute' AND absolute_send_at IS NOT NULL AND relative_minutes_before IS NULL)",
            name="ck_work_items_timing",
        ),
        sa.PrimaryKeyConstraint("work_item_id"),
    )
    op.create_index("ix_work_items_kind", "work_items", ["kind"], unique=False)
    op.create_index("ix_work_items_owner_id", "work_items", ["owner_id"], unique=False)
    op.create_index("ix_work_items_lifecycle_state", "work_items", ["lifecycle_state"], unique=False)
    op.create_index("ix_work_items_attempted_at", "work_items", ["attempted_at"], unique=False)
    op.create_index(
        "ix_work_items_claimable",
        "work_items",
        ["lifecycle_state", "claimed_at"],
        unique=False,
        postgresql_where=sa.text("attempted_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_work_items_claimable", table_name="work_items")
    op.drop_index("ix_work_items_attempted_at", table_name="work_items")
    op.drop_index("ix_work_items_lifecycle_state", table_name="work_items")
    op.drop_index("ix_work_items_owner_id", table_name="work_items")
    op.drop_index("ix_work_items_kind", table_name="work_items")
    op.drop_table("work_items")
    op.drop_table("work_item_anchors")
