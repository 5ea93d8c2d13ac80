"""add last_polled_at to task statuses

Revision ID: 5c9e1f7a3d24
Revises: 3a7e5c1d2b90
Create Date: 2026-10-18

Operational notes:
- the reconciler orders its batch by last_polled_at (never polled first), so
  rows whose poll changes nothing rotate to the back instead of pinning the
  head of every pass; updated_at keeps meaning "last status change"
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "5c9e1f7a3d24"
down_revision = "3a7e5c1d2b90"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "video_generation_task_statuses",
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_video_task_statuses_status_last_polled_at",
        "video_generation_task_statuses",
        ["status", "last_polled_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_video_task_statuses_status_last_polled_at", table_name="video_generation_task_statuses")
    op.drop_column("video_generation_task_statuses", "last_polled_at")
