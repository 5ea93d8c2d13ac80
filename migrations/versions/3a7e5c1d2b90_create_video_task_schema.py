"""create video task schema

Revision ID: 3a7e5c1d2b90
Revises:
Create Date: 2026-10-18 10:00:00

Purpose:
- task definitions (immutable request intent) and task statuses (execution record)
- user credit balances and favorites
- use_credits(task_id, amount): atomic deduction from the task owner's balance

Operational notes:
- r2_status is nullable on purpose; rows created before migration tracking
  existed are treated as pending by the migrator
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3a7e5c1d2b90"
down_revision = None
branch_labels = None
depends_on = None


USE_CREDITS_FUNCTION = """
create or replace function public.use_credits(task_id integer, amount integer)
returns void
language plpgsql
as $$
declare
    owner text;
begin
    select d.user_id into owner
    from public.video_generation_task_definitions d
    where d.id = task_id;

    if owner is null then
        raise exception 'task % not found', task_id;
    end if;

    update public.user_credits
    set credits_balance = credits_balance - amount,
        total_credits_used = total_credits_used + amount,
        updated_at = now()
    where user_id = owner;

    if not found then
        raise exception 'no credit row for user %', owner;
    end if;
end;
$$;
"""


def upgrade() -> None:
    op.create_table(
        "video_generation_task_definitions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("task_type", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False, server_default="kling"),
        sa.Column("high_quality", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("negative_prompt", sa.Text(), nullable=True),
        sa.Column("aspect_ratio", sa.Text(), nullable=True),
        sa.Column("cfg", sa.Float(), nullable=True),
        sa.Column("camera_type", sa.Text(), nullable=True),
        sa.Column("camera_value", sa.Text(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("start_img_path", sa.Text(), nullable=True),
        sa.Column("end_img_path", sa.Text(), nullable=True),
        sa.Column("additional_params", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("task_type in ('t2v', 'i2v')", name="ck_video_task_definition_task_type"),
        sa.CheckConstraint("cfg is null or (cfg >= 0 and cfg <= 1)", name="ck_video_task_definition_cfg"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_video_generation_task_definitions_user_id"),
        "video_generation_task_definitions",
        ["user_id"],
    )

    op.create_table(
        "video_generation_task_statuses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("external_task_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("result_url", sa.Text(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("r2_status", sa.Text(), nullable=True, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status in ('pending', 'queued', 'processing', 'completed', 'failed')",
            name="ck_video_task_status_status",
        ),
        sa.CheckConstraint(
            "r2_status is null or r2_status in ('pending', 'uploading', 'completed', 'failed')",
            name="ck_video_task_status_r2_status",
        ),
        sa.ForeignKeyConstraint(["task_id"], ["video_generation_task_definitions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_video_generation_task_statuses_task_id"),
        "video_generation_task_statuses",
        ["task_id"],
    )
    op.create_index(
        op.f("ix_video_generation_task_statuses_external_task_id"),
        "video_generation_task_statuses",
        ["external_task_id"],
    )
    # reconciler and migrator both scan by state, oldest first
    op.create_index(
        "ix_video_task_statuses_status_updated_at",
        "video_generation_task_statuses",
        ["status", "updated_at"],
    )

    op.create_table(
        "user_credits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("credits_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_credits_purchased", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("level", sa.Text(), nullable=False, server_default="free"),
        sa.Column("last_purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "user_favorites",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["task_id"], ["video_generation_task_definitions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "task_id", name="uq_user_favorite_user_task"),
    )
    op.create_index(op.f("ix_user_favorites_user_id"), "user_favorites", ["user_id"])

    op.execute(USE_CREDITS_FUNCTION)


def downgrade() -> None:
    op.execute("drop function if exists public.use_credits(integer, integer)")
    op.drop_index(op.f("ix_user_favorites_user_id"), table_name="user_favorites")
    op.drop_table("user_favorites")
    op.drop_table("user_credits")
    op.drop_index("ix_video_task_statuses_status_updated_at", table_name="video_generation_task_statuses")
    op.drop_index(
        op.f("ix_video_generation_task_statuses_external_task_id"),
        table_name="video_generation_task_statuses",
    )
    op.drop_index(op.f("ix_video_generation_task_statuses_task_id"), table_name="video_generation_task_statuses")
    op.drop_table("video_generation_task_statuses")
    op.drop_index(
        op.f("ix_video_generation_task_definitions_user_id"),
        table_name="video_generation_task_definitions",
    )
    op.drop_table("video_generation_task_definitions")
