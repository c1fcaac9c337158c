"""Create roster, promotion queue, application and audit tables.

Revision ID: 0001_create_roster_tables
Revises:
Create Date: 2026-01-01 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_create_roster_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "clan_list_members",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("discord_id", sa.String(length=32), nullable=True),
        sa.Column("discord_name", sa.Text(), nullable=False),
        sa.Column("ign", sa.Text(), nullable=False),
        sa.Column("uid", sa.String(length=64), nullable=True),
        sa.Column("join_date", sa.Date(), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="active"
        ),
        sa.Column(
            "has_420_tag", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "rank_current",
            sa.String(length=32),
            nullable=False,
            server_default="Private",
        ),
        sa.Column("rank_next", sa.String(length=32), nullable=True),
        sa.Column("frozen_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("counting_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "promote_eligible", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("promote_reason", sa.Text(), nullable=True),
        sa.Column(
            "needs_resolution", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "resolution_status",
            sa.String(length=16),
            nullable=False,
            server_default="unresolved",
        ),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=32), nullable=True),
        sa.Column(
            "source", sa.String(length=16), nullable=False, server_default="manual"
        ),
        *_timestamps(),
        sa.UniqueConstraint("uid", name="uq_clan_list_members_uid"),
        sa.UniqueConstraint("discord_id", name="uq_clan_list_members_discord_id"),
        sa.CheckConstraint(
            "status IN ('active', 'inactive')", name="ck_clan_list_members_status"
        ),
        sa.CheckConstraint(
            "resolution_status IN ('unresolved', 'resolved_auto', 'resolved_manual')",
            name="ck_clan_list_members_resolution_status",
        ),
    )
    op.create_index(
        "ix_clan_list_members_join_date", "clan_list_members", ["join_date"]
    )
    op.create_index(
        "ix_clan_list_members_status_tag",
        "clan_list_members",
        ["status", "has_420_tag"],
    )

    op.create_table(
        "promotion_queue",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "member_id",
            sa.BigInteger(),
            sa.ForeignKey("clan_list_members.id"),
            nullable=False,
        ),
        sa.Column("from_rank", sa.String(length=32), nullable=False),
        sa.Column("to_rank", sa.String(length=32), nullable=False),
        sa.Column("tenure_days", sa.Integer(), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="queued"
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("confirmed_by", sa.String(length=32), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by", sa.String(length=32), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('queued', 'confirmed', 'processed', 'failed', 'removed')",
            name="ck_promotion_queue_status",
        ),
    )
    op.create_index(
        "uq_promotion_queue_member_open",
        "promotion_queue",
        ["member_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'confirmed', 'failed')"),
    )
    op.create_index("ix_promotion_queue_status", "promotion_queue", ["status"])

    op.create_table(
        "applications",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("discord_id", sa.String(length=32), nullable=False),
        sa.Column("discord_name", sa.Text(), nullable=False),
        sa.Column("ign", sa.Text(), nullable=True),
        sa.Column("uid", sa.String(length=64), nullable=True),
        sa.Column(
            "answers",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("log_thread_id", sa.String(length=32), nullable=True),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="pending"
        ),
        sa.Column("reviewer_id", sa.String(length=32), nullable=True),
        sa.Column("reviewer_note", sa.Text(), nullable=True),
        sa.Column("deny_reason", sa.Text(), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_by", sa.String(length=32), nullable=True),
        sa.Column("denied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("denied_by", sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')",
            name="ck_applications_status",
        ),
    )
    op.create_index(
        "ix_applications_status_created", "applications", ["status", "created_at"]
    )
    op.create_index("ix_applications_discord_id", "applications", ["discord_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=32), nullable=True),
        sa.Column("target_id", sa.String(length=64), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_audit_log_action_created", "audit_log", ["action", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_audit_log_action_created", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_applications_discord_id", table_name="applications")
    op.drop_index("ix_applications_status_created", table_name="applications")
    op.drop_table("applications")
    op.drop_index("ix_promotion_queue_status", table_name="promotion_queue")
    op.drop_index("uq_promotion_queue_member_open", table_name="promotion_queue")
    op.drop_table("promotion_queue")
    op.drop_index("ix_clan_list_members_status_tag", table_name="clan_list_members")
    op.drop_index("ix_clan_list_members_join_date", table_name="clan_list_members")
    op.drop_table("clan_list_members")
