"""Loyalty programs, memberships, earn events, and redemptions.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


program_type_enum = sa.Enum("stamps", "points", name="loyalty_program_type")
earn_mode_enum = sa.Enum("per_visit", "per_transaction", name="loyalty_earn_mode")
program_status_enum = sa.Enum(
    "draft", "submitted", "active", "paused", "ended", name="loyalty_program_status"
)
membership_status_enum = sa.Enum("active", "inactive", name="loyalty_membership_status")
earn_method_enum = sa.Enum("counter_qr", name="loyalty_earn_method")
redemption_status_enum = sa.Enum("consumed", "expired_display", name="loyalty_redemption_status")


def upgrade() -> None:
    op.create_table(
        "loyalty_programs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("public_id", sa.String(length=32), nullable=False),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("business_name", sa.String(), nullable=True),
        sa.Column("program_name", sa.String(), nullable=True),
        sa.Column("program_type", program_type_enum, nullable=False),
        sa.Column("reward_threshold", sa.Integer(), nullable=False),
        sa.Column("reward_description", sa.String(), nullable=False),
        sa.Column("stamp_label", sa.String(), nullable=False),
        sa.Column("stamp_icon", sa.String(), nullable=False),
        sa.Column("earn_mode", earn_mode_enum, nullable=False),
        sa.Column("earn_increment", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_earns_per_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("allow_uncapped_earns", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("min_gap_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timezone", sa.String(), nullable=False),
        sa.Column("status", program_status_enum, nullable=False, server_default="draft"),
        sa.Column("pass_template_id", sa.String(), nullable=True),
        sa.Column("pass_api_key", sa.String(), nullable=True),
        sa.Column("pass_type_id", sa.String(), nullable=True),
        sa.Column("counter_qr_token", sa.String(), nullable=False),
        sa.Column("previous_counter_qr_token", sa.String(), nullable=True),
        sa.Column("token_rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("reward_threshold > 0", name="ck_loyalty_programs_reward_threshold_positive"),
        sa.CheckConstraint("earn_increment > 0", name="ck_loyalty_programs_earn_increment_positive"),
        sa.CheckConstraint(
            "max_earns_per_day >= 0", name="ck_loyalty_programs_max_earns_per_day_non_negative"
        ),
        sa.CheckConstraint("min_gap_minutes >= 0", name="ck_loyalty_programs_min_gap_minutes_non_negative"),
    )
    op.create_index("ix_loyalty_programs_public_id", "loyalty_programs", ["public_id"], unique=True)
    op.create_index("ix_loyalty_programs_business_id", "loyalty_programs", ["business_id"])

    op.create_table(
        "loyalty_memberships",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "program_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("customer_pass_id", sa.String(), nullable=False),
        sa.Column("pass_serial", sa.String(), nullable=True),
        sa.Column("stamps_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("earned_today_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("earned_today_date", sa.String(length=10), nullable=True),
        sa.Column("last_earned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", membership_status_enum, nullable=False, server_default="active"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("program_id", "customer_pass_id", name="uq_loyalty_memberships_program_pass"),
        sa.CheckConstraint("stamps_balance >= 0", name="ck_loyalty_memberships_stamps_balance_non_negative"),
        sa.CheckConstraint("points_balance >= 0", name="ck_loyalty_memberships_points_balance_non_negative"),
    )
    op.create_index("ix_loyalty_memberships_program_id", "loyalty_memberships", ["program_id"])
    op.create_index("ix_loyalty_memberships_customer_pass_id", "loyalty_memberships", ["customer_pass_id"])

    op.create_table(
        "loyalty_earn_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "membership_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_memberships.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "program_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("customer_pass_id", sa.String(), nullable=False),
        sa.Column("method", earn_method_enum, nullable=False),
        sa.Column("ip_hash", sa.String(length=64), nullable=True),
        sa.Column("valid", sa.Boolean(), nullable=False),
        sa.Column("reason_code", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_loyalty_earn_events_membership_id", "loyalty_earn_events", ["membership_id"])
    op.create_index("ix_loyalty_earn_events_business_id", "loyalty_earn_events", ["business_id"])
    op.create_index(
        "ix_loyalty_earn_events_pass_earned_at", "loyalty_earn_events", ["customer_pass_id", "earned_at"]
    )
    op.create_index("ix_loyalty_earn_events_ip_earned_at", "loyalty_earn_events", ["ip_hash", "earned_at"])

    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "membership_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_memberships.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "program_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("business_id", sa.String(), nullable=False),
        sa.Column("customer_pass_id", sa.String(), nullable=False),
        sa.Column("reward_description", sa.Text(), nullable=False),
        sa.Column("status", redemption_status_enum, nullable=False, server_default="consumed"),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("display_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stamps_deducted", sa.Integer(), nullable=False),
        sa.Column("flagged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("flagged_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_loyalty_redemptions_membership_id", "loyalty_redemptions", ["membership_id"])
    op.create_index("ix_loyalty_redemptions_business_id", "loyalty_redemptions", ["business_id"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_redemptions_business_id", table_name="loyalty_redemptions")
    op.drop_index("ix_loyalty_redemptions_membership_id", table_name="loyalty_redemptions")
    op.drop_table("loyalty_redemptions")

    op.drop_index("ix_loyalty_earn_events_ip_earned_at", table_name="loyalty_earn_events")
    op.drop_index("ix_loyalty_earn_events_pass_earned_at", table_name="loyalty_earn_events")
    op.drop_index("ix_loyalty_earn_events_business_id", table_name="loyalty_earn_events")
    op.drop_index("ix_loyalty_earn_events_membership_id", table_name="loyalty_earn_events")
    op.drop_table("loyalty_earn_events")

    op.drop_index("ix_loyalty_memberships_customer_pass_id", table_name="loyalty_memberships")
    op.drop_index("ix_loyalty_memberships_program_id", table_name="loyalty_memberships")
    op.drop_table("loyalty_memberships")

    op.drop_index("ix_loyalty_programs_business_id", table_name="loyalty_programs")
    op.drop_index("ix_loyalty_programs_public_id", table_name="loyalty_programs")
    op.drop_table("loyalty_programs")

    bind = op.get_bind()
    for enum in (
        redemption_status_enum,
        earn_method_enum,
        membership_status_enum,
        program_status_enum,
        earn_mode_enum,
        program_type_enum,
    ):
        enum.drop(bind, checkfirst=True)
