"""Loyalty programs, memberships, and the earn/redemption audit trail."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from stampline_api.db.base import Base


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class LoyaltyProgramType(str, Enum):
    """Unit of credit a program hands out."""

    STAMPS = "stamps"
    POINTS = "points"


class LoyaltyEarnMode(str, Enum):
    """What a single counter scan represents."""

    PER_VISIT = "per_visit"
    PER_TRANSACTION = "per_transaction"


class LoyaltyProgramStatus(str, Enum):
    """Lifecycle statuses for loyalty programs."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class LoyaltyMembershipStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class LoyaltyEarnMethod(str, Enum):
    COUNTER_QR = "counter_qr"


class LoyaltyRedemptionStatus(str, Enum):
    """Display lifecycle of a consumed reward."""

    CONSUMED = "consumed"
    EXPIRED_DISPLAY = "expired_display"


class LoyaltyProgram(Base):
    """Per-business loyalty ruleset, branding references, and counter QR tokens."""

    __tablename__ = "loyalty_programs"
    __table_args__ = (
        CheckConstraint("reward_threshold > 0", name="reward_threshold_positive"),
        CheckConstraint("earn_increment > 0", name="earn_increment_positive"),
        CheckConstraint("max_earns_per_day >= 0", name="max_earns_per_day_non_negative"),
        CheckConstraint("min_gap_minutes >= 0", name="min_gap_minutes_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    public_id = Column(String(32), nullable=False, unique=True, index=True)
    business_id = Column(String, nullable=False, index=True)
    business_name = Column(String, nullable=True)

    program_name = Column(String, nullable=True)
    program_type = Column(
        SqlEnum(LoyaltyProgramType, name="loyalty_program_type", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyProgramType.STAMPS,
    )
    reward_threshold = Column(Integer, nullable=False)
    reward_description = Column(String, nullable=False)
    stamp_label = Column(String, nullable=False, default="Stamps")
    stamp_icon = Column(String, nullable=False, default="stamp")
    earn_mode = Column(
        SqlEnum(LoyaltyEarnMode, name="loyalty_earn_mode", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyEarnMode.PER_VISIT,
    )
    earn_increment = Column(Integer, nullable=False, default=1, server_default="1")
    max_earns_per_day = Column(Integer, nullable=False, default=1, server_default="1")
    allow_uncapped_earns = Column(Boolean, nullable=False, default=False, server_default=false())
    min_gap_minutes = Column(Integer, nullable=False, default=0, server_default="0")
    timezone = Column(String, nullable=False, default="Europe/London")

    status = Column(
        SqlEnum(LoyaltyProgramStatus, name="loyalty_program_status", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyProgramStatus.DRAFT,
        server_default=LoyaltyProgramStatus.DRAFT.value,
    )

    pass_template_id = Column(String, nullable=True)
    pass_api_key = Column(String, nullable=True)
    pass_type_id = Column(String, nullable=True)

    counter_qr_token = Column(String, nullable=False)
    previous_counter_qr_token = Column(String, nullable=True)
    token_rotated_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    memberships = relationship("LoyaltyMembership", back_populates="program")

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    def __repr__(self) -> str:
        return f"<LoyaltyProgram public_id={self.public_id!r} status={self.status}>"


class LoyaltyMembership(Base):
    """Balance and daily-counter state between one program and one customer pass."""

    __tablename__ = "loyalty_memberships"
    __table_args__ = (
        UniqueConstraint("program_id", "customer_pass_id", name="uq_loyalty_memberships_program_pass"),
        CheckConstraint("stamps_balance >= 0", name="stamps_balance_non_negative"),
        CheckConstraint("points_balance >= 0", name="points_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_pass_id = Column(String, nullable=False, index=True)
    pass_serial = Column(String, nullable=True)

    stamps_balance = Column(Integer, nullable=False, default=0, server_default="0")
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    total_earned = Column(Integer, nullable=False, default=0, server_default="0")
    total_redeemed = Column(Integer, nullable=False, default=0, server_default="0")

    earned_today_count = Column(Integer, nullable=False, default=0, server_default="0")
    earned_today_date = Column(String(10), nullable=True)
    last_earned_at = Column(DateTime(timezone=True), nullable=True)
    last_redeemed_at = Column(DateTime(timezone=True), nullable=True)
    last_active_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        SqlEnum(LoyaltyMembershipStatus, name="loyalty_membership_status", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyMembershipStatus.ACTIVE,
        server_default=LoyaltyMembershipStatus.ACTIVE.value,
    )

    version = Column(Integer, nullable=False)
    joined_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    program = relationship("LoyaltyProgram", back_populates="memberships")
    earn_events = relationship("LoyaltyEarnEvent", back_populates="membership")
    redemptions = relationship("LoyaltyRedemption", back_populates="membership")

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}


class LoyaltyEarnEvent(Base):
    """Append-only audit row for every scan attempt, valid or not."""

    __tablename__ = "loyalty_earn_events"
    __table_args__ = (
        Index("ix_loyalty_earn_events_pass_earned_at", "customer_pass_id", "earned_at"),
        Index("ix_loyalty_earn_events_ip_earned_at", "ip_hash", "earned_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    membership_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_memberships.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=False,
    )
    business_id = Column(String, nullable=False, index=True)
    customer_pass_id = Column(String, nullable=False)
    method = Column(
        SqlEnum(LoyaltyEarnMethod, name="loyalty_earn_method", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyEarnMethod.COUNTER_QR,
    )
    ip_hash = Column(String(64), nullable=True)
    valid = Column(Boolean, nullable=False)
    reason_code = Column(String, nullable=True)
    amount = Column(Integer, nullable=False, default=0, server_default="0")
    earned_at = Column(DateTime(timezone=True), nullable=False)

    membership = relationship("LoyaltyMembership", back_populates="earn_events")


class LoyaltyRedemption(Base):
    """Consumed reward shown on the staff verification screen."""

    __tablename__ = "loyalty_redemptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    membership_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_memberships.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=False,
    )
    business_id = Column(String, nullable=False, index=True)
    customer_pass_id = Column(String, nullable=False)
    reward_description = Column(Text, nullable=False)
    status = Column(
        SqlEnum(LoyaltyRedemptionStatus, name="loyalty_redemption_status", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyRedemptionStatus.CONSUMED,
        server_default=LoyaltyRedemptionStatus.CONSUMED.value,
    )
    consumed_at = Column(DateTime(timezone=True), nullable=False)
    display_expires_at = Column(DateTime(timezone=True), nullable=False)
    stamps_deducted = Column(Integer, nullable=False)
    flagged_at = Column(DateTime(timezone=True), nullable=True)
    flagged_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    membership = relationship("LoyaltyMembership", back_populates="redemptions")

    __mapper_args__ = {"eager_defaults": True}
