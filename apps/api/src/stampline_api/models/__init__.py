"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyEarnEvent,
    LoyaltyEarnMethod,
    LoyaltyEarnMode,
    LoyaltyMembership,
    LoyaltyMembershipStatus,
    LoyaltyProgram,
    LoyaltyProgramStatus,
    LoyaltyProgramType,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
)
