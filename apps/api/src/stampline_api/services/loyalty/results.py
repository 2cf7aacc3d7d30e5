"""Typed outcomes returned by the earn and redemption engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID

from stampline_api.models.loyalty import LoyaltyProgramStatus, LoyaltyRedemptionStatus
from stampline_api.services.loyalty.errors import LoyaltyErrorCode
from stampline_api.services.loyalty.pass_sync import PassSyncRequest


@dataclass
class EarnResult:
    success: bool
    new_balance: int = 0
    threshold: int = 0
    reward_unlocked: bool = False
    proximity_message: Optional[str] = None
    next_eligible_at: Optional[datetime] = None
    error: Optional[LoyaltyErrorCode] = None
    reason: Optional[str] = None
    earned_today_count: int = 0
    program_status: Optional[LoyaltyProgramStatus] = None
    membership_id: Optional[UUID] = None
    pass_fields: dict[str, str] = field(default_factory=dict)
    pass_sync: Optional[PassSyncRequest] = None


@dataclass
class ConsumeResult:
    success: bool
    redemption_id: Optional[UUID] = None
    reward_description: Optional[str] = None
    consumed_at: Optional[datetime] = None
    display_expires_at: Optional[datetime] = None
    new_balance: int = 0
    threshold: int = 0
    replayed: bool = False
    error: Optional[LoyaltyErrorCode] = None
    reason: Optional[str] = None
    program_status: Optional[LoyaltyProgramStatus] = None
    pass_sync: Optional[PassSyncRequest] = None


@dataclass
class RedemptionStatus:
    """Staff verification view of a consumed reward."""

    redemption_id: UUID
    membership_id: UUID
    reward_description: str
    status: LoyaltyRedemptionStatus
    consumed_at: datetime
    display_expires_at: datetime
    time_remaining_ms: int
    is_active: bool
    stamps_deducted: int
    flagged_at: Optional[datetime] = None
    flagged_reason: Optional[str] = None


__all__ = ["ConsumeResult", "EarnResult", "RedemptionStatus"]
