"""Per-program loyalty dashboard metrics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stampline_api.core.settings import settings
from stampline_api.models.loyalty import (
    LoyaltyEarnEvent,
    LoyaltyMembership,
    LoyaltyMembershipStatus,
    LoyaltyProgramType,
    LoyaltyRedemption,
)
from stampline_api.services.loyalty.constraints import ensure_aware, start_of_local_month, utcnow
from stampline_api.services.loyalty.errors import ProgramNotFoundError
from stampline_api.services.loyalty.programs import ProgramRegistry


@dataclass(slots=True)
class LoyaltyProgramSummary:
    """Headline numbers for a program's stats dashboard."""

    program_id: UUID
    computed_at: datetime
    month_starts_at: datetime
    active_members: int
    visits_this_month: int
    rewards_redeemed_this_month: int
    estimated_value_given_away: float
    avg_visits_per_member: float
    members_near_reward: int
    flagged_redemptions: int


class LoyaltyAnalyticsService:
    """Compute dashboard metrics; months follow the program's timezone."""

    # meta: service: loyalty-analytics

    def __init__(self, db: AsyncSession, *, near_reward_window: int | None = None) -> None:
        self._db = db
        self._programs = ProgramRegistry(db)
        self._near_reward_window = near_reward_window or settings.loyalty_near_reward_window

    async def summarize(self, program_id: UUID, *, now: datetime | None = None) -> LoyaltyProgramSummary:
        now = ensure_aware(now or utcnow())
        program = await self._programs.get_program(program_id)
        if program is None:
            raise ProgramNotFoundError(program_id)

        month_start = start_of_local_month(now, program.timezone)

        active_members = await self._scalar(
            select(func.count(LoyaltyMembership.id)).where(
                LoyaltyMembership.program_id == program_id,
                LoyaltyMembership.status == LoyaltyMembershipStatus.ACTIVE,
            )
        )
        visits = await self._scalar(
            select(func.count(LoyaltyEarnEvent.id)).where(
                LoyaltyEarnEvent.program_id == program_id,
                LoyaltyEarnEvent.valid.is_(True),
                LoyaltyEarnEvent.earned_at >= month_start,
            )
        )
        redeemed = await self._scalar(
            select(func.count(LoyaltyRedemption.id)).where(
                LoyaltyRedemption.program_id == program_id,
                LoyaltyRedemption.consumed_at >= month_start,
            )
        )
        flagged = await self._scalar(
            select(func.count(LoyaltyRedemption.id)).where(
                LoyaltyRedemption.program_id == program_id,
                LoyaltyRedemption.flagged_at.is_not(None),
            )
        )

        balance_column = (
            LoyaltyMembership.points_balance
            if program.program_type == LoyaltyProgramType.POINTS
            else LoyaltyMembership.stamps_balance
        )
        threshold = int(program.reward_threshold)
        near_reward = await self._scalar(
            select(func.count(LoyaltyMembership.id)).where(
                LoyaltyMembership.program_id == program_id,
                LoyaltyMembership.status == LoyaltyMembershipStatus.ACTIVE,
                balance_column >= threshold - self._near_reward_window,
                balance_column <= threshold - 1,
            )
        )

        avg_visits = round(visits / active_members, 1) if active_members else 0.0
        return LoyaltyProgramSummary(
            program_id=program_id,
            computed_at=now,
            month_starts_at=month_start,
            active_members=active_members,
            visits_this_month=visits,
            rewards_redeemed_this_month=redeemed,
            estimated_value_given_away=round(redeemed * settings.loyalty_avg_reward_value, 2),
            avg_visits_per_member=avg_visits,
            members_near_reward=near_reward,
            flagged_redemptions=flagged,
        )

    async def _scalar(self, stmt) -> int:
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)


__all__ = ["LoyaltyAnalyticsService", "LoyaltyProgramSummary"]
