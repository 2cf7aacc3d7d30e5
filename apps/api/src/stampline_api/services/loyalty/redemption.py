"""Consume-on-create reward redemption and the staff verification window."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from stampline_api.core.settings import settings
from stampline_api.models.loyalty import (
    LoyaltyMembership,
    LoyaltyProgram,
    LoyaltyProgramStatus,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
)
from stampline_api.observability.loyalty import get_loyalty_store
from stampline_api.services.loyalty.constraints import ensure_aware, utcnow
from stampline_api.services.loyalty.errors import LoyaltyErrorCode
from stampline_api.services.loyalty.memberships import MembershipStore, adjust_balance, authoritative_balance
from stampline_api.services.loyalty.pass_fields import get_redeemed_pass_field_values
from stampline_api.services.loyalty.pass_sync import build_pass_sync_request
from stampline_api.services.loyalty.results import ConsumeResult, RedemptionStatus


def display_window() -> timedelta:
    return timedelta(minutes=settings.loyalty_redemption_display_minutes)


def replay_window() -> timedelta:
    return timedelta(minutes=settings.loyalty_redemption_replay_window_minutes)


def time_remaining_ms(display_expires_at: datetime, now: datetime) -> int:
    remaining = ensure_aware(display_expires_at) - ensure_aware(now)
    return max(0, int(remaining.total_seconds() * 1000))


class RedemptionEngine:
    """Deducts rewards atomically per membership and reports display status."""

    def __init__(self, session: AsyncSession, *, max_attempts: int | None = None) -> None:
        self._db = session
        self._memberships = MembershipStore(session)
        self._max_attempts = max_attempts or settings.loyalty_mutation_max_attempts
        self._store = get_loyalty_store()

    async def consume_redemption(self, membership_id: UUID, *, now: datetime | None = None) -> ConsumeResult:
        now = ensure_aware(now or utcnow())

        for attempt in range(1, self._max_attempts + 1):
            membership = await self._memberships.lock_for_update(membership_id)
            if membership is None:
                await self._db.commit()
                return self._finish(
                    ConsumeResult(
                        success=False,
                        error=LoyaltyErrorCode.MEMBERSHIP_NOT_FOUND,
                        reason="Membership not found.",
                    )
                )

            program = await self._load_program(membership.program_id)
            status = LoyaltyProgramStatus(program.status)
            threshold = int(program.reward_threshold)
            balance = authoritative_balance(program, membership)

            if status != LoyaltyProgramStatus.ACTIVE:
                await self._db.commit()
                return self._finish(
                    ConsumeResult(
                        success=False,
                        new_balance=balance,
                        threshold=threshold,
                        error=LoyaltyErrorCode.PROGRAM_NOT_ACTIVE,
                        reason="Program is not active.",
                        program_status=status,
                    )
                )

            replay = await self._recent_redemption(membership, now)
            if replay is not None:
                await self._db.commit()
                logger.info(
                    "Replayed recent redemption",
                    membership_id=str(membership_id),
                    redemption_id=str(replay.id),
                )
                return self._finish(
                    self._consumed_result(replay, balance, threshold, status, replayed=True)
                )

            if balance < threshold:
                await self._db.commit()
                return self._finish(
                    ConsumeResult(
                        success=False,
                        new_balance=balance,
                        threshold=threshold,
                        error=LoyaltyErrorCode.INSUFFICIENT_BALANCE,
                        reason="Not enough stamps to redeem.",
                        program_status=status,
                    )
                )

            new_balance = adjust_balance(program, membership, -threshold)
            membership.total_redeemed = int(membership.total_redeemed or 0) + 1
            membership.last_redeemed_at = now
            membership.last_active_at = now
            redemption = LoyaltyRedemption(
                membership_id=membership.id,
                program_id=program.id,
                business_id=program.business_id,
                customer_pass_id=membership.customer_pass_id,
                reward_description=program.reward_description,
                status=LoyaltyRedemptionStatus.CONSUMED,
                consumed_at=now,
                display_expires_at=now + display_window(),
                stamps_deducted=threshold,
                created_at=now,
            )
            self._db.add(redemption)

            try:
                await self._db.commit()
            except StaleDataError:
                await self._db.rollback()
                self._store.record_redemption("conflict_retry")
                logger.info(
                    "Retrying redemption after membership version conflict",
                    membership_id=str(membership_id),
                    attempt=attempt,
                )
                continue

            logger.info(
                "Consumed loyalty reward",
                membership_id=str(membership_id),
                redemption_id=str(redemption.id),
                stamps_deducted=threshold,
                new_balance=new_balance,
            )
            result = self._consumed_result(redemption, new_balance, threshold, status, replayed=False)
            result.pass_sync = build_pass_sync_request(
                program,
                membership,
                get_redeemed_pass_field_values(program, new_balance),
            )
            return self._finish(result)

        logger.warning(
            "Redemption abandoned after repeated version conflicts",
            membership_id=str(membership_id),
            attempts=self._max_attempts,
        )
        return self._finish(
            ConsumeResult(
                success=False,
                error=LoyaltyErrorCode.CONFLICT,
                reason="Redemption could not be completed. Please try again.",
            )
        )

    async def get_redemption_status(
        self,
        redemption_id: UUID,
        *,
        now: datetime | None = None,
    ) -> RedemptionStatus | None:
        """Report the display window, marking ``expired_display`` once it has passed."""

        now = ensure_aware(now or utcnow())
        redemption = await self._db.get(LoyaltyRedemption, redemption_id)
        if redemption is None:
            return None

        expires_at = ensure_aware(redemption.display_expires_at)
        if redemption.status == LoyaltyRedemptionStatus.CONSUMED and now >= expires_at:
            redemption.status = LoyaltyRedemptionStatus.EXPIRED_DISPLAY
            await self._db.commit()
            logger.debug("Redemption display window expired", redemption_id=str(redemption_id))

        return self._status_view(redemption, now)

    async def flag_redemption(
        self,
        redemption_id: UUID,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> RedemptionStatus | None:
        """Mark a redemption for fraud review; balances are untouched."""

        if not reason or not reason.strip():
            raise ValueError("A reason is required to flag a redemption")

        now = ensure_aware(now or utcnow())
        redemption = await self._db.get(LoyaltyRedemption, redemption_id)
        if redemption is None:
            return None

        redemption.flagged_at = now
        redemption.flagged_reason = reason.strip()
        await self._db.commit()
        self._store.record_redemption("flagged")
        logger.warning("Flagged loyalty redemption", redemption_id=str(redemption_id), reason=redemption.flagged_reason)
        return self._status_view(redemption, now)

    async def list_redemptions(self, membership_id: UUID) -> Sequence[LoyaltyRedemption]:
        stmt = (
            select(LoyaltyRedemption)
            .where(LoyaltyRedemption.membership_id == membership_id)
            .order_by(LoyaltyRedemption.consumed_at.desc())
        )
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def _load_program(self, program_id: UUID) -> LoyaltyProgram:
        stmt = (
            select(LoyaltyProgram)
            .where(LoyaltyProgram.id == program_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one()

    async def _recent_redemption(self, membership: LoyaltyMembership, now: datetime) -> LoyaltyRedemption | None:
        if membership.last_redeemed_at is None:
            return None
        if now - ensure_aware(membership.last_redeemed_at) >= replay_window():
            return None
        stmt = (
            select(LoyaltyRedemption)
            .where(LoyaltyRedemption.membership_id == membership.id)
            .order_by(LoyaltyRedemption.consumed_at.desc())
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _consumed_result(
        redemption: LoyaltyRedemption,
        balance: int,
        threshold: int,
        status: LoyaltyProgramStatus,
        *,
        replayed: bool,
    ) -> ConsumeResult:
        return ConsumeResult(
            success=True,
            redemption_id=redemption.id,
            reward_description=redemption.reward_description,
            consumed_at=ensure_aware(redemption.consumed_at),
            display_expires_at=ensure_aware(redemption.display_expires_at),
            new_balance=balance,
            threshold=threshold,
            replayed=replayed,
            program_status=status,
        )

    @staticmethod
    def _status_view(redemption: LoyaltyRedemption, now: datetime) -> RedemptionStatus:
        expires_at = ensure_aware(redemption.display_expires_at)
        remaining = time_remaining_ms(expires_at, now)
        return RedemptionStatus(
            redemption_id=redemption.id,
            membership_id=redemption.membership_id,
            reward_description=redemption.reward_description,
            status=LoyaltyRedemptionStatus(redemption.status),
            consumed_at=ensure_aware(redemption.consumed_at),
            display_expires_at=expires_at,
            time_remaining_ms=remaining,
            is_active=remaining > 0,
            stamps_deducted=int(redemption.stamps_deducted),
            flagged_at=ensure_aware(redemption.flagged_at) if redemption.flagged_at else None,
            flagged_reason=redemption.flagged_reason,
        )

    def _finish(self, result: ConsumeResult) -> ConsumeResult:
        if result.success:
            outcome = "replayed" if result.replayed else "consumed"
        else:
            outcome = result.error.value if result.error else "rejected"
        self._store.record_redemption(outcome)
        return result


__all__ = ["RedemptionEngine", "display_window", "replay_window", "time_remaining_ms"]
