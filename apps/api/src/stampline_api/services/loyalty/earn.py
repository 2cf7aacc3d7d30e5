"""Counter QR earn flow: validation, abuse guards, and the per-membership critical section."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from stampline_api.core.settings import settings
from stampline_api.models.loyalty import (
    LoyaltyEarnEvent,
    LoyaltyEarnMethod,
    LoyaltyMembership,
    LoyaltyProgram,
    LoyaltyProgramStatus,
)
from stampline_api.observability.loyalty import get_loyalty_store
from stampline_api.services.loyalty.constraints import (
    can_earn_now,
    effective_daily_cap,
    ensure_aware,
    next_local_midnight,
    utcnow,
)
from stampline_api.services.loyalty.errors import LoyaltyErrorCode
from stampline_api.services.loyalty.fraud import EarnAbuseGuard, hash_ip
from stampline_api.services.loyalty.memberships import MembershipStore, adjust_balance, authoritative_balance
from stampline_api.services.loyalty.pass_fields import (
    get_pass_field_values,
    get_proximity_message,
    get_unlocked_pass_field_values,
)
from stampline_api.services.loyalty.pass_sync import build_pass_sync_request
from stampline_api.services.loyalty.programs import ProgramRegistry
from stampline_api.services.loyalty.results import EarnResult
from stampline_api.services.loyalty.tokens import TOKEN_GRACE_WINDOW, is_token_valid


_REJECTION_COPY = {
    LoyaltyErrorCode.PROGRAM_NOT_FOUND: "Program not found.",
    LoyaltyErrorCode.PROGRAM_NOT_ACTIVE: "This loyalty program is not currently active.",
    LoyaltyErrorCode.INVALID_TOKEN: "Invalid QR code. Please scan the QR at the till.",
    LoyaltyErrorCode.CONFLICT: "We couldn't record that visit. Please scan again.",
}


class EarnEngine:
    """Records earns for a customer pass against a program's counter QR."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        guard: EarnAbuseGuard | None = None,
        grace_window: timedelta = TOKEN_GRACE_WINDOW,
        max_attempts: int | None = None,
    ) -> None:
        self._db = session
        self._programs = ProgramRegistry(session)
        self._memberships = MembershipStore(session)
        self._guard = guard or EarnAbuseGuard(session)
        self._grace_window = grace_window
        self._max_attempts = max_attempts or settings.loyalty_mutation_max_attempts
        self._store = get_loyalty_store()

    async def record_earn(
        self,
        public_id: str,
        customer_pass_id: str,
        provided_token: str | None,
        request_ip: str | None = None,
        *,
        now: datetime | None = None,
    ) -> EarnResult:
        now = ensure_aware(now or utcnow())

        program = await self._programs.get_by_public_id(public_id)
        if program is None:
            logger.info("Earn rejected for unknown program", public_id=public_id)
            return self._finish(
                EarnResult(
                    success=False,
                    error=LoyaltyErrorCode.PROGRAM_NOT_FOUND,
                    reason=_REJECTION_COPY[LoyaltyErrorCode.PROGRAM_NOT_FOUND],
                )
            )

        ip_hash = hash_ip(request_ip)
        status = LoyaltyProgramStatus(program.status)

        if status != LoyaltyProgramStatus.ACTIVE:
            return await self._reject_before_membership(
                program,
                customer_pass_id,
                ip_hash,
                now=now,
                error=LoyaltyErrorCode.PROGRAM_NOT_ACTIVE,
                reason=_REJECTION_COPY[LoyaltyErrorCode.PROGRAM_NOT_ACTIVE],
            )

        if not is_token_valid(
            current=program.counter_qr_token,
            previous=program.previous_counter_qr_token,
            rotated_at=program.token_rotated_at,
            provided=provided_token,
            now=now,
            grace_window=self._grace_window,
        ):
            return await self._reject_before_membership(
                program,
                customer_pass_id,
                ip_hash,
                now=now,
                error=LoyaltyErrorCode.INVALID_TOKEN,
                reason=_REJECTION_COPY[LoyaltyErrorCode.INVALID_TOKEN],
            )

        rejection = await self._guard.check(
            business_id=program.business_id,
            customer_pass_id=customer_pass_id,
            ip_hash=ip_hash,
            now=now,
        )
        if rejection is not None:
            return await self._reject_before_membership(
                program,
                customer_pass_id,
                ip_hash,
                now=now,
                error=rejection.error,
                reason=rejection.reason,
            )

        membership = await self._memberships.ensure_membership(program, customer_pass_id, now=now)
        return await self._apply_earn(program, membership.id, customer_pass_id, ip_hash, now=now)

    async def _apply_earn(
        self,
        program: LoyaltyProgram,
        membership_id: UUID,
        customer_pass_id: str,
        ip_hash: str,
        *,
        now: datetime,
    ) -> EarnResult:
        for attempt in range(1, self._max_attempts + 1):
            membership = await self._memberships.lock_for_update(membership_id)
            if membership is None:
                await self._db.rollback()
                raise LookupError(f"Membership {membership_id} disappeared during earn")

            decision = can_earn_now(membership, program, now=now)
            threshold = int(program.reward_threshold)
            balance = authoritative_balance(program, membership)

            if not decision.allowed:
                # Nothing was modified; committing releases the row lock.
                await self._db.commit()
                result = EarnResult(
                    success=False,
                    new_balance=balance,
                    threshold=threshold,
                    proximity_message=get_proximity_message(balance, threshold),
                    next_eligible_at=decision.next_eligible_at,
                    error=decision.error,
                    reason=decision.reason,
                    earned_today_count=decision.effective_today_count,
                    program_status=LoyaltyProgramStatus(program.status),
                    membership_id=membership_id,
                    pass_fields=get_pass_field_values(program, balance),
                )
                await self._append_event(
                    program,
                    customer_pass_id,
                    ip_hash,
                    now=now,
                    membership_id=membership_id,
                    error=decision.error,
                )
                return self._finish(result)

            increment = int(program.earn_increment or 1)
            new_balance = balance + increment
            new_today_count = decision.effective_today_count + 1
            self._apply_increment(membership, program, increment, new_today_count, decision.today, now)
            self._db.add(
                self._build_event(
                    program,
                    customer_pass_id,
                    ip_hash,
                    now=now,
                    membership_id=membership_id,
                    amount=increment,
                )
            )

            try:
                await self._db.commit()
            except StaleDataError:
                await self._db.rollback()
                await self._db.refresh(program)
                self._store.record_earn_conflict_retry()
                logger.info(
                    "Retrying earn after membership version conflict",
                    membership_id=str(membership_id),
                    attempt=attempt,
                )
                continue

            reward_unlocked = balance < threshold <= new_balance
            fields = (
                get_unlocked_pass_field_values(program, new_balance)
                if reward_unlocked
                else get_pass_field_values(program, new_balance)
            )
            logger.info(
                "Recorded loyalty earn",
                program_id=str(program.id),
                membership_id=str(membership_id),
                new_balance=new_balance,
                earned_today_count=new_today_count,
                reward_unlocked=reward_unlocked,
            )
            return self._finish(
                EarnResult(
                    success=True,
                    new_balance=new_balance,
                    threshold=threshold,
                    reward_unlocked=reward_unlocked,
                    proximity_message=get_proximity_message(new_balance, threshold),
                    next_eligible_at=self._next_eligible_after_success(program, new_today_count, now),
                    earned_today_count=new_today_count,
                    program_status=LoyaltyProgramStatus(program.status),
                    membership_id=membership_id,
                    pass_fields=fields,
                    pass_sync=build_pass_sync_request(program, membership, fields),
                )
            )

        logger.warning(
            "Earn abandoned after repeated version conflicts",
            membership_id=str(membership_id),
            attempts=self._max_attempts,
        )
        result = EarnResult(
            success=False,
            threshold=int(program.reward_threshold),
            error=LoyaltyErrorCode.CONFLICT,
            reason=_REJECTION_COPY[LoyaltyErrorCode.CONFLICT],
            program_status=LoyaltyProgramStatus(program.status),
            membership_id=membership_id,
        )
        await self._append_event(
            program,
            customer_pass_id,
            ip_hash,
            now=now,
            membership_id=membership_id,
            error=LoyaltyErrorCode.CONFLICT,
        )
        return self._finish(result)

    @staticmethod
    def _apply_increment(
        membership: LoyaltyMembership,
        program: LoyaltyProgram,
        increment: int,
        new_today_count: int,
        today: str,
        now: datetime,
    ) -> None:
        adjust_balance(program, membership, increment)
        membership.total_earned = int(membership.total_earned or 0) + increment
        membership.earned_today_count = new_today_count
        membership.earned_today_date = today
        membership.last_earned_at = now
        membership.last_active_at = now

    @staticmethod
    def _next_eligible_after_success(
        program: LoyaltyProgram,
        new_today_count: int,
        now: datetime,
    ) -> datetime | None:
        cap = effective_daily_cap(program)
        if cap is not None and new_today_count >= cap:
            return next_local_midnight(now, program.timezone)
        gap_minutes = int(program.min_gap_minutes or 0)
        if gap_minutes > 0:
            return now + timedelta(minutes=gap_minutes)
        return None

    async def _reject_before_membership(
        self,
        program: LoyaltyProgram,
        customer_pass_id: str,
        ip_hash: str,
        *,
        now: datetime,
        error: LoyaltyErrorCode,
        reason: str,
    ) -> EarnResult:
        existing = await self._memberships.get_for_pass(program.id, customer_pass_id)
        threshold = int(program.reward_threshold)
        balance = authoritative_balance(program, existing) if existing is not None else 0
        result = EarnResult(
            success=False,
            new_balance=balance,
            threshold=threshold,
            error=error,
            reason=reason,
            program_status=LoyaltyProgramStatus(program.status),
            membership_id=existing.id if existing is not None else None,
        )
        logger.info(
            "Earn rejected",
            program_id=str(program.id),
            customer_pass_id=customer_pass_id,
            reason_code=error.value,
        )
        await self._append_event(
            program,
            customer_pass_id,
            ip_hash,
            now=now,
            membership_id=result.membership_id,
            error=error,
        )
        return self._finish(result)

    def _build_event(
        self,
        program: LoyaltyProgram,
        customer_pass_id: str,
        ip_hash: str,
        *,
        now: datetime,
        membership_id: Optional[UUID],
        amount: int = 0,
        error: LoyaltyErrorCode | None = None,
    ) -> LoyaltyEarnEvent:
        return LoyaltyEarnEvent(
            membership_id=membership_id,
            program_id=program.id,
            business_id=program.business_id,
            customer_pass_id=customer_pass_id,
            method=LoyaltyEarnMethod.COUNTER_QR,
            ip_hash=ip_hash,
            valid=error is None,
            reason_code=error.value if error is not None else None,
            amount=amount,
            earned_at=now,
        )

    async def _append_event(
        self,
        program: LoyaltyProgram,
        customer_pass_id: str,
        ip_hash: str,
        *,
        now: datetime,
        membership_id: Optional[UUID],
        error: LoyaltyErrorCode,
    ) -> None:
        """Write an invalid-attempt audit row; a failed write never changes the outcome."""

        event = self._build_event(
            program,
            customer_pass_id,
            ip_hash,
            now=now,
            membership_id=membership_id,
            error=error,
        )
        self._db.add(event)
        try:
            await self._db.commit()
        except SQLAlchemyError:
            await self._db.rollback()
            logger.exception(
                "Failed to write earn audit event",
                program_id=str(event.program_id),
                reason_code=error.value,
            )

    def _finish(self, result: EarnResult) -> EarnResult:
        outcome = "earned" if result.success else (result.error.value if result.error else "rejected")
        self._store.record_earn(outcome)
        return result


__all__ = ["EarnEngine"]
