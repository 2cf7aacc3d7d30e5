"""Membership persistence: lazy creation and locked reads for mutation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stampline_api.models.loyalty import (
    LoyaltyMembership,
    LoyaltyMembershipStatus,
    LoyaltyProgram,
    LoyaltyProgramStatus,
    LoyaltyProgramType,
)
from stampline_api.services.loyalty.constraints import ensure_aware, utcnow


def authoritative_balance(program: LoyaltyProgram, membership: LoyaltyMembership) -> int:
    """Balance column matching the program type; the other one is ignored."""

    if program.program_type == LoyaltyProgramType.POINTS:
        return int(membership.points_balance or 0)
    return int(membership.stamps_balance or 0)


def adjust_balance(program: LoyaltyProgram, membership: LoyaltyMembership, delta: int) -> int:
    new_balance = authoritative_balance(program, membership) + delta
    if new_balance < 0:
        raise ValueError("Loyalty balance cannot go negative")
    if program.program_type == LoyaltyProgramType.POINTS:
        membership.points_balance = new_balance
    else:
        membership.stamps_balance = new_balance
    return new_balance


# Submitted programs accept enrolments ahead of going live.
JOINABLE_PROGRAM_STATUSES = frozenset({LoyaltyProgramStatus.ACTIVE, LoyaltyProgramStatus.SUBMITTED})


@dataclass
class MembershipJoin:
    membership: LoyaltyMembership
    created: bool
    # Another request enrolled the same pass between our lookup and insert.
    lost_race: bool = False

    @property
    def already_member(self) -> bool:
        return not self.created


class MembershipStore:
    """Reads and creates memberships; callers own the mutation transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def get(self, membership_id: UUID) -> LoyaltyMembership | None:
        return await self._db.get(LoyaltyMembership, membership_id)

    async def get_for_pass(self, program_id: UUID, customer_pass_id: str) -> LoyaltyMembership | None:
        stmt = select(LoyaltyMembership).where(
            LoyaltyMembership.program_id == program_id,
            LoyaltyMembership.customer_pass_id == customer_pass_id,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_membership(
        self,
        program: LoyaltyProgram,
        customer_pass_id: str,
        *,
        now: datetime | None = None,
    ) -> LoyaltyMembership:
        """Fetch or create the membership for a pass, tolerating a concurrent insert."""

        existing = await self.get_for_pass(program.id, customer_pass_id)
        if existing is not None:
            return existing
        membership, _ = await self._create(program, customer_pass_id, now=now)
        return membership

    async def join(
        self,
        program: LoyaltyProgram,
        customer_pass_id: str,
        *,
        pass_serial: str | None = None,
        now: datetime | None = None,
    ) -> MembershipJoin:
        """Explicitly enrol a pass. An existing membership is reported, never modified."""

        existing = await self.get_for_pass(program.id, customer_pass_id)
        if existing is not None:
            return MembershipJoin(membership=existing, created=False)

        membership, created = await self._create(program, customer_pass_id, pass_serial=pass_serial, now=now)
        return MembershipJoin(membership=membership, created=created, lost_race=not created)

    async def _create(
        self,
        program: LoyaltyProgram,
        customer_pass_id: str,
        *,
        pass_serial: str | None = None,
        now: datetime | None = None,
    ) -> tuple[LoyaltyMembership, bool]:
        joined_at = ensure_aware(now or utcnow())
        membership = LoyaltyMembership(
            program_id=program.id,
            customer_pass_id=customer_pass_id,
            stamps_balance=0,
            points_balance=0,
            total_earned=0,
            total_redeemed=0,
            earned_today_count=0,
            status=LoyaltyMembershipStatus.ACTIVE,
            pass_serial=pass_serial,
            joined_at=joined_at,
            created_at=joined_at,
        )
        self._db.add(membership)
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            # Rollback expired the caller's program instance.
            await self._db.refresh(program)
            logger.warning(
                "Detected race when creating loyalty membership",
                program_id=str(program.id),
                customer_pass_id=customer_pass_id,
            )
            refetched = await self.get_for_pass(program.id, customer_pass_id)
            if refetched is None:
                raise
            return refetched, False

        logger.info(
            "Created loyalty membership",
            program_id=str(program.id),
            membership_id=str(membership.id),
            customer_pass_id=customer_pass_id,
        )
        return membership, True

    async def lock_for_update(self, membership_id: UUID) -> LoyaltyMembership | None:
        """Row-locked read that refreshes any stale copy in the identity map."""

        stmt = (
            select(LoyaltyMembership)
            .where(LoyaltyMembership.id == membership_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_members(
        self,
        program_id: UUID,
        *,
        status: LoyaltyMembershipStatus | None = None,
        since_days: int | None = None,
        now: datetime | None = None,
    ) -> Sequence[LoyaltyMembership]:
        """Members ordered by most recent activity; ``since_days`` filters on last activity."""

        stmt = select(LoyaltyMembership).where(LoyaltyMembership.program_id == program_id)
        if status is not None:
            stmt = stmt.where(LoyaltyMembership.status == status)
        if since_days is not None:
            cutoff = ensure_aware(now or utcnow()) - timedelta(days=since_days)
            stmt = stmt.where(LoyaltyMembership.last_active_at >= cutoff)
        stmt = stmt.order_by(
            LoyaltyMembership.last_active_at.desc().nulls_last(),
            LoyaltyMembership.joined_at.desc(),
        )
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def set_pass_serial(self, membership_id: UUID, serial: str | None) -> LoyaltyMembership | None:
        membership = await self.lock_for_update(membership_id)
        if membership is None:
            return None
        membership.pass_serial = serial
        await self._db.commit()
        logger.info("Updated membership pass serial", membership_id=str(membership_id), has_serial=bool(serial))
        return membership

    async def set_status(
        self,
        membership_id: UUID,
        status: LoyaltyMembershipStatus,
    ) -> LoyaltyMembership | None:
        """Deactivate or reactivate a member. Balances and history are untouched."""

        membership = await self.lock_for_update(membership_id)
        if membership is None:
            return None
        previous = LoyaltyMembershipStatus(membership.status)
        membership.status = status
        await self._db.commit()
        if previous != status:
            logger.info(
                "Changed membership status",
                membership_id=str(membership_id),
                previous_status=previous.value,
                status=status.value,
            )
        return membership


__all__ = [
    "JOINABLE_PROGRAM_STATUSES",
    "MembershipJoin",
    "MembershipStore",
    "adjust_balance",
    "authoritative_balance",
]
