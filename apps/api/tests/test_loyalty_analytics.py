from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from stampline_api.models.loyalty import (
    LoyaltyEarnEvent,
    LoyaltyMembership,
    LoyaltyMembershipStatus,
    LoyaltyRedemption,
)
from stampline_api.services.loyalty import LoyaltyAnalyticsService, ProgramNotFoundError


NOW = datetime(2026, 8, 15, 12, 0, tzinfo=timezone.utc)
# 00:00 on 1 August in London (BST).
MONTH_START = datetime(2026, 7, 31, 23, 0, tzinfo=timezone.utc)


def _member(program, pass_id, balance, status=LoyaltyMembershipStatus.ACTIVE):
    return LoyaltyMembership(
        program_id=program.id,
        customer_pass_id=pass_id,
        stamps_balance=balance,
        status=status,
    )


def _visit(program, member, earned_at, *, valid=True):
    return LoyaltyEarnEvent(
        membership_id=member.id,
        program_id=program.id,
        business_id=program.business_id,
        customer_pass_id=member.customer_pass_id,
        ip_hash="hash",
        valid=valid,
        reason_code=None if valid else "too_soon",
        amount=1 if valid else 0,
        earned_at=earned_at,
    )


def _redemption(program, member, consumed_at, *, flagged=False):
    return LoyaltyRedemption(
        membership_id=member.id,
        program_id=program.id,
        business_id=program.business_id,
        customer_pass_id=member.customer_pass_id,
        reward_description=program.reward_description,
        consumed_at=consumed_at,
        display_expires_at=consumed_at + timedelta(minutes=10),
        stamps_deducted=program.reward_threshold,
        flagged_at=consumed_at + timedelta(minutes=1) if flagged else None,
        flagged_reason="duplicate" if flagged else None,
    )


@pytest.mark.asyncio
async def test_summary_uses_program_month_and_active_members(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)

        near_a = _member(program, "pass-a", 7)
        near_b = _member(program, "pass-b", 9)
        far = _member(program, "pass-c", 2)
        full = _member(program, "pass-d", 12)
        lapsed = _member(program, "pass-e", 8, status=LoyaltyMembershipStatus.INACTIVE)
        session.add_all([near_a, near_b, far, full, lapsed])
        await session.flush()

        session.add_all(
            [
                _visit(program, near_a, MONTH_START + timedelta(minutes=30)),
                _visit(program, near_a, NOW - timedelta(days=3)),
                _visit(program, near_b, NOW - timedelta(days=2)),
                _visit(program, far, NOW - timedelta(days=1)),
                _visit(program, full, NOW - timedelta(hours=5)),
                _visit(program, full, NOW - timedelta(hours=1)),
                _visit(program, far, MONTH_START - timedelta(minutes=30)),
                _visit(program, far, NOW - timedelta(minutes=10), valid=False),
                _redemption(program, full, NOW - timedelta(days=4)),
                _redemption(program, full, NOW - timedelta(days=1), flagged=True),
                _redemption(program, near_b, MONTH_START - timedelta(days=3), flagged=True),
            ]
        )
        await session.commit()

        summary = await LoyaltyAnalyticsService(session).summarize(program.id, now=NOW)

    assert summary.month_starts_at == MONTH_START
    assert summary.active_members == 4
    assert summary.visits_this_month == 6
    assert summary.avg_visits_per_member == 1.5
    assert summary.rewards_redeemed_this_month == 2
    assert summary.estimated_value_given_away == 6.0
    assert summary.members_near_reward == 2
    assert summary.flagged_redemptions == 2


@pytest.mark.asyncio
async def test_summary_for_empty_program(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)

        summary = await LoyaltyAnalyticsService(session, near_reward_window=1).summarize(program.id, now=NOW)

    assert summary.active_members == 0
    assert summary.visits_this_month == 0
    assert summary.avg_visits_per_member == 0.0
    assert summary.estimated_value_given_away == 0.0


@pytest.mark.asyncio
async def test_summary_requires_known_program(session_factory):
    async with session_factory() as session:
        with pytest.raises(ProgramNotFoundError):
            await LoyaltyAnalyticsService(session).summarize(uuid4(), now=NOW)
