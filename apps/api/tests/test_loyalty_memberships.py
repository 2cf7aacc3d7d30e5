from datetime import datetime, timezone
from uuid import uuid4

import pytest

from stampline_api.models.loyalty import LoyaltyMembershipStatus
from stampline_api.services.loyalty import LoyaltyAnalyticsService, MembershipStore


JOINED_AT = datetime(2026, 2, 3, 10, 0, tzinfo=timezone.utc)


class _RacingMembershipStore(MembershipStore):
    """Misses the existing row on the first lookup, as a concurrent enrolment would."""

    def __init__(self, session) -> None:
        super().__init__(session)
        self._lookups = 0

    async def get_for_pass(self, program_id, customer_pass_id):
        self._lookups += 1
        if self._lookups == 1:
            return None
        return await super().get_for_pass(program_id, customer_pass_id)


@pytest.mark.asyncio
async def test_join_creates_membership_with_pass_serial(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)
        outcome = await MembershipStore(session).join(program, "pass-1", pass_serial="serial-1", now=JOINED_AT)

        assert outcome.created
        assert not outcome.already_member
        assert not outcome.lost_race
        membership = outcome.membership
        assert membership.pass_serial == "serial-1"
        assert membership.status == LoyaltyMembershipStatus.ACTIVE
        assert membership.stamps_balance == 0
        assert membership.earned_today_count == 0


@pytest.mark.asyncio
async def test_join_reports_existing_member_without_touching_it(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)
        store = MembershipStore(session)
        first = await store.join(program, "pass-1", pass_serial="serial-1", now=JOINED_AT)

        again = await store.join(program, "pass-1", pass_serial="serial-2")

        assert not again.created
        assert again.already_member
        assert not again.lost_race
        assert again.membership.id == first.membership.id
        assert again.membership.pass_serial == "serial-1"


@pytest.mark.asyncio
async def test_join_that_loses_the_insert_race_returns_the_winner(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)
        winner = await MembershipStore(session).ensure_membership(program, "pass-1", now=JOINED_AT)
        winner_id = winner.id

        outcome = await _RacingMembershipStore(session).join(program, "pass-1", pass_serial="serial-late")

        assert not outcome.created
        assert outcome.lost_race
        assert outcome.already_member
        assert outcome.membership.id == winner_id
        assert outcome.membership.pass_serial is None


@pytest.mark.asyncio
async def test_deactivated_members_drop_out_of_active_counts(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)
        program_id = program.id
        store = MembershipStore(session)
        kept = await store.ensure_membership(program, "pass-1", now=JOINED_AT)
        dropped = await store.ensure_membership(program, "pass-2", now=JOINED_AT)
        kept_id, dropped_id = kept.id, dropped.id

        updated = await store.set_status(dropped_id, LoyaltyMembershipStatus.INACTIVE)
        assert updated.status == LoyaltyMembershipStatus.INACTIVE
        assert await store.set_status(uuid4(), LoyaltyMembershipStatus.INACTIVE) is None

        inactive = await store.list_members(program_id, status=LoyaltyMembershipStatus.INACTIVE)
        assert [member.id for member in inactive] == [dropped_id]
        summary = await LoyaltyAnalyticsService(session).summarize(program_id, now=JOINED_AT)
        assert summary.active_members == 1

        await store.set_status(dropped_id, LoyaltyMembershipStatus.ACTIVE)
        active = await store.list_members(program_id, status=LoyaltyMembershipStatus.ACTIVE)
        assert {member.id for member in active} == {kept_id, dropped_id}
