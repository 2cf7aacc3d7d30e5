import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from stampline_api.models.loyalty import (
    LoyaltyEarnEvent,
    LoyaltyMembership,
    LoyaltyProgramStatus,
    LoyaltyProgramType,
)
from stampline_api.observability.loyalty import get_loyalty_store
from stampline_api.services.loyalty import (
    EarnEngine,
    LoyaltyErrorCode,
    LoyaltyProgramDefinition,
    MembershipStore,
    ProgramRegistry,
)
from stampline_api.services.loyalty.fraud import EarnAbuseGuard, EarnGuardLimits, hash_ip


WINTER_MORNING = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


async def _events(session):
    result = await session.execute(select(LoyaltyEarnEvent).order_by(LoyaltyEarnEvent.earned_at))
    return result.scalars().all()


@pytest.mark.asyncio
async def test_daily_cap_resets_at_local_midnight(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session, max_earns_per_day=1)
        engine = EarnEngine(session)

        first = await engine.record_earn(
            program.public_id, "pass-1", program.counter_qr_token, "203.0.113.7", now=WINTER_MORNING
        )
        assert first.success
        assert first.new_balance == 1
        assert first.earned_today_count == 1
        assert first.proximity_message is None
        assert first.next_eligible_at == datetime(2026, 1, 16, 0, 0, tzinfo=timezone.utc)

        afternoon = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=datetime(2026, 1, 15, 14, 0, tzinfo=timezone.utc),
        )
        assert not afternoon.success
        assert afternoon.error == LoyaltyErrorCode.DAILY_LIMIT_REACHED
        assert afternoon.new_balance == 1
        assert afternoon.next_eligible_at == datetime(2026, 1, 16, 0, 0, tzinfo=timezone.utc)

        after_midnight = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=datetime(2026, 1, 16, 0, 5, tzinfo=timezone.utc),
        )
        assert after_midnight.success
        assert after_midnight.new_balance == 2
        assert after_midnight.earned_today_count == 1

        membership = await MembershipStore(session).get_for_pass(program.id, "pass-1")
        assert membership.stamps_balance == 2
        assert membership.total_earned == 2
        assert membership.earned_today_date == "2026-01-16"

        events = await _events(session)
        assert [event.valid for event in events] == [True, False, True]
        assert events[1].reason_code == LoyaltyErrorCode.DAILY_LIMIT_REACHED.value
        assert all(event.membership_id == membership.id for event in events)
        assert all(event.ip_hash == hash_ip("203.0.113.7") for event in events)
        assert all("203.0.113.7" not in event.ip_hash for event in events)


@pytest.mark.asyncio
async def test_daily_counter_resets_on_local_day_before_utc_day(session_factory, create_active_program):
    async with session_factory() as session:
        # Sydney is UTC+11 in January.
        program = await create_active_program(session, max_earns_per_day=1, timezone="Australia/Sydney")
        engine = EarnEngine(session)

        late_evening = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc),
        )
        assert late_evening.success
        assert late_evening.next_eligible_at == datetime(2026, 1, 15, 13, 0, tzinfo=timezone.utc)

        # Same UTC date, but already 00:30 on the 16th in Sydney.
        after_local_midnight = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=datetime(2026, 1, 15, 13, 30, tzinfo=timezone.utc),
        )
        assert after_local_midnight.success
        assert after_local_midnight.earned_today_count == 1
        assert after_local_midnight.new_balance == 2

        membership = await MembershipStore(session).get_for_pass(program.id, "pass-1")
        assert membership.earned_today_date == "2026-01-16"


@pytest.mark.asyncio
async def test_daily_counter_holds_across_utc_midnight_within_local_day(session_factory, create_active_program):
    async with session_factory() as session:
        # New York is UTC-5 in January.
        program = await create_active_program(session, max_earns_per_day=1, timezone="America/New_York")
        engine = EarnEngine(session)

        evening = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=datetime(2026, 1, 15, 23, 30, tzinfo=timezone.utc),
        )
        assert evening.success

        # The UTC date has advanced, the local date is still the 15th.
        for hour in (1, 2):
            later = await engine.record_earn(
                program.public_id,
                "pass-1",
                program.counter_qr_token,
                "203.0.113.7",
                now=datetime(2026, 1, 16, hour, 0, tzinfo=timezone.utc),
            )
            assert not later.success
            assert later.error == LoyaltyErrorCode.DAILY_LIMIT_REACHED
            assert later.new_balance == 1
            assert later.next_eligible_at == datetime(2026, 1, 16, 5, 0, tzinfo=timezone.utc)

        membership = await MembershipStore(session).get_for_pass(program.id, "pass-1")
        assert membership.earned_today_date == "2026-01-15"
        assert membership.earned_today_count == 1

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.earns["earned"] == 2
    assert snapshot.earns["daily_limit_reached"] == 1


@pytest.mark.asyncio
async def test_invalid_token_is_rejected_and_audited(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)
        engine = EarnEngine(session)

        result = await engine.record_earn(program.public_id, "pass-1", "wrong-token", "198.51.100.4", now=WINTER_MORNING)

        assert not result.success
        assert result.error == LoyaltyErrorCode.INVALID_TOKEN
        assert result.membership_id is None
        assert await MembershipStore(session).get_for_pass(program.id, "pass-1") is None

        events = await _events(session)
        assert len(events) == 1
        assert events[0].valid is False
        assert events[0].reason_code == "invalid_token"
        assert events[0].membership_id is None
        assert events[0].business_id == "biz-coffee"


@pytest.mark.asyncio
async def test_unknown_program_is_not_found_without_audit_row(session_factory):
    async with session_factory() as session:
        result = await EarnEngine(session).record_earn("missing", "pass-1", "token", now=WINTER_MORNING)

        assert result.error == LoyaltyErrorCode.PROGRAM_NOT_FOUND
        assert await _events(session) == []


@pytest.mark.asyncio
async def test_inactive_program_rejects_earns(session_factory):
    async with session_factory() as session:
        registry = ProgramRegistry(session)
        program = await registry.create_program(
            LoyaltyProgramDefinition(business_id="biz-draft", reward_threshold=5, reward_description="Free bagel")
        )

        result = await EarnEngine(session).record_earn(
            program.public_id, "pass-1", program.counter_qr_token, now=WINTER_MORNING
        )

        assert result.error == LoyaltyErrorCode.PROGRAM_NOT_ACTIVE
        assert result.program_status == LoyaltyProgramStatus.DRAFT
        events = await _events(session)
        assert [event.reason_code for event in events] == ["program_not_active"]


@pytest.mark.asyncio
async def test_minimum_gap_blocks_rapid_scans(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session, max_earns_per_day=0, allow_uncapped_earns=True, min_gap_minutes=30)
        engine = EarnEngine(session)

        first = await engine.record_earn(
            program.public_id, "pass-1", program.counter_qr_token, "203.0.113.7", now=WINTER_MORNING
        )
        assert first.success
        assert first.next_eligible_at == WINTER_MORNING + timedelta(minutes=30)

        second = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=WINTER_MORNING + timedelta(minutes=10),
        )
        assert second.error == LoyaltyErrorCode.TOO_SOON
        assert second.next_eligible_at == WINTER_MORNING + timedelta(minutes=30)
        assert second.new_balance == 1

        third = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=WINTER_MORNING + timedelta(minutes=31),
        )
        assert third.success
        assert third.new_balance == 2
        assert third.earned_today_count == 2


@pytest.mark.asyncio
async def test_reward_unlocks_only_when_threshold_is_crossed(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(
            session,
            reward_threshold=2,
            max_earns_per_day=0,
            allow_uncapped_earns=True,
        )
        engine = EarnEngine(session)
        results = []
        for minutes in (0, 1, 2):
            results.append(
                await engine.record_earn(
                    program.public_id,
                    "pass-1",
                    program.counter_qr_token,
                    "203.0.113.7",
                    now=WINTER_MORNING + timedelta(minutes=minutes),
                )
            )

        assert [result.new_balance for result in results] == [1, 2, 3]
        assert [result.reward_unlocked for result in results] == [False, True, False]
        assert results[1].pass_fields["Status"] == "Reward Available!"
        assert results[1].proximity_message == "Reward available!"
        assert results[2].pass_fields["Status"] == "3/2 Stamps"


@pytest.mark.asyncio
async def test_points_programs_use_points_balance_and_increment(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(
            session,
            program_type=LoyaltyProgramType.POINTS,
            earn_increment=5,
            reward_threshold=10,
            stamp_label="Points",
        )
        engine = EarnEngine(session)

        first = await engine.record_earn(
            program.public_id, "pass-1", program.counter_qr_token, "203.0.113.7", now=WINTER_MORNING
        )
        second = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.7",
            now=WINTER_MORNING + timedelta(days=1),
        )

        assert first.new_balance == 5
        assert second.new_balance == 10
        assert second.reward_unlocked

        membership = await MembershipStore(session).get_for_pass(program.id, "pass-1")
        assert membership.points_balance == 10
        assert membership.stamps_balance == 0
        assert membership.total_earned == 10

        events = await _events(session)
        assert [event.amount for event in events] == [5, 5]


@pytest.mark.asyncio
async def test_rotated_token_is_honoured_during_grace_window(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)
        old_token = program.counter_qr_token
        new_token = await ProgramRegistry(session).rotate_token(program.id, now=WINTER_MORNING)
        engine = EarnEngine(session)

        within_grace = await engine.record_earn(
            program.public_id, "pass-1", old_token, "203.0.113.7", now=WINTER_MORNING + timedelta(minutes=29)
        )
        after_grace = await engine.record_earn(
            program.public_id, "pass-2", old_token, "203.0.113.8", now=WINTER_MORNING + timedelta(minutes=31)
        )
        with_new_token = await engine.record_earn(
            program.public_id, "pass-2", new_token, "203.0.113.8", now=WINTER_MORNING + timedelta(minutes=32)
        )

        assert within_grace.success
        assert after_grace.error == LoyaltyErrorCode.INVALID_TOKEN
        assert with_new_token.success


@pytest.mark.asyncio
async def test_per_pass_rate_limit_counts_every_attempt(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session, max_earns_per_day=0, allow_uncapped_earns=True)
        guard = EarnAbuseGuard(
            session,
            EarnGuardLimits(
                per_pass_per_hour=3,
                per_ip_per_hour=0,
                velocity_threshold=0,
                velocity_window=timedelta(minutes=10),
            ),
        )
        engine = EarnEngine(session, guard=guard)

        outcomes = []
        tokens = [program.counter_qr_token, "bad-token", program.counter_qr_token, program.counter_qr_token]
        for minutes, token in enumerate(tokens):
            result = await engine.record_earn(
                program.public_id,
                "pass-1",
                token,
                f"203.0.113.{minutes + 1}",
                now=WINTER_MORNING + timedelta(minutes=minutes),
            )
            outcomes.append(result.error)

        assert outcomes == [None, LoyaltyErrorCode.INVALID_TOKEN, None, LoyaltyErrorCode.RATE_LIMITED]

        later = await engine.record_earn(
            program.public_id,
            "pass-1",
            program.counter_qr_token,
            "203.0.113.9",
            now=WINTER_MORNING + timedelta(hours=1, minutes=5),
        )
        assert later.success


@pytest.mark.asyncio
async def test_ip_velocity_blocks_many_passes_from_one_address(session_factory, create_active_program):
    async with session_factory() as session:
        program = await create_active_program(session)
        engine = EarnEngine(session)

        results = []
        for index in range(4):
            results.append(
                await engine.record_earn(
                    program.public_id,
                    f"pass-{index}",
                    program.counter_qr_token,
                    "192.0.2.50",
                    now=WINTER_MORNING + timedelta(minutes=index),
                )
            )

        assert [result.success for result in results] == [True, True, True, False]
        assert results[3].error == LoyaltyErrorCode.IP_VELOCITY

        # Outside the velocity window the address is allowed again.
        later = await engine.record_earn(
            program.public_id,
            "pass-3",
            program.counter_qr_token,
            "192.0.2.50",
            now=WINTER_MORNING + timedelta(minutes=30),
        )
        assert later.success


@pytest.mark.asyncio
async def test_concurrent_scans_respect_daily_cap(file_session_factory, create_active_program):
    async with file_session_factory() as session:
        program = await create_active_program(session, max_earns_per_day=1)
        public_id = program.public_id
        token = program.counter_qr_token
        membership = await MembershipStore(session).ensure_membership(program, "pass-1", now=WINTER_MORNING)
        membership_id = membership.id

    async def scan(index: int):
        async with file_session_factory() as session:
            return await EarnEngine(session).record_earn(
                public_id,
                "pass-1",
                token,
                f"203.0.113.{index + 10}",
                now=WINTER_MORNING,
            )

    results = await asyncio.gather(*(scan(index) for index in range(4)))

    assert sum(1 for result in results if result.success) == 1
    assert all(
        result.error == LoyaltyErrorCode.DAILY_LIMIT_REACHED for result in results if not result.success
    )

    async with file_session_factory() as session:
        stored = await session.get(LoyaltyMembership, membership_id)
        assert stored.stamps_balance == 1
        assert stored.earned_today_count == 1
        events = await _events(session)
        assert sum(1 for event in events if event.valid) == 1
        assert len(events) == 4
