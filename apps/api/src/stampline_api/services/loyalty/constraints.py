"""Timezone-aware daily counters and the pure earn-eligibility check.

Daily caps are persisted per membership as ``earned_today_count`` plus the
calendar date (in the *program's* timezone) the count belongs to. A stored
date that differs from today's local date means the count is stale and is
treated as zero; there is no reset job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from stampline_api.models.loyalty import LoyaltyMembership, LoyaltyProgram
from stampline_api.services.loyalty.errors import LoyaltyErrorCode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Normalise naive timestamps (SQLite round-trips) to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise ValueError(f"Unknown IANA timezone: {name!r}") from error


def local_date(now: datetime, tz_name: str) -> date:
    return ensure_aware(now).astimezone(resolve_timezone(tz_name)).date()


def today_in_timezone(now: datetime, tz_name: str) -> str:
    """Calendar date string (``YYYY-MM-DD``) the business is operating in."""

    return local_date(now, tz_name).isoformat()


def next_local_midnight(now: datetime, tz_name: str) -> datetime:
    """UTC instant of the next 00:00 in ``tz_name`` (DST-correct)."""

    zone = resolve_timezone(tz_name)
    tomorrow = local_date(now, tz_name) + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=zone).astimezone(timezone.utc)


def start_of_local_month(now: datetime, tz_name: str) -> datetime:
    zone = resolve_timezone(tz_name)
    first = local_date(now, tz_name).replace(day=1)
    return datetime.combine(first, time.min, tzinfo=zone).astimezone(timezone.utc)


def is_new_day(stored_date: str | None, now: datetime, tz_name: str) -> bool:
    return stored_date != today_in_timezone(now, tz_name)


def effective_daily_cap(program: LoyaltyProgram) -> int | None:
    """Return the daily cap, or ``None`` when the program explicitly runs uncapped."""

    cap = int(program.max_earns_per_day or 0)
    if cap == 0 and program.allow_uncapped_earns:
        return None
    return cap


@dataclass(slots=True)
class EarnConstraints:
    """Outcome of evaluating one membership against a program's earn rules."""

    allowed: bool
    today: str
    is_new_day: bool
    effective_today_count: int
    error: Optional[LoyaltyErrorCode] = None
    reason: Optional[str] = None
    next_eligible_at: Optional[datetime] = None


def can_earn_now(
    membership: LoyaltyMembership,
    program: LoyaltyProgram,
    *,
    now: datetime,
) -> EarnConstraints:
    """Check minimum gap first, then the daily cap (after any day rollover)."""

    now = ensure_aware(now)
    today = today_in_timezone(now, program.timezone)
    new_day = is_new_day(membership.earned_today_date, now, program.timezone)
    effective_count = 0 if new_day else int(membership.earned_today_count or 0)

    gap_minutes = int(program.min_gap_minutes or 0)
    if membership.last_earned_at is not None and gap_minutes > 0:
        next_eligible = ensure_aware(membership.last_earned_at) + timedelta(minutes=gap_minutes)
        if now < next_eligible:
            return EarnConstraints(
                allowed=False,
                today=today,
                is_new_day=new_day,
                effective_today_count=effective_count,
                error=LoyaltyErrorCode.TOO_SOON,
                reason="Too soon since your last visit. Try again in a few minutes.",
                next_eligible_at=next_eligible,
            )

    cap = effective_daily_cap(program)
    if cap is not None and effective_count >= cap:
        noun = "visit" if cap == 1 else "visits"
        return EarnConstraints(
            allowed=False,
            today=today,
            is_new_day=new_day,
            effective_today_count=effective_count,
            error=LoyaltyErrorCode.DAILY_LIMIT_REACHED,
            reason=f"You've reached your daily limit of {cap} {noun} for today.",
            next_eligible_at=next_local_midnight(now, program.timezone),
        )

    return EarnConstraints(
        allowed=True,
        today=today,
        is_new_day=new_day,
        effective_today_count=effective_count,
    )
