"""IP hashing and scan abuse guards backed by the earn audit trail."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stampline_api.core.settings import settings
from stampline_api.models.loyalty import LoyaltyEarnEvent
from stampline_api.services.loyalty.errors import LoyaltyErrorCode


UNKNOWN_IP = "unknown"


def hash_ip(ip: str | None, *, salt: str | None = None) -> str:
    """Return the SHA-256 hex digest of ``ip``; raw addresses are never stored."""

    value = (ip or "").strip() or UNKNOWN_IP
    effective_salt = settings.loyalty_ip_hash_salt if salt is None else salt
    return hashlib.sha256(f"{effective_salt}{value}".encode("utf-8")).hexdigest()


def client_ip_from_headers(forwarded_for: str | None, peer: str | None) -> str:
    """First ``X-Forwarded-For`` hop, falling back to the socket peer."""

    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return peer or UNKNOWN_IP


@dataclass(slots=True)
class GuardRejection:
    error: LoyaltyErrorCode
    reason: str


@dataclass(slots=True)
class EarnGuardLimits:
    per_pass_per_hour: int
    per_ip_per_hour: int
    velocity_threshold: int
    velocity_window: timedelta

    @classmethod
    def from_settings(cls) -> "EarnGuardLimits":
        return cls(
            per_pass_per_hour=settings.loyalty_earn_limit_per_pass_per_hour,
            per_ip_per_hour=settings.loyalty_earn_limit_per_ip_per_hour,
            velocity_threshold=settings.loyalty_ip_velocity_threshold,
            velocity_window=timedelta(minutes=settings.loyalty_ip_velocity_window_minutes),
        )


class EarnAbuseGuard:
    """Count recent attempts (valid or not) and reject scans that look scripted.

    A limit of zero disables the corresponding guard.
    """

    def __init__(self, session: AsyncSession, limits: EarnGuardLimits | None = None) -> None:
        self._db = session
        self._limits = limits or EarnGuardLimits.from_settings()

    async def check(
        self,
        *,
        business_id: str,
        customer_pass_id: str,
        ip_hash: str,
        now: datetime,
    ) -> GuardRejection | None:
        limits = self._limits
        hour_ago = now - timedelta(hours=1)

        if limits.per_pass_per_hour > 0:
            attempts = await self._count(LoyaltyEarnEvent.customer_pass_id == customer_pass_id, since=hour_ago)
            if attempts >= limits.per_pass_per_hour:
                logger.warning(
                    "Earn rate limit reached for pass",
                    customer_pass_id=customer_pass_id,
                    attempts=attempts,
                )
                return GuardRejection(
                    error=LoyaltyErrorCode.RATE_LIMITED,
                    reason="Too many attempts. Please try again later.",
                )

        if limits.per_ip_per_hour > 0:
            attempts = await self._count(LoyaltyEarnEvent.ip_hash == ip_hash, since=hour_ago)
            if attempts >= limits.per_ip_per_hour:
                logger.warning("Earn rate limit reached for ip", ip_hash=ip_hash, attempts=attempts)
                return GuardRejection(
                    error=LoyaltyErrorCode.RATE_LIMITED,
                    reason="Too many attempts from this location.",
                )

        if limits.velocity_threshold > 0:
            stmt = (
                select(LoyaltyEarnEvent.customer_pass_id)
                .where(
                    LoyaltyEarnEvent.ip_hash == ip_hash,
                    LoyaltyEarnEvent.business_id == business_id,
                    LoyaltyEarnEvent.earned_at >= now - limits.velocity_window,
                )
                .distinct()
            )
            result = await self._db.execute(stmt)
            passes = set(result.scalars().all())
            passes.add(customer_pass_id)
            if len(passes) > limits.velocity_threshold:
                logger.warning(
                    "IP velocity threshold exceeded",
                    ip_hash=ip_hash,
                    business_id=business_id,
                    distinct_passes=len(passes),
                )
                return GuardRejection(
                    error=LoyaltyErrorCode.IP_VELOCITY,
                    reason="Suspicious activity detected. Please try again later.",
                )

        return None

    async def _count(self, criterion, *, since: datetime) -> int:
        stmt = select(func.count(LoyaltyEarnEvent.id)).where(criterion, LoyaltyEarnEvent.earned_at >= since)
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)


__all__ = [
    "EarnAbuseGuard",
    "EarnGuardLimits",
    "GuardRejection",
    "client_ip_from_headers",
    "hash_ip",
]
