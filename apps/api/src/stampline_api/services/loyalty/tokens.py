"""Counter QR token rotation with a grace window for the previous token."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from stampline_api.core.settings import settings
from stampline_api.services.loyalty.constraints import ensure_aware


TOKEN_GRACE_WINDOW = timedelta(minutes=settings.loyalty_token_grace_minutes)

_SHORT_CODE_ALPHABET = string.ascii_letters + string.digits


def generate_short_code(length: int) -> str:
    """Return a URL-safe random code drawn from ``[A-Za-z0-9]``."""

    if length <= 0:
        raise ValueError("Short codes require a positive length")
    return "".join(secrets.choice(_SHORT_CODE_ALPHABET) for _ in range(length))


def generate_counter_token() -> str:
    return generate_short_code(settings.loyalty_counter_token_length)


def generate_public_id() -> str:
    return generate_short_code(settings.loyalty_public_id_length)


@dataclass(frozen=True, slots=True)
class CounterTokenState:
    """Current/previous counter token pair.

    Only one previous token is remembered: rotating twice inside the grace
    window drops the token from two rotations ago.
    """

    current: str
    previous: str | None = None
    rotated_at: datetime | None = None

    def rotate(self, *, now: datetime, new_token: str | None = None) -> "CounterTokenState":
        token = new_token or generate_counter_token()
        if token == self.current:
            raise ValueError("Rotated token must differ from the current token")
        return replace(self, current=token, previous=self.current, rotated_at=ensure_aware(now))

    def grace_ends_at(self, grace_window: timedelta = TOKEN_GRACE_WINDOW) -> datetime | None:
        if self.previous is None or self.rotated_at is None:
            return None
        return ensure_aware(self.rotated_at) + grace_window

    def is_valid(
        self,
        provided: str | None,
        *,
        now: datetime,
        grace_window: timedelta = TOKEN_GRACE_WINDOW,
    ) -> bool:
        return is_token_valid(
            current=self.current,
            previous=self.previous,
            rotated_at=self.rotated_at,
            provided=provided,
            now=now,
            grace_window=grace_window,
        )


def constant_time_equals(expected: str, provided: str) -> bool:
    return secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def is_token_valid(
    *,
    current: str,
    previous: str | None,
    rotated_at: datetime | None,
    provided: str | None,
    now: datetime,
    grace_window: timedelta = TOKEN_GRACE_WINDOW,
) -> bool:
    """Accept the current token, or the previous one until the grace window closes."""

    if not provided:
        return False

    if current and constant_time_equals(current, provided):
        return True

    if previous is None or rotated_at is None:
        return False
    if not constant_time_equals(previous, provided):
        return False
    return ensure_aware(now) - ensure_aware(rotated_at) <= grace_window
