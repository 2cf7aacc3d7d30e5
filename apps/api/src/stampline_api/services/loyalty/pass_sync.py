"""Wallet pass field delivery boundary.

The engines only compose field values; delivering them to a pass provider is
delegated to a :class:`PassSyncNotifier`. Deliveries run after the membership
change has been committed and a failed delivery never affects the earn or
redemption outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Protocol

from loguru import logger

from stampline_api.models.loyalty import LoyaltyMembership, LoyaltyProgram
from stampline_api.observability.loyalty import get_loyalty_store
from stampline_api.services.loyalty.pass_fields import can_sync_pass


@dataclass(frozen=True, slots=True)
class PassSyncRequest:
    """Detached snapshot of what to push; safe to use after the session closes."""

    program_public_id: str
    pass_template_id: str
    pass_type_id: str
    pass_api_key: str = field(repr=False)
    serial: str
    fields: dict[str, str]


class PassSyncNotifier(Protocol):
    """Protocol for wallet pass providers."""

    async def push_fields(self, request: PassSyncRequest) -> None:
        ...


class LoggingPassSyncNotifier:
    """Default notifier that records the intended update without network IO."""

    async def push_fields(self, request: PassSyncRequest) -> None:
        logger.info(
            "Pass field update",
            program_public_id=request.program_public_id,
            pass_type_id=request.pass_type_id,
            serial=request.serial,
            fields=sorted(request.fields),
        )


@dataclass
class InMemoryPassSyncNotifier:
    """Stores pass updates for inspection in tests."""

    sent: List[PassSyncRequest] = field(default_factory=list)

    async def push_fields(self, request: PassSyncRequest) -> None:
        self.sent.append(request)


def build_pass_sync_request(
    program: LoyaltyProgram,
    membership: LoyaltyMembership,
    fields: dict[str, str],
) -> PassSyncRequest | None:
    if not can_sync_pass(program, membership):
        return None
    return PassSyncRequest(
        program_public_id=program.public_id,
        pass_template_id=program.pass_template_id,
        pass_type_id=program.pass_type_id,
        pass_api_key=program.pass_api_key,
        serial=membership.pass_serial,
        fields=dict(fields),
    )


async def dispatch_pass_sync(notifier: PassSyncNotifier, request: PassSyncRequest) -> bool:
    """Deliver ``request``; failures are logged and reported as ``False``."""

    store = get_loyalty_store()
    try:
        await notifier.push_fields(request)
    except Exception:
        store.record_pass_sync("failed")
        logger.exception(
            "Pass field update failed",
            program_public_id=request.program_public_id,
            serial=request.serial,
        )
        return False
    store.record_pass_sync("delivered")
    return True


_DEFAULT_NOTIFIER: PassSyncNotifier = LoggingPassSyncNotifier()


def get_pass_sync_notifier() -> PassSyncNotifier:
    return _DEFAULT_NOTIFIER


__all__ = [
    "InMemoryPassSyncNotifier",
    "LoggingPassSyncNotifier",
    "PassSyncNotifier",
    "PassSyncRequest",
    "build_pass_sync_request",
    "dispatch_pass_sync",
    "get_pass_sync_notifier",
]
