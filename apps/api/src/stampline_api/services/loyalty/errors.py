"""Outcome codes and exceptions for the loyalty engine."""

from __future__ import annotations

from enum import Enum
from uuid import UUID

from stampline_api.models.loyalty import LoyaltyProgramStatus


class LoyaltyErrorCode(str, Enum):
    """Expected, user-facing rejection reasons returned inside results."""

    PROGRAM_NOT_FOUND = "program_not_found"
    PROGRAM_NOT_ACTIVE = "program_not_active"
    INVALID_TOKEN = "invalid_token"
    TOO_SOON = "too_soon"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    MEMBERSHIP_NOT_FOUND = "membership_not_found"
    RATE_LIMITED = "rate_limited"
    IP_VELOCITY = "ip_velocity"
    CONFLICT = "conflict"


class LoyaltyError(RuntimeError):
    """Base exception for loyalty administration failures."""


class ProgramNotFoundError(LoyaltyError):
    """Raised when an administrative call targets a missing program."""

    def __init__(self, reference: UUID | str) -> None:
        super().__init__(f"Loyalty program {reference} not found")
        self.reference = reference


class InvalidProgramDefinitionError(LoyaltyError, ValueError):
    """Raised when program rules fail validation."""


class InvalidProgramTransitionError(LoyaltyError):
    """Raised when a lifecycle transition violates the program state machine."""

    def __init__(self, current_status: LoyaltyProgramStatus, requested_status: LoyaltyProgramStatus) -> None:
        message = f"Cannot transition program from {current_status.value} to {requested_status.value}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class PublicIdAllocationError(LoyaltyError):
    """Raised when every generated public id collided with an existing program."""


class ConcurrentUpdateError(LoyaltyError):
    """Raised when an administrative row update kept losing the version race."""
