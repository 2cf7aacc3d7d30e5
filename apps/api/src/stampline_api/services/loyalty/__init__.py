"""Loyalty service exports."""

from .analytics import LoyaltyAnalyticsService, LoyaltyProgramSummary  # noqa: F401
from .earn import EarnEngine  # noqa: F401
from .errors import (  # noqa: F401
    ConcurrentUpdateError,
    InvalidProgramDefinitionError,
    InvalidProgramTransitionError,
    LoyaltyError,
    LoyaltyErrorCode,
    ProgramNotFoundError,
    PublicIdAllocationError,
)
from .memberships import JOINABLE_PROGRAM_STATUSES, MembershipJoin, MembershipStore  # noqa: F401
from .pass_sync import (  # noqa: F401
    InMemoryPassSyncNotifier,
    LoggingPassSyncNotifier,
    PassSyncNotifier,
    PassSyncRequest,
    dispatch_pass_sync,
    get_pass_sync_notifier,
)
from .programs import LoyaltyProgramDefinition, ProgramRegistry  # noqa: F401
from .redemption import RedemptionEngine  # noqa: F401
from .results import ConsumeResult, EarnResult, RedemptionStatus  # noqa: F401
from .tokens import CounterTokenState, is_token_valid  # noqa: F401
