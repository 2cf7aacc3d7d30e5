"""Program registry: definitions, lifecycle transitions, and counter token rotation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from stampline_api.core.settings import settings
from stampline_api.models.loyalty import (
    LoyaltyEarnMode,
    LoyaltyProgram,
    LoyaltyProgramStatus,
    LoyaltyProgramType,
)
from stampline_api.observability.loyalty import get_loyalty_store
from stampline_api.services.loyalty.constraints import ensure_aware, resolve_timezone, utcnow
from stampline_api.services.loyalty.errors import (
    ConcurrentUpdateError,
    InvalidProgramDefinitionError,
    InvalidProgramTransitionError,
    ProgramNotFoundError,
    PublicIdAllocationError,
)
from stampline_api.services.loyalty.tokens import (
    CounterTokenState,
    generate_counter_token,
    generate_public_id,
)


ALLOWED_TRANSITIONS: dict[LoyaltyProgramStatus, frozenset[LoyaltyProgramStatus]] = {
    LoyaltyProgramStatus.DRAFT: frozenset({LoyaltyProgramStatus.SUBMITTED}),
    LoyaltyProgramStatus.SUBMITTED: frozenset({LoyaltyProgramStatus.ACTIVE, LoyaltyProgramStatus.DRAFT}),
    LoyaltyProgramStatus.ACTIVE: frozenset({LoyaltyProgramStatus.PAUSED, LoyaltyProgramStatus.ENDED}),
    LoyaltyProgramStatus.PAUSED: frozenset({LoyaltyProgramStatus.ACTIVE, LoyaltyProgramStatus.ENDED}),
    LoyaltyProgramStatus.ENDED: frozenset(),
}


def can_transition(current: LoyaltyProgramStatus, target: LoyaltyProgramStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


# Icon keys the wallet pass and card renderers know how to draw.
STAMP_ICONS: frozenset[str] = frozenset(
    {
        "stamp",
        "bean",
        "scissors",
        "flame",
        "burger",
        "cocktail",
        "pizza",
        "star",
        "heart",
        "cake",
        "dumbbell",
        "paw",
    }
)


@dataclass
class LoyaltyProgramDefinition:
    """Business-supplied rules and branding for a new program."""

    business_id: str
    reward_threshold: int
    reward_description: str
    business_name: Optional[str] = None
    program_name: Optional[str] = None
    program_type: LoyaltyProgramType = LoyaltyProgramType.STAMPS
    earn_mode: LoyaltyEarnMode = LoyaltyEarnMode.PER_VISIT
    earn_increment: int = 1
    max_earns_per_day: int = 1
    allow_uncapped_earns: bool = False
    min_gap_minutes: int = 0
    timezone: str = "Europe/London"
    stamp_label: str = "Stamps"
    stamp_icon: str = "stamp"
    pass_template_id: Optional[str] = None
    pass_api_key: Optional[str] = None
    pass_type_id: Optional[str] = None

    def validate(self) -> None:
        if not self.business_id:
            raise InvalidProgramDefinitionError("business_id is required")
        if not self.reward_description or not self.reward_description.strip():
            raise InvalidProgramDefinitionError("reward_description is required")
        if self.reward_threshold <= 0:
            raise InvalidProgramDefinitionError("reward_threshold must be positive")
        if self.earn_increment <= 0:
            raise InvalidProgramDefinitionError("earn_increment must be positive")
        if self.min_gap_minutes < 0:
            raise InvalidProgramDefinitionError("min_gap_minutes cannot be negative")
        if self.max_earns_per_day < 0:
            raise InvalidProgramDefinitionError("max_earns_per_day cannot be negative")
        if self.max_earns_per_day == 0 and not self.allow_uncapped_earns:
            raise InvalidProgramDefinitionError(
                "max_earns_per_day must be at least 1 unless allow_uncapped_earns is set"
            )
        if self.stamp_icon not in STAMP_ICONS:
            raise InvalidProgramDefinitionError(f"Unknown stamp_icon {self.stamp_icon!r}")
        try:
            resolve_timezone(self.timezone)
        except ValueError as error:
            raise InvalidProgramDefinitionError(str(error)) from error


class ProgramRegistry:
    """Coordinates program persistence for the admin surface and the engines."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        public_id_factory: Callable[[], str] = generate_public_id,
    ) -> None:
        self._db = session
        self._public_id_factory = public_id_factory
        self._store = get_loyalty_store()

    async def get_program(self, program_id: UUID) -> LoyaltyProgram | None:
        return await self._db.get(LoyaltyProgram, program_id)

    async def get_by_public_id(self, public_id: str) -> LoyaltyProgram | None:
        stmt = select(LoyaltyProgram).where(LoyaltyProgram.public_id == public_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_by_public_id(self, public_id: str) -> LoyaltyProgram:
        program = await self.get_by_public_id(public_id)
        if program is None:
            raise ProgramNotFoundError(public_id)
        return program

    async def create_program(self, definition: LoyaltyProgramDefinition) -> LoyaltyProgram:
        """Persist a draft program, regenerating the public id on collision."""

        definition.validate()
        attempts = settings.loyalty_public_id_max_attempts

        for attempt in range(1, attempts + 1):
            program = LoyaltyProgram(
                public_id=self._public_id_factory(),
                business_id=definition.business_id,
                business_name=definition.business_name,
                program_name=definition.program_name,
                program_type=definition.program_type,
                reward_threshold=definition.reward_threshold,
                reward_description=definition.reward_description.strip(),
                stamp_label=definition.stamp_label,
                stamp_icon=definition.stamp_icon,
                earn_mode=definition.earn_mode,
                earn_increment=definition.earn_increment,
                max_earns_per_day=definition.max_earns_per_day,
                allow_uncapped_earns=definition.allow_uncapped_earns,
                min_gap_minutes=definition.min_gap_minutes,
                timezone=definition.timezone,
                status=LoyaltyProgramStatus.DRAFT,
                pass_template_id=definition.pass_template_id,
                pass_api_key=definition.pass_api_key,
                pass_type_id=definition.pass_type_id,
                counter_qr_token=generate_counter_token(),
            )
            self._db.add(program)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                logger.warning(
                    "Public id collision while creating loyalty program",
                    business_id=definition.business_id,
                    attempt=attempt,
                )
                continue

            self._store.record_program_event("created")
            logger.info(
                "Created loyalty program",
                program_id=str(program.id),
                public_id=program.public_id,
                business_id=program.business_id,
            )
            return program

        raise PublicIdAllocationError(f"Could not allocate a unique public id after {attempts} attempts")

    async def rotate_token(self, program_id: UUID, *, now: datetime | None = None) -> str:
        """Swap current→previous and issue a fresh counter token."""

        rotated_at = ensure_aware(now or utcnow())

        def _rotate(program: LoyaltyProgram) -> None:
            state = CounterTokenState(
                current=program.counter_qr_token,
                previous=program.previous_counter_qr_token,
                rotated_at=program.token_rotated_at,
            ).rotate(now=rotated_at)
            program.counter_qr_token = state.current
            program.previous_counter_qr_token = state.previous
            program.token_rotated_at = state.rotated_at

        program = await self._mutate(program_id, _rotate, action="rotate_token")
        self._store.record_program_event("token_rotated")
        logger.info("Rotated counter token", program_id=str(program_id), public_id=program.public_id)
        return program.counter_qr_token

    async def transition(self, program_id: UUID, target_status: LoyaltyProgramStatus) -> LoyaltyProgram:
        previous: dict[str, LoyaltyProgramStatus] = {}

        def _transition(program: LoyaltyProgram) -> None:
            current = LoyaltyProgramStatus(program.status)
            if not can_transition(current, target_status):
                raise InvalidProgramTransitionError(current, target_status)
            previous["status"] = current
            program.status = target_status

        program = await self._mutate(program_id, _transition, action="transition")
        self._store.record_program_event(f"status:{target_status.value}")
        logger.info(
            "Transitioned loyalty program",
            program_id=str(program_id),
            from_status=previous["status"].value,
            to_status=target_status.value,
        )
        return program

    async def _mutate(
        self,
        program_id: UUID,
        mutate: Callable[[LoyaltyProgram], None],
        *,
        action: str,
    ) -> LoyaltyProgram:
        attempts = settings.loyalty_mutation_max_attempts
        for attempt in range(1, attempts + 1):
            stmt = (
                select(LoyaltyProgram)
                .where(LoyaltyProgram.id == program_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            program = (await self._db.execute(stmt)).scalar_one_or_none()
            if program is None:
                await self._db.rollback()
                raise ProgramNotFoundError(program_id)

            try:
                mutate(program)
            except Exception:
                await self._db.rollback()
                raise

            try:
                await self._db.commit()
            except StaleDataError:
                await self._db.rollback()
                logger.info("Retrying program update after version conflict", action=action, attempt=attempt)
                continue
            return program

        raise ConcurrentUpdateError(f"Program {program_id} kept changing during {action}")


__all__ = [
    "ALLOWED_TRANSITIONS",
    "STAMP_ICONS",
    "LoyaltyProgramDefinition",
    "ProgramRegistry",
    "can_transition",
]
