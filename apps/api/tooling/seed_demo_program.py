"""Seed an active demo loyalty program into the API database."""

from __future__ import annotations

import asyncio
import os

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from stampline_api.core.settings import settings
from stampline_api.models.loyalty import LoyaltyProgram, LoyaltyProgramStatus
from stampline_api.services.loyalty import LoyaltyProgramDefinition, ProgramRegistry


DEMO_BUSINESS_ID = os.getenv("DEMO_BUSINESS_ID", "demo-coffee")


async def seed_program(session: AsyncSession) -> LoyaltyProgram:
    existing = await session.execute(
        select(LoyaltyProgram).where(LoyaltyProgram.business_id == DEMO_BUSINESS_ID)
    )
    record = existing.scalars().first()
    if record is not None:
        return record

    registry = ProgramRegistry(session)
    program = await registry.create_program(
        LoyaltyProgramDefinition(
            business_id=DEMO_BUSINESS_ID,
            business_name="Demo Coffee",
            program_name="Coffee Card",
            reward_threshold=10,
            reward_description="Free coffee",
            stamp_label="Stamps",
            stamp_icon="bean",
            timezone=os.getenv("DEMO_TIMEZONE", "Europe/London"),
        )
    )
    await registry.transition(program.id, LoyaltyProgramStatus.SUBMITTED)
    return await registry.transition(program.id, LoyaltyProgramStatus.ACTIVE)


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            program = await seed_program(session)
        print(f"Demo program ready: publicId={program.public_id} token={program.counter_qr_token}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
