import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import stampline_api.models  # noqa: E402,F401
from stampline_api.app import create_app  # noqa: E402
from stampline_api.db.base import Base  # noqa: E402
from stampline_api.db.session import get_session  # noqa: E402
from stampline_api.observability.loyalty import get_loyalty_store  # noqa: E402


async def _build_factory(url: str):
    engine = create_async_engine(url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture(autouse=True)
def reset_loyalty_store():
    get_loyalty_store().reset()
    yield
    get_loyalty_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _build_factory("sqlite+aiosqlite:///:memory:")

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions backed by separate connections so concurrent writers really race."""

    engine, factory = await _build_factory(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}")

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def create_active_program():
    """Return a coroutine that persists an active program with sensible defaults."""

    from stampline_api.models.loyalty import LoyaltyProgramStatus
    from stampline_api.services.loyalty import LoyaltyProgramDefinition, ProgramRegistry

    async def _create(session, **overrides):
        values = {
            "business_id": "biz-coffee",
            "business_name": "Bean There",
            "reward_threshold": 10,
            "reward_description": "Free coffee",
            "timezone": "Europe/London",
        }
        values.update(overrides)
        registry = ProgramRegistry(session)
        program = await registry.create_program(LoyaltyProgramDefinition(**values))
        await registry.transition(program.id, LoyaltyProgramStatus.SUBMITTED)
        return await registry.transition(program.id, LoyaltyProgramStatus.ACTIVE)

    return _create
