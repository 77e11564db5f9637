"""
Shared fixtures: one SQLite file database per test, identity helpers and an
HTTP client bound to the same database.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from group_tiers.database import get_db
from group_tiers.main import app
from group_tiers.orm.base import Base
from group_tiers.rate_limit import limiter
from group_tiers.rbac import ADMIN, STUDENT, Principal
from group_tiers.services import (
    group_service, identity_service, phase_service, policy_service
)
from group_tiers.tests.helpers import ADMIN_USER_ID, DEFAULT_TARGETS, PHASE_START

limiter.enabled = False


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'group_tiers_test.db'}",
        connect_args={"timeout": 30.0},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def admin(db) -> Principal:
    await identity_service.register_admin(db, user_id=ADMIN_USER_ID, name="Registrar")
    return Principal(user_id=ADMIN_USER_ID, role=ADMIN)


@pytest.fixture
def make_student(db):
    """Factory: register a student profile, return (student_id, principal)."""
    counter = {"next": 100}

    async def factory(name: str = None):
        counter["next"] += 1
        user_id = counter["next"]
        student = await identity_service.register_student(
            db, user_id=user_id, name=name or f"Student {user_id}", email=f"s{user_id}@example.edu"
        )
        return student.id, Principal(user_id=user_id, role=STUDENT)

    return factory


@pytest.fixture
def make_group(db, admin):
    async def factory(code: str, tier: str = "D"):
        group = await group_service.create_group(
            db, {"group_code": code, "group_name": f"Group {code}", "tier": tier}, admin
        )
        return group["group_id"]

    return factory


@pytest_asyncio.fixture
async def small_policy(db, admin):
    """Groups of 2..4 members, leadership not required for activation."""
    return await policy_service.update_operational_policy(
        db,
        {
            "min_group_members": 2,
            "max_group_members": 4,
            "require_leadership_for_activation": False,
            "incubation_duration_days": 0,
        },
        admin,
    )


@pytest.fixture
def make_phase(db, admin):
    async def factory(start_date: str = PHASE_START, targets=None, individual_target: float = 50, **extra):
        payload = {
            "start_date": start_date,
            "total_working_days": 10,
            "change_day_number": 5,
            "targets": targets or DEFAULT_TARGETS,
            "individual_target": individual_target,
        }
        payload.update(extra)
        return await phase_service.create_phase(db, payload, admin)

    return factory


# =============================================================================
# HTTP
# =============================================================================

@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()

