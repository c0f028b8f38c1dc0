import asyncio
import os
from collections.abc import AsyncIterator, Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
os.environ["REDIS_URL"] = ""

from injapanfood.db.session import build_engine, build_session_factory, get_session  # noqa: E402
from injapanfood.main import app  # noqa: E402
from injapanfood.models import Base, Coupon, CouponType  # noqa: E402


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_app_state() -> Generator[None, None, None]:
    # The limiter and counters live on the shared app instance and would leak across tests.
    app.state.coupon_validate_limiter.reset()
    app.state.metrics.reset()
    yield
    app.dependency_overrides.clear()
    app.state.coupon_validate_limiter.reset()
    app.state.metrics.reset()


def sqlite_url(tmp_path: Path) -> str:
    # A file database: in-memory SQLite shares a single connection across sessions.
    return f"sqlite+aiosqlite:///{tmp_path / 'coupons.db'}"


async def _create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(sqlite_url(tmp_path))
    await _create_schema(engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


def make_test_client(tmp_path: Path) -> tuple[TestClient, async_sessionmaker[AsyncSession]]:
    engine = build_engine(sqlite_url(tmp_path))
    asyncio.run(_create_schema(engine))
    SessionLocal = build_session_factory(engine)

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    return TestClient(app), SessionLocal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coupon_fields(**overrides: Any) -> dict[str, Any]:
    now = utcnow()
    fields: dict[str, Any] = {
        "code": "SAVE10",
        "name": "Ten percent off",
        "type": CouponType.percentage,
        "value": Decimal("10"),
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=30),
        "is_active": True,
        "used_count": 0,
        "applicable_products": [],
        "applicable_categories": [],
    }
    fields.update(overrides)
    return fields


async def add_coupon(session_factory: async_sessionmaker[AsyncSession], **overrides: Any) -> Coupon:
    async with session_factory() as session:
        coupon = Coupon(**coupon_fields(**overrides))
        session.add(coupon)
        await session.commit()
        await session.refresh(coupon)
        return coupon
