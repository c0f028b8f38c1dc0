from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from injapanfood.core.config import settings
from injapanfood.models.coupon import Coupon, CouponUsage


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def normalize_user_id(user_id: str | None) -> str:
    """Blank ids collapse onto the shared guest identity."""
    return (user_id or "").strip() or settings.guest_user_id


async def get_coupon_by_code(session: AsyncSession, *, code: str) -> Coupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    res = await session.execute(select(Coupon).where(Coupon.code == cleaned))
    return res.scalar_one_or_none()


async def get_coupon_by_id(
    session: AsyncSession, *, coupon_id: UUID, fresh: bool = False, for_update: bool = False
) -> Coupon | None:
    # fresh=True bypasses the identity map so counters written by UPDATE statements are visible.
    # for_update=True holds the row lock until commit.
    return await session.get(Coupon, coupon_id, populate_existing=fresh or for_update, with_for_update=for_update)


async def list_coupons(session: AsyncSession) -> list[Coupon]:
    result = await session.execute(select(Coupon).order_by(Coupon.created_at.desc(), Coupon.code))
    return list(result.scalars().all())


async def list_active_coupons(session: AsyncSession, *, now: datetime) -> list[Coupon]:
    result = await session.execute(
        select(Coupon)
        .where(
            Coupon.is_active.is_(True),
            Coupon.valid_from <= now,
            Coupon.valid_until >= now,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .order_by(Coupon.valid_from.desc(), Coupon.code)
    )
    return list(result.scalars().all())


async def count_user_usages(session: AsyncSession, *, coupon_id: UUID, user_id: str) -> int:
    return int(
        (
            await session.execute(
                select(func.count())
                .select_from(CouponUsage)
                .where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
            )
        )
        .scalar_one()
    )


async def get_usage_by_order(session: AsyncSession, *, order_id: str) -> CouponUsage | None:
    res = await session.execute(select(CouponUsage).where(CouponUsage.order_id == order_id))
    return res.scalars().first()


async def list_usage_history(session: AsyncSession, *, coupon_id: UUID) -> list[CouponUsage]:
    result = await session.execute(
        select(CouponUsage)
        .where(CouponUsage.coupon_id == coupon_id)
        .order_by(CouponUsage.used_at.desc(), CouponUsage.order_id)
    )
    return list(result.scalars().all())
