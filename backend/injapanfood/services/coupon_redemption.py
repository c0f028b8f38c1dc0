from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from uuid import UUID, uuid4

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from injapanfood.core.config import settings
from injapanfood.models.coupon import Coupon, CouponUsage
from injapanfood.services import coupon_repository
from injapanfood.services.coupon_errors import (
    TRANSIENT_STORE_ERRORS,
    CouponNotFound,
    CouponOrderConflict,
    CouponStoreUnavailable,
    CouponUsageLimitExceeded,
    CouponUserLimitExceeded,
)
from injapanfood.services.coupon_validation import quantize_yen

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionReceipt:
    usage_id: UUID
    coupon_id: UUID
    user_id: str
    order_id: str
    discount_amount: Decimal
    used_at: datetime
    replayed: bool
    used_count: int | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _receipt(usage: CouponUsage, *, replayed: bool, used_count: int | None = None) -> RedemptionReceipt:
    return RedemptionReceipt(
        usage_id=usage.id,
        coupon_id=usage.coupon_id,
        user_id=usage.user_id,
        order_id=usage.order_id,
        discount_amount=Decimal(usage.discount_amount),
        used_at=usage.used_at,
        replayed=replayed,
        used_count=used_count,
    )


async def _rollback_quietly(session: AsyncSession) -> None:
    with suppress(*TRANSIENT_STORE_ERRORS):
        await session.rollback()


async def _replay(session: AsyncSession, existing: CouponUsage, *, coupon_id: UUID) -> RedemptionReceipt:
    # Snapshot before rollback expires the instance.
    receipt = _receipt(existing, replayed=True)
    await session.rollback()
    if receipt.coupon_id != coupon_id:
        logger.warning(
            "coupon_redeem_order_conflict",
            extra={"order_id": receipt.order_id, "coupon_id": str(coupon_id), "recorded_coupon_id": str(receipt.coupon_id)},
        )
        raise CouponOrderConflict()
    logger.info("coupon_redeem_replayed", extra={"order_id": receipt.order_id, "coupon_id": str(coupon_id)})
    return receipt


async def _increment_used_count(session: AsyncSession, *, coupon_id: UUID, now: datetime) -> bool:
    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def _redeem_once(
    session: AsyncSession,
    *,
    coupon_id: UUID,
    user_id: str,
    order_id: str,
    discount_amount: Decimal,
) -> RedemptionReceipt:
    existing = await coupon_repository.get_usage_by_order(session, order_id=order_id)
    if existing is not None:
        return await _replay(session, existing, coupon_id=coupon_id)

    now = _now()
    if not await _increment_used_count(session, coupon_id=coupon_id, now=now):
        # A concurrent redemption of the same order may have committed while we waited for the row.
        existing = await coupon_repository.get_usage_by_order(session, order_id=order_id)
        if existing is not None:
            return await _replay(session, existing, coupon_id=coupon_id)
        coupon = await coupon_repository.get_coupon_by_id(session, coupon_id=coupon_id)
        await session.rollback()
        if coupon is None:
            raise CouponNotFound()
        logger.info("coupon_redeem_limit_exceeded", extra={"coupon_id": str(coupon_id), "order_id": order_id})
        raise CouponUsageLimitExceeded()

    coupon = await coupon_repository.get_coupon_by_id(session, coupon_id=coupon_id, fresh=True)
    if coupon is None:  # pragma: no cover - the UPDATE above matched the row
        await session.rollback()
        raise CouponNotFound()
    used_count = int(coupon.used_count)
    user_limit = coupon.user_usage_limit
    if user_limit is not None:
        used_by_user = await coupon_repository.count_user_usages(session, coupon_id=coupon_id, user_id=user_id)
        if used_by_user >= int(user_limit):
            await session.rollback()
            logger.info(
                "coupon_redeem_user_limit_exceeded",
                extra={"coupon_id": str(coupon_id), "order_id": order_id, "user_id": user_id},
            )
            raise CouponUserLimitExceeded()

    usage = CouponUsage(
        id=uuid4(),
        coupon_id=coupon_id,
        user_id=user_id,
        order_id=order_id,
        discount_amount=discount_amount,
        used_at=now,
    )
    session.add(usage)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await coupon_repository.get_usage_by_order(session, order_id=order_id)
        if existing is None:
            raise
        return await _replay(session, existing, coupon_id=coupon_id)

    logger.info(
        "coupon_redeemed",
        extra={
            "coupon_id": str(coupon_id),
            "order_id": order_id,
            "user_id": user_id,
            "discount_amount": str(discount_amount),
            "used_count": used_count,
        },
    )
    return _receipt(usage, replayed=False, used_count=used_count)


async def redeem_coupon(
    session: AsyncSession,
    *,
    coupon_id: UUID,
    user_id: str,
    order_id: str,
    discount_amount: Decimal,
    max_attempts: int | None = None,
) -> RedemptionReceipt:
    """
    Record that ``order_id`` consumed the coupon: bump ``used_count`` and append a usage row.

    Both writes share one transaction. The counter is bumped with a conditional
    UPDATE, so the usage cap holds even when validation raced ahead for several
    orders. Calling again with the same order id returns the original receipt.
    """
    order_key = (order_id or "").strip()
    if not order_key:
        raise ValueError("order_id is required")
    user_key = coupon_repository.normalize_user_id(user_id)
    amount = quantize_yen(Decimal(discount_amount))
    if amount < 0:
        raise ValueError("discount_amount must be non-negative")

    attempts = max(1, int(max_attempts or settings.coupon_redeem_max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await _redeem_once(
                session,
                coupon_id=coupon_id,
                user_id=user_key,
                order_id=order_key,
                discount_amount=amount,
            )
        except TRANSIENT_STORE_ERRORS as exc:
            await _rollback_quietly(session)
            if attempt >= attempts:
                logger.error(
                    "coupon_redeem_store_unavailable",
                    extra={"coupon_id": str(coupon_id), "order_id": order_key, "attempts": attempt, "error": str(exc)},
                )
                raise CouponStoreUnavailable() from exc
            logger.warning(
                "coupon_redeem_retry",
                extra={"coupon_id": str(coupon_id), "order_id": order_key, "attempt": attempt, "error": str(exc)},
            )
            await asyncio.sleep(settings.coupon_redeem_retry_backoff_seconds * attempt)
    raise CouponStoreUnavailable()  # pragma: no cover - loop always returns or raises
