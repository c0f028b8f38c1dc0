from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
import enum
import logging
from typing import Literal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from injapanfood.models.coupon import Coupon, CouponType
from injapanfood.services import coupon_repository
from injapanfood.services.coupon_errors import store_faults

logger = logging.getLogger(__name__)

_YEN = Decimal("1")


class RejectionReason(str, enum.Enum):
    not_found = "coupon not found"
    inactive = "coupon inactive"
    not_yet_valid = "coupon not yet valid"
    expired = "coupon expired"
    usage_limit_reached = "usage limit reached"
    user_usage_limit_reached = "user usage limit reached"
    order_amount_too_low = "order amount too low"
    not_applicable = "not applicable to cart items"


@dataclass(frozen=True)
class ValidCoupon:
    coupon: Coupon
    discount_amount: Decimal
    valid: Literal[True] = True


@dataclass(frozen=True)
class InvalidCoupon:
    reason: RejectionReason
    valid: Literal[False] = False


ValidationResult = ValidCoupon | InvalidCoupon


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def quantize_yen(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_YEN, rounding=ROUND_DOWN)


def compute_discount(coupon: Coupon, cart_total: Decimal) -> Decimal:
    total = Decimal(cart_total)
    value = Decimal(coupon.value)
    if coupon.type == CouponType.percentage:
        discount = total * value / Decimal("100")
        if coupon.max_discount_amount is not None:
            discount = min(discount, Decimal(coupon.max_discount_amount))
    else:
        discount = min(value, total)
    return quantize_yen(max(discount, Decimal("0")))


def _window_reason(coupon: Coupon, now: datetime) -> RejectionReason | None:
    if now < as_utc(coupon.valid_from):
        return RejectionReason.not_yet_valid
    if now > as_utc(coupon.valid_until):
        return RejectionReason.expired
    return None


def _matches_allow_list(allowed: list[str] | None, present: Iterable[str] | None) -> bool:
    if not allowed:
        return True
    return not set(allowed).isdisjoint(set(present or ()))


def is_applicable_to_cart(
    coupon: Coupon,
    *,
    product_ids: Iterable[str] | None,
    category_ids: Iterable[str] | None,
) -> bool:
    """Each non-empty allow-list needs at least one match; both lists must pass."""
    return _matches_allow_list(coupon.applicable_products, product_ids) and _matches_allow_list(
        coupon.applicable_categories, category_ids
    )


async def _user_limit_reached(session: AsyncSession, *, coupon_id: UUID, user_id: str, limit: int) -> bool:
    used = await coupon_repository.count_user_usages(session, coupon_id=coupon_id, user_id=user_id)
    return used >= limit


async def validate_coupon(
    session: AsyncSession,
    *,
    code: str,
    user_id: str,
    cart_total: Decimal,
    product_ids: Iterable[str] | None = None,
    category_ids: Iterable[str] | None = None,
    now: datetime | None = None,
) -> ValidationResult:
    """
    Decide whether ``code`` can be applied to the given cart and price the discount.

    Checks run in a fixed order and the first failure is returned. Nothing is
    written; redemption happens separately once the order is confirmed.
    """
    total = Decimal(cart_total)
    if total < 0:
        raise ValueError("cart_total must be non-negative")
    moment = as_utc(now) if now is not None else _now()
    user_key = coupon_repository.normalize_user_id(user_id)

    with store_faults("validate"):
        coupon = await coupon_repository.get_coupon_by_code(session, code=code)
        if coupon is None:
            reason: RejectionReason | None = RejectionReason.not_found
        else:
            reason = await _first_rejection(
                session,
                coupon=coupon,
                user_id=user_key,
                cart_total=total,
                product_ids=product_ids,
                category_ids=category_ids,
                now=moment,
            )

    if coupon is None or reason is not None:
        reason = reason or RejectionReason.not_found
        logger.debug("coupon_rejected", extra={"coupon_code": coupon_repository.normalize_code(code), "reason": reason.value})
        return InvalidCoupon(reason=reason)

    return ValidCoupon(coupon=coupon, discount_amount=compute_discount(coupon, total))


async def _first_rejection(
    session: AsyncSession,
    *,
    coupon: Coupon,
    user_id: str,
    cart_total: Decimal,
    product_ids: Iterable[str] | None,
    category_ids: Iterable[str] | None,
    now: datetime,
) -> RejectionReason | None:
    if not coupon.is_active:
        return RejectionReason.inactive
    window = _window_reason(coupon, now)
    if window is not None:
        return window
    if coupon.usage_limit is not None and int(coupon.used_count or 0) >= int(coupon.usage_limit):
        return RejectionReason.usage_limit_reached
    if coupon.user_usage_limit is not None and await _user_limit_reached(
        session, coupon_id=coupon.id, user_id=user_id, limit=int(coupon.user_usage_limit)
    ):
        return RejectionReason.user_usage_limit_reached
    if coupon.min_order_amount is not None and cart_total < Decimal(coupon.min_order_amount):
        return RejectionReason.order_amount_too_low
    if not is_applicable_to_cart(coupon, product_ids=product_ids, category_ids=category_ids):
        return RejectionReason.not_applicable
    return None
