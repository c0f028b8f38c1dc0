from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from injapanfood.models.coupon import Coupon, CouponType, CouponUsage
from injapanfood.schemas.coupon import CouponCreate, CouponUpdate
from injapanfood.services import coupon_repository
from injapanfood.services.coupon_errors import (
    CouponCodeConflict,
    CouponInvariantViolation,
    CouponNotFound,
    store_faults,
)
from injapanfood.services.coupon_validation import as_utc

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean_ids(values: list[str] | None) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for raw in values or []:
        value = str(raw or "").strip()
        if not value or value in seen:
            continue
        seen.add(value)
        cleaned.append(value)
    return cleaned


def _check_invariants(coupon: Coupon) -> None:
    value = Decimal(coupon.value)
    if value <= 0:
        raise CouponInvariantViolation("Coupon value must be positive")
    if coupon.type == CouponType.percentage and value > 100:
        raise CouponInvariantViolation("Percentage coupons must have a value between 0 and 100")
    if as_utc(coupon.valid_from) > as_utc(coupon.valid_until):
        raise CouponInvariantViolation("valid_from must not be after valid_until")
    if coupon.usage_limit is not None and int(coupon.used_count or 0) > int(coupon.usage_limit):
        raise CouponInvariantViolation("usage_limit cannot be lower than the number of redemptions already recorded")


async def _ensure_code_available(session: AsyncSession, *, code: str, exclude_id: UUID | None = None) -> None:
    existing = await coupon_repository.get_coupon_by_code(session, code=code)
    if existing is not None and existing.id != exclude_id:
        raise CouponCodeConflict()


async def _commit_or_conflict(session: AsyncSession) -> None:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if "ck_coupons_" in str(exc.orig):
            raise CouponInvariantViolation("Coupon fields violate a stored constraint") from exc
        raise CouponCodeConflict() from exc


async def create_coupon(session: AsyncSession, payload: CouponCreate, *, created_by: str | None) -> Coupon:
    code = coupon_repository.normalize_code(payload.code)
    if len(code) < 3:
        raise CouponInvariantViolation("Coupon code must have at least 3 characters")
    now = _now()
    with store_faults("create"):
        await _ensure_code_available(session, code=code)
        coupon = Coupon(
            code=code,
            name=payload.name.strip(),
            description=payload.description,
            type=payload.type,
            value=payload.value,
            min_order_amount=payload.min_order_amount,
            max_discount_amount=payload.max_discount_amount,
            usage_limit=payload.usage_limit,
            used_count=0,
            user_usage_limit=payload.user_usage_limit,
            valid_from=as_utc(payload.valid_from),
            valid_until=as_utc(payload.valid_until),
            is_active=payload.is_active,
            applicable_products=_clean_ids(payload.applicable_products),
            applicable_categories=_clean_ids(payload.applicable_categories),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        _check_invariants(coupon)
        session.add(coupon)
        await _commit_or_conflict(session)
        await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_id": str(coupon.id), "coupon_code": code, "created_by": created_by or "-"})
    return coupon


def _normalized_patch(payload: CouponUpdate) -> dict[str, Any]:
    data = payload.model_dump(exclude_unset=True)
    if "code" in data:
        data["code"] = coupon_repository.normalize_code(data["code"])
    if "name" in data and data["name"] is not None:
        data["name"] = data["name"].strip()
    for key in ("valid_from", "valid_until"):
        if data.get(key) is not None:
            data[key] = as_utc(data[key])
    for key in ("applicable_products", "applicable_categories"):
        if key in data:
            data[key] = _clean_ids(data[key])
    # Required columns cannot be cleared through a patch.
    for key in ("code", "name", "type", "value", "valid_from", "valid_until", "is_active"):
        if key in data and data[key] is None:
            raise CouponInvariantViolation(f"{key} cannot be null")
    return data


async def update_coupon(session: AsyncSession, *, coupon_id: UUID, payload: CouponUpdate) -> Coupon:
    data = _normalized_patch(payload)
    with store_faults("update"):
        coupon = await coupon_repository.get_coupon_by_id(session, coupon_id=coupon_id, for_update=True)
        if coupon is None:
            await session.rollback()
            raise CouponNotFound()
        if "code" in data:
            if len(data["code"]) < 3:
                raise CouponInvariantViolation("Coupon code must have at least 3 characters")
            await _ensure_code_available(session, code=data["code"], exclude_id=coupon.id)
        for key, value in data.items():
            setattr(coupon, key, value)
        coupon.updated_at = _now()
        try:
            _check_invariants(coupon)
        except CouponInvariantViolation:
            await session.rollback()
            raise
        session.add(coupon)
        await _commit_or_conflict(session)
        await session.refresh(coupon)
    logger.info("coupon_updated", extra={"coupon_id": str(coupon_id), "fields": sorted(data)})
    return coupon


async def delete_coupon(session: AsyncSession, *, coupon_id: UUID) -> None:
    """Hard delete. Usage history is left in place and keeps pointing at the old id."""
    with store_faults("delete"):
        coupon = await coupon_repository.get_coupon_by_id(session, coupon_id=coupon_id)
        if coupon is None:
            raise CouponNotFound()
        code = coupon.code
        await session.delete(coupon)
        await session.commit()
    logger.info("coupon_deleted", extra={"coupon_id": str(coupon_id), "coupon_code": code})


async def get_coupon(session: AsyncSession, *, coupon_id: UUID) -> Coupon:
    with store_faults("get"):
        coupon = await coupon_repository.get_coupon_by_id(session, coupon_id=coupon_id)
    if coupon is None:
        raise CouponNotFound()
    return coupon


async def get_coupon_by_code(session: AsyncSession, *, code: str) -> Coupon:
    with store_faults("get_by_code"):
        coupon = await coupon_repository.get_coupon_by_code(session, code=code)
    if coupon is None:
        raise CouponNotFound()
    return coupon


async def list_coupons(session: AsyncSession) -> list[Coupon]:
    with store_faults("list"):
        return await coupon_repository.list_coupons(session)


async def list_active_coupons(session: AsyncSession, *, now: datetime | None = None) -> list[Coupon]:
    moment = as_utc(now) if now is not None else _now()
    with store_faults("list_active"):
        return await coupon_repository.list_active_coupons(session, now=moment)


async def list_coupon_usages(session: AsyncSession, *, coupon_id: UUID) -> list[CouponUsage]:
    with store_faults("usage_history"):
        return await coupon_repository.list_usage_history(session, coupon_id=coupon_id)
