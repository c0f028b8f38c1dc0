from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from injapanfood.core.config import settings
from injapanfood.core.dependencies import (
    Principal,
    get_current_principal,
    get_metrics,
    get_optional_principal,
    get_validate_rate_limiter,
    require_admin,
)
from injapanfood.core.metrics import Metrics
from injapanfood.core.rate_limit import RateLimiter
from injapanfood.db.session import get_session
from injapanfood.schemas.coupon import (
    CouponCreate,
    CouponRead,
    CouponRedeemRequest,
    CouponRedemptionRead,
    CouponUpdate,
    CouponUsageRead,
    CouponValidateRequest,
    CouponValidationRead,
)
from injapanfood.services import coupon_admin
from injapanfood.services.coupon_errors import CouponOrderConflict, CouponUsageLimitExceeded, CouponUserLimitExceeded
from injapanfood.services.coupon_redemption import RedemptionReceipt, redeem_coupon
from injapanfood.services.coupon_validation import ValidCoupon, ValidationResult, validate_coupon

router = APIRouter(prefix="/coupons", tags=["coupons"])


def _rate_limit_identifier(request: Request, principal: Principal) -> str:
    if not principal.is_guest:
        return f"user:{principal.user_id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def _to_validation_read(result: ValidationResult) -> CouponValidationRead:
    if isinstance(result, ValidCoupon):
        return CouponValidationRead(
            valid=True,
            discount_amount=result.discount_amount,
            currency=settings.currency,
            coupon=CouponRead.model_validate(result.coupon),
        )
    return CouponValidationRead(valid=False, reason=result.reason.value)


def _to_redemption_read(receipt: RedemptionReceipt) -> CouponRedemptionRead:
    return CouponRedemptionRead(
        usage_id=receipt.usage_id,
        coupon_id=receipt.coupon_id,
        user_id=receipt.user_id,
        order_id=receipt.order_id,
        discount_amount=receipt.discount_amount,
        used_at=receipt.used_at,
        replayed=receipt.replayed,
        used_count=receipt.used_count,
    )


def _redeeming_user(principal: Principal, requested: str | None) -> str:
    requested = (requested or "").strip() or None
    if principal.is_admin or principal.is_service:
        return requested or settings.guest_user_id
    if requested is not None and requested != principal.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot redeem on behalf of another user")
    return principal.user_id


@router.post("/validate", response_model=CouponValidationRead)
async def validate_coupon_for_cart(
    payload: CouponValidateRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_optional_principal),
    limiter: RateLimiter = Depends(get_validate_rate_limiter),
    metrics: Metrics = Depends(get_metrics),
) -> CouponValidationRead:
    await limiter.hit(_rate_limit_identifier(request, principal))
    result = await validate_coupon(
        session,
        code=payload.code,
        user_id=principal.user_id,
        cart_total=payload.cart_total,
        product_ids=payload.product_ids,
        category_ids=payload.category_ids,
    )
    metrics.record_validation(valid=result.valid)
    return _to_validation_read(result)


@router.get("/active", response_model=list[CouponRead])
async def list_active_coupons(session: AsyncSession = Depends(get_session)) -> list[CouponRead]:
    coupons = await coupon_admin.list_active_coupons(session)
    return [CouponRead.model_validate(c) for c in coupons]


@router.post("/redeem", response_model=CouponRedemptionRead)
async def redeem(
    payload: CouponRedeemRequest,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_principal),
    metrics: Metrics = Depends(get_metrics),
) -> CouponRedemptionRead:
    user_id = _redeeming_user(principal, payload.user_id)
    try:
        receipt = await redeem_coupon(
            session,
            coupon_id=payload.coupon_id,
            user_id=user_id,
            order_id=payload.order_id,
            discount_amount=payload.discount_amount,
        )
    except (CouponUsageLimitExceeded, CouponUserLimitExceeded, CouponOrderConflict):
        metrics.record_redemption_conflict()
        raise
    metrics.record_redemption(replayed=receipt.replayed)
    return _to_redemption_read(receipt)


@router.get("/admin", response_model=list[CouponRead])
async def admin_list_coupons(
    session: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_admin),
) -> list[CouponRead]:
    coupons = await coupon_admin.list_coupons(session)
    return [CouponRead.model_validate(c) for c in coupons]


@router.post("/admin", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def admin_create_coupon(
    payload: CouponCreate,
    session: AsyncSession = Depends(get_session),
    admin: Principal = Depends(require_admin),
) -> CouponRead:
    coupon = await coupon_admin.create_coupon(session, payload, created_by=admin.user_id)
    return CouponRead.model_validate(coupon)


@router.get("/admin/by-code/{code}", response_model=CouponRead)
async def admin_get_coupon_by_code(
    code: str,
    session: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_admin),
) -> CouponRead:
    coupon = await coupon_admin.get_coupon_by_code(session, code=code)
    return CouponRead.model_validate(coupon)


@router.get("/admin/{coupon_id}", response_model=CouponRead)
async def admin_get_coupon(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_admin),
) -> CouponRead:
    coupon = await coupon_admin.get_coupon(session, coupon_id=coupon_id)
    return CouponRead.model_validate(coupon)


@router.patch("/admin/{coupon_id}", response_model=CouponRead)
async def admin_update_coupon(
    coupon_id: UUID,
    payload: CouponUpdate,
    session: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_admin),
) -> CouponRead:
    coupon = await coupon_admin.update_coupon(session, coupon_id=coupon_id, payload=payload)
    return CouponRead.model_validate(coupon)


@router.delete("/admin/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_coupon(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_admin),
) -> Response:
    await coupon_admin.delete_coupon(session, coupon_id=coupon_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/admin/{coupon_id}/usages", response_model=list[CouponUsageRead])
async def admin_list_coupon_usages(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_admin),
) -> list[CouponUsageRead]:
    usages = await coupon_admin.list_coupon_usages(session, coupon_id=coupon_id)
    return [CouponUsageRead.model_validate(u) for u in usages]
