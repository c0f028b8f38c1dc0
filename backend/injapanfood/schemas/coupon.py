from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from injapanfood.models.coupon import CouponType


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    description: str | None = None
    type: CouponType
    value: Decimal
    min_order_amount: Decimal | None = None
    max_discount_amount: Decimal | None = None
    usage_limit: int | None = None
    used_count: int
    user_usage_limit: int | None = None
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    applicable_products: list[str] = Field(default_factory=list)
    applicable_categories: list[str] = Field(default_factory=list)
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class CouponCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=3, max_length=40)
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    type: CouponType = CouponType.percentage
    value: Decimal = Field(gt=0)
    min_order_amount: Decimal | None = Field(default=None, ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    user_usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True
    applicable_products: list[str] = Field(default_factory=list)
    applicable_categories: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_bounds(self) -> "CouponCreate":
        if self.type == CouponType.percentage and self.value > 100:
            raise ValueError("Percentage coupons must have a value between 0 and 100")
        if _utc(self.valid_from) > _utc(self.valid_until):
            raise ValueError("valid_from must not be after valid_until")
        return self


class CouponUpdate(BaseModel):
    """Partial update; used_count is intentionally not patchable."""

    model_config = ConfigDict(extra="forbid")

    code: str | None = Field(default=None, min_length=3, max_length=40)
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    type: CouponType | None = None
    value: Decimal | None = Field(default=None, gt=0)
    min_order_amount: Decimal | None = Field(default=None, ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    user_usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None
    applicable_products: list[str] | None = None
    applicable_categories: list[str] | None = None


class CouponUsageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    user_id: str
    order_id: str
    discount_amount: Decimal
    used_at: datetime


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    cart_total: Decimal = Field(ge=0)
    product_ids: list[str] = Field(default_factory=list)
    category_ids: list[str] = Field(default_factory=list)


class CouponValidationRead(BaseModel):
    valid: bool
    reason: str | None = None
    discount_amount: Decimal | None = None
    currency: str | None = None
    coupon: CouponRead | None = None


class CouponRedeemRequest(BaseModel):
    coupon_id: UUID
    user_id: str | None = Field(default=None, max_length=128)
    order_id: str = Field(min_length=1, max_length=128)
    discount_amount: Decimal = Field(ge=0)


class CouponRedemptionRead(BaseModel):
    usage_id: UUID
    coupon_id: UUID
    user_id: str
    order_id: str
    discount_amount: Decimal
    used_at: datetime
    replayed: bool
    used_count: int | None = None
