from injapanfood.db.base import Base  # noqa: F401
from injapanfood.models.coupon import Coupon, CouponType, CouponUsage  # noqa: F401

__all__ = [
    "Base",
    "Coupon",
    "CouponType",
    "CouponUsage",
]
