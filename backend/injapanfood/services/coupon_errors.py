from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging

from sqlalchemy.exc import InterfaceError, OperationalError

logger = logging.getLogger(__name__)

# Driver-level failures that mean "the store did not answer", as opposed to a
# constraint or programming error.
TRANSIENT_STORE_ERRORS: tuple[type[Exception], ...] = (OperationalError, InterfaceError)


class CouponError(Exception):
    status_code = 400
    code = "coupon_error"
    detail = "Coupon operation failed"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        self.detail = detail or self.detail


class CouponNotFound(CouponError):
    status_code = 404
    code = "coupon_not_found"
    detail = "Coupon not found"


class CouponCodeConflict(CouponError):
    status_code = 409
    code = "coupon_code_exists"
    detail = "Coupon code already exists"


class CouponInvariantViolation(CouponError):
    status_code = 400
    code = "coupon_invalid"
    detail = "Coupon fields are inconsistent"


class CouponUsageLimitExceeded(CouponError):
    """Lost the race for the last remaining redemption."""

    status_code = 409
    code = "usage_limit_exceeded"
    detail = "usage limit exceeded at redemption time"


class CouponUserLimitExceeded(CouponError):
    status_code = 409
    code = "user_usage_limit_exceeded"
    detail = "user usage limit exceeded at redemption time"


class CouponOrderConflict(CouponError):
    status_code = 409
    code = "order_already_redeemed"
    detail = "Order already redeemed a different coupon"


class CouponStoreUnavailable(CouponError):
    status_code = 503
    code = "store_unavailable"
    detail = "Coupon store is temporarily unavailable"


@contextmanager
def store_faults(operation: str) -> Iterator[None]:
    """Re-raise driver connectivity errors as CouponStoreUnavailable."""
    try:
        yield
    except TRANSIENT_STORE_ERRORS as exc:
        logger.warning("coupon_store_unavailable", extra={"operation": operation, "error": str(exc)})
        raise CouponStoreUnavailable() from exc
