from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from injapanfood.core.config import settings
from injapanfood.core.metrics import Metrics
from injapanfood.core.rate_limit import RateLimiter
from injapanfood.core.security import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_SERVICE, decode_token

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = ROLE_CUSTOMER
    is_guest: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_service(self) -> bool:
        return self.role == ROLE_SERVICE


def _principal_from_credentials(credentials: HTTPAuthorizationCredentials) -> Principal:
    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type", "access") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    role = str(payload.get("role") or ROLE_CUSTOMER).strip().lower()
    if role not in {ROLE_CUSTOMER, ROLE_ADMIN, ROLE_SERVICE}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return Principal(user_id=subject, role=role)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return _principal_from_credentials(credentials)


async def get_optional_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """Anonymous shoppers act as the shared guest identity."""
    if credentials is None:
        return Principal(user_id=settings.guest_user_id, is_guest=True)
    return _principal_from_credentials(credentials)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return principal


def get_metrics(request: Request) -> Metrics:
    return request.app.state.metrics


def get_validate_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.coupon_validate_limiter
