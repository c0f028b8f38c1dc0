from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from injapanfood.core.config import settings

# Tokens come from the storefront's identity provider; this service only verifies them.
ROLE_CUSTOMER = "customer"
ROLE_ADMIN = "admin"
ROLE_SERVICE = "service"


def create_access_token(subject: str, *, role: str = ROLE_CUSTOMER, expires_minutes: int = 30) -> str:
    """Mint a token the way the identity provider does; used by tests and local tooling."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode = {"sub": subject, "role": role, "type": "access", "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
