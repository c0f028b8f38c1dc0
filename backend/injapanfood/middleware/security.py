import json
import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from injapanfood.core.config import settings
from injapanfood.core.logging_config import request_id_ctx_var
from injapanfood.core.security import decode_token

audit_logger = logging.getLogger("injapanfood.audit")

_AUDITED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_AUDITED_PREFIX = "/api/v1/coupons"
_MAX_ITEMS = 80
_MAX_DEPTH = 6
_SENSITIVE_EXACT_KEYS = {"token", "access_token", "refresh_token", "secret", "api_key", "email", "phone"}
_SENSITIVE_KEY_FRAGMENTS = ("password", "token", "secret", "authorization", "cookie", "address")


def _is_sensitive_key(key: str) -> bool:
    lowered = (key or "").strip().lower()
    if not lowered:
        return False
    if lowered in _SENSITIVE_EXACT_KEYS:
        return True
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def redact_payload(payload: Any, *, _depth: int = 0) -> Any:
    """Mask credential-like keys and cap the size of nested request bodies."""
    if _depth >= _MAX_DEPTH:
        return "***"
    if isinstance(payload, dict):
        redacted: dict[str, Any] = {}
        for idx, (k, v) in enumerate(payload.items()):
            if idx >= _MAX_ITEMS:
                redacted["..."] = "truncated"
                break
            key = str(k)
            redacted[key] = "***" if _is_sensitive_key(key) else redact_payload(v, _depth=_depth + 1)
        return redacted
    if isinstance(payload, list):
        items = [redact_payload(item, _depth=_depth + 1) for item in payload[:_MAX_ITEMS]]
        if len(payload) > _MAX_ITEMS:
            items.append("...truncated")
        return items
    if isinstance(payload, str) and len(payload) > 2000:
        return payload[:2000]
    return payload


def _should_audit(request: Request) -> bool:
    return request.method in _AUDITED_METHODS and request.url.path.startswith(_AUDITED_PREFIX)


async def _read_body_text(request: Request, *, max_bytes: int) -> str | None:
    try:
        raw_body = await request.body()
        request._body = raw_body  # type: ignore[attr-defined]
    except Exception:
        return None
    if raw_body and len(raw_body) < max_bytes:
        return raw_body.decode("utf-8", errors="replace")
    return None


def _extract_subject(auth_header: str | None) -> str | None:
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    decoded = decode_token(auth_header.split(" ", 1)[1])
    if decoded and decoded.get("sub"):
        return str(decoded["sub"])
    return None


def _parse_json_payload(body_text: str | None, *, content_type: str) -> Any:
    if not body_text or "application/json" not in content_type:
        return None
    try:
        return redact_payload(json.loads(body_text))
    except ValueError:
        return None


class AuditMiddleware(BaseHTTPMiddleware):
    """Audit trail for coupon writes: validations, redemptions and admin changes."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if not _should_audit(request):
            return await call_next(request)

        body_text = None
        if settings.audit_log_request_payload:
            body_text = await _read_body_text(request, max_bytes=int(settings.audit_log_max_body_bytes or 4096))
        user_id = _extract_subject(request.headers.get("authorization"))

        start = time.time()
        response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)

        audit_logger.info(
            "audit",
            extra={
                "request_id": request_id_ctx_var.get() or "-",
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "user_id": user_id or settings.guest_user_id,
                "client_ip": request.client.host if request.client else "-",
                "duration_ms": duration_ms,
                "request_payload": _parse_json_payload(
                    body_text, content_type=request.headers.get("content-type", "")
                ),
            },
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        response = await call_next(request)
        if settings.hsts_enabled:
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
        return response
