from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from injapanfood.api.v1 import api_router
from injapanfood.core.config import settings
from injapanfood.core.logging_config import configure_logging
from injapanfood.core.metrics import Metrics
from injapanfood.core.rate_limit import RateLimiter
from injapanfood.core.redis_client import build_redis, close_redis
from injapanfood.core.sentry import init_sentry
from injapanfood.core.startup_checks import validate_production_settings
from injapanfood.middleware import AuditMiddleware, RequestLoggingMiddleware, SecurityHeadersMiddleware
from injapanfood.schemas.error import ErrorResponse
from injapanfood.services.coupon_errors import CouponError, CouponStoreUnavailable

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await close_redis(app.state.redis)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    validate_production_settings()
    init_sentry()
    tags_metadata = [
        {"name": "coupons", "description": "Coupon validation, redemption and administration"},
        {"name": "health", "description": "Liveness and readiness probes"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
        lifespan=lifespan,
    )
    app.state.redis = build_redis(settings.redis_url)
    app.state.metrics = Metrics()
    app.state.coupon_validate_limiter = RateLimiter(
        key="coupons:validate",
        limit=settings.coupon_validate_rate_limit,
        window_seconds=settings.coupon_validate_rate_window_seconds,
        redis=app.state.redis,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(AuditMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(CouponError)
    async def coupon_exception_handler(request: Request, exc: CouponError):
        if isinstance(exc, CouponStoreUnavailable):
            request.app.state.metrics.record_store_fault()
        payload = ErrorResponse(detail=exc.detail, code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=payload.model_dump())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(payload.model_dump()),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
