from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from injapanfood.api.v1 import coupons
from injapanfood.core.dependencies import get_metrics
from injapanfood.core.metrics import Metrics
from injapanfood.db.session import get_session
from injapanfood.services.coupon_errors import store_faults

api_router = APIRouter()

api_router.include_router(coupons.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    with store_faults("readiness"):
        await session.execute(text("SELECT 1"))
    return {"status": "ready"}


@api_router.get("/metrics", tags=["metrics"])
def metrics_snapshot(metrics: Metrics = Depends(get_metrics)) -> dict[str, int]:
    return metrics.snapshot()
