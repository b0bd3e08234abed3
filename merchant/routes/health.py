import logging

from fastapi import APIRouter
from sqlalchemy import text

from merchant.database import async_session
from merchant.scheduler import get_scheduler_status

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "merchant-fulfillment"}


@router.get("/health/db")
async def database_health():
    """Check database connectivity"""
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.warning(f"Database health check failed: {str(e)}")
        return {"status": "unhealthy", "database": "error", "error": str(e)}


@router.get("/health/scheduler")
async def scheduler_health():
    """Scheduler state and the configured sweep jobs"""
    return await get_scheduler_status()
