from fastapi import APIRouter
from datetime import datetime
import logging

from genengine.services.scheduler import get_scheduler

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/healthz")
async def health_check():
    """
    Health check endpoint
    Reports OK plus whether the scheduler is running and the latest pressure
    """
    logger.debug("Health check requested")
    scheduler = get_scheduler()
    latest = scheduler.monitor.latest if scheduler is not None else None
    return {
        "status": "OK",
        "timestamp": datetime.now().isoformat(),
        "service": "genengine",
        "scheduler_running": scheduler is not None,
        "pressure": latest.pressure.value if latest is not None else None,
    }
