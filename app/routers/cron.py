from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from app.config import settings
from app.logging_config import get_logger
from app.runtime import get_scheduler
from app.schemas.relay import SweepResponse
from app.services.dispatch_service import DispatchScheduler

logger = get_logger("cron")

router = APIRouter(prefix="/api", tags=["cron"])


def _require_cron_secret(authorization: Optional[str]) -> None:
    expected = settings.cron_secret
    if not expected:
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    if authorization != f"Bearer {expected}":
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route("/cron", methods=["GET", "POST"], response_model=SweepResponse)
async def run_cron(
    authorization: Optional[str] = Header(default=None),
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    """Scheduled re-check for deployments without a long-lived worker."""
    _require_cron_secret(authorization)
    results = await scheduler.sweep()
    logger.info("Cron sweep executed", extra={"context": results})
    return SweepResponse(**results)
