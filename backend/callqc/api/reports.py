"""Digest and trend reports."""
import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..container import Services
from ..errors import ValidationError
from ..services.digest import day_bounds
from .deps import get_services
from .responses import ok

logger = logging.getLogger('callqc.api')
router = APIRouter(prefix="/api/reports", tags=["reports"])


class SendDigestRequest(BaseModel):
    date: Optional[str] = None
    channels: Optional[List[str]] = None


@router.get("/daily")
def daily_report(
    report_date: Optional[str] = Query(None, alias="date"),
    include_details: bool = Query(False, alias="includeDetails"),
    services: Services = Depends(get_services),
):
    return ok(services.digest.generate(report_date, include_details=include_details))


@router.get("/weekly")
def weekly_report(
    days: int = Query(7, ge=1, le=90),
    end_date: Optional[str] = Query(None, alias="endDate"),
    services: Services = Depends(get_services),
):
    return ok(services.digest.generate_weekly(days, end_date))


@router.get("/trends")
def trends(
    current_days: int = Query(7, alias="currentDays", ge=1, le=90),
    compare_days: int = Query(7, alias="compareDays", ge=1, le=90),
    end_date: Optional[str] = Query(None, alias="endDate"),
    services: Services = Depends(get_services),
):
    return ok(services.digest.trend(current_days, compare_days, end_date))


@router.post("/daily/send")
def send_daily_digest(request: Optional[SendDigestRequest] = None, services: Services = Depends(get_services)):
    """Send a day's digest now; days without analyses are not sent."""
    request = request or SendDigestRequest()
    if request.channels:
        unknown = [name for name in request.channels if name not in services.router.channels]
        if unknown:
            raise ValidationError(f"Unknown channels: {', '.join(unknown)}",
                                  {"channels": list(services.router.channels)})
    return ok(services.digest.send_daily(request.date, channels=request.channels))


@router.get("/agent/{agent_id}")
def agent_report(
    agent_id: str,
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    services: Services = Depends(get_services),
):
    start = day_bounds(start_date)[0] if start_date else None
    end = day_bounds(end_date)[1] if end_date else None
    return ok(services.digest.agent_report(agent_id, start=start, end=end))
