"""Notification log, channel management, settings and user preferences."""
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from ..container import Services
from ..errors import ValidationError
from ..models import CHANNELS, NOTIFICATION_STATUSES, NOTIFICATION_TYPES
from ..services.digest import day_bounds
from .deps import get_services
from .responses import ok, paginated

logger = logging.getLogger('callqc.api')
router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class SendNotificationRequest(BaseModel):
    title: str
    message: str
    channels: Optional[List[str]] = None
    call_id: Optional[str] = None


class TestNotificationRequest(BaseModel):
    channel: Optional[str] = None


class PreferencesRequest(BaseModel):
    telegram_enabled: Optional[bool] = None
    telegram_chat_id: Optional[str] = None
    console_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    email_address: Optional[str] = None
    alert_low_score: Optional[bool] = None
    alert_critical_issue: Optional[bool] = None
    daily_digest: Optional[bool] = None
    low_score_threshold: Optional[float] = None


def _check_choice(value: Optional[str], allowed, field: str) -> None:
    if value and value not in allowed:
        raise ValidationError(f"Invalid {field}: {value}", {"allowed": list(allowed)})


@router.get("")
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    channel: Optional[str] = None,
    type_: Optional[str] = Query(None, alias="type"),
    call_id: Optional[str] = Query(None, alias="callId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    services: Services = Depends(get_services),
):
    _check_choice(status, NOTIFICATION_STATUSES, "status")
    _check_choice(channel, CHANNELS, "channel")
    _check_choice(type_, NOTIFICATION_TYPES, "type")
    rows, total = services.call_store.list_notifications(
        page=page,
        limit=limit,
        status=status,
        channel=channel,
        type_=type_,
        call_id=call_id,
        start=day_bounds(start_date)[0] if start_date else None,
        end=day_bounds(end_date)[1] if end_date else None,
    )
    return ok(paginated([row.to_dict() for row in rows], page, limit, total, key="notifications"))


@router.get("/statistics")
def notification_statistics(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    services: Services = Depends(get_services),
):
    return ok(services.call_store.notification_statistics(
        start=day_bounds(start_date)[0] if start_date else None,
        end=day_bounds(end_date)[1] if end_date else None,
    ))


@router.get("/channels")
def channel_status(services: Services = Depends(get_services)):
    return ok({
        "channels": services.router.get_channel_status(),
        "enabled": services.router.enabled_channels(),
    })


@router.post("/test")
def test_notifications(request: Optional[TestNotificationRequest] = None,
                       services: Services = Depends(get_services)):
    """Probe one channel, or every channel when none is named."""
    if request is not None and request.channel:
        return ok({request.channel: services.router.test_channel(request.channel)})
    return ok(services.router.test_channels())


@router.post("/telegram/test")
def test_telegram(services: Services = Depends(get_services)):
    return ok(services.router.test_channel("telegram"))


@router.post("/send")
def send_notification(request: SendNotificationRequest, services: Services = Depends(get_services)):
    if request.channels:
        for name in request.channels:
            _check_choice(name, list(services.router.channels), "channel")
    if request.call_id:
        services.call_store.require_call(request.call_id)
    results = services.router.send_custom_notification(
        request.title, request.message, channels=request.channels, call_id=request.call_id,
    )
    return ok({"sent": any(result["ok"] for result in results), "results": results})


@router.get("/settings")
def get_settings(services: Services = Depends(get_services)):
    return ok(services.router.get_settings())


@router.put("/settings")
def update_settings(changes: Dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    if not changes:
        raise ValidationError("No settings provided")
    return ok(services.router.update_settings(changes))


@router.get("/preferences/{user_id}")
def get_preferences(user_id: str, services: Services = Depends(get_services)):
    return ok(services.call_store.get_preferences(user_id))


@router.put("/preferences/{user_id}")
def update_preferences(user_id: str, request: PreferencesRequest, services: Services = Depends(get_services)):
    fields = request.model_dump(exclude_none=True)
    if not fields:
        raise ValidationError("No preferences provided")
    threshold = fields.get("low_score_threshold")
    if threshold is not None and not 0 <= threshold <= 100:
        raise ValidationError("low_score_threshold must be between 0 and 100")
    return ok(services.call_store.upsert_preferences(user_id, fields))


@router.delete("/old")
def delete_old_notifications(
    days_old: int = Query(30, alias="daysOld", ge=1),
    services: Services = Depends(get_services),
):
    deleted = services.call_store.delete_old_notifications(days_old)
    return ok({"deleted": deleted, "days_old": days_old})
