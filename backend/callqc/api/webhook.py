"""
Telephony webhooks.

Exotel posts a flat JSON object and does not sign its requests; restrict
this route by IP allow-listing at the edge.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from ..container import Services
from ..services.intake import mock_exotel_payload
from .deps import get_services

logger = logging.getLogger('callqc.webhook')
router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post("/exotel")
def exotel_webhook(payload: Dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    """Ingest a completed call; duplicates return the existing call."""
    return services.intake.ingest_exotel(payload)


@router.post("/exotel/mock")
def exotel_mock_webhook(payload: Dict[str, Any] = Body(default={}), services: Services = Depends(get_services)):
    """Same as /exotel with every field defaulted, for local testing."""
    mock = mock_exotel_payload(payload)
    logger.info(f"Processing mock webhook sid={mock['call_sid']}")
    return {**services.intake.ingest_exotel(mock), "mock": True}
