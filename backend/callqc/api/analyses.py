"""Cross-call analysis queries."""
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..container import Services
from ..errors import NotFoundError, ValidationError
from ..models import SENTIMENTS
from ..services.digest import day_bounds
from .deps import get_services
from .responses import ok, paginated

logger = logging.getLogger('callqc.api')
router = APIRouter(prefix="/api/analyses", tags=["analyses"])


@router.get("")
def list_analyses(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    min_score: Optional[float] = Query(None, alias="minScore", ge=0, le=100),
    max_score: Optional[float] = Query(None, alias="maxScore", ge=0, le=100),
    sentiment: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if sentiment and sentiment not in SENTIMENTS:
        raise ValidationError(f"Invalid sentiment: {sentiment}", {"allowed": list(SENTIMENTS)})
    records, total = services.call_store.list_analyses(
        page=page, limit=limit, min_score=min_score, max_score=max_score, sentiment=sentiment,
    )
    return ok(paginated(records, page, limit, total, key="analyses"))


@router.get("/alerts")
def get_alerts(
    threshold: Optional[float] = Query(None, ge=0, le=100),
    limit: int = Query(50, ge=1, le=200),
    services: Services = Depends(get_services),
):
    """Analyses below the alert threshold, worst first."""
    threshold = services.scoring.alert_threshold if threshold is None else threshold
    alerts = services.call_store.get_alerts(threshold=threshold, limit=limit)
    return ok({"threshold": threshold, "count": len(alerts), "alerts": alerts})


@router.get("/statistics")
def get_statistics(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    services: Services = Depends(get_services),
):
    start = day_bounds(start_date)[0] if start_date else None
    end = day_bounds(end_date)[1] if end_date else None
    return ok(services.call_store.get_statistics(start=start, end=end))


@router.get("/models")
def get_models(services: Services = Depends(get_services)):
    return ok({
        "current": services.analyzer.model,
        "fallback": services.analyzer.fallback_model,
        "recommended": services.analyzer.recommended_models(),
    })


@router.get("/{analysis_id}")
def get_analysis(analysis_id: str, services: Services = Depends(get_services)):
    analysis = services.call_store.get_analysis_by_id(analysis_id)
    if analysis is None:
        raise NotFoundError("Analysis", analysis_id)
    record = analysis.to_dict()
    record["classification"] = services.scoring.classify(record["overall_score"])
    return ok(record)
