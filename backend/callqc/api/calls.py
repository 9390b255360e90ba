"""Call listing, per-call analysis and reports."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from ..container import Services
from ..errors import NotFoundError, ValidationError
from ..models import CallStatus
from .deps import get_services
from .responses import ok, paginated

logger = logging.getLogger('callqc.api')
router = APIRouter(prefix="/api/calls", tags=["calls"])


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model: Optional[str] = None
    run_async: bool = Field(False, alias="async")


class ReanalyzeRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model: Optional[str] = None


@router.get("")
def list_calls(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    agent_id: Optional[str] = Query(None, alias="agentId"),
    services: Services = Depends(get_services),
):
    if status and status not in {s.value for s in CallStatus}:
        raise ValidationError(f"Invalid status: {status}", {"allowed": [s.value for s in CallStatus]})
    calls, total = services.call_store.list_calls(page=page, limit=limit, status=status, agent_id=agent_id)
    return ok(paginated([call.to_dict() for call in calls], page, limit, total, key="calls"))


@router.get("/{call_id}")
def get_call(call_id: str, services: Services = Depends(get_services)):
    call = services.call_store.require_call(call_id)
    transcript = services.call_store.get_transcript(call_id)
    analysis = services.call_store.get_analysis(call_id)
    return ok({
        **call.to_dict(),
        "transcript": transcript.to_dict() if transcript else None,
        "analysis": analysis.to_dict() if analysis else None,
        "jobs": [job.to_dict() for job in services.job_queue.list_jobs(call_id=call_id, limit=20)],
    })


@router.get("/{call_id}/analysis")
def get_call_analysis(call_id: str, services: Services = Depends(get_services)):
    services.call_store.require_call(call_id)
    analysis = services.analysis.get_analysis(call_id)
    if analysis is None:
        raise NotFoundError("Analysis for call", call_id)
    return ok(analysis)


@router.post("/{call_id}/analyze")
def analyze_call(
    call_id: str,
    request: Optional[AnalyzeRequest] = None,
    services: Services = Depends(get_services),
):
    """Run the analysis inline, or queue it and answer 202 when async is set."""
    request = request or AnalyzeRequest()
    if request.run_async:
        job = services.analysis.enqueue_analysis(call_id, model=request.model)
        logger.info(f"Analysis queued for call {call_id}: job {job.id}")
        return ok({"call_id": call_id, "job_id": job.id, "status": "queued"}, status_code=202)
    return ok(services.analysis.analyze_call(call_id, model=request.model))


@router.post("/{call_id}/reanalyze")
def reanalyze_call(
    call_id: str,
    request: Optional[ReanalyzeRequest] = None,
    services: Services = Depends(get_services),
):
    """Replace the stored analysis with a fresh verdict."""
    request = request or ReanalyzeRequest()
    return ok(services.analysis.reanalyze_call(call_id, model=request.model))


@router.get("/{call_id}/report")
def get_call_report(call_id: str, services: Services = Depends(get_services)):
    return ok(services.analysis.get_report(call_id))
