"""Liveness and per-service health probes."""
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict

import psutil
from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .. import __version__
from ..container import Services
from .deps import get_services
from .responses import ok

logger = logging.getLogger('callqc.api')
router = APIRouter(tags=["health"])

_STARTED = time.time()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def system_stats(storage_path: str) -> Dict[str, Any]:
    process = psutil.Process(os.getpid())
    disk_root = storage_path if os.path.exists(storage_path) else "/"
    disk = psutil.disk_usage(disk_root)
    return {
        "process": {
            "pid": process.pid,
            "rss_mb": round(process.memory_info().rss / (1024 * 1024), 1),
            "threads": process.num_threads(),
            "uptime_s": int(time.time() - _STARTED),
        },
        "system": {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_free_gb": round(disk.free / (1024 ** 3), 1),
        },
    }


@router.get("/health")
def health(services: Services = Depends(get_services)):
    return ok({
        "status": "ok",
        "timestamp": _now(),
        "environment": services.settings.environment,
        "version": __version__,
    })


@router.get("/health/detailed")
def health_detailed(services: Services = Depends(get_services)):
    """
    Probe every dependency.

    Database or queue failures mark the service degraded (503); missing
    STT or LLM credentials only mark those capabilities not_configured.
    """
    health_report: Dict[str, Any] = {"status": "ok", "timestamp": _now(), "services": {}, "warnings": []}
    checks = health_report["services"]

    try:
        services.db.ping()
        checks["database"] = {"status": "ok", "journal_mode": services.db.journal_mode()}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = {"status": "error", "error": str(e)}
        health_report["status"] = "degraded"

    try:
        checks["queue"] = {
            "status": "ok",
            "counts": services.job_queue.counts(),
            "workers": services.pool.status(),
        }
    except Exception as e:
        logger.error(f"Queue health check failed: {e}")
        checks["queue"] = {"status": "error", "error": str(e)}
        health_report["status"] = "degraded"

    checks["redis"] = {"status": "configured" if services.settings.redis_configured else "not_configured"}

    llm_status = services.analyzer.status()
    checks["llm"] = {"status": llm_status, "model": services.analyzer.model}
    if llm_status != "ok":
        health_report["warnings"].append("OpenRouter API not configured - analysis service unavailable")

    stt = services.transcription.provider_status()
    checks["stt"] = {
        "status": "ok" if services.transcription.is_available() else "not_configured",
        "providers": stt,
    }
    if not services.transcription.is_available():
        health_report["warnings"].append("No STT provider configured - transcription unavailable")

    checks["notifications"] = {"status": "ok", "channels": services.router.get_channel_status()}
    if services.scheduler is not None:
        checks["scheduler"] = {"status": "ok", "next_digest": services.scheduler.next_run()}

    health_report.update(system_stats(services.settings.storage_path))

    if health_report["status"] != "ok":
        return JSONResponse(status_code=503, content=jsonable_encoder({"ok": False, "data": health_report}))
    return ok(health_report)
