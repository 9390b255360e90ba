"""
Webhook intake: turns a telephony vendor's call-completed event into a
received Call plus a queued download.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..call_store import CallStore
from ..database import Database
from ..errors import ValidationError
from ..job_queue import DOWNLOAD, JOB_STATUSES, JobQueue
from ..models import CALL_DIRECTIONS, CallStatus

logger = logging.getLogger('callqc.webhook')

DOWNLOAD_PRIORITY = 3

# Exotel fields preserved verbatim in raw_payload
EXOTEL_FIELDS = (
    "call_sid", "transaction_id", "from", "to", "direction", "call_type",
    "dial_call_status", "dial_call_duration", "on_call_duration",
    "recording_url", "start_time", "current_time",
)


def _as_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def mock_exotel_payload(body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill every Exotel field the caller left out."""
    body = body or {}
    stamp = int(time.time() * 1000)
    now = datetime.now(timezone.utc).isoformat()
    defaults = {
        "call_sid": f"mock-{stamp}",
        "transaction_id": f"conn-{stamp}",
        "from": "09876543210",
        "to": "08012345678",
        "direction": "incoming",
        "start_time": now,
        "current_time": now,
        "dial_call_duration": 245,
        "on_call_duration": 240,
        "recording_url": "https://example.com/mock-recording.mp3",
        "call_type": "completed",
        "dial_call_status": "completed",
    }
    return {**defaults, **{key: value for key, value in body.items() if value not in (None, "")}}


class CallIntake:
    """Validates vendor events and ingests completed, recorded calls."""

    def __init__(self, database: Database, call_store: CallStore, job_queue: JobQueue, org_id: str):
        self.db = database
        self.call_store = call_store
        self.job_queue = job_queue
        self.org_id = org_id

    def ingest_exotel(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle one Exotel webhook body.

        Returns:
            {"status": "ignored"} for events without a completed recording,
            else {"status": "processed", "call_id", "job_id", "duplicate"}

        Raises:
            ValidationError: call_sid is missing
        """
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")
        sid = payload.get("call_sid")
        if not sid:
            logger.warning(f"Webhook missing required field: call_sid (keys={sorted(payload)})")
            raise ValidationError("Missing required field: call_sid")

        if payload.get("call_type") != "completed" or not payload.get("recording_url"):
            logger.info(
                f"Ignoring non-recording webhook event sid={sid} call_type={payload.get('call_type')} "
                f"has_recording={bool(payload.get('recording_url'))}"
            )
            return {"status": "ignored"}

        logger.info(
            f"Processing Exotel webhook sid={sid} direction={payload.get('direction')} "
            f"duration={payload.get('on_call_duration')}"
        )
        fields = {
            "org_id": self.org_id,
            "external_call_sid": str(sid),
            "recording_url": payload["recording_url"],
            "duration_seconds": _as_int(payload.get("on_call_duration"))
            or _as_int(payload.get("dial_call_duration")),
            "call_type": payload.get("call_type"),
            "caller_number": payload.get("from"),
            "callee_number": payload.get("to"),
            "direction": payload.get("direction") if payload.get("direction") in CALL_DIRECTIONS else None,
            "raw_payload": {key: payload[key] for key in EXOTEL_FIELDS if key in payload},
        }
        agent_id = payload.get("agent_id")
        if agent_id and self.call_store.get_user(agent_id) is not None:
            fields["agent_id"] = agent_id
        elif agent_id:
            logger.warning(f"Unknown agent_id {agent_id} on webhook sid={sid}; call left unassigned")

        with self.db.session() as s:
            call, created = self.call_store.create_call(fields, session=s)
            download_key = f"download:{call.id}"
            if created or call.status == CallStatus.RECEIVED:
                job = self.job_queue.enqueue(
                    DOWNLOAD,
                    {"call_id": call.id},
                    name=f"download-{call.id}",
                    priority=DOWNLOAD_PRIORITY,
                    job_key=download_key,
                    session=s,
                )
            else:
                # Past the download stage; its job row may already be trimmed
                job = self.job_queue.find_by_key(DOWNLOAD, download_key, statuses=JOB_STATUSES, session=s)

        job_id = job.id if job is not None else None
        logger.info(f"Call {call.id} {'created' if created else 'already known'} ({call.status.value}); download job {job_id}")
        return {"status": "processed", "call_id": call.id, "job_id": job_id, "duplicate": not created}
