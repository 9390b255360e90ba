"""
Stage handlers for the call-processing pipeline.

Every handler follows the same shape so duplicate deliveries are harmless:
load the call, short-circuit when the stage already happened, do the
external work, then advance the status, persist the produced entity and
enqueue the next stage in one transaction. A lost race (the conditional
advance finds another status) rolls that transaction back and acks.
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .call_store import CallStore
from .database import Database
from .errors import Fatal, IllegalTransition, NotFoundError, Retryable
from .job_queue import ANALYZE, DOWNLOAD, NOTIFY, TRANSCRIBE, JobQueue
from .models import CallStatus, Job
from .object_store import ObjectStore, audio_key
from .services.analysis_service import AnalysisService
from .services.notifications import NotificationRouter
from .services.stt import TranscriptionManager, TranscriptionOptions
from .worker_pool import StageHandler

logger = logging.getLogger('callqc.workers')


class PipelineHandlers:
    """Download, transcribe, analyze and notify handlers with their failure hooks."""

    def __init__(
        self,
        database: Database,
        call_store: CallStore,
        object_store: ObjectStore,
        job_queue: JobQueue,
        transcription: TranscriptionManager,
        analysis: AnalysisService,
        router: NotificationRouter,
        stt_language: Optional[str] = None,
        recording_auth: Optional[Tuple[str, str]] = None,
    ):
        self.db = database
        self.call_store = call_store
        self.object_store = object_store
        self.job_queue = job_queue
        self.transcription = transcription
        self.analysis = analysis
        self.router = router
        self.stt_language = stt_language
        self.recording_auth = recording_auth

    def stage_handlers(self) -> Dict[str, StageHandler]:
        return {
            DOWNLOAD: StageHandler(self.download, self.download_failed),
            TRANSCRIBE: StageHandler(self.transcribe, self.transcription_failed),
            ANALYZE: StageHandler(self.analyze, self.analysis_failed),
            NOTIFY: StageHandler(self.notify, self.notify_failed),
        }

    def _load_call(self, job: Job):
        call_id = (job.payload or {}).get("call_id")
        call = self.call_store.get_call(call_id) if call_id else None
        if call is None:
            logger.warning(f"[{job.queue}] job {job.id}: call {call_id} not found; dropping")
            raise Fatal(f"Call not found: {call_id}", {"call_id": call_id})
        return call

    @staticmethod
    def _skip(job: Job, call, reason: str) -> Dict[str, Any]:
        logger.info(f"[{job.queue}] call {call.id} is {call.status.value}; {reason}")
        return {"skipped": True, "reason": reason, "status": call.status.value}

    # ------------------------------------------------------------------
    # download: received -> downloaded
    # ------------------------------------------------------------------
    def download(self, job: Job) -> Dict[str, Any]:
        call = self._load_call(job)
        if call.status != CallStatus.RECEIVED:
            return self._skip(job, call, "already downloaded")
        if not call.recording_url:
            raise Fatal("Call has no recording URL", {"call_id": call.id})

        stored = self.object_store.put_from_url(
            call.recording_url, audio_key(call.org_id, call.id), auth=self.recording_auth
        )
        try:
            with self.db.session() as s:
                self.call_store.advance_status(call.id, CallStatus.RECEIVED, CallStatus.DOWNLOADED, session=s)
                self.call_store.set_local_audio_path(call.id, stored.path, session=s)
                next_job = self.job_queue.enqueue(
                    TRANSCRIBE,
                    {"call_id": call.id, "audio_key": stored.key},
                    name=f"transcribe-{call.id}",
                    job_key=f"transcribe:{call.id}",
                    session=s,
                )
        except IllegalTransition as e:
            # Same key, same bytes: the winner's file stays in place
            logger.info(f"[download] race lost for call {call.id}: {e.message}")
            return {"skipped": True, "reason": "race_lost"}

        return {"audio_key": stored.key, "size_bytes": stored.size_bytes, "next_job_id": next_job.id}

    def download_failed(self, job: Job, error: BaseException) -> None:
        self._mark_failed(job, CallStatus.RECEIVED, CallStatus.DOWNLOAD_FAILED, error)

    # ------------------------------------------------------------------
    # transcribe: downloaded -> transcribed
    # ------------------------------------------------------------------
    def transcribe(self, job: Job) -> Dict[str, Any]:
        call = self._load_call(job)
        if call.status != CallStatus.DOWNLOADED:
            return self._skip(job, call, "already transcribed")
        if not call.local_audio_path or not Path(call.local_audio_path).is_file():
            raise Fatal("Downloaded audio is missing", {"call_id": call.id, "path": call.local_audio_path})

        result = self.transcription.transcribe(call.local_audio_path, TranscriptionOptions(language=self.stt_language))
        if not result.text.strip():
            raise Fatal("Transcription returned no speech", {"call_id": call.id, "provider": result.provider})

        try:
            with self.db.session() as s:
                self.call_store.advance_status(call.id, CallStatus.DOWNLOADED, CallStatus.TRANSCRIBED, session=s)
                self.call_store.upsert_transcript(call.id, result.to_transcript_record(), session=s)
                next_job = self.job_queue.enqueue(
                    ANALYZE,
                    {"call_id": call.id},
                    name=f"analyze-{call.id}",
                    job_key=f"analyze:{call.id}",
                    session=s,
                )
        except IllegalTransition as e:
            logger.info(f"[transcribe] race lost for call {call.id}; transcript discarded: {e.message}")
            return {"skipped": True, "reason": "race_lost"}

        return {
            "provider": result.provider,
            "word_count": result.word_count,
            "duration_s": result.duration_s,
            "next_job_id": next_job.id,
        }

    def transcription_failed(self, job: Job, error: BaseException) -> None:
        self._mark_failed(job, CallStatus.DOWNLOADED, CallStatus.TRANSCRIPTION_FAILED, error)

    # ------------------------------------------------------------------
    # analyze: transcribed -> analyzed (or analyzed -> analyzed on re-analysis)
    # ------------------------------------------------------------------
    def analyze(self, job: Job) -> Dict[str, Any]:
        call = self._load_call(job)
        payload = job.payload or {}
        reanalyze = bool(payload.get("reanalyze"))
        if call.status.is_failed:
            return self._skip(job, call, "call already failed")
        if call.status == CallStatus.ANALYZED and not reanalyze:
            return self._skip(job, call, "already analyzed")
        if call.status not in (CallStatus.TRANSCRIBED, CallStatus.ANALYZED):
            raise Fatal(f"Call {call.id} has no transcript yet", {"status": call.status.value})

        try:
            record = self.analysis.analyze_call(call.id, model=payload.get("model"), reanalyze=reanalyze)
        except IllegalTransition as e:
            logger.info(f"[analyze] race lost for call {call.id}; analysis discarded: {e.message}")
            return {"skipped": True, "reason": "race_lost"}

        return {
            "overall_score": record["overall_score"],
            "llm_model": record["llm_model"],
            "notify_job_id": record.get("notify_job_id"),
        }

    def analysis_failed(self, job: Job, error: BaseException) -> None:
        self._mark_failed(job, CallStatus.TRANSCRIBED, CallStatus.ANALYSIS_FAILED, error)

    # ------------------------------------------------------------------
    # notify: no status change
    # ------------------------------------------------------------------
    def notify(self, job: Job) -> Dict[str, Any]:
        call = self._load_call(job)
        analysis = self.call_store.get_analysis(call.id)
        if analysis is None:
            raise Fatal(f"No analysis to notify about for call {call.id}")

        payload = job.payload or {}
        results = self.router.route(
            analysis.to_dict(), call.to_dict(),
            alert_key=payload.get("alert_key"),
            decision=payload.get("decision"),
        )
        retry = [r for r in results if not r["ok"] and r.get("retryable")]
        if retry:
            # Sent dispatches are skipped on the next attempt by their dedupe key
            raise Retryable(
                f"{len(retry)} notification dispatch(es) failed",
                {"channels": [r["channel"] for r in retry], "errors": [r.get("error") for r in retry]},
            )
        return {
            "dispatched": len([r for r in results if r["ok"] and not r.get("skipped")]),
            "skipped": len([r for r in results if r.get("skipped")]),
            "failed": len([r for r in results if not r["ok"]]),
        }

    def notify_failed(self, job: Job, error: BaseException) -> None:
        logger.error(f"[notify] giving up on notifications for call {(job.payload or {}).get('call_id')}: {error}")

    # ------------------------------------------------------------------
    def _mark_failed(self, job: Job, from_status: CallStatus, to_status: CallStatus,
                     error: BaseException) -> None:
        call_id = (job.payload or {}).get("call_id")
        if not call_id:
            return
        try:
            self.call_store.advance_status(call_id, from_status, to_status)
            logger.error(f"[{job.queue}] call {call_id} -> {to_status.value}: {error}")
        except IllegalTransition as e:
            logger.info(f"[{job.queue}] call {call_id} not marked {to_status.value}: {e.message}")
        except NotFoundError:
            logger.info(f"[{job.queue}] call {call_id} no longer exists")
