"""
Call analysis orchestration.

`analyze_call` is the single implementation behind both the synchronous
HTTP endpoint and the analyze worker: it runs the LLM outside any
transaction, then commits the status advance, the analysis row and the
follow-up notify job together.
"""
import logging
from typing import Any, Dict, Optional

from ..call_store import CallStore
from ..config import ScoringConfig
from ..database import Database
from ..errors import ServiceUnavailable, ValidationError
from ..job_queue import ANALYZE, NOTIFY, JobQueue
from ..logging_config import PerformanceMonitor
from ..models import CallStatus, new_id
from .llm_analyzer import OpenRouterAnalyzer

logger = logging.getLogger('callqc.llm')


class AnalysisService:
    """Runs, stores and reports LLM analyses of transcribed calls."""

    def __init__(
        self,
        database: Database,
        call_store: CallStore,
        analyzer: OpenRouterAnalyzer,
        job_queue: JobQueue,
        scoring: ScoringConfig,
        router=None,
    ):
        self.db = database
        self.call_store = call_store
        self.analyzer = analyzer
        self.job_queue = job_queue
        self.scoring = scoring
        # Optional NotificationRouter; its runtime settings decide alerting
        self.router = router

    def is_available(self) -> bool:
        return self.analyzer.is_available()

    def classify(self, score: Optional[float]) -> str:
        return self.scoring.classify(score)

    def check_alert_threshold(self, score: Optional[float]) -> bool:
        return self.scoring.is_alert(score)

    def alert_decision(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Which alerts the verdict produces, decided now and stored on the notify job."""
        if self.router is not None:
            return self.router.alert_decision(record)
        low_score = self.scoring.is_alert(record.get("overall_score"))
        critical = [
            index for index, issue in enumerate(record.get("issues") or [])
            if isinstance(issue, dict)
            and str(issue.get("severity") or "").lower() in self.scoring.critical_severities
        ]
        return {
            "notify": bool(low_score or critical),
            "low_score": low_score,
            "low_score_threshold": self.scoring.alert_threshold,
            "critical_issue_indexes": critical,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def analyze_call(self, call_id: str, model: Optional[str] = None, reanalyze: bool = False) -> Dict[str, Any]:
        """
        Analyze a call's transcript and persist the verdict.

        Returns the stored analysis unless `reanalyze` is set.

        Raises:
            NotFoundError: unknown call
            ServiceUnavailable: the LLM gateway is not configured
            ValidationError: no (or an empty) transcript, or a failed call
            IllegalTransition: another writer advanced the call first
        """
        call = self.call_store.require_call(call_id)
        if not self.is_available():
            raise ServiceUnavailable("Analysis service not available (OPENROUTER_API_KEY missing)")

        if not reanalyze and call.status == CallStatus.ANALYZED:
            existing = self.call_store.get_analysis(call_id)
            if existing is not None:
                logger.info(f"Returning existing analysis for call {call_id}")
                return self._present(existing.to_dict(), alert_job=None)

        if call.status.is_failed:
            raise ValidationError(
                f"Call {call_id} is in terminal status {call.status.value}",
                {"call_id": call_id, "status": call.status.value},
            )

        transcript = self.call_store.get_transcript(call_id)
        if transcript is None or call.status not in (CallStatus.TRANSCRIBED, CallStatus.ANALYZED):
            raise ValidationError(
                "Cannot analyze call without transcript",
                {"call_id": call_id, "status": call.status.value},
            )
        if not transcript.content or not transcript.content.strip():
            raise ValidationError(f"Transcript is empty for call: {call_id}", {"call_id": call_id})

        with PerformanceMonitor(f"analyze call {call_id}", logger_name='callqc.llm'):
            record = self.analyzer.analyze(transcript.content, model=model)

        from_status = call.status
        notify_job = None
        with self.db.session() as s:
            # Advance first: a lost race rolls back before anything is written
            self.call_store.advance_status(call_id, from_status, CallStatus.ANALYZED, session=s)
            self.call_store.upsert_analysis(call_id, record, session=s)
            decision = self.alert_decision(record)
            if decision["notify"]:
                alert_key = new_id()
                notify_job = self.job_queue.enqueue(
                    NOTIFY,
                    {"call_id": call_id, "alert_key": alert_key, "decision": decision},
                    name=f"notify-{call_id}",
                    job_key=f"notify:{call_id}:{alert_key}",
                    session=s,
                )

        stored = self.call_store.get_analysis(call_id)
        result = {**stored.to_dict(), "metadata": record.get("metadata")}
        logger.info(
            f"Call {call_id} analyzed: score={result['overall_score']} "
            f"band={self.classify(result['overall_score'])} notify={'yes' if notify_job else 'no'}"
        )
        return self._present(result, alert_job=notify_job)

    def reanalyze_call(self, call_id: str, model: Optional[str] = None) -> Dict[str, Any]:
        return self.analyze_call(call_id, model=model, reanalyze=True)

    def enqueue_analysis(self, call_id: str, model: Optional[str] = None, reanalyze: bool = False):
        """Queue the worker-driven path; the caller answers 202 with the job id."""
        self.call_store.require_call(call_id)
        if not self.is_available():
            raise ServiceUnavailable("Analysis service not available (OPENROUTER_API_KEY missing)")
        payload = {"call_id": call_id, "model": model, "reanalyze": reanalyze}
        if reanalyze:
            return self.job_queue.enqueue(
                ANALYZE, payload, name=f"reanalyze-{call_id}", priority=2, attempts=2,
            )
        return self.job_queue.enqueue(
            ANALYZE, payload, name=f"analyze-{call_id}", job_key=f"analyze:{call_id}",
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_analysis(self, call_id: str) -> Optional[Dict[str, Any]]:
        analysis = self.call_store.get_analysis(call_id)
        return self._present(analysis.to_dict(), alert_job=None) if analysis else None

    def get_report(self, call_id: str) -> Dict[str, Any]:
        """Call, transcript summary and analysis in one document."""
        call = self.call_store.require_call(call_id)
        transcript = self.call_store.get_transcript(call_id)
        analysis = self.call_store.get_analysis(call_id)
        score = analysis.overall_score if analysis else None
        return {
            "call": call.to_dict(),
            "transcript": {
                "word_count": transcript.word_count,
                "language": transcript.language,
                "stt_provider": transcript.stt_provider,
                "duration_seconds": transcript.duration_seconds,
                "content": transcript.content,
            } if transcript else None,
            "analysis": analysis.to_dict() if analysis else None,
            "classification": self.classify(score) if analysis else None,
            "alert": self.check_alert_threshold(score),
        }

    def _present(self, record: Dict[str, Any], alert_job) -> Dict[str, Any]:
        score = record.get("overall_score")
        record["classification"] = self.classify(score)
        record["alert_triggered"] = self.check_alert_threshold(score)
        record["notify_job_id"] = alert_job.id if alert_job is not None else None
        return record
