"""
Relational store for calls, transcripts, analyses, notifications and user preferences.

All writes go through conditional or upserting statements so that pipeline
handlers stay idempotent under at-least-once delivery.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, select, update, delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from .config import ScoringConfig
from .database import Database
from .errors import IllegalTransition, NotFoundError, ValidationError
from .logging_config import log_function_call
from .models import (
    ALLOWED_TRANSITIONS,
    Analysis,
    Call,
    CallStatus,
    Notification,
    Organization,
    Transcript,
    User,
    UserPreferences,
    new_id,
    utcnow,
)

logger = logging.getLogger('callqc.database')

CALL_FIELDS = (
    "org_id", "agent_id", "external_call_sid", "recording_url", "duration_seconds",
    "direction", "call_type", "caller_number", "callee_number", "raw_payload",
)
TRANSCRIPT_FIELDS = (
    "content", "language", "speaker_segments", "word_count", "confidence",
    "duration_seconds", "stt_provider", "stt_model", "processing_time_ms",
)
ANALYSIS_FIELDS = (
    "overall_score", "category_scores", "issues", "recommendations", "summary", "sentiment",
    "customer_interest_level", "follow_up_priority", "detected_requirements", "llm_model",
    "prompt_tokens", "completion_tokens", "processing_time_ms",
)
PREFERENCE_FIELDS = (
    "telegram_enabled", "telegram_chat_id", "console_enabled", "email_enabled", "email_address",
    "alert_low_score", "alert_critical_issue", "daily_digest", "low_score_threshold",
)


def _page_bounds(page: int, limit: int) -> Tuple[int, int]:
    page = max(1, int(page or 1))
    limit = min(100, max(1, int(limit or 20)))
    return page, limit


class CallStore:
    """
    Typed access to the pipeline's relational state.

    Every write accepts an optional open session so a handler can persist an
    entity, advance the call and enqueue the next stage in one transaction.
    """

    def __init__(self, database: Database, scoring: ScoringConfig):
        self.db = database
        self.scoring = scoring

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------
    def ensure_organization(self, org_id: str, name: str, org_settings: Optional[dict] = None) -> None:
        with self.db.session() as s:
            stmt = sqlite_insert(Organization).values(
                id=org_id,
                name=name,
                settings=org_settings or {"timezone": "Asia/Kolkata"},
                created_at=utcnow(),
            ).on_conflict_do_nothing(index_elements=["id"])
            s.execute(stmt)
        logger.info(f"Organization ready: {org_id}")

    def ensure_user(self, user_id: str, org_id: str, name: str, role: str = "agent", **fields) -> None:
        with self.db.session() as s:
            s.execute(sqlite_insert(User).values(
                id=user_id,
                org_id=org_id,
                name=name,
                role=role,
                email=fields.get("email"),
                phone=fields.get("phone"),
                created_at=utcnow(),
            ).on_conflict_do_nothing(index_elements=["id"]))

    def get_user(self, user_id: str) -> Optional[User]:
        with self.db.session() as s:
            return s.get(User, user_id)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    @log_function_call
    def create_call(self, fields: Dict[str, Any], session: Optional[Session] = None) -> Tuple[Call, bool]:
        """
        Insert a call, or return the existing row for the same external_call_sid.

        Returns:
            (call, created) where created is False for duplicate SIDs
        """
        sid = fields.get("external_call_sid")
        if not sid:
            raise ValidationError("external_call_sid is required")

        values = {key: fields.get(key) for key in CALL_FIELDS if key in fields}
        now = utcnow()
        values.update(
            id=new_id(),
            status=CallStatus.RECEIVED,
            created_at=now,
            updated_at=now,
        )
        with self.db.scope(session) as s:
            stmt = sqlite_insert(Call).values(**values).on_conflict_do_nothing(
                index_elements=["external_call_sid"]
            )
            created = s.execute(stmt).rowcount == 1
            call = s.execute(select(Call).where(Call.external_call_sid == sid)).scalar_one()

        if created:
            logger.info(f"Call created: {call.id} (sid={sid})")
        else:
            logger.info(f"Duplicate call sid={sid}; returning existing call {call.id}")
        return call, created

    def get_call(self, call_id: str, session: Optional[Session] = None) -> Optional[Call]:
        with self.db.scope(session) as s:
            return s.get(Call, call_id)

    def require_call(self, call_id: str, session: Optional[Session] = None) -> Call:
        call = self.get_call(call_id, session=session)
        if call is None:
            raise NotFoundError("Call", call_id)
        return call

    def get_call_by_sid(self, sid: str) -> Optional[Call]:
        with self.db.session() as s:
            return s.execute(select(Call).where(Call.external_call_sid == sid)).scalar_one_or_none()

    def list_calls(self, page: int = 1, limit: int = 20, status: Optional[str] = None,
                   agent_id: Optional[str] = None) -> Tuple[List[Call], int]:
        page, limit = _page_bounds(page, limit)
        conditions = []
        if status:
            conditions.append(Call.status == CallStatus(status))
        if agent_id:
            conditions.append(Call.agent_id == agent_id)
        with self.db.session() as s:
            total = s.execute(select(func.count(Call.id)).where(*conditions)).scalar_one()
            rows = s.execute(
                select(Call).where(*conditions)
                .order_by(Call.created_at.desc())
                .offset((page - 1) * limit).limit(limit)
            ).scalars().all()
        return list(rows), total

    @log_function_call
    def advance_status(
        self,
        call_id: str,
        from_status: CallStatus,
        to_status: CallStatus,
        session: Optional[Session] = None,
    ) -> None:
        """
        Conditionally move a call from one status to the next.

        Raises:
            IllegalTransition: the edge is not in the state machine, or the
                current status is not `from_status` (another worker won)
            NotFoundError: the call does not exist
        """
        from_status = CallStatus(from_status)
        to_status = CallStatus(to_status)
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise IllegalTransition(call_id, from_status.value, from_status.value, to_status.value)

        with self.db.scope(session) as s:
            result = s.execute(
                update(Call)
                .where(and_(Call.id == call_id, Call.status == from_status))
                .values(status=to_status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = s.execute(select(Call.status).where(Call.id == call_id)).scalar_one_or_none()
                if current is None:
                    raise NotFoundError("Call", call_id)
                raise IllegalTransition(call_id, from_status.value, CallStatus(current).value, to_status.value)

        logger.info(f"Call {call_id}: {from_status.value} -> {to_status.value}")

    def set_local_audio_path(self, call_id: str, path: str, session: Optional[Session] = None) -> None:
        with self.db.scope(session) as s:
            s.execute(
                update(Call).where(Call.id == call_id)
                .values(local_audio_path=path, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    def delete_call(self, call_id: str) -> bool:
        with self.db.session() as s:
            result = s.execute(delete(Call).where(Call.id == call_id))
            deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Call deleted with its transcript, analysis and notifications: {call_id}")
        return deleted

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------
    @log_function_call
    def upsert_transcript(self, call_id: str, record: Dict[str, Any], session: Optional[Session] = None) -> None:
        """Insert or replace the single transcript of a call."""
        values = {key: record.get(key) for key in TRANSCRIPT_FIELDS}
        if not values.get("content"):
            values["content"] = ""
        values["created_at"] = utcnow()
        with self.db.scope(session) as s:
            stmt = sqlite_insert(Transcript).values(id=new_id(), call_id=call_id, **values)
            s.execute(stmt.on_conflict_do_update(index_elements=["call_id"], set_=values))

    def get_transcript(self, call_id: str, session: Optional[Session] = None) -> Optional[Transcript]:
        with self.db.scope(session) as s:
            return s.execute(select(Transcript).where(Transcript.call_id == call_id)).scalar_one_or_none()

    def count_transcripts(self, call_id: str) -> int:
        with self.db.session() as s:
            return s.execute(select(func.count(Transcript.id)).where(Transcript.call_id == call_id)).scalar_one()

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------
    @log_function_call
    def upsert_analysis(self, call_id: str, record: Dict[str, Any], session: Optional[Session] = None) -> None:
        """Insert or replace the single analysis of a call."""
        values = {key: record.get(key) for key in ANALYSIS_FIELDS}
        values["category_scores"] = values.get("category_scores") or {}
        values["issues"] = values.get("issues") or []
        values["recommendations"] = values.get("recommendations") or []
        values["prompt_tokens"] = values.get("prompt_tokens") or 0
        values["completion_tokens"] = values.get("completion_tokens") or 0
        values["created_at"] = utcnow()
        with self.db.scope(session) as s:
            stmt = sqlite_insert(Analysis).values(id=new_id(), call_id=call_id, **values)
            s.execute(stmt.on_conflict_do_update(index_elements=["call_id"], set_=values))

    def get_analysis(self, call_id: str, session: Optional[Session] = None) -> Optional[Analysis]:
        with self.db.scope(session) as s:
            return s.execute(select(Analysis).where(Analysis.call_id == call_id)).scalar_one_or_none()

    def get_analysis_by_id(self, analysis_id: str) -> Optional[Analysis]:
        with self.db.session() as s:
            return s.get(Analysis, analysis_id)

    def count_analyses(self, call_id: str) -> int:
        with self.db.session() as s:
            return s.execute(select(func.count(Analysis.id)).where(Analysis.call_id == call_id)).scalar_one()

    def list_analyses(
        self,
        page: int = 1,
        limit: int = 20,
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        sentiment: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        page, limit = _page_bounds(page, limit)
        conditions = []
        if min_score is not None:
            conditions.append(Analysis.overall_score >= min_score)
        if max_score is not None:
            conditions.append(Analysis.overall_score <= max_score)
        if sentiment:
            conditions.append(Analysis.sentiment == sentiment)

        with self.db.session() as s:
            total = s.execute(select(func.count(Analysis.id)).where(*conditions)).scalar_one()
            rows = s.execute(
                select(Analysis, Call)
                .join(Call, Call.id == Analysis.call_id)
                .where(*conditions)
                .order_by(Analysis.created_at.desc())
                .offset((page - 1) * limit).limit(limit)
            ).all()
        return [self._analysis_with_call(analysis, call) for analysis, call in rows], total

    def get_alerts(self, threshold: Optional[float] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Analyses scoring below the alert threshold, worst first."""
        threshold = self.scoring.alert_threshold if threshold is None else threshold
        with self.db.session() as s:
            rows = s.execute(
                select(Analysis, Call)
                .join(Call, Call.id == Analysis.call_id)
                .where(Analysis.overall_score < threshold)
                .order_by(Analysis.overall_score.asc(), Analysis.created_at.desc())
                .limit(min(200, max(1, limit)))
            ).all()
        return [self._analysis_with_call(analysis, call) for analysis, call in rows]

    def get_statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts and averages bucketed by score band and sentiment."""
        conditions = []
        if start is not None:
            conditions.append(Analysis.created_at >= start)
        if end is not None:
            conditions.append(Analysis.created_at < end)

        alert, good, excellent = (
            self.scoring.alert_threshold, self.scoring.good_threshold, self.scoring.excellent_threshold
        )
        with self.db.session() as s:
            total, avg, low, high = s.execute(
                select(
                    func.count(Analysis.id),
                    func.avg(Analysis.overall_score),
                    func.min(Analysis.overall_score),
                    func.max(Analysis.overall_score),
                ).where(*conditions)
            ).one()
            scores = s.execute(select(Analysis.overall_score).where(*conditions)).scalars().all()
            sentiment_rows = s.execute(
                select(Analysis.sentiment, func.count(Analysis.id)).where(*conditions).group_by(Analysis.sentiment)
            ).all()
            status_rows = s.execute(select(Call.status, func.count(Call.id)).group_by(Call.status)).all()

        bands = {"excellent": 0, "good": 0, "needs_improvement": 0, "poor": 0}
        for score in scores:
            bands[self.scoring.classify(score)] += 1

        sentiments = {"positive": 0, "neutral": 0, "negative": 0}
        for sentiment, count in sentiment_rows:
            sentiments[sentiment] = count

        return {
            "total_analyses": total,
            "average_score": round(avg, 1) if avg is not None else None,
            "min_score": low,
            "max_score": high,
            "by_band": bands,
            "by_sentiment": sentiments,
            "calls_by_status": {CallStatus(status).value: count for status, count in status_rows},
            "thresholds": {"alert": alert, "good": good, "excellent": excellent},
        }

    def analyses_between(
        self,
        start: datetime,
        end: datetime,
        agent_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Analyses created in [start, end) joined with their calls, oldest first."""
        conditions = [Analysis.created_at >= start, Analysis.created_at < end]
        if agent_id:
            conditions.append(Call.agent_id == agent_id)
        with self.db.session() as s:
            rows = s.execute(
                select(Analysis, Call)
                .join(Call, Call.id == Analysis.call_id)
                .where(*conditions)
                .order_by(Analysis.created_at.asc())
            ).all()
        return [self._analysis_with_call(analysis, call) for analysis, call in rows]

    @staticmethod
    def _analysis_with_call(analysis: Analysis, call: Call) -> Dict[str, Any]:
        record = analysis.to_dict()
        record["call"] = {
            "id": call.id,
            "external_call_sid": call.external_call_sid,
            "agent_id": call.agent_id,
            "caller_number": call.caller_number,
            "callee_number": call.callee_number,
            "direction": call.direction,
            "duration_seconds": call.duration_seconds,
            "status": call.status.value,
        }
        return record

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def append_notification(self, fields: Dict[str, Any], session: Optional[Session] = None) -> Notification:
        """Append one dispatch record; notifications are never updated."""
        status = fields.get("status", "pending")
        notification = Notification(
            id=new_id(),
            call_id=fields.get("call_id"),
            user_id=fields.get("user_id"),
            channel=fields["channel"],
            type=fields["type"],
            message=fields.get("message"),
            status=status,
            dedupe_key=fields.get("dedupe_key"),
            vendor_message_id=fields.get("vendor_message_id"),
            error=fields.get("error"),
            meta=fields.get("metadata") or {},
            sent_at=utcnow() if status == "sent" else None,
            created_at=utcnow(),
        )
        with self.db.scope(session) as s:
            s.add(notification)
            s.flush()
        return notification

    def has_sent_notification(self, call_id: Optional[str], type_: str, channel: str,
                              dedupe_key: Optional[str] = None) -> bool:
        conditions = [
            Notification.type == type_,
            Notification.channel == channel,
            Notification.status == "sent",
        ]
        conditions.append(Notification.call_id == call_id if call_id else Notification.call_id.is_(None))
        if dedupe_key is not None:
            conditions.append(Notification.dedupe_key == dedupe_key)
        with self.db.session() as s:
            return s.execute(select(func.count(Notification.id)).where(*conditions)).scalar_one() > 0

    def list_notifications(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        channel: Optional[str] = None,
        type_: Optional[str] = None,
        call_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[List[Notification], int]:
        page, limit = _page_bounds(page, limit)
        conditions = []
        if status:
            conditions.append(Notification.status == status)
        if channel:
            conditions.append(Notification.channel == channel)
        if type_:
            conditions.append(Notification.type == type_)
        if call_id:
            conditions.append(Notification.call_id == call_id)
        if start is not None:
            conditions.append(Notification.created_at >= start)
        if end is not None:
            conditions.append(Notification.created_at < end)

        with self.db.session() as s:
            total = s.execute(select(func.count(Notification.id)).where(*conditions)).scalar_one()
            rows = s.execute(
                select(Notification).where(*conditions)
                .order_by(Notification.created_at.desc())
                .offset((page - 1) * limit).limit(limit)
            ).scalars().all()
        return list(rows), total

    def count_notifications(self, type_: Optional[str] = None, start: Optional[datetime] = None,
                            end: Optional[datetime] = None, call_id: Optional[str] = None) -> int:
        conditions = []
        if type_:
            conditions.append(Notification.type == type_)
        if start is not None:
            conditions.append(Notification.created_at >= start)
        if end is not None:
            conditions.append(Notification.created_at < end)
        if call_id:
            conditions.append(Notification.call_id == call_id)
        with self.db.session() as s:
            return s.execute(select(func.count(Notification.id)).where(*conditions)).scalar_one()

    def notification_statistics(self, start: Optional[datetime] = None,
                                end: Optional[datetime] = None) -> Dict[str, Any]:
        conditions = []
        if start is not None:
            conditions.append(Notification.created_at >= start)
        if end is not None:
            conditions.append(Notification.created_at < end)

        def grouped(s, column):
            rows = s.execute(
                select(column, func.count(Notification.id)).where(*conditions).group_by(column)
            ).all()
            return {key: count for key, count in rows}

        with self.db.session() as s:
            total = s.execute(select(func.count(Notification.id)).where(*conditions)).scalar_one()
            by_status = grouped(s, Notification.status)
            by_channel = grouped(s, Notification.channel)
            by_type = grouped(s, Notification.type)

        sent = by_status.get("sent", 0)
        return {
            "total": total,
            "by_status": by_status,
            "by_channel": by_channel,
            "by_type": by_type,
            "success_rate": round(sent / total * 100, 1) if total else None,
        }

    def delete_old_notifications(self, days_old: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=days_old)
        with self.db.session() as s:
            deleted = s.execute(delete(Notification).where(Notification.created_at < cutoff)).rowcount
        logger.info(f"Deleted {deleted} notifications older than {days_old} days")
        return deleted

    # ------------------------------------------------------------------
    # User preferences
    # ------------------------------------------------------------------
    def default_preferences(self, user_id: str) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "telegram_enabled": True,
            "telegram_chat_id": None,
            "console_enabled": True,
            "email_enabled": False,
            "email_address": None,
            "alert_low_score": True,
            "alert_critical_issue": True,
            "daily_digest": True,
            "low_score_threshold": self.scoring.alert_threshold,
        }

    def get_preferences(self, user_id: str) -> Dict[str, Any]:
        """Stored preferences, or the defaults flagged with is_default."""
        with self.db.session() as s:
            prefs = s.execute(
                select(UserPreferences).where(UserPreferences.user_id == user_id)
            ).scalar_one_or_none()
        if prefs is None:
            return {**self.default_preferences(user_id), "is_default": True}
        return {**prefs.to_dict(), "is_default": False}

    def upsert_preferences(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = {**self.default_preferences(user_id)}
        values.pop("user_id")
        current = self.get_preferences(user_id)
        if not current["is_default"]:
            values.update({key: current[key] for key in PREFERENCE_FIELDS})
        values.update({key: fields[key] for key in PREFERENCE_FIELDS if key in fields})
        now = utcnow()
        with self.db.session() as s:
            stmt = sqlite_insert(UserPreferences).values(
                id=new_id(), user_id=user_id, created_at=now, updated_at=now, **values
            )
            s.execute(stmt.on_conflict_do_update(
                index_elements=["user_id"], set_={**values, "updated_at": now}
            ))
        return self.get_preferences(user_id)
