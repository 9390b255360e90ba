"""
Database models for CallQC.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def iso(value):
    if value is None:
        return None
    return value.isoformat() + "Z"


class CallStatus(str, enum.Enum):
    """Pipeline state of a call."""

    RECEIVED = "received"
    DOWNLOADED = "downloaded"
    TRANSCRIBED = "transcribed"
    ANALYZED = "analyzed"
    DOWNLOAD_FAILED = "download_failed"
    TRANSCRIPTION_FAILED = "transcription_failed"
    ANALYSIS_FAILED = "analysis_failed"

    @property
    def is_failed(self) -> bool:
        return self in FAILED_STATUSES

    @property
    def rank(self) -> int:
        """Position on the success path; failed states rank above everything."""
        return STATUS_RANK[self]


FAILED_STATUSES = frozenset({
    CallStatus.DOWNLOAD_FAILED,
    CallStatus.TRANSCRIPTION_FAILED,
    CallStatus.ANALYSIS_FAILED,
})

STATUS_RANK = {
    CallStatus.RECEIVED: 0,
    CallStatus.DOWNLOADED: 1,
    CallStatus.TRANSCRIBED: 2,
    CallStatus.ANALYZED: 3,
    CallStatus.DOWNLOAD_FAILED: 10,
    CallStatus.TRANSCRIPTION_FAILED: 10,
    CallStatus.ANALYSIS_FAILED: 10,
}

# Every legal edge of the state machine. Self-loops cover re-analysis.
ALLOWED_TRANSITIONS = {
    CallStatus.RECEIVED: {CallStatus.DOWNLOADED, CallStatus.DOWNLOAD_FAILED},
    CallStatus.DOWNLOADED: {CallStatus.TRANSCRIBED, CallStatus.TRANSCRIPTION_FAILED},
    CallStatus.TRANSCRIBED: {CallStatus.ANALYZED, CallStatus.ANALYSIS_FAILED},
    CallStatus.ANALYZED: {CallStatus.ANALYZED},
    CallStatus.DOWNLOAD_FAILED: set(),
    CallStatus.TRANSCRIPTION_FAILED: set(),
    CallStatus.ANALYSIS_FAILED: set(),
}

CALL_DIRECTIONS = ("incoming", "outgoing", "outgoing-dial", "inbound", "outbound")
CHANNELS = ("telegram", "console", "email")
NOTIFICATION_TYPES = ("low_score_alert", "critical_issue", "daily_digest", "custom")
NOTIFICATION_STATUSES = ("pending", "sent", "failed")
SENTIMENTS = ("positive", "neutral", "negative")
SEVERITIES = ("low", "medium", "high", "critical")


class Organization(Base):
    """Tenant scope for calls and users."""
    __tablename__ = "organizations"

    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    settings = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class User(Base):
    """Sales agent or manager."""
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('agent', 'manager', 'admin')", name="ck_users_role"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    org_id = Column(String(64), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(32))
    role = Column(String(16), default="agent", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Call(Base):
    """One recorded telephony call and its pipeline state."""
    __tablename__ = "calls"
    __table_args__ = (
        CheckConstraint(
            "direction IS NULL OR direction IN ('incoming', 'outgoing', 'outgoing-dial', 'inbound', 'outbound')",
            name="ck_calls_direction",
        ),
        Index("ix_calls_status_created", "status", "created_at"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    org_id = Column(String(64), ForeignKey("organizations.id"), nullable=False, index=True)
    agent_id = Column(String(64), ForeignKey("users.id"), index=True)
    external_call_sid = Column(String(128), unique=True, nullable=False)
    recording_url = Column(Text)
    local_audio_path = Column(Text)
    duration_seconds = Column(Integer)
    direction = Column(String(32))
    call_type = Column(String(32))
    caller_number = Column(String(32))
    callee_number = Column(String(32))
    status = Column(
        Enum(CallStatus, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        default=CallStatus.RECEIVED,
        nullable=False,
    )
    raw_payload = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    transcript = relationship("Transcript", uselist=False, back_populates="call",
                              cascade="all, delete-orphan", passive_deletes=True)
    analysis = relationship("Analysis", uselist=False, back_populates="call",
                            cascade="all, delete-orphan", passive_deletes=True)
    notifications = relationship("Notification", back_populates="call",
                                 cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "org_id": self.org_id,
            "agent_id": self.agent_id,
            "external_call_sid": self.external_call_sid,
            "recording_url": self.recording_url,
            "local_audio_path": self.local_audio_path,
            "duration_seconds": self.duration_seconds,
            "direction": self.direction,
            "call_type": self.call_type,
            "caller_number": self.caller_number,
            "callee_number": self.callee_number,
            "status": self.status.value if self.status else None,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class Transcript(Base):
    """Speech-to-text output; one per call."""
    __tablename__ = "transcripts"

    id = Column(String(64), primary_key=True, default=new_id)
    call_id = Column(String(64), ForeignKey("calls.id", ondelete="CASCADE"), unique=True, nullable=False)
    content = Column(Text, nullable=False)
    language = Column(String(16))
    speaker_segments = Column(JSON, default=list)
    word_count = Column(Integer, default=0)
    confidence = Column(Float)
    duration_seconds = Column(Float)
    stt_provider = Column(String(32))
    stt_model = Column(String(64))
    processing_time_ms = Column(Integer)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    call = relationship("Call", back_populates="transcript")

    def to_dict(self):
        return {
            "id": self.id,
            "call_id": self.call_id,
            "content": self.content,
            "language": self.language,
            "speaker_segments": self.speaker_segments or [],
            "word_count": self.word_count,
            "confidence": self.confidence,
            "duration_seconds": self.duration_seconds,
            "stt_provider": self.stt_provider,
            "stt_model": self.stt_model,
            "processing_time_ms": self.processing_time_ms,
            "created_at": iso(self.created_at),
        }


class Analysis(Base):
    """LLM verdict against the sales rubric; one per call."""
    __tablename__ = "analyses"
    __table_args__ = (
        CheckConstraint("overall_score >= 0 AND overall_score <= 100", name="ck_analyses_score"),
        CheckConstraint("sentiment IN ('positive', 'neutral', 'negative')", name="ck_analyses_sentiment"),
        Index("ix_analyses_created", "created_at"),
        Index("ix_analyses_score", "overall_score"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    call_id = Column(String(64), ForeignKey("calls.id", ondelete="CASCADE"), unique=True, nullable=False)
    overall_score = Column(Float, nullable=False)
    category_scores = Column(JSON, default=dict)
    issues = Column(JSON, default=list)
    recommendations = Column(JSON, default=list)
    summary = Column(Text)
    sentiment = Column(String(16), default="neutral", nullable=False)
    customer_interest_level = Column(String(16))
    follow_up_priority = Column(String(16))
    detected_requirements = Column(JSON)
    llm_model = Column(String(128))
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    processing_time_ms = Column(Integer)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    call = relationship("Call", back_populates="analysis")

    def to_dict(self):
        return {
            "id": self.id,
            "call_id": self.call_id,
            "overall_score": self.overall_score,
            "category_scores": self.category_scores or {},
            "issues": self.issues or [],
            "recommendations": self.recommendations or [],
            "summary": self.summary,
            "sentiment": self.sentiment,
            "customer_interest_level": self.customer_interest_level,
            "follow_up_priority": self.follow_up_priority,
            "detected_requirements": self.detected_requirements,
            "llm_model": self.llm_model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "processing_time_ms": self.processing_time_ms,
            "created_at": iso(self.created_at),
        }


class Notification(Base):
    """Append-only log of every alert or digest dispatch."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_call_type", "call_id", "type"),
        Index("ix_notifications_created", "created_at"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    call_id = Column(String(64), ForeignKey("calls.id", ondelete="CASCADE"), index=True)
    user_id = Column(String(64))
    channel = Column(String(16), nullable=False)
    type = Column(String(32), nullable=False)
    message = Column(Text)
    status = Column(String(16), default="pending", nullable=False)
    dedupe_key = Column(String(128))
    vendor_message_id = Column(String(128))
    error = Column(Text)
    meta = Column("metadata", JSON, default=dict)
    sent_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    call = relationship("Call", back_populates="notifications")

    def to_dict(self):
        return {
            "id": self.id,
            "call_id": self.call_id,
            "user_id": self.user_id,
            "channel": self.channel,
            "type": self.type,
            "message": self.message,
            "status": self.status,
            "vendor_message_id": self.vendor_message_id,
            "error": self.error,
            "metadata": self.meta or {},
            "sent_at": iso(self.sent_at),
            "created_at": iso(self.created_at),
        }


class UserPreferences(Base):
    """Per-user channel and threshold choices."""
    __tablename__ = "user_preferences"

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(String(64), unique=True, nullable=False)
    telegram_enabled = Column(Boolean, default=True)
    telegram_chat_id = Column(String(64))
    console_enabled = Column(Boolean, default=True)
    email_enabled = Column(Boolean, default=False)
    email_address = Column(String(255))
    alert_low_score = Column(Boolean, default=True)
    alert_critical_issue = Column(Boolean, default=True)
    daily_digest = Column(Boolean, default=True)
    low_score_threshold = Column(Float)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "telegram_enabled": self.telegram_enabled,
            "telegram_chat_id": self.telegram_chat_id,
            "console_enabled": self.console_enabled,
            "email_enabled": self.email_enabled,
            "email_address": self.email_address,
            "alert_low_score": self.alert_low_score,
            "alert_critical_issue": self.alert_critical_issue,
            "daily_digest": self.daily_digest,
            "low_score_threshold": self.low_score_threshold,
            "updated_at": iso(self.updated_at),
        }


class Job(Base):
    """Durable queue entry for one pipeline stage."""
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_claim", "queue", "status", "priority", "available_at"),
        Index("ix_jobs_key", "queue", "job_key"),
    )

    id = Column(String(64), primary_key=True, default=new_id)
    queue = Column(String(32), nullable=False)
    name = Column(String(64), nullable=False)
    payload = Column(JSON, default=dict)
    job_key = Column(String(128))
    priority = Column(Integer, default=5, nullable=False)
    attempts = Column(Integer, default=1, nullable=False)
    attempts_made = Column(Integer, default=0, nullable=False)
    backoff_ms = Column(Integer, default=1000, nullable=False)
    timeout_ms = Column(Integer, default=60000, nullable=False)
    status = Column(String(16), default="waiting", nullable=False)
    available_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    last_error = Column(Text)
    result = Column(JSON)
    failure = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "queue": self.queue,
            "name": self.name,
            "payload": self.payload or {},
            "job_key": self.job_key,
            "priority": self.priority,
            "attempts": self.attempts,
            "attempts_made": self.attempts_made,
            "status": self.status,
            "available_at": iso(self.available_at),
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
            "last_error": self.last_error,
            "result": self.result,
            "failure": self.failure,
            "created_at": iso(self.created_at),
        }
