"""
Configuration settings for CallQC.
"""
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple
import os

from pydantic_settings import BaseSettings, SettingsConfigDict


RUBRIC_WEIGHTS = {
    "greeting_rapport": 0.15,
    "requirement_discovery": 0.25,
    "product_knowledge": 0.20,
    "objection_handling": 0.20,
    "closing_next_steps": 0.20,
}


@dataclass(frozen=True)
class ScoringConfig:
    """Immutable scoring thresholds shared by the analyzer, router and digest."""

    alert_threshold: float = 50
    good_threshold: float = 70
    excellent_threshold: float = 85
    weights: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(dict(RUBRIC_WEIGHTS))
    )
    critical_severities: Tuple[str, ...] = ("high", "critical")

    def classify(self, score: Optional[float]) -> str:
        """Map a 0-100 score onto its band name."""
        if score is None:
            return "unknown"
        if score < self.alert_threshold:
            return "poor"
        if score < self.good_threshold:
            return "needs_improvement"
        if score < self.excellent_threshold:
            return "good"
        return "excellent"

    def is_alert(self, score: Optional[float]) -> bool:
        return score is not None and score < self.alert_threshold

    def thresholds(self) -> dict:
        return {
            "alert": self.alert_threshold,
            "good": self.good_threshold,
            "excellent": self.excellent_threshold,
        }


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "CallQC"
    project_name: str = "Call Quality Control"
    environment: str = "development"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    backend_cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8080"]

    # Database
    database_path: str = "./database/app.db"

    # Queue (jobs live in the database file; redis settings are informational)
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_password: Optional[str] = None
    workers_enabled: bool = True
    worker_poll_interval: float = 1.0

    # Storage
    storage_path: str = "./storage"

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/callqc.log"

    # Scoring
    score_threshold_alert: float = 50
    score_threshold_good: float = 70
    score_threshold_excellent: float = 85

    # Organization
    default_org_id: str = "default"
    default_org_name: str = "Default Organization"

    # Telephony (Exotel)
    exotel_account_sid: Optional[str] = None
    exotel_api_key: Optional[str] = None
    exotel_api_token: Optional[str] = None

    # Speech-to-text
    stt_provider: str = "groq"
    stt_language: Optional[str] = None
    groq_api_key: Optional[str] = None
    groq_model: str = "whisper-large-v3-turbo"
    elevenlabs_api_key: Optional[str] = None
    sarvam_api_key: Optional[str] = None
    google_application_credentials: Optional[str] = None
    google_cloud_project: Optional[str] = None
    google_cloud_location: str = "asia-south1"
    azure_speech_key: Optional[str] = None
    azure_speech_region: str = "centralindia"

    # LLM (OpenRouter)
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "deepseek/deepseek-chat"
    openrouter_fallback_model: str = "deepseek/deepseek-chat"
    openrouter_referer: str = "http://localhost:3000"
    openrouter_app_title: str = "Sports Infrastructure Sales QC"
    llm_temperature: float = 0.3
    llm_max_tokens: int = 2000

    # Notifications
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    notifications_enabled: bool = True
    alert_low_score: bool = True
    alert_critical_issue: bool = True
    daily_digest_enabled: bool = True
    daily_digest_time: str = "09:00"

    @property
    def audio_dir(self) -> Path:
        return Path(self.storage_path) / "audio"

    @property
    def exports_dir(self) -> Path:
        return Path(self.storage_path) / "exports"

    @property
    def redis_configured(self) -> bool:
        return bool(self.redis_host)

    def scoring_config(self) -> ScoringConfig:
        """Build the immutable scoring value passed to every service."""
        return ScoringConfig(
            alert_threshold=self.score_threshold_alert,
            good_threshold=self.score_threshold_good,
            excellent_threshold=self.score_threshold_excellent,
        )

    def digest_time(self) -> Tuple[int, int]:
        """Parse DAILY_DIGEST_TIME (HH:MM, UTC) into hour and minute."""
        hour, _, minute = self.daily_digest_time.partition(":")
        return int(hour), int(minute or 0)


# Create settings instance
settings = Settings()


def get_database_url(db_settings: Optional[Settings] = None) -> str:
    """Get the SQLite database URL, honouring DATABASE_URL when set."""
    override = os.getenv("DATABASE_URL")
    if override:
        return override
    db_settings = db_settings or settings
    if db_settings.database_path == ":memory:":
        return "sqlite://"
    return f"sqlite:///{db_settings.database_path}"


def is_production(app_settings: Optional[Settings] = None) -> bool:
    """Return True when ENVIRONMENT=production."""
    return (app_settings or settings).environment.lower() == "production"
