"""
Explicit wiring of every service the application and workers use.

Nothing here is a module-level singleton: `build_services` returns a fresh
container, and tests build one with fakes substituted for vendor clients.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import requests

from .call_store import CallStore
from .config import ScoringConfig, Settings, get_database_url
from .database import Database
from .job_queue import JobQueue
from .object_store import ObjectStore
from .pipeline_workers import PipelineHandlers
from .scheduler import DigestScheduler
from .services.analysis_service import AnalysisService
from .services.digest import DigestGenerator
from .services.intake import CallIntake
from .services.llm_analyzer import OpenRouterAnalyzer
from .services.notifications import Channel, NotificationRouter
from .services.stt import TranscriptionManager
from .worker_pool import StageHandler, WorkerPool

logger = logging.getLogger('callqc.startup')


@dataclass
class Services:
    settings: Settings
    scoring: ScoringConfig
    db: Database
    call_store: CallStore
    object_store: ObjectStore
    job_queue: JobQueue
    transcription: TranscriptionManager
    analyzer: OpenRouterAnalyzer
    analysis: AnalysisService
    router: NotificationRouter
    digest: DigestGenerator
    intake: CallIntake
    handlers: Dict[str, StageHandler]
    pool: WorkerPool
    scheduler: Optional[DigestScheduler] = None

    def bootstrap(self) -> None:
        """Create tables and the default organization."""
        self.db.create_tables()
        self.call_store.ensure_organization(
            self.settings.default_org_id,
            self.settings.default_org_name,
            {"timezone": "Asia/Kolkata"},
        )

    def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        if self.pool.is_running():
            self.pool.stop()
        self.db.dispose()


def build_services(
    settings: Settings,
    *,
    database_url: Optional[str] = None,
    http_session: Optional[requests.Session] = None,
    transcription: Optional[TranscriptionManager] = None,
    analyzer: Optional[OpenRouterAnalyzer] = None,
    channels: Optional[Iterable[Channel]] = None,
) -> Services:
    """
    Build the container from settings.

    Vendor clients can be replaced: `transcription`, `analyzer` and
    `channels` take prebuilt instances; `http_session` is shared by the
    recording downloader and the default Telegram channel.
    """
    scoring = settings.scoring_config()
    db = Database(database_url or get_database_url(settings))
    call_store = CallStore(db, scoring)
    job_queue = JobQueue(db)
    object_store = ObjectStore(settings.storage_path, session=http_session)

    transcription = transcription or TranscriptionManager.from_settings(settings)
    analyzer = analyzer or OpenRouterAnalyzer.from_settings(settings, scoring)

    if channels is None:
        router = NotificationRouter.from_settings(settings, call_store, scoring, session=http_session)
    else:
        router = NotificationRouter(
            call_store,
            scoring,
            channels,
            enabled=settings.notifications_enabled,
            alert_on_low_score=settings.alert_low_score,
            alert_on_critical_issue=settings.alert_critical_issue,
        )

    analysis = AnalysisService(db, call_store, analyzer, job_queue, scoring, router=router)
    digest = DigestGenerator(call_store, scoring, router=router)
    intake = CallIntake(db, call_store, job_queue, settings.default_org_id)

    recording_auth = None
    if settings.exotel_api_key and settings.exotel_api_token:
        recording_auth = (settings.exotel_api_key, settings.exotel_api_token)

    handlers = PipelineHandlers(
        db, call_store, object_store, job_queue, transcription, analysis, router,
        stt_language=settings.stt_language,
        recording_auth=recording_auth,
    ).stage_handlers()
    pool = WorkerPool(job_queue, handlers, poll_interval=settings.worker_poll_interval)

    scheduler = None
    if settings.daily_digest_enabled:
        hour, minute = settings.digest_time()
        scheduler = DigestScheduler(digest, hour=hour, minute=minute)

    logger.info(
        f"Services built: stt={transcription.available_providers() or 'none'} "
        f"llm={'configured' if analyzer.is_available() else 'not_configured'} "
        f"channels={router.enabled_channels()}"
    )
    return Services(
        settings=settings,
        scoring=scoring,
        db=db,
        call_store=call_store,
        object_store=object_store,
        job_queue=job_queue,
        transcription=transcription,
        analyzer=analyzer,
        analysis=analysis,
        router=router,
        digest=digest,
        intake=intake,
        handlers=handlers,
        pool=pool,
        scheduler=scheduler,
    )
