"""
Pytest configuration for regression tests.

Every test gets its own SQLite file and storage directory, and a service
container whose vendor clients talk to a FakeSession.
"""

import os
import sys
import tempfile

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Settings are read at import time; keep the module-level app away from real
# credentials and the working directory.
_SESSION_DIR = tempfile.mkdtemp(prefix="callqc-tests-")
os.environ.pop("DATABASE_URL", None)
os.environ.update({
    "ENVIRONMENT": "test",
    "DATABASE_PATH": os.path.join(_SESSION_DIR, "app.db"),
    "STORAGE_PATH": os.path.join(_SESSION_DIR, "storage"),
    "LOG_FILE": os.path.join(_SESSION_DIR, "logs", "callqc.log"),
    "WORKERS_ENABLED": "false",
    "DAILY_DIGEST_ENABLED": "false",
})
for _key in ("GROQ_API_KEY", "ELEVENLABS_API_KEY", "SARVAM_API_KEY", "AZURE_SPEECH_KEY",
             "GOOGLE_APPLICATION_CREDENTIALS", "OPENROUTER_API_KEY", "TELEGRAM_BOT_TOKEN",
             "EXOTEL_API_KEY", "EXOTEL_API_TOKEN"):
    os.environ.pop(_key, None)

from backend.callqc.config import Settings  # noqa: E402
from backend.callqc.container import build_services  # noqa: E402
from backend.callqc.models import CallStatus  # noqa: E402
from backend.callqc.services.llm_analyzer import OpenRouterAnalyzer  # noqa: E402
from backend.callqc.services.notifications import NullChannel  # noqa: E402
from backend.callqc.services.stt import TranscriptionManager  # noqa: E402
from backend.callqc.services.stt.groq import GroqProvider  # noqa: E402

from fakes import SAMPLE_TRANSCRIPT, FakeSession, verdict  # noqa: E402

SUCCESS_PATH = (CallStatus.RECEIVED, CallStatus.DOWNLOADED, CallStatus.TRANSCRIBED, CallStatus.ANALYZED)
FAILED_FROM = {
    CallStatus.DOWNLOAD_FAILED: CallStatus.RECEIVED,
    CallStatus.TRANSCRIPTION_FAILED: CallStatus.DOWNLOADED,
    CallStatus.ANALYSIS_FAILED: CallStatus.TRANSCRIBED,
}


def make_services(test_settings, http, channels):
    """Container with Groq and OpenRouter wired to the fake session."""
    scoring = test_settings.scoring_config()
    transcription = TranscriptionManager(preferred="groq")
    transcription.register(GroqProvider(
        api_key=test_settings.groq_api_key, session=http, sleep=lambda seconds: None,
    ))
    analyzer = OpenRouterAnalyzer.from_settings(test_settings, scoring, session=http)
    services = build_services(
        test_settings,
        http_session=http,
        transcription=transcription,
        analyzer=analyzer,
        channels=channels,
    )
    services.bootstrap()
    return services


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated in a temporary directory, with fake vendor keys."""
    return Settings(
        environment="test",
        database_path=str(tmp_path / "callqc.db"),
        storage_path=str(tmp_path / "storage"),
        log_file=str(tmp_path / "logs" / "callqc.log"),
        workers_enabled=False,
        daily_digest_enabled=False,
        stt_provider="groq",
        groq_api_key="test-groq-key",
        openrouter_api_key="test-openrouter-key",
        telegram_bot_token=None,
    )


@pytest.fixture
def http():
    """Fake HTTP session shared by every vendor client."""
    return FakeSession()


@pytest.fixture
def console():
    """Recording channel registered under the console name."""
    return NullChannel("console")


@pytest.fixture
def channels(console):
    """Notification channels; override in a module to add more."""
    return [console]


@pytest.fixture
def services(test_settings, http, channels):
    container = make_services(test_settings, http, channels)
    yield container
    container.close()


@pytest.fixture
def client(services):
    """HTTP client over an app without background workers."""
    from fastapi.testclient import TestClient
    from backend.callqc.main import create_app

    with TestClient(create_app(services, start_background=False)) as test_client:
        yield test_client


@pytest.fixture
def seed_call(services):
    """
    Create a call and walk it along the state machine to `status`.

    Reaching transcribed stores SAMPLE_TRANSCRIPT; reaching analyzed stores
    a validated verdict with the given score.
    """
    counter = {"n": 0}

    def _seed(status=CallStatus.TRANSCRIBED, sid=None, agent_id=None, score=78,
              sentiment="positive", issues=None, content=SAMPLE_TRANSCRIPT, llm_model="deepseek/deepseek-chat"):
        counter["n"] += 1
        status = CallStatus(status)
        call, _ = services.call_store.create_call({
            "org_id": services.settings.default_org_id,
            "external_call_sid": sid or f"CA-SEED-{counter['n']}",
            "recording_url": f"https://recordings.exotel.com/seed-{counter['n']}.wav",
            "duration_seconds": 240,
            "agent_id": agent_id,
            "caller_number": "09876543210",
        })

        target = FAILED_FROM.get(status, status)
        for current, following in zip(SUCCESS_PATH, SUCCESS_PATH[1:]):
            if current == target:
                break
            services.call_store.advance_status(call.id, current, following)
            if following == CallStatus.TRANSCRIBED:
                services.call_store.upsert_transcript(call.id, {
                    "content": content,
                    "language": "en",
                    "word_count": len(content.split()),
                    "stt_provider": "groq",
                    "stt_model": "whisper-large-v3-turbo",
                })
            if following == CallStatus.ANALYZED:
                record = services.analyzer.validate(verdict(score, sentiment, issues))
                record.update(llm_model=llm_model, prompt_tokens=1000, completion_tokens=300)
                services.call_store.upsert_analysis(call.id, record)
        if status.is_failed:
            services.call_store.advance_status(call.id, target, status)
        return services.call_store.get_call(call.id)

    return _seed
