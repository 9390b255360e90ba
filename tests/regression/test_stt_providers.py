"""
Regression tests for speech-to-text adapters and the provider registry.
"""

import pytest

from backend.callqc.config import Settings
from backend.callqc.errors import (
    NotFoundError,
    RateLimited,
    Retryable,
    ServiceUnavailable,
    Unauthorized,
    UnsupportedFormat,
)
from backend.callqc.services.stt import TranscriptionManager, TranscriptionOptions
from backend.callqc.services.stt.base import Segment, TranscriptionResult, count_words
from backend.callqc.services.stt.elevenlabs import ElevenLabsProvider
from backend.callqc.services.stt.groq import GroqProvider
from backend.callqc.services.stt.sarvam import SarvamProvider

from fakes import RECORDING_BYTES, FakeResponse, FakeSession, groq_response, vendor_error


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "call.wav"
    path.write_bytes(RECORDING_BYTES)
    return str(path)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def groq(http, sleeps):
    provider = GroqProvider(api_key="test-groq-key", session=http, sleep=sleeps.append)
    provider.initialize()
    return provider


class TestGroqProvider:
    """Groq Whisper adapter."""

    def test_normalises_verbose_json(self, groq, http, audio_file):
        """Segments, confidence from avg_logprob, and word count."""
        http.add("POST", "api.groq.com", groq_response(text="  hello there customer  "))
        result = groq.transcribe(audio_file)

        assert result.text == "hello there customer"
        assert result.word_count == 3
        assert result.duration_s == 62.5
        assert result.provider == "groq"
        assert result.model == "whisper-large-v3-turbo"
        assert result.segments[0].text == "Good morning, this is Ravi"
        assert result.segments[0].confidence == pytest.approx(0.9048, abs=1e-4)

    def test_request_shape(self, groq, http, audio_file):
        http.add("POST", "api.groq.com", groq_response())
        groq.transcribe(audio_file, TranscriptionOptions(language="ml-IN"))

        call = http.calls_to("/audio/transcriptions")[0]
        assert call["headers"]["Authorization"] == "Bearer test-groq-key"
        assert call["data"]["response_format"] == "verbose_json"
        assert call["data"]["language"] == "ml"
        assert call["files"]["file"][0] == "call.wav"

    def test_unauthorized_is_not_retried(self, groq, http, audio_file):
        http.add("POST", "api.groq.com", vendor_error(401, "Invalid API Key"))
        with pytest.raises(Unauthorized) as exc_info:
            groq.transcribe(audio_file)
        assert exc_info.value.retryable is False
        assert len(http.calls_to("api.groq.com")) == 1

    def test_rate_limit_retried_once_in_process(self, groq, http, sleeps, audio_file):
        """A short Retry-After is honoured inline, then the call succeeds."""
        http.add("POST", "api.groq.com", vendor_error(429, "Too many requests", retry_after="2"), groq_response())
        result = groq.transcribe(audio_file)

        assert result.word_count > 0
        assert sleeps == [2.0]
        assert len(http.calls_to("api.groq.com")) == 2

    def test_second_rate_limit_goes_back_to_the_queue(self, groq, http, audio_file):
        http.add("POST", "api.groq.com", vendor_error(429, "Too many requests", retry_after="1"))
        with pytest.raises(RateLimited):
            groq.transcribe(audio_file)
        assert len(http.calls_to("api.groq.com")) == 2

    def test_server_error_is_retryable(self, groq, http, audio_file):
        http.add("POST", "api.groq.com", vendor_error(502, "Bad gateway"))
        with pytest.raises(Retryable):
            groq.transcribe(audio_file)

    def test_unsupported_format_never_calls_vendor(self, groq, http, tmp_path):
        document = tmp_path / "notes.txt"
        document.write_text("not audio")
        with pytest.raises(UnsupportedFormat):
            groq.transcribe(str(document))
        assert http.calls == []

    def test_unconfigured_provider(self, http, audio_file):
        provider = GroqProvider(api_key=None, session=http)
        assert provider.initialize() is False
        with pytest.raises(ServiceUnavailable):
            provider.transcribe(audio_file)


class TestOtherProviders:
    """Response normalisation for ElevenLabs and Sarvam."""

    def test_elevenlabs_keeps_only_words(self, audio_file):
        http = FakeSession()
        http.add("POST", "api.elevenlabs.io", FakeResponse(200, {
            "text": "Hello sir",
            "language_code": "eng",
            "language_probability": 0.97,
            "words": [
                {"text": "Hello", "start": 0.1, "end": 0.5, "type": "word", "speaker_id": "speaker_0"},
                {"text": " ", "start": 0.5, "end": 0.6, "type": "spacing"},
                {"text": "sir", "start": 0.6, "end": 0.9, "type": "word", "speaker_id": "speaker_0"},
            ],
        }))
        provider = ElevenLabsProvider(api_key="el-key", session=http)
        provider.initialize()
        result = provider.transcribe(audio_file)

        assert [segment.text for segment in result.segments] == ["Hello", "sir"]
        assert result.segments[0].speaker == "speaker_0"
        assert result.duration_s == 0.9
        assert result.confidence == 0.97

    def test_sarvam_locale_mapping(self):
        provider = SarvamProvider(api_key="sv-key", session=FakeSession())
        assert provider.map_language("ml") == "ml-IN"
        assert provider.map_language("hi-IN") == "hi-IN"
        assert provider.map_language(None) == "ml-IN"

    def test_sarvam_timestamps(self, audio_file):
        http = FakeSession()
        http.add("POST", "api.sarvam.ai", FakeResponse(200, {
            "transcript": "namaskaram sir",
            "language_code": "ml-IN",
            "timestamps": {
                "words": ["namaskaram", "sir"],
                "start_time_seconds": [0.0, 0.8],
                "end_time_seconds": [0.7, 1.1],
            },
        }))
        provider = SarvamProvider(api_key="sv-key", session=http)
        provider.initialize()
        result = provider.transcribe(audio_file, TranscriptionOptions(language="ml"))

        assert result.word_count == 2
        assert result.duration_s == 1.1
        assert http.calls_to("speech-to-text")[0]["json"]["language_code"] == "ml-IN"


def _result(provider, words, ms, confidence=None):
    text = " ".join(["word"] * words)
    return TranscriptionResult(
        text=text, language="en", duration_s=10.0, segments=[Segment(0, 10, text)],
        word_count=count_words(text), confidence=confidence, processing_time_ms=ms,
        provider=provider, model="m",
    )


class TestTranscriptionManager:
    """Provider registry and comparison helpers."""

    def test_only_configured_providers_register(self):
        manager = TranscriptionManager.from_settings(Settings(groq_api_key="g", sarvam_api_key="s"))
        assert manager.available_providers() == ["groq", "sarvam"]
        assert "elevenlabs" in manager.unconfigured

    def test_get_distinguishes_unconfigured_from_unknown(self):
        manager = TranscriptionManager.from_settings(Settings(groq_api_key="g"))
        with pytest.raises(ServiceUnavailable):
            manager.get("azure")
        with pytest.raises(NotFoundError):
            manager.get("whisper-local")

    def test_default_provider_prefers_setting(self):
        manager = TranscriptionManager.from_settings(
            Settings(groq_api_key="g", sarvam_api_key="s", stt_provider="sarvam")
        )
        assert manager.default_provider().name == "sarvam"

    def test_default_provider_falls_back(self):
        manager = TranscriptionManager.from_settings(Settings(sarvam_api_key="s", stt_provider="groq"))
        assert manager.default_provider().name == "sarvam"

    def test_no_providers(self):
        manager = TranscriptionManager()
        assert manager.is_available() is False
        with pytest.raises(ServiceUnavailable):
            manager.default_provider()

    def test_compare_results(self):
        runs = {
            "results": {
                "groq": {"ok": True, "result": _result("groq", 40, 900)},
                "sarvam": {"ok": True, "result": _result("sarvam", 44, 2500, confidence=0.91)},
                "elevenlabs": {"ok": True, "result": _result("elevenlabs", 5, 1800)},
                "azure": {"ok": False, "error": {"code": "UNAUTHORIZED", "message": "bad key"}},
            },
            "total_processing_time_ms": 2600,
        }
        comparison = TranscriptionManager.compare_results(runs)

        assert comparison["fastest"]["provider"] == "groq"
        assert comparison["slowest"]["provider"] == "sarvam"
        assert comparison["highest_confidence"]["provider"] == "sarvam"
        assert comparison["summary"]["failed_providers"] == 1
        assert [item["provider"] for item in comparison["outliers"]] == ["elevenlabs"]

    def test_best_result_by_confidence(self):
        manager = TranscriptionManager()
        runs = {"results": {
            "groq": {"ok": True, "result": _result("groq", 40, 900)},
            "sarvam": {"ok": True, "result": _result("sarvam", 44, 2500, confidence=0.91)},
        }}
        assert manager.get_best_result(runs).provider == "sarvam"
        assert manager.get_best_result(runs, criteria="fastest").provider == "groq"
