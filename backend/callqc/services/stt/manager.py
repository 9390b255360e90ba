"""
Registry of speech-to-text providers.

Providers are registered at startup only when their credentials are
present. The pipeline uses one preferred provider; the comparison helpers
fan out to all of them for offline quality benchmarks.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ...config import Settings
from ...errors import NotFoundError, ServiceUnavailable
from ..vendor_http import describe_error
from .azure import AzureProvider
from .base import TranscriptionOptions, TranscriptionProvider, TranscriptionResult
from .elevenlabs import ElevenLabsProvider
from .google import GoogleProvider
from .groq import GroqProvider
from .sarvam import SarvamProvider

logger = logging.getLogger('callqc.stt')

PROVIDER_ORDER = ("groq", "elevenlabs", "sarvam", "google", "azure")


def build_providers(settings: Settings) -> List[TranscriptionProvider]:
    """Instantiate every known provider from settings (configured or not)."""
    return [
        GroqProvider(api_key=settings.groq_api_key, model=settings.groq_model),
        ElevenLabsProvider(api_key=settings.elevenlabs_api_key),
        SarvamProvider(api_key=settings.sarvam_api_key),
        GoogleProvider(
            credentials_path=settings.google_application_credentials,
            project_id=settings.google_cloud_project,
            location=settings.google_cloud_location,
        ),
        AzureProvider(api_key=settings.azure_speech_key, region=settings.azure_speech_region),
    ]


class TranscriptionManager:
    """Holds the providers that initialized successfully."""

    def __init__(self, preferred: Optional[str] = None):
        self.providers: Dict[str, TranscriptionProvider] = {}
        self.unconfigured: List[str] = []
        self.preferred = preferred

    @classmethod
    def from_settings(cls, settings: Settings) -> "TranscriptionManager":
        manager = cls(preferred=settings.stt_provider)
        manager.register_all(build_providers(settings))
        return manager

    def register(self, provider: TranscriptionProvider) -> bool:
        """Add a provider if `initialize()` succeeds."""
        if provider.initialize():
            self.providers[provider.name] = provider
            logger.info(f"Registered STT provider: {provider.name}")
            return True
        self.unconfigured.append(provider.name)
        return False

    def register_all(self, providers: Iterable[TranscriptionProvider]) -> None:
        for provider in providers:
            self.register(provider)
        logger.info(
            f"STT providers available: {self.available_providers() or 'none'}; "
            f"not configured: {self.unconfigured or 'none'}"
        )

    def available_providers(self) -> List[str]:
        ordered = [name for name in PROVIDER_ORDER if name in self.providers]
        return ordered + [name for name in self.providers if name not in ordered]

    def is_available(self) -> bool:
        return bool(self.providers)

    def get(self, name: str) -> TranscriptionProvider:
        if name not in self.providers:
            if name in self.unconfigured:
                raise ServiceUnavailable(f"STT provider '{name}' is not configured")
            raise NotFoundError("STT provider", name)
        return self.providers[name]

    def default_provider(self) -> TranscriptionProvider:
        """The preferred provider, else the first available one."""
        if self.preferred and self.preferred in self.providers:
            return self.providers[self.preferred]
        available = self.available_providers()
        if not available:
            raise ServiceUnavailable("No speech-to-text provider is configured")
        return self.providers[available[0]]

    def transcribe(self, audio_path: str, options: Optional[TranscriptionOptions] = None) -> TranscriptionResult:
        return self.default_provider().transcribe(audio_path, options)

    def transcribe_with(self, name: str, audio_path: str,
                        options: Optional[TranscriptionOptions] = None) -> TranscriptionResult:
        return self.get(name).transcribe(audio_path, options)

    def transcribe_with_all(
        self,
        audio_path: str,
        options: Optional[TranscriptionOptions] = None,
        providers: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        Run every (or the selected) provider in parallel.

        Returns:
            {"results": {provider: {"ok", "result" | "error"}}, "total_processing_time_ms"}
        """
        names = list(providers) if providers else self.available_providers()
        if not names:
            raise ServiceUnavailable("No speech-to-text provider is configured")

        def run(name: str) -> Dict[str, Any]:
            try:
                return {"ok": True, "result": self.transcribe_with(name, audio_path, options)}
            except Exception as e:
                logger.warning(f"Provider {name} failed during comparison: {e}")
                return {"ok": False, "error": describe_error(e)}

        start = time.perf_counter()
        with ThreadPoolExecutor(max_workers=len(names)) as pool:
            outcomes = dict(zip(names, pool.map(run, names)))
        return {
            "results": outcomes,
            "total_processing_time_ms": int((time.perf_counter() - start) * 1000),
        }

    @staticmethod
    def compare_results(all_results: Dict[str, Any]) -> Dict[str, Any]:
        """Summarise a fan-out run: speed, confidence and word-count outliers."""
        results = all_results.get("results", {})
        successful = {name: r["result"] for name, r in results.items() if r.get("ok")}
        failed = [{"provider": name, "error": r.get("error")} for name, r in results.items() if not r.get("ok")]

        if not successful:
            return {"error": "No successful transcriptions to compare", "failed_providers": failed}

        fastest = min(successful.values(), key=lambda r: r.processing_time_ms)
        slowest = max(successful.values(), key=lambda r: r.processing_time_ms)
        with_confidence = [r for r in successful.values() if r.confidence is not None]
        highest_confidence = max(with_confidence, key=lambda r: r.confidence) if with_confidence else None

        word_counts = [
            {"provider": r.provider, "length": len(r.text), "word_count": r.word_count}
            for r in successful.values()
        ]
        avg_words = sum(item["word_count"] for item in word_counts) / len(word_counts)
        outliers = [item for item in word_counts if abs(item["word_count"] - avg_words) > avg_words * 0.5]

        return {
            "summary": {
                "total_providers": len(results),
                "successful_providers": len(successful),
                "failed_providers": len(failed),
                "total_processing_time_ms": all_results.get("total_processing_time_ms"),
            },
            "fastest": {"provider": fastest.provider, "processing_time_ms": fastest.processing_time_ms},
            "slowest": {"provider": slowest.provider, "processing_time_ms": slowest.processing_time_ms},
            "highest_confidence": (
                {"provider": highest_confidence.provider, "confidence": highest_confidence.confidence}
                if highest_confidence else None
            ),
            "word_counts": sorted(word_counts, key=lambda item: item["word_count"], reverse=True),
            "average_word_count": round(avg_words, 1),
            "outliers": outliers,
            "failures": failed,
            "transcriptions": [r.to_dict() for r in successful.values()],
        }

    def get_best_result(self, all_results: Dict[str, Any], criteria: str = "confidence") -> Optional[TranscriptionResult]:
        successful = [r["result"] for r in all_results.get("results", {}).values() if r.get("ok")]
        if not successful:
            return None
        if criteria == "confidence":
            scored = [r for r in successful if r.confidence is not None]
            if scored:
                return max(scored, key=lambda r: r.confidence)
            criteria = "fastest"
        if criteria == "fastest":
            return min(successful, key=lambda r: r.processing_time_ms)
        if criteria == "word_count":
            return max(successful, key=lambda r: r.word_count)
        return successful[0]

    def estimate_costs(self, audio_path: str) -> Dict[str, Any]:
        size_mb = Path(audio_path).stat().st_size / (1024 * 1024)
        estimates = {}
        for name in self.available_providers():
            provider = self.providers[name]
            estimates[name] = {
                "cost_usd": provider.estimate_cost(audio_path),
                "model": provider.model,
            }
        return {"file_size_mb": round(size_mb, 2), "estimates": estimates}

    def provider_status(self) -> Dict[str, str]:
        """Per-provider health: ok, error (circuit open) or not_configured."""
        status = {name: "not_configured" for name in self.unconfigured}
        for name, provider in self.providers.items():
            status[name] = "error" if provider.breaker.state == "open" else "ok"
        return status
