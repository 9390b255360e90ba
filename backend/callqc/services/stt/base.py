"""
Base class for speech-to-text providers.

Every provider accepts a local audio file and returns a TranscriptionResult
with the same shape, whatever the vendor's response looks like.
"""
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import requests

from ...circuit_breaker import CircuitBreaker
from ...errors import AudioTooLarge, Fatal, ServiceUnavailable, UnsupportedFormat
from ...logging_config import PerformanceMonitor
from ..vendor_http import call_with_rate_limit_retry

logger = logging.getLogger('callqc.stt')

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "m4a": "audio/m4a",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
    "aac": "audio/aac",
    "mp4": "audio/mp4",
}

# Size-based duration estimate assumes 128 kbps audio
BYTES_PER_SECOND_ESTIMATE = 128000 / 8


@dataclass
class TranscriptionOptions:
    language: Optional[str] = None
    diarize: bool = False
    timestamps: bool = True


@dataclass
class Segment:
    start: float
    end: float
    text: str
    confidence: Optional[float] = None
    speaker: Optional[str] = None


@dataclass
class TranscriptionResult:
    """Provider-independent transcription output."""

    text: str
    language: Optional[str]
    duration_s: float
    segments: List[Segment]
    word_count: int
    confidence: Optional[float]
    processing_time_ms: int
    provider: str
    model: str
    raw_response: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_raw:
            data.pop("raw_response")
        return data

    def to_transcript_record(self) -> Dict[str, Any]:
        """Fields persisted on the transcripts table."""
        return {
            "content": self.text,
            "language": self.language,
            "speaker_segments": [asdict(segment) for segment in self.segments],
            "word_count": self.word_count,
            "confidence": self.confidence,
            "duration_seconds": self.duration_s,
            "stt_provider": self.provider,
            "stt_model": self.model,
            "processing_time_ms": self.processing_time_ms,
        }


def count_words(text: Optional[str]) -> int:
    if not text:
        return 0
    return len([word for word in re.split(r"\s+", text.strip()) if word])


class TranscriptionProvider(ABC):
    """Common behaviour for all speech-to-text vendors."""

    name = "base"
    display_name = "Base"
    default_model = ""
    max_file_size_bytes: Optional[int] = None
    cost_per_hour_usd = 0.0
    formats: Set[str] = {"mp3", "wav", "flac", "m4a", "ogg"}
    languages: Set[str] = {"en"}
    language_map: Dict[str, str] = {}
    default_locale: Optional[str] = None

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 300.0,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.model = model or self.default_model
        self.session = session or requests.Session()
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(f"stt:{self.name}")
        self.sleep = sleep
        self.available = False

    def initialize(self) -> bool:
        """Return False when the vendor's credentials are absent."""
        self.available = bool(self.api_key)
        if self.available:
            logger.info(f"{self.display_name} provider initialized (model={self.model})")
        else:
            logger.info(f"{self.display_name} provider not configured")
        return self.available

    def supported_formats(self) -> Set[str]:
        return set(self.formats)

    def supported_languages(self) -> Set[str]:
        return set(self.languages)

    def is_valid_format(self, audio_path: str) -> bool:
        return Path(audio_path).suffix.lower().lstrip(".") in self.supported_formats()

    def map_language(self, language: Optional[str]) -> Optional[str]:
        """Map a short code (`ml`) onto the vendor's locale tag (`ml-IN`)."""
        if not language:
            return self.default_locale
        if not self.language_map:
            return language.split("-")[0]
        return (
            self.language_map.get(language)
            or self.language_map.get(language.split("-")[0])
            or self.default_locale
        )

    def estimate_cost(self, audio_path: str) -> float:
        """Best-effort USD cost from file size."""
        size = Path(audio_path).stat().st_size
        hours = size / BYTES_PER_SECOND_ESTIMATE / 3600
        return round(hours * self.cost_per_hour_usd, 6)

    def mime_type(self, audio_path: str) -> str:
        return MIME_TYPES.get(Path(audio_path).suffix.lower().lstrip("."), "audio/mpeg")

    def get_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "model": self.model,
            "available": self.available,
            "formats": sorted(self.supported_formats()),
            "languages": sorted(self.supported_languages()),
            "max_file_size_bytes": self.max_file_size_bytes,
            "cost_per_hour_usd": self.cost_per_hour_usd,
            "circuit": self.breaker.state,
        }

    def _validate(self, audio_path: str) -> Path:
        if not self.available:
            raise ServiceUnavailable(f"{self.display_name} provider is not configured")
        path = Path(audio_path)
        if not path.is_file():
            raise Fatal(f"Audio file not found: {audio_path}")
        if not self.is_valid_format(audio_path):
            raise UnsupportedFormat(
                f"Unsupported format for {self.display_name}: {path.suffix or '(none)'}",
                {"supported": sorted(self.supported_formats())},
            )
        size = path.stat().st_size
        if size == 0:
            raise Fatal(f"Audio file is empty: {audio_path}")
        if self.max_file_size_bytes and size > self.max_file_size_bytes:
            raise AudioTooLarge(
                f"File too large for {self.display_name}: {size / (1024 * 1024):.2f}MB",
                {"size_bytes": size, "max_bytes": self.max_file_size_bytes},
            )
        return path

    def transcribe(self, audio_path: str, options: Optional[TranscriptionOptions] = None) -> TranscriptionResult:
        """Transcribe a local audio file into the normalised result."""
        options = options or TranscriptionOptions()
        path = self._validate(audio_path)
        logger.info(
            f"Starting {self.display_name} transcription: {path.name} "
            f"({path.stat().st_size / (1024 * 1024):.2f}MB, language={options.language or 'auto'})"
        )

        with PerformanceMonitor(f"{self.name} transcription", 'callqc.stt') as monitor:
            raw = self.breaker.call(
                call_with_rate_limit_retry, self._call_api, path, options, sleep=self.sleep
            )
        result = self._format_response(raw, monitor.duration_ms)

        logger.info(
            f"{self.display_name} transcription completed: words={result.word_count} "
            f"duration={result.duration_s}s in {result.processing_time_ms}ms"
        )
        return result

    @abstractmethod
    def _call_api(self, path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
        """Send the audio to the vendor and return its decoded response."""

    @abstractmethod
    def _format_response(self, raw: Dict[str, Any], processing_time_ms: int) -> TranscriptionResult:
        """Normalise the vendor response."""
