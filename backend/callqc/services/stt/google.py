"""
Google Cloud Speech-to-Text v2 (Chirp 2) provider over REST.

Authenticates with a service-account file (GOOGLE_APPLICATION_CREDENTIALS)
and sends audio inline to the regional recognizer endpoint.
"""
import base64
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from ...errors import Unauthorized
from ..vendor_http import json_body, send
from .base import Segment, TranscriptionOptions, TranscriptionProvider, TranscriptionResult, count_words

logger = logging.getLogger('callqc.stt')

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

GOOGLE_LOCALES = {
    "ml": "ml-IN",
    "hi": "hi-IN",
    "ta": "ta-IN",
    "te": "te-IN",
    "gu": "gu-IN",
    "kn": "kn-IN",
    "bn": "bn-IN",
    "mr": "mr-IN",
    "pa": "pa-IN",
    "en": "en-US",
}


def _seconds(offset: Optional[str]) -> float:
    """Parse protobuf duration strings such as '1.200s'."""
    if not offset:
        return 0.0
    return float(str(offset).rstrip("s") or 0)


class GoogleProvider(TranscriptionProvider):
    name = "google"
    display_name = "Google Chirp"
    default_model = "chirp_2"
    # Inline (synchronous) recognition limit
    max_file_size_bytes = 10 * 1024 * 1024
    cost_per_hour_usd = 1.44
    formats = {"mp3", "wav", "flac", "ogg", "webm", "m4a"}
    languages = set(GOOGLE_LOCALES) | {"es", "fr", "de", "it", "pt", "ru", "ja", "ko", "zh", "ar"}
    language_map = GOOGLE_LOCALES
    default_locale = "ml-IN"

    def __init__(
        self,
        credentials_path: Optional[str] = None,
        project_id: Optional[str] = None,
        location: str = "asia-south1",
        credentials=None,
        **kwargs,
    ):
        super().__init__(api_key=None, **kwargs)
        self.credentials_path = credentials_path
        self.project_id = project_id
        self.location = location
        self.credentials = credentials

    def initialize(self) -> bool:
        if not self.project_id or not (self.credentials or self.credentials_path):
            logger.info("Google Chirp provider not configured")
            self.available = False
            return False
        if self.credentials is None:
            if not Path(self.credentials_path).is_file():
                logger.warning(f"Google credentials file not found: {self.credentials_path}")
                self.available = False
                return False
            try:
                self.credentials = service_account.Credentials.from_service_account_file(
                    self.credentials_path, scopes=SCOPES
                )
            except ValueError as e:
                logger.warning(f"Invalid Google service account file: {e}")
                self.available = False
                return False
        self.available = True
        logger.info(f"Google Chirp provider initialized (project={self.project_id}, location={self.location})")
        return True

    def map_language(self, language: Optional[str]) -> Optional[str]:
        if language and "-" not in language and language not in self.language_map:
            return language
        return super().map_language(language)

    def _access_token(self) -> str:
        if not self.credentials.valid:
            try:
                self.credentials.refresh(GoogleAuthRequest())
            except Exception as e:
                raise Unauthorized(f"Google credential refresh failed: {e}") from e
        return self.credentials.token

    @property
    def endpoint(self) -> str:
        return (
            f"https://{self.location}-speech.googleapis.com/v2/projects/{self.project_id}"
            f"/locations/{self.location}/recognizers/_:recognize"
        )

    def _call_api(self, path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
        body = {
            "config": {
                "autoDecodingConfig": {},
                "model": self.model,
                "languageCodes": [self.map_language(options.language)],
                "features": {
                    "enableAutomaticPunctuation": True,
                    "enableWordTimeOffsets": options.timestamps,
                    "enableWordConfidence": True,
                },
            },
            "content": base64.b64encode(path.read_bytes()).decode("ascii"),
        }
        response = send(
            self.session, "POST", self.endpoint, "Google Speech",
            headers={"Authorization": f"Bearer {self._access_token()}"},
            json=body,
            timeout=self.timeout,
        )
        return json_body(response, "Google Speech")

    def _format_response(self, raw: Dict[str, Any], processing_time_ms: int) -> TranscriptionResult:
        texts: List[str] = []
        segments: List[Segment] = []
        confidences: List[float] = []
        language = None
        duration = 0.0
        for result in raw.get("results") or []:
            alternatives = result.get("alternatives") or []
            language = language or result.get("languageCode")
            duration = max(duration, _seconds(result.get("resultEndOffset")))
            if not alternatives:
                continue
            best = alternatives[0]
            transcript = (best.get("transcript") or "").strip()
            if transcript:
                texts.append(transcript)
            if best.get("confidence") is not None:
                confidences.append(float(best["confidence"]))
            for word in best.get("words") or []:
                segments.append(Segment(
                    start=_seconds(word.get("startOffset")),
                    end=_seconds(word.get("endOffset")),
                    text=word.get("word") or "",
                    confidence=word.get("confidence"),
                ))
        text = " ".join(texts)
        if not duration and segments:
            duration = segments[-1].end
        return TranscriptionResult(
            text=text,
            language=language,
            duration_s=duration,
            segments=segments,
            word_count=count_words(text),
            confidence=round(sum(confidences) / len(confidences), 4) if confidences else None,
            processing_time_ms=processing_time_ms,
            provider=self.name,
            model=self.model,
            raw_response=raw,
        )
