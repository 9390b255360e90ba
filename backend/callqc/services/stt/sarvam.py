"""
Sarvam AI Saarika provider, tuned for Indian languages.
"""
import base64
from pathlib import Path
from typing import Any, Dict, List

from ..vendor_http import json_body, send
from .base import Segment, TranscriptionOptions, TranscriptionProvider, TranscriptionResult, count_words

SARVAM_BASE_URL = "https://api.sarvam.ai"

INDIAN_LOCALES = {
    "ml": "ml-IN",
    "hi": "hi-IN",
    "ta": "ta-IN",
    "te": "te-IN",
    "gu": "gu-IN",
    "kn": "kn-IN",
    "bn": "bn-IN",
    "mr": "mr-IN",
    "pa": "pa-IN",
    "or": "or-IN",
    "en": "en-IN",
}


class SarvamProvider(TranscriptionProvider):
    name = "sarvam"
    display_name = "Sarvam Saarika"
    default_model = "saarika:v2"
    cost_per_hour_usd = 0.10
    formats = {"mp3", "wav", "flac", "m4a", "ogg", "webm"}
    languages = set(INDIAN_LOCALES)
    language_map = INDIAN_LOCALES
    default_locale = "ml-IN"

    def _call_api(self, path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
        audio_b64 = base64.b64encode(path.read_bytes()).decode("ascii")
        body = {
            "audio_uri": f"data:{self.mime_type(str(path))};base64,{audio_b64}",
            "language_code": self.map_language(options.language),
            "model": self.model,
            "with_timestamps": options.timestamps,
            "enable_inverse_text_normalization": True,
        }
        response = send(
            self.session, "POST", f"{SARVAM_BASE_URL}/speech-to-text", "Sarvam",
            headers={"api-subscription-key": self.api_key, "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )
        return json_body(response, "Sarvam")

    @staticmethod
    def _segments(raw: Dict[str, Any]) -> List[Segment]:
        if raw.get("words"):
            return [
                Segment(
                    start=float(word.get("start_time", word.get("start")) or 0),
                    end=float(word.get("end_time", word.get("end")) or 0),
                    text=word.get("word") or word.get("text") or "",
                    confidence=word.get("confidence"),
                )
                for word in raw["words"]
            ]
        stamps = raw.get("timestamps") or {}
        words = stamps.get("words") or []
        starts = stamps.get("start_time_seconds") or []
        ends = stamps.get("end_time_seconds") or []
        return [
            Segment(start=float(start), end=float(end), text=word)
            for word, start, end in zip(words, starts, ends)
        ]

    def _format_response(self, raw: Dict[str, Any], processing_time_ms: int) -> TranscriptionResult:
        segments = self._segments(raw)
        text = (raw.get("transcript") or "").strip()
        duration = raw.get("duration") or (segments[-1].end if segments else 0)
        return TranscriptionResult(
            text=text,
            language=raw.get("language_code"),
            duration_s=float(duration),
            segments=segments,
            word_count=count_words(text),
            confidence=raw.get("confidence"),
            processing_time_ms=processing_time_ms,
            provider=self.name,
            model=self.model,
            raw_response=raw,
        )
