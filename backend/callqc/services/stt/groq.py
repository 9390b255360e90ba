"""
Groq Whisper provider (OpenAI-compatible transcription endpoint).
"""
import math
from pathlib import Path
from typing import Any, Dict

from ..vendor_http import json_body, send
from .base import Segment, TranscriptionOptions, TranscriptionProvider, TranscriptionResult, count_words

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class GroqProvider(TranscriptionProvider):
    name = "groq"
    display_name = "Groq Whisper"
    default_model = "whisper-large-v3-turbo"
    max_file_size_bytes = 25 * 1024 * 1024
    cost_per_hour_usd = 0.0
    formats = {"mp3", "mp4", "mpeg", "mpga", "m4a", "wav", "webm", "flac", "ogg"}
    languages = {
        "en", "hi", "ml", "ta", "te", "gu", "kn", "bn", "mr", "pa",
        "es", "fr", "de", "it", "pt", "ru", "ja", "ko", "zh", "ar",
    }

    def _call_api(self, path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "temperature": "0",
        }
        language = self.map_language(options.language)
        if language:
            data["language"] = language

        with open(path, "rb") as audio:
            response = send(
                self.session, "POST", f"{GROQ_BASE_URL}/audio/transcriptions", "Groq",
                headers={"Authorization": f"Bearer {self.api_key}"},
                files={"file": (path.name, audio, self.mime_type(str(path)))},
                data=data,
                timeout=self.timeout,
            )
        return json_body(response, "Groq")

    def _format_response(self, raw: Dict[str, Any], processing_time_ms: int) -> TranscriptionResult:
        segments = []
        for seg in raw.get("segments") or []:
            logprob = seg.get("avg_logprob")
            segments.append(Segment(
                start=float(seg.get("start") or 0),
                end=float(seg.get("end") or 0),
                text=(seg.get("text") or "").strip(),
                confidence=round(math.exp(logprob), 4) if logprob is not None else None,
            ))
        text = (raw.get("text") or "").strip()
        duration = raw.get("duration")
        if duration is None:
            duration = segments[-1].end if segments else 0
        return TranscriptionResult(
            text=text,
            language=raw.get("language"),
            duration_s=float(duration),
            segments=segments,
            word_count=count_words(text),
            confidence=None,
            processing_time_ms=processing_time_ms,
            provider=self.name,
            model=self.model,
            raw_response=raw,
        )
