"""
ElevenLabs Scribe provider.
"""
from pathlib import Path
from typing import Any, Dict

from ..vendor_http import json_body, send
from .base import Segment, TranscriptionOptions, TranscriptionProvider, TranscriptionResult, count_words

ELEVENLABS_URL = "https://api.elevenlabs.io/v1/speech-to-text"


class ElevenLabsProvider(TranscriptionProvider):
    name = "elevenlabs"
    display_name = "ElevenLabs Scribe"
    default_model = "scribe_v2"
    max_file_size_bytes = 3 * 1024 * 1024 * 1024
    cost_per_hour_usd = 0.20
    formats = {"mp3", "mp4", "mpeg", "mpga", "m4a", "wav", "webm", "flac", "ogg", "aac"}
    languages = {
        "en", "hi", "ml", "ta", "te", "gu", "kn", "or", "bn", "mr", "pa", "sd",
        "es", "fr", "de", "it", "pt", "ru", "pl", "nl", "uk", "cs",
        "ja", "ko", "zh", "th", "vi", "id", "ms",
        "ar", "fa", "he", "tr",
    }

    def _call_api(self, path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
        data = {
            "model_id": self.model,
            "diarize": "true" if options.diarize else "false",
            "timestamps_granularity": "word" if options.timestamps else "none",
            "tag_audio_events": "false",
        }
        language = self.map_language(options.language)
        if language:
            data["language_code"] = language

        with open(path, "rb") as audio:
            response = send(
                self.session, "POST", ELEVENLABS_URL, "ElevenLabs",
                headers={"xi-api-key": self.api_key},
                files={"file": (path.name, audio, self.mime_type(str(path)))},
                data=data,
                timeout=self.timeout,
            )
        return json_body(response, "ElevenLabs")

    def _format_response(self, raw: Dict[str, Any], processing_time_ms: int) -> TranscriptionResult:
        segments = []
        for word in raw.get("words") or []:
            if word.get("type", "word") != "word":
                continue
            segments.append(Segment(
                start=float(word.get("start") or 0),
                end=float(word.get("end") or 0),
                text=word.get("text") or "",
                confidence=word.get("confidence"),
                speaker=word.get("speaker_id") or word.get("speaker"),
            ))
        text = (raw.get("text") or "").strip()
        return TranscriptionResult(
            text=text,
            language=raw.get("language_code"),
            duration_s=segments[-1].end if segments else 0.0,
            segments=segments,
            word_count=count_words(text),
            confidence=raw.get("language_probability"),
            processing_time_ms=processing_time_ms,
            provider=self.name,
            model=self.model,
            raw_response=raw,
        )
