"""
Azure AI Speech provider using the fast transcription REST API.
"""
import json
from pathlib import Path
from typing import Any, Dict, Optional

from ..vendor_http import json_body, send
from .base import Segment, TranscriptionOptions, TranscriptionProvider, TranscriptionResult, count_words

API_VERSION = "2024-11-15"

AZURE_LOCALES = {
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


class AzureProvider(TranscriptionProvider):
    name = "azure"
    display_name = "Azure Speech"
    default_model = "fast-transcription"
    max_file_size_bytes = 300 * 1024 * 1024
    cost_per_hour_usd = 1.00
    formats = {"wav", "mp3", "ogg", "flac"}
    languages = set(AZURE_LOCALES) | {"es", "fr", "de", "it", "pt", "ru", "ja", "ko", "zh", "ar"}
    language_map = AZURE_LOCALES
    default_locale = "ml-IN"

    def __init__(self, api_key: Optional[str] = None, region: str = "centralindia", **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.region = region

    def map_language(self, language: Optional[str]) -> Optional[str]:
        if language and "-" not in language and language not in self.language_map:
            return language
        return super().map_language(language)

    @property
    def endpoint(self) -> str:
        return (
            f"https://{self.region}.api.cognitive.microsoft.com/speechtotext/"
            f"transcriptions:transcribe?api-version={API_VERSION}"
        )

    def _call_api(self, path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
        definition: Dict[str, Any] = {"locales": [self.map_language(options.language)]}
        if options.diarize:
            definition["diarization"] = {"enabled": True, "maxSpeakers": 2}

        with open(path, "rb") as audio:
            response = send(
                self.session, "POST", self.endpoint, "Azure Speech",
                headers={"Ocp-Apim-Subscription-Key": self.api_key},
                files={
                    "audio": (path.name, audio, self.mime_type(str(path))),
                    "definition": (None, json.dumps(definition), "application/json"),
                },
                timeout=self.timeout,
            )
        return json_body(response, "Azure Speech")

    def _format_response(self, raw: Dict[str, Any], processing_time_ms: int) -> TranscriptionResult:
        segments = []
        confidences = []
        language = None
        for phrase in raw.get("phrases") or []:
            start = (phrase.get("offsetMilliseconds") or 0) / 1000
            end = start + (phrase.get("durationMilliseconds") or 0) / 1000
            speaker = phrase.get("speaker")
            segments.append(Segment(
                start=round(start, 3),
                end=round(end, 3),
                text=phrase.get("text") or "",
                confidence=phrase.get("confidence"),
                speaker=str(speaker) if speaker is not None else None,
            ))
            if phrase.get("confidence") is not None:
                confidences.append(float(phrase["confidence"]))
            language = language or phrase.get("locale")

        combined = raw.get("combinedPhrases") or []
        text = " ".join((item.get("text") or "").strip() for item in combined).strip()
        if not text:
            text = " ".join(segment.text for segment in segments).strip()
        duration = (raw.get("durationMilliseconds") or 0) / 1000 or (segments[-1].end if segments else 0.0)
        return TranscriptionResult(
            text=text,
            language=language,
            duration_s=float(duration),
            segments=segments,
            word_count=count_words(text),
            confidence=round(sum(confidences) / len(confidences), 4) if confidences else None,
            processing_time_ms=processing_time_ms,
            provider=self.name,
            model=self.model,
            raw_response=raw,
        )
