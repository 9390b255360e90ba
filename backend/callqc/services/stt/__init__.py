"""Speech-to-text provider adapters."""
from .base import Segment, TranscriptionOptions, TranscriptionProvider, TranscriptionResult
from .manager import TranscriptionManager

__all__ = [
    "Segment",
    "TranscriptionOptions",
    "TranscriptionProvider",
    "TranscriptionResult",
    "TranscriptionManager",
]
