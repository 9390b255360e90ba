"""CallQC: call ingest, transcription and quality analysis pipeline."""

__version__ = "1.0.0"
