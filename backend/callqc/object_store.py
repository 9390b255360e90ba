"""
Local filesystem object store for call recordings.

Keys are deterministic (`audio/<org_id>/<call_id>.<ext>`) and a file only
appears under its final key once the download has completed.
"""
import logging
import mimetypes
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional, Tuple
from urllib.parse import urlparse

import requests

from .errors import DownloadError, ValidationError
from .logging_config import PerformanceMonitor

logger = logging.getLogger('callqc.storage')

# Chunk size for streaming downloads (1 MB)
CHUNK_SIZE = 1024 * 1024
DEFAULT_EXTENSION = "mp3"

CONTENT_TYPE_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/vnd.wave": "wav",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
    "audio/mp4": "m4a",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/aac": "aac",
}
KNOWN_EXTENSIONS = set(CONTENT_TYPE_EXTENSIONS.values())


@dataclass
class StoredObject:
    key: str
    path: str
    size_bytes: int
    content_type: Optional[str] = None


def audio_key(org_id: str, call_id: str, extension: Optional[str] = None) -> str:
    """Deterministic key for a call recording; extension may be filled in later."""
    key = f"audio/{org_id}/{call_id}"
    return f"{key}.{extension.lstrip('.')}" if extension else key


def extension_for(content_type: Optional[str], url: Optional[str]) -> str:
    """Pick the true audio extension from the Content-Type header, then the URL."""
    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in CONTENT_TYPE_EXTENSIONS:
            return CONTENT_TYPE_EXTENSIONS[mime]
        guessed = mimetypes.guess_extension(mime)
        if guessed and guessed.lstrip(".") in KNOWN_EXTENSIONS:
            return guessed.lstrip(".")
    if url:
        suffix = PurePosixPath(urlparse(url).path).suffix.lower().lstrip(".")
        if suffix in KNOWN_EXTENSIONS:
            return suffix
    return DEFAULT_EXTENSION


class ObjectStore:
    """Filesystem-backed store rooted at STORAGE_PATH."""

    def __init__(self, root: str, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.root = Path(root).resolve()
        self.session = session or requests.Session()
        # (connect, read) timeouts; reads may stall on large recordings
        self.timeout = (10.0, max(30.0, timeout))
        for sub in ("audio", "exports"):
            (self.root / sub).mkdir(parents=True, exist_ok=True)
        logger.info(f"Object store initialized at {self.root}")

    def absolute_path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValidationError(f"Key escapes storage root: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self.absolute_path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self.absolute_path(key)
        if path.is_file():
            path.unlink()
            logger.info(f"Deleted object {key}")
            return True
        return False

    def find(self, key_prefix: str) -> Optional[str]:
        """Return the stored key for an extension-less key, if any."""
        base = self.absolute_path(key_prefix)
        if base.is_file():
            return key_prefix
        for candidate in sorted(base.parent.glob(base.name + ".*")):
            if candidate.suffix != ".part" and candidate.is_file():
                return str(candidate.relative_to(self.root).as_posix())
        return None

    def put_from_url(
        self,
        url: str,
        key: str,
        auth: Optional[Tuple[str, str]] = None,
    ) -> StoredObject:
        """
        Stream `url` into the store under `key`.

        When `key` has no extension, one is derived from the response
        Content-Type or the URL. Each attempt writes its own `.part` file
        beside the final path, renamed on success and removed on any error.

        Raises:
            DownloadError: non-2xx status or transport failure
        """
        if not url:
            raise ValidationError("recording_url is required")

        logger.info(f"Downloading {url} -> {key}")
        temp_path: Optional[Path] = None
        with PerformanceMonitor(f"download {key}", 'callqc.storage') as monitor:
            try:
                response = self.session.get(url, stream=True, timeout=self.timeout, auth=auth)
            except requests.RequestException as e:
                raise DownloadError(None, f"{type(e).__name__}: {e}") from e

            try:
                if not 200 <= response.status_code < 300:
                    raise DownloadError(response.status_code, response.reason or "HTTP error")

                content_type = response.headers.get("Content-Type")
                if not PurePosixPath(key).suffix:
                    key = f"{key}.{extension_for(content_type, url)}"
                final_path = self.absolute_path(key)
                final_path.parent.mkdir(parents=True, exist_ok=True)
                size = 0
                with tempfile.NamedTemporaryFile(
                    dir=final_path.parent, prefix=final_path.name + ".", suffix=".part", delete=False
                ) as f:
                    temp_path = Path(f.name)
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            size += len(chunk)
                if size == 0:
                    raise DownloadError(response.status_code, "empty response body")
                os.replace(temp_path, final_path)
                temp_path = None
            except requests.RequestException as e:
                raise DownloadError(None, f"{type(e).__name__}: {e}") from e
            finally:
                if temp_path is not None and temp_path.exists():
                    temp_path.unlink()
                    logger.warning(f"Removed partial download for {key}")
                response.close()

        logger.info(f"Stored {key} ({size} bytes) in {monitor.duration_ms}ms")
        return StoredObject(key=key, path=str(final_path), size_bytes=size, content_type=content_type)
