"""
Canonical error kinds for CallQC.

Every error carries a stable `code`, a message, optional details and a
timestamp. `is_operational` separates expected failures (bad input, vendor
outages) from programming errors.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests


class AppError(Exception):
    """Base class for all application errors."""

    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        is_operational: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.is_operational = is_operational
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        payload = {
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if include_details and self.details:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any = None, **kwargs):
        message = f"{resource} not found" if identifier is None else f"{resource} not found: {identifier}"
        super().__init__(message, {"resource": resource, "id": identifier}, **kwargs)


class Unauthorized(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"


class RateLimited(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details.setdefault("retry_after", retry_after)


class ExternalAPIError(AppError):
    status_code = 502
    code = "EXTERNAL_API_ERROR"

    def __init__(self, service: str, message: str, upstream_status: Optional[int] = None, **kwargs):
        super().__init__(message, {"service": service, "upstream_status": upstream_status}, **kwargs)
        self.service = service
        self.upstream_status = upstream_status


class ServiceUnavailable(AppError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    retryable = True


class Retryable(AppError):
    """Transient failure; the queue reschedules the job with backoff."""

    status_code = 503
    code = "RETRYABLE"
    retryable = True


class Fatal(AppError):
    """Permanent failure; the job goes straight to the failed bin."""

    status_code = 422
    code = "FATAL"


class CircuitOpen(Retryable):
    code = "CIRCUIT_OPEN"

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"Circuit '{name}' is open; retry in {retry_in:.0f}s",
            {"circuit": name, "retry_in": round(retry_in, 1)},
        )
        self.retry_in = retry_in


# Provider and pipeline specific kinds

class AudioTooLarge(Fatal):
    status_code = 413
    code = "AUDIO_TOO_LARGE"


class UnsupportedFormat(Fatal):
    status_code = 400
    code = "UNSUPPORTED_FORMAT"


class NoCredits(Fatal):
    status_code = 402
    code = "NO_CREDITS"


class BadRequest(Fatal):
    status_code = 400
    code = "BAD_REQUEST"


class AnalysisFormatError(Fatal):
    status_code = 502
    code = "ANALYSIS_FORMAT_ERROR"


class DownloadError(AppError):
    status_code = 502
    code = "DOWNLOAD_ERROR"

    def __init__(self, status: Optional[int], reason: str):
        super().__init__(f"Download failed ({status}): {reason}", {"status": status, "reason": reason})
        self.status = status
        self.reason = reason
        # Server-side and throttling failures are worth another attempt
        self.retryable = status is None or status in RETRYABLE_STATUSES


class IllegalTransition(AppError):
    status_code = 409
    code = "ILLEGAL_TRANSITION"

    def __init__(self, call_id: str, expected: Any, actual: Any, target: Any):
        super().__init__(
            f"Call {call_id} cannot move {expected} -> {target}; current status is {actual}",
            {"call_id": call_id, "expected": str(expected), "actual": str(actual), "target": str(target)},
        )
        self.call_id = call_id
        self.expected = expected
        self.actual = actual
        self.target = target


RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}
RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "quota exceeded", "throttl")


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failure should be retried by the queue."""
    if isinstance(error, AppError):
        return error.retryable
    if isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code in RETRYABLE_STATUSES
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def classify_http_status(
    status: int,
    service: str,
    detail: str = "",
    retry_after: Optional[float] = None,
) -> AppError:
    """Map a vendor HTTP status onto a canonical error kind."""
    error = _error_for_status(status, service, detail, retry_after)
    error.upstream_status = status
    return error


def _error_for_status(status: int, service: str, detail: str, retry_after: Optional[float]) -> AppError:
    suffix = f": {detail}" if detail else ""
    if status in (401, 403):
        return Unauthorized(f"{service} rejected the API key{suffix}", {"service": service, "status": status})
    if status == 402:
        return NoCredits(f"{service} account has insufficient credits{suffix}", {"service": service})
    if status == 413:
        return AudioTooLarge(f"Audio file too large for {service}{suffix}", {"service": service})
    if status == 429:
        return RateLimited(f"{service} rate limit exceeded{suffix}", retry_after=retry_after)
    if status >= 500 or status == 408:
        return Retryable(f"{service} server error ({status}){suffix}", {"service": service, "status": status})
    if status == 400:
        return BadRequest(f"{service} bad request{suffix}", {"service": service})
    return ExternalAPIError(service, f"{service} error ({status}){suffix}", upstream_status=status)
