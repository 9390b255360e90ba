"""
Shared HTTP plumbing for vendor adapters (speech-to-text, LLM, Telegram).
"""
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt

from ..errors import (
    AppError,
    ExternalAPIError,
    RateLimited,
    Retryable,
    classify_http_status,
    parse_retry_after,
)

logger = logging.getLogger('callqc.vendor')

# Longer vendor-requested waits go back to the queue's backoff instead
MAX_INLINE_RETRY_AFTER = 30.0


def error_detail(response: requests.Response) -> str:
    """Best-effort extraction of a vendor's error message."""
    try:
        body = response.json()
    except ValueError:
        return (response.text or "")[:300]
    if isinstance(body, dict):
        error = body.get("error") or body.get("detail") or body.get("message")
        if isinstance(error, dict):
            return str(error.get("message") or error)[:300]
        if error:
            return str(error)[:300]
    return str(body)[:300]


def raise_for_vendor_status(response: requests.Response, service: str) -> None:
    """Raise the canonical error for a non-2xx vendor response."""
    if 200 <= response.status_code < 300:
        return
    retry_after = parse_retry_after(response.headers.get("Retry-After"))
    raise classify_http_status(response.status_code, service, error_detail(response), retry_after)


def send(
    session: requests.Session,
    method: str,
    url: str,
    service: str,
    **kwargs,
) -> requests.Response:
    """Issue a request and translate transport failures into canonical errors."""
    try:
        response = session.request(method, url, **kwargs)
    except requests.Timeout as e:
        raise Retryable(f"{service} request timed out", {"service": service}) from e
    except requests.ConnectionError as e:
        raise Retryable(f"Cannot connect to {service}: {e}", {"service": service}) from e
    except requests.RequestException as e:
        raise ExternalAPIError(service, f"{service} request failed: {e}") from e
    raise_for_vendor_status(response, service)
    return response


def json_body(response: requests.Response, service: str) -> Dict[str, Any]:
    try:
        return response.json()
    except ValueError as e:
        raise ExternalAPIError(service, f"{service} returned a non-JSON body",
                               upstream_status=response.status_code) from e


def _short_rate_limit(error: BaseException) -> bool:
    return isinstance(error, RateLimited) and (error.retry_after or 0) <= MAX_INLINE_RETRY_AFTER


def _wait_retry_after(retry_state) -> float:
    error = retry_state.outcome.exception()
    return float(getattr(error, "retry_after", None) or 1.0)


def call_with_rate_limit_retry(
    func: Callable[..., Any],
    *args,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> Any:
    """Run `func`, retrying once in-process when the vendor answers 429."""
    retrying = Retrying(
        retry=retry_if_exception(_short_rate_limit),
        stop=stop_after_attempt(2),
        wait=_wait_retry_after,
        sleep=sleep,
        reraise=True,
        before_sleep=lambda state: logger.warning(
            f"Rate limited ({state.outcome.exception()}); retrying once"
        ),
    )
    return retrying(func, *args, **kwargs)


def describe_error(error: BaseException) -> Dict[str, Optional[str]]:
    if isinstance(error, AppError):
        return {"code": error.code, "message": error.message}
    return {"code": type(error).__name__, "message": str(error)}
