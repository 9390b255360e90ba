"""
Delivery channels for notifications.

Every channel answers `send(kind, message)` with a result dict:
`{"ok": True, "vendor_id": ..., "mock": bool}` or `{"ok": False, "error": ...}`.
Channels never raise on delivery failure; the router persists the outcome.
"""
import logging
import re
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from ...circuit_breaker import CircuitBreaker
from ...errors import AppError
from ..vendor_http import json_body, send

logger = logging.getLogger('callqc.notifications')

TELEGRAM_API = "https://api.telegram.org"
_TAG = re.compile(r"<[^>]+>")


class Channel:
    """Base class for a notification channel."""

    name = "channel"
    mock = False

    def is_configured(self) -> bool:
        return True

    def send(self, kind: str, message: str, chat_id: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def test_connection(self) -> Dict[str, Any]:
        return {"ok": True, "message": f"{self.name} channel is working"}

    def status(self) -> Dict[str, Any]:
        return {"configured": self.is_configured(), "mock": self.mock}


class TelegramChannel(Channel):
    """Telegram Bot API; runs in mock mode (log only) without a bot token."""

    name = "telegram"

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.session = session or requests.Session()
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("notify:telegram")
        self.mock = not bot_token
        if self.mock:
            logger.info("Telegram channel running in MOCK mode")
        else:
            logger.info("Telegram channel configured with bot token")

    @property
    def base_url(self) -> str:
        return f"{TELEGRAM_API}/bot{self.bot_token}"

    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def status(self) -> Dict[str, Any]:
        return {
            "configured": self.is_configured(),
            "mock": self.mock,
            "chat_id_set": bool(self.chat_id),
            "circuit": self.breaker.state,
        }

    def send(self, kind: str, message: str, chat_id: Optional[str] = None) -> Dict[str, Any]:
        chat_id = chat_id or self.chat_id
        if self.mock:
            return self._mock_send(kind, message, chat_id)
        if not chat_id:
            return {"ok": False, "error": "Telegram chat ID is required", "retryable": False}

        try:
            response = self.breaker.call(
                send, self.session, "POST", f"{self.base_url}/sendMessage", "Telegram",
                json={
                    "chat_id": chat_id,
                    "text": message,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
                timeout=self.timeout,
            )
            body = json_body(response, "Telegram")
        except AppError as e:
            logger.error(f"Failed to send Telegram {kind} to {chat_id}: {e.message}")
            return {"ok": False, "error": e.message, "retryable": e.retryable}

        message_id = (body.get("result") or {}).get("message_id")
        logger.info(f"Telegram {kind} sent to {chat_id} (message_id={message_id})")
        return {"ok": True, "vendor_id": str(message_id) if message_id is not None else None,
                "mock": False, "chat_id": chat_id}

    def _mock_send(self, kind: str, message: str, chat_id: Optional[str]) -> Dict[str, Any]:
        vendor_id = f"mock_{int(time.time() * 1000)}"
        logger.info(
            f"TELEGRAM NOTIFICATION (MOCK MODE) kind={kind} chat={chat_id or 'default'}\n"
            f"{_TAG.sub('', message)}"
        )
        return {"ok": True, "vendor_id": vendor_id, "mock": True, "chat_id": chat_id or "mock_chat"}

    def test_connection(self) -> Dict[str, Any]:
        if self.mock:
            return {"ok": True, "mock": True, "message": "Telegram channel is in mock mode"}
        try:
            response = send(self.session, "GET", f"{self.base_url}/getMe", "Telegram", timeout=self.timeout)
            return {"ok": True, "bot": json_body(response, "Telegram").get("result")}
        except AppError as e:
            return {"ok": False, "error": e.message}


class ConsoleChannel(Channel):
    """Writes notifications to the application log."""

    name = "console"

    def send(self, kind: str, message: str, chat_id: Optional[str] = None) -> Dict[str, Any]:
        logger.warning(f"[{kind}]\n{_TAG.sub('', message)}")
        return {"ok": True, "vendor_id": None, "mock": False}


class NullChannel(Channel):
    """In-memory channel that records every dispatch; used in tests."""

    def __init__(self, name: str = "console", fail_with: Optional[str] = None, retryable: bool = True):
        self.name = name
        self.fail_with = fail_with
        self.retryable = retryable
        self.sent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, kind: str, message: str, chat_id: Optional[str] = None) -> Dict[str, Any]:
        if self.fail_with:
            return {"ok": False, "error": self.fail_with, "retryable": self.retryable}
        with self._lock:
            self.sent.append({"kind": kind, "message": message, "chat_id": chat_id})
            vendor_id = f"null_{len(self.sent)}"
        return {"ok": True, "vendor_id": vendor_id, "mock": True}

    def kinds(self) -> List[str]:
        with self._lock:
            return [item["kind"] for item in self.sent]
