"""
Routes analysis alerts, digests and ad-hoc messages to the enabled channels.

Every dispatch is persisted as one Notification row carrying the actual
outcome. Dispatches with a dedupe key are skipped on a channel where the
same (call, type, dedupe key) was already sent, so a retried notify job
never repeats a delivered alert.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

from ...call_store import CallStore
from ...config import ScoringConfig, Settings, is_production
from ...errors import ValidationError
from ...models import SEVERITIES
from .channels import Channel, ConsoleChannel, TelegramChannel
from .formatting import (
    build_critical_issue_message,
    build_custom_message,
    build_digest_message,
    build_low_score_message,
)

logger = logging.getLogger('callqc.notifications')

LOW_SCORE_ALERT = "low_score_alert"
CRITICAL_ISSUE = "critical_issue"
DAILY_DIGEST = "daily_digest"
CUSTOM = "custom"


class NotificationRouter:
    """Decides which notifications an analysis produces and delivers them."""

    def __init__(
        self,
        call_store: CallStore,
        scoring: ScoringConfig,
        channels: Iterable[Channel],
        enabled: bool = True,
        alert_on_low_score: bool = True,
        alert_on_critical_issue: bool = True,
        disabled_channels: Iterable[str] = (),
    ):
        self.call_store = call_store
        self.scoring = scoring
        self.channels: Dict[str, Channel] = {channel.name: channel for channel in channels}
        disabled = set(disabled_channels)
        self.settings: Dict[str, Any] = {
            "enabled": enabled,
            "alert_on_low_score": alert_on_low_score,
            "alert_on_critical_issue": alert_on_critical_issue,
            "low_score_threshold": scoring.alert_threshold,
            "critical_severities": list(scoring.critical_severities),
        }
        for name in self.channels:
            self.settings[f"enable_{name}"] = name not in disabled

        logger.info(
            f"Notification router initialized: channels={self.enabled_channels()} "
            f"low_score_threshold={self.settings['low_score_threshold']}"
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        call_store: CallStore,
        scoring: ScoringConfig,
        session: Optional[requests.Session] = None,
    ) -> "NotificationRouter":
        channels = [
            TelegramChannel(settings.telegram_bot_token, settings.telegram_chat_id, session=session),
            ConsoleChannel(),
        ]
        return cls(
            call_store,
            scoring,
            channels,
            enabled=settings.notifications_enabled,
            alert_on_low_score=settings.alert_low_score,
            alert_on_critical_issue=settings.alert_critical_issue,
            # Console output is a development aid
            disabled_channels=("console",) if is_production(settings) else (),
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def get_settings(self) -> Dict[str, Any]:
        return {**self.settings, "critical_severities": list(self.settings["critical_severities"])}

    def update_settings(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply runtime changes; unknown keys are rejected."""
        unknown = [key for key in changes if key not in self.settings]
        if unknown:
            raise ValidationError(f"Unknown notification settings: {', '.join(unknown)}",
                                  {"allowed": sorted(self.settings)})
        updated = dict(self.settings)
        for key, value in changes.items():
            if key == "low_score_threshold":
                if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
                    raise ValidationError("low_score_threshold must be a number between 0 and 100")
                updated[key] = float(value)
            elif key == "critical_severities":
                severities = [str(item).lower() for item in (value or [])]
                invalid = [item for item in severities if item not in SEVERITIES]
                if invalid:
                    raise ValidationError(f"Invalid severities: {', '.join(invalid)}", {"allowed": list(SEVERITIES)})
                updated[key] = severities
            else:
                if not isinstance(value, bool):
                    raise ValidationError(f"{key} must be a boolean")
                updated[key] = value
        self.settings = updated
        logger.info(f"Notification settings updated: {changes}")
        return self.get_settings()

    def enabled_channels(self, names: Optional[Iterable[str]] = None) -> List[str]:
        wanted = set(names) if names is not None else None
        return [
            name for name in self.channels
            if self.settings.get(f"enable_{name}") and (wanted is None or name in wanted)
        ]

    def get_channel_status(self) -> Dict[str, Any]:
        return {
            name: {"enabled": bool(self.settings.get(f"enable_{name}")), **channel.status()}
            for name, channel in self.channels.items()
        }

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    def should_alert_low_score(self, analysis: Dict[str, Any]) -> bool:
        score = analysis.get("overall_score")
        if not self.settings["alert_on_low_score"] or score is None:
            return False
        return score < self.settings["low_score_threshold"]

    def should_notify(self, analysis: Dict[str, Any]) -> bool:
        return self.alert_decision(analysis)["notify"]

    def alert_decision(self, analysis: Dict[str, Any]) -> Dict[str, Any]:
        """
        Which alerts an analysis warrants under the current rules.

        Taken when the analysis is stored and carried on the notify job, so
        later rule changes do not alter alerts already decided. Indexes
        point into `analysis["issues"]`.
        """
        severities = self.settings["critical_severities"]
        low_score = self.should_alert_low_score(analysis)
        critical = []
        if self.settings["alert_on_critical_issue"]:
            critical = [
                index for index, issue in enumerate(analysis.get("issues") or [])
                if isinstance(issue, dict) and str(issue.get("severity") or "").lower() in severities
            ]
        return {
            "notify": bool(self.settings["enabled"] and (low_score or critical)),
            "low_score": low_score,
            "low_score_threshold": self.settings["low_score_threshold"],
            "critical_issue_indexes": critical,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def route(self, analysis: Dict[str, Any], call: Dict[str, Any],
              alert_key: Optional[str] = None,
              decision: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Dispatch every alert an analysis warrants; returns one result per channel send.

        `decision` is the stored result of `alert_decision`; without it the
        current rules are applied. The global and per-channel switches are
        always read live.
        """
        results: List[Dict[str, Any]] = []
        if not self.settings["enabled"]:
            logger.info(f"Notifications disabled; nothing routed for call {analysis.get('call_id')}")
            return results

        decision = decision or self.alert_decision(analysis)
        issues = analysis.get("issues") or []
        key = alert_key or analysis.get("id")
        if decision.get("low_score"):
            results.extend(self.send_low_score_alert(
                analysis, call, dedupe_key=f"{key}:low_score",
                threshold=decision.get("low_score_threshold"),
            ))

        critical = [issues[i] for i in decision.get("critical_issue_indexes") or [] if 0 <= i < len(issues)]
        for index, issue in enumerate(critical):
            results.extend(self.send_critical_issue_alert(
                analysis, issue, call, dedupe_key=f"{key}:issue:{index}"
            ))

        logger.info(f"Analysis for call {analysis.get('call_id')} routed: {len(results)} dispatch(es)")
        return results

    def send_low_score_alert(self, analysis: Dict[str, Any], call: Dict[str, Any],
                             dedupe_key: Optional[str] = None,
                             threshold: Optional[float] = None) -> List[Dict[str, Any]]:
        message = build_low_score_message(analysis, call, self.scoring)
        return self._dispatch(
            LOW_SCORE_ALERT, message,
            call_id=analysis.get("call_id"),
            dedupe_key=dedupe_key,
            metadata={
                "overall_score": analysis.get("overall_score"),
                "threshold": self.settings["low_score_threshold"] if threshold is None else threshold,
                "analysis_id": analysis.get("id"),
            },
        )

    def send_critical_issue_alert(self, analysis: Dict[str, Any], issue: Dict[str, Any],
                                  call: Dict[str, Any], dedupe_key: Optional[str] = None) -> List[Dict[str, Any]]:
        message = build_critical_issue_message(analysis, issue, call, self.scoring)
        return self._dispatch(
            CRITICAL_ISSUE, message,
            call_id=analysis.get("call_id"),
            dedupe_key=dedupe_key,
            metadata={
                "issue_type": issue.get("type"),
                "severity": issue.get("severity"),
                "analysis_id": analysis.get("id"),
            },
        )

    def send_daily_digest(self, digest: Dict[str, Any], dedupe_key: Optional[str] = None,
                          channels: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        results = self._dispatch(
            DAILY_DIGEST, build_digest_message(digest),
            dedupe_key=dedupe_key,
            metadata={"date": digest.get("date"), "total_calls": digest.get("total_calls")},
            channel_names=channels,
        )
        logger.info(f"Daily digest for {digest.get('date')} sent to {[r['channel'] for r in results]}")
        return results

    def send_custom_notification(self, title: str, message: str, channels: Optional[List[str]] = None,
                                 call_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if not title or not message:
            raise ValidationError("title and message are required")
        return self._dispatch(
            CUSTOM, build_custom_message(title, message),
            call_id=call_id,
            metadata={"title": title},
            channel_names=channels,
        )

    def test_channels(self) -> Dict[str, Any]:
        return {
            name: {
                "enabled": bool(self.settings.get(f"enable_{name}")),
                **(channel.test_connection() if self.settings.get(f"enable_{name}") else {}),
            }
            for name, channel in self.channels.items()
        }

    def test_channel(self, name: str) -> Dict[str, Any]:
        if name not in self.channels:
            raise ValidationError(f"Unknown channel: {name}", {"channels": list(self.channels)})
        return self.channels[name].test_connection()

    def _dispatch(
        self,
        kind: str,
        message: str,
        call_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        channel_names: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        results = []
        for name in self.enabled_channels(channel_names):
            if dedupe_key and self.call_store.has_sent_notification(call_id, kind, name, dedupe_key):
                logger.info(f"Skipping duplicate {kind} on {name} for call {call_id} ({dedupe_key})")
                results.append({"channel": name, "type": kind, "ok": True, "skipped": "duplicate"})
                continue

            outcome = self.channels[name].send(kind, message)
            ok = bool(outcome.get("ok"))
            notification = self.call_store.append_notification({
                "call_id": call_id,
                "channel": name,
                "type": kind,
                "message": message,
                "status": "sent" if ok else "failed",
                "dedupe_key": dedupe_key,
                "vendor_message_id": outcome.get("vendor_id"),
                "error": outcome.get("error"),
                "metadata": {**(metadata or {}), "mock": bool(outcome.get("mock"))},
            })
            results.append({
                "channel": name,
                "type": kind,
                "ok": ok,
                "notification_id": notification.id,
                "vendor_id": outcome.get("vendor_id"),
                "mock": bool(outcome.get("mock")),
                "error": outcome.get("error"),
                "retryable": bool(outcome.get("retryable")) if not ok else False,
            })
        return results
