"""
Message bodies for alerts and digests (Telegram HTML subset).
"""
from html import escape
from typing import Any, Dict, Optional

from ...config import ScoringConfig

RULE = "────────────────────"

CATEGORY_LABELS = {
    "greeting_rapport": "Greeting & Rapport",
    "requirement_discovery": "Requirement Discovery",
    "product_knowledge": "Product Knowledge",
    "objection_handling": "Objection Handling",
    "closing_next_steps": "Closing & Next Steps",
}


def format_score(score: Optional[float], scoring: ScoringConfig) -> str:
    """Score with a colour indicator for its band."""
    if score is None:
        return "N/A"
    if score >= scoring.excellent_threshold:
        indicator = "🟢"
    elif score >= scoring.good_threshold:
        indicator = "🟡"
    elif score >= scoring.alert_threshold:
        indicator = "🟠"
    else:
        indicator = "🔴"
    return f"{score:g}/100 {indicator}"


def format_duration(seconds: Optional[int]) -> str:
    if not seconds:
        return "N/A"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def _truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def build_low_score_message(analysis: Dict[str, Any], call: Dict[str, Any], scoring: ScoringConfig) -> str:
    lines = [
        "🚨 <b>Low Score Alert</b>",
        RULE,
        "",
        f"👤 <b>Agent:</b> {escape(str(call.get('agent_id') or 'Unknown'))}",
        f"📞 <b>Call ID:</b> <code>{escape(str(analysis.get('call_id')))}</code>",
        f"⏱ <b>Duration:</b> {format_duration(call.get('duration_seconds'))}",
        f"📊 <b>Score:</b> {format_score(analysis.get('overall_score'), scoring)}",
        "",
    ]

    issues = analysis.get("issues") or []
    if issues:
        lines.append("<b>Issues:</b>")
        for issue in issues[:3]:
            lines.append(f"• {escape(str(issue.get('type') or 'general'))}: {escape(str(issue.get('detail') or ''))}")
        lines.append("")

    if analysis.get("summary"):
        lines.append(f"📝 <b>Summary:</b> {escape(_truncate(analysis['summary']))}")
        lines.append("")

    category_scores = analysis.get("category_scores") or {}
    scored = [(key, entry) for key, entry in category_scores.items()
              if isinstance(entry, dict) and entry.get("score") is not None]
    if scored:
        lines.append("<b>Category Scores:</b>")
        for key, entry in scored:
            lines.append(f"• {CATEGORY_LABELS.get(key, key)}: {entry['score']:g}")

    return "\n".join(lines).rstrip()


def build_critical_issue_message(
    analysis: Dict[str, Any],
    issue: Dict[str, Any],
    call: Dict[str, Any],
    scoring: ScoringConfig,
) -> str:
    lines = [
        "⚠️ <b>Critical Issue Detected</b>",
        RULE,
        "",
        f"👤 <b>Agent:</b> {escape(str(call.get('agent_id') or 'Unknown'))}",
        f"📞 <b>Call ID:</b> <code>{escape(str(analysis.get('call_id')))}</code>",
        f"📊 <b>Overall Score:</b> {format_score(analysis.get('overall_score'), scoring)}",
        "",
        f"🔴 <b>Type:</b> {escape(str(issue.get('type') or 'general'))}",
        f"📝 <b>Issue:</b> {escape(str(issue.get('detail') or ''))}",
        f"⚡ <b>Severity:</b> {escape(str(issue.get('severity') or 'high').upper())}",
    ]
    if issue.get("timestamp_hint"):
        lines.append(f"🕒 <b>Where:</b> {escape(str(issue['timestamp_hint']))}")
    return "\n".join(lines)


def build_digest_message(digest: Dict[str, Any]) -> str:
    if not digest.get("total_calls"):
        return "\n".join([
            "📊 <b>Daily Digest Report</b>",
            RULE,
            "",
            f"📅 <b>Date:</b> {escape(str(digest.get('date')))}",
            "",
            "No calls to report",
        ])

    bands = digest.get("score_distribution") or {}
    lines = [
        "📊 <b>Daily Digest Report</b>",
        RULE,
        "",
        f"📅 <b>Date:</b> {escape(str(digest.get('date')))}",
        "",
        "<b>Statistics:</b>",
        f"• Total Calls: {digest['total_calls']}",
        f"• Average Score: {digest.get('avg_score')}",
        f"• Highest Score: {digest.get('max_score')}",
        f"• Lowest Score: {digest.get('min_score')}",
        "",
        "<b>Performance:</b>",
        f"• 🟢 Excellent: {bands.get('excellent', 0)}",
        f"• 🟡 Good: {bands.get('good', 0)}",
        f"• 🟠 Needs Improvement: {bands.get('needs_improvement', 0)}",
        f"• 🔴 Below Threshold: {bands.get('poor', 0)}",
        "",
    ]

    top_issues = digest.get("top_issues") or []
    if top_issues:
        lines.append("<b>Top Issues:</b>")
        for issue in top_issues[:5]:
            lines.append(f"• {escape(str(issue['category']))} ({issue['severity']}): {issue['count']} occurrences")
        lines.append("")

    if digest.get("alerts_count"):
        lines.append(f"⚠️ <b>Alerts Generated:</b> {digest['alerts_count']}")

    return "\n".join(lines).rstrip()


def build_custom_message(title: str, message: str) -> str:
    return f"<b>{escape(title)}</b>\n{RULE}\n\n{escape(message)}"
