"""
Daily digest, multi-day summaries, trends and per-agent reports.

Days are UTC calendar days: a digest for 2026-03-01 covers analyses created
in [2026-03-01T00:00Z, 2026-03-02T00:00Z).
"""
import logging
import statistics
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..call_store import CallStore
from ..config import ScoringConfig
from ..errors import ValidationError
from ..models import utcnow

logger = logging.getLogger('callqc.digest')

DateLike = Union[date, datetime, str, None]
TREND_DEAD_BAND = 2.0


def _round(value: Optional[float]) -> Optional[float]:
    return round(value, 1) if value is not None else None


def parse_day(value: DateLike, today: date) -> date:
    """Accept a date, a datetime, an ISO string (YYYY-MM-DD...) or None for today."""
    if value is None or value == "":
        return today
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date: {value}", {"expected": "YYYY-MM-DD"}) from e


def day_bounds(day: date):
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


class DigestGenerator:
    """Aggregates stored analyses into digests and trend views."""

    def __init__(
        self,
        call_store: CallStore,
        scoring: ScoringConfig,
        router=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.call_store = call_store
        self.scoring = scoring
        self.router = router
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    # ------------------------------------------------------------------
    # Aggregation helpers
    # ------------------------------------------------------------------
    def score_statistics(self, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        scores = [r["overall_score"] for r in records if r.get("overall_score") is not None]
        bands = {"excellent": 0, "good": 0, "needs_improvement": 0, "poor": 0}
        for score in scores:
            bands[self.scoring.classify(score)] += 1
        sentiments = {"positive": 0, "neutral": 0, "negative": 0}
        for record in records:
            if record.get("sentiment") in sentiments:
                sentiments[record["sentiment"]] += 1

        return {
            "avg_score": _round(sum(scores) / len(scores)) if scores else None,
            "min_score": min(scores) if scores else None,
            "median_score": _round(statistics.median(scores)) if scores else None,
            "max_score": max(scores) if scores else None,
            "score_distribution": bands,
            "sentiment": sentiments,
        }

    @staticmethod
    def category_averages(records: List[Dict[str, Any]]) -> Dict[str, float]:
        totals: Dict[str, float] = defaultdict(float)
        counts: Dict[str, int] = defaultdict(int)
        for record in records:
            for key, entry in (record.get("category_scores") or {}).items():
                score = entry.get("score") if isinstance(entry, dict) else entry
                if isinstance(score, (int, float)) and not isinstance(score, bool):
                    totals[key] += score
                    counts[key] += 1
        return {key: _round(totals[key] / counts[key]) for key in totals}

    @staticmethod
    def aggregate_issues(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Issues grouped by (category, severity), most frequent first."""
        grouped: Dict[tuple, Dict[str, Any]] = {}
        for record in records:
            for issue in record.get("issues") or []:
                if not isinstance(issue, dict):
                    continue
                category = issue.get("category") or issue.get("type") or "general"
                severity = issue.get("severity") or "medium"
                entry = grouped.setdefault(
                    (category, severity),
                    {"category": category, "severity": severity, "count": 0, "examples": []},
                )
                entry["count"] += 1
                detail = issue.get("detail") or issue.get("description")
                if detail and len(entry["examples"]) < 3:
                    entry["examples"].append(detail)
        return sorted(grouped.values(), key=lambda item: item["count"], reverse=True)

    @staticmethod
    def agent_performance(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        agents: Dict[str, Dict[str, Any]] = {}
        for record in records:
            agent_id = (record.get("call") or {}).get("agent_id") or "unassigned"
            agent = agents.setdefault(agent_id, {
                "agent_id": agent_id,
                "total_calls": 0,
                "scores": [],
                "sentiments": {"positive": 0, "neutral": 0, "negative": 0},
            })
            agent["total_calls"] += 1
            if record.get("overall_score") is not None:
                agent["scores"].append(record["overall_score"])
            if record.get("sentiment") in agent["sentiments"]:
                agent["sentiments"][record["sentiment"]] += 1

        performance = []
        for agent in agents.values():
            scores = agent.pop("scores")
            agent["avg_score"] = _round(sum(scores) / len(scores)) if scores else None
            agent["min_score"] = min(scores) if scores else None
            agent["max_score"] = max(scores) if scores else None
            performance.append(agent)
        return sorted(performance, key=lambda a: a["avg_score"] if a["avg_score"] is not None else -1, reverse=True)

    # ------------------------------------------------------------------
    # Digests
    # ------------------------------------------------------------------
    def generate(self, target_date: DateLike = None, include_details: bool = False) -> Dict[str, Any]:
        """Digest of one UTC day."""
        day = parse_day(target_date, self.today())
        start, end = day_bounds(day)
        records = self.call_store.analyses_between(start, end)
        generated_at = self.clock().isoformat() + "Z"

        if not records:
            return {
                "date": day.isoformat(),
                "generated_at": generated_at,
                "total_calls": 0,
                "avg_score": None,
                "message": "No calls analyzed for this date",
                "alerts_count": self.call_store.count_notifications("low_score_alert", start, end),
                "thresholds": self.scoring.thresholds(),
            }

        top_issues = self.aggregate_issues(records)
        agents = self.agent_performance(records)
        digest = {
            "date": day.isoformat(),
            "generated_at": generated_at,
            "total_calls": len(records),
            **self.score_statistics(records),
            "category_averages": self.category_averages(records),
            "top_issues": top_issues[:10],
            "total_issues": sum(issue["count"] for issue in top_issues),
            "agent_performance": agents[:10],
            "top_performer": agents[0] if agents else None,
            "needs_improvement": [
                agent for agent in agents
                if agent["avg_score"] is not None and agent["avg_score"] < self.scoring.alert_threshold
            ],
            "alerts_count": self.call_store.count_notifications("low_score_alert", start, end),
            "thresholds": self.scoring.thresholds(),
        }
        if include_details:
            digest["calls"] = [
                {
                    "call_id": record["call_id"],
                    "agent_id": record["call"]["agent_id"],
                    "score": record["overall_score"],
                    "sentiment": record["sentiment"],
                    "issues_count": len(record.get("issues") or []),
                }
                for record in records
            ]

        logger.info(f"Daily digest generated for {digest['date']}: {digest['total_calls']} calls, "
                    f"avg {digest['avg_score']}")
        return digest

    def generate_multi_day(self, days: int = 7, end_date: DateLike = None) -> List[Dict[str, Any]]:
        """Daily digests for `days` days ending at `end_date`, newest first."""
        if days < 1 or days > 90:
            raise ValidationError("days must be between 1 and 90")
        last = parse_day(end_date, self.today())
        return [self.generate(last - timedelta(days=offset)) for offset in range(days)]

    def summarize(self, digests: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        """Reduce daily digests: counters are summed, averages weighted by total_calls."""
        digests = list(digests)
        dates = sorted(d["date"] for d in digests)
        period = f"{dates[0]} to {dates[-1]}" if dates else None
        non_empty = [d for d in digests if d.get("total_calls")]
        if not non_empty:
            return {
                "period": period,
                "total_calls": 0,
                "avg_score": None,
                "message": "No calls analyzed in this period",
            }

        total_calls = sum(d["total_calls"] for d in non_empty)
        weighted = [(d["avg_score"], d["total_calls"]) for d in non_empty if d.get("avg_score") is not None]
        weight = sum(count for _, count in weighted)
        bands = {"excellent": 0, "good": 0, "needs_improvement": 0, "poor": 0}
        sentiments = {"positive": 0, "neutral": 0, "negative": 0}
        issues: Dict[tuple, Dict[str, Any]] = {}
        for digest in non_empty:
            for band, count in (digest.get("score_distribution") or {}).items():
                bands[band] = bands.get(band, 0) + count
            for sentiment, count in (digest.get("sentiment") or {}).items():
                sentiments[sentiment] = sentiments.get(sentiment, 0) + count
            for issue in digest.get("top_issues") or []:
                entry = issues.setdefault(
                    (issue["category"], issue["severity"]),
                    {"category": issue["category"], "severity": issue["severity"], "count": 0},
                )
                entry["count"] += issue["count"]

        return {
            "period": period,
            "total_calls": total_calls,
            "avg_score": _round(sum(avg * count for avg, count in weighted) / weight) if weight else None,
            "min_score": min((d["min_score"] for d in non_empty if d.get("min_score") is not None), default=None),
            "max_score": max((d["max_score"] for d in non_empty if d.get("max_score") is not None), default=None),
            "score_distribution": bands,
            "sentiment": sentiments,
            "alerts_count": sum(d.get("alerts_count") or 0 for d in non_empty),
            "top_issues": sorted(issues.values(), key=lambda item: item["count"], reverse=True)[:10],
            "daily_breakdown": [
                {"date": d["date"], "total_calls": d["total_calls"], "avg_score": d["avg_score"]}
                for d in sorted(non_empty, key=lambda d: d["date"])
            ],
        }

    def generate_weekly(self, days: int = 7, end_date: DateLike = None) -> Dict[str, Any]:
        return self.summarize(self.generate_multi_day(days, end_date))

    def trend(self, current_days: int = 7, compare_days: int = 7, end_date: DateLike = None) -> Dict[str, Any]:
        """Compare the last `current_days` with the `compare_days` before them."""
        last = parse_day(end_date, self.today())
        current = self.summarize(self.generate_multi_day(current_days, last))
        previous = self.summarize(self.generate_multi_day(compare_days, last - timedelta(days=current_days)))

        avg_change = None
        if current.get("avg_score") is not None and previous.get("avg_score") is not None:
            avg_change = round(current["avg_score"] - previous["avg_score"], 1)

        if avg_change is not None and avg_change > TREND_DEAD_BAND:
            direction = "improving"
        elif avg_change is not None and avg_change < -TREND_DEAD_BAND:
            direction = "declining"
        else:
            direction = "stable"

        return {
            "current": current,
            "previous": previous,
            "changes": {
                "total_calls": current["total_calls"] - previous["total_calls"],
                "avg_score": avg_change,
                "low_score_calls": (
                    (current.get("score_distribution") or {}).get("poor", 0)
                    - (previous.get("score_distribution") or {}).get("poor", 0)
                ),
            },
            "direction": direction,
        }

    def agent_report(self, agent_id: str, start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> Dict[str, Any]:
        """Performance of one agent; defaults to the last 7 days."""
        end = end or self.clock()
        start = start or end - timedelta(days=7)
        if start >= end:
            raise ValidationError("start must be before end")
        records = self.call_store.analyses_between(start, end, agent_id=agent_id)
        newest_first = list(reversed(records))
        return {
            "agent_id": agent_id,
            "period": {"start": start.isoformat() + "Z", "end": end.isoformat() + "Z"},
            "total_calls": len(records),
            **self.score_statistics(records),
            "category_averages": self.category_averages(records),
            "top_issues": self.aggregate_issues(records)[:5],
            "recent_calls": [
                {
                    "call_id": record["call_id"],
                    "score": record["overall_score"],
                    "sentiment": record["sentiment"],
                    "created_at": record["created_at"],
                }
                for record in newest_first[:10]
            ],
        }

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def send_daily(self, target_date: DateLike = None, channels: Optional[List[str]] = None,
                   dedupe: bool = False) -> Dict[str, Any]:
        """Generate and dispatch a day's digest; empty days are not sent."""
        if self.router is None:
            raise ValidationError("No notification router configured")
        digest = self.generate(target_date)
        if not digest["total_calls"]:
            logger.info(f"No calls to report for {digest['date']}; digest not sent")
            return {"sent": False, "message": "No calls to report for this date", "digest": digest}

        results = self.router.send_daily_digest(
            digest,
            dedupe_key=f"digest:{digest['date']}" if dedupe else None,
            channels=channels,
        )
        return {"sent": True, "digest": digest, "notification_results": results}
