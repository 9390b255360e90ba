"""
Regression tests for digests, trends, agent reports and the digest scheduler.
"""

from datetime import datetime

import pytest
from sqlalchemy import update

from backend.callqc.errors import ValidationError
from backend.callqc.models import Analysis, CallStatus
from backend.callqc.scheduler import DAILY_DIGEST_JOB_ID, DigestScheduler, send_yesterdays_digest
from backend.callqc.services.digest import DigestGenerator, parse_day

from fakes import HIGH_ISSUE


def backdate(services, call_id, when):
    """Move an analysis to another UTC day."""
    with services.db.session() as s:
        s.execute(update(Analysis).where(Analysis.call_id == call_id).values(created_at=when))


@pytest.fixture
def analyzed_on(services, seed_call):
    def _make(when, score, **kwargs):
        call = seed_call(CallStatus.ANALYZED, score=score, **kwargs)
        backdate(services, call.id, when)
        return call
    return _make


class TestDailyDigest:
    """One UTC day of analyses."""

    def test_day_summary(self, services, analyzed_on):
        services.call_store.ensure_user("agent-1", "default", "Ravi")
        services.call_store.ensure_user("agent-2", "default", "Meera")
        day = datetime(2026, 3, 9, 11, 0)
        analyzed_on(day, 80, agent_id="agent-1")
        analyzed_on(day, 40, agent_id="agent-2", sentiment="negative", issues=[HIGH_ISSUE])
        analyzed_on(datetime(2026, 3, 8, 23, 59), 95, agent_id="agent-1")

        digest = services.digest.generate("2026-03-09", include_details=True)

        assert digest["total_calls"] == 2
        assert digest["avg_score"] == 60.0
        assert (digest["min_score"], digest["max_score"]) == (40.0, 80.0)
        assert digest["score_distribution"] == {"excellent": 0, "good": 1, "needs_improvement": 0, "poor": 1}
        assert digest["top_issues"][0] == {
            "category": "weak_closing", "severity": "high", "count": 1,
            "examples": ["No next step agreed with the customer"],
        }
        assert digest["top_performer"]["agent_id"] == "agent-1"
        assert [agent["agent_id"] for agent in digest["needs_improvement"]] == ["agent-2"]
        assert len(digest["calls"]) == 2

    def test_empty_day(self, services):
        digest = services.digest.generate("2026-01-01")
        assert digest["total_calls"] == 0
        assert digest["avg_score"] is None
        assert digest["message"] == "No calls analyzed for this date"

    def test_category_averages(self, services, analyzed_on):
        day = datetime(2026, 3, 9, 9, 0)
        analyzed_on(day, 80)
        analyzed_on(day, 60)
        averages = services.digest.generate("2026-03-09")["category_averages"]
        assert averages["greeting_rapport"] == 70.0

    def test_invalid_date(self):
        with pytest.raises(ValidationError):
            parse_day("09/03/2026", datetime(2026, 3, 9).date())


class TestSummaries:
    """Multi-day summaries and trends."""

    def test_average_weighted_by_calls(self, services):
        """One call at 90 and three at 50 average to 60, not 70."""
        summary = services.digest.summarize([
            {"date": "2026-03-08", "total_calls": 1, "avg_score": 90.0, "min_score": 90.0, "max_score": 90.0},
            {"date": "2026-03-09", "total_calls": 3, "avg_score": 50.0, "min_score": 40.0, "max_score": 60.0},
            {"date": "2026-03-10", "total_calls": 0, "avg_score": None},
        ])
        assert summary["total_calls"] == 4
        assert summary["avg_score"] == 60.0
        assert summary["period"] == "2026-03-08 to 2026-03-10"
        assert (summary["min_score"], summary["max_score"]) == (40.0, 90.0)
        assert [day["date"] for day in summary["daily_breakdown"]] == ["2026-03-08", "2026-03-09"]

    def test_score_range_ignores_days_without_scores(self, services):
        summary = services.digest.summarize([
            {"date": "2026-03-08", "total_calls": 2, "avg_score": None, "min_score": None, "max_score": None},
            {"date": "2026-03-09", "total_calls": 1, "avg_score": 72.0, "min_score": 72.0, "max_score": 72.0},
        ])
        assert summary["avg_score"] == 72.0
        assert (summary["min_score"], summary["max_score"]) == (72.0, 72.0)

    def test_score_range_empty_when_no_day_has_scores(self, services):
        summary = services.digest.summarize([
            {"date": "2026-03-08", "total_calls": 2, "avg_score": None, "min_score": None, "max_score": None},
        ])
        assert summary["avg_score"] is None
        assert (summary["min_score"], summary["max_score"]) == (None, None)

    def test_empty_period(self, services):
        summary = services.digest.generate_weekly(7, "2026-01-07")
        assert summary["total_calls"] == 0
        assert summary["period"] == "2026-01-01 to 2026-01-07"

    def test_days_out_of_range(self, services):
        with pytest.raises(ValidationError):
            services.digest.generate_multi_day(0)

    def test_trend_improving(self, services, analyzed_on):
        analyzed_on(datetime(2026, 3, 1, 10, 0), 60)
        analyzed_on(datetime(2026, 3, 9, 10, 0), 75)
        trend = services.digest.trend(7, 7, "2026-03-10")

        assert trend["changes"]["avg_score"] == 15.0
        assert trend["direction"] == "improving"

    def test_trend_dead_band(self, services, analyzed_on):
        """Changes within two points are stable."""
        analyzed_on(datetime(2026, 3, 1, 10, 0), 70)
        analyzed_on(datetime(2026, 3, 9, 10, 0), 71.5)
        assert services.digest.trend(7, 7, "2026-03-10")["direction"] == "stable"

    def test_trend_declining(self, services, analyzed_on):
        analyzed_on(datetime(2026, 3, 1, 10, 0), 80)
        analyzed_on(datetime(2026, 3, 9, 10, 0), 45)
        trend = services.digest.trend(7, 7, "2026-03-10")
        assert trend["direction"] == "declining"
        assert trend["changes"]["low_score_calls"] == 1

    def test_agent_report(self, services, analyzed_on):
        services.call_store.ensure_user("agent-1", "default", "Ravi")
        analyzed_on(datetime(2026, 3, 8, 10, 0), 70, agent_id="agent-1")
        analyzed_on(datetime(2026, 3, 9, 10, 0), 90, agent_id="agent-1")
        analyzed_on(datetime(2026, 3, 9, 10, 0), 30)

        report = services.digest.agent_report(
            "agent-1", start=datetime(2026, 3, 1), end=datetime(2026, 3, 10),
        )
        assert report["total_calls"] == 2
        assert report["avg_score"] == 80.0
        assert report["recent_calls"][0]["score"] == 90.0


class TestDigestDelivery:
    """Sending digests through the router."""

    def test_empty_day_is_not_sent(self, services, console):
        outcome = services.digest.send_daily("2026-01-01")
        assert outcome["sent"] is False
        assert console.sent == []

    def test_scheduled_digest_sent_once(self, services, analyzed_on, console):
        analyzed_on(datetime(2026, 3, 9, 10, 0), 55)
        first = services.digest.send_daily("2026-03-09", dedupe=True)
        second = services.digest.send_daily("2026-03-09", dedupe=True)

        assert first["sent"] is True
        assert second["notification_results"][0]["skipped"] == "duplicate"
        assert console.kinds() == ["daily_digest"]

    def test_requires_router(self, services):
        generator = DigestGenerator(services.call_store, services.scoring)
        with pytest.raises(ValidationError):
            generator.send_daily("2026-03-09")


class RecordingDigest:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def send_daily(self, target_date, dedupe=False):
        self.calls.append((target_date, dedupe))
        if self.error:
            raise self.error
        return {"sent": True}


class TestScheduler:
    """Daily digest cron job."""

    def test_sends_previous_day_with_dedupe(self):
        digest = RecordingDigest()
        assert send_yesterdays_digest(digest) == {"sent": True}
        target, dedupe = digest.calls[0]
        assert dedupe is True
        assert len(target) == 10

    def test_errors_are_logged_not_raised(self):
        digest = RecordingDigest(error=ValidationError("router missing"))
        assert send_yesterdays_digest(digest) is None

    def test_cron_job_registered(self):
        scheduler = DigestScheduler(RecordingDigest(), hour=9, minute=30)
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(DAILY_DIGEST_JOB_ID)
            assert job is not None
            assert scheduler.next_run() is not None
        finally:
            scheduler.shutdown()
