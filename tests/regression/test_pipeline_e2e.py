"""
End-to-end pipeline tests: webhook to notification, with every vendor
answered by the fake HTTP session and the queues drained inline.
"""

import pytest

from backend.callqc.job_queue import ANALYZE, DOWNLOAD, NOTIFY, TRANSCRIBE
from backend.callqc.models import CallStatus
from backend.callqc.services.notifications import CRITICAL_ISSUE, LOW_SCORE_ALERT, NullChannel

from fakes import HIGH_ISSUE, groq_response, llm_response, recording_response, vendor_error, verdict

HAPPY_WEBHOOK = {
    "call_sid": "s1",
    "call_type": "completed",
    "recording_url": "http://mock/1.wav",
    "from": "9",
    "to": "8",
    "direction": "incoming",
    "on_call_duration": 60,
}


@pytest.fixture
def vendors(http):
    """Recording host, Groq and OpenRouter all answering successfully."""
    def _configure(score=78, sentiment="positive", issues=None, llm_body=None):
        http.add("GET", "mock/1.wav", recording_response())
        http.add("POST", "api.groq.com", groq_response())
        http.add("POST", "openrouter.ai", llm_response(llm_body or verdict(score, sentiment, issues)))
    return _configure


def ingest(client, payload=None):
    response = client.post("/webhook/exotel", json=payload or HAPPY_WEBHOOK)
    assert response.status_code == 200
    return response.json()


class TestPipeline:
    """Webhook through analysis."""

    def test_happy_path(self, client, services, vendors, console):
        vendors(score=78)
        body = ingest(client)
        outcomes = services.pool.drain()

        assert outcomes == {"completed": 3, "retrying": 0, "failed": 0}
        call = services.call_store.get_call(body["call_id"])
        assert call.status == CallStatus.ANALYZED
        assert call.duration_seconds == 60
        assert call.local_audio_path.endswith(f"{call.id}.wav")
        assert services.call_store.count_transcripts(call.id) == 1
        assert services.call_store.get_transcript(call.id).stt_provider == "groq"
        assert services.call_store.get_analysis(call.id).overall_score == 78.0
        assert services.call_store.count_notifications(call_id=call.id) == 0
        assert console.sent == []

    def test_low_score_alerts(self, client, services, vendors, console):
        vendors(score=40, sentiment="negative", issues=[HIGH_ISSUE])
        body = ingest(client)
        outcomes = services.pool.drain()

        assert outcomes == {"completed": 4, "retrying": 0, "failed": 0}
        assert services.call_store.get_call(body["call_id"]).status == CallStatus.ANALYZED
        assert sorted(console.kinds()) == sorted([LOW_SCORE_ALERT, CRITICAL_ISSUE])
        assert services.call_store.count_notifications(LOW_SCORE_ALERT) == 1
        assert services.call_store.count_notifications(CRITICAL_ISSUE) == 1

    def test_duplicate_webhook(self, client, services, vendors, http):
        vendors()
        first = ingest(client)
        second = ingest(client)

        assert second["call_id"] == first["call_id"]
        assert second["job_id"] == first["job_id"]
        assert services.call_store.list_calls()[1] == 1
        assert services.job_queue.counts(DOWNLOAD)[DOWNLOAD]["waiting"] == 1

        services.pool.drain()
        assert len(http.calls_to("api.groq.com")) == 1
        assert len(http.calls_to("openrouter.ai")) == 1

    def test_ignored_webhook(self, client, services):
        body = ingest(client, {"call_sid": "s2", "call_type": "completed", "recording_url": None})
        assert body == {"status": "ignored"}
        assert services.call_store.get_call_by_sid("s2") is None

    def test_stt_unauthorized(self, client, services, http):
        http.add("GET", "mock/1.wav", recording_response())
        http.add("POST", "api.groq.com", vendor_error(401, "Invalid API Key"))
        body = ingest(client)
        outcomes = services.pool.drain()

        assert outcomes == {"completed": 1, "retrying": 0, "failed": 1}
        call_id = body["call_id"]
        assert services.call_store.get_call(call_id).status == CallStatus.TRANSCRIPTION_FAILED
        assert services.call_store.get_transcript(call_id) is None
        assert services.call_store.get_analysis(call_id) is None
        assert services.job_queue.list_jobs(ANALYZE) == []

        failed = services.job_queue.list_jobs(TRANSCRIBE, status="failed", call_id=call_id)
        assert len(failed) == 1
        assert failed[0].failure["code"] == "UNAUTHORIZED"
        assert failed[0].failure["retryable"] is False
        assert len(http.calls_to("api.groq.com")) == 1

    def test_stt_outage_exhausts_attempts(self, client, services, http):
        http.add("GET", "mock/1.wav", recording_response())
        http.add("POST", "api.groq.com", vendor_error(503, "Service unavailable"))
        body = ingest(client)
        outcomes = services.pool.drain()

        assert outcomes == {"completed": 1, "retrying": 2, "failed": 1}
        assert services.call_store.get_call(body["call_id"]).status == CallStatus.TRANSCRIPTION_FAILED

    def test_download_failure(self, client, services, http):
        http.add("GET", "mock/1.wav", vendor_error(404, "Not Found"))
        body = ingest(client)
        services.pool.drain()

        assert services.call_store.get_call(body["call_id"]).status == CallStatus.DOWNLOAD_FAILED
        assert services.object_store.find(f"audio/default/{body['call_id']}") is None

    def test_reanalyze(self, client, services, vendors, http):
        vendors(score=40, sentiment="negative")
        call_id = ingest(client)["call_id"]
        services.pool.drain()

        http.add("POST", "openrouter.ai", llm_response(verdict(71), model="X"))
        response = client.post(f"/api/calls/{call_id}/reanalyze", json={"model": "X"})

        assert response.status_code == 200
        assert services.call_store.count_analyses(call_id) == 1
        analysis = services.call_store.get_analysis(call_id)
        assert analysis.llm_model == "X"
        assert analysis.overall_score == 71.0
        assert http.calls_to("openrouter.ai")[-1]["json"]["model"] == "X"

    def test_out_of_contract_verdict_is_repaired(self, client, services, vendors):
        vendors(llm_body={
            "overall_score": 150,
            "sentiment": "angry",
            "category_scores": {"greeting_rapport": {"score": 80}},
        })
        call_id = ingest(client)["call_id"]
        services.pool.drain()

        analysis = services.call_store.get_analysis(call_id)
        assert analysis.overall_score == 80.0
        assert analysis.sentiment == "neutral"
        assert len(analysis.category_scores) == 5


class TestIdempotency:
    """Redelivered jobs and concurrent writers."""

    def test_replayed_jobs_change_nothing(self, client, services, vendors, http):
        vendors()
        call_id = ingest(client)["call_id"]
        services.pool.drain()
        vendor_calls = len(http.calls)

        for queue in (DOWNLOAD, TRANSCRIBE, ANALYZE):
            services.job_queue.enqueue(queue, {"call_id": call_id})
        outcomes = services.pool.drain()

        assert outcomes == {"completed": 3, "retrying": 0, "failed": 0}
        assert len(http.calls) == vendor_calls
        assert services.call_store.count_transcripts(call_id) == 1
        assert services.call_store.count_analyses(call_id) == 1
        assert services.call_store.get_call(call_id).status == CallStatus.ANALYZED

    def test_analysis_race_lost(self, services, seed_call, monkeypatch):
        """The first writer's verdict stands; the loser writes nothing."""
        call = seed_call(CallStatus.TRANSCRIBED)
        winner = services.analyzer.validate(verdict(91))
        winner["llm_model"] = "winner"
        loser = services.analyzer.validate(verdict(30))
        loser["llm_model"] = "loser"

        def concurrent_writer(transcript, model=None, **kwargs):
            services.call_store.advance_status(call.id, CallStatus.TRANSCRIBED, CallStatus.ANALYZED)
            services.call_store.upsert_analysis(call.id, winner)
            return loser

        monkeypatch.setattr(services.analyzer, "analyze", concurrent_writer)
        job = services.job_queue.enqueue(ANALYZE, {"call_id": call.id})
        services.pool.drain()

        assert services.job_queue.get_job(job.id).result == {"skipped": True, "reason": "race_lost"}
        analysis = services.call_store.get_analysis(call.id)
        assert analysis.llm_model == "winner"
        assert analysis.overall_score == 91.0
        assert services.job_queue.list_jobs(NOTIFY) == []


class TestNotifyRetry:
    """A failed channel is retried without repeating delivered alerts."""

    @pytest.fixture
    def telegram(self):
        return NullChannel("telegram", fail_with="Telegram server error (502)")

    @pytest.fixture
    def channels(self, console, telegram):
        return [console, telegram]

    def test_delivered_alerts_are_not_resent(self, client, services, vendors, console, telegram):
        vendors(score=40, sentiment="negative", issues=[HIGH_ISSUE])
        call_id = ingest(client)["call_id"]

        first = services.pool.drain(include_delayed=False)
        assert first["retrying"] == 1
        assert telegram.sent == []

        telegram.fail_with = None
        services.pool.drain()

        assert sorted(console.kinds()) == sorted([LOW_SCORE_ALERT, CRITICAL_ISSUE])
        assert sorted(telegram.kinds()) == sorted([LOW_SCORE_ALERT, CRITICAL_ISSUE])
        rows, _ = services.call_store.list_notifications(call_id=call_id, channel="console")
        assert len(rows) == 2
