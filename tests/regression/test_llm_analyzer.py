"""
Regression tests for the OpenRouter analyzer: parsing, repair and fallback.
"""

import json

import pytest

from backend.callqc.config import RUBRIC_WEIGHTS, ScoringConfig
from backend.callqc.errors import AnalysisFormatError, ServiceUnavailable, Unauthorized
from backend.callqc.services.llm_analyzer import (
    OpenRouterAnalyzer,
    calculate_cost,
    extract_json_object,
    parse_verdict,
)

from fakes import SAMPLE_TRANSCRIPT, FakeResponse, llm_response, vendor_error, verdict


@pytest.fixture
def scoring():
    return ScoringConfig()


@pytest.fixture
def analyzer(http, scoring):
    return OpenRouterAnalyzer(
        api_key="test-openrouter-key",
        scoring=scoring,
        model="openai/gpt-4o-mini",
        fallback_model="deepseek/deepseek-chat",
        session=http,
    )


class TestParsing:
    """Model output to JSON object."""

    def test_plain_json(self):
        assert parse_verdict('{"overall_score": 70}') == {"overall_score": 70}

    def test_json_wrapped_in_prose(self):
        content = 'Here is the analysis:\n```json\n{"overall_score": 62, "summary": "ok"}\n```\nThanks'
        assert parse_verdict(content)["overall_score"] == 62

    def test_braces_inside_strings(self):
        content = 'prefix {"summary": "customer said {not now}", "overall_score": 55} suffix'
        assert json.loads(extract_json_object(content))["summary"] == "customer said {not now}"

    def test_unparseable_output(self):
        with pytest.raises(AnalysisFormatError):
            parse_verdict("I could not analyze this call.")

    def test_empty_output(self):
        with pytest.raises(AnalysisFormatError):
            parse_verdict("   ")

    def test_non_object_json(self):
        with pytest.raises(AnalysisFormatError):
            parse_verdict("[1, 2, 3]")


class TestValidation:
    """Repairing verdicts to the rubric contract."""

    def test_every_rubric_category_present(self, analyzer):
        record = analyzer.validate({"overall_score": 80, "category_scores": {"greeting_rapport": {"score": 90}}})
        assert set(record["category_scores"]) == set(RUBRIC_WEIGHTS)
        assert record["category_scores"]["product_knowledge"]["score"] is None
        assert record["category_scores"]["product_knowledge"]["feedback"] == "Not assessed"

    def test_in_range_overall_is_kept(self, analyzer):
        record = analyzer.validate(verdict(78))
        assert record["overall_score"] == 78.0

    def test_out_of_range_overall_is_recomputed(self, analyzer):
        """Recomputed from the weighted categories that were scored."""
        record = analyzer.validate({
            "overall_score": 150,
            "category_scores": {"greeting_rapport": {"score": 80}, "requirement_discovery": {"score": 60}},
        })
        assert record["overall_score"] == 67.5

    def test_missing_overall_without_categories(self, analyzer):
        assert analyzer.validate({})["overall_score"] == 50.0

    def test_category_scores_clamped(self, analyzer):
        record = analyzer.validate({"overall_score": 70, "category_scores": {"closing_next_steps": 130}})
        assert record["category_scores"]["closing_next_steps"]["score"] == 100.0

    def test_sentiment_and_severity_normalised(self, analyzer):
        record = analyzer.validate({
            "overall_score": 40,
            "sentiment": "angry",
            "issues": ["Forgot to ask budget", {"type": "weak_closing", "severity": "URGENT", "description": "x"}],
        })
        assert record["sentiment"] == "neutral"
        assert record["issues"][0] == {"type": "general", "detail": "Forgot to ask budget", "severity": "medium"}
        assert record["issues"][1]["severity"] == "medium"
        assert record["issues"][1]["detail"] == "x"

    def test_defaults_for_missing_text(self, analyzer):
        record = analyzer.validate({"overall_score": 60, "recommendations": ["", None, "Send quotation"]})
        assert record["recommendations"] == ["Send quotation"]
        assert record["summary"]

    def test_prompt_lists_weights(self, analyzer):
        prompt = analyzer.build_prompt(SAMPLE_TRANSCRIPT)
        assert "REQUIREMENT DISCOVERY (25% weight)" in prompt
        assert SAMPLE_TRANSCRIPT in prompt
        assert '"closing_next_steps": {"score": <0-100>, "weight": 0.20' in prompt


class TestAnalyze:
    """Gateway calls."""

    def test_successful_analysis(self, analyzer, http):
        http.add("POST", "openrouter.ai", llm_response(verdict(72), model="openai/gpt-4o-mini",
                                                       prompt_tokens=1000, completion_tokens=500))
        record = analyzer.analyze(SAMPLE_TRANSCRIPT)

        assert record["overall_score"] == 72.0
        assert record["llm_model"] == "openai/gpt-4o-mini"
        assert record["prompt_tokens"] == 1000
        assert record["metadata"]["usage"]["total_tokens"] == 1500
        body = http.calls_to("/chat/completions")[0]["json"]
        assert body["response_format"] == {"type": "json_object"}
        assert body["messages"][0]["role"] == "system"

    def test_fallback_model_on_gateway_error(self, analyzer, http):
        def respond(method, url, kwargs):
            if kwargs["json"]["model"] == "openai/gpt-4o-mini":
                return vendor_error(503, "Provider overloaded")
            return llm_response(verdict(66))

        http.add("POST", "openrouter.ai", respond)
        record = analyzer.analyze(SAMPLE_TRANSCRIPT)

        assert record["llm_model"] == "deepseek/deepseek-chat"
        assert [call["json"]["model"] for call in http.calls_to("openrouter.ai")] == [
            "openai/gpt-4o-mini", "deepseek/deepseek-chat",
        ]

    def test_no_fallback_for_bad_key(self, analyzer, http):
        http.add("POST", "openrouter.ai", vendor_error(401, "No auth credentials found"))
        with pytest.raises(Unauthorized):
            analyzer.analyze(SAMPLE_TRANSCRIPT)
        assert len(http.calls_to("openrouter.ai")) == 1

    def test_missing_message_content(self, analyzer, http):
        http.add("POST", "openrouter.ai", FakeResponse(200, {"choices": []}))
        with pytest.raises(AnalysisFormatError):
            analyzer.analyze(SAMPLE_TRANSCRIPT)

    def test_not_configured(self, scoring, http):
        analyzer = OpenRouterAnalyzer(api_key=None, scoring=scoring, session=http)
        assert analyzer.status() == "not_configured"
        with pytest.raises(ServiceUnavailable):
            analyzer.analyze(SAMPLE_TRANSCRIPT)
        assert http.calls == []

    def test_empty_transcript(self, analyzer):
        with pytest.raises(AnalysisFormatError):
            analyzer.analyze("   ")


class TestCost:
    def test_priced_model(self):
        cost = calculate_cost({"prompt_tokens": 1_000_000, "completion_tokens": 0}, "openai/gpt-4o-mini")
        assert cost["total_cost_usd"] == 0.15
        assert cost["total_cost_inr"] == 12.6

    def test_unknown_model_is_free(self):
        assert calculate_cost({"prompt_tokens": 500}, "some/unknown-model")["total_cost_usd"] == 0.0
