"""
Sales-call quality analysis through the OpenRouter chat-completion gateway.

The transcript and a fixed rubric go out as one request; the JSON verdict
that comes back is parsed, repaired and scored against ScoringConfig.
"""
import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from ..circuit_breaker import CircuitBreaker
from ..config import ScoringConfig, Settings
from ..errors import AnalysisFormatError, AppError, ServiceUnavailable
from ..models import SENTIMENTS, SEVERITIES
from .stt.base import count_words
from .vendor_http import json_body, send

logger = logging.getLogger('callqc.llm')

DEFAULT_SUMMARY = "Analysis completed. See category scores for details."
DEFAULT_SCORE = 50.0
FALLBACK_STATUSES = {429, 500, 502, 503}
USD_TO_INR = 84

# USD per 1M tokens
MODEL_COSTS = {
    "deepseek/deepseek-chat": {"prompt": 0.0, "completion": 0.0},
    "mistralai/mistral-7b-instruct:free": {"prompt": 0.0, "completion": 0.0},
    "openai/gpt-4o-mini": {"prompt": 0.15, "completion": 0.60},
    "anthropic/claude-3.5-haiku": {"prompt": 1.00, "completion": 5.00},
    "openai/gpt-4o": {"prompt": 2.50, "completion": 10.00},
    "anthropic/claude-3.5-sonnet": {"prompt": 3.00, "completion": 15.00},
}

RECOMMENDED_MODELS = {
    "free": [
        {"id": "deepseek/deepseek-chat", "name": "DeepSeek V3",
         "description": "Fast, good quality, free tier; recommended for development"},
        {"id": "mistralai/mistral-7b-instruct:free", "name": "Mistral 7B", "description": "Decent quality, free"},
    ],
    "budget": [
        {"id": "openai/gpt-4o-mini", "name": "GPT-4o Mini",
         "description": "Good balance of cost and quality"},
        {"id": "anthropic/claude-3.5-haiku", "name": "Claude 3.5 Haiku",
         "description": "Fast with strong instruction following"},
    ],
    "premium": [
        {"id": "openai/gpt-4o", "name": "GPT-4o", "description": "High quality analysis"},
        {"id": "anthropic/claude-3.5-sonnet", "name": "Claude 3.5 Sonnet",
         "description": "Most detailed feedback"},
    ],
}

SYSTEM_PROMPT = """You are an expert sales call quality analyst specializing in B2B sports infrastructure sales in India.

COMPANY CONTEXT:
- The company builds and installs sports infrastructure across India
- Products include: turf grounds, basketball courts, badminton courts, tennis courts, swimming pools, sports flooring, gymnasium equipment, running tracks, cricket pitches, and multi-sport complexes
- Target customers: schools, colleges, corporate offices, residential societies, sports clubs, municipal corporations, and private sports academies
- Sales cycle is typically consultative with site visits, quotations, and project proposals

YOUR ROLE:
Analyze sales call transcripts between our sales representatives and potential customers who have enquired about sports infrastructure. Focus on:
1. How well the sales rep understood the customer's requirements
2. Technical knowledge demonstrated about sports infrastructure
3. Ability to handle budget discussions and objections
4. Professionalism and follow-up commitment

LANGUAGE CONSIDERATIONS:
- Calls may be in English, Hindi, or regional Indian languages (Malayalam, Tamil, Kannada, Telugu, etc.)
- Code-switching between languages is common and acceptable
- Focus on communication effectiveness regardless of language

Always respond with valid JSON matching the exact schema requested. Be objective and constructive in feedback."""

RUBRIC_SECTIONS = {
    "greeting_rapport": ("GREETING & RAPPORT", [
        "Professional introduction with name and company",
        "Warm and welcoming tone",
        "Acknowledging the customer's enquiry source",
        "Building initial rapport",
    ]),
    "requirement_discovery": ("REQUIREMENT DISCOVERY", [
        "Understanding the type of sports facility needed",
        "Asking about space/area availability",
        "Understanding usage patterns (school, commercial, residential)",
        "Budget range discussion",
        "Timeline expectations",
        "Decision-making process understanding",
    ]),
    "product_knowledge": ("PRODUCT KNOWLEDGE & PRESENTATION", [
        "Clear explanation of relevant products/solutions",
        "Technical specifications (materials, dimensions, standards)",
        "Customization options",
        "Installation process explanation",
        "Warranty and maintenance details",
    ]),
    "objection_handling": ("OBJECTION HANDLING", [
        "Addressing price concerns professionally",
        "Handling timeline objections",
        "Responding to quality/durability questions",
        "Competitor comparisons handled appropriately",
        "Flexibility in solutions offered",
    ]),
    "closing_next_steps": ("CLOSING & NEXT STEPS", [
        "Clear call-to-action proposed",
        "Site visit scheduled or offered",
        "Quotation/proposal commitment",
        "Follow-up timeline established",
        "Contact details confirmed",
    ]),
}

RESPONSE_SCHEMA_TAIL = """  "issues": [
    {
      "type": "<missed_requirement|poor_explanation|weak_closing|unprofessional|missed_opportunity|technical_gap>",
      "severity": "<low|medium|high|critical>",
      "detail": "<specific issue description>",
      "timestamp_hint": "<approximate location in call if identifiable>"
    }
  ],
  "recommendations": ["<actionable improvement suggestion>", "..."],
  "summary": "<2-3 sentence overall assessment of the call quality>",
  "sentiment": "<positive|neutral|negative>",
  "customer_interest_level": "<low|medium|high>",
  "follow_up_priority": "<low|medium|high|urgent>",
  "detected_requirements": {
    "facility_type": "<type of sports facility discussed or null>",
    "budget_mentioned": "<budget range if mentioned or null>",
    "timeline": "<timeline if mentioned or null>",
    "location": "<location/city if mentioned or null>"
  }
}"""


def extract_json_object(content: str) -> Optional[str]:
    """Return the first balanced {...} substring, honouring JSON strings."""
    start = content.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(content)):
            char = content[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return content[start:index + 1]
        start = content.find("{", start + 1)
    return None


def parse_verdict(content: Optional[str]) -> Dict[str, Any]:
    """Parse the model output as JSON, with one balanced-brace recovery attempt."""
    if not content or not content.strip():
        raise AnalysisFormatError("Analysis response was empty")
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        candidate = extract_json_object(content)
        if candidate is None:
            raise AnalysisFormatError("Failed to parse analysis response as JSON", {"content": content[:500]})
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise AnalysisFormatError(f"Failed to parse analysis response as JSON: {e}",
                                      {"content": content[:500]}) from e
    if not isinstance(parsed, dict):
        raise AnalysisFormatError("Analysis response is not a JSON object")
    return parsed


def _as_score(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def calculate_cost(usage: Dict[str, Any], model: str) -> Dict[str, float]:
    costs = MODEL_COSTS.get(model, {"prompt": 0.0, "completion": 0.0})
    prompt_cost = (usage.get("prompt_tokens") or 0) / 1_000_000 * costs["prompt"]
    completion_cost = (usage.get("completion_tokens") or 0) / 1_000_000 * costs["completion"]
    total = prompt_cost + completion_cost
    return {
        "prompt_cost_usd": round(prompt_cost, 6),
        "completion_cost_usd": round(completion_cost, 6),
        "total_cost_usd": round(total, 6),
        "total_cost_inr": round(total * USD_TO_INR, 4),
    }


class OpenRouterAnalyzer:
    """LLM analyzer with a fallback model for throttling and gateway errors."""

    provider = "openrouter"

    def __init__(
        self,
        api_key: Optional[str],
        scoring: ScoringConfig,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "deepseek/deepseek-chat",
        fallback_model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        referer: str = "http://localhost:3000",
        app_title: str = "Sports Infrastructure Sales QC",
        session: Optional[requests.Session] = None,
        timeout: float = 120.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_key = api_key
        self.scoring = scoring
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.fallback_model = fallback_model or model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.referer = referer
        self.app_title = app_title
        self.session = session or requests.Session()
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("llm:openrouter")
        if self.api_key:
            logger.info(f"OpenRouter analyzer initialized (model={self.model}, fallback={self.fallback_model})")
        else:
            logger.warning("OPENROUTER_API_KEY not set - analysis service unavailable")

    @classmethod
    def from_settings(cls, settings: Settings, scoring: ScoringConfig, **kwargs) -> "OpenRouterAnalyzer":
        return cls(
            api_key=settings.openrouter_api_key,
            scoring=scoring,
            base_url=settings.openrouter_base_url,
            model=settings.openrouter_model,
            fallback_model=settings.openrouter_fallback_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            referer=settings.openrouter_referer,
            app_title=settings.openrouter_app_title,
            **kwargs,
        )

    def is_available(self) -> bool:
        return bool(self.api_key)

    def status(self) -> str:
        if not self.api_key:
            return "not_configured"
        return "error" if self.breaker.state == "open" else "ok"

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------
    def build_prompt(self, transcript: str) -> str:
        lines = [
            "Analyze this sales call transcript from a sports infrastructure company "
            "and provide a detailed quality assessment.",
            "",
            "TRANSCRIPT:",
            "---",
            transcript,
            "---",
            "",
            "SCORING RUBRIC (Score each category 0-100):",
            "",
        ]
        for index, (key, (title, criteria)) in enumerate(RUBRIC_SECTIONS.items(), start=1):
            weight = self.scoring.weights.get(key, 0)
            lines.append(f"{index}. {title} ({int(round(weight * 100))}% weight)")
            lines.extend(f"   - {item}" for item in criteria)
            lines.append("")

        lines.append("RESPOND WITH THIS EXACT JSON STRUCTURE:")
        lines.append("{")
        lines.append('  "overall_score": <weighted average 0-100>,')
        lines.append('  "category_scores": {')
        categories = list(self.scoring.weights.items())
        for index, (key, weight) in enumerate(categories):
            comma = "," if index < len(categories) - 1 else ""
            lines.append(
                f'    "{key}": {{"score": <0-100>, "weight": {weight:.2f}, '
                f'"feedback": "<specific observation>"}}{comma}'
            )
        lines.append("  },")
        lines.append(RESPONSE_SCHEMA_TAIL)
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def weighted_score(self, category_scores: Dict[str, Dict[str, Any]]) -> float:
        """Weighted mean of the scored categories, rounded to one decimal."""
        total_weight = 0.0
        weighted_sum = 0.0
        for key, entry in category_scores.items():
            score = entry.get("score")
            if score is None:
                continue
            weight = self.scoring.weights.get(key, 0)
            weighted_sum += score * weight
            total_weight += weight
        if total_weight <= 0:
            return DEFAULT_SCORE
        return round(weighted_sum / total_weight, 1)

    def validate(self, verdict: Dict[str, Any]) -> Dict[str, Any]:
        """Repair a parsed verdict so it satisfies the rubric contract."""
        raw_categories = verdict.get("category_scores")
        if not isinstance(raw_categories, dict):
            raw_categories = {}

        category_scores: Dict[str, Dict[str, Any]] = {}
        for key, weight in self.scoring.weights.items():
            entry = raw_categories.get(key)
            if isinstance(entry, dict):
                score = _as_score(entry.get("score"))
                feedback = entry.get("feedback") or ""
            else:
                score = _as_score(entry)
                feedback = ""
            if score is not None:
                score = min(100.0, max(0.0, score))
            category_scores[key] = {
                "score": score,
                "weight": weight,
                "feedback": feedback if score is not None else (feedback or "Not assessed"),
            }

        overall = _as_score(verdict.get("overall_score"))
        if overall is None or not 0 <= overall <= 100:
            overall = self.weighted_score(category_scores)
        else:
            overall = round(overall, 1)

        issues: List[Dict[str, Any]] = []
        raw_issues = verdict.get("issues")
        for issue in raw_issues if isinstance(raw_issues, list) else []:
            if isinstance(issue, str):
                issue = {"type": "general", "detail": issue}
            if not isinstance(issue, dict):
                continue
            severity = str(issue.get("severity") or "medium").lower()
            issues.append({
                **issue,
                "type": issue.get("type") or "general",
                "severity": severity if severity in SEVERITIES else "medium",
                "detail": issue.get("detail") or issue.get("description") or "",
            })

        raw_recommendations = verdict.get("recommendations")
        recommendations = [
            str(item) for item in (raw_recommendations if isinstance(raw_recommendations, list) else [])
            if item is not None and str(item).strip()
        ]

        sentiment = verdict.get("sentiment")
        if sentiment not in SENTIMENTS:
            sentiment = "neutral"

        return {
            "overall_score": overall,
            "category_scores": category_scores,
            "issues": issues,
            "recommendations": recommendations,
            "summary": verdict.get("summary") or DEFAULT_SUMMARY,
            "sentiment": sentiment,
            "customer_interest_level": verdict.get("customer_interest_level"),
            "follow_up_priority": verdict.get("follow_up_priority"),
            "detected_requirements": verdict.get("detected_requirements")
            if isinstance(verdict.get("detected_requirements"), dict) else None,
        }

    # ------------------------------------------------------------------
    # Gateway calls
    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.app_title,
        }

    def _complete(self, transcript: str, model: str, temperature: float, max_tokens: int) -> Dict[str, Any]:
        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(transcript)},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        response = self.breaker.call(
            send, self.session, "POST", f"{self.base_url}/chat/completions", "OpenRouter",
            headers=self._headers(), json=body, timeout=self.timeout,
        )
        return json_body(response, "OpenRouter")

    @staticmethod
    def _should_fallback(error: AppError) -> bool:
        return getattr(error, "upstream_status", None) in FALLBACK_STATUSES

    def analyze(
        self,
        transcript: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Score a transcript against the rubric.

        Returns:
            Record with the analyses-table fields plus a `metadata` block
            (usage, cost, processing time) that is not persisted.
        """
        if not self.api_key:
            raise ServiceUnavailable("LLM analysis is not configured (OPENROUTER_API_KEY missing)")
        if not transcript or not transcript.strip():
            raise AnalysisFormatError("Transcript is empty")

        model = model or self.model
        temperature = self.temperature if temperature is None else temperature
        max_tokens = max_tokens or self.max_tokens
        logger.info(f"Starting transcript analysis: model={model} words={count_words(transcript)}")

        start = time.perf_counter()
        try:
            data = self._complete(transcript, model, temperature, max_tokens)
        except AppError as e:
            if model != self.fallback_model and self._should_fallback(e):
                logger.warning(f"Primary model {model} failed ({e.message}); trying fallback {self.fallback_model}")
                model = self.fallback_model
                data = self._complete(transcript, model, temperature, max_tokens)
            else:
                raise

        processing_ms = int((time.perf_counter() - start) * 1000)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisFormatError("Analysis response has no message content") from e

        record = self.validate(parse_verdict(content))
        usage = data.get("usage") or {}
        record.update(
            llm_model=model,
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
            processing_time_ms=processing_ms,
        )
        record["metadata"] = {
            "model": model,
            "resolved_model": data.get("model") or model,
            "provider": data.get("provider") or self.provider,
            "usage": {
                "prompt_tokens": record["prompt_tokens"],
                "completion_tokens": record["completion_tokens"],
                "total_tokens": usage.get("total_tokens") or record["prompt_tokens"] + record["completion_tokens"],
            },
            "processing_time_ms": processing_ms,
            "cost": calculate_cost(usage, model),
        }
        logger.info(
            f"Analysis completed: model={model} score={record['overall_score']} "
            f"sentiment={record['sentiment']} in {processing_ms}ms"
        )
        return record

    def list_models(self) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise ServiceUnavailable("OpenRouter is not configured")
        response = send(
            self.session, "GET", f"{self.base_url}/models", "OpenRouter",
            headers={"Authorization": f"Bearer {self.api_key}"}, timeout=30,
        )
        return [
            {
                "id": item.get("id"),
                "name": item.get("name"),
                "pricing": item.get("pricing"),
                "context_length": item.get("context_length"),
            }
            for item in json_body(response, "OpenRouter").get("data", [])
        ]

    @staticmethod
    def recommended_models() -> Dict[str, Any]:
        return RECOMMENDED_MODELS
