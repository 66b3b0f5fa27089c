"""LLM providers for factor scoring, response parsing, and two-model comparison."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from prioritizer.errors import ConfigurationError
from prioritizer.prompts import build_system_prompt, build_user_prompt
from prioritizer.schemas import AIModelResult, AISuggestion, FeaturebasePost, FeatureRequest, ZendeskTicket
from prioritizer.settings import Settings

log = logging.getLogger(__name__)

MAX_TOKENS = 2000

# USD per token: (input, output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-20250514": (3e-6, 15e-6),
    "claude-3-5-sonnet-20241022": (3e-6, 15e-6),
    "claude-3-opus-20240229": (15e-6, 75e-6),
    "claude-3-haiku-20240307": (0.25e-6, 1.25e-6),
    "gpt-4-turbo-preview": (1e-5, 3e-5),
    "gpt-4": (3e-5, 6e-5),
    "gpt-4o": (2.5e-6, 1e-5),
    "gpt-4o-mini": (1.5e-7, 6e-7),
}
_DEFAULT_COSTS = {"anthropic": MODEL_COSTS["claude-sonnet-4-20250514"], "openai": MODEL_COSTS["gpt-4o"]}

_PROVIDER_NAMES = {"anthropic": "Anthropic", "openai": "OpenAI"}

# Free-text line aliases -> factor keys
_FACTOR_ALIASES = {
    "revenueimpact": "revenueImpact",
    "enterprisereadiness": "enterpriseReadiness",
    "requestvolume": "requestVolume",
    "competitiveparity": "competitiveParity",
    "strategicalignment": "strategicAlignment",
    "capabilitygap": "capabilityGap",
    "competitivedifferentiation": "competitiveDifferentiation",
    "effort": "effort",
    "reach": "reach",
    "impact": "impact",
    "confidence": "confidence",
    "ease": "ease",
    "value": "value",
}

_FENCED_JSON_RE = re.compile(r"```json\n?([\s\S]*?)\n?```")
_SCORE_LINE_RE = re.compile(r"([\w\s]+):\s*(\d+)(?:/10)?")


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class LLMResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(self, provider: str, model: str, api_key: str):
        self.provider = provider
        self.model = model
        self._api_key = api_key
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        elif self.provider == "openai":
            import openai
            self._client = openai.AsyncOpenAI(api_key=self._api_key)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str, temperature: float = 0.3) -> LLMResponse:
        """Send system+user message to the LLM, return raw text and token usage."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=MAX_TOKENS,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = "".join(getattr(block, "text", "") for block in response.content)
                usage = response.usage
                return LLMResponse(text, usage.input_tokens or 0, usage.output_tokens or 0)

            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                temperature=temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            usage = response.usage
            return LLMResponse(
                response.choices[0].message.content or "",
                getattr(usage, "prompt_tokens", 0) or 0,
                getattr(usage, "completion_tokens", 0) or 0,
            )
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc


def estimate_cost(provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
    rate_in, rate_out = MODEL_COSTS.get(model, _DEFAULT_COSTS[provider])
    return round(input_tokens * rate_in + output_tokens * rate_out, 4)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _suggestion_from_json(item: dict[str, Any]) -> AISuggestion | None:
    factor = item.get("factor")
    if not factor or not isinstance(factor, str):
        return None
    score = item.get("score")
    if factor in ("moscow", "moscowCategory"):
        category = item.get("category") or (score if isinstance(score, str) else None)
        factor, score = "moscow", (str(category).lower() if category else score)
    elif isinstance(score, str):
        try:
            score = float(score)
        except ValueError:
            return None
    if score is None or isinstance(score, (dict, list, bool)):
        return None

    evidence = item.get("evidence")
    if isinstance(evidence, list):
        evidence = ", ".join(str(e) for e in evidence)
    elif evidence is not None:
        evidence = str(evidence)
    confidence = item.get("confidence")
    try:
        return AISuggestion(
            factor=factor,
            score=score,
            reasoning=str(item.get("reasoning") or ""),
            confidence=confidence if confidence in ("low", "medium", "high") else "medium",
            evidence=evidence,
        )
    except ValidationError as exc:
        log.warning("Skipping malformed suggestion for %s: %s", factor, exc.errors(include_url=False))
        return None


def _parse_free_text(text: str) -> list[AISuggestion]:
    suggestions = []
    for line in text.splitlines():
        m = _SCORE_LINE_RE.search(line)
        if not m:
            continue
        key = _FACTOR_ALIASES.get(re.sub(r"\s+", "", m.group(1)).lower())
        score = int(m.group(2))
        if key and 1 <= score <= 10:
            suggestions.append(AISuggestion(factor=key, score=score, reasoning=line.strip()))
    return suggestions


def parse_scoring_response(text: str) -> tuple[list[AISuggestion], str]:
    """Extract factor suggestions and a summary from a model reply.

    Tries a fenced ```json block, then a bare JSON object, then ``name: N``
    lines. Unparseable replies give no suggestions.
    """
    payload: Any = None
    m = _FENCED_JSON_RE.search(text)
    candidate = m.group(1) if m else (text.strip() if text.strip().startswith("{") else None)
    if candidate is not None:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            log.warning("Model reply contained malformed JSON, falling back to line parsing")

    if isinstance(payload, dict):
        suggestions = [
            s for s in (_suggestion_from_json(i) for i in payload.get("suggestions") or [] if isinstance(i, dict))
            if s is not None
        ]
        return suggestions, str(payload.get("summary") or "")
    return _parse_free_text(text), text[:500]


def total_from_suggestions(suggestions: list[AISuggestion]) -> float:
    values = [float(s.score) for s in suggestions if isinstance(s.score, (int, float))]
    if not values:
        return 0.0
    return round(sum(values) / len(values), 1)


# ---------------------------------------------------------------------------
# Single provider
# ---------------------------------------------------------------------------


async def score_with_provider(
    provider: str,
    model: str,
    api_key: str | None,
    system: str,
    user: str,
    temperature: float = 0.3,
) -> AIModelResult:
    """Score with one provider. Failures come back as a tagged result, never raised."""
    name = _PROVIDER_NAMES[provider]
    if not api_key:
        return AIModelResult(
            model=provider,
            summary=f"{name} API key not configured. Add it in settings to enable {name} scoring.",
            error="API_KEY_MISSING",
        )

    try:
        response = await LLMClient(provider, model, api_key).complete(system, user, temperature)
    except LLMCallError as exc:
        message = str(exc.__cause__ or exc)
        log.warning("%s scoring failed: %s", name, message)
        return AIModelResult(
            model=provider,
            summary=f"{name} API error: {message}",
            error="API_KEY_INVALID" if "API key" in message else "API_ERROR",
        )

    suggestions, summary = parse_scoring_response(response.text)
    return AIModelResult(
        model=provider,
        suggestions=suggestions,
        total_score=total_from_suggestions(suggestions),
        summary=summary,
        tokens_used=response.total_tokens,
        cost=estimate_cost(provider, model, response.input_tokens, response.output_tokens),
    )


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def available_models(api_keys: dict[str, str | None]) -> list[str]:
    models = [m for m in ("openai", "anthropic") if api_keys.get(m)]
    if len(models) == 2:
        models.append("both")
    return models


def compare_results(openai: AIModelResult | None, anthropic: AIModelResult | None) -> dict[str, Any]:
    """Per-factor agreement between two providers.

    Factors differing by 2 or more are disagreements (largest first); the
    agreement score is the percentage of shared factors within 1 point.
    """
    a = {s.factor: float(s.score) for s in (openai.suggestions if openai else []) if isinstance(s.score, (int, float))}
    b = {s.factor: float(s.score) for s in (anthropic.suggestions if anthropic else []) if isinstance(s.score, (int, float))}
    shared = [f for f in a if f in b]
    disagreements = sorted(
        (
            {"factor": f, "openai_score": a[f], "anthropic_score": b[f], "difference": abs(a[f] - b[f])}
            for f in shared if abs(a[f] - b[f]) >= 2
        ),
        key=lambda d: d["difference"],
        reverse=True,
    )
    agreeing = sum(1 for f in shared if abs(a[f] - b[f]) <= 1)
    return {
        "agreement_score": round(agreeing / len(shared) * 100) if shared else 0,
        "disagreements": disagreements,
        "total_tokens": sum(r.tokens_used for r in (openai, anthropic) if r),
        "total_cost": round(sum(r.cost for r in (openai, anthropic) if r), 4),
    }


# ---------------------------------------------------------------------------
# Feature analysis
# ---------------------------------------------------------------------------


@dataclass
class AnalysisResult:
    openai: AIModelResult | None = None
    anthropic: AIModelResult | None = None
    model_used: str = "anthropic"
    comparison: dict[str, Any] | None = field(default=None)

    @property
    def results(self) -> list[AIModelResult]:
        return [r for r in (self.openai, self.anthropic) if r is not None]

    @property
    def succeeded(self) -> bool:
        return any(r.error is None for r in self.results)

    @property
    def errors(self) -> list[str]:
        return [r.summary for r in self.results if r.error]

    def successful(self, provider: str) -> AIModelResult | None:
        result = getattr(self, provider)
        return result if result is not None and result.error is None else None


def _model_name(settings: Settings, provider: str) -> str:
    return settings.ai_model.openai_model if provider == "openai" else settings.ai_model.anthropic_model


async def run_single_model(
    provider: str,
    settings: Settings,
    api_keys: dict[str, str | None],
    system: str,
    user: str,
) -> AnalysisResult:
    result = await score_with_provider(
        provider, _model_name(settings, provider), api_keys.get(provider), system, user,
        settings.ai_model.temperature,
    )
    if provider == "openai":
        return AnalysisResult(openai=result, model_used="openai")
    return AnalysisResult(anthropic=result, model_used="anthropic")


async def run_model_comparison(
    settings: Settings,
    api_keys: dict[str, str | None],
    system: str,
    user: str,
) -> AnalysisResult:
    """Both providers in parallel; an unconfigured provider yields ``None``."""
    async def _one(provider: str) -> AIModelResult | None:
        if not api_keys.get(provider):
            return None
        return await score_with_provider(
            provider, _model_name(settings, provider), api_keys[provider], system, user,
            settings.ai_model.temperature,
        )

    openai, anthropic = await asyncio.gather(_one("openai"), _one("anthropic"))
    return AnalysisResult(openai, anthropic, "both", compare_results(openai, anthropic))


async def analyze_feature(
    feature: FeatureRequest,
    settings: Settings,
    api_keys: dict[str, str | None],
    related_posts: list[FeaturebasePost] | None = None,
    related_tickets: list[ZendeskTicket] | None = None,
    model: str | None = None,
) -> AnalysisResult:
    """Score one feature with the chosen provider(s).

    ``model`` overrides ``settings.ai_model.enabled``. A request for a
    provider that is not configured falls back to one that is; with neither
    configured a :class:`ConfigurationError` is raised.
    """
    available = available_models(api_keys)
    if not available:
        raise ConfigurationError("No AI provider is configured. Add an OpenAI or Anthropic API key.")

    choice = model or settings.ai_model.enabled
    if choice not in available:
        choice = available[0]

    framework = settings.active_framework
    system = build_system_prompt(framework, feature.product, settings.prompt_config)
    user = build_user_prompt(feature, related_posts, related_tickets, framework)

    if choice == "both":
        return await run_model_comparison(settings, api_keys, system, user)
    return await run_single_model(choice, settings, api_keys, system, user)
