"""
AI Service: Reasoning providers that turn one campaign's data into a verdict.

Each backend (OpenAI GPT, Anthropic Claude, Perplexity, and a deterministic
rules baseline) implements ReasoningProvider.evaluate(). Provider output is
normalized here, at the boundary, so the generator only ever sees a
well-formed Verdict.
"""

import asyncio
import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

import httpx
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import ProviderUnavailable
from app.models import Campaign, CampaignStatus, RecommendationPriority, RecommendationType
from app.services.settings_service import (
    PROVIDERS, api_key_sources, effective_api_keys, get_app_settings, get_effective_api_keys,
)
from app.utils import CENTS, to_decimal, utcnow

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a senior Google Ads strategist reviewing one campaign at a time.
You decide whether the campaign needs a concrete change now, should simply be monitored,
or cannot be judged until the advertiser clarifies its goals.

Rules:
- If no target CPA, target ROAS or goal description is set, answer "clarification".
- If CPA is more than 20% above target, or ROAS more than 20% below target, with
  meaningful spend, answer "actionable" and give the exact new values.
- If the campaign is meeting its targets, answer "monitor" unless a specific,
  measurable optimization is clearly justified.
- Only propose changes to daily_budget, target_cpa, target_roas or status (active/paused).
- Take the recent change history into account; do not undo a change that was just made.

Respond ONLY with valid JSON in this format:
{
  "recommendation_type": "actionable|monitor|clarification",
  "priority": "high|medium|low",
  "title": "Short specific action, e.g. 'Reduce daily budget 15% to bring CPA to target'",
  "description": "What to do, with exact numbers",
  "reasoning": "Data-driven reasoning referencing the metrics",
  "confidence": 0-100,
  "potential_savings": "Estimated monthly savings as a number",
  "action_data": {
    "action_type": "budget_change|bid_strategy_change|status_change",
    "changes": {"daily_budget": 0, "target_cpa": 0, "target_roas": 0, "status": "active|paused"},
    "details": "Anything else the operator should know"
  }
}
Omit action_data unless recommendation_type is "actionable". In "changes", include only the fields you want to change."""

CHAT_SYSTEM_PROMPT = """You are a senior Google Ads strategist answering an advertiser's question.
Ground every statement in the campaign or portfolio data you are given, quote the
relevant numbers, and say so when the data cannot answer the question.
Keep the answer short: at most three concrete suggestions."""


# ── Request / Verdict ────────────────────────────────────────────────

@dataclass
class ReasoningRequest:
    """Everything a provider sees about one campaign."""
    campaign_id: str
    name: str
    type: str
    status: str
    daily_budget: Decimal
    target_cpa: Optional[Decimal]
    target_roas: Optional[Decimal]
    goal_description: Optional[str]
    metrics: dict
    last_modified: Optional[datetime]
    burn_in_until: Optional[datetime]
    recent_history: list[dict] = field(default_factory=list)

    @classmethod
    def from_campaign(cls, campaign: Campaign, history: Optional[list[dict]] = None) -> "ReasoningRequest":
        return cls(
            campaign_id=str(campaign.id),
            name=campaign.name,
            type=campaign.type,
            status=campaign.status,
            daily_budget=to_decimal(campaign.daily_budget),
            target_cpa=campaign.target_cpa,
            target_roas=campaign.target_roas,
            goal_description=campaign.goal_description,
            metrics={
                "spend_7d": to_decimal(campaign.spend_7d),
                "conversions_7d": campaign.conversions_7d or 0,
                "conversion_value_7d": to_decimal(campaign.conversion_value_7d),
                "impressions_7d": campaign.impressions_7d or 0,
                "clicks_7d": campaign.clicks_7d or 0,
                "ctr_7d": to_decimal(campaign.ctr_7d),
                "avg_cpc_7d": to_decimal(campaign.avg_cpc_7d),
                "conversion_rate_7d": to_decimal(campaign.conversion_rate_7d),
                "actual_cpa": campaign.actual_cpa,
                "actual_roas": campaign.actual_roas,
            },
            last_modified=campaign.last_modified,
            burn_in_until=campaign.burn_in_until,
            recent_history=list(history or []),
        )

    def to_prompt(self) -> str:
        m = self.metrics
        parts = [
            "## Campaign",
            f"- Name: {self.name}",
            f"- Type: {self.type}",
            f"- Status: {self.status}",
            f"- Daily budget: {self.daily_budget}",
            f"- Target CPA: {self.target_cpa if self.target_cpa is not None else 'Not set'}",
            f"- Target ROAS: {self.target_roas if self.target_roas is not None else 'Not set'}",
            f"- Goal description: {self.goal_description or 'Not set'}",
            f"- Last modified: {self.last_modified.isoformat() if self.last_modified else 'Unknown'}",
            "",
            "## Last 7 days",
            f"- Spend: {m['spend_7d']}",
            f"- Conversions: {m['conversions_7d']}",
            f"- Conversion value: {m['conversion_value_7d']}",
            f"- Impressions: {m['impressions_7d']}",
            f"- Clicks: {m['clicks_7d']}",
            f"- CTR: {m['ctr_7d']}",
            f"- Avg CPC: {m['avg_cpc_7d']}",
            f"- Conversion rate: {m['conversion_rate_7d']}",
            f"- Actual CPA: {m['actual_cpa'] if m['actual_cpa'] is not None else 'No data'}",
            f"- Actual ROAS: {m['actual_roas'] if m['actual_roas'] is not None else 'No data'}",
        ]
        if self.recent_history:
            parts.append(f"\n## Recent changes ({len(self.recent_history)} entries, newest first)")
            for h in self.recent_history:
                parts.append(f"  - [{h.get('created_at', '?')}] {h.get('action', '?')}: {h.get('details', '')}")
        return "\n".join(parts)


@dataclass
class Verdict:
    type: str
    priority: str
    title: str
    description: str
    reasoning: str
    confidence: int
    ai_model: str
    potential_savings: Optional[Decimal] = None
    action_data: Optional[dict] = None
    consensus: Optional[dict] = None


class ProviderResponseError(ValueError):
    """The provider answered, but not with a usable verdict."""


# ── Normalization ────────────────────────────────────────────────────

_TYPE_SYNONYMS = {
    RecommendationType.ACTIONABLE.value: (
        "actionable", "action", "act", "change", "optimize", "optimise", "adjust", "implement",
    ),
    RecommendationType.MONITOR.value: (
        "monitor", "monitoring", "watch", "observe", "hold", "maintain", "no_change", "none",
    ),
    RecommendationType.CLARIFICATION.value: (
        "clarification", "clarify", "question", "needs_goals", "needs_info", "more_info",
    ),
}
_TYPE_LOOKUP = {syn: t for t, syns in _TYPE_SYNONYMS.items() for syn in syns}

_NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?|-?\.\d+")

DEFAULT_CONFIDENCE = 70
HIGH_SAVINGS = Decimal("1000")


def normalize_type(value: Any) -> str:
    key = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
    if key in _TYPE_LOOKUP:
        return _TYPE_LOOKUP[key]
    logger.warning(f"Unknown recommendation category {value!r}; treating as monitor")
    return RecommendationType.MONITOR.value


def _to_number(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None
    match = _NUMBER_RE.search(str(value))
    if not match:
        return None
    try:
        return Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return None


def parse_confidence(value: Any, default: int = DEFAULT_CONFIDENCE) -> int:
    """
    Accepts 85, "85", "85%", or a fraction such as 0.85. Result is an int
    clamped to [0, 100].
    """
    number = _to_number(value)
    if number is None:
        return default
    is_percent_string = isinstance(value, str) and "%" in value
    if not is_percent_string and not isinstance(value, int) and 0 < number <= 1:
        number = number * 100
    number = max(Decimal("0"), min(Decimal("100"), number))
    return int(number.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_savings(value: Any) -> Optional[Decimal]:
    """'₹12,500/month' -> Decimal('12500.00'). Negative or missing -> None."""
    number = _to_number(value)
    if number is None or number < 0:
        return None
    return number.quantize(CENTS, rounding=ROUND_HALF_UP)


def derive_priority(confidence: int, potential_savings: Optional[Decimal]) -> str:
    savings = potential_savings or Decimal("0")
    if confidence >= 80 and savings >= HIGH_SAVINGS:
        return RecommendationPriority.HIGH.value
    if confidence >= 60 or savings >= HIGH_SAVINGS:
        return RecommendationPriority.MEDIUM.value
    return RecommendationPriority.LOW.value


_CHANGE_ALIASES = {
    "daily_budget": ("daily_budget", "new_daily_budget", "budget", "dailyBudget"),
    "target_cpa": ("target_cpa", "new_target_cpa", "targetCpa"),
    "target_roas": ("target_roas", "new_target_roas", "targetRoas"),
    "status": ("status", "new_status", "campaign_status"),
}
_ALL_ALIASES = {a for aliases in _CHANGE_ALIASES.values() for a in aliases}


def normalize_action_data(raw: Any) -> Optional[dict]:
    """
    Reduce provider action_data to {"action_type", "changes", "details"}.
    Returns None when no applicable change survives.
    """
    if not isinstance(raw, dict):
        return None
    source = raw.get("changes") if isinstance(raw.get("changes"), dict) else raw

    changes: dict = {}
    for field_name, aliases in _CHANGE_ALIASES.items():
        value = next((source[a] for a in aliases if a in source and source[a] is not None), None)
        if value is None:
            continue
        if field_name == "status":
            status = str(value).strip().lower()
            if status in (CampaignStatus.ACTIVE.value, CampaignStatus.PAUSED.value):
                changes["status"] = status
            elif status in ("enabled", "enable", "resume"):
                changes["status"] = CampaignStatus.ACTIVE.value
            elif status in ("pause",):
                changes["status"] = CampaignStatus.PAUSED.value
            continue
        number = _to_number(value)
        if number is not None and number > 0:
            changes[field_name] = str(number.quantize(CENTS, rounding=ROUND_HALF_UP))

    if not changes:
        return None

    action_type = raw.get("action_type")
    if not action_type:
        if "status" in changes:
            action_type = "status_change"
        elif "daily_budget" in changes:
            action_type = "budget_change"
        else:
            action_type = "bid_strategy_change"

    details = raw.get("details")
    if details is None:
        extra = {k: v for k, v in raw.items() if k not in ("changes", "action_type") and k not in _ALL_ALIASES}
        details = extra or None
    return {"action_type": str(action_type), "changes": changes, "details": details}


def normalize_verdict(raw: Any, ai_model: str) -> Verdict:
    """Map a provider's JSON object onto the Recommendation schema."""
    if not isinstance(raw, dict):
        raise ProviderResponseError(f"Expected a JSON object from {ai_model}, got {type(raw).__name__}")

    rec_type = normalize_type(raw.get("recommendation_type") or raw.get("type") or raw.get("category"))
    confidence = parse_confidence(raw.get("confidence"))
    savings = parse_savings(raw.get("potential_savings"))
    action_data = None

    if rec_type == RecommendationType.ACTIONABLE.value:
        action_data = normalize_action_data(raw.get("action_data"))
        if action_data is None:
            logger.warning(f"{ai_model}: actionable verdict without usable action_data; downgrading to monitor")
            rec_type = RecommendationType.MONITOR.value

    priority = str(raw.get("priority") or "").strip().lower()
    if priority not in {p.value for p in RecommendationPriority}:
        priority = derive_priority(confidence, savings)

    return Verdict(
        type=rec_type,
        priority=priority,
        title=str(raw.get("title") or "Monitor Campaign Performance")[:512],
        description=str(raw.get("description") or "Continue monitoring campaign performance."),
        reasoning=str(raw.get("reasoning") or "No reasoning supplied by the model."),
        confidence=confidence,
        ai_model=ai_model,
        potential_savings=savings,
        action_data=action_data,
    )


def extract_json(content: str) -> Any:
    """Parse a JSON object from model text, tolerating ```json fences or surrounding prose."""
    text = (content or "").strip()
    fenced = re.search(r"```(?:json)?\s*(\{.*\})\s*```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                pass
    raise ProviderResponseError(f"Model response was not valid JSON: {text[:200]!r}")


# ── Providers ────────────────────────────────────────────────────────

class ReasoningProvider:
    """
    Capability interface: evaluate(request) -> Verdict, plus answer() for
    free-form questions. LLM-backed providers only implement _complete().
    """

    provider = ""

    def __init__(self, model: str):
        self.model = model

    @property
    def model_id(self) -> str:
        return f"{self.provider}:{self.model}"

    async def evaluate(self, request: ReasoningRequest) -> Verdict:
        raw = await self._evaluate_raw(request)
        return normalize_verdict(raw, self.model_id)

    async def _evaluate_raw(self, request: ReasoningRequest) -> Any:
        return extract_json(await self._complete(SYSTEM_PROMPT, request.to_prompt(), json_mode=True))

    async def answer(
        self,
        question: str,
        request: Optional[ReasoningRequest] = None,
        context: Optional[str] = None,
    ) -> str:
        """
        Plain-text answer to an operator's question. The campaign request,
        when given, takes precedence over the free-text portfolio context.
        """
        if request is not None:
            context = request.to_prompt()
        prompt = f"{context}\n\n## Question\n{question}" if context else question
        return (await self._complete(CHAT_SYSTEM_PROMPT, prompt)).strip()

    async def _complete(self, system: str, prompt: str, json_mode: bool = False) -> str:
        raise NotImplementedError


class OpenAIProvider(ReasoningProvider):
    provider = "openai"

    def __init__(self, model: str, api_key: str):
        super().__init__(model)
        self._client = AsyncOpenAI(api_key=api_key)

    async def _complete(self, system: str, prompt: str, json_mode: bool = False) -> str:
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": prompt}],
            temperature=0.2 if json_mode else 0.7,
            max_tokens=2000,
            **kwargs,
        )
        return response.choices[0].message.content or ""


class AnthropicProvider(ReasoningProvider):
    provider = "anthropic"

    def __init__(self, model: str, api_key: str):
        super().__init__(model)
        self._client = AsyncAnthropic(api_key=api_key)

    async def _complete(self, system: str, prompt: str, json_mode: bool = False) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=2000,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(block.text for block in response.content if block.type == "text")


class PerplexityProvider(ReasoningProvider):
    """Perplexity's OpenAI-compatible chat completions endpoint over plain HTTP."""

    provider = "perplexity"
    BASE_URL = "https://api.perplexity.ai/chat/completions"

    def __init__(self, model: str, api_key: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(model)
        self._api_key = api_key
        self._transport = transport

    async def _complete(self, system: str, prompt: str, json_mode: bool = False) -> str:
        async with httpx.AsyncClient(transport=self._transport, timeout=60.0) as client:
            resp = await client.post(
                self.BASE_URL,
                headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                json={
                    "model": self.model,
                    "messages": [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
                    "temperature": 0.2,
                },
            )
            resp.raise_for_status()
            data = resp.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderResponseError(f"Unexpected Perplexity response shape: {exc}") from exc


class HeuristicProvider(ReasoningProvider):
    """
    Deterministic rules baseline ("rules:baseline"). Needs no API key; used
    when no model is configured for a deployment or for local development.
    """

    provider = "rules"

    CPA_TOLERANCE = Decimal("1.2")
    ROAS_TOLERANCE = Decimal("0.8")
    MIN_SPEND = Decimal("500")
    BUDGET_CUT = Decimal("0.85")

    def __init__(self, model: str = "baseline", now: Optional[datetime] = None):
        super().__init__(model)
        self._now = now

    async def _evaluate_raw(self, request: ReasoningRequest) -> Any:
        now = self._now or utcnow()
        m = request.metrics
        days_since_modified = (now - request.last_modified).days if request.last_modified else 30

        if days_since_modified < 7:
            return {
                "recommendation_type": "monitor",
                "priority": "medium",
                "title": "Monitor Recently Modified Campaign",
                "description": f"Campaign was modified {days_since_modified} days ago. Continue monitoring for stable performance.",
                "reasoning": "Recent modifications need time to settle before further optimization.",
                "confidence": 80,
            }

        if request.target_cpa is None and request.target_roas is None and not request.goal_description:
            return {
                "recommendation_type": "clarification",
                "priority": "high",
                "title": "Set Campaign Goals",
                "description": "Campaign lacks clear performance targets for AI optimization.",
                "reasoning": "A target CPA, target ROAS or goal description is required to judge performance.",
                "confidence": 95,
            }

        spend = to_decimal(m["spend_7d"])
        actual_cpa, actual_roas = m.get("actual_cpa"), m.get("actual_roas")
        cpa_over = (
            request.target_cpa is not None and actual_cpa is not None
            and to_decimal(actual_cpa) > to_decimal(request.target_cpa) * self.CPA_TOLERANCE
        )
        roas_under = (
            request.target_roas is not None and actual_roas is not None
            and to_decimal(actual_roas) < to_decimal(request.target_roas) * self.ROAS_TOLERANCE
        )
        if spend > self.MIN_SPEND and (cpa_over or roas_under) and request.daily_budget > 0:
            new_budget = (request.daily_budget * self.BUDGET_CUT).quantize(CENTS, rounding=ROUND_HALF_UP)
            monthly_savings = (request.daily_budget - new_budget) * 30
            reason = "CPA is more than 20% above target" if cpa_over else "ROAS is more than 20% below target"
            return {
                "recommendation_type": "actionable",
                "title": "Reduce Daily Budget 15%",
                "description": f"Lower the daily budget from {request.daily_budget} to {new_budget} until efficiency recovers.",
                "reasoning": f"{reason} on {spend} of spend over the last 7 days.",
                "confidence": 75,
                "potential_savings": str(monthly_savings),
                "action_data": {"action_type": "budget_change", "changes": {"daily_budget": str(new_budget)}},
            }

        return {
            "recommendation_type": "monitor",
            "priority": "low",
            "title": "Continue Monitoring",
            "description": "Campaign performance appears stable. Continue current strategy.",
            "reasoning": "No significant issues detected in current performance metrics.",
            "confidence": 60,
        }

    async def answer(
        self,
        question: str,
        request: Optional[ReasoningRequest] = None,
        context: Optional[str] = None,
    ) -> str:
        if request is None:
            return "The rules baseline only reviews individual campaigns. Pick a campaign to get its assessment."
        verdict = await self.evaluate(request)
        return f"{verdict.title}. {verdict.description} {verdict.reasoning} (confidence {verdict.confidence}%)"


# ── Consensus ────────────────────────────────────────────────────────

# Tie-break between equally voted categories: the least invasive wins
_CONSERVATIVE_ORDER = (
    RecommendationType.MONITOR.value,
    RecommendationType.CLARIFICATION.value,
    RecommendationType.ACTIONABLE.value,
)
MIN_CONSENSUS_MODELS = 2


def build_consensus(verdicts: list[Verdict], ai_model: str) -> tuple[Verdict, dict]:
    """
    Merge verdicts from several providers into one.

    The category is the majority vote; the lead verdict (highest confidence
    within that category) supplies title, description and action_data.
    Confidence is the mean over all verdicts scaled by the agreement level.
    Returns (merged verdict, summary for the caller).
    """
    if len(verdicts) < MIN_CONSENSUS_MODELS:
        raise ProviderResponseError(
            f"Consensus needs at least {MIN_CONSENSUS_MODELS} verdicts, got {len(verdicts)}"
        )

    votes = Counter(v.type for v in verdicts)
    top = max(votes.values())
    category = next(t for t in _CONSERVATIVE_ORDER if votes.get(t) == top)
    agreeing = [v for v in verdicts if v.type == category]
    lead = max(agreeing, key=lambda v: v.confidence)

    agreement_level = round(100 * len(agreeing) / len(verdicts))
    average_confidence = sum(v.confidence for v in verdicts) / len(verdicts)
    confidence = round(average_confidence * agreement_level / 100)
    savings = [v.potential_savings for v in agreeing if v.potential_savings is not None]
    models = [v.ai_model for v in verdicts]

    summary = {
        "category": category,
        "agreement_level": agreement_level,
        "average_confidence": round(average_confidence),
        "confidence": confidence,
        "models": models,
        "votes": dict(votes),
        "individual": [
            {"ai_model": v.ai_model, "type": v.type, "confidence": v.confidence, "title": v.title}
            for v in verdicts
        ],
    }
    merged = Verdict(
        type=category,
        priority=derive_priority(confidence, max(savings) if savings else None),
        title=lead.title,
        description=lead.description,
        reasoning=(
            f"Consensus of {len(verdicts)} models ({agreement_level}% agreement on {category}). "
            f"{lead.reasoning}"
        ),
        confidence=confidence,
        ai_model=ai_model,
        potential_savings=max(savings) if savings else None,
        action_data=lead.action_data,
        consensus=summary,
    )
    return merged, summary


class ConsensusProvider(ReasoningProvider):
    """
    Asks every member provider concurrently and merges their verdicts.
    Members that fail or time out are left out; fewer than two usable
    verdicts is a failure for that campaign.
    """

    provider = "consensus"

    def __init__(self, members: list[ReasoningProvider], member_timeout: Optional[float] = None):
        super().__init__("+".join(m.model_id for m in members))
        self.members = members
        self.member_timeout = member_timeout or get_settings().ai_request_timeout_seconds
        self.summaries: dict[str, dict] = {}

    @property
    def model_id(self) -> str:
        return f"{self.provider}:{self.model}"[:128]

    async def _ask(self, member: ReasoningProvider, call) -> tuple[ReasoningProvider, Any, Optional[str]]:
        try:
            return member, await asyncio.wait_for(call, timeout=self.member_timeout), None
        except asyncio.TimeoutError:
            logger.warning(f"Consensus member {member.model_id} timed out")
            return member, None, f"timed out after {self.member_timeout:g}s"
        except Exception as e:
            logger.warning(f"Consensus member {member.model_id} failed: {e}")
            return member, None, str(e) or type(e).__name__

    async def evaluate(self, request: ReasoningRequest) -> Verdict:
        results = await asyncio.gather(*(self._ask(m, m.evaluate(request)) for m in self.members))
        verdicts = [v for _, v, reason in results if reason is None]
        failed = [{"ai_model": m.model_id, "reason": reason} for m, _, reason in results if reason is not None]
        merged, summary = build_consensus(verdicts, self.model_id)
        summary["failed_models"] = failed
        self.summaries[request.campaign_id] = summary
        return merged

    async def answer(
        self,
        question: str,
        request: Optional[ReasoningRequest] = None,
        context: Optional[str] = None,
    ) -> str:
        return (await self.answer_all(question, request, context))["response"]

    async def answer_all(
        self,
        question: str,
        request: Optional[ReasoningRequest] = None,
        context: Optional[str] = None,
    ) -> dict:
        """
        Every member answers; the first member that answered then writes the
        final reply from the individual answers.
        """
        results = await asyncio.gather(*(self._ask(m, m.answer(question, request, context)) for m in self.members))
        answers = [(m, text) for m, text, reason in results if reason is None and text]
        failed = [{"ai_model": m.model_id, "reason": reason} for m, _, reason in results if reason is not None]
        if len(answers) < MIN_CONSENSUS_MODELS:
            reasons = "; ".join(f"{f['ai_model']}: {f['reason']}" for f in failed)
            raise ProviderUnavailable(
                f"Consensus needs at least {MIN_CONSENSUS_MODELS} answers, got {len(answers)}"
                + (f" ({reasons})" if reasons else "")
            )

        individual = [
            {"ai_model": m.model_id, "response": text, "confidence": estimate_text_confidence(text)}
            for m, text in answers
        ]
        synthesis_context = "\n\n".join(f"## {a['ai_model']} answer\n{a['response']}" for a in individual)
        lead = answers[0][0]
        try:
            response = await asyncio.wait_for(
                lead.answer(
                    f"Combine these answers into one reply to the question: {question}",
                    context=synthesis_context,
                ),
                timeout=self.member_timeout,
            )
        except Exception as e:
            logger.warning(f"Consensus synthesis by {lead.model_id} failed ({e}); using its own answer")
            response = answers[0][1]

        agreement_level = text_agreement([a["response"] for a in individual])
        average_confidence = sum(a["confidence"] for a in individual) / len(individual)
        return {
            "response": response,
            "confidence": round(average_confidence * agreement_level / 100),
            "agreement_level": agreement_level,
            "models": [a["ai_model"] for a in individual],
            "individual": individual,
            "failed_models": failed,
        }


_WORD_RE = re.compile(r"[a-z0-9_]+")
_CERTAIN_WORDS = ("certain", "confident", "sure", "likely", "probable")
_UNCERTAIN_WORDS = ("uncertain", "unsure", "maybe", "might", "possibly")


def estimate_text_confidence(text: str) -> int:
    """Explicit 'confidence: NN%' wins; otherwise a hedge-word count decides between 85, 75 and 60."""
    match = re.search(r"confidence[:\s]*(\d{1,3})\s*%?", text or "", re.IGNORECASE)
    if match:
        return parse_confidence(match.group(1))
    lower = (text or "").lower()
    certain = sum(1 for w in _CERTAIN_WORDS if w in lower)
    uncertain = sum(1 for w in _UNCERTAIN_WORDS if w in lower)
    if certain > uncertain:
        return 85
    if uncertain > certain:
        return 60
    return 75


def text_agreement(texts: list[str]) -> int:
    """Share of distinct words (longer than 3 letters) that appear in at least two answers, 0-100."""
    word_sets = [{w for w in _WORD_RE.findall((t or "").lower()) if len(w) > 3} for t in texts]
    counts = Counter(w for words in word_sets for w in words)
    if not counts:
        return 0
    shared = sum(1 for c in counts.values() if c >= 2)
    return round(100 * shared / len(counts))


# ── Factory ──────────────────────────────────────────────────────────

def _parse_model_id(model_id: Optional[str]) -> tuple[str, str]:
    """Parse 'provider:model' into (provider, model). A bare provider name uses its configured default model."""
    settings = get_settings()
    if model_id and ":" in model_id:
        p, m = model_id.split(":", 1)
        return (p.strip().lower(), m.strip())
    provider = (model_id or "").strip().lower()
    defaults = {
        "openai": settings.openai_model,
        "anthropic": settings.anthropic_model,
        "perplexity": settings.perplexity_model,
        "rules": "baseline",
    }
    if provider in defaults:
        return (provider, defaults[provider])
    raise ProviderUnavailable(f"Unrecognized model id: {model_id!r}")


def create_reasoning_provider(model_id: str, api_keys: Optional[dict] = None) -> ReasoningProvider:
    """Build the provider for 'provider:model'. Raises ProviderUnavailable if it cannot be used."""
    provider, model = _parse_model_id(model_id)
    keys = api_keys or {}

    if provider == "rules":
        return HeuristicProvider(model)
    if provider not in ("openai", "anthropic", "perplexity"):
        raise ProviderUnavailable(f"Unknown AI provider: {provider}")

    key = keys.get(provider)
    if not key:
        raise ProviderUnavailable(
            f"{provider.upper()}_API_KEY not configured. Add it in Settings or set {provider.upper()}_API_KEY env."
        )
    if provider == "openai":
        return OpenAIProvider(model, key)
    if provider == "anthropic":
        return AnthropicProvider(model, key)
    return PerplexityProvider(model, key)


def select_model_id(stored_default: Optional[str], api_keys: dict) -> Optional[str]:
    """DEFAULT_LLM_ID env wins, then the stored default, then the first provider with a key."""
    settings = get_settings()
    if settings.default_llm_id:
        return settings.default_llm_id
    if stored_default:
        return stored_default
    for provider in ("openai", "anthropic", "perplexity"):
        if api_keys.get(provider):
            return provider
    return None


async def resolve_reasoning_provider(db: AsyncSession, model_id: Optional[str] = None) -> ReasoningProvider:
    """Provider for a generation run, from the request, env, or app settings."""
    row = await get_app_settings(db)
    keys = effective_api_keys(row)
    chosen = model_id or select_model_id(row.default_llm_id if row else None, keys)
    if not chosen:
        raise ProviderUnavailable("No reasoning provider configured. Add an API key in Settings or set DEFAULT_LLM_ID.")
    return create_reasoning_provider(chosen, keys)


async def list_providers(db: AsyncSession) -> dict:
    """Which LLM backends can serve requests right now, and where their keys come from."""
    settings = get_settings()
    row = await get_app_settings(db)
    keys = effective_api_keys(row)
    sources = api_key_sources(row)
    default_models = {
        "openai": settings.openai_model,
        "anthropic": settings.anthropic_model,
        "perplexity": settings.perplexity_model,
    }
    providers = [
        {
            "provider": name,
            "default_model": default_models[name],
            "configured": bool(keys.get(name)),
            "key_source": sources[name],
        }
        for name in PROVIDERS
    ]
    available = [p["provider"] for p in providers if p["configured"]]
    return {
        "providers": providers,
        "available": available,
        "is_ready": bool(available),
        "consensus_ready": len(available) >= MIN_CONSENSUS_MODELS,
        "default_llm_id": select_model_id(row.default_llm_id if row else None, keys),
    }


async def resolve_consensus_provider(db: AsyncSession, model_ids: Optional[list[str]] = None) -> ConsensusProvider:
    """
    Consensus over the given model ids, or over every provider that has an
    API key (each with its default model).
    """
    keys = await get_effective_api_keys(db)
    chosen = list(dict.fromkeys(model_ids or [name for name in PROVIDERS if keys.get(name)]))
    if len(chosen) < MIN_CONSENSUS_MODELS:
        raise ProviderUnavailable(
            f"At least {MIN_CONSENSUS_MODELS} AI providers are required for consensus; "
            f"configured: {', '.join(chosen) or 'none'}"
        )
    return ConsensusProvider([create_reasoning_provider(m, keys) for m in chosen])
