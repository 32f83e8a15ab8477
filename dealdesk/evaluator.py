"""AI deal evaluator: prompt assembly, LLM calls, and response validation.

Every action sends one system + user prompt pair to the configured LLM and
normalises the reply:

- ``score`` / ``backtest`` / ``calculate-warmth`` / ``find-access-path`` /
  ``check-resurface`` / ``analyze-velocity`` - JSON objects, validated and
  clamped here.
- ``categorize-contacts`` - a JSON array of tiers, one per contact.
- ``memo`` / ``chat`` / ``insight`` - free markdown text.

The model is an opaque collaborator; nothing here trusts its numbers without
clamping them to the documented ranges.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Sequence

from dealdesk.backtest import format_valuation_millions, normalize_backtest
from dealdesk.config import get_settings
from dealdesk.models import CONTACT_TIERS
from dealdesk.utils import json_parse

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


RECOMMENDATIONS = ("PASS", "EVALUATE FURTHER", "STRONG INTEREST")
RESURFACE_RECOMMENDATIONS = ("RECONSIDER", "STILL PASS", "NEED MORE INFO")
PATH_TYPES = ("direct", "one_hop", "industry", "cold")

MAX_HISTORICAL_DEALS = 10
MAX_PROMPT_CONTACTS = 50
MAX_VELOCITY_DEALS = 20

_DEFAULT_THESIS: dict[str, Any] = {
    "investor": "a Saudi-based pre-seed investor",
    "region": "Saudi Arabia",
    "principles": [
        "Invest where Saudi demand + government tailwinds + capital availability intersect",
        "True diversification is structural, not just more deals",
        "Balance risk of ruin, not ownership percentage",
        "Radical humility: assume you're wrong and list failure modes",
        "Think in probabilities, not conviction",
    ],
    "philosophy": [
        "Position Before Action: Only make moves that increase access, ownership, or leverage",
        "Ownership Over Income: Never trade time for money without equity upside",
        "Ray Dalio Principles adapted for Saudi pre-seed VC",
        "Focus on Vision 2030 aligned opportunities",
    ],
}


def load_thesis() -> dict[str, Any]:
    """Built-in investor thesis overlaid with ``config/thesis.yaml``."""
    return {**_DEFAULT_THESIS, **get_settings().load_thesis()}


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


def extract_json(text: str, expect: type = dict) -> Any:
    """Pull a JSON object (or array) out of a model reply.

    Tries fenced ````json`` blocks first, then the outermost ``{...}`` /
    ``[...]`` span.  Raises ``LLMCallError`` if nothing parses.
    """
    text = (text or "").strip()
    candidates: list[str] = []
    m = re.search(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL)
    if m:
        candidates.append(m.group(1))
    open_ch, close_ch = ("[", "]") if expect is list else ("{", "}")
    start, end = text.find(open_ch), text.rfind(close_ch)
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    candidates.append(text)
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, expect):
            return value
    raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False)


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI-style APIs."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model
        self.max_tokens = settings.llm_max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str) -> str:
        """Send system+user message to the LLM, return the raw reply text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return response.content[0].text.strip()
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON object."""
        return extract_json(await self.complete(system, user), dict)

    async def call_list(self, system: str, user: str) -> list[Any]:
        return extract_json(await self.complete(system, user), list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _g(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _or(value: Any, fallback: str = "Not specified") -> str:
    return str(value) if value not in (None, "") else fallback


def _clamp_int(value: Any, lo: int, hi: int, default: int | None = None) -> int | None:
    try:
        return max(lo, min(hi, int(round(float(value)))))
    except (TypeError, ValueError):
        return default


def _clamp_float(value: Any, lo: float, hi: float, default: float) -> float:
    try:
        return max(lo, min(hi, float(value)))
    except (TypeError, ValueError):
        return default


def _str_list(value: Any, limit: int = 10) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if not isinstance(value, list):
        return []
    return [str(v) for v in value[:limit]]


def _choice(value: Any, valid: Sequence[str], default: str) -> str:
    v = str(value or "").strip().upper()
    return v if v in valid else default


# ---------------------------------------------------------------------------
# score
# ---------------------------------------------------------------------------


def score_system_prompt(thesis: dict[str, Any] | None = None) -> str:
    t = thesis or load_thesis()
    principles = "\n".join(f"- {p}" for p in t.get("principles", []))
    return f"""\
You are an expert venture capital analyst trained on the investment philosophy of \
{t.get("investor")}. You evaluate deals based on:

1. Vision 2030 Alignment (1-5): How well does this startup align with {t.get("region")}'s economic transformation goals?
2. Founder Execution Score (1-5): Can this founder execute under constraint? Track record matters.
3. Founder Sales Ability (1-5): Can they sell the vision to customers, investors, and talent?
4. Iteration Speed (1-5): How fast do they ship and learn?
5. Exit Potential: Who buys this company in {t.get("region")}? At what multiple?

Key Principles:
{principles}

Historical patterns from past deals will inform your scoring."""


def build_score_prompt(deal: Any, historical_deals: Sequence[Any] = (),
                       patterns: Sequence[Any] = ()) -> str:
    equity = _g(deal, "equity_offered")
    lines = [
        "Evaluate this startup deal:",
        "",
        f"Company: {_g(deal, 'company_name')}",
        f"Sector: {_or(_g(deal, 'sector'))}",
        f"Valuation: {format_valuation_millions(_g(deal, 'valuation_usd'))}",
        f"Equity Offered: {_or(equity)}{'%' if equity not in (None, '') else ''}",
        f"Founder: {_or(_g(deal, 'founder_name'))}",
    ]
    if historical_deals:
        lines += ["", "Historical Deal Patterns (learn from these):"]
        for d in list(historical_deals)[:MAX_HISTORICAL_DEALS]:
            lines.append(
                f"- {_g(d, 'company_name')} ({_g(d, 'sector') or 'n/a'}): "
                f"Outcome={_g(d, 'outcome') or 'pending'}, Score={_or(_g(d, 'overall_score'), 'N/A')}"
            )
    if patterns:
        lines += ["", "User's Identified Patterns:"]
        for p in patterns:
            pos = ", ".join(_pattern_signals(p, "positive"))
            neg = ", ".join(_pattern_signals(p, "negative"))
            lines.append(f"- {_g(p, 'pattern_name')}: Positive signals: {pos}. Negative signals: {neg}")
    lines += ["", """\
Provide a JSON response with:
{
  "overall_score": 0-100,
  "vision_2030_alignment": 1-5,
  "founder_execution_score": 1-5,
  "founder_sales_ability": 1-5,
  "iteration_speed": 1-5,
  "failure_modes": ["list 3 specific ways this could fail"],
  "exit_potential": "who buys and at what multiple",
  "pattern_matches": ["patterns from historical deals this matches"],
  "recommendation": "PASS" | "EVALUATE FURTHER" | "STRONG INTEREST",
  "reasoning": "2-3 sentence summary"
}"""]
    return "\n".join(lines)


def _pattern_signals(pattern: Any, kind: str) -> list[str]:
    value = _g(pattern, f"{kind}_signals")
    if value is None:
        value = json_parse(_g(pattern, f"{kind}_signals_json"), [])
    return _str_list(value, limit=50)


def validate_score(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate and normalize an LLM score response."""
    return {
        "overall_score": _clamp_int(raw.get("overall_score"), 0, 100, 50),
        "vision_2030_alignment": _clamp_int(raw.get("vision_2030_alignment"), 1, 5),
        "founder_execution_score": _clamp_int(raw.get("founder_execution_score"), 1, 5),
        "founder_sales_ability": _clamp_int(raw.get("founder_sales_ability"), 1, 5),
        "iteration_speed": _clamp_int(raw.get("iteration_speed"), 1, 5),
        "failure_modes": _str_list(raw.get("failure_modes"), 5),
        "exit_potential": str(raw.get("exit_potential", "")),
        "pattern_matches": _str_list(raw.get("pattern_matches")),
        "recommendation": _choice(raw.get("recommendation"), RECOMMENDATIONS, "EVALUATE FURTHER"),
        "reasoning": str(raw.get("reasoning", "")),
    }


async def score_deal(client: LLMClient, deal: Any, historical_deals: Sequence[Any] = (),
                     patterns: Sequence[Any] = ()) -> dict[str, Any]:
    raw = await client.call(score_system_prompt(), build_score_prompt(deal, historical_deals, patterns))
    return validate_score(raw)


# ---------------------------------------------------------------------------
# memo
# ---------------------------------------------------------------------------

MEMO_SYSTEM_PROMPT = """\
You are a professional VC analyst writing investment memos. Your memos are concise, \
data-driven, and follow a structured format. They should be suitable for sharing with \
LPs, co-investors, or as internal documentation."""


def build_memo_prompt(deal: Any) -> str:
    notes = _g(deal, "notes")
    equity = _g(deal, "equity_offered")
    return f"""\
Generate a 1-page investment memo for:

Company: {_g(deal, 'company_name')}
Sector: {_or(_g(deal, 'sector'))}
Valuation: {format_valuation_millions(_g(deal, 'valuation_usd'))}
Equity: {_or(equity)}{'%' if equity not in (None, '') else ''}
Founder: {_or(_g(deal, 'founder_name'))}
AI Score: {_or(_g(deal, 'ai_score'), 'Not evaluated')}
Stage: {_g(deal, 'stage')}
{f'{chr(10)}Notes: {notes}' if notes else ''}

Generate a professional memo with these sections:
1. **Executive Summary** (2-3 sentences)
2. **The Opportunity** (market size, timing, Vision 2030 alignment)
3. **The Team** (founder assessment)
4. **Business Model** (how they make money)
5. **Key Risks** (top 3 concerns)
6. **Investment Thesis** (why this could be a winner)
7. **Recommendation** (pass/proceed/conviction level)

Write in markdown format."""


async def write_memo(client: LLMClient, deal: Any) -> str:
    return await client.complete(MEMO_SYSTEM_PROMPT, build_memo_prompt(deal))


# ---------------------------------------------------------------------------
# backtest
# ---------------------------------------------------------------------------

BACKTEST_SYSTEM_PROMPT = """\
You are a quantitative analyst running backtests on venture capital decisions. You \
analyze what would have happened if different investment decisions were made, based \
on market data and comparable exits."""


def build_backtest_prompt(deal: Any) -> str:
    outcome = _g(deal, "outcome")
    created = _g(deal, "created_at")
    return f"""\
Run a backtest simulation for this deal that was {'passed on' if _g(deal, 'stage') in ('passed', 'rejected') else 'invested in'}:

Company: {_g(deal, 'company_name')}
Sector: {_or(_g(deal, 'sector'))}
Entry Valuation: {format_valuation_millions(_g(deal, 'valuation_usd'), 'Unknown')}
Equity Position: {_g(deal, 'equity_offered') or 2}%
Outcome Tagged: {outcome or 'pending'}
Date: {created.isoformat() if hasattr(created, 'isoformat') else created}

Based on comparable companies in {_or(_g(deal, 'sector'), 'this sector')} in the MENA region and \
typical pre-seed trajectories, simulate:

1. If this was a "win" - what's the likely exit valuation range?
2. If this was a "miss" - why did it fail?
3. What would the ROI have been at different scenarios (1x, 5x, 10x, 50x)?
4. Probability distribution of outcomes

Return JSON:
{{
  "scenario_analysis": {{
    "bear_case": {{ "exit_valuation": number, "roi": number, "probability": number }},
    "base_case": {{ "exit_valuation": number, "roi": number, "probability": number }},
    "bull_case": {{ "exit_valuation": number, "roi": number, "probability": number }}
  }},
  "expected_value": number,
  "lessons_learned": ["key insight 1", "key insight 2"],
  "filter_update": "what to look for or avoid based on this"
}}"""


async def run_backtest(client: LLMClient, deal: Any) -> dict[str, Any]:
    raw = await client.call(BACKTEST_SYSTEM_PROMPT, build_backtest_prompt(deal))
    return normalize_backtest(raw)


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------


def outcome_summary(historical_deals: Sequence[Any]) -> dict[str, Any]:
    wins = [d for d in historical_deals if _g(d, "outcome") == "win"]
    return {
        "total": len(historical_deals),
        "wins": len(wins),
        "misses": sum(1 for d in historical_deals if _g(d, "outcome") == "miss"),
        "regrets": sum(1 for d in historical_deals if _g(d, "outcome") == "regret"),
        "avg_win_score": round(sum(_g(d, "overall_score") or 0 for d in wins) / max(1, len(wins))),
    }


def chat_system_prompt(historical_deals: Sequence[Any], thesis: dict[str, Any] | None = None) -> str:
    t = thesis or load_thesis()
    philosophy = "\n".join(f"- {p}" for p in t.get("philosophy", []))
    if historical_deals:
        s = outcome_summary(historical_deals)
        history = (
            f"The user has evaluated {s['total']} deals historically. Key patterns:\n"
            f"- Wins: {s['wins']}\n- Misses: {s['misses']}\n- Regrets: {s['regrets']}\n"
            f"- Average score of wins: {s['avg_win_score']}"
        )
    else:
        history = "No historical deals yet."
    return f"""\
You are an AI investment advisor trained on the user's deal history and investment \
philosophy. You help evaluate deals using the user's own patterns and principles.

User's Investment Philosophy:
{philosophy}

{history}

Answer as if you are the user's trusted investment advisor, using their own language \
and decision patterns."""


async def chat(client: LLMClient, message: str, historical_deals: Sequence[Any] = ()) -> str:
    return await client.complete(
        chat_system_prompt(historical_deals), message or "How should I think about this deal?",
    )


# ---------------------------------------------------------------------------
# insight
# ---------------------------------------------------------------------------


def insight_system_prompt(thesis: dict[str, Any] | None = None) -> str:
    t = thesis or load_thesis()
    return f"""\
You are a thought leadership content creator for {t.get("investor")}. You help create \
compelling insights and content that:

1. Demonstrates deep expertise in the {t.get("region")} startup ecosystem
2. Aligns with Vision 2030 themes
3. Provides actionable value to founders, other investors, and ecosystem players
4. Builds the author's reputation as a trusted, thoughtful capital allocator

Writing style:
- Concise and punchy
- Data-driven when possible
- Contrarian takes welcome
- Avoid jargon and buzzwords
- Focus on lessons learned and pattern recognition"""


INSIGHT_TOPICS = (
    "Pre-seed investing lessons in MENA",
    "Founder evaluation frameworks",
    "Saudi startup ecosystem trends",
    "Vision 2030 investment opportunities",
    "Common founder mistakes and how to avoid them",
    "Building in emerging markets vs. established ones",
)


def build_insight_prompt(topic: str | None = None) -> str:
    if topic:
        pick = f"Write about: {topic}"
    else:
        pick = "Pick a topic from:\n" + "\n".join(f"- {t}" for t in INSIGHT_TOPICS)
    return (
        "Generate a short-form insight (300-500 words) suitable for LinkedIn or a newsletter. "
        f"{pick}\n\nWrite the content ready to publish. Include a compelling hook in the first line."
    )


async def draft_insight(client: LLMClient, topic: str | None = None) -> str:
    return await client.complete(insight_system_prompt(), build_insight_prompt(topic))


# ---------------------------------------------------------------------------
# categorize-contacts
# ---------------------------------------------------------------------------

CATEGORIZE_SYSTEM_PROMPT = """\
You are an expert at categorizing professional contacts for a venture capital investor.

Categories:
- founder: Startup founders, CEOs, co-founders of companies
- capital_allocator: VCs, angel investors, fund managers, family office members, LPs
- advisor: Board members, advisors, mentors, consultants
- gatekeeper: Corporate executives, directors, managers who control access to deals or resources
- connector: Everyone else - professionals, friends, industry contacts

Analyze each contact's company and role to assign the most appropriate category."""


def build_categorize_prompt(contacts: Sequence[Any]) -> str:
    rows = "\n".join(
        f"{i}. {_g(c, 'name')} - {_g(c, 'role') or 'Unknown role'} at "
        f"{_g(c, 'organization') or _g(c, 'company') or 'Unknown company'}"
        for i, c in enumerate(contacts, start=1)
    )
    return f"""\
Categorize these {len(contacts)} contacts into the categories above.

Contacts:
{rows}

Return a JSON array of categories in the same order:
["founder", "capital_allocator", "connector", ...]

Only return the JSON array, nothing else."""


def validate_categories(raw: list[Any], expected: int) -> list[str]:
    """One valid tier per contact; unknown tiers and missing entries become ``connector``."""
    tiers = [str(t).strip().lower() for t in raw[:expected]]
    tiers = [t if t in CONTACT_TIERS else "connector" for t in tiers]
    return tiers + ["connector"] * (expected - len(tiers))


async def categorize_contacts(client: LLMClient, contacts: Sequence[Any]) -> list[str]:
    """Tier each contact; returns ``[]`` when the model reply is unusable."""
    if not contacts:
        return []
    try:
        raw = await client.call_list(CATEGORIZE_SYSTEM_PROMPT, build_categorize_prompt(contacts))
    except LLMCallError as exc:
        if exc.retryable:
            raise
        log.warning("Could not parse contact categories: %s", exc)
        return []
    return validate_categories(raw, len(contacts))


# ---------------------------------------------------------------------------
# calculate-warmth
# ---------------------------------------------------------------------------

WARMTH_SYSTEM_PROMPT = """\
You are an expert at analyzing relationship strength based on interaction data.
You calculate relationship warmth scores on a scale of 1-10 based on:
- Recency of last interaction (40% weight)
- Frequency of interactions (30% weight)
- Quality/depth of interactions (30% weight)

Higher quality interactions: meetings, calls, introductions
Medium quality: emails, messages
Lower quality: social media likes, comments"""


def build_warmth_prompt(contact: Any, touchpoint_count: int, meeting_count: int) -> str:
    last = _g(contact, "last_touchpoint")
    return f"""\
Analyze this contact's relationship warmth:

Contact: {_g(contact, 'name') or 'Unknown'}
Last Touchpoint: {last.isoformat() if hasattr(last, 'isoformat') else (last or 'Never')}
Total Touchpoints: {touchpoint_count}
Meeting Count: {meeting_count}
Tier: {_g(contact, 'tier') or 'Unknown'}

Calculate and return JSON:
{{
  "warmth_score": 1-10,
  "recency_score": 1-10,
  "frequency_score": 1-10,
  "quality_score": 1-10,
  "reasoning": "brief explanation",
  "recommendation": "action to maintain or improve relationship"
}}"""


def validate_warmth(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "warmth_score": round(_clamp_float(raw.get("warmth_score"), 1, 10, 5.0), 1),
        "recency_score": _clamp_float(raw.get("recency_score"), 1, 10, 5.0),
        "frequency_score": _clamp_float(raw.get("frequency_score"), 1, 10, 5.0),
        "quality_score": _clamp_float(raw.get("quality_score"), 1, 10, 5.0),
        "reasoning": str(raw.get("reasoning", "")),
        "recommendation": str(raw.get("recommendation", "")),
    }


async def assess_warmth(client: LLMClient, contact: Any, touchpoint_count: int,
                        meeting_count: int) -> dict[str, Any]:
    raw = await client.call(WARMTH_SYSTEM_PROMPT, build_warmth_prompt(contact, touchpoint_count, meeting_count))
    return validate_warmth(raw)


# ---------------------------------------------------------------------------
# find-access-path
# ---------------------------------------------------------------------------

ACCESS_PATH_SYSTEM_PROMPT = """\
You are an expert at mapping relationship networks to find the best path to reach a target person.
You analyze existing contacts to find direct or indirect connections to a target founder or executive.
Prioritize:
1. Direct connections (you know them directly)
2. One-hop connections (a contact knows them)
3. Industry/sector connections (contacts in same field)
4. Warm introductions over cold outreach"""


def build_access_path_prompt(target_name: str, contacts: Sequence[Any]) -> str:
    shown = list(contacts)[:MAX_PROMPT_CONTACTS]
    rows = "\n".join(
        f"- {_g(c, 'name')} ({_g(c, 'tier')}, {_g(c, 'organization') or 'Unknown org'}) - "
        f"Warmth: {_g(c, 'warmth_score') or 5}/10"
        for c in shown
    ) or "No contacts available"
    return f"""\
Find the best access path to reach: {target_name}

Your network ({len(contacts)} contacts):
{rows}

Analyze and return JSON:
{{
  "target": "{target_name}",
  "access_possible": true/false,
  "paths": [
    {{
      "type": "direct" | "one_hop" | "industry" | "cold",
      "via_contact": "contact name if applicable",
      "confidence": 1-10,
      "strategy": "how to approach"
    }}
  ],
  "best_approach": "recommended strategy",
  "contacts_to_leverage": ["list of contact names to involve"]
}}"""


def validate_access_advice(raw: dict[str, Any], target_name: str) -> dict[str, Any]:
    paths = []
    for p in raw.get("paths") or []:
        if not isinstance(p, dict):
            continue
        kind = str(p.get("type", "cold")).strip().lower()
        paths.append({
            "type": kind if kind in PATH_TYPES else "cold",
            "via_contact": str(p.get("via_contact") or ""),
            "confidence": _clamp_int(p.get("confidence"), 1, 10, 5),
            "strategy": str(p.get("strategy", "")),
        })
    return {
        "target": target_name,
        "access_possible": bool(raw.get("access_possible", bool(paths))),
        "paths": paths,
        "best_approach": str(raw.get("best_approach", "")),
        "contacts_to_leverage": _str_list(raw.get("contacts_to_leverage")),
    }


async def advise_access_path(client: LLMClient, target_name: str, contacts: Sequence[Any]) -> dict[str, Any]:
    raw = await client.call(ACCESS_PATH_SYSTEM_PROMPT, build_access_path_prompt(target_name, contacts))
    return validate_access_advice(raw, target_name)


# ---------------------------------------------------------------------------
# check-resurface
# ---------------------------------------------------------------------------

RESURFACE_SYSTEM_PROMPT = """\
You are an expert at comparing startup pitches over time to identify what has changed.
When a previously passed deal returns, you analyze:
1. What were the original objections
2. What has changed since then
3. Whether the changes address the original concerns
4. If it's worth reconsidering"""


def build_resurface_prompt(deal: Any, new_notes: str = "", new_valuation: float | None = None) -> str:
    pass_date = _g(deal, "pass_date")
    objections = json_parse(_g(deal, "objections_at_pass_json"), [])
    return f"""\
A company you previously passed on is back:

Company: {_g(deal, 'company_name') or 'Unknown'}
Original Pass Date: {pass_date.isoformat() if hasattr(pass_date, 'isoformat') else (pass_date or 'Unknown')}
Original Pass Reason: {_g(deal, 'pass_reason') or 'Not recorded'}
Original Objections: {json.dumps(objections)}
Original AI Score: {_or(_g(deal, 'ai_score'), 'N/A')}

New Information:
{new_notes or 'No new information provided'}
New Valuation: {format_valuation_millions(new_valuation, 'Unknown')}

Analyze and return JSON:
{{
  "worth_reconsidering": true/false,
  "original_concerns_addressed": ["list of concerns that have been addressed"],
  "remaining_concerns": ["list of concerns still valid"],
  "new_red_flags": ["any new concerns"],
  "key_question_to_ask": "the most important question to ask the founder",
  "recommendation": "RECONSIDER" | "STILL PASS" | "NEED MORE INFO",
  "reasoning": "2-3 sentence summary"
}}"""


def validate_resurface(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "worth_reconsidering": bool(raw.get("worth_reconsidering", False)),
        "original_concerns_addressed": _str_list(raw.get("original_concerns_addressed")),
        "remaining_concerns": _str_list(raw.get("remaining_concerns")),
        "new_red_flags": _str_list(raw.get("new_red_flags")),
        "key_question_to_ask": str(raw.get("key_question_to_ask", "")),
        "recommendation": _choice(raw.get("recommendation"), RESURFACE_RECOMMENDATIONS, "NEED MORE INFO"),
        "reasoning": str(raw.get("reasoning", "")),
    }


async def check_resurface(client: LLMClient, deal: Any, new_notes: str = "",
                          new_valuation: float | None = None) -> dict[str, Any]:
    raw = await client.call(RESURFACE_SYSTEM_PROMPT, build_resurface_prompt(deal, new_notes, new_valuation))
    return validate_resurface(raw)


# ---------------------------------------------------------------------------
# analyze-velocity
# ---------------------------------------------------------------------------

VELOCITY_SYSTEM_PROMPT = """\
You are an expert at analyzing deal pipeline velocity and identifying anomalies.
You look at how long deals spend in each stage and flag:
- Deals moving unusually fast (may need more diligence)
- Deals stuck too long (decision fatigue or lack of conviction)
- Patterns in stage transitions"""


def build_velocity_prompt(deals: Sequence[Any]) -> str:
    rows = "\n".join(
        f"- {_g(d, 'company_name')}: {_g(d, 'stage')} "
        f"(history: {_g(d, 'stage_history_json') or '[]'})"
        for d in list(deals)[:MAX_VELOCITY_DEALS]
    ) or "No deals with history"
    return f"""\
Analyze deal velocity for this pipeline:

Deals with stage history:
{rows}

Calculate and return JSON:
{{
  "average_days_per_stage": {{
    "review": number,
    "evaluating": number,
    "term_sheet": number
  }},
  "fast_movers": ["companies moving faster than average"],
  "stuck_deals": ["companies stuck longer than average"],
  "velocity_insights": ["key observations about pipeline movement"],
  "recommended_actions": ["what to do about stuck or fast-moving deals"]
}}"""


def validate_velocity(raw: dict[str, Any]) -> dict[str, Any]:
    avg_in = raw.get("average_days_per_stage")
    averages = {}
    if isinstance(avg_in, dict):
        for stage, days in avg_in.items():
            averages[str(stage)] = _clamp_float(days, 0, 10_000, 0.0)
    return {
        "average_days_per_stage": averages,
        "fast_movers": _str_list(raw.get("fast_movers"), 20),
        "stuck_deals": _str_list(raw.get("stuck_deals"), 20),
        "velocity_insights": _str_list(raw.get("velocity_insights")),
        "recommended_actions": _str_list(raw.get("recommended_actions")),
    }


async def analyze_pipeline_velocity(client: LLMClient, deals: Sequence[Any]) -> dict[str, Any]:
    raw = await client.call(VELOCITY_SYSTEM_PROMPT, build_velocity_prompt(deals))
    return validate_velocity(raw)
