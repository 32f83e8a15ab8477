"""Pydantic request/response schemas for the DealDesk API."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from dealdesk.models import (
    CONTACT_TIERS,
    DEAL_OUTCOMES,
    DEAL_STAGES,
    HEALTH_STATUSES,
    PORTFOLIO_STATUSES,
    TOUCHPOINT_TYPES,
)


def _one_of(value: str | None, valid: tuple[str, ...], label: str) -> str | None:
    if value is not None and value not in valid:
        raise ValueError(f"{label} must be one of: {', '.join(valid)}")
    return value


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


class _DealFields(BaseModel):
    sector: str | None = None
    valuation_usd: int | None = Field(None, ge=0)
    equity_offered: float | None = Field(None, ge=0, le=100)
    founder_name: str | None = None
    founder_linkedin: str | None = None
    deck_url: str | None = None
    vision_2030_alignment: int | None = Field(None, ge=1, le=5)
    founder_execution_score: int | None = Field(None, ge=1, le=5)
    founder_sales_ability: int | None = Field(None, ge=1, le=5)
    iteration_speed: int | None = Field(None, ge=1, le=5)
    failure_modes: str | None = None
    exit_potential: str | None = None
    decision_reason: str | None = None
    overall_score: int | None = Field(None, ge=0, le=100)
    notes: str | None = None
    outcome: str | None = None
    outcome_notes: str | None = None
    pass_reason: str | None = None

    @field_validator("outcome")
    @classmethod
    def outcome_valid(cls, v: str | None) -> str | None:
        return _one_of(v, DEAL_OUTCOMES, "outcome")


class DealCreate(_DealFields):
    company_name: str
    stage: str = "review"

    @field_validator("stage")
    @classmethod
    def stage_valid(cls, v: str) -> str:
        return _one_of(v, DEAL_STAGES, "stage")


class DealUpdate(_DealFields):
    company_name: str | None = None
    stage: str | None = None
    objections_at_pass: list[str] | None = None

    @field_validator("stage")
    @classmethod
    def stage_valid(cls, v: str | None) -> str | None:
        return _one_of(v, DEAL_STAGES, "stage")


class DealOut(BaseModel):
    id: int
    company_name: str
    sector: str
    stage: str
    valuation_usd: int | None = None
    equity_offered: float | None = None
    founder_name: str
    overall_score: int | None = None
    ai_score: int | None = None
    outcome: str | None = None
    pass_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class StageHistoryEntry(BaseModel):
    stage: str
    entered_at: str
    previous_stage: str | None = None


class DealDetail(DealOut):
    founder_linkedin: str = ""
    deck_url: str = ""
    vision_2030_alignment: int | None = None
    founder_execution_score: int | None = None
    founder_sales_ability: int | None = None
    iteration_speed: int | None = None
    failure_modes: str = ""
    exit_potential: str = ""
    decision_reason: str = ""
    notes: str = ""
    outcome_notes: str = ""
    pass_reason: str = ""
    ai_analysis: str = ""
    ai_memo: str = ""
    backtest_result: dict[str, Any] | None = None
    objections_at_pass: list[str] = []
    stage_history: list[StageHistoryEntry] = []


class AnalysisNotesUpdate(BaseModel):
    content: str


class IntakeSubmission(BaseModel):
    full_name: str
    email: str = ""
    phone: str = ""
    role: str = ""
    founder_linkedin: str = ""
    company_name: str
    primary_industry: str = ""
    company_stage: str = ""
    pitch_deck_url: str = ""
    one_sentence: str = ""
    company_description: str = ""
    key_insight: str = ""
    target_customer: str = ""
    traction_highlights: str = ""
    founding_structure: str = ""
    team_size: str = ""
    team_roles: list[str] | str = ""
    is_raising: str = ""
    current_round: str = ""
    target_raise: str = ""
    existing_investors: str = ""
    looking_for: list[str] | str = ""
    next_goals: str = ""
    saudi_operating: str = ""
    current_revenue: str = ""
    anything_else: str = ""
    headquarters: str = ""
    year_founded: str = ""
    company_linkedin: str = ""
    cofounder_linkedin: str = ""


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


class _ContactFields(BaseModel):
    organization: str | None = None
    role: str | None = None
    tier: str | None = None
    trust_level: int | None = Field(None, ge=1, le=5)
    email: str | None = None
    phone: str | None = None
    linkedin: str | None = None
    notes: str | None = None
    relationship_context: str | None = None
    is_key_ten: bool | None = None
    warmth_score: float | None = Field(None, ge=0, le=10)
    access_paths: list[Any] | None = None

    @field_validator("tier")
    @classmethod
    def tier_valid(cls, v: str | None) -> str | None:
        return _one_of(v, CONTACT_TIERS, "tier")


class ContactCreate(_ContactFields):
    name: str


class ContactUpdate(_ContactFields):
    name: str | None = None


class TouchpointCreate(BaseModel):
    type: str
    summary: str = ""
    outcome: str = ""
    date: datetime | None = None

    @field_validator("type")
    @classmethod
    def type_valid(cls, v: str) -> str:
        return _one_of(v, TOUCHPOINT_TYPES, "type")


class AccessPathRequest(BaseModel):
    target_name: str = ""
    target_company: str = ""


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


class PositionFields(BaseModel):
    company_name: str | None = None
    sector: str | None = None
    entry_valuation_usd: int | None = Field(None, ge=0)
    current_valuation_usd: int | None = Field(None, ge=0)
    equity_percent: float | None = Field(None, ge=0, le=100)
    entry_date: date | None = None
    status: str | None = None
    exit_valuation_usd: int | None = Field(None, ge=0)
    exit_date: date | None = None
    is_top_position: bool | None = None
    notes: str | None = None
    health_status: str | None = None
    monthly_revenue: float | None = None
    burn_rate: float | None = None
    runway_months: int | None = Field(None, ge=0)

    @field_validator("status")
    @classmethod
    def status_valid(cls, v: str | None) -> str | None:
        return _one_of(v, PORTFOLIO_STATUSES, "status")

    @field_validator("health_status")
    @classmethod
    def health_valid(cls, v: str | None) -> str | None:
        return _one_of(v, HEALTH_STATUSES, "health_status")


class ScenarioRequest(BaseModel):
    investment: float | None = Field(None, ge=0)
    multipliers: dict[str, float] | None = None


# ---------------------------------------------------------------------------
# Insights, goals, reviews, journal, patterns
# ---------------------------------------------------------------------------


class InsightFields(BaseModel):
    title: str | None = None
    content: str | None = None
    status: str | None = None
    platform: str | None = None
    scheduled_date: date | None = None
    engagement_likes: int | None = Field(None, ge=0)
    engagement_comments: int | None = Field(None, ge=0)
    engagement_shares: int | None = Field(None, ge=0)
    inbound_inquiries: int | None = Field(None, ge=0)


class GoalFields(BaseModel):
    year: int | None = None
    quarter: int | None = Field(None, ge=1, le=4)
    title: str | None = None
    description: str | None = None
    target_value: int | None = None
    current_value: int | None = None
    is_completed: bool | None = None


class WeeklyReviewSave(BaseModel):
    day: date | None = None
    failure_condition_met: bool | None = None
    goal_progress_notes: str | None = None
    reflections: str | None = None
    wins: str | None = None
    losses: str | None = None
    next_week_priorities: str | None = None


class JournalCreate(BaseModel):
    deal_id: int | None = None
    decision: str
    reasoning: str = ""
    confidence_level: int | None = Field(None, ge=1, le=10)
    market_conditions: str = ""
    follow_up_date: date | None = None


class FollowUpOutcome(BaseModel):
    outcome: str


class PatternFields(BaseModel):
    pattern_name: str | None = None
    positive_signals: list[str] | None = None
    negative_signals: list[str] | None = None
    weight: float | None = None


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    message: str


class InsightDraftRequest(BaseModel):
    topic: str | None = None
    save: bool = False


class CategorizeRequest(BaseModel):
    contact_ids: list[int] | None = None
    apply: bool = True


class ResurfaceRequest(BaseModel):
    new_notes: str = ""
    new_valuation: float | None = None


class AdviceRequest(BaseModel):
    target_name: str


# ---------------------------------------------------------------------------
# Import / stats
# ---------------------------------------------------------------------------


class ImportResult(BaseModel):
    imported: int
    skipped: int
    errors: list[str] = []
    mapping: dict[str, str] = {}


class StatsOut(BaseModel):
    deals: int
    by_stage: dict[str, int]
    by_outcome: dict[str, int]
    contacts: int
    by_tier: dict[str, int]
    by_warmth: dict[str, int]
    evaluations: int
