from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import BigInteger, Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from dealdesk.utils import utc_now

DEAL_STAGES = ("review", "evaluating", "passed", "term_sheet", "closed", "rejected")
CLOSED_STAGES = ("closed", "rejected", "passed")
PASS_STAGES = ("passed", "rejected")
DEAL_OUTCOMES = ("win", "miss", "regret", "noise", "pending")
CONTACT_TIERS = ("gatekeeper", "capital_allocator", "founder", "advisor", "connector")
TOUCHPOINT_TYPES = ("meeting", "call", "email", "introduction", "event", "coffee", "other")
PORTFOLIO_STATUSES = ("active", "exited", "written_off")
HEALTH_STATUSES = ("healthy", "warning", "critical")
INSIGHT_STATUSES = ("idea", "draft", "published")
JOURNAL_DECISIONS = ("pass", "invest", "monitor", "follow_up")
EVALUATION_TYPES = (
    "score", "memo", "backtest", "chat", "insight", "categorize-contacts",
    "calculate-warmth", "find-access-path", "check-resurface", "analyze-velocity",
)
ACTIVITY_TYPES = (
    "deal_created", "deal_updated", "ai_evaluation", "contact_added",
    "touchpoint_logged", "insight_published", "portfolio_added", "pattern_created",
)


class Base(DeclarativeBase):
    pass


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    organization: Mapped[str] = mapped_column(String(300), default="")
    role: Mapped[str] = mapped_column(String(200), default="")
    tier: Mapped[str] = mapped_column(String(30), default="connector")
    trust_level: Mapped[int] = mapped_column(Integer, default=3)  # 1-5
    email: Mapped[str] = mapped_column(String(300), default="")
    phone: Mapped[str] = mapped_column(String(50), default="")
    linkedin: Mapped[str] = mapped_column(String(500), default="")
    notes: Mapped[str] = mapped_column(Text, default="")
    relationship_context: Mapped[str] = mapped_column(Text, default="")
    last_touchpoint: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_key_ten: Mapped[bool] = mapped_column(Boolean, default=False)
    warmth_score: Mapped[float | None] = mapped_column(Float, nullable=True, default=5.0)
    # Ad hoc join field: contact ids, names, or {"contact_id"/"name": ...} objects
    access_paths_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    touchpoints: Mapped[list[Touchpoint]] = relationship(
        "Touchpoint", back_populates="contact", cascade="all, delete-orphan",
    )


class Touchpoint(Base):
    __tablename__ = "touchpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)  # meeting | call | email | ...
    summary: Mapped[str] = mapped_column(Text, default="")
    outcome: Mapped[str] = mapped_column(Text, default="")
    date: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    contact: Mapped[Contact] = relationship("Contact", back_populates="touchpoints")


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    sector: Mapped[str] = mapped_column(String(200), default="")
    stage: Mapped[str] = mapped_column(String(30), default="review")
    valuation_usd: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    equity_offered: Mapped[float | None] = mapped_column(Float, nullable=True)
    founder_name: Mapped[str] = mapped_column(String(300), default="")
    founder_linkedin: Mapped[str] = mapped_column(String(500), default="")
    deck_url: Mapped[str] = mapped_column(String(500), default="")
    # 1-5 dimension scores
    vision_2030_alignment: Mapped[int | None] = mapped_column(Integer, nullable=True)
    founder_execution_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    founder_sales_ability: Mapped[int | None] = mapped_column(Integer, nullable=True)
    iteration_speed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failure_modes: Mapped[str] = mapped_column(Text, default="")
    exit_potential: Mapped[str] = mapped_column(Text, default="")
    decision_reason: Mapped[str] = mapped_column(Text, default="")
    overall_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    outcome_notes: Mapped[str] = mapped_column(Text, default="")
    ai_score: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0-100
    ai_analysis: Mapped[str] = mapped_column(Text, default="")
    ai_memo: Mapped[str] = mapped_column(Text, default="")
    backtest_result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    pass_reason: Mapped[str] = mapped_column(Text, default="")
    pass_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    objections_at_pass_json: Mapped[str] = mapped_column(Text, default="[]")
    stage_history_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    evaluations: Mapped[list[AIEvaluation]] = relationship(
        "AIEvaluation", back_populates="deal", cascade="all, delete-orphan",
    )
    journal_entries: Mapped[list[DecisionJournalEntry]] = relationship(
        "DecisionJournalEntry", back_populates="deal", cascade="all, delete-orphan",
    )


class PortfolioPosition(Base):
    __tablename__ = "portfolio"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("deals.id", ondelete="SET NULL"), nullable=True,
    )
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    sector: Mapped[str] = mapped_column(String(200), default="")
    entry_valuation_usd: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    current_valuation_usd: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    equity_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    entry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active")
    exit_valuation_usd: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    exit_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    return_multiple: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_top_position: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str] = mapped_column(Text, default="")
    monthly_revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    burn_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    runway_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    health_status: Mapped[str] = mapped_column(String(20), default="healthy")
    last_metrics_update: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class Insight(Base):
    __tablename__ = "insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="idea")
    platform: Mapped[str] = mapped_column(String(50), default="")
    publish_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    engagement_likes: Mapped[int] = mapped_column(Integer, default=0)
    engagement_comments: Mapped[int] = mapped_column(Integer, default=0)
    engagement_shares: Mapped[int] = mapped_column(Integer, default=0)
    inbound_inquiries: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    entity_type: Mapped[str] = mapped_column(String(30), default="")
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class Goal(Base):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    quarter: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1-4
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    target_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_value: Mapped[int] = mapped_column(Integer, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class DealPattern(Base):
    __tablename__ = "deal_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern_name: Mapped[str] = mapped_column(String(300), nullable=False)
    positive_signals_json: Mapped[str] = mapped_column(Text, default="[]")
    negative_signals_json: Mapped[str] = mapped_column(Text, default="[]")
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class AIEvaluation(Base):
    __tablename__ = "ai_evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("deals.id", ondelete="CASCADE"), nullable=True,
    )
    evaluation_type: Mapped[str] = mapped_column(String(30), nullable=False)
    input_json: Mapped[str] = mapped_column(Text, default="{}")
    output_json: Mapped[str] = mapped_column(Text, default="{}")
    model_used: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    deal: Mapped[Deal | None] = relationship("Deal", back_populates="evaluations")


class WeeklyReview(Base):
    __tablename__ = "weekly_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    failure_condition_met: Mapped[bool] = mapped_column(Boolean, default=False)
    goal_progress_notes: Mapped[str] = mapped_column(Text, default="")
    reflections: Mapped[str] = mapped_column(Text, default="")
    wins: Mapped[str] = mapped_column(Text, default="")
    losses: Mapped[str] = mapped_column(Text, default="")
    next_week_priorities: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class DecisionJournalEntry(Base):
    __tablename__ = "decision_journal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("deals.id", ondelete="CASCADE"), nullable=True,
    )
    decision: Mapped[str] = mapped_column(String(20), nullable=False)  # pass | invest | monitor | follow_up
    reasoning: Mapped[str] = mapped_column(Text, default="")
    confidence_level: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1-10
    market_conditions: Mapped[str] = mapped_column(Text, default="")
    follow_up_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    follow_up_outcome: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    deal: Mapped[Deal | None] = relationship("Deal", back_populates="journal_entries")
