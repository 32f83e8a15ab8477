"""Tests for the shared service layer used by the API, MCP server and CLI."""
from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from dealdesk import services
from dealdesk.models import (
    Activity,
    AIEvaluation,
    Base,
    Contact,
    Deal,
    Insight,
    PortfolioPosition,
    WeeklyReview,
)

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def sample_deal(session: Session) -> Deal:
    deal = services.create_deal(session, {
        "company_name": "Lean Payroll", "sector": "Fintech", "founder_name": "Nora",
        "valuation_usd": 8_000_000, "equity_offered": 2.5,
    })
    session.commit()
    return deal


def _activity_types(session: Session) -> list[str]:
    return [a.type for a in session.execute(select(Activity).order_by(Activity.id)).scalars().all()]


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


class TestDeals:
    def test_create_requires_company(self, session):
        with pytest.raises(ValueError):
            services.create_deal(session, {"company_name": "   "})

    def test_create_rejects_unknown_stage(self, session):
        with pytest.raises(ValueError):
            services.create_deal(session, {"company_name": "X", "stage": "dreaming"})

    def test_create_logs_activity(self, session, sample_deal):
        assert sample_deal.stage == "review"
        assert _activity_types(session) == ["deal_created"]
        assert services.deal_detail(sample_deal)["stage_history"] == []

    def test_created_as_passed_gets_pass_date(self, session):
        deal = services.create_deal(session, {"company_name": "Nope", "stage": "passed"})
        assert deal.pass_date is not None

    def test_stage_change_records_history_and_pass_date(self, session, sample_deal):
        services.update_deal(session, sample_deal, {"stage": "evaluating"})
        services.update_deal(session, sample_deal, {"stage": "passed", "pass_reason": "Crowded market",
                                                    "objections_at_pass": ["CAC too high"]})
        session.commit()
        detail = services.deal_detail(sample_deal)
        assert [h["stage"] for h in detail["stage_history"]] == ["evaluating", "passed"]
        assert detail["stage_history"][1]["previous_stage"] == "evaluating"
        assert detail["pass_date"] is not None
        assert detail["objections_at_pass"] == ["CAC too high"]
        assert _activity_types(session).count("deal_updated") == 2

    def test_same_stage_does_not_add_history(self, session, sample_deal):
        assert services.set_deal_stage(sample_deal, "review") is False
        assert json.loads(sample_deal.stage_history_json) == []

    def test_update_ignores_none_and_validates_outcome(self, session, sample_deal):
        services.update_deal(session, sample_deal, {"sector": None, "outcome": "regret"})
        assert sample_deal.sector == "Fintech"
        assert sample_deal.outcome == "regret"
        with pytest.raises(ValueError):
            services.update_deal(session, sample_deal, {"outcome": "meh"})

    def test_find_past_passes(self, session):
        for name, stage in [("Tamara", "passed"), ("Tamatem", "rejected"), ("Tamkeen", "review")]:
            services.create_deal(session, {"company_name": name, "stage": stage})
        session.commit()
        names = {d["company_name"] for d in services.find_past_passes(session, "TAMA")}
        assert names == {"Tamara", "Tamatem"}
        assert services.find_past_passes(session, "t") == []

    def test_query_deals_filters_and_sorts(self, session):
        services.create_deal(session, {"company_name": "b-co", "sector": "AI", "stage": "evaluating"})
        services.create_deal(session, {"company_name": "A-co", "sector": "Fintech"})
        services.create_deal(session, {"company_name": "C-co", "sector": "AI tooling", "outcome": "win"})
        session.commit()
        by_name = services.query_deals(session, sort_by="company_name", sort_dir="asc")
        assert [d["company_name"] for d in by_name] == ["A-co", "b-co", "C-co"]
        ai = services.query_deals(session, sector="ai")
        assert {d["company_name"] for d in ai} == {"b-co", "C-co"}
        pending = services.query_deals(session, outcome="pending")
        assert {d["company_name"] for d in pending} == {"A-co", "b-co"}
        assert [d["company_name"] for d in services.query_deals(session, stage="evaluating")] == ["b-co"]

    def test_analysis_notes_keep_intake(self, session, sample_deal):
        sample_deal.notes = "## Intake Submission\nForm data"
        services.set_analysis_notes(sample_deal, "First pass")
        services.set_analysis_notes(sample_deal, "Second pass")
        assert sample_deal.notes == "## Intake Submission\nForm data\n\n## Analysis Notes\nSecond pass\n"

    def test_delete_detaches_portfolio(self, session, sample_deal):
        pos = services.create_position(session, {}, deal=sample_deal)
        session.commit()
        services.delete_deal(session, sample_deal)
        session.commit()
        session.refresh(pos)
        assert pos.deal_id is None
        assert session.get(Deal, sample_deal.id) is None


class TestIntake:
    def test_creates_founder_contact_and_deal(self, session):
        deal, contact = services.submit_intake(session, {
            "full_name": "Nora Alharbi", "company_name": "Lean Payroll", "email": "nora@lean.sa",
            "primary_industry": "Fintech", "one_sentence": "Payroll for SMEs",
            "saudi_operating": "Yes", "pitch_deck_url": "https://deck",
        })
        session.commit()
        assert contact.tier == "founder"
        assert contact.organization == "Lean Payroll"
        assert contact.relationship_context == "Founder at Lean Payroll. Payroll for SMEs"
        assert deal.stage == "review"
        assert deal.vision_2030_alignment == 5
        assert deal.deck_url == "https://deck"
        assert deal.notes.startswith("## Intake Submission")
        assert _activity_types(session) == ["deal_created"]

    def test_requires_names(self, session):
        with pytest.raises(ValueError):
            services.submit_intake(session, {"company_name": "X"})


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


class TestContacts:
    def test_create_and_access_paths(self, session):
        a = services.create_contact(session, {"name": "Amal", "tier": "capital_allocator"})
        b = services.create_contact(session, {"name": "Badr", "access_paths": [a.id]})
        session.commit()
        assert services.contact_summary(b)["access_paths"] == [a.id]
        assert services.contact_summary(a)["warmth_level"] == "warm"
        with pytest.raises(ValueError):
            services.create_contact(session, {"name": "X", "tier": "oracle"})

    def test_touchpoint_updates_warmth_and_last_touch(self, session):
        contact = services.create_contact(session, {"name": "Amal"})
        when = datetime.utcnow() - timedelta(days=2)
        services.log_touchpoint(session, contact, "meeting", "Coffee chat", when=when)
        session.commit()
        assert contact.last_touchpoint == when
        assert contact.warmth_score == 5.5
        assert "touchpoint_logged" in _activity_types(session)

    def test_older_touchpoint_keeps_latest_date(self, session):
        contact = services.create_contact(session, {"name": "Amal"})
        recent = datetime(2026, 2, 20)
        services.log_touchpoint(session, contact, "call", when=recent)
        services.log_touchpoint(session, contact, "email", when=datetime(2026, 1, 1))
        assert contact.last_touchpoint == recent

    def test_invalid_touchpoint_type(self, session):
        contact = services.create_contact(session, {"name": "Amal"})
        with pytest.raises(ValueError):
            services.log_touchpoint(session, contact, "telegram")

    def test_recompute_all_skips_untouched(self, session):
        touched = services.create_contact(session, {"name": "Amal"})
        untouched = services.create_contact(session, {"name": "Badr", "warmth_score": 8.0})
        services.log_touchpoint(session, touched, "email", when=datetime(2026, 1, 1))
        assert services.recompute_all_warmth(session, now=datetime(2026, 6, 1)) == 1
        assert touched.warmth_score == 0.4
        assert untouched.warmth_score == 8.0

    def test_access_path_for(self, session):
        services.create_contact(session, {"name": "Omar", "organization": "Tamara"})
        session.commit()
        result = services.access_path_for(session, target_company="tamara")
        assert result.found and result.kind == "direct"


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


class TestPortfolio:
    def test_position_from_deal_defaults(self, session, sample_deal):
        pos = services.create_position(session, {"current_valuation_usd": 16_000_000}, deal=sample_deal)
        session.commit()
        out = services.position_dict(pos)
        assert out["company_name"] == "Lean Payroll"
        assert out["entry_valuation_usd"] == 8_000_000
        assert out["equity_percent"] == 2.5
        assert out["paper_value"] == 400_000
        assert out["status"] == "active"
        assert "portfolio_added" in _activity_types(session)

    def test_exit_sets_date_and_multiple(self, session):
        pos = services.create_position(session, {"company_name": "Exit Co", "entry_valuation_usd": 5_000_000})
        services.update_position(pos, {"status": "exited", "exit_valuation_usd": 50_000_000})
        assert pos.exit_date is not None
        assert pos.return_multiple == 10.0

    def test_metrics_update_stamps_time(self, session):
        pos = services.create_position(session, {"company_name": "Burn Co"})
        assert pos.last_metrics_update is None
        services.update_position(pos, {"runway_months": 5})
        assert pos.runway_months == 5
        assert pos.last_metrics_update is not None

    def test_unknown_status_or_health_raises(self, session):
        with pytest.raises(ValueError):
            services.create_position(session, {"company_name": "Bad Co", "status": "bogus"})
        pos = services.create_position(session, {"company_name": "Ok Co"})
        with pytest.raises(ValueError):
            services.update_position(pos, {"health_status": "on-fire"})
        assert pos.health_status == "healthy"

    def test_scenarios_and_summary(self, session):
        pos = services.create_position(session, {
            "company_name": "Scale Co", "current_valuation_usd": 10_000_000, "equity_percent": 1.0,
            "health_status": "warning", "is_top_position": True,
        })
        session.commit()
        scenarios = services.position_scenarios(pos, investment=100_000)["scenarios"]
        assert scenarios[0]["your_share"] == 1_000_000
        summary = services.portfolio_summary(session)
        assert summary["active"] == 1
        assert summary["top_positions"] == 1
        assert summary["total_paper_value"] == 100_000
        assert summary["by_health"] == {"warning": 1}


# ---------------------------------------------------------------------------
# Insights, goals, reviews, journal, patterns
# ---------------------------------------------------------------------------


class TestContent:
    def test_publish_stamps_date_and_logs(self, session):
        ins = services.create_insight(session, {"title": "Lessons from 20 passes", "status": "draft"})
        assert ins.status == "draft"
        services.update_insight(session, ins, {"status": "published", "engagement_likes": 10})
        assert ins.status == "published"
        assert ins.publish_date is not None
        assert services.insight_dict(ins)["engagement_total"] == 10
        assert "insight_published" in _activity_types(session)

    def test_calendar_window(self, session):
        today = date(2026, 3, 1)
        for title, offset in [("soon", 3), ("later", 45), ("past", -2)]:
            services.create_insight(session, {"title": title, "scheduled_date": today + timedelta(days=offset)})
        services.create_insight(session, {"title": "done", "status": "published",
                                          "scheduled_date": today + timedelta(days=1)})
        session.commit()
        assert [i["title"] for i in services.insight_calendar(session, today=today)] == ["soon"]

    def test_goal_validation_and_progress(self, session):
        with pytest.raises(ValueError):
            services.create_goal(session, {"title": "Q5", "year": 2026, "quarter": 5})
        goal = services.create_goal(session, {"title": "Meet 40 founders", "year": 2026,
                                              "quarter": 1, "target_value": 40, "current_value": 50})
        session.commit()
        assert services.goal_dict(goal)["progress"] == 100.0
        services.toggle_goal(goal)
        assert goal.is_completed is True

    def test_week_start_is_sunday(self):
        assert services.week_start(date(2026, 3, 4)) == date(2026, 3, 1)
        assert services.week_start(date(2026, 3, 1)) == date(2026, 3, 1)
        assert services.week_start(date(2026, 3, 7)) == date(2026, 3, 1)

    def test_weekly_review_upserts(self, session):
        services.save_weekly_review(session, {"wins": "Closed one"}, day=date(2026, 3, 2))
        session.commit()
        services.save_weekly_review(session, {"losses": "Missed one"}, day=date(2026, 3, 5))
        session.commit()
        [review] = session.execute(select(WeeklyReview)).scalars().all()
        assert review.wins == "Closed one"
        assert review.losses == "Missed one"

    def test_journal_validation(self, session, sample_deal):
        with pytest.raises(LookupError):
            services.create_journal_entry(session, {"decision": "pass", "deal_id": 999})
        with pytest.raises(ValueError):
            services.create_journal_entry(session, {"decision": "pass", "confidence_level": 11})
        with pytest.raises(ValueError):
            services.create_journal_entry(session, {"decision": "shrug"})
        entry = services.create_journal_entry(session, {"decision": "monitor", "deal_id": sample_deal.id})
        session.commit()
        services.record_follow_up(entry, "Still monitoring")
        out = services.journal_dict(entry)
        assert out["company_name"] == "Lean Payroll"
        assert out["follow_up_outcome"] == "Still monitoring"

    def test_patterns(self, session):
        pattern = services.create_pattern(session, {"pattern_name": "Operator founders",
                                                    "positive_signals": ["ex-operator"]})
        services.update_pattern(pattern, {"negative_signals": ["first-time"], "weight": 2.0})
        out = services.pattern_dict(pattern)
        assert out["positive_signals"] == ["ex-operator"]
        assert out["negative_signals"] == ["first-time"]
        assert out["weight"] == 2.0
        assert "pattern_created" in _activity_types(session)
        assert services.create_pattern(session, {"pattern_name": "operator founders"}) is None


# ---------------------------------------------------------------------------
# Evaluator operations (LLM mocked)
# ---------------------------------------------------------------------------


def _client(**methods):
    client = MagicMock()
    client.model = "test-model"
    for name, value in methods.items():
        setattr(client, name, value)
    return client


class TestEvaluatorOperations:
    @pytest.mark.asyncio
    async def test_run_score_writes_back(self, session, sample_deal):
        client = _client(call=AsyncMock(return_value={
            "overall_score": 81, "founder_execution_score": 4, "failure_modes": ["a", "b"],
            "exit_potential": "Acquired by a bank", "reasoning": "Solid",
        }))
        await services.run_score(session, sample_deal, client=client)
        session.commit()
        assert sample_deal.ai_score == 81
        assert sample_deal.founder_execution_score == 4
        assert sample_deal.failure_modes == "a\nb"
        assert sample_deal.ai_analysis == "Solid"
        [ev] = session.execute(select(AIEvaluation)).scalars().all()
        assert ev.evaluation_type == "score"
        assert ev.model_used == "test-model"
        assert ev.deal_id == sample_deal.id
        assert "ai_evaluation" in _activity_types(session)

    @pytest.mark.asyncio
    async def test_run_backtest_stores_result(self, session, sample_deal):
        client = _client(call=AsyncMock(return_value={"expected_value": 5}))
        result = await services.run_backtest(session, sample_deal, client=client)
        stored = services.deal_detail(sample_deal)["backtest_result"]
        assert stored["expected_value"] == 5.0
        assert "returns" not in stored
        assert result["investment"] == 100_000
        assert [r["name"] for r in result["returns"]] == ["bear_case", "base_case", "bull_case"]

    @pytest.mark.asyncio
    async def test_run_backtest_returns_on_investment(self, session, sample_deal):
        client = _client(call=AsyncMock(return_value={
            "scenario_analysis": {"bull_case": {"exit_valuation": 1e9, "roi": 400, "probability": 10}},
        }))
        result = await services.run_backtest(session, sample_deal, client=client, investment=50_000)
        rows = {r["name"]: r for r in result["returns"]}
        assert rows["bull_case"]["return_value"] == 250_000
        assert rows["bear_case"]["return_value"] == 50_000

    def test_unknown_evaluation_and_activity_types_rejected(self, session):
        with pytest.raises(ValueError):
            services.record_evaluation(session, "horoscope", {}, {})
        with pytest.raises(ValueError):
            services.log_activity(session, "deal_archived", "Archived")
        assert session.execute(select(AIEvaluation)).scalars().all() == []
        assert session.execute(select(Activity)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_run_insight_can_save_draft(self, session):
        client = _client(complete=AsyncMock(return_value="# Hook line\nBody"))
        out = await services.run_insight(session, None, client=client, save=True)
        session.commit()
        ins = session.get(Insight, out["insight_id"])
        assert ins.status == "draft"
        assert ins.title == "Hook line"

    @pytest.mark.asyncio
    async def test_run_categorize_applies_tiers(self, session):
        a = services.create_contact(session, {"name": "Amal", "role": "GP"})
        b = services.create_contact(session, {"name": "Badr"})
        client = _client(call_list=AsyncMock(return_value=["capital_allocator", "nonsense"]))
        tiers = await services.run_categorize(session, [a, b], client=client)
        assert tiers == ["capital_allocator", "connector"]
        assert a.tier == "capital_allocator"

    @pytest.mark.asyncio
    async def test_run_access_advice_requires_target(self, session):
        with pytest.raises(ValueError):
            await services.run_access_advice(session, " ", client=_client())

    @pytest.mark.asyncio
    async def test_run_access_advice_includes_heuristic(self, session):
        services.create_contact(session, {"name": "Nora Alharbi"})
        client = _client(call=AsyncMock(return_value={"paths": [{"type": "direct", "via_contact": "Nora"}]}))
        out = await services.run_access_advice(session, "Nora", client=client)
        assert out["paths"][0]["type"] == "direct"
        assert out["heuristic"]["kind"] == "direct"


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class TestDashboard:
    def test_month_start(self):
        assert services._month_start(date(2026, 1, 15), 1) == date(2025, 12, 1)
        assert services._month_start(date(2026, 1, 15), 0) == date(2026, 1, 1)
        assert services._month_start(date(2026, 12, 15), -1) == date(2027, 1, 1)

    def test_deal_flow_metrics(self):
        now = datetime(2026, 3, 15)

        def d(created, stage="review", outcome=None, sector="", ai_score=None):
            return SimpleNamespace(created_at=created, stage=stage, outcome=outcome,
                                   sector=sector, ai_score=ai_score)

        deals = [
            d(datetime(2026, 3, 1), sector="AI", ai_score=60),
            d(datetime(2026, 3, 10), stage="closed", outcome="win", sector="AI", ai_score=80),
            d(datetime(2026, 2, 5), stage="passed", sector="Fintech"),
        ]
        m = services.deal_flow_metrics(deals, now=now)
        assert [row["month"] for row in m["monthly"]] == ["Oct", "Nov", "Dec", "Jan", "Feb", "Mar"]
        assert m["monthly"][-1] == {"month": "Mar", "total": 2, "closed": 1, "passed": 0, "evaluating": 0}
        assert m["current_month_deals"] == 2
        assert m["last_month_deals"] == 1
        assert m["mom_change"] == 100.0
        assert m["conversion_rate"] == pytest.approx(100 / 3)
        assert m["pass_rate"] == pytest.approx(100 / 3)
        assert m["avg_days_in_pipeline"] == 14
        assert m["avg_ai_score"] == 70
        assert m["outcomes"] == {"pending": 2, "win": 1}
        assert m["top_sectors"][0] == ("AI", 2)

    def test_empty_metrics(self):
        m = services.deal_flow_metrics([], now=datetime(2026, 3, 15))
        assert m["conversion_rate"] == 0.0
        assert m["mom_change"] == 0.0

    def test_stats_and_reset(self, session, sample_deal):
        services.create_contact(session, {"name": "Amal", "tier": "founder", "warmth_score": 8.0})
        session.commit()
        stats = services.compute_stats(session)
        assert stats["deals"] == 1
        assert stats["by_stage"] == {"review": 1}
        assert stats["by_tier"] == {"founder": 1}
        assert stats["by_warmth"] == {"hot": 1}
        dash = services.compute_dashboard(session)
        assert dash["active_deals"] == 1
        assert len(dash["recent_activities"]) == 2

        services.reset_all(session)
        session.commit()
        assert services.compute_stats(session)["deals"] == 0
        assert session.execute(select(PortfolioPosition)).first() is None
