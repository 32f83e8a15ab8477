"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database; the LLM client is patched out.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dealdesk.evaluator import LLMCallError
from dealdesk.models import AIEvaluation, Base, Contact, Deal, Touchpoint


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db):
    engine, TestSession = test_db
    from dealdesk.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with patch("dealdesk.app.init_db"), TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with one deal and one contact pre-seeded."""
    c, TestSession = client
    session = TestSession()
    deal = Deal(company_name="Lean Payroll", sector="Fintech", founder_name="Nora Alharbi",
                valuation_usd=8_000_000, equity_offered=2.5)
    amal = Contact(name="Amal Saleh", organization="Raed Ventures", tier="capital_allocator",
                   warmth_score=8.0)
    session.add_all([deal, amal])
    session.commit()
    ids = {"deal": deal.id, "contact": amal.id}
    session.close()
    return c, TestSession, ids


def _mock_llm(**methods):
    llm = MagicMock()
    llm.model = "test-model"
    for name, value in methods.items():
        setattr(llm, name, value)
    return llm


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


class TestDealEndpoints:
    def test_create_and_list(self, client):
        c, _ = client
        resp = c.post("/api/deals", json={"company_name": "Tamara", "sector": "Fintech"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["stage"] == "review"
        assert body["stage_history"] == []

        listing = c.get("/api/deals").json()
        assert listing["total"] == 1
        assert listing["items"][0]["company_name"] == "Tamara"

    def test_invalid_stage_is_422(self, client):
        c, _ = client
        resp = c.post("/api/deals", json={"company_name": "Tamara", "stage": "dreaming"})
        assert resp.status_code == 422

    def test_blank_name_is_400(self, client):
        c, _ = client
        resp = c.post("/api/deals", json={"company_name": "  "})
        assert resp.status_code == 400

    def test_get_missing_deal(self, client):
        c, _ = client
        resp = c.get("/api/deals/999")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Deal not found"

    def test_update_stage_records_history(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.put(f"/api/deals/{ids['deal']}", json={"stage": "evaluating"})
        assert resp.status_code == 200
        resp = c.put(f"/api/deals/{ids['deal']}", json={"stage": "passed", "pass_reason": "Too early",
                                                         "objections_at_pass": ["No revenue"]})
        body = resp.json()
        assert [h["stage"] for h in body["stage_history"]] == ["evaluating", "passed"]
        assert body["pass_date"] is not None
        assert body["objections_at_pass"] == ["No revenue"]

    def test_filters(self, seeded_client):
        c, _, _ = seeded_client
        c.post("/api/deals", json={"company_name": "Rasan", "sector": "Insurtech", "stage": "evaluating"})
        assert c.get("/api/deals", params={"stage": "evaluating"}).json()["total"] == 1
        assert c.get("/api/deals", params={"search": "nora"}).json()["items"][0]["company_name"] == "Lean Payroll"
        names = [d["company_name"] for d in
                 c.get("/api/deals", params={"sort_by": "company_name", "sort_dir": "asc"}).json()["items"]]
        assert names == ["Lean Payroll", "Rasan"]

    def test_delete(self, seeded_client):
        c, _, ids = seeded_client
        assert c.delete(f"/api/deals/{ids['deal']}").json() == {"ok": True}
        assert c.get(f"/api/deals/{ids['deal']}").status_code == 404

    def test_past_passes(self, seeded_client):
        c, _, ids = seeded_client
        c.put(f"/api/deals/{ids['deal']}", json={"stage": "passed", "pass_reason": "Valuation"})
        hits = c.get("/api/deals/past-passes", params={"company_name": "lean"}).json()
        assert [h["company_name"] for h in hits] == ["Lean Payroll"]
        assert hits[0]["pass_reason"] == "Valuation"
        assert c.get("/api/deals/past-passes", params={"company_name": "l"}).json() == []

    def test_analysis_notes(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.put(f"/api/deals/{ids['deal']}/analysis-notes", json={"content": "Strong operator"})
        assert resp.json()["analysis_notes"] == "Strong operator"
        got = c.get(f"/api/deals/{ids['deal']}/analysis-notes").json()
        assert got == {"analysis_notes": "Strong operator", "intake": ""}

    def test_velocity(self, seeded_client):
        c, _, ids = seeded_client
        c.put(f"/api/deals/{ids['deal']}", json={"stage": "evaluating"})
        body = c.get("/api/deals/velocity").json()
        assert "averages" in body
        assert "stale_deals" in body


class TestIntake:
    def test_submit_creates_contact_and_deal(self, client):
        c, TestSession = client
        resp = c.post("/api/intake", json={
            "full_name": "Hala Omar", "company_name": "Sadu", "primary_industry": "Retail",
            "saudi_operating": "Yes", "team_roles": ["CEO", "CTO"],
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        deal = c.get(f"/api/deals/{body['deal_id']}").json()
        assert deal["vision_2030_alignment"] == 5
        assert deal["notes"].startswith("## Intake Submission")
        contact = c.get(f"/api/contacts/{body['contact_id']}").json()
        assert contact["tier"] == "founder"

    def test_missing_required_fields(self, client):
        c, _ = client
        assert c.post("/api/intake", json={"company_name": "Sadu"}).status_code == 422


# ---------------------------------------------------------------------------
# Contacts and access paths
# ---------------------------------------------------------------------------


class TestContactEndpoints:
    def test_create_and_filter(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.post("/api/contacts", json={"name": "Omar", "organization": "Tamara",
                                             "tier": "founder", "is_key_ten": True})
        assert resp.status_code == 201
        assert resp.json()["touchpoints"] == []
        assert [x["name"] for x in c.get("/api/contacts", params={"tier": "founder"}).json()] == ["Omar"]
        assert [x["name"] for x in c.get("/api/contacts", params={"key_ten": True}).json()] == ["Omar"]
        assert [x["name"] for x in c.get("/api/contacts", params={"search": "raed"}).json()] == ["Amal Saleh"]

    def test_invalid_tier_is_422(self, client):
        c, _ = client
        assert c.post("/api/contacts", json={"name": "X", "tier": "oracle"}).status_code == 422

    def test_touchpoint_updates_warmth(self, seeded_client):
        c, _, ids = seeded_client
        when = (datetime.utcnow() - timedelta(days=1)).isoformat()
        resp = c.post(f"/api/contacts/{ids['contact']}/touchpoints",
                      json={"type": "meeting", "summary": "Coffee", "date": when})
        assert resp.status_code == 201
        assert resp.json()["warmth_score"] == 5.5
        detail = c.get(f"/api/contacts/{ids['contact']}").json()
        assert len(detail["touchpoints"]) == 1
        assert detail["last_touchpoint"] is not None

    def test_touchpoint_invalid_type(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(f"/api/contacts/{ids['contact']}/touchpoints", json={"type": "fax"})
        assert resp.status_code == 422

    def test_delete_contact_removes_touchpoints(self, seeded_client):
        c, TestSession, ids = seeded_client
        c.post(f"/api/contacts/{ids['contact']}/touchpoints", json={"type": "email"})
        assert c.delete(f"/api/contacts/{ids['contact']}").json() == {"ok": True}
        session = TestSession()
        try:
            assert session.query(Touchpoint).count() == 0
        finally:
            session.close()

    def test_access_path(self, seeded_client):
        c, _, _ = seeded_client
        body = c.post("/api/access-path", json={"target_company": "Raed"}).json()
        assert body["found"] is True
        assert body["kind"] == "direct"
        assert body["path"][1]["name"] == "Amal Saleh"

    def test_access_path_requires_target(self, client):
        c, _ = client
        assert c.post("/api/access-path", json={}).status_code == 400


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


class TestPortfolioEndpoints:
    def test_position_from_deal_and_scenarios(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(f"/api/deals/{ids['deal']}/portfolio", json={"current_valuation_usd": 16_000_000})
        assert resp.status_code == 201
        pos = resp.json()
        assert pos["company_name"] == "Lean Payroll"
        assert pos["paper_value"] == 400_000

        scenarios = c.post(f"/api/portfolio/{pos['id']}/scenarios", json={"investment": 200_000}).json()
        assert [s["label"] for s in scenarios["scenarios"]] == ["conservative", "target", "moonshot"]
        assert scenarios["scenarios"][0]["your_share"] == 4_000_000

        summary = c.get("/api/portfolio/summary").json()
        assert summary["active"] == 1

    def test_exit_sets_return_multiple(self, client):
        c, _ = client
        pos = c.post("/api/portfolio", json={"company_name": "Exit Co", "entry_valuation_usd": 4_000_000}).json()
        updated = c.put(f"/api/portfolio/{pos['id']}",
                        json={"status": "exited", "exit_valuation_usd": 30_000_000}).json()
        assert updated["return_multiple"] == 7.5
        assert updated["exit_date"] is not None

    def test_missing_position(self, client):
        c, _ = client
        assert c.post("/api/portfolio/42/scenarios").status_code == 404

    def test_invalid_status_and_health_rejected(self, client):
        c, _ = client
        resp = c.post("/api/portfolio", json={"company_name": "Bad Co", "status": "bogus"})
        assert resp.status_code == 422
        resp = c.post("/api/portfolio", json={"company_name": "Bad Co", "health_status": "on-fire"})
        assert resp.status_code == 422
        assert c.get("/api/portfolio").json() == []

    def test_invalid_health_on_update_rejected(self, client):
        c, _ = client
        pos = c.post("/api/portfolio", json={"company_name": "Ok Co", "health_status": "warning"}).json()
        assert pos["health_status"] == "warning"
        resp = c.put(f"/api/portfolio/{pos['id']}", json={"health_status": "on-fire"})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Insights and strategy
# ---------------------------------------------------------------------------


class TestStrategyEndpoints:
    def test_insight_publish(self, client):
        c, _ = client
        ins = c.post("/api/insights", json={"title": "Why we pass"}).json()
        assert ins["status"] == "idea"
        published = c.post(f"/api/insights/{ins['id']}/publish").json()
        assert published["status"] == "published"
        assert published["publish_date"] is not None
        assert c.get("/api/insights/engagement").json()["published"] == 1

    def test_goal_toggle(self, client):
        c, _ = client
        goal = c.post("/api/goals", json={"title": "Close 3 deals", "year": 2026, "quarter": 2,
                                          "target_value": 3, "current_value": 1}).json()
        assert goal["progress"] == pytest.approx(33.3)
        assert c.post(f"/api/goals/{goal['id']}/toggle").json()["is_completed"] is True
        assert c.post("/api/goals", json={"title": "Bad", "year": 2026, "quarter": 7}).status_code == 422

    def test_weekly_review_upsert(self, client):
        c, _ = client
        c.put("/api/reviews", json={"day": "2026-03-02", "wins": "Two intros"})
        c.put("/api/reviews", json={"day": "2026-03-06", "losses": "Lost a deal"})
        reviews = c.get("/api/reviews").json()
        assert len(reviews) == 1
        assert reviews[0]["week_start_date"] == "2026-03-01"
        assert reviews[0]["wins"] == "Two intros"
        assert reviews[0]["losses"] == "Lost a deal"

    def test_journal(self, seeded_client):
        c, _, ids = seeded_client
        assert c.post("/api/journal", json={"decision": "pass", "deal_id": 999}).status_code == 404
        assert c.post("/api/journal", json={"decision": "shrug"}).status_code == 400
        entry = c.post("/api/journal", json={"decision": "pass", "deal_id": ids["deal"],
                                             "confidence_level": 7}).json()
        assert entry["company_name"] == "Lean Payroll"
        follow = c.post(f"/api/journal/{entry['id']}/follow-up", json={"outcome": "Right call"}).json()
        assert follow["follow_up_outcome"] == "Right call"

    def test_patterns(self, client):
        c, _ = client
        p = c.post("/api/patterns", json={"pattern_name": "Repeat founders",
                                          "positive_signals": ["prior exit"]}).json()
        assert p["weight"] == 1.0
        updated = c.put(f"/api/patterns/{p['id']}", json={"weight": 1.5}).json()
        assert updated["weight"] == 1.5
        assert updated["positive_signals"] == ["prior exit"]
        dup = c.post("/api/patterns", json={"pattern_name": "repeat founders"})
        assert dup.status_code == 409


# ---------------------------------------------------------------------------
# Evaluator (LLM patched)
# ---------------------------------------------------------------------------


class TestEvaluatorEndpoints:
    def test_score_writes_back(self, seeded_client):
        c, TestSession, ids = seeded_client
        llm = _mock_llm(call=AsyncMock(return_value={"overall_score": 77, "recommendation": "EVALUATE FURTHER",
                                                      "reasoning": "Good team"}))
        with patch("dealdesk.services.LLMClient", return_value=llm):
            resp = c.post(f"/api/evaluate/{ids['deal']}/score")
        assert resp.status_code == 200
        assert resp.json()["overall_score"] == 77
        deal = c.get(f"/api/deals/{ids['deal']}").json()
        assert deal["ai_score"] == 77
        assert deal["ai_analysis"] == "Good team"
        evaluations = c.get(f"/api/deals/{ids['deal']}/evaluations").json()
        assert [e["evaluation_type"] for e in evaluations] == ["score"]

    def test_retryable_failure_is_503(self, seeded_client):
        c, TestSession, ids = seeded_client
        llm = _mock_llm(call=AsyncMock(side_effect=LLMCallError("rate limited", retryable=True)))
        with patch("dealdesk.services.LLMClient", return_value=llm):
            resp = c.post(f"/api/evaluate/{ids['deal']}/score")
        assert resp.status_code == 503
        session = TestSession()
        try:
            assert session.query(AIEvaluation).count() == 0
        finally:
            session.close()

    def test_unparseable_reply_is_500(self, seeded_client):
        c, _, ids = seeded_client
        llm = _mock_llm(call=AsyncMock(side_effect=LLMCallError("no JSON", retryable=False)))
        with patch("dealdesk.services.LLMClient", return_value=llm):
            resp = c.post(f"/api/evaluate/{ids['deal']}/score")
        assert resp.status_code == 500

    def test_backtest_reports_returns_on_investment(self, seeded_client):
        c, _, ids = seeded_client
        llm = _mock_llm(call=AsyncMock(return_value={
            "scenario_analysis": {"base_case": {"exit_valuation": 80_000_000, "roi": 150, "probability": 50}},
        }))
        with patch("dealdesk.services.LLMClient", return_value=llm):
            resp = c.post(f"/api/evaluate/{ids['deal']}/backtest", params={"investment": 20_000})
        assert resp.status_code == 200
        body = resp.json()
        assert body["investment"] == 20_000
        rows = {r["name"]: r for r in body["returns"]}
        assert rows["base_case"]["return_value"] == 50_000
        stored = c.get(f"/api/deals/{ids['deal']}").json()["backtest_result"]
        assert stored["scenario_analysis"]["base_case"]["roi"] == 150

    def test_backtest_rejects_non_positive_investment(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(f"/api/evaluate/{ids['deal']}/backtest", params={"investment": 0})
        assert resp.status_code == 422

    def test_chat(self, client):
        c, _ = client
        llm = _mock_llm(complete=AsyncMock(return_value="Look at retention first."))
        with patch("dealdesk.services.LLMClient", return_value=llm):
            resp = c.post("/api/evaluate/chat", json={"message": "What matters most?"})
        assert resp.json() == {"response": "Look at retention first."}

    def test_categorize_contacts(self, seeded_client):
        c, _, ids = seeded_client
        llm = _mock_llm(call_list=AsyncMock(return_value=["advisor"]))
        with patch("dealdesk.services.LLMClient", return_value=llm):
            resp = c.post("/api/evaluate/categorize-contacts", json={"contact_ids": [ids["contact"]]})
        assert resp.json() == {"categories": [{"contact_id": ids["contact"], "tier": "advisor"}]}
        assert c.get(f"/api/contacts/{ids['contact']}").json()["tier"] == "advisor"

    def test_access_advice_requires_target(self, client):
        c, _ = client
        with patch("dealdesk.services.LLMClient", return_value=_mock_llm()):
            assert c.post("/api/evaluate/access-path", json={"target_name": " "}).status_code == 400


# ---------------------------------------------------------------------------
# Dashboard, import, export, reset
# ---------------------------------------------------------------------------


class TestDashboardEndpoints:
    def test_alerts_for_stale_deal(self, client):
        c, TestSession = client
        session = TestSession()
        old = datetime.utcnow() - timedelta(days=30)
        session.add(Deal(company_name="Slowpoke", stage="review", created_at=old, updated_at=old))
        session.commit()
        session.close()
        alerts = c.get("/api/alerts").json()
        assert alerts[0]["type"] == "stale_deal"
        assert alerts[0]["severity"] == "red"

    def test_dashboard_and_stats(self, seeded_client):
        c, _, _ = seeded_client
        dash = c.get("/api/dashboard").json()
        assert dash["active_deals"] == 1
        assert len(dash["deal_flow"]["monthly"]) == 6
        stats = c.get("/api/stats").json()
        assert stats["deals"] == 1
        assert stats["contacts"] == 1
        assert stats["by_tier"] == {"capital_allocator": 1}


class TestImportExport:
    def test_import_deals_csv(self, client):
        c, _ = client
        csv_text = "Company Name,Sector,Valuation (USD)\nLean Payroll,Fintech,\"$8,000,000\"\n,Edtech,\n"
        resp = c.post("/api/import/deals", files={"file": ("deals.csv", csv_text, "text/csv")})
        assert resp.status_code == 200
        body = resp.json()
        assert body["imported"] == 1
        assert body["errors"] == ["Row 2: Missing company name"]
        assert c.get("/api/deals").json()["items"][0]["valuation_usd"] == 8_000_000

    def test_import_rejects_other_types(self, client):
        c, _ = client
        resp = c.post("/api/import/deals", files={"file": ("deals.json", "[]", "application/json")})
        assert resp.status_code == 400

    def test_import_linkedin(self, seeded_client):
        c, _, _ = seeded_client
        csv_text = (
            "First Name,Last Name,URL,Email Address,Company,Position,Connected On\n"
            "Amal,Saleh,,,Raed Ventures,Partner,01 Jan 2026\n"
            "Fahad,Aziz,,,Sanabil,Principal,02 Jan 2026\n"
        )
        resp = c.post("/api/import/linkedin", files={"file": ("Connections.csv", csv_text, "text/csv")})
        assert resp.json()["imported"] == 1
        assert resp.json()["skipped"] == 1

    def test_export(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.get("/api/deals/export")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        lines = resp.text.splitlines()
        assert lines[0].startswith('"Company","Sector","Stage"')
        assert lines[1].startswith('"Lean Payroll","Fintech","review"')

    def test_reset(self, seeded_client):
        c, _, _ = seeded_client
        assert c.delete("/api/reset").json() == {"ok": True}
        stats = c.get("/api/stats").json()
        assert stats["deals"] == 0
        assert stats["contacts"] == 0


def test_openapi_lists_tags(client):
    c, _ = client
    schema = c.get("/openapi.json").json()
    assert {t["name"] for t in schema["tags"]} >= {"Deals", "Contacts", "Evaluator"}
