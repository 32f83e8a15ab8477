from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk import services
from dealdesk.alerts import collect_alerts
from dealdesk.backtest import DEFAULT_BACKTEST_INVESTMENT
from dealdesk.config import get_settings
from dealdesk.db import get_session, init_db
from dealdesk.evaluator import LLMCallError
from dealdesk.importer import export_deals_csv, import_deals, import_linkedin
from dealdesk.models import (
    AIEvaluation,
    Contact,
    Deal,
    DealPattern,
    DecisionJournalEntry,
    Goal,
    Insight,
    PortfolioPosition,
    WeeklyReview,
)
from dealdesk.notes import extract_section, strip_section
from dealdesk.schemas import (
    AccessPathRequest,
    AdviceRequest,
    AnalysisNotesUpdate,
    CategorizeRequest,
    ChatRequest,
    ContactCreate,
    ContactUpdate,
    DealCreate,
    DealDetail,
    DealOut,
    DealUpdate,
    FollowUpOutcome,
    GoalFields,
    ImportResult,
    InsightDraftRequest,
    InsightFields,
    IntakeSubmission,
    JournalCreate,
    PatternFields,
    PositionFields,
    ResurfaceRequest,
    ScenarioRequest,
    StatsOut,
    TouchpointCreate,
    WeeklyReviewSave,
)
from dealdesk.velocity import analyze_velocity

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="DealDesk",
    version="0.1.0",
    description=(
        "Venture-capital CRM API: deal pipeline, relationship network, portfolio, "
        "content and AI-assisted deal evaluation. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Deals", "description": "Pipeline tracking, stage history and pass memory."},
        {"name": "Contacts", "description": "Relationship network, touchpoints and warmth."},
        {"name": "Access Path", "description": "Warm-introduction routes through the contact graph."},
        {"name": "Portfolio", "description": "Positions, health metrics and exit scenarios."},
        {"name": "Insights", "description": "Thought-leadership content and publishing calendar."},
        {"name": "Strategy", "description": "Goals, weekly reviews, decision journal and deal patterns."},
        {"name": "Evaluator", "description": "LLM-powered deal evaluation. Requires an LLM API key."},
        {"name": "Dashboard", "description": "Alerts, metrics and activity feed."},
        {"name": "Import", "description": "CSV/XLSX deal import, LinkedIn import and CSV export."},
        {"name": "Intake", "description": "Public startup intake submissions."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(400, str(exc))


def _evaluator_failed(exc: Exception) -> HTTPException:
    status = 503 if isinstance(exc, LLMCallError) and exc.retryable else 500
    log.warning("Evaluator call failed (%d): %s", status, exc)
    return HTTPException(status, f"Evaluation failed: {exc}")


# ---------------------------------------------------------------------------
# Routes: Deals
# ---------------------------------------------------------------------------


class DealListResponse(BaseModel):
    items: list[DealOut]
    total: int


@app.get("/api/deals", response_model=DealListResponse,
         tags=["Deals"], summary="List deals with filtering and sorting")
async def list_deals(
    stage: str | None = Query(None, description="Comma-separated: review, evaluating, passed, term_sheet, closed, rejected"),
    outcome: str | None = Query(None, description="Comma-separated: win, miss, regret, noise, pending"),
    sector: str | None = Query(None, description="Substring match on sector"),
    search: str | None = Query(None, description="Free-text search across company, founder and sector"),
    sort_by: str = Query("created_at", description="created_at, company_name, stage, outcome, ai_score, overall_score, valuation_usd"),
    sort_dir: str = Query("desc", description="asc or desc"),
    session: Session = Depends(db_session),
):
    items = services.query_deals(
        session, stage=stage, outcome=outcome, sector=sector, search=search,
        sort_by=sort_by, sort_dir=sort_dir,
    )
    return {"items": items, "total": len(items)}


@app.post("/api/deals", response_model=DealDetail, status_code=201,
          tags=["Deals"], summary="Create a deal")
async def create_deal(body: DealCreate, session: Session = Depends(db_session)):
    try:
        deal = services.create_deal(session, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.deal_detail(deal)


@app.get("/api/deals/past-passes", tags=["Deals"],
         summary="Find previously passed or rejected deals by company name")
async def past_passes(company_name: str = Query(..., description="At least 2 characters"),
                      session: Session = Depends(db_session)):
    return services.find_past_passes(session, company_name)


@app.get("/api/deals/velocity", tags=["Deals"], summary="Days per stage and fast/stale deals")
async def deal_velocity(session: Session = Depends(db_session)):
    deals = session.execute(select(Deal)).scalars().all()
    return analyze_velocity(deals).to_dict()


@app.get("/api/deals/export", response_class=PlainTextResponse, tags=["Import"],
         summary="Export all deals as CSV")
async def export_deals(session: Session = Depends(db_session)):
    return PlainTextResponse(
        export_deals_csv(session), media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="deals.csv"'},
    )


@app.get("/api/deals/{deal_id}", response_model=DealDetail,
         tags=["Deals"], summary="Get full deal detail with stage history")
async def get_deal(deal_id: int, session: Session = Depends(db_session)):
    return services.deal_detail(_get_or_404(session, Deal, deal_id, "Deal"))


@app.put("/api/deals/{deal_id}", response_model=DealDetail,
         tags=["Deals"], summary="Update deal fields (partial update, null fields ignored)")
async def update_deal(deal_id: int, body: DealUpdate, session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    try:
        services.update_deal(session, deal, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.deal_detail(deal)


@app.delete("/api/deals/{deal_id}", tags=["Deals"],
            summary="Delete a deal with its evaluations and journal entries")
async def delete_deal(deal_id: int, session: Session = Depends(db_session)):
    services.delete_deal(session, _get_or_404(session, Deal, deal_id, "Deal"))
    session.commit()
    return {"ok": True}


@app.get("/api/deals/{deal_id}/analysis-notes", tags=["Deals"],
         summary="Get the Analysis Notes section and the remaining notes")
async def get_analysis_notes(deal_id: int, session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    return {"analysis_notes": extract_section(deal.notes), "intake": strip_section(deal.notes)}


@app.put("/api/deals/{deal_id}/analysis-notes", tags=["Deals"],
         summary="Replace the Analysis Notes section of a deal's notes")
async def put_analysis_notes(deal_id: int, body: AnalysisNotesUpdate,
                             session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    services.set_analysis_notes(deal, body.content)
    session.commit()
    return {"analysis_notes": extract_section(deal.notes), "notes": deal.notes}


@app.get("/api/deals/{deal_id}/evaluations", tags=["Deals", "Evaluator"],
         summary="List recorded AI evaluations for a deal")
async def list_deal_evaluations(deal_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Deal, deal_id, "Deal")
    rows = session.execute(
        select(AIEvaluation).where(AIEvaluation.deal_id == deal_id).order_by(AIEvaluation.created_at.desc())
    ).scalars().all()
    return [services.evaluation_dict(e) for e in rows]


# ---------------------------------------------------------------------------
# Routes: Intake
# ---------------------------------------------------------------------------


@app.post("/api/intake", status_code=201, tags=["Intake"],
          summary="Submit a startup intake form (creates founder contact and deal)")
async def submit_intake(body: IntakeSubmission, session: Session = Depends(db_session)):
    try:
        deal, contact = services.submit_intake(session, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return {"success": True, "deal_id": deal.id, "contact_id": contact.id}


# ---------------------------------------------------------------------------
# Routes: Contacts
# ---------------------------------------------------------------------------


@app.get("/api/contacts", tags=["Contacts"], summary="List contacts")
async def list_contacts(
    tier: str | None = Query(None, description="Comma-separated contact tiers"),
    key_ten: bool | None = Query(None, description="Only key-ten contacts"),
    search: str | None = Query(None, description="Substring match on name or organization"),
    session: Session = Depends(db_session),
):
    contacts = session.execute(select(Contact).order_by(Contact.name)).scalars().all()
    items = [services.contact_summary(c) for c in contacts]
    if tier:
        ts = {t.strip().lower() for t in tier.split(",")}
        items = [c for c in items if c["tier"] in ts]
    if key_ten is not None:
        items = [c for c in items if c["is_key_ten"] == key_ten]
    if search:
        q = search.lower()
        items = [c for c in items if q in c["name"].lower() or q in (c["organization"] or "").lower()]
    return items


@app.post("/api/contacts", status_code=201, tags=["Contacts"], summary="Create a contact")
async def create_contact(body: ContactCreate, session: Session = Depends(db_session)):
    try:
        contact = services.create_contact(session, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.contact_detail(contact)


@app.post("/api/contacts/recompute-warmth", tags=["Contacts"],
          summary="Recompute warmth for every contact with touchpoints")
async def recompute_warmth(session: Session = Depends(db_session)):
    updated = services.recompute_all_warmth(session)
    session.commit()
    return {"updated": updated}


@app.get("/api/contacts/{contact_id}", tags=["Contacts"], summary="Get contact with touchpoints")
async def get_contact(contact_id: int, session: Session = Depends(db_session)):
    return services.contact_detail(_get_or_404(session, Contact, contact_id, "Contact"))


@app.put("/api/contacts/{contact_id}", tags=["Contacts"], summary="Update contact fields (partial update)")
async def update_contact(contact_id: int, body: ContactUpdate, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    services.update_contact(contact, body.model_dump())
    session.commit()
    return services.contact_detail(contact)


@app.delete("/api/contacts/{contact_id}", tags=["Contacts"], summary="Delete a contact and its touchpoints")
async def delete_contact(contact_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Contact, contact_id, "Contact"))
    session.commit()
    return {"ok": True}


@app.post("/api/contacts/{contact_id}/touchpoints", status_code=201, tags=["Contacts"],
          summary="Log a touchpoint and recompute warmth")
async def log_touchpoint(contact_id: int, body: TouchpointCreate, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    try:
        tp = services.log_touchpoint(session, contact, body.type, body.summary, body.outcome, body.date)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return {"touchpoint": services.touchpoint_dict(tp), "warmth_score": contact.warmth_score}


# ---------------------------------------------------------------------------
# Routes: Access Path
# ---------------------------------------------------------------------------


@app.post("/api/access-path", tags=["Access Path"],
          summary="Suggest a warm route to a target founder or company")
async def access_path(body: AccessPathRequest, session: Session = Depends(db_session)):
    try:
        result = services.access_path_for(session, body.target_name, body.target_company)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return result.to_dict()


# ---------------------------------------------------------------------------
# Routes: Portfolio
# ---------------------------------------------------------------------------


@app.get("/api/portfolio", tags=["Portfolio"], summary="List portfolio positions")
async def list_positions(session: Session = Depends(db_session)):
    rows = session.execute(select(PortfolioPosition).order_by(PortfolioPosition.company_name)).scalars().all()
    return [services.position_dict(p) for p in rows]


@app.get("/api/portfolio/summary", tags=["Portfolio"], summary="Paper value and health breakdown")
async def portfolio_summary(session: Session = Depends(db_session)):
    return services.portfolio_summary(session)


@app.post("/api/portfolio", status_code=201, tags=["Portfolio"], summary="Create a position")
async def create_position(body: PositionFields, session: Session = Depends(db_session)):
    try:
        pos = services.create_position(session, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.position_dict(pos)


@app.post("/api/deals/{deal_id}/portfolio", status_code=201, tags=["Portfolio", "Deals"],
          summary="Create a position from a deal (entry terms default to the deal's)")
async def create_position_from_deal(deal_id: int, body: PositionFields | None = None,
                                    session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    pos = services.create_position(session, (body or PositionFields()).model_dump(), deal=deal)
    session.commit()
    return services.position_dict(pos)


@app.put("/api/portfolio/{position_id}", tags=["Portfolio"], summary="Update a position (partial update)")
async def update_position(position_id: int, body: PositionFields, session: Session = Depends(db_session)):
    pos = _get_or_404(session, PortfolioPosition, position_id, "Position")
    try:
        services.update_position(pos, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.position_dict(pos)


@app.delete("/api/portfolio/{position_id}", tags=["Portfolio"], summary="Delete a position")
async def delete_position(position_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, PortfolioPosition, position_id, "Position"))
    session.commit()
    return {"ok": True}


@app.post("/api/portfolio/{position_id}/scenarios", tags=["Portfolio"],
          summary="Model exit scenarios for a position")
async def position_scenarios(position_id: int, body: ScenarioRequest | None = None,
                             session: Session = Depends(db_session)):
    pos = _get_or_404(session, PortfolioPosition, position_id, "Position")
    body = body or ScenarioRequest()
    return services.position_scenarios(pos, body.investment, body.multipliers)


# ---------------------------------------------------------------------------
# Routes: Insights
# ---------------------------------------------------------------------------


@app.get("/api/insights", tags=["Insights"], summary="List insights")
async def list_insights(status: str | None = Query(None, description="idea, draft or published"),
                        session: Session = Depends(db_session)):
    query = select(Insight).order_by(Insight.created_at.desc())
    if status:
        query = query.where(Insight.status == status)
    return [services.insight_dict(i) for i in session.execute(query).scalars().all()]


@app.get("/api/insights/calendar", tags=["Insights"], summary="Upcoming scheduled insights")
async def insight_calendar(days: int = Query(30, ge=1, le=365), session: Session = Depends(db_session)):
    return services.insight_calendar(session, days=days)


@app.get("/api/insights/engagement", tags=["Insights"], summary="Engagement totals for published insights")
async def insight_engagement(session: Session = Depends(db_session)):
    return services.engagement_totals(session)


@app.post("/api/insights", status_code=201, tags=["Insights"], summary="Create an insight")
async def create_insight(body: InsightFields, session: Session = Depends(db_session)):
    try:
        ins = services.create_insight(session, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.insight_dict(ins)


@app.put("/api/insights/{insight_id}", tags=["Insights"], summary="Update an insight (partial update)")
async def update_insight(insight_id: int, body: InsightFields, session: Session = Depends(db_session)):
    ins = _get_or_404(session, Insight, insight_id, "Insight")
    try:
        services.update_insight(session, ins, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.insight_dict(ins)


@app.post("/api/insights/{insight_id}/publish", tags=["Insights"],
          summary="Publish an insight (stamps publish date)")
async def publish_insight(insight_id: int, session: Session = Depends(db_session)):
    ins = _get_or_404(session, Insight, insight_id, "Insight")
    services.publish_insight(session, ins)
    session.commit()
    return services.insight_dict(ins)


@app.delete("/api/insights/{insight_id}", tags=["Insights"], summary="Delete an insight")
async def delete_insight(insight_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Insight, insight_id, "Insight"))
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Strategy (goals, reviews, journal, patterns)
# ---------------------------------------------------------------------------


@app.get("/api/goals", tags=["Strategy"], summary="List goals")
async def list_goals(year: int | None = None, session: Session = Depends(db_session)):
    query = select(Goal).order_by(Goal.year.desc(), Goal.quarter)
    if year is not None:
        query = query.where(Goal.year == year)
    return [services.goal_dict(g) for g in session.execute(query).scalars().all()]


@app.post("/api/goals", status_code=201, tags=["Strategy"], summary="Create a goal")
async def create_goal(body: GoalFields, session: Session = Depends(db_session)):
    try:
        goal = services.create_goal(session, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.goal_dict(goal)


@app.put("/api/goals/{goal_id}", tags=["Strategy"], summary="Update a goal (partial update)")
async def update_goal(goal_id: int, body: GoalFields, session: Session = Depends(db_session)):
    goal = _get_or_404(session, Goal, goal_id, "Goal")
    services.apply_updates(goal, body.model_dump(), services.GOAL_FIELDS)
    session.commit()
    return services.goal_dict(goal)


@app.post("/api/goals/{goal_id}/toggle", tags=["Strategy"], summary="Toggle goal completion")
async def toggle_goal(goal_id: int, session: Session = Depends(db_session)):
    goal = services.toggle_goal(_get_or_404(session, Goal, goal_id, "Goal"))
    session.commit()
    return services.goal_dict(goal)


@app.delete("/api/goals/{goal_id}", tags=["Strategy"], summary="Delete a goal")
async def delete_goal(goal_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Goal, goal_id, "Goal"))
    session.commit()
    return {"ok": True}


@app.get("/api/reviews", tags=["Strategy"], summary="List weekly reviews, newest first")
async def list_reviews(session: Session = Depends(db_session)):
    rows = session.execute(select(WeeklyReview).order_by(WeeklyReview.week_start_date.desc())).scalars().all()
    return [services.review_dict(r) for r in rows]


@app.put("/api/reviews", tags=["Strategy"], summary="Save this week's review (upsert by week start)")
async def save_review(body: WeeklyReviewSave, session: Session = Depends(db_session)):
    review = services.save_weekly_review(session, body.model_dump(), day=body.day)
    session.commit()
    return services.review_dict(review)


@app.get("/api/journal", tags=["Strategy"], summary="List decision journal entries")
async def list_journal(deal_id: int | None = None, session: Session = Depends(db_session)):
    query = select(DecisionJournalEntry).order_by(DecisionJournalEntry.created_at.desc())
    if deal_id is not None:
        query = query.where(DecisionJournalEntry.deal_id == deal_id)
    return [services.journal_dict(e) for e in session.execute(query).scalars().all()]


@app.post("/api/journal", status_code=201, tags=["Strategy"], summary="Record a decision")
async def create_journal_entry(body: JournalCreate, session: Session = Depends(db_session)):
    try:
        entry = services.create_journal_entry(session, body.model_dump())
    except LookupError as exc:
        raise HTTPException(404, str(exc)) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    session.commit()
    return services.journal_dict(entry)


@app.post("/api/journal/{entry_id}/follow-up", tags=["Strategy"], summary="Record a follow-up outcome")
async def record_follow_up(entry_id: int, body: FollowUpOutcome, session: Session = Depends(db_session)):
    entry = _get_or_404(session, DecisionJournalEntry, entry_id, "Journal entry")
    services.record_follow_up(entry, body.outcome)
    session.commit()
    return services.journal_dict(entry)


@app.get("/api/patterns", tags=["Strategy"], summary="List deal patterns")
async def list_patterns(session: Session = Depends(db_session)):
    rows = session.execute(select(DealPattern).order_by(DealPattern.pattern_name)).scalars().all()
    return [services.pattern_dict(p) for p in rows]


@app.post("/api/patterns", status_code=201, tags=["Strategy"], summary="Create a deal pattern")
async def create_pattern(body: PatternFields, session: Session = Depends(db_session)):
    try:
        pattern = services.create_pattern(session, body.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    if pattern is None:
        raise HTTPException(409, f"Pattern '{body.pattern_name}' already exists")
    session.commit()
    return services.pattern_dict(pattern)


@app.put("/api/patterns/{pattern_id}", tags=["Strategy"], summary="Update a deal pattern")
async def update_pattern(pattern_id: int, body: PatternFields, session: Session = Depends(db_session)):
    pattern = services.update_pattern(_get_or_404(session, DealPattern, pattern_id, "Pattern"),
                                      body.model_dump())
    session.commit()
    return services.pattern_dict(pattern)


@app.delete("/api/patterns/{pattern_id}", tags=["Strategy"], summary="Delete a deal pattern")
async def delete_pattern(pattern_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, DealPattern, pattern_id, "Pattern"))
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Evaluator
# ---------------------------------------------------------------------------


@app.post("/api/evaluate/{deal_id}/score", tags=["Evaluator"], summary="Score a deal via LLM")
async def evaluate_score(deal_id: int, session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    try:
        result = await services.run_score(session, deal)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return result


@app.post("/api/evaluate/{deal_id}/memo", tags=["Evaluator"], summary="Generate an investment memo")
async def evaluate_memo(deal_id: int, session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    try:
        memo = await services.run_memo(session, deal)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return {"memo": memo}


@app.post("/api/evaluate/{deal_id}/backtest", tags=["Evaluator"], summary="Run a backtest simulation")
async def evaluate_backtest(
    deal_id: int,
    investment: float = Query(DEFAULT_BACKTEST_INVESTMENT, gt=0, description="Notional investment for per-scenario returns"),
    session: Session = Depends(db_session),
):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    try:
        result = await services.run_backtest(session, deal, investment=investment)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return result


@app.post("/api/evaluate/{deal_id}/resurface", tags=["Evaluator"],
          summary="Compare a returning pitch against the original pass")
async def evaluate_resurface(deal_id: int, body: ResurfaceRequest, session: Session = Depends(db_session)):
    deal = _get_or_404(session, Deal, deal_id, "Deal")
    try:
        result = await services.run_resurface_check(session, deal, body.new_notes, body.new_valuation)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return result


@app.post("/api/evaluate/chat", tags=["Evaluator"], summary="Ask the investment advisor")
async def evaluate_chat(body: ChatRequest, session: Session = Depends(db_session)):
    try:
        reply = await services.run_chat(session, body.message)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return {"response": reply}


@app.post("/api/evaluate/insight", tags=["Evaluator", "Insights"], summary="Draft a thought-leadership insight")
async def evaluate_insight(body: InsightDraftRequest, session: Session = Depends(db_session)):
    try:
        result = await services.run_insight(session, body.topic, save=body.save)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return result


@app.post("/api/evaluate/categorize-contacts", tags=["Evaluator", "Contacts"],
          summary="Assign contact tiers via LLM")
async def evaluate_categorize(body: CategorizeRequest, session: Session = Depends(db_session)):
    query = select(Contact).order_by(Contact.id)
    if body.contact_ids:
        query = query.where(Contact.id.in_(body.contact_ids))
    contacts = list(session.execute(query).scalars().all())
    try:
        tiers = await services.run_categorize(session, contacts, apply=body.apply)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return {"categories": [{"contact_id": c.id, "tier": t} for c, t in zip(contacts, tiers)]}


@app.post("/api/evaluate/contacts/{contact_id}/warmth", tags=["Evaluator", "Contacts"],
          summary="LLM warmth analysis alongside the computed score")
async def evaluate_warmth(contact_id: int, session: Session = Depends(db_session)):
    contact = _get_or_404(session, Contact, contact_id, "Contact")
    try:
        result = await services.run_warmth_analysis(session, contact)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return result


@app.post("/api/evaluate/access-path", tags=["Evaluator", "Access Path"],
          summary="LLM advice on reaching a target, with the heuristic path")
async def evaluate_access_path(body: AdviceRequest, session: Session = Depends(db_session)):
    try:
        result = await services.run_access_advice(session, body.target_name)
        session.commit()
    except ValueError as exc:
        raise _bad_request(exc) from exc
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return result


@app.post("/api/evaluate/velocity", tags=["Evaluator", "Deals"], summary="LLM pipeline velocity commentary")
async def evaluate_velocity(session: Session = Depends(db_session)):
    try:
        result = await services.run_velocity_analysis(session)
        session.commit()
    except Exception as exc:
        raise _evaluator_failed(exc) from exc
    return result


# ---------------------------------------------------------------------------
# Routes: Dashboard
# ---------------------------------------------------------------------------


@app.get("/api/alerts", tags=["Dashboard"], summary="Attention alerts, red before yellow")
async def alerts(session: Session = Depends(db_session)):
    return [a.to_dict() for a in collect_alerts(session)]


@app.get("/api/dashboard", tags=["Dashboard"], summary="Dashboard metrics and deal flow")
async def dashboard(session: Session = Depends(db_session)):
    return services.compute_dashboard(session)


@app.get("/api/activities", tags=["Dashboard"], summary="Recent activity feed")
async def activities(limit: int = Query(20, ge=1, le=200), session: Session = Depends(db_session)):
    return services.recent_activities(session, limit)


@app.get("/api/stats", response_model=StatsOut, tags=["Dashboard"],
         summary="Aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


async def _save_upload(file: UploadFile, suffixes: tuple[str, ...]) -> Path:
    name = (file.filename or "").lower()
    if not name.endswith(suffixes):
        raise HTTPException(400, f"Only {', '.join(suffixes)} files are supported")
    content = await file.read()
    with tempfile.NamedTemporaryFile(suffix=Path(name).suffix, delete=False) as f:
        f.write(content)
        return Path(f.name)


@app.post("/api/import/deals", response_model=ImportResult, tags=["Import"],
          summary="Import deals from CSV or XLSX (headers auto-mapped)")
async def import_deals_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    tmp_path = await _save_upload(file, (".csv", ".xlsx"))
    try:
        return import_deals(tmp_path, session)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    finally:
        tmp_path.unlink(missing_ok=True)


@app.post("/api/import/linkedin", response_model=ImportResult, tags=["Import", "Contacts"],
          summary="Import LinkedIn connections CSV")
async def import_linkedin_file(
    file: UploadFile = File(...),
    categorize: bool = Query(False, description="Assign tiers via LLM in batches of 20"),
    session: Session = Depends(db_session),
):
    tmp_path = await _save_upload(file, (".csv",))
    try:
        return await import_linkedin(tmp_path, session, categorize=categorize)
    finally:
        tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Reset
# ---------------------------------------------------------------------------


@app.delete("/api/reset", tags=["Admin"], summary="Delete all data")
async def reset_db(session: Session = Depends(db_session)):
    services.reset_all(session)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    uvicorn.run("dealdesk.app:app", host=settings.api_host, port=settings.api_port, reload=True)


if __name__ == "__main__":
    main()
