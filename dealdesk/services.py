"""Shared business logic for the DealDesk API, MCP server and CLI."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from dealdesk import evaluator
from dealdesk.access_path import AccessPath, find_access_path
from dealdesk.backtest import (
    DEFAULT_BACKTEST_INVESTMENT,
    exit_scenarios,
    paper_value,
    return_multiple,
    scenario_returns,
)
from dealdesk.evaluator import LLMClient
from dealdesk.models import (
    ACTIVITY_TYPES,
    CLOSED_STAGES,
    CONTACT_TIERS,
    DEAL_OUTCOMES,
    DEAL_STAGES,
    EVALUATION_TYPES,
    HEALTH_STATUSES,
    INSIGHT_STATUSES,
    JOURNAL_DECISIONS,
    PASS_STAGES,
    PORTFOLIO_STATUSES,
    TOUCHPOINT_TYPES,
    Activity,
    AIEvaluation,
    Contact,
    Deal,
    DealPattern,
    DecisionJournalEntry,
    Goal,
    Insight,
    PortfolioPosition,
    Touchpoint,
    WeeklyReview,
)
from dealdesk.notes import ANALYSIS_HEADING, build_intake_notes, upsert_section, vision_alignment_from_intake
from dealdesk.utils import as_naive_utc, days_between, iso, json_parse, to_json, utc_now
from dealdesk.velocity import append_stage_change, stage_history
from dealdesk.warmth import HIGH_CONTEXT_TYPES, calculate_warmth, warmth_level

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

DEAL_FIELDS = (
    "company_name", "sector", "valuation_usd", "equity_offered", "founder_name",
    "founder_linkedin", "deck_url", "vision_2030_alignment", "founder_execution_score",
    "founder_sales_ability", "iteration_speed", "failure_modes", "exit_potential",
    "decision_reason", "overall_score", "notes", "outcome_notes", "pass_reason",
)

CONTACT_FIELDS = (
    "name", "organization", "role", "tier", "trust_level", "email", "phone",
    "linkedin", "notes", "relationship_context", "is_key_ten", "warmth_score",
)

POSITION_FIELDS = (
    "company_name", "sector", "entry_valuation_usd", "current_valuation_usd",
    "equity_percent", "entry_date", "status", "exit_valuation_usd", "exit_date",
    "is_top_position", "notes", "health_status",
)

METRIC_FIELDS = ("monthly_revenue", "burn_rate", "runway_months")

INSIGHT_FIELDS = (
    "title", "content", "status", "platform", "scheduled_date", "engagement_likes",
    "engagement_comments", "engagement_shares", "inbound_inquiries",
)

GOAL_FIELDS = ("year", "quarter", "title", "description", "target_value", "current_value", "is_completed")

REVIEW_FIELDS = (
    "failure_condition_met", "goal_progress_notes", "reflections", "wins", "losses",
    "next_week_priorities",
)

JOURNAL_FIELDS = ("decision", "reasoning", "confidence_level", "market_conditions", "follow_up_date")

_OUTCOME_ORDER = {"win": 4, "regret": 3, "miss": 2, "noise": 1, "pending": 0}

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def deal_summary(deal: Deal) -> dict:
    return {
        "id": deal.id, "company_name": deal.company_name, "sector": deal.sector,
        "stage": deal.stage, "valuation_usd": deal.valuation_usd,
        "equity_offered": deal.equity_offered, "founder_name": deal.founder_name,
        "overall_score": deal.overall_score, "ai_score": deal.ai_score,
        "outcome": deal.outcome, "pass_date": iso(deal.pass_date),
        "created_at": iso(deal.created_at), "updated_at": iso(deal.updated_at),
    }


def deal_detail(deal: Deal) -> dict:
    base = deal_summary(deal)
    base.update({f: getattr(deal, f) for f in DEAL_FIELDS})
    base.update({
        "outcome_notes": deal.outcome_notes, "ai_analysis": deal.ai_analysis,
        "ai_memo": deal.ai_memo,
        "backtest_result": json_parse(deal.backtest_result_json, None),
        "objections_at_pass": json_parse(deal.objections_at_pass_json, []),
        "stage_history": stage_history(deal),
    })
    return base


def touchpoint_dict(tp: Touchpoint) -> dict:
    return {
        "id": tp.id, "contact_id": tp.contact_id, "type": tp.type, "summary": tp.summary,
        "outcome": tp.outcome, "date": iso(tp.date),
    }


def contact_summary(contact: Contact) -> dict:
    out = {f: getattr(contact, f) for f in CONTACT_FIELDS}
    out.update({
        "id": contact.id,
        "warmth_level": warmth_level(contact.warmth_score),
        "last_touchpoint": iso(contact.last_touchpoint),
        "access_paths": json_parse(contact.access_paths_json, []),
    })
    return out


def contact_detail(contact: Contact) -> dict:
    base = contact_summary(contact)
    base["touchpoints"] = [
        touchpoint_dict(tp) for tp in sorted(contact.touchpoints, key=lambda t: t.date, reverse=True)
    ]
    return base


def position_dict(pos: PortfolioPosition) -> dict:
    out = {f: getattr(pos, f) for f in POSITION_FIELDS + METRIC_FIELDS}
    out.update({
        "id": pos.id, "deal_id": pos.deal_id,
        "entry_date": iso(pos.entry_date), "exit_date": iso(pos.exit_date),
        "return_multiple": pos.return_multiple,
        "last_metrics_update": iso(pos.last_metrics_update),
        "paper_value": paper_value(pos.current_valuation_usd, pos.entry_valuation_usd, pos.equity_percent),
    })
    return out


def insight_dict(ins: Insight) -> dict:
    out = {f: getattr(ins, f) for f in INSIGHT_FIELDS}
    out.update({
        "id": ins.id, "publish_date": iso(ins.publish_date),
        "scheduled_date": iso(ins.scheduled_date),
        "engagement_total": ins.engagement_likes + ins.engagement_comments + ins.engagement_shares,
    })
    return out


def goal_dict(goal: Goal) -> dict:
    out = {f: getattr(goal, f) for f in GOAL_FIELDS}
    out["id"] = goal.id
    out["progress"] = (
        min(100.0, round(goal.current_value / goal.target_value * 100, 1)) if goal.target_value else None
    )
    return out


def review_dict(review: WeeklyReview) -> dict:
    out = {f: getattr(review, f) for f in REVIEW_FIELDS}
    out.update({"id": review.id, "week_start_date": iso(review.week_start_date)})
    return out


def journal_dict(entry: DecisionJournalEntry) -> dict:
    out = {f: getattr(entry, f) for f in JOURNAL_FIELDS}
    out.update({
        "id": entry.id, "deal_id": entry.deal_id,
        "company_name": entry.deal.company_name if entry.deal is not None else None,
        "follow_up_date": iso(entry.follow_up_date),
        "follow_up_outcome": entry.follow_up_outcome,
        "created_at": iso(entry.created_at),
    })
    return out


def pattern_dict(pattern: DealPattern) -> dict:
    return {
        "id": pattern.id, "pattern_name": pattern.pattern_name,
        "positive_signals": json_parse(pattern.positive_signals_json, []),
        "negative_signals": json_parse(pattern.negative_signals_json, []),
        "weight": pattern.weight,
    }


def activity_dict(act: Activity) -> dict:
    return {
        "id": act.id, "type": act.type, "title": act.title, "description": act.description,
        "entity_type": act.entity_type, "entity_id": act.entity_id,
        "created_at": iso(act.created_at),
    }


def evaluation_dict(ev: AIEvaluation) -> dict:
    return {
        "id": ev.id, "deal_id": ev.deal_id, "evaluation_type": ev.evaluation_type,
        "input": json_parse(ev.input_json), "output": json_parse(ev.output_json),
        "model_used": ev.model_used, "created_at": iso(ev.created_at),
    }


# ---------------------------------------------------------------------------
# Filtering and sorting
# ---------------------------------------------------------------------------


def filter_and_sort(
    items: list[dict], *, stage=None, outcome=None, sector=None, search=None,
    sort_by="created_at", sort_dir="desc",
) -> list[dict]:
    if stage:
        ss = {s.strip().lower() for s in stage.split(",")}
        items = [i for i in items if i["stage"] in ss]
    if outcome:
        os_ = {o.strip().lower() for o in outcome.split(",")}
        items = [i for i in items if (i.get("outcome") or "pending") in os_]
    if sector:
        q = sector.lower()
        items = [i for i in items if q in (i.get("sector") or "").lower()]
    if search:
        q = search.lower()
        items = [i for i in items if q in i["company_name"].lower()
                 or q in (i.get("founder_name") or "").lower() or q in (i.get("sector") or "").lower()]

    def sort_key(item: dict):
        if sort_by in ("ai_score", "overall_score", "valuation_usd"):
            return item[sort_by] if item[sort_by] is not None else -1
        if sort_by == "company_name":
            return item["company_name"].lower()
        if sort_by == "stage":
            return DEAL_STAGES.index(item["stage"]) if item["stage"] in DEAL_STAGES else -1
        if sort_by == "outcome":
            return _OUTCOME_ORDER.get(item.get("outcome") or "pending", -1)
        return item.get("created_at") or ""

    items.sort(key=sort_key, reverse=(sort_dir == "desc"))
    return items


def query_deals(session: Session, **filters) -> list[dict]:
    deals = session.execute(select(Deal)).scalars().all()
    return filter_and_sort([deal_summary(d) for d in deals], **filters)


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def _check_choice(value: str | None, valid: tuple[str, ...], label: str) -> None:
    if value is not None and value not in valid:
        raise ValueError(f"Invalid {label} {value!r}; expected one of {', '.join(valid)}")


def log_activity(
    session: Session, type: str, title: str, description: str = "",
    entity_type: str = "", entity_id: int | None = None,
) -> Activity:
    """Append to the activity log (caller must commit)."""
    _check_choice(type, ACTIVITY_TYPES, "activity type")
    act = Activity(type=type, title=title, description=description,
                   entity_type=entity_type, entity_id=entity_id)
    session.add(act)
    return act


def recent_activities(session: Session, limit: int = 10) -> list[dict]:
    rows = session.execute(
        select(Activity).order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit)
    ).scalars().all()
    return [activity_dict(a) for a in rows]


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


def set_deal_stage(deal: Deal, new_stage: str, now: datetime | None = None) -> bool:
    """Move a deal to *new_stage*, recording history; returns False if unchanged."""
    _check_choice(new_stage, DEAL_STAGES, "stage")
    if deal.stage == new_stage:
        return False
    now = now or utc_now()
    history = append_stage_change(stage_history(deal), deal.stage, new_stage, at=now)
    deal.stage_history_json = to_json(history)
    deal.stage = new_stage
    if new_stage in PASS_STAGES and deal.pass_date is None:
        deal.pass_date = now
    return True


def create_deal(session: Session, data: dict[str, Any]) -> Deal:
    """Create a deal and log ``deal_created`` (caller must commit)."""
    name = (data.get("company_name") or "").strip()
    if not name:
        raise ValueError("company_name is required")
    stage = data.get("stage") or "review"
    _check_choice(stage, DEAL_STAGES, "stage")
    _check_choice(data.get("outcome"), DEAL_OUTCOMES, "outcome")
    deal = Deal(company_name=name, stage=stage, outcome=data.get("outcome"))
    apply_updates(deal, {**data, "company_name": name}, DEAL_FIELDS)
    if stage in PASS_STAGES:
        deal.pass_date = utc_now()
    session.add(deal)
    session.flush()
    log_activity(session, "deal_created", f"New deal: {name}",
                 f"{deal.founder_name or 'Unknown founder'} / {deal.sector or 'no sector'}",
                 "deal", deal.id)
    return deal


def update_deal(session: Session, deal: Deal, updates: dict[str, Any]) -> Deal:
    """Partial update; stage changes go through :func:`set_deal_stage` (caller must commit)."""
    _check_choice(updates.get("outcome"), DEAL_OUTCOMES, "outcome")
    apply_updates(deal, updates, DEAL_FIELDS)
    if updates.get("outcome") is not None:
        deal.outcome = updates["outcome"]
    if updates.get("objections_at_pass") is not None:
        deal.objections_at_pass_json = to_json(list(updates["objections_at_pass"]))
    if updates.get("stage") is not None:
        previous = deal.stage
        if set_deal_stage(deal, updates["stage"]):
            log_activity(session, "deal_updated", f"{deal.company_name} moved to {deal.stage}",
                         f"From {previous}", "deal", deal.id)
    return deal


def set_analysis_notes(deal: Deal, body: str) -> Deal:
    deal.notes = upsert_section(deal.notes, body, ANALYSIS_HEADING)
    return deal


def delete_deal(session: Session, deal: Deal) -> None:
    """Delete a deal, detaching any portfolio positions created from it (caller must commit)."""
    session.execute(
        update(PortfolioPosition).where(PortfolioPosition.deal_id == deal.id).values(deal_id=None)
    )
    session.delete(deal)


def find_past_passes(session: Session, company_name: str) -> list[dict]:
    """Passed or rejected deals whose company name contains *company_name*."""
    q = (company_name or "").strip().lower()
    if len(q) < 2:
        return []
    deals = session.execute(
        select(Deal).where(Deal.stage.in_(PASS_STAGES)).order_by(Deal.pass_date.desc())
    ).scalars().all()
    return [
        {**deal_summary(d), "pass_reason": d.pass_reason,
         "objections_at_pass": json_parse(d.objections_at_pass_json, [])}
        for d in deals if q in d.company_name.lower()
    ]


def submit_intake(session: Session, data: dict[str, Any]) -> tuple[Deal, Contact]:
    """Turn a public intake submission into a founder contact and a deal (caller must commit)."""
    company = (data.get("company_name") or "").strip()
    founder = (data.get("full_name") or "").strip()
    if not company or not founder:
        raise ValueError("company_name and full_name are required")
    now = utc_now()
    contact = Contact(
        name=founder, organization=company, role=data.get("role") or "",
        email=data.get("email") or "", phone=data.get("phone") or "",
        linkedin=data.get("founder_linkedin") or "", tier="founder", trust_level=3,
        warmth_score=5.0, notes=f"Submitted via intake form on {now.date().isoformat()}",
        relationship_context=f"Founder at {company}. {data.get('one_sentence') or ''}".strip(),
    )
    deal = Deal(
        company_name=company, sector=data.get("primary_industry") or "", stage="review",
        founder_name=founder, founder_linkedin=data.get("founder_linkedin") or "",
        deck_url=data.get("pitch_deck_url") or "",
        notes=build_intake_notes(data, submitted_at=now),
        vision_2030_alignment=vision_alignment_from_intake(data.get("saudi_operating")),
    )
    session.add_all([contact, deal])
    session.flush()
    log_activity(session, "deal_created", f"New intake: {company}",
                 f"{founder} submitted {company} via intake form", "deal", deal.id)
    return deal, contact


# ---------------------------------------------------------------------------
# Contacts, touchpoints and warmth
# ---------------------------------------------------------------------------


def create_contact(session: Session, data: dict[str, Any]) -> Contact:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    _check_choice(data.get("tier"), CONTACT_TIERS, "tier")
    contact = Contact(name=name)
    apply_updates(contact, {**data, "name": name}, CONTACT_FIELDS)
    if data.get("access_paths") is not None:
        contact.access_paths_json = to_json(list(data["access_paths"]))
    session.add(contact)
    session.flush()
    log_activity(session, "contact_added", f"Added contact: {name}",
                 f"{contact.tier} at {contact.organization or 'unknown org'}", "contact", contact.id)
    return contact


def update_contact(contact: Contact, updates: dict[str, Any]) -> Contact:
    _check_choice(updates.get("tier"), CONTACT_TIERS, "tier")
    apply_updates(contact, updates, CONTACT_FIELDS)
    if updates.get("access_paths") is not None:
        contact.access_paths_json = to_json(list(updates["access_paths"]))
    return contact


def recompute_warmth(contact: Contact, now: datetime | None = None) -> float:
    breakdown = calculate_warmth(contact.touchpoints, now=now)
    contact.warmth_score = breakdown.warmth_score
    return breakdown.warmth_score


def recompute_all_warmth(session: Session, now: datetime | None = None) -> int:
    """Refresh warmth for every contact with touchpoints (caller must commit)."""
    contacts = session.execute(select(Contact)).scalars().all()
    updated = 0
    for c in contacts:
        if c.touchpoints:
            recompute_warmth(c, now)
            updated += 1
    log.info("Recomputed warmth for %d contacts", updated)
    return updated


def log_touchpoint(
    session: Session, contact: Contact, type: str, summary: str = "", outcome: str = "",
    when: datetime | date | str | None = None,
) -> Touchpoint:
    """Record an interaction, bump ``last_touchpoint`` and recompute warmth (caller must commit)."""
    _check_choice(type, TOUCHPOINT_TYPES, "touchpoint type")
    at = as_naive_utc(when) if when is not None else utc_now()
    tp = Touchpoint(type=type, summary=summary, outcome=outcome, date=at)
    contact.touchpoints.append(tp)
    if contact.last_touchpoint is None or at > contact.last_touchpoint:
        contact.last_touchpoint = at
    recompute_warmth(contact)
    log_activity(session, "touchpoint_logged", f"{type.title()} with {contact.name}",
                 summary, "contact", contact.id)
    return tp


def access_path_for(session: Session, target_name: str = "", target_company: str = "") -> AccessPath:
    contacts = session.execute(select(Contact).order_by(Contact.id)).scalars().all()
    return find_access_path(contacts, target_name=target_name, target_company=target_company)


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


def _apply_position_updates(pos: PortfolioPosition, updates: dict[str, Any]) -> None:
    _check_choice(updates.get("status"), PORTFOLIO_STATUSES, "status")
    _check_choice(updates.get("health_status"), HEALTH_STATUSES, "health status")
    apply_updates(pos, updates, POSITION_FIELDS)
    if any(updates.get(f) is not None for f in METRIC_FIELDS):
        apply_updates(pos, updates, METRIC_FIELDS)
        pos.last_metrics_update = utc_now()
    if pos.exit_valuation_usd:
        pos.return_multiple = return_multiple(pos.exit_valuation_usd, pos.entry_valuation_usd)


def create_position(session: Session, data: dict[str, Any], deal: Deal | None = None) -> PortfolioPosition:
    """Open a portfolio position, defaulting entry terms from *deal* (caller must commit)."""
    name = (data.get("company_name") or (deal.company_name if deal else "")).strip()
    if not name:
        raise ValueError("company_name is required")
    pos = PortfolioPosition(
        company_name=name,
        deal_id=deal.id if deal else None,
        sector=deal.sector if deal else "",
        entry_valuation_usd=deal.valuation_usd if deal else None,
        equity_percent=deal.equity_offered if deal else None,
        entry_date=utc_now().date(),
        status="active", health_status="healthy",
    )
    _apply_position_updates(pos, data)
    session.add(pos)
    session.flush()
    log_activity(session, "portfolio_added", f"Added {name} to portfolio",
                 f"Entry at {pos.entry_valuation_usd or 'unknown'} for {pos.equity_percent or 0}%",
                 "portfolio", pos.id)
    return pos


def update_position(pos: PortfolioPosition, updates: dict[str, Any]) -> PortfolioPosition:
    if updates.get("status") == "exited" and updates.get("exit_date") is None and pos.exit_date is None:
        updates = {**updates, "exit_date": utc_now().date()}
    _apply_position_updates(pos, updates)
    return pos


def position_scenarios(pos: PortfolioPosition, investment: float | None = None,
                       multipliers: dict[str, float] | None = None) -> dict:
    kwargs: dict[str, Any] = {"multipliers": multipliers}
    if investment is not None:
        kwargs["investment"] = investment
    scenarios = exit_scenarios(pos.current_valuation_usd, pos.entry_valuation_usd,
                               pos.equity_percent, **kwargs)
    return {
        "position_id": pos.id, "company_name": pos.company_name,
        "scenarios": [vars(s) for s in scenarios],
    }


def portfolio_summary(session: Session) -> dict:
    positions = session.execute(select(PortfolioPosition)).scalars().all()
    active = [p for p in positions if p.status == "active"]
    health: Counter[str] = Counter(p.health_status for p in active)
    exited = [p.return_multiple for p in positions if p.status == "exited" and p.return_multiple]
    return {
        "total": len(positions), "active": len(active),
        "top_positions": sum(1 for p in active if p.is_top_position),
        "total_paper_value": sum(
            paper_value(p.current_valuation_usd, p.entry_valuation_usd, p.equity_percent) for p in active
        ),
        "by_health": dict(health),
        "avg_exit_multiple": round(sum(exited) / len(exited), 2) if exited else None,
    }


# ---------------------------------------------------------------------------
# Insights, goals, reviews, journal, patterns
# ---------------------------------------------------------------------------


def create_insight(session: Session, data: dict[str, Any]) -> Insight:
    title = (data.get("title") or "").strip()
    if not title:
        raise ValueError("title is required")
    _check_choice(data.get("status"), INSIGHT_STATUSES, "status")
    ins = Insight(title=title)
    apply_updates(ins, {**data, "title": title, "status": None}, INSIGHT_FIELDS)
    session.add(ins)
    session.flush()
    if data.get("status") == "published":
        publish_insight(session, ins)
    elif data.get("status"):
        ins.status = data["status"]
    return ins


def update_insight(session: Session, ins: Insight, updates: dict[str, Any]) -> Insight:
    _check_choice(updates.get("status"), INSIGHT_STATUSES, "status")
    publishing = updates.get("status") == "published" and ins.status != "published"
    apply_updates(ins, {k: v for k, v in updates.items() if k != "status"}, INSIGHT_FIELDS)
    if publishing:
        publish_insight(session, ins)
    elif updates.get("status") is not None:
        ins.status = updates["status"]
    return ins


def publish_insight(session: Session, ins: Insight, on: date | None = None) -> Insight:
    """Mark published, stamp the date and log it (caller must commit)."""
    ins.status = "published"
    ins.publish_date = on or utc_now().date()
    log_activity(session, "insight_published", f"Published: {ins.title}",
                 ins.platform or "", "insight", ins.id)
    return ins


def insight_calendar(session: Session, today: date | None = None, days: int = 30) -> list[dict]:
    """Unpublished insights scheduled within the next *days* days."""
    start = today or utc_now().date()
    end = start + timedelta(days=days)
    rows = session.execute(
        select(Insight)
        .where(Insight.status != "published")
        .where(Insight.scheduled_date.is_not(None))
        .where(Insight.scheduled_date >= start, Insight.scheduled_date <= end)
        .order_by(Insight.scheduled_date)
    ).scalars().all()
    return [insight_dict(i) for i in rows]


def engagement_totals(session: Session) -> dict:
    published = session.execute(select(Insight).where(Insight.status == "published")).scalars().all()
    return {
        "published": len(published),
        "likes": sum(i.engagement_likes for i in published),
        "comments": sum(i.engagement_comments for i in published),
        "shares": sum(i.engagement_shares for i in published),
        "inbound_inquiries": sum(i.inbound_inquiries for i in published),
    }


def create_goal(session: Session, data: dict[str, Any]) -> Goal:
    if not (data.get("title") or "").strip() or data.get("year") is None:
        raise ValueError("title and year are required")
    q = data.get("quarter")
    if q is not None and q not in (1, 2, 3, 4):
        raise ValueError("quarter must be 1-4")
    goal = Goal(title=data["title"].strip(), year=data["year"])
    apply_updates(goal, {**data, "title": data["title"].strip()}, GOAL_FIELDS)
    session.add(goal)
    return goal


def toggle_goal(goal: Goal) -> Goal:
    goal.is_completed = not goal.is_completed
    return goal


def week_start(day: date) -> date:
    """The Sunday that starts *day*'s week."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def save_weekly_review(session: Session, data: dict[str, Any], day: date | None = None) -> WeeklyReview:
    """Upsert the review for the week containing *day* (caller must commit)."""
    start = week_start(day or utc_now().date())
    review = session.execute(
        select(WeeklyReview).where(WeeklyReview.week_start_date == start)
    ).scalars().first()
    if review is None:
        review = WeeklyReview(week_start_date=start)
        session.add(review)
    apply_updates(review, data, REVIEW_FIELDS)
    return review


def create_journal_entry(session: Session, data: dict[str, Any]) -> DecisionJournalEntry:
    _check_choice(data.get("decision"), JOURNAL_DECISIONS, "decision")
    if not data.get("decision"):
        raise ValueError("decision is required")
    conf = data.get("confidence_level")
    if conf is not None and not 1 <= conf <= 10:
        raise ValueError("confidence_level must be 1-10")
    deal_id = data.get("deal_id")
    if deal_id is not None and session.get(Deal, deal_id) is None:
        raise LookupError("Deal not found")
    entry = DecisionJournalEntry(deal_id=deal_id, decision=data["decision"])
    apply_updates(entry, data, JOURNAL_FIELDS)
    session.add(entry)
    return entry


def record_follow_up(entry: DecisionJournalEntry, outcome: str) -> DecisionJournalEntry:
    entry.follow_up_outcome = outcome
    return entry


def create_pattern(session: Session, data: dict[str, Any]) -> DealPattern | None:
    """Create a pattern; returns None if the name is taken (caller must commit)."""
    name = (data.get("pattern_name") or "").strip()
    if not name:
        raise ValueError("pattern_name is required")
    taken = session.execute(
        select(DealPattern.id).where(func.lower(DealPattern.pattern_name) == name.lower())
    ).first()
    if taken:
        return None
    pattern = DealPattern(
        pattern_name=name,
        positive_signals_json=to_json(list(data.get("positive_signals") or [])),
        negative_signals_json=to_json(list(data.get("negative_signals") or [])),
        weight=data.get("weight") if data.get("weight") is not None else 1.0,
    )
    session.add(pattern)
    session.flush()
    log_activity(session, "pattern_created", f"New pattern: {name}", "", "pattern", pattern.id)
    return pattern


def update_pattern(pattern: DealPattern, updates: dict[str, Any]) -> DealPattern:
    if updates.get("pattern_name"):
        pattern.pattern_name = updates["pattern_name"]
    if updates.get("positive_signals") is not None:
        pattern.positive_signals_json = to_json(list(updates["positive_signals"]))
    if updates.get("negative_signals") is not None:
        pattern.negative_signals_json = to_json(list(updates["negative_signals"]))
    if updates.get("weight") is not None:
        pattern.weight = updates["weight"]
    return pattern


# ---------------------------------------------------------------------------
# Evaluator operations
# ---------------------------------------------------------------------------


def record_evaluation(
    session: Session, evaluation_type: str, input_data: Any, output_data: Any,
    model_used: str = "", deal_id: int | None = None,
) -> AIEvaluation:
    _check_choice(evaluation_type, EVALUATION_TYPES, "evaluation type")
    ev = AIEvaluation(
        deal_id=deal_id, evaluation_type=evaluation_type, input_json=to_json(input_data),
        output_json=to_json(output_data), model_used=model_used,
    )
    session.add(ev)
    return ev


def _history(session: Session, exclude_id: int | None = None) -> list[Deal]:
    """Deals with a decided outcome, newest first, for evaluator context."""
    rows = session.execute(
        select(Deal).where(Deal.outcome.is_not(None), Deal.outcome != "pending")
        .order_by(Deal.created_at.desc())
    ).scalars().all()
    return [d for d in rows if d.id != exclude_id]


def _log_eval(session: Session, action: str, title: str, deal_id: int | None = None) -> None:
    log_activity(session, "ai_evaluation", title, action, "deal" if deal_id else "", deal_id)


async def run_score(session: Session, deal: Deal, client: LLMClient | None = None) -> dict:
    """Score a deal and write the result back onto it (caller must commit)."""
    client = client or LLMClient()
    patterns = session.execute(select(DealPattern)).scalars().all()
    result = await evaluator.score_deal(client, deal, _history(session, deal.id), patterns)
    deal.ai_score = result["overall_score"]
    for f in ("vision_2030_alignment", "founder_execution_score", "founder_sales_ability", "iteration_speed"):
        if result[f] is not None:
            setattr(deal, f, result[f])
    deal.failure_modes = "\n".join(result["failure_modes"])
    deal.exit_potential = result["exit_potential"]
    deal.ai_analysis = result["reasoning"]
    record_evaluation(session, "score", deal_detail(deal), result, client.model, deal.id)
    _log_eval(session, "score", f"AI scored {deal.company_name}: {result['overall_score']}/100", deal.id)
    log.info("Scored deal %d (%s): %s/100", deal.id, deal.company_name, result["overall_score"])
    return result


async def run_memo(session: Session, deal: Deal, client: LLMClient | None = None) -> str:
    client = client or LLMClient()
    memo = await evaluator.write_memo(client, deal)
    deal.ai_memo = memo
    record_evaluation(session, "memo", deal_detail(deal), {"memo": memo}, client.model, deal.id)
    _log_eval(session, "memo", f"Memo generated for {deal.company_name}", deal.id)
    return memo


async def run_backtest(session: Session, deal: Deal, client: LLMClient | None = None,
                       investment: float = DEFAULT_BACKTEST_INVESTMENT) -> dict:
    """Backtest a deal and store the scenarios; the reply adds returns on *investment*."""
    client = client or LLMClient()
    result = await evaluator.run_backtest(client, deal)
    deal.backtest_result_json = to_json(result)
    record_evaluation(session, "backtest", deal_detail(deal), result, client.model, deal.id)
    _log_eval(session, "backtest", f"Backtest run for {deal.company_name}", deal.id)
    return {**result, "investment": investment, "returns": scenario_returns(result, investment)}


async def run_chat(session: Session, message: str, client: LLMClient | None = None) -> str:
    client = client or LLMClient()
    reply = await evaluator.chat(client, message, _history(session))
    record_evaluation(session, "chat", {"message": message}, {"response": reply}, client.model)
    return reply


async def run_insight(session: Session, topic: str | None = None, client: LLMClient | None = None,
                      save: bool = False) -> dict:
    """Draft an insight; with *save* the draft is stored as a ``draft`` insight (caller must commit)."""
    client = client or LLMClient()
    content = await evaluator.draft_insight(client, topic)
    record_evaluation(session, "insight", {"topic": topic}, {"content": content}, client.model)
    out: dict[str, Any] = {"content": content, "insight_id": None}
    if save:
        first = content.strip().splitlines()[0] if content.strip() else ""
        ins = Insight(title=(topic or first.lstrip("# ").strip() or "AI draft")[:500],
                      content=content, status="draft")
        session.add(ins)
        session.flush()
        out["insight_id"] = ins.id
    return out


async def run_categorize(session: Session, contacts: list[Contact], client: LLMClient | None = None,
                         apply: bool = True) -> list[str]:
    """Tier *contacts* via the evaluator; with *apply* the tiers are written back."""
    client = client or LLMClient()
    tiers = await evaluator.categorize_contacts(client, contacts)
    if apply:
        for c, tier in zip(contacts, tiers):
            c.tier = tier
    record_evaluation(session, "categorize-contacts",
                      [{"name": c.name, "organization": c.organization, "role": c.role} for c in contacts],
                      tiers, client.model)
    return tiers


async def run_warmth_analysis(session: Session, contact: Contact, client: LLMClient | None = None) -> dict:
    client = client or LLMClient()
    meetings = sum(1 for tp in contact.touchpoints if tp.type in HIGH_CONTEXT_TYPES)
    result = await evaluator.assess_warmth(client, contact, len(contact.touchpoints), meetings)
    result["computed"] = calculate_warmth(contact.touchpoints).to_dict()
    record_evaluation(session, "calculate-warmth", contact_summary(contact), result, client.model)
    return result


async def run_access_advice(session: Session, target_name: str, client: LLMClient | None = None) -> dict:
    if not (target_name or "").strip():
        raise ValueError("target_name is required")
    client = client or LLMClient()
    contacts = session.execute(
        select(Contact).order_by(Contact.warmth_score.desc().nulls_last())
    ).scalars().all()
    result = await evaluator.advise_access_path(client, target_name, contacts)
    result["heuristic"] = find_access_path(contacts, target_name=target_name).to_dict()
    record_evaluation(session, "find-access-path", {"target_name": target_name}, result, client.model)
    return result


async def run_resurface_check(session: Session, deal: Deal, new_notes: str = "",
                              new_valuation: float | None = None,
                              client: LLMClient | None = None) -> dict:
    client = client or LLMClient()
    result = await evaluator.check_resurface(client, deal, new_notes, new_valuation)
    record_evaluation(session, "check-resurface",
                      {"deal": deal_summary(deal), "new_notes": new_notes, "new_valuation": new_valuation},
                      result, client.model, deal.id)
    _log_eval(session, "check-resurface", f"Resurface check for {deal.company_name}", deal.id)
    return result


async def run_velocity_analysis(session: Session, client: LLMClient | None = None) -> dict:
    client = client or LLMClient()
    deals = session.execute(
        select(Deal).where(Deal.stage.not_in(CLOSED_STAGES)).order_by(Deal.updated_at.desc())
    ).scalars().all()
    result = await evaluator.analyze_pipeline_velocity(client, deals)
    record_evaluation(session, "analyze-velocity", [deal_summary(d) for d in deals[:20]], result, client.model)
    return result


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def _month_start(day: date, months_back: int) -> date:
    """First day of the month *months_back* months before *day* (negative looks ahead)."""
    y, m = divmod(day.year * 12 + day.month - 1 - months_back, 12)
    return date(y, m + 1, 1)


def deal_flow_metrics(deals: list[Deal], now: datetime | None = None) -> dict:
    """Monthly flow, conversion, pass rate and pipeline age over *deals*."""
    now = now or utc_now()
    today = now.date()

    monthly = []
    for back in range(5, -1, -1):
        start = _month_start(today, back)
        end = _month_start(today, back - 1)
        in_month = [d for d in deals if start <= d.created_at.date() < end]
        monthly.append({
            "month": start.strftime("%b"),
            "total": len(in_month),
            "closed": sum(1 for d in in_month if d.stage == "closed"),
            "passed": sum(1 for d in in_month if d.stage in PASS_STAGES),
            "evaluating": sum(1 for d in in_month if d.stage in ("evaluating", "term_sheet")),
        })

    total = len(deals)
    closed = sum(1 for d in deals if d.stage == "closed")
    passed = sum(1 for d in deals if d.stage in PASS_STAGES)
    active = [d for d in deals if d.stage not in CLOSED_STAGES]
    scored = [d.ai_score for d in deals if d.ai_score is not None]
    this_month = monthly[-1]["total"]
    last_month = monthly[-2]["total"]
    if last_month:
        mom = (this_month - last_month) / last_month * 100
    else:
        mom = 100.0 if this_month else 0.0

    outcomes: Counter[str] = Counter(d.outcome or "pending" for d in deals)
    sectors: Counter[str] = Counter(d.sector or "Uncategorized" for d in deals)
    return {
        "monthly": monthly,
        "total_deals": total, "closed_deals": closed, "passed_deals": passed,
        "conversion_rate": closed / total * 100 if total else 0.0,
        "pass_rate": passed / total * 100 if total else 0.0,
        "avg_days_in_pipeline": (
            sum(days_between(d.created_at, now) for d in active) / len(active) if active else 0.0
        ),
        "avg_ai_score": sum(scored) / len(scored) if scored else 0.0,
        "outcomes": {k: v for k, v in outcomes.items() if v},
        "top_sectors": sectors.most_common(5),
        "current_month_deals": this_month, "last_month_deals": last_month,
        "mom_change": mom,
    }


def compute_dashboard(session: Session, now: datetime | None = None) -> dict:
    deals = list(session.execute(select(Deal)).scalars().all())
    positions = session.execute(select(PortfolioPosition)).scalars().all()
    key_ten = session.execute(select(Contact).where(Contact.is_key_ten.is_(True))).scalars().all()
    published = session.execute(select(Insight).where(Insight.status == "published")).scalars().all()
    return {
        "active_deals": sum(1 for d in deals if d.stage not in CLOSED_STAGES),
        "active_positions": sum(1 for p in positions if p.status == "active"),
        "key_ten_contacts": len(key_ten),
        "published_insights": len(published),
        "recent_activities": recent_activities(session, 10),
        "deal_flow": deal_flow_metrics(deals, now),
    }


def compute_stats(session: Session) -> dict:
    deals = session.execute(select(Deal)).scalars().all()
    contacts = session.execute(select(Contact)).scalars().all()
    return {
        "deals": len(deals),
        "by_stage": dict(Counter(d.stage for d in deals)),
        "by_outcome": dict(Counter(d.outcome or "pending" for d in deals)),
        "contacts": len(contacts),
        "by_tier": dict(Counter(c.tier for c in contacts)),
        "by_warmth": dict(Counter(warmth_level(c.warmth_score) for c in contacts)),
        "evaluations": len(session.execute(select(AIEvaluation.id)).all()),
    }


def reset_all(session: Session) -> None:
    """Delete every row (caller must commit)."""
    for model in (AIEvaluation, DecisionJournalEntry, Touchpoint, PortfolioPosition, Deal,
                  Contact, Insight, Activity, Goal, DealPattern, WeeklyReview):
        session.execute(delete(model))
    log.warning("Deleted all DealDesk data")
