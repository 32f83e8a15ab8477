from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from dealdesk import services
from dealdesk.alerts import collect_alerts
from dealdesk.backtest import DEFAULT_BACKTEST_INVESTMENT
from dealdesk.db import init_db, session_scope
from dealdesk.models import CONTACT_TIERS, DEAL_OUTCOMES, DEAL_STAGES, Contact, Deal, PortfolioPosition
from dealdesk.velocity import analyze_velocity

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def dealdesk_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "DealDesk",
    instructions=(
        "DealDesk is a venture-capital CRM for a pre-seed investor. "
        "Use these tools to browse the deal pipeline, inspect the relationship network, "
        "find warm introduction paths and run AI deal evaluations. "
        "Start with get_dashboard() for an overview and get_alerts() for what needs attention."
    ),
    lifespan=dealdesk_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _tool_error(action: str, exc: Exception) -> dict:
    log.warning("%s failed: %s", action, exc)
    return {"error": f"{action} failed: {exc}"}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("dealdesk://overview")
def dealdesk_overview() -> str:
    """Overview of DealDesk: data model, workflow, and vocabularies."""
    return json.dumps({
        "system": "DealDesk: venture-capital CRM",
        "description": (
            "Tracks a pre-seed deal pipeline, the investor's relationship network, "
            "portfolio positions and content, with LLM-assisted deal evaluation."
        ),
        "data_model": {
            "deal": "A company under consideration. Has a stage, stage history, scores, notes and AI outputs.",
            "contact": "A person in the network with a tier, trust level and decaying warmth score (1-10).",
            "touchpoint": "A logged interaction with a contact. Drives warmth.",
            "portfolio_position": "An investment with entry terms, health metrics and exit modelling.",
            "ai_evaluation": "Record of every evaluator call: type, input, output and model.",
        },
        "workflow": [
            "1. get_dashboard() and get_alerts() to see what needs attention.",
            "2. list_deals() to browse the pipeline; get_deal(id) for full detail.",
            "3. check_past_passes(company_name) before engaging a new company.",
            "4. score_deal(id) / generate_memo(id) / backtest_deal(id) for AI evaluation.",
            "5. find_access_path(target_name, target_company) for a warm intro route.",
            "6. log_touchpoint(contact_id, type) after every interaction.",
        ],
        "stages": list(DEAL_STAGES),
        "outcomes": list(DEAL_OUTCOMES),
        "contact_tiers": list(CONTACT_TIERS),
        "warmth": "hot >= 7, warm >= 4, cold below; unknown counts as 5.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Deals
# ---------------------------------------------------------------------------


@mcp.tool()
def list_deals(
    stage: str | None = None, outcome: str | None = None, search: str | None = None,
    sort_by: str = "created_at", sort_dir: str = "desc", limit: int = 50,
) -> list[dict]:
    """List and filter deals.

    Args:
        stage: Comma-separated from: review, evaluating, passed, term_sheet, closed, rejected.
        outcome: Comma-separated from: win, miss, regret, noise, pending.
        search: Free-text search across company, founder and sector.
        sort_by: created_at, company_name, stage, outcome, ai_score, overall_score, valuation_usd.
        sort_dir: asc or desc.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        items = services.query_deals(
            session, stage=stage, outcome=outcome, search=search, sort_by=sort_by, sort_dir=sort_dir,
        )
        return items[:max(1, min(limit, 500))]


@mcp.tool()
def get_deal(deal_id: int) -> dict:
    """Get full details for a deal including stage history and AI outputs."""
    with session_scope() as session:
        deal, err = _get_or_error(session, Deal, deal_id, "Deal")
        return err if err else services.deal_detail(deal)


@mcp.tool()
def create_deal(
    company_name: str, sector: str = "", founder_name: str = "", stage: str = "review",
    valuation_usd: int | None = None, equity_offered: float | None = None, notes: str = "",
) -> dict:
    """Add a deal to the pipeline."""
    with session_scope() as session:
        try:
            deal = services.create_deal(session, {
                "company_name": company_name, "sector": sector, "founder_name": founder_name,
                "stage": stage, "valuation_usd": valuation_usd, "equity_offered": equity_offered,
                "notes": notes,
            })
        except ValueError as exc:
            return {"error": str(exc)}
        session.commit()
        return services.deal_detail(deal)


@mcp.tool()
def update_deal(
    deal_id: int, stage: str | None = None, outcome: str | None = None,
    pass_reason: str | None = None, decision_reason: str | None = None,
    overall_score: int | None = None,
) -> dict:
    """Update a deal. Stage changes are recorded in the stage history."""
    with session_scope() as session:
        deal, err = _get_or_error(session, Deal, deal_id, "Deal")
        if err:
            return err
        try:
            services.update_deal(session, deal, {
                "stage": stage, "outcome": outcome, "pass_reason": pass_reason,
                "decision_reason": decision_reason, "overall_score": overall_score,
            })
        except ValueError as exc:
            return {"error": str(exc)}
        session.commit()
        return services.deal_detail(deal)


@mcp.tool()
def check_past_passes(company_name: str) -> list[dict]:
    """Find passed or rejected deals whose company name contains the query (2+ characters)."""
    with session_scope() as session:
        return services.find_past_passes(session, company_name)


@mcp.tool()
def deal_velocity() -> dict:
    """Average days per stage and the fast-moving and stale active deals."""
    with session_scope() as session:
        deals = session.execute(select(Deal)).scalars().all()
        return analyze_velocity(deals).to_dict()


# ---------------------------------------------------------------------------
# Tools: Network
# ---------------------------------------------------------------------------


@mcp.tool()
def list_contacts(tier: str | None = None, key_ten_only: bool = False) -> list[dict]:
    """List contacts, optionally by tier (comma-separated) or key-ten only."""
    with session_scope() as session:
        contacts = session.execute(select(Contact).order_by(Contact.name)).scalars().all()
        items = [services.contact_summary(c) for c in contacts]
        if tier:
            ts = {t.strip() for t in tier.split(",")}
            items = [c for c in items if c["tier"] in ts]
        if key_ten_only:
            items = [c for c in items if c["is_key_ten"]]
        return items


@mcp.tool()
def log_touchpoint(contact_id: int, type: str, summary: str = "", outcome: str = "") -> dict:
    """Log an interaction (meeting, call, email, introduction, event, coffee, other) and refresh warmth."""
    with session_scope() as session:
        contact, err = _get_or_error(session, Contact, contact_id, "Contact")
        if err:
            return err
        try:
            tp = services.log_touchpoint(session, contact, type, summary, outcome)
        except ValueError as exc:
            return {"error": str(exc)}
        session.commit()
        return {"touchpoint": services.touchpoint_dict(tp), "warmth_score": contact.warmth_score}


@mcp.tool()
def find_access_path(target_name: str = "", target_company: str = "") -> dict:
    """Suggest a warm route (at most three hops) to a target founder or company."""
    with session_scope() as session:
        try:
            return services.access_path_for(session, target_name, target_company).to_dict()
        except ValueError as exc:
            return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Tools: Evaluator
# ---------------------------------------------------------------------------


@mcp.tool()
async def score_deal(deal_id: int) -> dict:
    """Score a deal against the investment thesis. Requires an LLM API key."""
    with session_scope() as session:
        try:
            deal, err = _get_or_error(session, Deal, deal_id, "Deal")
            if err:
                return err
            result = await services.run_score(session, deal)
            session.commit()
            return {"deal_id": deal.id, "company_name": deal.company_name, **result}
        except Exception as exc:
            return _tool_error("Scoring", exc)


@mcp.tool()
async def generate_memo(deal_id: int) -> dict:
    """Write a one-page investment memo for a deal."""
    with session_scope() as session:
        try:
            deal, err = _get_or_error(session, Deal, deal_id, "Deal")
            if err:
                return err
            memo = await services.run_memo(session, deal)
            session.commit()
            return {"deal_id": deal.id, "memo": memo}
        except Exception as exc:
            return _tool_error("Memo", exc)


@mcp.tool()
async def backtest_deal(deal_id: int, investment: float = DEFAULT_BACKTEST_INVESTMENT) -> dict:
    """Simulate bear/base/bull outcomes for a deal.

    ``returns`` shows what *investment* would be worth in each scenario.
    """
    with session_scope() as session:
        try:
            deal, err = _get_or_error(session, Deal, deal_id, "Deal")
            if err:
                return err
            result = await services.run_backtest(session, deal, investment=investment)
            session.commit()
            return {"deal_id": deal.id, **result}
        except Exception as exc:
            return _tool_error("Backtest", exc)


@mcp.tool()
async def check_resurface(deal_id: int, new_notes: str = "", new_valuation: float | None = None) -> dict:
    """Compare a returning company's new pitch against why it was passed."""
    with session_scope() as session:
        try:
            deal, err = _get_or_error(session, Deal, deal_id, "Deal")
            if err:
                return err
            result = await services.run_resurface_check(session, deal, new_notes, new_valuation)
            session.commit()
            return {"deal_id": deal.id, **result}
        except Exception as exc:
            return _tool_error("Resurface check", exc)


@mcp.tool()
async def ask_advisor(message: str) -> dict:
    """Ask the investment advisor a question, informed by past deal outcomes."""
    with session_scope() as session:
        try:
            reply = await services.run_chat(session, message)
            session.commit()
            return {"response": reply}
        except Exception as exc:
            return _tool_error("Chat", exc)


# ---------------------------------------------------------------------------
# Tools: Portfolio & Dashboard
# ---------------------------------------------------------------------------


@mcp.tool()
def exit_scenarios(position_id: int, investment: float | None = None) -> dict:
    """Model conservative/target/moonshot exits for a portfolio position."""
    with session_scope() as session:
        pos, err = _get_or_error(session, PortfolioPosition, position_id, "Position")
        return err if err else services.position_scenarios(pos, investment)


@mcp.tool()
def get_alerts() -> list[dict]:
    """Relationship, pipeline, portfolio and follow-up alerts, red first."""
    with session_scope() as session:
        return [a.to_dict() for a in collect_alerts(session)]


@mcp.tool()
def get_dashboard() -> dict:
    """Headline counts, deal-flow metrics and recent activity."""
    with session_scope() as session:
        return services.compute_dashboard(session)


@mcp.tool()
def get_stats() -> dict:
    """Deal and contact breakdowns by stage, outcome, tier and warmth."""
    with session_scope() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the DealDesk MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
