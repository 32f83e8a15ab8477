"""Attention alerts: decaying key relationships, stuck deals, weak scores,
unhealthy portfolio positions and due decision-journal follow-ups."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk.config import get_settings
from dealdesk.models import Contact, Deal, DecisionJournalEntry, PortfolioPosition
from dealdesk.utils import as_naive_utc, days_between, utc_now
from dealdesk.warmth import DEFAULT_WARMTH

STALE_STAGES = ("review", "evaluating")
SCORED_STAGES = ("evaluating", "term_sheet")
LOW_SCORE = 50
CRITICAL_SCORE = 30
CRITICAL_RUNWAY = 3
LOW_RUNWAY = 6

_SEVERITY_ORDER = {"red": 0, "yellow": 1}


@dataclass
class Alert:
    id: str
    type: str  # contact_decay | stale_deal | low_ai_score | portfolio_warning | follow_up_due
    title: str
    description: str
    severity: str  # red | yellow
    entity_type: str
    entity_id: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def contact_decay_alerts(contacts: Iterable[Contact], now: datetime) -> list[Alert]:
    settings = get_settings()
    out = []
    for c in contacts:
        if not c.is_key_ten:
            continue
        days = days_between(c.last_touchpoint, now) if c.last_touchpoint else None
        if days is not None and days <= settings.contact_decay_days:
            continue
        warmth = c.warmth_score if c.warmth_score is not None else DEFAULT_WARMTH
        critical = days is None or days > settings.contact_critical_days
        if critical and warmth < 4:
            severity = "red"
        elif days is not None:
            severity = "yellow"
        else:
            # never touched but still warm
            continue
        out.append(Alert(
            id=f"contact-{c.id}", type="contact_decay",
            title=f"Reconnect with {c.name}",
            description="Never contacted, relationship at risk" if days is None
            else f"{days} days since last touchpoint",
            severity=severity,
            entity_type="contact", entity_id=c.id,
        ))
    return out


def stale_deal_alerts(deals: Iterable[Deal], now: datetime) -> list[Alert]:
    settings = get_settings()
    out = []
    for d in deals:
        if d.stage not in STALE_STAGES:
            continue
        days = days_between(d.updated_at or d.created_at, now)
        if days < settings.stale_deal_days:
            continue
        out.append(Alert(
            id=f"deal-{d.id}", type="stale_deal",
            title=f"{d.company_name} stuck in {d.stage}",
            description=f"{days} days without progress, decide or pass",
            severity="red" if days > settings.stale_deal_critical_days else "yellow",
            entity_type="deal", entity_id=d.id,
        ))
    return out


def low_score_alerts(deals: Iterable[Deal]) -> list[Alert]:
    return [
        Alert(
            id=f"low-score-{d.id}", type="low_ai_score",
            title=f"{d.company_name} has low AI score",
            description=f"Score: {d.ai_score}/100, reconsider or document rationale",
            severity="red" if d.ai_score < CRITICAL_SCORE else "yellow",
            entity_type="deal", entity_id=d.id,
        )
        for d in deals
        if d.stage in SCORED_STAGES and d.ai_score is not None and d.ai_score < LOW_SCORE
    ]


def portfolio_alerts(positions: Iterable[PortfolioPosition]) -> list[Alert]:
    out = []
    for p in positions:
        if p.status != "active" or p.health_status not in ("warning", "critical"):
            continue
        runway = p.runway_months
        critical = p.health_status == "critical" or (runway is not None and runway <= CRITICAL_RUNWAY)
        out.append(Alert(
            id=f"portfolio-{p.id}", type="portfolio_warning",
            title=f"{p.company_name} needs attention",
            description=f"Runway: {runway} months, fundraising needed"
            if runway is not None and runway <= LOW_RUNWAY else f"Health status: {p.health_status}",
            severity="red" if critical else "yellow",
            entity_type="portfolio", entity_id=p.id,
        ))
    return out


def follow_up_alerts(entries: Iterable[DecisionJournalEntry], today: date) -> list[Alert]:
    out = []
    for e in entries:
        if e.follow_up_date is None or e.follow_up_date > today or e.follow_up_outcome is not None:
            continue
        company = e.deal.company_name if e.deal is not None else "unlinked decision"
        out.append(Alert(
            id=f"followup-{e.id}", type="follow_up_due",
            title=f"Follow-up due: {company}",
            description=f"Scheduled for {e.follow_up_date.isoformat()}",
            severity="yellow", entity_type="decision_journal", entity_id=e.id,
        ))
    return out


def sort_alerts(alerts: list[Alert]) -> list[Alert]:
    """Red before yellow; stable within a severity."""
    return sorted(alerts, key=lambda a: _SEVERITY_ORDER.get(a.severity, 2))


def collect_alerts(session: Session, now: datetime | None = None) -> list[Alert]:
    now = as_naive_utc(now) if now is not None else utc_now()
    deals = session.execute(select(Deal)).scalars().all()
    alerts = [
        *contact_decay_alerts(
            session.execute(select(Contact).where(Contact.is_key_ten.is_(True))).scalars().all(), now,
        ),
        *stale_deal_alerts(deals, now),
        *low_score_alerts(deals),
        *portfolio_alerts(session.execute(select(PortfolioPosition)).scalars().all()),
        *follow_up_alerts(
            session.execute(
                select(DecisionJournalEntry).where(DecisionJournalEntry.follow_up_date.is_not(None))
            ).scalars().all(),
            now.date(),
        ),
    ]
    return sort_alerts(alerts)
