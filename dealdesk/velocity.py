"""Deal stage history and pipeline velocity."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Sequence

from dealdesk.models import CLOSED_STAGES
from dealdesk.utils import as_naive_utc, days_between, json_parse, utc_now

DEFAULT_STAGE_DAYS = 7.0
FAST_RATIO = 0.5
STALE_RATIO = 2.0


def stage_history(deal: Any) -> list[dict[str, Any]]:
    """Return a deal's stage history as a list of dicts (tolerates ORM rows and dicts)."""
    if isinstance(deal, dict):
        raw = deal.get("stage_history")
        if raw is None:
            raw = json_parse(deal.get("stage_history_json"), [])
    else:
        raw = json_parse(getattr(deal, "stage_history_json", None), [])
    return [e for e in raw if isinstance(e, dict) and e.get("entered_at")] if isinstance(raw, list) else []


def append_stage_change(
    history: list[dict[str, Any]], previous_stage: str | None, new_stage: str,
    at: datetime | None = None,
) -> list[dict[str, Any]]:
    """Return *history* with a transition appended; unchanged when the stage is the same."""
    if previous_stage == new_stage:
        return history
    entry = {
        "stage": new_stage,
        "entered_at": (at or utc_now()).isoformat(),
        "previous_stage": previous_stage,
    }
    return [*history, entry]


@dataclass
class DealVelocity:
    id: Any
    company_name: str
    stage: str
    days_in_current_stage: int
    avg_for_stage: float
    velocity_ratio: float
    status: str  # fast | normal | stale


@dataclass
class VelocityReport:
    averages: dict[str, float] = field(default_factory=dict)
    deal_velocities: list[DealVelocity] = field(default_factory=list)

    @property
    def fast_deals(self) -> list[DealVelocity]:
        return [d for d in self.deal_velocities if d.status == "fast"]

    @property
    def stale_deals(self) -> list[DealVelocity]:
        return [d for d in self.deal_velocities if d.status == "stale"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "averages": self.averages,
            "deal_velocities": [asdict(d) for d in self.deal_velocities],
            "fast_deals": [asdict(d) for d in self.fast_deals],
            "stale_deals": [asdict(d) for d in self.stale_deals],
        }


def _field(deal: Any, name: str) -> Any:
    return deal.get(name) if isinstance(deal, dict) else getattr(deal, name)


def _days_in_current_stage(deal: Any, history: list[dict[str, Any]], now: datetime) -> int:
    anchor = history[-1]["entered_at"] if history else _field(deal, "created_at")
    return days_between(anchor, now)


def velocity_status(ratio: float) -> str:
    if ratio < FAST_RATIO:
        return "fast"
    if ratio > STALE_RATIO:
        return "stale"
    return "normal"


def analyze_velocity(deals: Sequence[Any], now: datetime | None = None) -> VelocityReport:
    """Average days per stage and fast/stale classification for active deals."""
    now = as_naive_utc(now) if now is not None else utc_now()
    durations: dict[str, list[int]] = defaultdict(list)

    for deal in deals:
        history = stage_history(deal)
        for prev, entry in zip(history, history[1:]):
            durations[prev.get("stage") or "review"].append(
                days_between(prev["entered_at"], entry["entered_at"])
            )
        durations[_field(deal, "stage")].append(_days_in_current_stage(deal, history, now))

    averages = {stage: sum(days) / len(days) for stage, days in durations.items()}

    velocities: list[DealVelocity] = []
    for deal in deals:
        stage = _field(deal, "stage")
        if stage in CLOSED_STAGES:
            continue
        history = stage_history(deal)
        days = _days_in_current_stage(deal, history, now)
        avg = averages.get(stage) or DEFAULT_STAGE_DAYS
        ratio = days / avg
        velocities.append(DealVelocity(
            id=_field(deal, "id"), company_name=_field(deal, "company_name"), stage=stage,
            days_in_current_stage=days, avg_for_stage=avg, velocity_ratio=ratio,
            status=velocity_status(ratio),
        ))

    velocities.sort(key=lambda v: v.velocity_ratio, reverse=True)
    return VelocityReport(averages=averages, deal_velocities=velocities)
