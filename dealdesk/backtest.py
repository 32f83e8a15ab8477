"""Exit-scenario and backtest arithmetic for deals and portfolio positions."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_EXIT_MULTIPLIERS: dict[str, float] = {"conservative": 10, "target": 50, "moonshot": 100}
DEFAULT_SCENARIO_INVESTMENT = 50_000.0
DEFAULT_BACKTEST_INVESTMENT = 100_000.0
SCENARIO_KEYS = ("bear_case", "base_case", "bull_case")


def format_currency(value: float | int | None) -> str:
    """Compact dollar formatting: ``$1.2B``, ``$3.4M``, ``$12K``, ``$950``."""
    v = float(value or 0)
    if v >= 1_000_000_000:
        return f"${v / 1_000_000_000:.1f}B"
    if v >= 1_000_000:
        return f"${v / 1_000_000:.1f}M"
    if v >= 1_000:
        return f"${v / 1_000:.0f}K"
    return f"${v:.0f}"


def format_roi(roi: float) -> str:
    return f"{'+' if roi >= 0 else ''}{roi:.0f}%"


def format_valuation_millions(value: float | int | None, missing: str = "Not specified") -> str:
    """Prompt-style valuation: ``$12.5M``."""
    if not value:
        return missing
    return f"${value / 1_000_000:.1f}M"


# ---------------------------------------------------------------------------
# Exit scenarios
# ---------------------------------------------------------------------------


@dataclass
class ExitScenario:
    label: str
    multiplier: float
    exit_valuation: float
    your_share: float
    roi: float


def exit_scenarios(
    current_valuation: float | None,
    entry_valuation: float | None,
    equity_percent: float | None,
    investment: float = DEFAULT_SCENARIO_INVESTMENT,
    multipliers: dict[str, float] | None = None,
) -> list[ExitScenario]:
    """Model exits at each multiplier of the current (else entry) valuation."""
    base = current_valuation or entry_valuation or 0
    equity = equity_percent or 0
    out: list[ExitScenario] = []
    for label, multiplier in (multipliers or DEFAULT_EXIT_MULTIPLIERS).items():
        exit_valuation = base * multiplier
        share = exit_valuation * equity / 100
        roi = (share - investment) / investment * 100 if investment > 0 else 0.0
        out.append(ExitScenario(
            label=label, multiplier=multiplier, exit_valuation=exit_valuation,
            your_share=share, roi=roi,
        ))
    return out


def paper_value(current_valuation: float | None, entry_valuation: float | None,
                equity_percent: float | None) -> float:
    """Mark-to-model value of a position (0 when unknown)."""
    if not equity_percent:
        return 0.0
    if current_valuation:
        return current_valuation * equity_percent / 100
    if entry_valuation:
        return entry_valuation * equity_percent / 100
    return 0.0


def return_multiple(exit_valuation: float | None, entry_valuation: float | None) -> float | None:
    if not exit_valuation or not entry_valuation:
        return None
    return round(exit_valuation / entry_valuation, 2)


# ---------------------------------------------------------------------------
# Backtest normalization
# ---------------------------------------------------------------------------


def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def normalize_backtest(raw: dict[str, Any]) -> dict[str, Any]:
    """Coerce an evaluator backtest payload into a stable shape."""
    scenarios_in = raw.get("scenario_analysis")
    if not isinstance(scenarios_in, dict):
        log.warning("Backtest payload missing scenario_analysis")
        scenarios_in = {}
    scenarios: dict[str, dict[str, float]] = {}
    for key in SCENARIO_KEYS:
        case = scenarios_in.get(key) if isinstance(scenarios_in.get(key), dict) else {}
        scenarios[key] = {
            "exit_valuation": _num(case.get("exit_valuation")),
            "roi": _num(case.get("roi")),
            "probability": max(0.0, min(100.0, _num(case.get("probability")))),
        }

    if "expected_value" in raw:
        expected = _num(raw.get("expected_value"))
    else:
        expected = sum(s["exit_valuation"] * s["probability"] / 100 for s in scenarios.values())

    lessons = raw.get("lessons_learned", [])
    if not isinstance(lessons, list):
        lessons = []
    return {
        "scenario_analysis": scenarios,
        "expected_value": expected,
        "lessons_learned": [str(x) for x in lessons[:10]],
        "filter_update": str(raw.get("filter_update", "")),
    }


@dataclass
class ScenarioReturn:
    name: str
    probability: float
    exit_valuation: float
    roi: float
    return_value: float


def scenario_returns(backtest: dict[str, Any],
                     investment: float = DEFAULT_BACKTEST_INVESTMENT) -> list[dict[str, Any]]:
    """What a notional investment returns in each backtest scenario."""
    out = []
    for key in SCENARIO_KEYS:
        case = backtest.get("scenario_analysis", {}).get(key, {})
        roi = _num(case.get("roi"))
        out.append(asdict(ScenarioReturn(
            name=key, probability=_num(case.get("probability")),
            exit_valuation=_num(case.get("exit_valuation")), roi=roi,
            return_value=investment * (1 + roi / 100),
        )))
    return out
