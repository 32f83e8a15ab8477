from __future__ import annotations

import csv
import io
import logging
import re
from pathlib import Path
from typing import Any, Iterable, Sequence

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk import evaluator
from dealdesk.evaluator import LLMCallError, LLMClient
from dealdesk.models import DEAL_OUTCOMES, DEAL_STAGES, PASS_STAGES, Contact, Deal
from dealdesk.schemas import ImportResult
from dealdesk.services import deal_summary, log_activity
from dealdesk.utils import utc_now

log = logging.getLogger(__name__)

CATEGORIZE_BATCH_SIZE = 20

# (field key, label) in the order columns are offered for mapping
DEAL_IMPORT_FIELDS: tuple[tuple[str, str], ...] = (
    ("company_name", "Company Name"),
    ("sector", "Sector"),
    ("valuation_usd", "Valuation (USD)"),
    ("equity_offered", "Equity %"),
    ("founder_name", "Founder Name"),
    ("stage", "Stage"),
    ("outcome", "Outcome"),
    ("notes", "Notes"),
)

EXPORT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("company_name", "Company"),
    ("sector", "Sector"),
    ("stage", "Stage"),
    ("valuation_usd", "Valuation (USD)"),
    ("equity_offered", "Equity %"),
    ("founder_name", "Founder"),
    ("overall_score", "Score"),
    ("ai_score", "AI Score"),
    ("outcome", "Outcome"),
    ("pass_reason", "Pass Reason"),
    ("created_at", "Created"),
)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _num(value: str) -> float | None:
    """Parse a number, keeping only digits, ``.`` and ``-`` (``$1,200,000`` -> 1200000)."""
    cleaned = re.sub(r"[^0-9.\-]", "", value)
    try:
        return float(cleaned)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Reading rows
# ---------------------------------------------------------------------------


def read_csv_rows(text: str) -> tuple[list[str], list[dict[str, str]]]:
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    rows = [r for r in reader if any(c.strip() for c in r)]
    if not rows:
        return [], []
    headers = [h.strip() for h in rows[0]]
    return headers, [
        {h: (r[i].strip() if i < len(r) else "") for i, h in enumerate(headers)} for r in rows[1:]
    ]


def read_xlsx_rows(file_path: str | Path) -> tuple[list[str], list[dict[str, str]]]:
    """First worksheet as header + row dicts."""
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        rows = list(ws.iter_rows(values_only=True))
    finally:
        wb.close()
    if not rows:
        return [], []
    headers = [_s(h) for h in rows[0]]
    out = []
    for row in rows[1:]:
        if not row or not any(_s(c) for c in row):
            continue
        out.append({h: _s(row[i]) if i < len(row) else "" for i, h in enumerate(headers) if h})
    return headers, out


def read_rows(file_path: str | Path) -> tuple[list[str], list[dict[str, str]]]:
    path = Path(file_path)
    if path.suffix.lower() == ".xlsx":
        return read_xlsx_rows(path)
    if path.suffix.lower() == ".csv":
        return read_csv_rows(path.read_text(encoding="utf-8-sig"))
    raise ValueError(f"Unsupported file type: {path.suffix or path.name}")


# ---------------------------------------------------------------------------
# Deal import
# ---------------------------------------------------------------------------


def auto_map_columns(headers: Sequence[str]) -> dict[str, str]:
    """Map deal fields onto headers by spaced key, label, or exact key."""
    mapping: dict[str, str] = {}
    for key, label in DEAL_IMPORT_FIELDS:
        for h in headers:
            lower = h.lower()
            if key.replace("_", " ", 1) in lower or label.lower() in lower or lower == key:
                mapping[key] = h
                break
    return mapping


def deal_from_row(row: dict[str, str], mapping: dict[str, str]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, _label in DEAL_IMPORT_FIELDS:
        column = mapping.get(key)
        value = row.get(column, "") if column else ""
        if not value:
            continue
        if key in ("valuation_usd", "equity_offered"):
            n = _num(value)
            data[key] = (int(n) if key == "valuation_usd" and n is not None else n)
        elif key == "stage":
            data[key] = value.lower() if value.lower() in DEAL_STAGES else "review"
        elif key == "outcome":
            data[key] = value.lower() if value.lower() in DEAL_OUTCOMES else None
        else:
            data[key] = value
    return data


def import_deals(
    file_path: str | Path, session: Session, mapping: dict[str, str] | None = None,
) -> ImportResult:
    """Import deals from CSV/XLSX; rows without a company name are reported, not inserted."""
    headers, rows = read_rows(file_path)
    mapping = mapping or auto_map_columns(headers)
    if "company_name" not in mapping:
        raise ValueError("No column maps to company_name")

    imported = 0
    errors: list[str] = []
    now = utc_now()
    for idx, row in enumerate(rows, start=1):
        data = deal_from_row(row, mapping)
        if not data.get("company_name"):
            errors.append(f"Row {idx}: Missing company name")
            continue
        deal = Deal(**data)
        if deal.stage in PASS_STAGES:
            deal.pass_date = now
        session.add(deal)
        imported += 1

    if imported:
        log_activity(session, "deal_created", f"Imported {imported} deals",
                     Path(file_path).name, "deal")
    session.commit()
    log.info("Imported %d deals from %s (%d errors)", imported, file_path, len(errors))
    return ImportResult(imported=imported, skipped=len(errors), errors=errors, mapping=mapping)


# ---------------------------------------------------------------------------
# LinkedIn connections
# ---------------------------------------------------------------------------


def infer_tier_from_role(role: str | None) -> str:
    """Keyword tiering used when the evaluator is unavailable."""
    lower = (role or "").lower()
    if not lower:
        return "connector"
    if any(k in lower for k in ("founder", "ceo")):
        return "founder"
    if any(k in lower for k in ("partner", "investor", "vc", "capital", "fund")):
        return "capital_allocator"
    if any(k in lower for k in ("advisor", "board", "mentor")):
        return "advisor"
    if any(k in lower for k in ("director", "manager", "head", "vp", "chief")):
        return "gatekeeper"
    return "connector"


def _find(headers: list[str], *needles: str) -> str | None:
    return next((h for h in headers if any(n in h.lower() for n in needles)), None)


def parse_linkedin_connections(text: str) -> list[dict[str, str]]:
    """Parse a LinkedIn ``Connections.csv`` export into contact dicts."""
    # LinkedIn prefixes the export with a "Notes:" preamble before the header row
    lines = text.lstrip("\ufeff").splitlines()
    start = next((i for i, line in enumerate(lines) if "first" in line.lower() and "last" in line.lower()), 0)
    headers, rows = read_csv_rows("\n".join(lines[start:]))
    first = _find(headers, "first")
    last = _find(headers, "last")
    company = _find(headers, "company")
    position = _find(headers, "position", "title")
    url = _find(headers, "url", "profile")

    out = []
    for row in rows:
        name = f"{row.get(first, '') if first else ''} {row.get(last, '') if last else ''}".strip()
        if not name:
            continue
        out.append({
            "name": name,
            "organization": row.get(company, "") if company else "",
            "role": row.get(position, "") if position else "",
            "linkedin": row.get(url, "") if url else "",
        })
    return out


def _batches(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


async def categorize_in_batches(
    parsed: Sequence[dict[str, str]], client: LLMClient,
) -> list[str]:
    """Evaluator tiers in batches; a failed batch falls back to role keywords."""
    tiers: list[str] = []
    for batch in _batches(parsed, CATEGORIZE_BATCH_SIZE):
        try:
            result = await evaluator.categorize_contacts(client, batch)
        except LLMCallError as exc:
            log.warning("Categorization batch failed, using role keywords: %s", exc)
            result = []
        if len(result) != len(batch):
            result = [infer_tier_from_role(c.get("role")) for c in batch]
        tiers.extend(result)
    return tiers


async def import_linkedin(
    file_path: str | Path, session: Session, categorize: bool = False,
    client: LLMClient | None = None,
) -> ImportResult:
    """Import LinkedIn connections, skipping names already in the network."""
    parsed = parse_linkedin_connections(Path(file_path).read_text(encoding="utf-8-sig"))
    existing = {n.casefold() for n in session.execute(select(Contact.name)).scalars().all()}
    fresh = [c for c in parsed if c["name"].casefold() not in existing]

    if categorize and fresh:
        tiers = await categorize_in_batches(fresh, client or LLMClient())
    else:
        tiers = ["connector"] * len(fresh)

    for data, tier in zip(fresh, tiers):
        session.add(Contact(**data, tier=tier or "connector"))
    if fresh:
        log_activity(session, "contact_added", f"Imported {len(fresh)} LinkedIn connections",
                     Path(file_path).name, "contact")
    session.commit()
    skipped = len(parsed) - len(fresh)
    log.info("Imported %d LinkedIn contacts (%d already known)", len(fresh), skipped)
    return ImportResult(imported=len(fresh), skipped=skipped)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def to_csv(rows: Iterable[dict[str, Any]], columns: Sequence[tuple[str, str]]) -> str:
    """CSV with every field quoted and embedded quotes doubled."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([label for _, label in columns])
    for row in rows:
        writer.writerow(["" if row.get(key) is None else row.get(key) for key, _ in columns])
    return buf.getvalue()


def export_deals_csv(session: Session) -> str:
    deals = session.execute(select(Deal).order_by(Deal.created_at.desc())).scalars().all()
    rows = [{**deal_summary(d), "pass_reason": d.pass_reason} for d in deals]
    return to_csv(rows, EXPORT_COLUMNS)
