"""Markdown helpers for deal notes.

Deal notes are a markdown document made of ``## `` sections: the intake
submission written by the public form plus free-form sections the analyst
adds (``## Analysis Notes``).
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from dealdesk.utils import utc_now

ANALYSIS_HEADING = "Analysis Notes"
INTAKE_HEADING = "Intake Submission"


def _section_re(heading: str) -> re.Pattern[str]:
    return re.compile(rf"## {re.escape(heading)}\n(.*?)(?=\n## |\Z)", re.DOTALL)


def extract_section(notes: str | None, heading: str = ANALYSIS_HEADING) -> str:
    """Return the stripped body of ``## heading`` or ``""`` when absent."""
    m = _section_re(heading).search(notes or "")
    return m.group(1).strip() if m else ""


def upsert_section(notes: str | None, body: str, heading: str = ANALYSIS_HEADING) -> str:
    """Replace the body of ``## heading``, appending the section if missing."""
    existing = notes or ""
    if f"## {heading}" in existing:
        return _section_re(heading).sub(lambda _: f"## {heading}\n{body}\n", existing, count=1)
    sep = "\n\n" if existing else ""
    return f"{existing}{sep}## {heading}\n{body}"


def strip_section(notes: str | None, heading: str = ANALYSIS_HEADING) -> str:
    """Notes with ``## heading`` removed (the intake content view)."""
    return _section_re(heading).sub("", notes or "", count=1).strip()


# ---------------------------------------------------------------------------
# Intake submission
# ---------------------------------------------------------------------------


def _v(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(v) for v in value)
    return str(value) if value not in (None, "", []) else "N/A"


def build_intake_notes(data: dict[str, Any], submitted_at: datetime | None = None) -> str:
    """Render an intake form submission as the deal's markdown notes."""
    submitted = (submitted_at or utc_now()).isoformat()
    return f"""\
## {INTAKE_HEADING}
**Submitted:** {submitted}

### One-Sentence Description
{_v(data, "one_sentence")}

### Company Description
{_v(data, "company_description")}

### Key Insight
{_v(data, "key_insight")}

### Target Customer
{_v(data, "target_customer")}

### Traction Highlights
{_v(data, "traction_highlights")}

### Team
- **Structure:** {_v(data, "founding_structure")}
- **Size:** {_v(data, "team_size")} full-time members
- **Roles:** {_v(data, "team_roles")}

### Funding
- **Currently Raising:** {_v(data, "is_raising")}
- **Round:** {_v(data, "current_round")}
- **Target Raise:** {_v(data, "target_raise")}
- **Existing Investors:** {_v(data, "existing_investors")}
- **Looking For:** {_v(data, "looking_for")}

### Goals (Next 3-6 Months)
{_v(data, "next_goals")}

### Saudi Arabia
{_v(data, "saudi_operating")}

### Revenue
{_v(data, "current_revenue")}

### Additional Notes
{_v(data, "anything_else")}

### Company Details
- **Headquarters:** {_v(data, "headquarters")}
- **Year Founded:** {_v(data, "year_founded")}
- **Company LinkedIn:** {_v(data, "company_linkedin")}
- **Co-founder LinkedIn:** {_v(data, "cofounder_linkedin")}"""


def vision_alignment_from_intake(saudi_operating: str | None) -> int:
    """Map the intake's Saudi-operating answer onto the 1-5 alignment scale."""
    answer = (saudi_operating or "").strip().lower()
    if "yes" in answer:
        return 5
    if answer == "open":
        return 3
    return 1
