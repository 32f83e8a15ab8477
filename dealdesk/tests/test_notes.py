from __future__ import annotations

from datetime import datetime

from dealdesk.notes import (
    build_intake_notes,
    extract_section,
    strip_section,
    upsert_section,
    vision_alignment_from_intake,
)


class TestSections:
    def test_upsert_into_empty_notes(self):
        assert upsert_section("", "Strong team") == "## Analysis Notes\nStrong team"

    def test_upsert_appends_after_existing_content(self):
        notes = upsert_section("## Intake Submission\nhello", "Looks promising")
        assert notes == "## Intake Submission\nhello\n\n## Analysis Notes\nLooks promising"
        assert extract_section(notes) == "Looks promising"
        assert strip_section(notes) == "## Intake Submission\nhello"

    def test_upsert_replaces_only_the_section_body(self):
        notes = "## Analysis Notes\nold take\n\n## Follow-ups\ncall CFO"
        updated = upsert_section(notes, "new take")
        assert extract_section(updated) == "new take"
        assert extract_section(updated, "Follow-ups") == "call CFO"
        assert "old take" not in updated

    def test_extract_missing_section(self):
        assert extract_section(None) == ""
        assert extract_section("plain notes") == ""


class TestIntakeNotes:
    def test_renders_submission_with_placeholders(self):
        notes = build_intake_notes(
            {"one_sentence": "Payroll for SMEs", "team_roles": ["CEO", "CTO"], "team_size": 4},
            submitted_at=datetime(2026, 2, 3, 10, 0),
        )
        assert notes.startswith("## Intake Submission\n**Submitted:** 2026-02-03T10:00:00")
        assert "### One-Sentence Description\nPayroll for SMEs" in notes
        assert "- **Roles:** CEO, CTO" in notes
        assert "- **Size:** 4 full-time members" in notes
        assert "### Key Insight\nN/A" in notes
        assert [ln for ln in notes.splitlines() if ln.startswith("## ")] == ["## Intake Submission"]

    def test_vision_alignment(self):
        assert vision_alignment_from_intake("Yes, HQ in Riyadh") == 5
        assert vision_alignment_from_intake(" Open ") == 3
        assert vision_alignment_from_intake("No") == 1
        assert vision_alignment_from_intake(None) == 1
