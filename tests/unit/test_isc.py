"""Unit tests for ISC parsing, validation and the quality gate."""

import pytest

from conftest import VALID_ISC
from specfirst.isc import (
    RULE_COLUMN_COUNT,
    RULE_MISSING_SECTION,
    RULE_STATUS_SYMBOL,
    RULE_WORD_COUNT,
    count_words,
    format_quality_report,
    format_validation_report,
    load_tracker,
    parse_isc_document,
    run_quality_gate,
    strip_annotations,
    validate_isc_document,
    validate_tracker_ids,
)
from specfirst.models import AntiCriterionStatus, CriterionStatus


def make_doc(tracker_rows, anti_rows=None, sections=True):
    """Assemble an ISC document from table row strings."""
    anti_rows = anti_rows if anti_rows is not None else [
        "| ISC-A1 | No credentials exposed in git commit history today | 👀 | Grep: secrets |",
    ]
    parts = [
        "## IDEAL",
        "Ideal state.",
        "",
        "## ISC TRACKER",
        "",
        "| ID | Criterion | Status | Evidence | Verify |",
        "|----|-----------|--------|----------|--------|",
        *tracker_rows,
        "",
        "## ANTI-CRITERIA",
        "",
        "| ID | Criterion | Status | Verify |",
        "|----|-----------|--------|--------|",
        *anti_rows,
    ]
    if sections:
        parts += ["", "## PROGRESS", "", "0 verified."]
    return "\n".join(parts) + "\n"


def tracker_row(text, status="⬜", row_id="ISC-C1"):
    return f"| {row_id} | {text} | {status} | - | Test: x |"


EIGHT = "Login endpoint returns signed token for valid credentials"
TWELVE = "Login endpoint returns a signed token for every valid credential pair submitted"


class TestAnnotations:
    """Test cases for stripping tags before counting words."""

    def test_strips_tags_and_verify_suffix(self):
        text = "User session expires after thirty idle minutes [E][CRITICAL] Verify: Test: expiry"
        assert strip_annotations(text) == "User session expires after thirty idle minutes"

    def test_strips_markdown(self):
        assert strip_annotations("**Cache** hit ratio stays above `ninety` percent") == \
            "Cache hit ratio stays above ninety percent"

    def test_count_words(self):
        assert count_words(EIGHT) == 8
        assert count_words(f"{EIGHT} [I] [NICE]") == 8


class TestParsing:
    def test_valid_document(self):
        document = parse_isc_document(VALID_ISC)

        assert document.missing_sections == []
        assert [row.row_id for row in document.tracker_rows] == ["ISC-C1", "ISC-C2", "ISC-C3", "ISC-C4"]
        assert [row.row_id for row in document.anti_rows] == ["ISC-A1"]

    def test_header_and_placeholder_rows_skipped(self):
        document = parse_isc_document(make_doc([tracker_row("-"), tracker_row(EIGHT)]))

        assert len(document.tracker_rows) == 1
        assert document.tracker_rows[0].criterion == EIGHT

    def test_header_without_separator_skipped(self):
        content = VALID_ISC.replace("|----|-----------|--------|----------|--------|\n", "").replace(
            "|----|-----------|--------|--------|\n", ""
        )

        document = parse_isc_document(content)
        report = validate_isc_document(content)

        assert [row.row_id for row in document.tracker_rows] == ["ISC-C1", "ISC-C2", "ISC-C3", "ISC-C4"]
        assert [row.row_id for row in document.anti_rows] == ["ISC-A1"]
        assert report.passed

    def test_phase_headings_tag_rows(self):
        content = make_doc([
            "### Phase 1: Core",
            tracker_row(EIGHT, row_id="ISC-C1"),
        ])
        [row] = parse_isc_document(content).tracker_rows
        assert row.phase == "Phase 1: Core"

    def test_criteria_conversion(self):
        document = parse_isc_document(VALID_ISC)
        criteria = document.criteria("f1")

        assert criteria[0].text == "User authentication endpoint responds with valid JWT token"
        assert criteria[0].status is CriterionStatus.VERIFIED
        assert criteria[0].evidence == "auth tests"
        assert criteria[0].feature_id == "f1"
        assert document.anti_criteria()[0].status is AntiCriterionStatus.WATCHING


class TestValidation:
    """Structural validation of ISC documents."""

    def test_valid_document_passes(self):
        report = validate_isc_document(VALID_ISC)
        assert report.passed
        assert report.violations == []
        assert report.warnings == []

    def test_short_criterion_reports_counts(self):
        report = validate_isc_document(make_doc([tracker_row("User auth works")]))

        assert not report.passed
        [violation] = report.violations
        assert violation.rule == RULE_WORD_COUNT
        assert violation.actual == 3
        assert violation.expected_min == 8
        assert violation.expected_max == 12
        assert violation.line == 8

    @pytest.mark.parametrize("text", [EIGHT, TWELVE])
    def test_boundaries_pass(self, text):
        assert validate_isc_document(make_doc([tracker_row(text)])).passed

    @pytest.mark.parametrize("text, words", [
        ("Login endpoint returns signed token for credentials", 7),
        (TWELVE + " today", 13),
    ])
    def test_just_outside_boundaries_warn_and_fail(self, text, words):
        report = validate_isc_document(make_doc([tracker_row(text)]))

        assert not report.passed
        assert report.violations[0].actual == words
        assert len(report.warnings) == 1
        assert f"has {words} words" in report.warnings[0]

    def test_bad_status_symbol(self):
        report = validate_isc_document(make_doc([tracker_row(EIGHT, status="DONE")]))

        [violation] = report.violations
        assert violation.rule == RULE_STATUS_SYMBOL
        assert "⬜" in violation.message

    def test_anti_status_symbols_are_distinct(self):
        report = validate_isc_document(make_doc(
            [tracker_row(EIGHT)],
            anti_rows=["| ISC-A1 | No credentials exposed in git commit history today | ⬜ | Grep |"],
        ))
        assert [v.rule for v in report.violations] == [RULE_STATUS_SYMBOL]

    def test_column_count(self):
        report = validate_isc_document(make_doc([f"| ISC-C1 | {EIGHT} | ✅ |"]))
        assert [v.rule for v in report.violations] == [RULE_COLUMN_COUNT]

    def test_missing_section(self):
        report = validate_isc_document(make_doc([tracker_row(EIGHT)], sections=False))

        [violation] = report.violations
        assert violation.rule == RULE_MISSING_SECTION
        assert violation.section == "## PROGRESS"
        assert violation.line == 0

    def test_all_violations_collected_in_line_order(self):
        report = validate_isc_document(make_doc(
            [
                tracker_row("Too short", row_id="ISC-C1"),
                tracker_row(EIGHT, status="??", row_id="ISC-C2"),
            ],
            anti_rows=["| ISC-A1 | Nothing bad | 👀 | Grep |"],
        ))

        assert [v.rule for v in report.violations] == [RULE_WORD_COUNT, RULE_STATUS_SYMBOL, RULE_WORD_COUNT]
        lines = [v.line for v in report.violations]
        assert lines == sorted(lines)

    def test_format_report(self):
        text = format_validation_report(validate_isc_document(make_doc([tracker_row("User auth works")])))

        assert "FAILED" in text
        assert "Word count: 3 (expected 8-12)" in text
        assert "PASSED" in format_validation_report(validate_isc_document(VALID_ISC))


class TestQualityGate:
    def test_valid_document_passes(self):
        report = run_quality_gate(VALID_ISC)
        assert report.passed
        assert set(report.checks) == {"qg1", "qg2", "qg3", "qg4", "qg5"}

    def test_each_check_can_fail(self):
        content = make_doc(
            [
                tracker_row("Implement the login endpoint with signed token support", row_id="ISC-C1"),
                tracker_row("Session handling behaves properly for every logged in user", row_id="ISC-C2"),
                tracker_row("Short one", row_id="ISC-C3"),
            ],
            anti_rows=[],
        )
        checks = run_quality_gate(content).checks

        assert not checks["qg1"].passed
        assert not checks["qg2"].passed
        assert not checks["qg3"].passed
        assert '"Implement"' in checks["qg3"].message
        assert not checks["qg4"].passed
        assert not checks["qg5"].passed

    def test_format(self):
        text = format_quality_report(run_quality_gate(VALID_ISC))
        assert text.startswith("✅ Quality Gate PASSED")
        assert "QG5 Anti:" in text


class TestTracker:
    def test_missing_file(self, tmp_path):
        assert load_tracker(tmp_path / "tasks.md") is None

    def test_counts(self, tmp_path):
        path = tmp_path / "tasks.md"
        path.write_text(make_doc(
            [
                tracker_row(EIGHT, status="✅", row_id="ISC-C1"),
                tracker_row(EIGHT, status="🔄", row_id="ISC-C2"),
                tracker_row(EIGHT, status="❌", row_id="ISC-C3"),
            ],
            anti_rows=["| ISC-A1 | No credentials exposed in git commit history today | ❌ | Grep |"],
        ), encoding="utf-8")

        snapshot = load_tracker(path)

        assert (snapshot.total, snapshot.verified, snapshot.in_progress, snapshot.failed) == (3, 1, 1, 1)
        assert snapshot.anti_triggered == 1
        assert snapshot.progress_percent == 33
        assert snapshot.to_dict()["criteria"][0]["id"] == "ISC-C1"

    def test_tracker_ids(self):
        assert validate_tracker_ids(parse_isc_document(VALID_ISC)) == []

        document = parse_isc_document(make_doc([tracker_row(EIGHT, row_id="C-1")]))
        assert validate_tracker_ids(document) == ["Line 8: expected id ISC-C1, found 'C-1'"]
