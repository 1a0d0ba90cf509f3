"""Ideal State Criteria (ISC) documents: parsing, validation and quality checks.

An ISC document is markdown with four required sections::

    ## IDEAL
    ## ISC TRACKER
    ## ANTI-CRITERIA
    ## PROGRESS

The tracker and anti-criteria sections hold pipe tables. Parsing produces
an ``ISCDocument`` first; validation and the quality gate both work on
that parsed form rather than on raw lines.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import AntiCriterion, AntiCriterionStatus, Criterion, CriterionStatus


ISC_MIN_WORDS = 8
ISC_MAX_WORDS = 12

TRACKER_MIN_COLUMNS = 4
ANTI_MIN_COLUMNS = 3

SECTION_IDEAL = "## IDEAL"
SECTION_TRACKER = "## ISC TRACKER"
SECTION_ANTI = "## ANTI-CRITERIA"
SECTION_PROGRESS = "## PROGRESS"
REQUIRED_SECTIONS = (SECTION_IDEAL, SECTION_TRACKER, SECTION_ANTI, SECTION_PROGRESS)

TRACKER_STATUS_SYMBOLS: Dict[str, CriterionStatus] = {
    "⬜": CriterionStatus.PENDING,
    "🔄": CriterionStatus.IN_PROGRESS,
    "✅": CriterionStatus.VERIFIED,
    "❌": CriterionStatus.FAILED,
}
ANTI_STATUS_SYMBOLS: Dict[str, AntiCriterionStatus] = {
    "👀": AntiCriterionStatus.WATCHING,
    "✅": AntiCriterionStatus.AVOIDED,
    "❌": AntiCriterionStatus.TRIGGERED,
}

ACTION_VERBS = (
    "build", "create", "run", "implement", "add", "fix", "write",
    "deploy", "install", "configure", "setup", "test", "check",
    "update", "delete", "remove", "refactor", "migrate", "ensure",
)
VAGUE_QUALIFIERS = ("properly", "correctly", "appropriately", "reasonable", "good", "nice", "well")

RULE_WORD_COUNT = "word-count-out-of-range"
RULE_STATUS_SYMBOL = "bad-status-symbol"
RULE_MISSING_SECTION = "missing-section"
RULE_COLUMN_COUNT = "wrong-column-count"

TRACKER = "tracker"
ANTI = "anti-criteria"

_CONFIDENCE_TAG = re.compile(r"\s*\[(?:E|I|R)\]\s*")
_PRIORITY_TAG = re.compile(r"\s*\[(?:CRITICAL|IMPORTANT|NICE)\]\s*")
_VERIFY_SUFFIX = re.compile(r"[\s|(\-—]*\bverify\s*:.*$", re.IGNORECASE)
_BOLD = re.compile(r"(\*\*|__)(.+?)\1")
_ITALIC = re.compile(r"(\*|_)(.+?)\1")
_CODE = re.compile(r"`([^`]+)`")
_SEPARATOR = re.compile(r"^\s*\|[\s\-:|]+\|\s*$")
_EDGE_PUNCTUATION = ".,;:!?\"'()"


def strip_annotations(text: str) -> str:
    """Remove confidence/priority tags, an inline ``Verify:`` suffix and markdown emphasis."""
    cleaned = _CONFIDENCE_TAG.sub(" ", text)
    cleaned = _PRIORITY_TAG.sub(" ", cleaned)
    cleaned = _VERIFY_SUFFIX.sub("", cleaned)
    cleaned = _BOLD.sub(r"\2", cleaned)
    cleaned = _ITALIC.sub(r"\2", cleaned)
    cleaned = _CODE.sub(r"\1", cleaned)
    return " ".join(cleaned.split())


def count_words(text: str) -> int:
    """Words in a criterion after annotations are stripped."""
    return len(strip_annotations(text).split())


def _is_table_row(line: str) -> bool:
    stripped = line.strip()
    return len(stripped) > 1 and stripped.startswith("|") and stripped.endswith("|")


def _is_separator(line: str) -> bool:
    return bool(_SEPARATOR.match(line)) and "-" in line


def _split_cells(line: str) -> List[str]:
    return [cell.strip() for cell in line.strip()[1:-1].split("|")]


def _is_header_row(cells: List[str]) -> bool:
    if len(cells) > 2 and cells[2].lower() == "status":
        return True
    return cells[0].lower() == "id" and cells[1].lower() in ("criterion", "anti-criterion")


def _section_for(heading: str) -> Optional[str]:
    for section in REQUIRED_SECTIONS:
        if heading == section or heading.startswith(section + " "):
            return section
    return None


@dataclass(slots=True)
class TableRow:
    """One data row of the tracker or anti-criteria table."""

    line: int
    section: str
    cells: List[str]
    phase: Optional[str] = None

    def _cell(self, index: int) -> str:
        return self.cells[index] if len(self.cells) > index else ""

    @property
    def row_id(self) -> str:
        return self._cell(0)

    @property
    def criterion(self) -> str:
        return self._cell(1)

    @property
    def status_symbol(self) -> str:
        return self._cell(2)

    @property
    def evidence(self) -> str:
        return self._cell(3) if self.section == TRACKER else ""

    @property
    def verify(self) -> str:
        return self._cell(4) if self.section == TRACKER else self._cell(3)

    @property
    def clean_text(self) -> str:
        return strip_annotations(self.criterion)

    @property
    def word_count(self) -> int:
        return len(self.clean_text.split())

    def to_criterion(self, feature_id: str) -> Criterion:
        evidence = self.evidence
        return Criterion(
            id=self.row_id,
            feature_id=feature_id,
            text=self.clean_text,
            status=TRACKER_STATUS_SYMBOLS.get(self.status_symbol, CriterionStatus.PENDING),
            evidence=evidence if evidence and evidence != "-" else None,
            phase=self.phase,
        )

    def to_anti_criterion(self) -> AntiCriterion:
        return AntiCriterion(
            id=self.row_id,
            text=self.clean_text,
            status=ANTI_STATUS_SYMBOLS.get(self.status_symbol, AntiCriterionStatus.WATCHING),
        )


@dataclass(slots=True)
class ISCDocument:
    """Parsed view of an ISC document."""

    sections: Dict[str, int] = field(default_factory=dict)
    tracker_rows: List[TableRow] = field(default_factory=list)
    anti_rows: List[TableRow] = field(default_factory=list)

    @property
    def missing_sections(self) -> List[str]:
        return [section for section in REQUIRED_SECTIONS if section not in self.sections]

    def criteria(self, feature_id: str) -> List[Criterion]:
        return [row.to_criterion(feature_id) for row in self.tracker_rows]

    def anti_criteria(self) -> List[AntiCriterion]:
        return [row.to_anti_criterion() for row in self.anti_rows]


def parse_isc_document(content: str) -> ISCDocument:
    """Split ``content`` into sections and table rows.

    A table's header is the row directly above its ``|---|`` separator,
    or a row labelled ``ID``/``Criterion`` or ``Status`` when the separator
    is missing.
    Rows whose criterion cell is empty or ``-`` are template placeholders
    and are skipped. ``###`` headings inside the tracker tag the rows
    beneath them with a phase.
    """
    document = ISCDocument()
    lines = content.splitlines()
    current: Optional[str] = None
    phase: Optional[str] = None

    for index, line in enumerate(lines):
        lineno = index + 1
        stripped = line.strip()

        if stripped.startswith("## ") or stripped == "##":
            section = _section_for(stripped)
            if section and section not in document.sections:
                document.sections[section] = lineno
            current = section if section in (SECTION_TRACKER, SECTION_ANTI) else None
            phase = None
            continue

        if stripped.startswith("### ") and current == SECTION_TRACKER:
            phase = stripped[4:].strip() or None
            continue

        if current is None or not _is_table_row(line) or _is_separator(line):
            continue

        following = lines[index + 1] if index + 1 < len(lines) else ""
        if _is_separator(following):
            continue

        cells = _split_cells(line)
        if len(cells) < 2 or not cells[1] or cells[1] == "-":
            continue
        # Header rows without a separator line underneath.
        if _is_header_row(cells):
            continue

        if current == SECTION_TRACKER:
            document.tracker_rows.append(TableRow(lineno, TRACKER, cells, phase))
        else:
            document.anti_rows.append(TableRow(lineno, ANTI, cells))

    return document


@dataclass(slots=True)
class Violation:
    """A single structural rule broken by an ISC document."""

    line: int
    rule: str
    message: str
    section: Optional[str] = None
    row_id: Optional[str] = None
    criterion: Optional[str] = None
    actual: Optional[int] = None
    expected_min: Optional[int] = None
    expected_max: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line": self.line,
            "rule": self.rule,
            "message": self.message,
            "section": self.section,
            "row_id": self.row_id,
            "criterion": self.criterion,
            "actual": self.actual,
            "expected_min": self.expected_min,
            "expected_max": self.expected_max,
        }


@dataclass(slots=True)
class ValidationReport:
    passed: bool
    violations: List[Violation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    document: Optional[ISCDocument] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "violations": [violation.to_dict() for violation in self.violations],
            "warnings": list(self.warnings),
        }


def _check_row(row: TableRow, violations: List[Violation], warnings: List[str]) -> None:
    if row.section == TRACKER:
        minimum, symbols, label = TRACKER_MIN_COLUMNS, TRACKER_STATUS_SYMBOLS, "Criterion"
    else:
        minimum, symbols, label = ANTI_MIN_COLUMNS, ANTI_STATUS_SYMBOLS, "Anti-criterion"

    if len(row.cells) < minimum:
        violations.append(Violation(
            line=row.line,
            rule=RULE_COLUMN_COUNT,
            message=f"{row.section} row must have at least {minimum} columns, found {len(row.cells)}",
            section=row.section,
            row_id=row.row_id,
            criterion=row.criterion,
            actual=len(row.cells),
            expected_min=minimum,
        ))

    words = row.word_count
    if words < ISC_MIN_WORDS or words > ISC_MAX_WORDS:
        if words in (ISC_MIN_WORDS - 1, ISC_MAX_WORDS + 1):
            warnings.append(
                f'Line {row.line}: {label} has {words} words '
                f'(expected {ISC_MIN_WORDS}-{ISC_MAX_WORDS}): "{row.criterion}"'
            )
        violations.append(Violation(
            line=row.line,
            rule=RULE_WORD_COUNT,
            message=f"{label} must be {ISC_MIN_WORDS}-{ISC_MAX_WORDS} words, found {words}",
            section=row.section,
            row_id=row.row_id,
            criterion=row.criterion,
            actual=words,
            expected_min=ISC_MIN_WORDS,
            expected_max=ISC_MAX_WORDS,
        ))

    if len(row.cells) > 2 and row.status_symbol not in symbols:
        violations.append(Violation(
            line=row.line,
            rule=RULE_STATUS_SYMBOL,
            message=(
                f'Invalid {row.section} status "{row.status_symbol}". '
                f"Must be one of: {', '.join(symbols)}"
            ),
            section=row.section,
            row_id=row.row_id,
            criterion=row.criterion,
        ))


def validate_isc_document(content: str) -> ValidationReport:
    """Check sections and every table row, collecting all violations."""
    document = parse_isc_document(content)
    violations: List[Violation] = []
    warnings: List[str] = []

    for section in document.missing_sections:
        violations.append(Violation(
            line=0,
            rule=RULE_MISSING_SECTION,
            message=f"Missing required section: {section}",
            section=section,
        ))

    for row in document.tracker_rows + document.anti_rows:
        _check_row(row, violations, warnings)

    violations.sort(key=lambda violation: violation.line)
    return ValidationReport(
        passed=not violations,
        violations=violations,
        warnings=warnings,
        document=document,
    )


@dataclass(slots=True)
class QualityCheck:
    name: str
    passed: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "message": self.message}


@dataclass(slots=True)
class QualityGateReport:
    checks: Dict[str, QualityCheck]

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": {key: check.to_dict() for key, check in self.checks.items()},
        }


def _words(text: str) -> List[str]:
    return [word.strip(_EDGE_PUNCTUATION).lower() for word in text.split()]


def run_quality_gate(source: str | ISCDocument) -> QualityGateReport:
    """Five boolean checks over the tracker criteria and anti-criteria."""
    document = parse_isc_document(source) if isinstance(source, str) else source
    criteria = [row.clean_text for row in document.tracker_rows]
    anti_count = len(document.anti_rows)

    count = len(criteria)
    qg1 = QualityCheck(
        "count",
        count >= 4,
        f"PASS: {count} criteria (>= 4)" if count >= 4 else f"FAIL: only {count} criteria (need >= 4)",
    )

    out_of_range = [text for text in criteria if not ISC_MIN_WORDS <= len(text.split()) <= ISC_MAX_WORDS]
    qg2 = QualityCheck(
        "length",
        not out_of_range,
        f"PASS: all criteria {ISC_MIN_WORDS}-{ISC_MAX_WORDS} words" if not out_of_range
        else f"FAIL: {len(out_of_range)} criteria outside {ISC_MIN_WORDS}-{ISC_MAX_WORDS} word range",
    )

    verb_led = [text for text in criteria if _words(text)[:1] and _words(text)[0] in ACTION_VERBS]
    qg3 = QualityCheck(
        "state",
        not verb_led,
        "PASS: all state-based criteria" if not verb_led
        else "FAIL: {} criteria start with verbs: {}".format(
            len(verb_led), ", ".join(f'"{text.split()[0]}"' for text in verb_led)
        ),
    )

    vague = [text for text in criteria if any(word in VAGUE_QUALIFIERS for word in _words(text))]
    qg4 = QualityCheck(
        "testable",
        not vague,
        "PASS: all criteria appear binary testable" if not vague
        else f"FAIL: {len(vague)} criteria have vague qualifiers",
    )

    qg5 = QualityCheck(
        "anti",
        anti_count >= 1,
        f"PASS: {anti_count} anti-criteria" if anti_count >= 1 else "FAIL: no anti-criteria found (need >= 1)",
    )

    return QualityGateReport(checks={"qg1": qg1, "qg2": qg2, "qg3": qg3, "qg4": qg4, "qg5": qg5})


def format_validation_report(report: ValidationReport) -> str:
    lines: List[str] = []
    if report.passed:
        lines.append("✅ ISC format validation PASSED")
    else:
        lines.append("❌ ISC format validation FAILED")
        lines.append("")
        lines.append(f"Found {len(report.violations)} error(s):")
        lines.append("")
        for violation in report.violations:
            if violation.line == 0:
                lines.append(f"  • {violation.message}")
                continue
            lines.append(f"  • Line {violation.line} [{violation.rule}]: {violation.message}")
            if violation.criterion:
                lines.append(f'    Criterion: "{violation.criterion}"')
            if violation.rule == RULE_WORD_COUNT:
                lines.append(
                    f"    Word count: {violation.actual} "
                    f"(expected {violation.expected_min}-{violation.expected_max})"
                )
    if report.warnings:
        lines.append("")
        lines.append("⚠️  Warnings:")
        lines.extend(f"  {warning}" for warning in report.warnings)
    return "\n".join(lines)


_CHECK_LABELS = {
    "qg1": "QG1 Count:   ",
    "qg2": "QG2 Length:  ",
    "qg3": "QG3 State:   ",
    "qg4": "QG4 Testable:",
    "qg5": "QG5 Anti:    ",
}


def format_quality_report(report: QualityGateReport) -> str:
    lines = ["✅ Quality Gate PASSED" if report.passed else "❌ Quality Gate BLOCKED", ""]
    for key, check in report.checks.items():
        status = "PASS" if check.passed else "FAIL"
        lines.append(f"  {_CHECK_LABELS[key]} [{status}] {check.message}")
    return "\n".join(lines)


@dataclass(slots=True)
class TrackerSnapshot:
    """Progress view of an ISC tracker file."""

    path: str
    document: ISCDocument
    total: int = 0
    verified: int = 0
    in_progress: int = 0
    failed: int = 0
    pending: int = 0
    anti_total: int = 0
    anti_triggered: int = 0

    @property
    def progress_percent(self) -> int:
        if self.total == 0:
            return 0
        return math.floor(self.verified / self.total * 100 + 0.5)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "total": self.total,
            "verified": self.verified,
            "in_progress": self.in_progress,
            "failed": self.failed,
            "pending": self.pending,
            "anti_total": self.anti_total,
            "anti_triggered": self.anti_triggered,
            "progress_percent": self.progress_percent,
            "criteria": [
                {"id": row.row_id, "text": row.clean_text, "status": row.status_symbol, "phase": row.phase}
                for row in self.document.tracker_rows
            ],
            "anti_criteria": [anti.to_dict() for anti in self.document.anti_criteria()],
        }


def load_tracker(path: Path | str) -> Optional[TrackerSnapshot]:
    """Parse an ISC file and count criteria by status. Missing files yield None."""
    path = Path(path)
    if not path.exists():
        return None
    document = parse_isc_document(path.read_text(encoding="utf-8"))
    snapshot = TrackerSnapshot(path=str(path), document=document)
    for row in document.tracker_rows:
        status = TRACKER_STATUS_SYMBOLS.get(row.status_symbol, CriterionStatus.PENDING)
        snapshot.total += 1
        if status is CriterionStatus.VERIFIED:
            snapshot.verified += 1
        elif status is CriterionStatus.IN_PROGRESS:
            snapshot.in_progress += 1
        elif status is CriterionStatus.FAILED:
            snapshot.failed += 1
        else:
            snapshot.pending += 1
    for row in document.anti_rows:
        snapshot.anti_total += 1
        if ANTI_STATUS_SYMBOLS.get(row.status_symbol) is AntiCriterionStatus.TRIGGERED:
            snapshot.anti_triggered += 1
    return snapshot


def validate_tracker_ids(document: ISCDocument) -> List[str]:
    """Report tracker ids that are not ``ISC-C1..n`` and anti ids not ``ISC-A1..n``."""
    issues: List[str] = []
    for prefix, rows in (("ISC-C", document.tracker_rows), ("ISC-A", document.anti_rows)):
        for position, row in enumerate(rows, start=1):
            expected = f"{prefix}{position}"
            if row.row_id != expected:
                issues.append(f"Line {row.line}: expected id {expected}, found '{row.row_id}'")
    return issues
