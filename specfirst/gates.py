"""Gate checks run before (and after) workflow phases.

Every gate is a read-only coroutine that returns a ``GateResult``. A
failed check is data, not an exception. The only exception a gate lets
through is ``LedgerReadError`` from a ledger it cannot query.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .isc import format_validation_report, run_quality_gate, validate_isc_document
from .ledger import CommitLedger
from .models import ArtifactKind, ErrorKind, GateResult, Phase, PhaseRecord
from .workspace import (
    PHASE_COMPLETION_ARTIFACT,
    ArtifactLocator,
    path_exists,
    read_frontmatter_async,
    read_text_async,
)


logger = logging.getLogger("specfirst.gates")

GATE_PREREQUISITE = "prerequisite"
GATE_ARTIFACT = "artifact"
GATE_ISC_FORMAT = "isc-format"
GATE_PHASE_COMPLETE = "phase-complete"

PHASE_REQUIREMENTS: Dict[Phase, List[ArtifactKind]] = {
    Phase.PROPOSE: [ArtifactKind.CONSTITUTION],
    Phase.SPECIFY: [ArtifactKind.CONSTITUTION, ArtifactKind.PROPOSAL],
    Phase.PLAN: [ArtifactKind.CONSTITUTION, ArtifactKind.PROPOSAL, ArtifactKind.SPEC],
    Phase.IMPLEMENT: [ArtifactKind.CONSTITUTION, ArtifactKind.PROPOSAL, ArtifactKind.SPEC, ArtifactKind.PLAN],
    Phase.RELEASE: [
        ArtifactKind.CONSTITUTION,
        ArtifactKind.PROPOSAL,
        ArtifactKind.SPEC,
        ArtifactKind.PLAN,
        ArtifactKind.TASKS,
    ],
}

_CONSTITUTION_HELP = """Create a CONSTITUTION.md file in the project root with:

1. Project constraints (tech stack, architecture decisions)
2. Quality requirements (test coverage, documentation standards)
3. Non-functional requirements (performance, security, accessibility)
4. Integration requirements (APIs, services, dependencies)

Expected location: {path}

Example:
```markdown
# Project Constitution

## Tech Stack
- Python 3.11, FastAPI
- PostgreSQL

## Quality Gates
- 80% test coverage required
- All public APIs must be documented
```"""


async def prerequisite_gate(locator: ArtifactLocator, feature_name: str) -> GateResult:
    """Pass iff the project constitution exists."""
    path = locator.constitution_path
    if await path_exists(path):
        return GateResult.ok(GATE_PREREQUISITE, details={"constitution_path": str(path)})
    return GateResult.fail(
        GATE_PREREQUISITE,
        error=f"Constitution file missing: {path}",
        resolution=_CONSTITUTION_HELP.format(path=path),
        error_kind=ErrorKind.PREREQUISITE_MISSING,
        missing_artifacts=[ArtifactKind.CONSTITUTION.value],
        details={"feature_name": feature_name},
    )


async def artifact_gate(locator: ArtifactLocator, phase: Phase | str, feature_name: str) -> GateResult:
    """Pass iff every artifact ``phase`` depends on exists. Lists all that are missing."""
    phase = Phase.parse(phase)
    missing: List[str] = []
    missing_paths: List[str] = []
    for kind in PHASE_REQUIREMENTS[phase]:
        path = locator.path_for(feature_name, kind)
        if not await path_exists(path):
            missing.append(kind.value)
            missing_paths.append(str(path))

    if not missing:
        return GateResult.ok(GATE_ARTIFACT)

    listing = "\n".join(f"  - {kind}.md ({path})" for kind, path in zip(missing, missing_paths))
    previous = phase.previous_phase()
    if previous is not None:
        resolution = f"Run the '{previous.value}' phase first to generate required artifacts."
    else:
        resolution = f"Ensure the project constitution exists before running {phase.value}."
    return GateResult.fail(
        GATE_ARTIFACT,
        error=f"Cannot run {phase.value} phase: missing required artifacts\n\n{listing}",
        resolution=resolution,
        error_kind=ErrorKind.ARTIFACT_MISSING,
        missing_artifacts=missing,
        details={"missing_paths": missing_paths},
    )


async def isc_format_gate(
    locator: ArtifactLocator,
    feature_name: str,
    enforce_quality: bool = False,
) -> GateResult:
    """Validate the feature's tasks document as an ISC tracker.

    Structural violations always fail the gate. Quality checks fail it only
    when ``enforce_quality`` is set; otherwise they surface as warnings.
    """
    path = locator.path_for(feature_name, ArtifactKind.TASKS)
    content = await read_text_async(path)
    if content is None:
        return GateResult.fail(
            GATE_ISC_FORMAT,
            error=f"Cannot read ISC document: {path}",
            resolution="Run the 'implement' phase to generate tasks.md",
            error_kind=ErrorKind.ARTIFACT_MISSING,
            missing_artifacts=[ArtifactKind.TASKS.value],
        )
    return evaluate_isc_content(content, enforce_quality=enforce_quality, source=str(path))


def evaluate_isc_content(content: str, enforce_quality: bool = False, source: Optional[str] = None) -> GateResult:
    report = validate_isc_document(content)
    quality = run_quality_gate(report.document)
    warnings = list(report.warnings)
    details = {
        "source": source,
        "report": format_validation_report(report),
        "quality_gate": quality.to_dict(),
        "criteria_count": len(report.document.tracker_rows),
        "anti_criteria_count": len(report.document.anti_rows),
    }

    if not report.passed:
        return GateResult.fail(
            GATE_ISC_FORMAT,
            error=f"ISC format validation failed with {len(report.violations)} error(s)",
            resolution="Fix every listed row: criteria must be 8-12 words with a valid status symbol",
            error_kind=ErrorKind.STRUCTURAL_VIOLATION,
            violations=[violation.to_dict() for violation in report.violations],
            warnings=warnings,
            details=details,
        )

    failed_checks = [f"{key.upper()}: {check.message}" for key, check in quality.checks.items() if not check.passed]
    if failed_checks and enforce_quality:
        return GateResult.fail(
            GATE_ISC_FORMAT,
            error="ISC quality gate blocked: " + "; ".join(failed_checks),
            resolution="Rewrite criteria as 8-12 word end states without action verbs or vague qualifiers",
            error_kind=ErrorKind.STRUCTURAL_VIOLATION,
            warnings=warnings,
            details=details,
        )
    warnings.extend(failed_checks)
    return GateResult.ok(GATE_ISC_FORMAT, warnings=warnings, details=details)


async def phase_complete_gate(
    locator: ArtifactLocator,
    ledger: CommitLedger,
    phase: Phase | str,
    feature_name: str,
) -> GateResult:
    """Pass iff the ledger has a record AND the artifact frontmatter says ``status: complete``.

    Raises:
        LedgerReadError: the ledger cannot be queried.
    """
    phase = Phase.parse(phase)
    record_found = await ledger.exists(phase, feature_name)

    kind = PHASE_COMPLETION_ARTIFACT[phase]
    path = locator.completion_artifact_path(feature_name, phase)
    details = {"ledger_record_found": record_found, "artifact_path": str(path)}

    if not await path_exists(path):
        details["frontmatter_complete"] = False
        return GateResult.fail(
            GATE_PHASE_COMPLETE,
            error=f"Cannot read artifact: {path}",
            resolution=f"Run the '{phase.value}' phase to generate the required artifact.",
            error_kind=ErrorKind.PHASE_INCOMPLETE,
            missing_artifacts=[kind.value],
            details=details,
        )

    frontmatter = await read_frontmatter_async(path)
    status = frontmatter.get("status")
    frontmatter_complete = str(status).strip() == "complete" if status is not None else False
    details["frontmatter_complete"] = frontmatter_complete

    if record_found and frontmatter_complete:
        return GateResult.ok(GATE_PHASE_COMPLETE, details=details)

    problems: List[str] = []
    if not record_found:
        problems.append(f'Ledger record not found with title: "{PhaseRecord.title_for(phase, feature_name)}"')
    if not frontmatter_complete:
        problems.append(f'Artifact frontmatter status is "{status if status is not None else "(missing)"}", expected "complete"')
    return GateResult.fail(
        GATE_PHASE_COMPLETE,
        error=f"Phase '{phase.value}' not completed for {feature_name}:\n\n" + "\n".join(problems),
        resolution=(
            "Complete the phase by:\n"
            "  1. Setting artifact frontmatter status: complete\n"
            f"  2. Recording it in the ledger: {PhaseRecord.title_for(phase, feature_name)}"
        ),
        error_kind=ErrorKind.PHASE_INCOMPLETE,
        details=details,
    )
