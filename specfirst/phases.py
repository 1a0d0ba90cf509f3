"""Default phase execution functions.

Document prose comes from the caller (an agent or a human); these
functions persist it, record completion in the ledger and mirror the
result into the relational store. The release phase additionally refuses
to ship while any tracker criterion is unverified, and writes release
notes when none are supplied.
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional

from .config import DEFAULT_MAX_ARTIFACT_KB, SpecFirstConfig
from .errors import LedgerWriteError, StoreError
from .isc import ANTI_STATUS_SYMBOLS, TRACKER_STATUS_SYMBOLS, load_tracker
from .ledger import CommitLedger
from .models import (
    PHASE_ORDER,
    AntiCriterionStatus,
    ArtifactKind,
    CriterionStatus,
    EffortLevel,
    FeatureStatus,
    Phase,
    PhaseContext,
    PhaseResult,
    utc_now_iso,
)
from .specfirst_logging import log_error_with_context, log_operation
from .store import RelationalStore
from .workspace import ArtifactLocator, render_frontmatter, split_frontmatter, write_text_async


logger = logging.getLogger("specfirst.phases")

# Feature row column holding each phase's artifact path.
PHASE_PATH_COLUMNS: Dict[Phase, str] = {
    Phase.PROPOSE: "proposal_path",
    Phase.SPECIFY: "spec_path",
    Phase.PLAN: "plan_path",
    Phase.IMPLEMENT: "tasks_path",
}


def prepare_artifact(content: str, feature_name: str, phase: Phase) -> str:
    """Ensure the document carries feature/phase/status frontmatter.

    Keys the author already set are kept, so an explicit ``status: draft``
    survives and the phase will not count as complete.
    """
    metadata, body = split_frontmatter(content)
    merged = {
        "feature": feature_name,
        "phase": phase.value,
        "status": "complete",
        "created": utc_now_iso(),
    }
    merged.update(metadata)
    return render_frontmatter(merged, body)


def render_release_notes(
    feature_name: str,
    version: str,
    criteria_count: int,
    anti_count: int,
    release_date: Optional[str] = None,
    notes: Optional[str] = None,
) -> str:
    lines = [
        f"# Release {version}: {feature_name}",
        "",
        f"**Released:** {release_date or date.today().isoformat()}",
        "",
        "## Verification",
        "",
        f"- {criteria_count} ideal state criteria verified",
        f"- {anti_count} anti-criteria avoided",
    ]
    if notes:
        lines.extend(["", "## Notes", "", notes.strip()])
    return "\n".join(lines)


class ArtifactPhaseRunner:
    """Callable used as the phase function for every phase."""

    def __init__(
        self,
        locator: ArtifactLocator,
        ledger: CommitLedger,
        config: Optional[SpecFirstConfig] = None,
        store: Optional[RelationalStore] = None,
    ):
        self.locator = locator
        self.ledger = ledger
        self.config = config
        self.store = store

    @property
    def artifact_max_bytes(self) -> int:
        kb = self.config.artifact_max_kb if self.config else DEFAULT_MAX_ARTIFACT_KB
        return kb * 1024

    async def __call__(self, context: PhaseContext) -> PhaseResult:
        phase = context.phase
        feature_name = context.feature_name
        warnings: List[str] = []

        if phase is Phase.RELEASE:
            content, error = self._release_content(context)
            if error:
                return PhaseResult(success=False, error=error)
        else:
            content = str(context.phase_input.get("content") or "")
            if not content.strip():
                return PhaseResult(
                    success=False,
                    error=f"The {phase.value} phase needs the document text in 'content'",
                )

        document = prepare_artifact(content, feature_name, phase)
        path = Path(context.artifact_path)
        size = len(document.encode("utf-8"))
        if size > self.artifact_max_bytes:
            warnings.append(
                f"{path.name} is {size // 1024} KB, above the {self.artifact_max_bytes // 1024} KB guideline"
            )

        with log_operation("write_phase_artifact", phase=phase.value, feature_name=feature_name, path=str(path)):
            await write_text_async(path, document)

        record = None
        try:
            record = await self.ledger.append(phase, feature_name, path)
        except LedgerWriteError as exc:
            log_error_with_context(exc, {
                "operation": "ledger_append",
                "phase": phase.value,
                "feature_name": feature_name,
            })
            warnings.append(
                f"Artifact saved but the ledger write failed: {exc}. "
                f"Retry recording completion; resumption will treat {phase.value} as not done until then."
            )

        # The feature row mirrors the ledger, so nothing moves without a record.
        if self.store is not None and record is not None:
            try:
                await self._sync_store(phase, feature_name, path, context.effort_level)
            except StoreError as exc:
                log_error_with_context(exc, {
                    "operation": "store_sync",
                    "phase": phase.value,
                    "feature_name": feature_name,
                })
                warnings.append(
                    f"Phase recorded but the feature row was not updated: {exc}. "
                    "The ledger remains authoritative; list_features may lag until the next phase."
                )

        return PhaseResult(
            success=True,
            artifact_path=str(path),
            warnings=warnings,
            record=record,
        )

    def _release_content(self, context: PhaseContext) -> tuple[str, Optional[str]]:
        tasks_path = self.locator.path_for(context.feature_name, ArtifactKind.TASKS)
        snapshot = load_tracker(tasks_path)
        if snapshot is None:
            return "", f"Cannot release: {tasks_path} not found"

        unverified = [
            row for row in snapshot.document.tracker_rows
            if TRACKER_STATUS_SYMBOLS.get(row.status_symbol) is not CriterionStatus.VERIFIED
        ]
        if unverified:
            listing = "\n".join(f"  - {row.row_id}: {row.clean_text} ({row.status_symbol})" for row in unverified)
            return "", (
                f"Cannot release: {len(unverified)} criteria not verified\n\n{listing}\n\n"
                "All criteria must be ✅ before release."
            )

        triggered = [
            row for row in snapshot.document.anti_rows
            if ANTI_STATUS_SYMBOLS.get(row.status_symbol) is AntiCriterionStatus.TRIGGERED
        ]
        if triggered:
            listing = "\n".join(f"  - {row.row_id}: {row.clean_text}" for row in triggered)
            return "", f"Cannot release: {len(triggered)} anti-criteria triggered\n\n{listing}"

        supplied = str(context.phase_input.get("content") or "")
        if supplied.strip():
            return supplied, None
        return render_release_notes(
            context.feature_name,
            str(context.phase_input.get("version") or "0.1.0"),
            snapshot.total,
            snapshot.anti_total,
            release_date=context.phase_input.get("release_date"),
            notes=context.phase_input.get("notes"),
        ), None

    async def _sync_store(
        self,
        phase: Phase,
        feature_name: str,
        path: Path,
        effort_level: Optional[EffortLevel] = None,
    ) -> None:
        feature = await self.store.find_feature_by_name(feature_name)
        if feature is None:
            logger.debug(f"No store row for {feature_name}; skipping store sync")
            return

        await self.store.update_feature_phase(feature.id, phase)
        if effort_level is not None:
            await self.store.update_feature_prd(feature.id, effort_level=effort_level.value)
        column = PHASE_PATH_COLUMNS.get(phase)
        if column:
            await self.store.update_feature_paths(feature.id, **{column: self.locator.relative(path)})
        if phase is Phase.PROPOSE:
            await self.store.update_feature_paths(
                feature.id,
                constitution_path=self.locator.relative(self.locator.constitution_path),
            )

        if phase is Phase.IMPLEMENT:
            snapshot = load_tracker(path)
            if snapshot is not None:
                imported = await self.store.import_criteria(feature.id, snapshot.document.criteria(feature.id))
                logger.info(f"Imported {imported} criteria for {feature_name}")

        if phase is Phase.RELEASE:
            await self.store.update_feature_status(feature.id, FeatureStatus.COMPLETED)
        elif feature.status is FeatureStatus.PENDING:
            await self.store.update_feature_status(feature.id, FeatureStatus.IN_PROGRESS)


def build_phase_functions(runner: ArtifactPhaseRunner) -> Dict[Phase, ArtifactPhaseRunner]:
    return {phase: runner for phase in PHASE_ORDER}
