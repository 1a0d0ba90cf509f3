"""Stateless resumption: work out where a feature stands from the ledger alone.

Nothing here is cached. A brand-new process asking the same questions of
the same ledger gets the same answers as a long-running one.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from .ledger import CommitLedger
from .models import PHASE_ORDER, Phase, PhaseOutcome
from .orchestrator import Orchestrator


logger = logging.getLogger("specfirst.resumption")


def first_incomplete(status: Dict[Phase, bool]) -> Optional[Phase]:
    """First phase in order without a record in ``status``."""
    return next((phase for phase in PHASE_ORDER if not status.get(phase)), None)


def furthest_complete(status: Dict[Phase, bool]) -> Phase:
    """Last phase in order with a record in ``status``, or ``Phase.NONE``."""
    current = Phase.NONE
    for phase in PHASE_ORDER:
        if status.get(phase):
            current = phase
    return current


class ResumptionEngine:
    def __init__(self, ledger: CommitLedger, orchestrator: Orchestrator):
        self.ledger = ledger
        self.orchestrator = orchestrator

    async def detect_next_phase(self, feature_name: str) -> Optional[Phase]:
        """First phase with no ledger record, or None once release is recorded."""
        for phase in PHASE_ORDER:
            if not await self.ledger.exists(phase, feature_name):
                return phase
        return None

    async def get_workflow_status(self, feature_name: str) -> Dict[Phase, bool]:
        """Completion flag for every phase, read from one ledger snapshot."""
        records = await self.ledger.all_for(feature_name)
        recorded = {record.phase for record in records}
        return {phase: phase in recorded for phase in PHASE_ORDER}

    async def current_phase(self, feature_name: str) -> Phase:
        """Last phase in order that has a record, or ``Phase.NONE``."""
        return furthest_complete(await self.get_workflow_status(feature_name))

    async def resume_workflow(
        self,
        feature_name: str,
        phase_input: Optional[Dict[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> PhaseOutcome:
        """Run whichever phase comes next for the feature."""
        next_phase = await self.detect_next_phase(feature_name)
        if next_phase is None:
            logger.info(f"Workflow for {feature_name} already complete")
            return PhaseOutcome(
                success=True,
                phase=Phase.RELEASE,
                feature_name=feature_name,
                next_phase=None,
                message=f"All phases complete for {feature_name}",
                workflow_complete=True,
            )
        logger.info(f"Resuming {feature_name} at {next_phase.value}")
        return await self.orchestrator.execute_phase(next_phase, feature_name, phase_input, options)
