"""SpecFirst phase orchestration package.

Gated Propose -> Specify -> Plan -> Implement -> Release workflow whose
state is always re-derived from a commit ledger and a relational store.
"""

from .models import Phase, PHASE_ORDER, GateResult, PhaseOutcome, PhaseRecord
from .workflow import WorkflowManager

__all__ = [
    "Phase",
    "PHASE_ORDER",
    "GateResult",
    "PhaseOutcome",
    "PhaseRecord",
    "WorkflowManager",
]
