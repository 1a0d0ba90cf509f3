"""Data models for SpecFirst.

This module contains the core data structures shared by the ledger, the
relational store, the gates and the orchestrator: phases, ledger records,
gate results, features, criteria and sessions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidPhaseError


LEDGER_TITLE_PREFIX = "SpecFirst:"


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Phase(str, Enum):
    """Workflow phases in their fixed total order."""

    NONE = "none"
    PROPOSE = "propose"
    SPECIFY = "specify"
    PLAN = "plan"
    IMPLEMENT = "implement"
    RELEASE = "release"

    @classmethod
    def parse(cls, value: "Phase | str") -> "Phase":
        """Return the runnable phase named by ``value``.

        ``none`` is a status sentinel, not something that can be executed,
        so it is rejected together with unknown names.
        """
        if isinstance(value, Phase):
            phase = value
        else:
            try:
                phase = cls(str(value).strip().lower())
            except ValueError:
                phase = cls.NONE
        if phase is cls.NONE:
            valid = ", ".join(p.value for p in PHASE_ORDER)
            raise InvalidPhaseError(
                f"Invalid phase: {value}",
                resolution=f"Use one of: {valid}",
            )
        return phase

    @property
    def position(self) -> int:
        if self is Phase.NONE:
            return -1
        return PHASE_ORDER.index(self)

    def next_phase(self) -> Optional["Phase"]:
        """The phase after this one, or None after release."""
        position = self.position + 1
        if position < len(PHASE_ORDER):
            return PHASE_ORDER[position]
        return None

    def previous_phase(self) -> Optional["Phase"]:
        position = self.position - 1
        if position >= 0:
            return PHASE_ORDER[position]
        return None


PHASE_ORDER: List[Phase] = [
    Phase.PROPOSE,
    Phase.SPECIFY,
    Phase.PLAN,
    Phase.IMPLEMENT,
    Phase.RELEASE,
]


class ArtifactKind(str, Enum):
    """Durable documents a workflow produces."""

    CONSTITUTION = "constitution"
    PROPOSAL = "proposal"
    SPEC = "spec"
    PLAN = "plan"
    TASKS = "tasks"
    RELEASE_NOTES = "release_notes"


class ErrorKind(str, Enum):
    """Classification attached to failed gate results and phase outcomes."""

    CONFIGURATION = "configuration"
    INVALID_PHASE = "invalid_phase"
    PREREQUISITE_MISSING = "prerequisite_missing"
    ARTIFACT_MISSING = "artifact_missing"
    STRUCTURAL_VIOLATION = "structural_violation"
    PHASE_INCOMPLETE = "phase_incomplete"
    LEDGER_WRITE_FAILURE = "ledger_write_failure"
    CLAIM_CONFLICT = "claim_conflict"
    GATE_EXECUTION_FAILED = "gate_execution_failed"
    PHASE_EXECUTION_FAILED = "phase_execution_failed"


class FeatureStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class CriterionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    FAILED = "failed"


class AntiCriterionStatus(str, Enum):
    WATCHING = "watching"
    AVOIDED = "avoided"
    TRIGGERED = "triggered"


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class EffortLevel(str, Enum):
    """How much rigour a phase run asks for, lowest first."""

    MINIMAL = "minimal"
    STANDARD = "standard"
    THOROUGH = "thorough"
    DETERMINED = "determined"


@dataclass(slots=True, frozen=True)
class PhaseRecord:
    """Immutable ledger entry proving that a phase completed for a feature."""

    phase: Phase
    feature_name: str
    artifact_path: str
    timestamp: str
    status: str = "complete"
    record_id: Optional[str] = None

    @staticmethod
    def title_for(phase: Phase, feature_name: str) -> str:
        """Subject line used both when writing and when searching the ledger."""
        return f"{LEDGER_TITLE_PREFIX} {phase.value} phase complete for {feature_name}"

    @property
    def title(self) -> str:
        return self.title_for(self.phase, self.feature_name)

    def to_message(self) -> str:
        """Render the exact ledger message body."""
        return (
            f"{self.title}\n"
            f"\n"
            f"Artifact: {self.artifact_path}\n"
            f"Status: {self.status}\n"
            f"Timestamp: {self.timestamp}"
        )

    @classmethod
    def from_message(
        cls,
        message: str,
        record_id: Optional[str] = None,
        fallback_timestamp: Optional[str] = None,
    ) -> Optional["PhaseRecord"]:
        """Parse a ledger message. Returns None when it is not a phase record."""
        lines = message.strip().splitlines()
        if not lines:
            return None
        subject = lines[0].strip()
        if not subject.startswith(LEDGER_TITLE_PREFIX):
            return None
        body = subject[len(LEDGER_TITLE_PREFIX):].strip()
        phase_name, separator, feature_name = body.partition(" phase complete for ")
        if not separator or not feature_name:
            return None
        try:
            phase = Phase.parse(phase_name)
        except InvalidPhaseError:
            return None

        fields: Dict[str, str] = {}
        for line in lines[1:]:
            key, sep, value = line.partition(":")
            if sep:
                fields[key.strip().lower()] = value.strip()

        return cls(
            phase=phase,
            feature_name=feature_name.strip(),
            artifact_path=fields.get("artifact", ""),
            status=fields.get("status", "complete"),
            timestamp=fields.get("timestamp") or fallback_timestamp or "",
            record_id=record_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "feature_name": self.feature_name,
            "artifact_path": self.artifact_path,
            "status": self.status,
            "timestamp": self.timestamp,
            "record_id": self.record_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseRecord":
        return cls(
            phase=Phase.parse(data["phase"]),
            feature_name=data["feature_name"],
            artifact_path=data.get("artifact_path", ""),
            status=data.get("status", "complete"),
            timestamp=data.get("timestamp", ""),
            record_id=data.get("record_id"),
        )


@dataclass(slots=True)
class GateResult:
    """Outcome of a single gate check. Gates never raise for a failed check."""

    gate: str
    passed: bool
    error: Optional[str] = None
    resolution: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    missing_artifacts: List[str] = field(default_factory=list)
    violations: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, gate: str, **kwargs: Any) -> "GateResult":
        return cls(gate=gate, passed=True, **kwargs)

    @classmethod
    def fail(
        cls,
        gate: str,
        error: str,
        resolution: str,
        error_kind: ErrorKind,
        **kwargs: Any,
    ) -> "GateResult":
        return cls(
            gate=gate,
            passed=False,
            error=error,
            resolution=resolution,
            error_kind=error_kind,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate": self.gate,
            "passed": self.passed,
            "error": self.error,
            "resolution": self.resolution,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "missing_artifacts": list(self.missing_artifacts),
            "violations": list(self.violations),
            "warnings": list(self.warnings),
            "details": dict(self.details),
        }


@dataclass(slots=True)
class PhaseContext:
    """Input handed to a phase execution function."""

    phase: Phase
    feature_name: str
    artifact_path: str
    phase_input: Dict[str, Any] = field(default_factory=dict)
    effort_level: Optional[EffortLevel] = None


@dataclass(slots=True)
class PhaseResult:
    """What a phase execution function reports back."""

    success: bool
    artifact_path: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    record: Optional[PhaseRecord] = None


@dataclass(slots=True)
class PhaseOutcome:
    """Result of asking the orchestrator to run a phase."""

    success: bool
    phase: Optional[Phase]
    feature_name: str
    gates_passed: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    resolution: Optional[str] = None
    gate_result: Optional[GateResult] = None
    artifact_path: Optional[str] = None
    next_phase: Optional[Phase] = None
    message: str = ""
    warnings: List[str] = field(default_factory=list)
    workflow_complete: bool = False
    effort_level: Optional[EffortLevel] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "phase": self.phase.value if self.phase else None,
            "feature_name": self.feature_name,
            "gates_passed": list(self.gates_passed),
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "resolution": self.resolution,
            "gate_result": self.gate_result.to_dict() if self.gate_result else None,
            "artifact_path": self.artifact_path,
            "next_phase": self.next_phase.value if self.next_phase else None,
            "message": self.message,
            "warnings": list(self.warnings),
            "workflow_complete": self.workflow_complete,
            "effort_level": self.effort_level.value if self.effort_level else None,
        }


@dataclass(slots=True)
class Feature:
    """A unit of work tracked in the relational store."""

    id: str
    name: str
    description: str = ""
    priority: int = 999
    status: FeatureStatus = FeatureStatus.PENDING
    phase: Phase = Phase.NONE
    proposal_path: Optional[str] = None
    spec_path: Optional[str] = None
    plan_path: Optional[str] = None
    tasks_path: Optional[str] = None
    constitution_path: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    session_id: Optional[str] = None
    skip_reason: Optional[str] = None
    prd_status: Optional[str] = None
    prd_path: Optional[str] = None
    effort_level: Optional[str] = None
    iteration: int = 0
    verification_summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "status": self.status.value,
            "phase": self.phase.value,
            "proposal_path": self.proposal_path,
            "spec_path": self.spec_path,
            "plan_path": self.plan_path,
            "tasks_path": self.tasks_path,
            "constitution_path": self.constitution_path,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "session_id": self.session_id,
            "skip_reason": self.skip_reason,
            "prd_status": self.prd_status,
            "prd_path": self.prd_path,
            "effort_level": self.effort_level,
            "iteration": self.iteration,
            "verification_summary": self.verification_summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feature":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description") or "",
            priority=data.get("priority") if data.get("priority") is not None else 999,
            status=FeatureStatus(data.get("status") or FeatureStatus.PENDING.value),
            phase=Phase(data.get("phase") or Phase.NONE.value),
            proposal_path=data.get("proposal_path"),
            spec_path=data.get("spec_path"),
            plan_path=data.get("plan_path"),
            tasks_path=data.get("tasks_path"),
            constitution_path=data.get("constitution_path"),
            created_at=data.get("created_at") or utc_now_iso(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            session_id=data.get("session_id"),
            skip_reason=data.get("skip_reason"),
            prd_status=data.get("prd_status"),
            prd_path=data.get("prd_path"),
            effort_level=data.get("effort_level"),
            iteration=data.get("iteration") or 0,
            verification_summary=data.get("verification_summary"),
        )

    def validate(self) -> List[str]:
        """Validate the feature and return any issues."""
        issues = []
        if not self.id:
            issues.append("Feature ID is required")
        if not self.name:
            issues.append("Feature name is required")
        if self.completed_at and not self.started_at:
            issues.append("A completed feature must have a start time")
        return issues


@dataclass(slots=True)
class Criterion:
    """A verifiable success criterion belonging to a feature."""

    id: str
    feature_id: str
    text: str
    status: CriterionStatus = CriterionStatus.PENDING
    evidence: Optional[str] = None
    verified_at: Optional[str] = None
    phase: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "text": self.text,
            "status": self.status.value,
            "evidence": self.evidence,
            "verified_at": self.verified_at,
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Criterion":
        return cls(
            id=data["id"],
            feature_id=data["feature_id"],
            text=data["text"],
            status=CriterionStatus(data.get("status") or CriterionStatus.PENDING.value),
            evidence=data.get("evidence"),
            verified_at=data.get("verified_at"),
            phase=data.get("phase"),
        )


@dataclass(slots=True)
class AntiCriterion:
    """Something the feature must not do, tracked in the ISC document."""

    id: str
    text: str
    status: AntiCriterionStatus = AntiCriterionStatus.WATCHING

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "status": self.status.value}


@dataclass(slots=True)
class Session:
    """A working session that claims features one at a time."""

    id: str
    started_at: str = field(default_factory=utc_now_iso)
    ended_at: Optional[str] = None
    current_feature_id: Optional[str] = None
    features_completed: int = 0
    status: SessionStatus = SessionStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "current_feature_id": self.current_feature_id,
            "features_completed": self.features_completed,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            started_at=data.get("started_at") or utc_now_iso(),
            ended_at=data.get("ended_at"),
            current_feature_id=data.get("current_feature_id"),
            features_completed=data.get("features_completed") or 0,
            status=SessionStatus(data.get("status") or SessionStatus.RUNNING.value),
        )


@dataclass(slots=True)
class FeatureStats:
    """Aggregate counts over all features in the store."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    skipped: int = 0

    @property
    def percent_complete(self) -> int:
        if self.total == 0:
            return 0
        # Half rounds up, so 1 of 8 reads as 13%.
        return math.floor(self.completed / self.total * 100 + 0.5)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "skipped": self.skipped,
            "percent_complete": self.percent_complete,
        }


@dataclass(slots=True)
class SessionState:
    """What ``resume_or_start_session`` found or created."""

    session: Session
    resumed: bool
    current_feature: Optional[Feature] = None
    current_phase: Phase = Phase.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "resumed": self.resumed,
            "current_feature": self.current_feature.to_dict() if self.current_feature else None,
            "current_phase": self.current_phase.value,
        }
