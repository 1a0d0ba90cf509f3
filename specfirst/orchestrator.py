"""Phase orchestration: run the gate sequence for a phase, then the phase itself.

The orchestrator owns no state. It reads the filesystem through its gates,
hands control to a registered phase function, and reports what happened as
a ``PhaseOutcome``. Recording completion in the ledger is the phase
function's job, never the orchestrator's.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .config import DEFAULT_GATE_TIMEOUT_MS, SpecFirstConfig
from .effort import detect_effort
from .errors import ConfigurationError, InvalidPhaseError
from .gates import (
    GATE_ARTIFACT,
    GATE_ISC_FORMAT,
    GATE_PREREQUISITE,
    artifact_gate,
    isc_format_gate,
    prerequisite_gate,
)
from .models import ErrorKind, GateResult, Phase, PhaseContext, PhaseOutcome, PhaseResult
from .specfirst_logging import log_gate_result, log_performance, log_phase_event
from .workspace import ArtifactLocator, validate_feature_name


logger = logging.getLogger("specfirst.orchestrator")

PhaseFunction = Callable[[PhaseContext], Awaitable[PhaseResult]]

PHASE_GATES: Dict[Phase, List[str]] = {
    Phase.PROPOSE: [GATE_PREREQUISITE],
    Phase.SPECIFY: [GATE_PREREQUISITE, GATE_ARTIFACT],
    Phase.PLAN: [GATE_PREREQUISITE, GATE_ARTIFACT],
    Phase.IMPLEMENT: [GATE_PREREQUISITE, GATE_ARTIFACT],
    Phase.RELEASE: [GATE_PREREQUISITE, GATE_ARTIFACT, GATE_ISC_FORMAT],
}

_GATE_LABELS = {
    GATE_PREREQUISITE: "Prerequisite",
    GATE_ARTIFACT: "Artifact",
    GATE_ISC_FORMAT: "ISC format",
}


class Orchestrator:
    """Runs one phase for one feature behind its fixed gate sequence."""

    def __init__(
        self,
        locator: ArtifactLocator,
        phase_functions: Mapping[Phase, PhaseFunction],
        config: Optional[SpecFirstConfig] = None,
    ):
        self.locator = locator
        self.phase_functions = dict(phase_functions)
        self.config = config

    @property
    def gate_budget_seconds(self) -> float:
        if self.config is None:
            return DEFAULT_GATE_TIMEOUT_MS / 1000.0
        return self.config.gate_budget_seconds

    async def _run_gate(self, gate: str, phase: Phase, feature_name: str) -> GateResult:
        if gate == GATE_PREREQUISITE:
            return await prerequisite_gate(self.locator, feature_name)
        if gate == GATE_ARTIFACT:
            return await artifact_gate(self.locator, phase, feature_name)
        if gate == GATE_ISC_FORMAT:
            enforce = self.config.enforce_quality_gate if self.config else False
            return await isc_format_gate(self.locator, feature_name, enforce_quality=enforce)
        raise ValueError(f"Unknown gate: {gate}")

    @log_performance("execute_phase")
    async def execute_phase(
        self,
        phase: Phase | str,
        feature_name: str,
        phase_input: Optional[Dict[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> PhaseOutcome:
        """Validate, gate and run ``phase`` for ``feature_name``.

        The first failing gate stops the run. Exceptions from gates and
        phase functions are caught and reported on the outcome. ``options``
        carries the effort flags (``quick``, ``batch``, ``thorough``) or an
        ``effort`` hint.
        """
        try:
            phase = Phase.parse(phase)
        except InvalidPhaseError as exc:
            return PhaseOutcome(
                success=False,
                phase=None,
                feature_name=feature_name,
                error=str(exc),
                error_kind=ErrorKind.INVALID_PHASE,
                resolution=exc.resolution,
                message=f"Invalid phase requested: {phase}",
            )

        try:
            feature_name = validate_feature_name(feature_name)
        except ConfigurationError as exc:
            return PhaseOutcome(
                success=False,
                phase=phase,
                feature_name=feature_name,
                error=str(exc),
                error_kind=ErrorKind.CONFIGURATION,
                resolution=exc.resolution,
                message=f"Cannot run {phase.value}: invalid feature name",
            )

        try:
            effort = detect_effort(options)
        except ConfigurationError as exc:
            return PhaseOutcome(
                success=False,
                phase=phase,
                feature_name=feature_name,
                error=str(exc),
                error_kind=ErrorKind.CONFIGURATION,
                resolution=exc.resolution,
                message=f"Cannot run {phase.value}: conflicting effort flags",
            )

        gates_passed: List[str] = []
        warnings: List[str] = []

        for gate in PHASE_GATES[phase]:
            started = time.perf_counter()
            try:
                result = await self._run_gate(gate, phase, feature_name)
            except Exception as exc:
                logger.exception(f"Gate {gate} raised while checking {phase.value} for {feature_name}")
                return PhaseOutcome(
                    success=False,
                    phase=phase,
                    feature_name=feature_name,
                    gates_passed=gates_passed,
                    error=f"Gate execution failed ({gate}): {exc}",
                    error_kind=ErrorKind.GATE_EXECUTION_FAILED,
                    resolution=getattr(exc, "resolution", None),
                    message=f"{phase.value} blocked: {gate} gate could not run",
                )
            log_gate_result(
                gate,
                phase.value,
                feature_name,
                result.passed,
                time.perf_counter() - started,
                budget_seconds=self.gate_budget_seconds,
            )

            if not result.passed:
                label = _GATE_LABELS.get(gate, gate)
                return PhaseOutcome(
                    success=False,
                    phase=phase,
                    feature_name=feature_name,
                    gates_passed=gates_passed,
                    error=f"{label} gate failed: {result.error}",
                    error_kind=result.error_kind,
                    resolution=result.resolution,
                    gate_result=result,
                    warnings=warnings + result.warnings,
                    message=f"{phase.value} blocked by the {gate} gate",
                )
            gates_passed.append(gate)
            warnings.extend(result.warnings)

        phase_function = self.phase_functions.get(phase)
        if phase_function is None:
            return PhaseOutcome(
                success=False,
                phase=phase,
                feature_name=feature_name,
                gates_passed=gates_passed,
                error=f"No phase function registered for {phase.value}",
                error_kind=ErrorKind.PHASE_EXECUTION_FAILED,
                warnings=warnings,
                message=f"{phase.value} cannot run",
            )

        context = PhaseContext(
            phase=phase,
            feature_name=feature_name,
            artifact_path=str(self.locator.phase_output_path(feature_name, phase)),
            phase_input=dict(phase_input or {}),
            effort_level=effort.effort_level if effort.explicit else None,
        )
        log_phase_event("started", phase.value, feature_name, gates_passed=gates_passed)
        try:
            phase_result = await phase_function(context)
        except Exception as exc:
            logger.exception(f"Phase {phase.value} raised for {feature_name}")
            log_phase_event("failed", phase.value, feature_name, error=str(exc))
            return PhaseOutcome(
                success=False,
                phase=phase,
                feature_name=feature_name,
                gates_passed=gates_passed,
                error=f"Phase execution failed ({phase.value}): {exc}",
                error_kind=ErrorKind.PHASE_EXECUTION_FAILED,
                warnings=warnings,
                message=f"{phase.value} failed",
            )

        warnings.extend(phase_result.warnings)
        if not phase_result.success:
            log_phase_event("failed", phase.value, feature_name, error=phase_result.error)
            return PhaseOutcome(
                success=False,
                phase=phase,
                feature_name=feature_name,
                gates_passed=gates_passed,
                error=phase_result.error or f"Phase {phase.value} reported failure",
                error_kind=ErrorKind.PHASE_EXECUTION_FAILED,
                artifact_path=phase_result.artifact_path,
                warnings=warnings,
                message=f"{phase.value} failed",
            )

        next_phase = phase.next_phase()
        log_phase_event(
            "completed",
            phase.value,
            feature_name,
            artifact_path=phase_result.artifact_path,
            next_phase=next_phase.value if next_phase else None,
        )
        if next_phase is None:
            message = f"{phase.value} complete for {feature_name}. Workflow finished."
        else:
            message = f"{phase.value} complete for {feature_name}. Next: {next_phase.value}"
        return PhaseOutcome(
            success=True,
            phase=phase,
            feature_name=feature_name,
            gates_passed=gates_passed,
            artifact_path=phase_result.artifact_path,
            next_phase=next_phase,
            warnings=warnings,
            message=message,
            workflow_complete=next_phase is None,
            effort_level=effort.effort_level,
        )
