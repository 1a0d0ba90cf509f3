"""Workflow management for SpecFirst.

``WorkflowManager`` is the facade the MCP tools call. Every method builds
what it needs from the project root, answers from the ledger and the
store, and returns a plain dict with a suggested next step. Nothing is
kept between calls.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .config import SpecFirstConfig
from .errors import SpecFirstError
from .gates import evaluate_isc_content, phase_complete_gate
from .isc import format_quality_report, load_tracker, run_quality_gate
from .ledger import open_ledger
from .models import ArtifactKind, Phase, PhaseOutcome, SessionStatus
from .orchestrator import Orchestrator
from .phases import ArtifactPhaseRunner, build_phase_functions
from .resumption import ResumptionEngine, first_incomplete, furthest_complete
from .sessions import SessionManager
from .specfirst_logging import log_error_with_context, log_performance, observability_hooks
from .store import open_store
from .workspace import ArtifactLocator, read_text_async, validate_feature_name, write_text_async


logger = logging.getLogger("specfirst.workflow")


def _error_response(exc: SpecFirstError, operation: str, next_step: str, **context: Any) -> Dict[str, Any]:
    log_error_with_context(exc, {"operation": operation, **context})
    return {
        "success": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
        "suggestion": exc.resolution,
        "next_suggested_step": next_step,
        "message": f"Error: {exc}",
    }


def _outcome_response(outcome: PhaseOutcome) -> Dict[str, Any]:
    response = outcome.to_dict()
    if outcome.success and outcome.next_phase is not None:
        response["next_suggested_step"] = "run_phase"
        response["workflow_tip"] = f"Next: run the '{outcome.next_phase.value}' phase for {outcome.feature_name}"
    elif outcome.success:
        response["next_suggested_step"] = "feature_stats"
        response["workflow_tip"] = "Workflow finished. Review stats or start another feature."
    else:
        response["next_suggested_step"] = "workflow_status"
        response["workflow_tip"] = outcome.resolution or "Check workflow_status for what is missing"
    return response


class WorkflowManager:
    """Entry point for one project root."""

    def __init__(
        self,
        root: Optional[Path | str] = None,
        config: Optional[SpecFirstConfig] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config or SpecFirstConfig.from_env(root, environ=environ)
        self.locator = ArtifactLocator(self.config.project_root, self.config.storage_dir_name)
        self.ledger = open_ledger(self.config, self.locator)

    @property
    def root(self) -> Path:
        return self.config.project_root

    def _resumption(self, orchestrator: Orchestrator) -> ResumptionEngine:
        return ResumptionEngine(self.ledger, orchestrator)

    # ------------------------------------------------------------------
    # Constitution
    # ------------------------------------------------------------------

    @log_performance("set_constitution")
    async def set_constitution(self, content: str, mode: str = "replace") -> Dict[str, Any]:
        if not content or not content.strip():
            return {
                "success": False,
                "error": "Constitution content cannot be empty",
                "next_suggested_step": "set_constitution",
                "message": "Error: Constitution content cannot be empty",
            }
        if mode not in {"replace", "append"}:
            return {
                "success": False,
                "error": "Mode must be 'replace' or 'append'",
                "next_suggested_step": "set_constitution",
                "message": "Error: Mode must be 'replace' or 'append'",
            }

        path = self.locator.constitution_path
        text = content.strip()
        if mode == "append":
            existing = await read_text_async(path)
            if existing:
                text = existing.rstrip() + "\n\n" + text
        await write_text_async(path, text)
        observability_hooks.log_workflow_event("constitution_set", mode=mode, path=str(path))
        return {
            "success": True,
            "constitution_path": str(path),
            "next_suggested_step": "add_feature",
            "workflow_tip": "Next: register a feature with add_feature, then run its 'propose' phase",
            "message": f"Constitution saved to {path}",
        }

    # ------------------------------------------------------------------
    # Feature queue
    # ------------------------------------------------------------------

    async def add_feature(
        self,
        name: str,
        description: str = "",
        priority: int = 999,
        feature_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            name = validate_feature_name(name)
            async with open_store(self.config.db_path) as store:
                feature = await store.add_feature(
                    feature_id or name,
                    name,
                    description=description,
                    priority=priority,
                    paths={"constitution_path": self.locator.relative(self.locator.constitution_path)},
                )
        except SpecFirstError as exc:
            return _error_response(exc, "add_feature", "list_features", name=name)
        return {
            "success": True,
            "feature": feature.to_dict(),
            "artifact_paths": self.locator.feature_paths(name),
            "next_suggested_step": "run_phase",
            "workflow_tip": f"Next: run the 'propose' phase for {name}",
            "message": f"Feature {feature.id} added with priority {feature.priority}",
        }

    async def list_features(self) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                features = await store.list_features()
                next_feature = await store.next_feature()
        except SpecFirstError as exc:
            return _error_response(exc, "list_features", "add_feature")
        return {
            "success": True,
            "features": [feature.to_dict() for feature in features],
            "count": len(features),
            "next_feature": next_feature.to_dict() if next_feature else None,
            "message": f"Found {len(features)} features" if features else "No features yet. Use add_feature to queue one.",
        }

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    @log_performance("run_phase")
    async def run_phase(
        self,
        phase: str,
        feature_name: str,
        phase_input: Optional[Dict[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                runner = ArtifactPhaseRunner(self.locator, self.ledger, self.config, store)
                orchestrator = Orchestrator(self.locator, build_phase_functions(runner), self.config)
                outcome = await orchestrator.execute_phase(phase, feature_name, phase_input, options)
        except SpecFirstError as exc:
            return _error_response(exc, "run_phase", "workflow_status", phase=phase, feature_name=feature_name)
        return _outcome_response(outcome)

    @log_performance("resume_workflow")
    async def resume_workflow(
        self,
        feature_name: str,
        phase_input: Optional[Dict[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                runner = ArtifactPhaseRunner(self.locator, self.ledger, self.config, store)
                orchestrator = Orchestrator(self.locator, build_phase_functions(runner), self.config)
                outcome = await self._resumption(orchestrator).resume_workflow(feature_name, phase_input, options)
        except SpecFirstError as exc:
            return _error_response(exc, "resume_workflow", "workflow_status", feature_name=feature_name)
        return _outcome_response(outcome)

    async def workflow_status(self, feature_name: str) -> Dict[str, Any]:
        try:
            engine = self._resumption(Orchestrator(self.locator, {}, self.config))
            status = await engine.get_workflow_status(feature_name)
            paths = self.locator.feature_paths(feature_name)
        except SpecFirstError as exc:
            return _error_response(exc, "workflow_status", "workflow_status", feature_name=feature_name)

        next_phase = first_incomplete(status)
        current = furthest_complete(status)
        response: Dict[str, Any] = {
            "success": True,
            "feature_name": feature_name,
            "phases": {phase.value: done for phase, done in status.items()},
            "current_phase": current.value,
            "next_phase": next_phase.value if next_phase else None,
            "workflow_complete": next_phase is None,
            "artifact_paths": paths,
        }
        if next_phase is None:
            response["next_suggested_step"] = "feature_stats"
            response["message"] = f"All phases complete for {feature_name}"
        else:
            response["next_suggested_step"] = "run_phase"
            response["workflow_tip"] = f"Next: run the '{next_phase.value}' phase"
            response["message"] = f"{feature_name} is ready for {next_phase.value}"
        return response

    async def phase_history(self, feature_name: str) -> Dict[str, Any]:
        try:
            records = await self.ledger.all_for(feature_name)
        except SpecFirstError as exc:
            return _error_response(exc, "phase_history", "workflow_status", feature_name=feature_name)
        return {
            "success": True,
            "feature_name": feature_name,
            "records": [record.to_dict() for record in records],
            "count": len(records),
            "message": f"{len(records)} phase records for {feature_name}",
        }

    async def verify_phase(self, phase: str, feature_name: str) -> Dict[str, Any]:
        try:
            result = await phase_complete_gate(self.locator, self.ledger, phase, feature_name)
        except SpecFirstError as exc:
            return _error_response(exc, "verify_phase", "workflow_status", phase=phase, feature_name=feature_name)
        response = result.to_dict()
        response["success"] = True
        response["next_suggested_step"] = "workflow_status" if result.passed else "run_phase"
        return response

    # ------------------------------------------------------------------
    # ISC documents
    # ------------------------------------------------------------------

    async def validate_isc(
        self,
        feature_name: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Validate ISC text directly, or the feature's tasks.md when no text is given."""
        source = None
        if content is None:
            if not feature_name:
                return {
                    "success": False,
                    "error": "Provide either content or feature_name",
                    "next_suggested_step": "validate_isc",
                }
            try:
                path = self.locator.path_for(feature_name, ArtifactKind.TASKS)
            except SpecFirstError as exc:
                return _error_response(exc, "validate_isc", "validate_isc", feature_name=feature_name)
            content = await read_text_async(path)
            if content is None:
                return {
                    "success": False,
                    "error": f"No tasks document at {path}",
                    "next_suggested_step": "run_phase",
                    "workflow_tip": "Run the 'implement' phase to write tasks.md",
                }
            source = str(path)

        result = evaluate_isc_content(content, enforce_quality=self.config.enforce_quality_gate, source=source)
        quality = run_quality_gate(content)
        response = result.to_dict()
        response["success"] = True
        response["report"] = result.details["report"]
        response["quality_report"] = format_quality_report(quality)
        response["next_suggested_step"] = "run_phase" if result.passed else "validate_isc"
        return response

    async def tracker_progress(self, feature_name: str) -> Dict[str, Any]:
        try:
            path = self.locator.path_for(feature_name, ArtifactKind.TASKS)
        except SpecFirstError as exc:
            return _error_response(exc, "tracker_progress", "list_features", feature_name=feature_name)
        snapshot = load_tracker(path)
        if snapshot is None:
            return {
                "success": False,
                "error": f"No tasks document at {path}",
                "next_suggested_step": "run_phase",
            }
        response = snapshot.to_dict()
        response["success"] = True
        response["message"] = f"{snapshot.verified}/{snapshot.total} criteria verified ({snapshot.progress_percent}%)"
        return response

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(self, resume: bool = True) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                sessions = SessionManager(store, self.ledger)
                if resume:
                    state = await sessions.resume_or_start_session()
                    payload = state.to_dict()
                else:
                    session = await sessions.start_session()
                    payload = {"session": session.to_dict(), "resumed": False, "current_feature": None, "current_phase": Phase.NONE.value}
        except SpecFirstError as exc:
            return _error_response(exc, "start_session", "start_session")
        payload["success"] = True
        payload["next_suggested_step"] = "run_phase" if payload["current_feature"] else "claim_feature"
        payload["message"] = (
            f"Resumed session {payload['session']['id']}" if payload["resumed"]
            else f"Started session {payload['session']['id']}"
        )
        return payload

    async def claim_feature(self, session_id: str, feature_id: str) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                claimed = await SessionManager(store).start_feature(session_id, feature_id)
        except SpecFirstError as exc:
            return _error_response(exc, "claim_feature", "list_features", session_id=session_id, feature_id=feature_id)
        if not claimed:
            return {
                "success": False,
                "claimed": False,
                "error_kind": "claim_conflict",
                "error": f"Feature {feature_id} is owned by another session, does not exist, or {session_id} is not a running session",
                "next_suggested_step": "list_features",
                "message": "Pick another pending feature",
            }
        return {
            "success": True,
            "claimed": True,
            "session_id": session_id,
            "feature_id": feature_id,
            "next_suggested_step": "resume_workflow",
            "message": f"Session {session_id} now owns {feature_id}",
        }

    async def release_feature(self, session_id: str, feature_id: str) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                released = await SessionManager(store).release_feature(session_id, feature_id)
        except SpecFirstError as exc:
            return _error_response(exc, "release_feature", "list_features", session_id=session_id, feature_id=feature_id)
        return {
            "success": True,
            "released": released,
            "message": f"Released {feature_id}" if released else f"{feature_id} was not held by {session_id}",
        }

    async def complete_feature(self, session_id: str, feature_id: str) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                completed = await SessionManager(store).complete_feature(session_id, feature_id)
        except SpecFirstError as exc:
            return _error_response(exc, "complete_feature", "list_features", session_id=session_id, feature_id=feature_id)
        return {
            "success": completed,
            "completed": completed,
            "next_suggested_step": "list_features" if completed else "claim_feature",
            "message": f"Completed {feature_id}" if completed else f"{session_id} does not hold {feature_id}",
        }

    async def end_session(self, session_id: str, status: str = SessionStatus.COMPLETED.value) -> Dict[str, Any]:
        try:
            status = SessionStatus(status).value
        except ValueError:
            return {
                "success": False,
                "error": f"Unknown session status '{status}'",
                "suggestion": "Use one of: " + ", ".join(s.value for s in SessionStatus),
            }
        try:
            async with open_store(self.config.db_path) as store:
                ended = await SessionManager(store).end_session(session_id, status)
        except SpecFirstError as exc:
            return _error_response(exc, "end_session", "start_session", session_id=session_id)
        return {
            "success": ended,
            "session_id": session_id,
            "status": status,
            "message": f"Session {session_id} ended" if ended else f"No session {session_id}",
        }

    async def feature_stats(self) -> Dict[str, Any]:
        try:
            async with open_store(self.config.db_path) as store:
                stats = await SessionManager(store).get_stats()
        except SpecFirstError as exc:
            return _error_response(exc, "feature_stats", "add_feature")
        response = stats.to_dict()
        response["success"] = True
        response["message"] = f"{stats.completed}/{stats.total} features complete ({stats.percent_complete}%)"
        return response
