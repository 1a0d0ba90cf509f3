"""MCP server exposing the SpecFirst phase workflow as tools."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from mcp.server.fastmcp import FastMCP

from specfirst.config import DEFAULT_STORAGE_DIR
from specfirst.errors import ConfigurationError
from specfirst.specfirst_logging import setup_logging
from specfirst.workflow import WorkflowManager
from specfirst.workspace import CONSTITUTION_FILENAME

mcp = FastMCP("specfirst")


def _project_markers() -> tuple[str, ...]:
    return (os.getenv("SPECFIRST_STORAGE_DIR") or DEFAULT_STORAGE_DIR, CONSTITUTION_FILENAME)


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    return [cwd, *cwd.parents]


def _locate_workspace_root() -> Optional[Path]:
    for base in _candidate_bases():
        for marker in _project_markers():
            if (base / marker).exists():
                return base
    return None


def _resolve_root(root: Optional[str]) -> Optional[str]:
    """Explicit argument first, then SPECFIRST_PROJECT_ROOT, then the nearest marked directory."""
    if root:
        return root
    if os.getenv("SPECFIRST_PROJECT_ROOT"):
        return None
    detected = _locate_workspace_root()
    return str(detected) if detected else None


def _manager(root: Optional[str]) -> WorkflowManager:
    return WorkflowManager(_resolve_root(root))


def _configuration_error(exc: ConfigurationError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": str(exc),
        "suggestion": exc.resolution,
        "next_suggested_step": "set_constitution",
        "workflow_tip": "Pass 'root' or set SPECFIRST_PROJECT_ROOT to the project directory",
    }


def _phase_input(
    content: Optional[str],
    version: Optional[str] = None,
    notes: Optional[str] = None,
    release_date: Optional[str] = None,
) -> Dict[str, Any]:
    values = {"content": content, "version": version, "notes": notes, "release_date": release_date}
    return {key: value for key, value in values.items() if value is not None}


def _effort_options(quick: bool, batch: bool, thorough: bool, effort: Optional[str]) -> Dict[str, Any]:
    return {"quick": quick, "batch": batch, "thorough": thorough, "effort": effort}


@mcp.tool()
async def set_constitution(content: str, mode: str = "replace", root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 1: Create or update CONSTITUTION.md, the prerequisite for every phase.
    Use mode='append' to add to an existing constitution."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.set_constitution(content, mode=mode)


@mcp.tool()
async def add_feature(
    name: str,
    description: str = "",
    priority: int = 999,
    feature_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 2: Queue a feature. Lower priority numbers are worked first."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.add_feature(name, description=description, priority=priority, feature_id=feature_id)


@mcp.tool()
async def list_features(root: Optional[str] = None) -> Dict[str, Any]:
    """List queued features in priority order together with the next pending one."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.list_features()


@mcp.tool()
async def run_phase(
    phase: str,
    feature_name: str,
    content: Optional[str] = None,
    version: Optional[str] = None,
    notes: Optional[str] = None,
    release_date: Optional[str] = None,
    quick: bool = False,
    batch: bool = False,
    thorough: bool = False,
    effort: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 3: Run one phase (propose, specify, plan, implement, release) behind its gates.
    'content' is the markdown document the phase produces. For release it is optional;
    release notes are generated from 'version' and 'notes' when omitted.
    quick/batch/thorough (or a free-text 'effort' hint) set the effort level recorded on the feature."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.run_phase(
        phase,
        feature_name,
        _phase_input(content, version, notes, release_date),
        _effort_options(quick, batch, thorough, effort),
    )


@mcp.tool()
async def resume_workflow(
    feature_name: str,
    content: Optional[str] = None,
    version: Optional[str] = None,
    notes: Optional[str] = None,
    quick: bool = False,
    batch: bool = False,
    thorough: bool = False,
    effort: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Run whichever phase comes next for the feature, as recorded in the ledger."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.resume_workflow(
        feature_name,
        _phase_input(content, version, notes),
        _effort_options(quick, batch, thorough, effort),
    )


@mcp.tool()
async def workflow_status(feature_name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Show which phases are complete for a feature and which comes next."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.workflow_status(feature_name)


@mcp.tool()
async def phase_history(feature_name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """List every ledger record for a feature, oldest first."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.phase_history(feature_name)


@mcp.tool()
async def verify_phase(phase: str, feature_name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Check that a phase is recorded in the ledger and its artifact is marked complete."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.verify_phase(phase, feature_name)


@mcp.tool()
async def validate_isc(
    feature_name: Optional[str] = None,
    content: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Validate an ISC document (given as content, or the feature's tasks.md) and run the quality gate."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.validate_isc(feature_name=feature_name, content=content)


@mcp.tool()
async def tracker_progress(feature_name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Summarise verified/pending criteria in the feature's ISC tracker."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.tracker_progress(feature_name)


@mcp.tool()
async def start_session(resume: bool = True, root: Optional[str] = None) -> Dict[str, Any]:
    """Resume the running session, or start a new one (resume=False always starts fresh)."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.start_session(resume=resume)


@mcp.tool()
async def claim_feature(session_id: str, feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Claim a feature for a session. Fails without side effects if another session owns it."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.claim_feature(session_id, feature_id)


@mcp.tool()
async def release_feature(session_id: str, feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Give up a session's claim on a feature."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.release_feature(session_id, feature_id)


@mcp.tool()
async def complete_feature(session_id: str, feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Mark a claimed feature completed and release it."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.complete_feature(session_id, feature_id)


@mcp.tool()
async def end_session(session_id: str, status: str = "completed", root: Optional[str] = None) -> Dict[str, Any]:
    """End a session (completed, paused or failed), releasing any feature it holds."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.end_session(session_id, status=status)


@mcp.tool()
async def feature_stats(root: Optional[str] = None) -> Dict[str, Any]:
    """Counts of features by status and overall percent complete."""
    try:
        manager = _manager(root)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    return await manager.feature_stats()


@mcp.resource("specfirst://features")
async def resource_features() -> str:
    """Resource view of the feature queue for discovery."""
    try:
        manager = _manager(None)
    except ConfigurationError:
        return "No project root detected. Set SPECFIRST_PROJECT_ROOT or run from inside a SpecFirst project."

    listing = await manager.list_features()
    features: List[Dict[str, Union[str, int, None]]] = listing.get("features", [])
    if not features:
        return "No features have been queued yet."

    lines = ["SpecFirst Features"]
    for feature in features:
        lines.append("")
        lines.append(f"- {feature['id']}: {feature['name']} [{feature['status']}, phase {feature['phase']}]")
        if feature.get("session_id"):
            lines.append(f"  Claimed by: {feature['session_id']}")
    return "\n".join(lines)


def run() -> None:
    setup_logging(os.getenv("SPECFIRST_LOG_LEVEL", "INFO").upper(), os.getenv("SPECFIRST_LOG_FILE") or None)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    run()
